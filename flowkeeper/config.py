from __future__ import annotations

import os
from typing import Optional, Literal

import yaml
from pydantic import BaseModel

from .constants import DEFAULT_MAX_AUTO_TRANSITIONS, DEFAULT_NOTIFICATION_QUEUE
from .contracts import Constraints, ValidationMode


class RedisConfig(BaseModel):
    """Configuration for the Redis notification sender."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class NotificationConfig(BaseModel):
    """Notification sender settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    queue: str = DEFAULT_NOTIFICATION_QUEUE
    redis: RedisConfig = RedisConfig()


class SlaConfig(BaseModel):
    """Timing of the SLA sweep, reminders and escalations."""

    sweep_interval_seconds: float = 60.0
    reminder_lead_hours: float = 24.0
    reminder_interval_hours: float = 24.0
    max_reminders: int = 3
    escalation_after_hours: float = 48.0
    notify_timeout_seconds: float = 5.0


class EngineConfig(BaseModel):
    max_auto_transitions: int = DEFAULT_MAX_AUTO_TRANSITIONS
    validation_mode: ValidationMode = ValidationMode.STRICT


class FlowkeeperConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    constraints: Constraints = Constraints()
    engine: EngineConfig = EngineConfig()
    sla: SlaConfig = SlaConfig()
    notifications: NotificationConfig = NotificationConfig()


def load_config(path: Optional[str] = None) -> FlowkeeperConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWKEEPER_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWKEEPER_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowkeeperConfig(**data)
    else:
        config = FlowkeeperConfig()

    env_db_url = os.getenv("FLOWKEEPER_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
