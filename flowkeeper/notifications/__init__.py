"""Notification sender factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FlowkeeperConfig, load_config
from .base import Notification, NotificationKind, NotificationSender
from .inmemory import InMemoryNotificationSender


def get_notifier(
    backend: Optional[str] = None, config: Optional[FlowkeeperConfig] = None
) -> NotificationSender:
    """Factory function to get the configured notification sender."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("FLOWKEEPER_NOTIFIER")
        or config.notifications.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryNotificationSender()
    elif backend == "redis":
        from .redis import RedisNotificationSender

        redis_conf = config.notifications.redis
        return RedisNotificationSender(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            queue=config.notifications.queue,
        )
    else:
        raise ValueError(f"Unsupported notification backend: {backend}")


__all__ = [
    "InMemoryNotificationSender",
    "Notification",
    "NotificationKind",
    "NotificationSender",
    "get_notifier",
]
