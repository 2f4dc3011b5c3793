"""Base notification sender interface."""

from __future__ import annotations

import abc
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from ..models import Identity


class NotificationKind(str, Enum):
    REMINDER = "REMINDER"
    ESCALATION = "ESCALATION"


class Notification(BaseModel):
    """A reminder or escalation about one step execution."""

    notification_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: NotificationKind
    run_id: str
    step_id: str
    execution_id: str
    recipient: Identity
    due_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "Notification":
        return cls.model_validate_json(data)


class NotificationSender(metaclass=abc.ABCMeta):
    """Abstract delivery channel for notifications."""

    async def connect(self) -> None:
        """Open connection to the channel (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the channel (no-op by default)."""
        pass

    @abc.abstractmethod
    async def send(self, notification: Notification) -> None:
        """Deliver one notification; raise on failure."""
        raise NotImplementedError
