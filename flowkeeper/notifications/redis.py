"""Redis notification sender for cross-process delivery."""

from __future__ import annotations

from typing import Any, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..constants import DEFAULT_NOTIFICATION_QUEUE
from .base import Notification, NotificationSender


class RedisNotificationSender(NotificationSender):
    """Push notifications as JSON onto a Redis list for a delivery worker."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        queue: str = DEFAULT_NOTIFICATION_QUEUE,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisNotificationSender")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.queue = queue
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def send(self, notification: Notification) -> None:
        """Append the notification to the delivery queue."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self.queue, notification.to_json())
