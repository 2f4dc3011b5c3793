"""In-memory notification sender for tests and local runs."""

from __future__ import annotations

import asyncio
from typing import List

from .base import Notification, NotificationSender


class InMemoryNotificationSender(NotificationSender):
    """Collect notifications in a list instead of delivering them.

    ``fail_next`` makes the following sends raise, which lets callers
    exercise retry handling.
    """

    def __init__(self) -> None:
        self.sent: List[Notification] = []
        self.fail_next = 0
        self._lock = asyncio.Lock()

    async def send(self, notification: Notification) -> None:
        async with self._lock:
            if self.fail_next > 0:
                self.fail_next -= 1
                raise ConnectionError("notification channel unavailable")
            self.sent.append(notification)

    def drain(self) -> List[Notification]:
        sent, self.sent = self.sent, []
        return sent
