"""In-memory notification sink for testing."""

from __future__ import annotations

import asyncio
from typing import List

from ..contracts import NotificationRequest
from .base import NotificationSink


class InMemoryNotificationSink(NotificationSink):
    """Collects sent notifications in a list."""

    def __init__(self) -> None:
        self.sent: List[NotificationRequest] = []
        self._lock = asyncio.Lock()

    async def send(self, request: NotificationRequest) -> None:
        async with self._lock:
            self.sent.append(request)

    def to(self, recipient: str) -> List[NotificationRequest]:
        """Return notifications addressed to ``recipient``."""
        return [n for n in self.sent if recipient in n.recipients]

    def clear(self) -> None:
        self.sent.clear()
