"""Redis notification sink handing requests to an external delivery worker."""

from __future__ import annotations

from typing import Any, Optional

import redis.asyncio as redis

from ..contracts import NotificationRequest
from .base import NotificationSink


class RedisNotificationSink(NotificationSink):
    """Push notification requests onto a Redis list acting as a queue."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        queue: str = "procession:notifications",
    ) -> None:
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

    async def send(self, request: NotificationRequest) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self.queue, request.to_json())
