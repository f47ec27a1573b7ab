"""Notification sink factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ProcessionConfig, load_config
from .base import NotificationSink
from .inmemory import InMemoryNotificationSink
from .log import LoggingNotificationSink


def get_sink(
    backend: Optional[str] = None, config: Optional[ProcessionConfig] = None
) -> NotificationSink:
    """Factory function to get the configured notification sink."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("PROCESSION_NOTIFICATIONS")
        or config.notifications.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryNotificationSink()
    elif backend == "log":
        return LoggingNotificationSink()
    elif backend == "redis":
        from .redis import RedisNotificationSink

        redis_conf = config.notifications.redis
        return RedisNotificationSink(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            queue=redis_conf.queue,
        )
    else:
        raise ValueError(f"Unsupported notification backend: {backend}")


__all__ = [
    "NotificationSink",
    "InMemoryNotificationSink",
    "LoggingNotificationSink",
    "get_sink",
]
