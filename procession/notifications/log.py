"""Notification sink that writes to the log."""

from __future__ import annotations

import logging

from ..contracts import NotificationRequest
from .base import NotificationSink

logger = logging.getLogger(__name__)


class LoggingNotificationSink(NotificationSink):
    """Default sink when no delivery channel is configured."""

    async def send(self, request: NotificationRequest) -> None:
        logger.info(
            f"[{request.channel.upper()}] to={','.join(request.recipients)} "
            f"priority={request.priority} subject={request.subject!r}"
        )
