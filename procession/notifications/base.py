"""Base notification sink interface."""

from __future__ import annotations

import abc

from ..contracts import NotificationRequest


class NotificationSink(metaclass=abc.ABCMeta):
    """Abstract outbound notification channel.

    Sends are fire-and-forget from the core's point of view: callers log
    failures and never let them change execution status.
    """

    async def connect(self) -> None:
        """Open connection to the channel (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the channel (no-op by default)."""
        pass

    @abc.abstractmethod
    async def send(self, request: NotificationRequest) -> None:
        """Deliver a notification request."""
        raise NotImplementedError
