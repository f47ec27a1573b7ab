"""Fan-out of execution progress events to subscribed observers."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Protocol, Set, runtime_checkable

from .contracts import ProgressEvent, WorkflowPattern

logger = logging.getLogger(__name__)


@runtime_checkable
class ProgressObserver(Protocol):
    async def send(self, event: ProgressEvent) -> None:
        """Deliver one progress event. Raising disconnects the observer."""


def progress_event(
    execution_id: str,
    pattern: WorkflowPattern,
    step_id: str,
    status: str,
    error: Optional[str] = None,
) -> ProgressEvent:
    """Build a progress event for ``step_id`` of ``pattern``.

    Completed executions always report 100 percent.
    """
    step = pattern.get_step(step_id)
    label = step.name if step is not None else step_id
    progress = 100 if status == "completed" else pattern.progress_of(step_id)
    return ProgressEvent(
        execution_id=execution_id,
        status=status,
        current_step=label,
        progress=progress,
        error=error,
    )


class QueueObserver:
    """Observer that buffers events on an ``asyncio.Queue``.

    Used by in-process consumers such as the CLI and tests. ``close`` marks
    the observer disconnected and notifies whoever registered it.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self.queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self._close_callbacks: List[Callable[[], None]] = []

    async def send(self, event: ProgressEvent) -> None:
        if self.closed:
            raise ConnectionError("observer is closed")
        await self.queue.put(event)

    def on_close(self, callback: Callable[[], None]) -> None:
        self._close_callbacks.append(callback)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for callback in self._close_callbacks:
            callback()
        self._close_callbacks.clear()

    async def get(self, timeout: Optional[float] = None) -> ProgressEvent:
        return await asyncio.wait_for(self.queue.get(), timeout)

    def drain(self) -> List[ProgressEvent]:
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events


class ProgressBroadcaster:
    """Map of execution id to the observers subscribed to it."""

    def __init__(self) -> None:
        self._clients: Dict[str, Set[ProgressObserver]] = {}

    def register_client(self, execution_id: str, observer: ProgressObserver) -> None:
        """Subscribe ``observer`` to ``execution_id``.

        Observers exposing ``on_close`` are dropped automatically when they
        disconnect.
        """
        self._clients.setdefault(execution_id, set()).add(observer)
        on_close = getattr(observer, "on_close", None)
        if callable(on_close):
            on_close(lambda: self.unregister_client(execution_id, observer))
        logger.debug(f"Observer registered for execution_id={execution_id}")

    subscribe = register_client

    def unregister_client(self, execution_id: str, observer: ProgressObserver) -> None:
        observers = self._clients.get(execution_id)
        if not observers:
            return
        observers.discard(observer)
        if not observers:
            del self._clients[execution_id]

    def client_count(self, execution_id: Optional[str] = None) -> int:
        if execution_id is not None:
            return len(self._clients.get(execution_id, ()))
        return sum(len(observers) for observers in self._clients.values())

    async def publish(self, execution_id: str, event: ProgressEvent) -> int:
        """Send ``event`` to every observer of ``execution_id``.

        Returns the number of observers that received it. Publishing to an
        id nobody watches is a no-op.
        """
        observers = list(self._clients.get(execution_id, ()))
        delivered = 0
        for observer in observers:
            try:
                await observer.send(event)
                delivered += 1
            except Exception as e:
                logger.warning(
                    f"Dropping observer for execution_id={execution_id}: {e}"
                )
                self.unregister_client(execution_id, observer)
        return delivered
