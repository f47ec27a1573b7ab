"""Keyed delayed tasks on the running event loop.

Escalation timers and self-advancing step continuations share this
scheduler. Each key holds at most one live task, and a task removes its own
key before running its callback so that cancelling an execution from inside
the callback never cancels the callback itself.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Hashable, List, Tuple

logger = logging.getLogger(__name__)

TimerKey = Tuple[str, ...]
Callback = Callable[[], Awaitable[None]]


class TaskScheduler:
    """Map of keys to pending delayed callbacks.

    Keys are tuples whose first element is the execution id, so every timer
    for an execution can be cleared at once.
    """

    def __init__(self, name: str = "timers") -> None:
        self.name = name
        self._tasks: Dict[TimerKey, asyncio.Task] = {}

    def schedule(self, key: TimerKey, delay: float, callback: Callback) -> asyncio.Task:
        """Run ``callback`` after ``delay`` seconds, replacing any timer on ``key``."""
        self.cancel(key)
        task = asyncio.create_task(self._run(key, delay, callback))
        self._tasks[key] = task
        return task

    async def _run(self, key: TimerKey, delay: float, callback: Callback) -> None:
        await asyncio.sleep(max(delay, 0))
        # fired callbacks re-check execution state under the engine lock
        if self._tasks.get(key) is asyncio.current_task():
            del self._tasks[key]
        try:
            await callback()
        except Exception as e:
            logger.error(f"{self.name} callback for {key} failed: {e}")

    def cancel(self, key: TimerKey) -> bool:
        """Cancel the timer on ``key``. Returns whether one was pending."""
        task = self._tasks.pop(key, None)
        if task is None:
            return False
        task.cancel()
        return True

    def cancel_execution(self, execution_id: str) -> int:
        """Cancel every timer belonging to ``execution_id``."""
        keys = [key for key in self._tasks if key[0] == execution_id]
        for key in keys:
            self.cancel(key)
        return len(keys)

    def has(self, key: Hashable) -> bool:
        return key in self._tasks

    def keys(self) -> List[TimerKey]:
        return list(self._tasks)

    def pending(self, execution_id: str) -> List[asyncio.Task]:
        return [task for key, task in self._tasks.items() if key[0] == execution_id]

    async def shutdown(self) -> None:
        """Cancel all timers and wait for them to unwind."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def __len__(self) -> int:
        return len(self._tasks)
