"""
Cancellable deferred tasks keyed by call id.

Used for record eviction timers and delayed recording lookups. Each key
holds at most one pending task; scheduling again replaces the old one.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict

logger = logging.getLogger(__name__)


class DeferredTasks:
    """Registry of delayed background tasks, one per key."""

    def __init__(self, name: str):
        self.name = name
        self._tasks: Dict[str, asyncio.Task] = {}

    def schedule(
        self,
        key: str,
        delay: float,
        callback: Callable[[], Awaitable[None]],
    ) -> asyncio.Task:
        """Run callback after delay seconds, replacing any pending task for key.

        Must be called from inside a running event loop.
        """
        self.cancel(key)
        task = asyncio.get_running_loop().create_task(self._run(key, delay, callback))
        self._tasks[key] = task
        task.add_done_callback(lambda t: self._forget(key, t))
        logger.debug(f"[{self.name}] scheduled {key} in {delay}s")
        return task

    async def _run(self, key: str, delay: float, callback: Callable[[], Awaitable[None]]) -> None:
        await asyncio.sleep(delay)
        # Past the point of cancellation; the callback may reschedule key.
        self._forget(key, asyncio.current_task())
        try:
            await callback()
        except Exception:
            logger.exception(f"[{self.name}] deferred task for {key} failed")

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

    def cancel(self, key: str) -> bool:
        """Cancel the pending task for key. Returns True if one was pending."""
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.debug(f"[{self.name}] cancelled {key}")
        return True

    def cancel_all(self) -> None:
        for key in list(self._tasks):
            self.cancel(key)

    def is_pending(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def __len__(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())
