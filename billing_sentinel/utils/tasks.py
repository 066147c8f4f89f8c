"""
Fire-and-forget background tasks with a strong reference set.

asyncio only keeps weak references to tasks, so untracked create_task() calls
can be garbage collected mid-flight. Exceptions are logged, never raised.
"""
import asyncio
import logging
from typing import Coroutine, Optional

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Tracks spawned tasks until they finish."""

    def __init__(self, name: str = "background"):
        self.name = name
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine, name: Optional[str] = None) -> Optional[asyncio.Task]:
        """Schedule a coroutine on the running loop. Returns None if no loop is running."""
        try:
            task = asyncio.get_running_loop().create_task(coro, name=name)
        except RuntimeError:
            coro.close()
            logger.warning("No running event loop - dropped %s task %s", self.name, name)
            return None
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "%s task %s failed: %s", self.name, task.get_name(), str(exc),
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for tasks spawned so far (and any they spawn) to finish."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                break
            await asyncio.wait(set(self._tasks), timeout=remaining)

    async def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
