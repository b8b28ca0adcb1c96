"""
Trailing-edge debounce for async jobs.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[Any]]
Sleep = Callable[[float], Awaitable[Any]]


class DebouncedScheduler:
    """
    Runs the most recently scheduled job once ``delay`` seconds pass without
    another ``schedule`` call.

    Scheduling cancels a waiting job. A job whose delay has already elapsed
    is running and is left alone. Tasks are held until they finish; a job
    that fails is logged.
    """

    def __init__(self, delay: float, sleep: Sleep = asyncio.sleep):
        self.delay = delay
        self._sleep = sleep
        self._waiting: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        return self._waiting is not None and not self._waiting.done()

    @property
    def active(self) -> int:
        """Jobs scheduled or running that have not finished yet"""
        return len(self._tasks)

    def schedule(self, job: Job) -> asyncio.Task:
        """Schedule ``job``, replacing any job still waiting. Needs a running loop."""
        self.cancel()
        task = asyncio.get_running_loop().create_task(self._run(job))
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        self._waiting = task
        return task

    def cancel(self) -> bool:
        if not self.pending:
            return False
        self._waiting.cancel()
        self._waiting = None
        return True

    async def _run(self, job: Job) -> Any:
        await self._sleep(self.delay)
        if self._waiting is asyncio.current_task():
            self._waiting = None
        return await job()

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Debounced job failed: {type(error).__name__}: {error}", exc_info=error)
