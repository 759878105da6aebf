# services/async_processor.py
"""Background indexing runner on the application's event loop"""
import asyncio
import logging
from typing import Coroutine, Set

from config import settings

logger = logging.getLogger(settings.LOGGER_NAME)


class AsyncIndexingProcessor:
    """
    Fire-and-forget task runner (max_workers concurrent, the rest wait).

    Failures are logged, never raised to the submitter. Call shutdown() on
    app exit to wait for outstanding work.
    """

    def __init__(self, max_workers: int = 3):
        self.max_workers = max(1, max_workers)
        self._semaphore = None
        self._tasks: Set[asyncio.Task] = set()

    def submit(self, coro: Coroutine) -> asyncio.Task:
        """Schedule a coroutine on the running loop. Must be called from inside the loop."""
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_workers)
        task = asyncio.get_running_loop().create_task(self._run(coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, coro: Coroutine) -> None:
        try:
            async with self._semaphore:
                await coro
        except asyncio.CancelledError:
            # Cancelled while queued: the coroutine never started
            coro.close()
            logger.warning("Background task cancelled")
            raise
        except Exception as e:
            logger.exception(f"Background task failed: {e}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def shutdown(self, cancel: bool = False) -> None:
        """Wait for running tasks to complete (or cancel them)."""
        tasks = list(self._tasks)
        if cancel:
            for task in tasks:
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Background processor stopped ({len(tasks)} task(s) drained)")
