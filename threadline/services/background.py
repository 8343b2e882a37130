import asyncio
from typing import Coroutine, Optional

from threadline.logging_config import get_logger

logger = get_logger("background")


class BackgroundTasks:
    """Detached tasks that must never fail, or delay, the request that spawned them.

    Each task runs inside its own error boundary. Strong references are kept
    until completion so the event loop cannot garbage-collect a running task.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine, *, name: str, context: Optional[dict] = None) -> asyncio.Task:
        task = asyncio.create_task(self._guarded(coro, name, context or {}), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guarded(self, coro: Coroutine, name: str, context: dict) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Background task {name} failed", extra={"context": context})

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for running tasks; at shutdown, whatever outlives `timeout` is cancelled."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        done, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning(f"Cancelled {len(still_running)} background task(s) at shutdown")
