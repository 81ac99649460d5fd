"""
Periodic background jobs (stale-chat sweep, feedback retention sweep).
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .result import Result

logger = logging.getLogger(__name__)


class PeriodicSweep:
    """
    Runs a job every ``interval_seconds`` in an owned asyncio task.

    A failed run is logged and the schedule continues. ``stop()`` cancels the
    task and waits for it to finish.
    """

    def __init__(
        self,
        name: str,
        job: Callable[[], Awaitable[Result]],
        interval_seconds: float,
        run_immediately: bool = True,
    ):
        self.name = name
        self.job = job
        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately
        self.runs = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"sweep:{self.name}")
        logger.info(
            f"Started periodic sweep '{self.name}'",
            extra={"extra_fields": {"interval_seconds": self.interval_seconds}},
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"Stopped periodic sweep '{self.name}'")

    async def run_once(self) -> Optional[Result]:
        """Run the job now; failures are logged, never raised."""
        self.runs += 1
        try:
            result = await self.job()
        except Exception as e:
            logger.error(f"Sweep '{self.name}' crashed: {e}", exc_info=True)
            return None
        if not result.success:
            logger.error(
                f"Sweep '{self.name}' failed: {result.error}",
                extra={"extra_fields": {"error_kind": result.error_kind}},
            )
        return result

    async def _loop(self) -> None:
        if not self.run_immediately:
            await asyncio.sleep(self.interval_seconds)
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval_seconds)
