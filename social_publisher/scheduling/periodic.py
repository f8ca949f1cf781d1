"""
Periodic background task runner.

``PeriodicTask`` runs an async callable on a fixed interval as an asyncio
task until stopped.  The reconciliation sweep and the token refresh batch
both run on it.  Waiting goes through the injected ``Clock`` so tests can
advance simulated time instead of sleeping.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from social_publisher.utils import Clock

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs ``func`` every ``interval_seconds``.

    Args:
        name: Label used in logs and as the asyncio task name.
        interval_seconds: Delay between the end of one run and the start
            of the next.
        func: Coroutine function to run.  Its exceptions are logged and the
            loop continues.
        clock: Time source.
        run_on_start: Run immediately when started instead of waiting one
            interval first.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], Awaitable[Any]],
        clock: Optional[Clock] = None,
        run_on_start: bool = True,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be > 0, got {interval_seconds}")
        self.name = name
        self.interval_seconds = interval_seconds
        self.func = func
        self.clock = clock or Clock()
        self.run_on_start = run_on_start

        self.runs: int = 0
        self.last_run_at: Optional[datetime] = None
        self.last_result: Any = None
        self._running: bool = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ================================================================
    # LIFECYCLE
    # ================================================================

    def start(self) -> asyncio.Task:
        """Schedule the loop on the running event loop and return its task."""
        if self.is_running:
            raise RuntimeError(f"Periodic task '{self.name}' is already running")
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=self.name)
        return self._task

    async def stop(self) -> None:
        """Stop the loop, cancelling a run or wait in progress."""
        self._running = False
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("[PERIODIC] %s stopped", self.name)

    # ================================================================
    # LOOP
    # ================================================================

    async def run_once(self) -> Any:
        """Run ``func`` now, recording the result."""
        self.last_run_at = self.clock.now()
        self.last_result = await self.func()
        self.runs += 1
        return self.last_result

    async def _loop(self) -> None:
        logger.info(
            "[PERIODIC] %s started (interval=%ss, run_on_start=%s)",
            self.name,
            self.interval_seconds,
            self.run_on_start,
        )

        if not self.run_on_start:
            try:
                await self.clock.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                return

        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                logger.info("[PERIODIC] %s cancelled", self.name)
                break
            except Exception:
                logger.exception("[PERIODIC] Unexpected error in %s", self.name)

            try:
                await self.clock.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                break


__all__ = ["PeriodicTask"]
