"""Periodic trigger for audit passes.

Owns cadence and lifecycle only.  start() runs one pass immediately and
then one per interval; every pass runs as its own task, so stop() only
cancels the timer and never an in-flight pass.  A pass that raises is
logged and the timer keeps going.
"""

import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 1800  # 30 minutes


class Scheduler:
    """Background timer driving RefreshCoordinator.run_audit_pass().

    >>> Scheduler(coordinator=None).is_running
    False
    """

    def __init__(self, coordinator, interval: float = DEFAULT_INTERVAL):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.coordinator = coordinator
        self.interval = interval
        self._timer: Optional[asyncio.Task] = None
        self._passes: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._timer is not None

    def start(self) -> None:
        """Register the timer. No-op when one is already registered.

        Must be called from a running event loop.
        """
        if self._timer is not None:
            logger.info("Token refresh scheduler already running")
            return
        self._timer = asyncio.get_running_loop().create_task(self._tick_loop())
        logger.info("Started token refresh scheduler (every %ss)", self.interval)

    def stop(self) -> None:
        """Cancel the timer. In-flight passes run to completion."""
        if self._timer is None:
            return
        self._timer.cancel()
        self._timer = None
        logger.info("Token refresh scheduler stopped")

    async def wait_idle(self) -> None:
        """Wait for every pass this scheduler launched to settle."""
        while self._passes:
            await asyncio.gather(*list(self._passes), return_exceptions=True)

    async def _tick_loop(self) -> None:
        # First pass fires immediately, then one per interval
        while True:
            self._launch_pass()
            await asyncio.sleep(self.interval)

    def _launch_pass(self) -> None:
        task = asyncio.get_running_loop().create_task(self._run_pass())
        self._passes.add(task)
        task.add_done_callback(self._passes.discard)

    async def _run_pass(self) -> None:
        try:
            results = await self.coordinator.run_audit_pass()
        except Exception as e:
            logger.warning("Scheduled token refresh pass failed: %s", e)
            return
        failed = sum(1 for r in results if not r.success)
        if failed:
            logger.warning("Scheduled pass: %d account(s) failed to refresh", failed)
