"""
Retention sweeper background worker.

Initiations already sweep the transaction table; this worker keeps it
bounded when no checkouts are coming in.
"""
import asyncio
from typing import Optional

import structlog

from mpesa_bridge.core.reconciliation import TransactionReconciler

logger = structlog.get_logger(__name__)


class RetentionSweeper:
    """Runs ``sweep_expired`` every ``interval_seconds`` on the event loop."""

    def __init__(self, reconciler: TransactionReconciler, interval_seconds: float = 60) -> None:
        self.reconciler = reconciler
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def run_once(self) -> int:
        evicted = self.reconciler.sweep_expired()
        if evicted:
            logger.info("retention_sweep_completed", evicted=evicted)
        return evicted

    async def _run(self) -> None:
        logger.info("retention_sweeper_started", interval_seconds=self.interval_seconds)
        try:
            while True:
                await asyncio.sleep(self.interval_seconds)
                try:
                    self.run_once()
                except Exception as e:
                    # Keep sweeping even if one pass fails
                    logger.error("retention_sweep_error", error=str(e), error_type=type(e).__name__)
        finally:
            logger.info("retention_sweeper_stopped")

    def start(self) -> None:
        if self.interval_seconds <= 0:
            logger.info("retention_sweeper_disabled")
            return
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
