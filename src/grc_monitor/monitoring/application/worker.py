"""
Monitoring Worker
=================

One periodic tick of the monitoring loop:

1. Run due tests (per-tenant batched runs)
2. Flag SLA breaches on open alerts
3. Reopen alerts whose suppression expired
4. Drain pending alert deliveries

Each step is isolated: a failure is logged and the next step still runs.
Ticks never overlap within a process.
"""

import asyncio
from typing import TYPE_CHECKING, Any, Dict, Optional

from grc_monitor.monitoring.application.services import RunExecutor
from grc_monitor.shared.infrastructure.clock import Clock
from grc_monitor.shared.infrastructure.logging import get_logger, log_latency

if TYPE_CHECKING:
    from grc_monitor.alerting.application.services import AlertReconciler, DeliveryDispatcher
    from grc_monitor.monitoring.infrastructure.external import MonitoringScheduler

logger = get_logger(__name__)


class MonitoringWorker:
    """Drives the run executor, the alert reconciler and the delivery dispatcher."""

    def __init__(
        self,
        run_executor: RunExecutor,
        clock: Clock,
        reconciler: Optional["AlertReconciler"] = None,
        dispatcher: Optional["DeliveryDispatcher"] = None,
        worker_id: Optional[str] = None
    ):
        self._run_executor = run_executor
        self._clock = clock
        self._reconciler = reconciler
        self._dispatcher = dispatcher
        self._worker_id = worker_id
        self._lock = asyncio.Lock()
        self._stopping = False
        self._scheduler: Optional["MonitoringScheduler"] = None

    async def tick(self) -> Dict[str, Any]:
        """
        Run one tick. A tick requested while another is in flight waits for it.

        Returns:
            Summary of what each step did; a failed step reports None.
            Empty once the worker is stopping.
        """
        async with self._lock:
            if self._stopping:
                logger.info("Worker stopping, skipping tick", extra={"worker_id": self._worker_id})
                return {}

            now = self._clock.now()
            summary: Dict[str, Any] = {}

            with log_latency(logger, "worker_tick", worker_id=self._worker_id):
                runs = await self._step("poll_and_run", self._run_executor.poll_and_run(now))
                summary["runs_started"] = len(runs) if runs is not None else None

                if self._reconciler is not None:
                    summary["sla_breaches"] = await self._step(
                        "reconcile_sla_breaches", self._reconciler.reconcile_sla_breaches(now)
                    )
                    summary["unsuppressed"] = await self._step(
                        "reconcile_suppression_expiry", self._reconciler.reconcile_suppression_expiry(now)
                    )

                if self._dispatcher is not None:
                    summary["deliveries"] = await self._step(
                        "dispatch_pending_deliveries", self._dispatcher.dispatch_pending()
                    )

            return summary

    async def _step(self, name: str, awaitable) -> Any:
        try:
            return await awaitable
        except Exception:
            logger.exception("Worker step failed", extra={"step": name, "worker_id": self._worker_id})
            return None

    async def wait_idle(self) -> None:
        """Wait for the tick in flight, if any."""
        async with self._lock:
            return

    async def start(self, scheduler: "MonitoringScheduler") -> None:
        """Schedule `tick` on the given scheduler."""
        self._stopping = False
        self._scheduler = scheduler
        await scheduler.start(self.tick)
        logger.info("Monitoring worker started", extra={"worker_id": self._worker_id})

    async def stop(self) -> None:
        """Stop scheduling ticks and wait for the one in flight to finish."""
        self._stopping = True
        if self._scheduler is not None:
            await self._scheduler.stop()
            self._scheduler = None
        await self.wait_idle()
        logger.info("Monitoring worker stopped", extra={"worker_id": self._worker_id})
