"""
Expiry sweep: demotes processing orders that outlived their payment window.

Expired orders go back to pending (staff review), not to failed. A run handles
at most one batch; whatever is left is picked up by the next scheduled run.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from orderledger.core.exceptions import NoOpTransition
from orderledger.core.monitoring import error_monitor, monitor_errors
from orderledger.models import TRANSACTIONS, OrderStatus, utc_now
from orderledger.schemas.responses import SweepReport
from orderledger.services.status_service import StatusTransitionController
from orderledger.services.store import ResilientStore

logger = logging.getLogger(__name__)


class ExpirySweep:
    """One-shot sweep over stale processing orders"""

    def __init__(
        self,
        store: ResilientStore,
        controller: StatusTransitionController,
        payment_window_seconds: int = 900,
        batch_limit: int = 100,
        sub_batch_size: int = 10,
        pause_seconds: float = 0.2,
    ):
        self.store = store
        self.controller = controller
        self.payment_window_seconds = payment_window_seconds
        self.batch_limit = batch_limit
        self.sub_batch_size = sub_batch_size
        self.pause_seconds = pause_seconds

    @monitor_errors("expiry_sweep")
    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Demote up to `batch_limit` expired orders to pending.

        Per-record failures are collected in the report; only a failure to
        query the candidates fails the run.
        """
        now = now or utc_now()
        cutoff = now - timedelta(seconds=self.payment_window_seconds)

        candidates = await self.store.read(
            TRANSACTIONS,
            {"odrStatus": OrderStatus.PROCESSING.value, "createdAt": {"$lt": cutoff}},
            tag="expiry_scan",
            sort=[("createdAt", 1), ("_id", 1)],
            limit=self.batch_limit,
            projection={"_id": 1, "odrId": 1},
        )

        report = SweepReport(success=True, message="", cutoff=cutoff)

        for start in range(0, len(candidates), self.sub_batch_size):
            batch = candidates[start:start + self.sub_batch_size]
            results = await asyncio.gather(
                *(self.controller.transition(doc["_id"], OrderStatus.PENDING, reason="expiry") for doc in batch),
                return_exceptions=True,
            )

            for doc, result in zip(batch, results):
                if isinstance(result, BaseException) and not isinstance(result, NoOpTransition):
                    report.failed += 1
                    report.errors.append(f"{doc['odrId']}: {type(result).__name__}: {result}")
                    error_monitor.log_error(result, {"operation": "expiry_sweep", "order_id": doc["odrId"]})
                else:
                    report.processed += 1
                    report.order_ids.append(doc["odrId"])

            if start + self.sub_batch_size < len(candidates) and self.pause_seconds > 0:
                await asyncio.sleep(self.pause_seconds)

        report.message = f"Processed {report.processed} expired transactions with {report.failed} failures"
        logger.info(report.message)
        return report


class ExpirySweepRunner:
    """Runs the sweep periodically as a background task"""

    def __init__(self, sweep: ExpirySweep, interval_seconds: float = 60):
        self.sweep = sweep
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="expiry-sweep")
        logger.info(f"Expiry sweep started (every {self.interval_seconds}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Expiry sweep stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.sweep.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Retried wholesale on the next tick
                error_monitor.log_error(e, {"operation": "expiry_sweep_loop"})
            await asyncio.sleep(self.interval_seconds)
