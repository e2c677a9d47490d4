from threading import Event
from typing import Optional

from loguru import logger

from station_reconciler.core.exceptions import LedgerWriteFailure
from station_reconciler.db.ledger import LedgerStore
from station_reconciler.monitoring.metrics import MetricsCollector
from station_reconciler.schemas import PublishResult, ReconciliationPlan


class SnapshotPublisher:
    def __init__(self, ledger: LedgerStore, stop_event: Optional[Event] = None):
        self._ledger = ledger
        self._stop_event = stop_event or Event()

    def _stopping(self) -> bool:
        return self._stop_event.is_set()

    def publish(self, plan: ReconciliationPlan) -> PublishResult:
        """Apply closures one rental at a time, then overwrite every snapshot.

        A failed closure is logged and left for the next pass; it never
        blocks other closures or the snapshot writes. Stops before the
        next mutation once shutdown is requested.
        """
        result = PublishResult()

        for closure in plan.deferred:
            MetricsCollector.record_closure(closure.reason.value, "deferred")

        for closure in plan.closures:
            if self._stopping():
                logger.warning("Shutdown requested, abandoning remaining closures")
                result.aborted = True
                return result
            try:
                applied = self._ledger.close_rental(closure)
            except LedgerWriteFailure as e:
                result.closures_failed += 1
                MetricsCollector.record_closure(closure.reason.value, "failed")
                logger.error(f"Closure of rental {closure.rental_id} failed, retrying next pass: {e}")
                continue

            if applied:
                result.closures_applied += 1
                MetricsCollector.record_closure(closure.reason.value, "applied")
            else:
                result.closures_noop += 1
                MetricsCollector.record_closure(closure.reason.value, "noop")

        for station_id, snapshot in sorted(plan.snapshots.items()):
            if self._stopping():
                logger.warning("Shutdown requested, abandoning remaining snapshot writes")
                result.aborted = True
                return result
            try:
                self._ledger.write_station_snapshot(
                    snapshot, reachable=station_id in plan.observed
                )
            except LedgerWriteFailure as e:
                result.snapshots_failed += 1
                MetricsCollector.record_worker_error("snapshot_write_failed")
                logger.error(f"Snapshot write for station {station_id} failed: {e}")
                continue
            result.snapshots_written += 1

        return result
