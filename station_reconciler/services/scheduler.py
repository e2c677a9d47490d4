import time
from collections import Counter
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime
from threading import Event, Lock
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from loguru import logger

from station_reconciler.config.settings import Settings
from station_reconciler.core.exceptions import LedgerReadFailure, TelemetryUnreachable
from station_reconciler.core.utils import utcnow
from station_reconciler.db.ledger import LedgerStore
from station_reconciler.monitoring.metrics import MetricsCollector
from station_reconciler.schemas import (
    PassResult,
    RentalRecord,
    StationInfo,
    TelemetryResult,
    Unreachable,
)
from station_reconciler.services.publisher import SnapshotPublisher
from station_reconciler.services.reconciliation import ReconciliationEngine

# upper bound on how long shutdown waits for the collection phase to notice
_POLL_SEC = 0.5


class TelemetryAdapter(Protocol):
    def fetch_station_state(self, station_id: str) -> TelemetryResult: ...


class ReconciliationScheduler:
    """Runs reconciliation passes over the whole fleet on a fixed cadence.

    A pass has three phases separated by hard barriers: collect telemetry
    for every station (bounded parallelism, per-pass deadline), decide
    (pure engine over the fleet-wide view), publish. Only one pass runs at
    a time; a tick that finds a pass in progress is skipped.
    """

    def __init__(
        self,
        settings: Settings,
        ledger: LedgerStore,
        telemetry: TelemetryAdapter,
        engine: ReconciliationEngine,
        stop_event: Optional[Event] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._ledger = ledger
        self._telemetry = telemetry
        self._engine = engine
        self._stop_event = stop_event or Event()
        self._publisher = SnapshotPublisher(ledger, self._stop_event)
        self._clock = clock
        self._pass_lock = Lock()

        self._interval = settings.reconcile_interval_sec
        self._concurrency = settings.fetch_concurrency
        self._fetch_deadline = settings.fetch_deadline_sec

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._stop_event.set()

    # Collection phase

    def _fetch_one(self, station_id: str) -> TelemetryResult:
        try:
            return self._telemetry.fetch_station_state(station_id)
        except TelemetryUnreachable as e:
            logger.warning(f"Station {station_id} unreachable: {e.reason}")
            return Unreachable(reason=e.reason)
        except Exception as e:  # noqa: BLE001
            MetricsCollector.record_worker_error("telemetry_adapter_error")
            logger.error(f"Telemetry adapter error for station {station_id}: {e}")
            return Unreachable(reason=f"telemetry adapter error: {e}")

    def collect_telemetry(self, station_ids: Sequence[str]) -> Dict[str, TelemetryResult]:
        """Fetch every station; returns only once all are done or written off."""
        results: Dict[str, TelemetryResult] = {}
        if not station_ids:
            return results

        executor = ThreadPoolExecutor(
            max_workers=self._concurrency, thread_name_prefix="telemetry"
        )
        try:
            futures: Dict[Future, str] = {
                executor.submit(self._fetch_one, station_id): station_id
                for station_id in station_ids
            }
            pending = set(futures)
            deadline = time.monotonic() + self._fetch_deadline

            while pending and not self.stopping:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                done, pending = wait(
                    pending, timeout=min(_POLL_SEC, remaining), return_when=FIRST_COMPLETED
                )
                for future in done:
                    results[futures[future]] = future.result()

            reason = "shutdown" if self.stopping else "telemetry deadline exceeded"
            for future in pending:
                future.cancel()
                station_id = futures[future]
                logger.warning(f"Station {station_id} written off for this pass: {reason}")
                results[station_id] = Unreachable(reason=reason)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return results

    # Pass

    def _load_stations(self) -> Tuple[List[StationInfo], List[str]]:
        """Registered stations, split into loaded metadata and ids that failed to load."""
        stations: List[StationInfo] = []
        unavailable: List[str] = []
        for station_id in self._ledger.list_station_ids():
            try:
                stations.append(self._ledger.get_station_metadata(station_id))
            except LedgerReadFailure as e:
                MetricsCollector.record_worker_error("station_metadata_failed")
                logger.error(f"Station {station_id} published as Degraded this pass: {e}")
                unavailable.append(station_id)
        return stations, unavailable

    def _load_open_rentals(self) -> Optional[List[RentalRecord]]:
        try:
            return self._ledger.list_open_rentals()
        except LedgerReadFailure as e:
            MetricsCollector.record_worker_error("open_rentals_unavailable")
            logger.error(f"Skipping ledger corrections this pass: {e}")
            return None

    def run_pass(self, now: Optional[datetime] = None) -> Optional[PassResult]:
        """Run one pass. Returns None when skipped, aborted or failed; never raises."""
        if not self._pass_lock.acquire(blocking=False):
            MetricsCollector.record_pass("skipped")
            logger.warning("Previous reconciliation pass still running, skipping tick")
            return None
        try:
            return self._run_pass(now)
        except Exception as e:  # noqa: BLE001
            MetricsCollector.record_pass("failed")
            MetricsCollector.record_worker_error("pass_failed")
            logger.exception(f"Reconciliation pass failed: {e}")
            return None
        finally:
            self._pass_lock.release()

    def _run_pass(self, now: Optional[datetime]) -> Optional[PassResult]:
        started = time.perf_counter()

        try:
            stations, unavailable = self._load_stations()
        except LedgerReadFailure as e:
            MetricsCollector.record_pass("failed")
            logger.error(f"Cannot list stations, pass abandoned: {e}")
            return None

        telemetry = self.collect_telemetry([s.station_id for s in stations])
        if self.stopping:
            MetricsCollector.record_pass("aborted")
            logger.warning("Pass aborted during telemetry collection")
            return None

        # reference time is taken after the barrier, so every sighting predates it
        now = now or self._clock()
        open_rentals = self._load_open_rentals()
        plan = self._engine.reconcile(
            stations, telemetry, open_rentals, now, metadata_unavailable=unavailable
        )

        published = self._publisher.publish(plan)
        duration = time.perf_counter() - started
        if published.aborted:
            MetricsCollector.record_pass("aborted", duration)
            logger.warning("Pass aborted during publish; next pass re-derives state")
            return None

        statuses = Counter(s.status.value for s in plan.snapshots.values())
        MetricsCollector.record_pass("completed", duration)
        MetricsCollector.record_station_statuses(dict(statuses))
        MetricsCollector.record_open_rentals(plan.open_rentals, plan.overdue_rentals)
        for anomaly in plan.anomalies:
            MetricsCollector.record_anomaly(anomaly.kind)

        result = PassResult(
            stations=len(stations) + len(unavailable),
            reachable=len(plan.observed),
            closures_applied=published.closures_applied,
            closures_failed=published.closures_failed,
            closures_deferred=len(plan.deferred),
            anomalies=len(plan.anomalies),
            duration_sec=duration,
            ledger_available=open_rentals is not None,
            statuses=dict(statuses),
        )
        logger.info(
            f"Reconciliation pass: stations={result.stations}, "
            f"reachable={result.reachable}, "
            f"closed={result.closures_applied}, "
            f"failed={result.closures_failed}, "
            f"deferred={result.closures_deferred}, "
            f"anomalies={result.anomalies}, "
            f"duration={duration:.2f}s"
        )
        return result

    def run_forever(self) -> None:
        logger.info(f"Starting reconciliation loop: interval={self._interval}s")
        next_tick = time.monotonic()

        while not self.stopping:
            self.run_pass()

            next_tick += self._interval
            lag = time.monotonic() - next_tick
            if lag > 0:
                missed = int(lag // self._interval) + 1
                logger.warning(f"Pass overran the interval, skipping {missed} tick(s)")
                next_tick += missed * self._interval

            self._stop_event.wait(max(0.0, next_tick - time.monotonic()))

        logger.info("Reconciliation loop stopped")
