import time
from contextlib import contextmanager
from threading import RLock
from typing import Callable, Iterator, List, Optional

from cachetools import TTLCache
from loguru import logger
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from station_reconciler.config.settings import Settings
from station_reconciler.core.exceptions import LedgerReadFailure, LedgerWriteFailure
from station_reconciler.core.utils import utcnow
from station_reconciler.db.repositories.rental import RentalRepository
from station_reconciler.db.repositories.snapshot import SnapshotRepository
from station_reconciler.db.repositories.station import StationRepository
from station_reconciler.monitoring.metrics import MetricsCollector
from station_reconciler.schemas import (
    RentalClosure,
    RentalRecord,
    StationInfo,
    StationSnapshot,
)


class LedgerStore:
    """Ledger access for the reconciler.

    Every operation runs in its own short transaction, so a failure on one
    rental or one station never rolls back work done for another. Station
    metadata is served from a bounded TTL cache that is invalidated
    explicitly when the station row changes.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Settings,
        timer: Callable[[], float] = time.monotonic,
    ):
        self._session_factory = session_factory
        self._write_retries = settings.ledger_write_retries
        self._metadata_cache: TTLCache = TTLCache(
            maxsize=settings.station_metadata_cache_size,
            ttl=settings.station_metadata_ttl_sec,
            timer=timer,
        )
        self._cache_lock = RLock()

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        started = time.perf_counter()
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
            MetricsCollector.record_database_query(operation, time.perf_counter() - started)

    # Reads

    def list_station_ids(self) -> List[str]:
        try:
            with self._session("list_stations") as session:
                return StationRepository(session).list_ids()
        except SQLAlchemyError as e:
            raise LedgerReadFailure(f"Failed to list stations: {e}") from e

    def get_station_metadata(self, station_id: str) -> StationInfo:
        with self._cache_lock:
            cached = self._metadata_cache.get(station_id)
        if cached is not None:
            return cached

        try:
            with self._session("get_station") as session:
                info = StationRepository(session).get_info(station_id)
        except SQLAlchemyError as e:
            raise LedgerReadFailure(
                f"Failed to load station {station_id}: {e}"
            ) from e

        if info is None:
            raise LedgerReadFailure(f"Station {station_id} not found")

        with self._cache_lock:
            self._metadata_cache[station_id] = info
        return info

    def invalidate_station(self, station_id: Optional[str] = None) -> None:
        with self._cache_lock:
            if station_id is None:
                self._metadata_cache.clear()
            else:
                self._metadata_cache.pop(station_id, None)

    def list_open_rentals(self) -> List[RentalRecord]:
        try:
            with self._session("list_open_rentals") as session:
                return RentalRepository(session).list_open_records()
        except SQLAlchemyError as e:
            raise LedgerReadFailure(f"Failed to list open rentals: {e}") from e

    def get_station_snapshot(self, station_id: str) -> Optional[StationSnapshot]:
        try:
            with self._session("get_snapshot") as session:
                return SnapshotRepository(session).get_snapshot(station_id)
        except SQLAlchemyError as e:
            raise LedgerReadFailure(
                f"Failed to load snapshot for {station_id}: {e}"
            ) from e

    # Writes

    def close_rental(self, closure: RentalClosure) -> bool:
        """Apply one closure. Returns False when the rental was already closed."""
        last_error: Optional[Exception] = None
        for attempt in range(1, self._write_retries + 1):
            try:
                with self._session("close_rental") as session:
                    return RentalRepository(session).close_rental(
                        closure.rental_id,
                        closure.reason.value,
                        closure.closed_at,
                        note=closure.note,
                        found_at_station_id=closure.found_at_station_id,
                    )
            except OperationalError as e:
                last_error = e
                logger.warning(
                    f"Contention closing rental {closure.rental_id} "
                    f"(attempt {attempt}/{self._write_retries}): {e}"
                )
                if attempt < self._write_retries:
                    time.sleep(0.05 * 2 ** (attempt - 1))
            except SQLAlchemyError as e:
                raise LedgerWriteFailure(
                    f"Failed to close rental {closure.rental_id}: {e}",
                    rental_id=closure.rental_id,
                ) from e

        raise LedgerWriteFailure(
            f"Gave up closing rental {closure.rental_id}: {last_error}",
            rental_id=closure.rental_id,
        )

    def write_station_snapshot(self, snapshot: StationSnapshot, reachable: bool) -> None:
        now = utcnow()
        try:
            with self._session("write_snapshot") as session:
                SnapshotRepository(session).write_snapshot(snapshot, now)
                changed = StationRepository(session).set_reachability(
                    snapshot.station_id, reachable, now
                )
        except SQLAlchemyError as e:
            raise LedgerWriteFailure(
                f"Failed to write snapshot for {snapshot.station_id}: {e}",
                station_id=snapshot.station_id,
            ) from e

        if changed:
            logger.info(
                f"Station {snapshot.station_id} is now "
                f"{'reachable' if reachable else 'unreachable'}"
            )
            self.invalidate_station(snapshot.station_id)
