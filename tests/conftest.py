from datetime import datetime, timedelta, timezone
from decimal import Decimal
from threading import Lock
from typing import Dict, Generator, List, Optional, Union

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from station_reconciler.config.settings import Settings
from station_reconciler.db.database import get_sessionmaker
from station_reconciler.db.ledger import LedgerStore
from station_reconciler.db.models import Base, Rental, Station
from station_reconciler.schemas import Reachable, SlotObservation, TelemetryResult

NOW = datetime(2025, 7, 9, 12, 0, tzinfo=timezone.utc)


def observation(
    slot_id: Optional[int],
    battery_id: Optional[str],
    charge: int = 90,
    locked: bool = True,
    flags=(),
) -> SlotObservation:
    return SlotObservation(
        slot_id=slot_id,
        battery_id=battery_id,
        charge_level=charge,
        lock_engaged=locked,
        abnormal_flags=frozenset(flags),
        raw_slot_id=None if slot_id is None else str(slot_id),
    )


def reachable(*observations: SlotObservation) -> Reachable:
    return Reachable(slots=tuple(observations))


class FakeTelemetry:
    """In-memory telemetry adapter; values may be results or exceptions to raise."""

    def __init__(self, results: Dict[str, Union[TelemetryResult, Exception]]):
        self.results = results
        self.calls: List[str] = []
        self._lock = Lock()

    def fetch_station_state(self, station_id: str) -> TelemetryResult:
        with self._lock:
            self.calls.append(station_id)
        result = self.results.get(station_id, Reachable())
        if isinstance(result, Exception):
            raise result
        if callable(result):
            return result()
        return result


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+pysqlite://",
        grace_period_sec=120,
        price_tier_allowances={"0.5": 2 * 3600, "1": 12 * 3600},
        fetch_concurrency=4,
        fetch_deadline_sec=5.0,
        reconcile_interval_sec=60,
        ledger_write_retries=3,
        metrics_port=0,
    )


@pytest.fixture
def db_engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> sessionmaker:
    return get_sessionmaker(db_engine)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def ledger(session_factory, settings) -> LedgerStore:
    return LedgerStore(session_factory, settings)


@pytest.fixture
def add_station(session_factory):
    def _add(station_id: str, capacity: int = 8, name: str = "", location: str = "") -> None:
        with session_factory() as s:
            s.add(
                Station(
                    id=station_id,
                    name=name or f"Station {station_id}",
                    location=location,
                    capacity=capacity,
                    reachable=False,
                    updated_at=NOW,
                )
            )
            s.commit()

    return _add


@pytest.fixture
def add_rental(session_factory):
    def _add(
        rental_id: str,
        battery_id: str,
        station_id: str = "S1",
        slot_id: Optional[int] = None,
        price_tier: str = "1",
        age: timedelta = timedelta(minutes=30),
        status: str = "OPEN",
    ) -> None:
        with session_factory() as s:
            s.add(
                Rental(
                    id=rental_id,
                    battery_id=battery_id,
                    station_id=station_id,
                    slot_id=slot_id,
                    customer_ref="615123456",
                    price_tier=Decimal(price_tier),
                    status=status,
                    opened_at=NOW - age,
                )
            )
            s.commit()

    return _add


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")
