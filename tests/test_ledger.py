from datetime import timedelta, timezone
from decimal import Decimal

import pytest
from conftest import NOW
from sqlalchemy.exc import OperationalError

from station_reconciler.core.exceptions import LedgerReadFailure, LedgerWriteFailure
from station_reconciler.db.ledger import LedgerStore
from station_reconciler.db.models import Rental, Station
from station_reconciler.db.repositories.rental import RentalRepository
from station_reconciler.schemas import (
    CloseReason,
    RentalClosure,
    RentalStatus,
    StationSnapshot,
    StationStatus,
)


def _closure(rental_id: str, reason=CloseReason.AUTO_RETURNED_PRESENT, found_at="S2"):
    return RentalClosure(
        rental_id=rental_id,
        battery_id="B1",
        station_id="S1",
        reason=reason,
        closed_at=NOW,
        found_at_station_id=found_at,
    )


# ---------- Rentals ----------


def test_list_open_rentals_returns_detached_records(ledger, add_rental):
    add_rental("r1", "B1", slot_id=3, price_tier="0.5", age=timedelta(hours=1))
    add_rental("r2", "B2", status="CLOSED")

    records = ledger.list_open_rentals()

    assert [r.rental_id for r in records] == ["r1"]
    record = records[0]
    assert record.slot_id == 3
    assert record.price_tier == Decimal("0.5")
    assert record.status is RentalStatus.OPEN
    assert record.opened_at.tzinfo is not None
    assert record.opened_at == NOW - timedelta(hours=1)


def test_close_rental_is_idempotent(ledger, add_rental, db_session):
    add_rental("r1", "B1")

    assert ledger.close_rental(_closure("r1")) is True
    assert ledger.close_rental(_closure("r1")) is False

    rental = db_session.get(Rental, "r1")
    assert rental.status == "CLOSED"
    assert rental.close_reason == "AutoReturnedPresent"
    assert rental.found_at_station_id == "S2"
    assert "S2" in rental.correction_note
    assert rental.closed_at.replace(tzinfo=timezone.utc) == NOW


def test_close_unknown_rental_is_noop(ledger):
    assert ledger.close_rental(_closure("missing")) is False


def test_close_rental_retries_on_contention(ledger, add_rental, monkeypatch):
    add_rental("r1", "B1")
    original = RentalRepository.close_rental
    calls = {"n": 0}

    def flaky(self, *args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise OperationalError("UPDATE rentals", {}, Exception("database is locked"))
        return original(self, *args, **kwargs)

    monkeypatch.setattr(RentalRepository, "close_rental", flaky)
    monkeypatch.setattr("station_reconciler.db.ledger.time.sleep", lambda _s: None)

    assert ledger.close_rental(_closure("r1")) is True
    assert calls["n"] == 2


def test_close_rental_gives_up_after_retries(ledger, add_rental, monkeypatch):
    add_rental("r1", "B1")

    def locked(self, *args, **kwargs):
        raise OperationalError("UPDATE rentals", {}, Exception("database is locked"))

    monkeypatch.setattr(RentalRepository, "close_rental", locked)
    monkeypatch.setattr("station_reconciler.db.ledger.time.sleep", lambda _s: None)

    with pytest.raises(LedgerWriteFailure) as exc_info:
        ledger.close_rental(_closure("r1"))
    assert exc_info.value.rental_id == "r1"


# ---------- Stations & metadata cache ----------


def test_station_metadata_is_cached_until_ttl(session_factory, settings, add_station):
    clock = {"t": 0.0}
    ledger = LedgerStore(session_factory, settings, timer=lambda: clock["t"])
    add_station("S1", capacity=8, name="KM4")

    assert ledger.get_station_metadata("S1").name == "KM4"

    with session_factory() as s:
        s.get(Station, "S1").name = "KM4 Market"
        s.commit()

    assert ledger.get_station_metadata("S1").name == "KM4"

    clock["t"] = settings.station_metadata_ttl_sec + 1
    assert ledger.get_station_metadata("S1").name == "KM4 Market"


def test_station_metadata_invalidation(ledger, session_factory, add_station):
    add_station("S1", capacity=8)
    assert ledger.get_station_metadata("S1").capacity == 8

    with session_factory() as s:
        s.get(Station, "S1").capacity = 6
        s.commit()

    ledger.invalidate_station("S1")
    assert ledger.get_station_metadata("S1").capacity == 6


def test_missing_station_metadata_raises(ledger):
    with pytest.raises(LedgerReadFailure):
        ledger.get_station_metadata("nope")


def test_list_station_ids_sorted(ledger, add_station):
    add_station("S2")
    add_station("S1")
    assert ledger.list_station_ids() == ["S1", "S2"]


# ---------- Snapshots ----------


def _snapshot(status=StationStatus.ONLINE, rented=0) -> StationSnapshot:
    return StationSnapshot(
        station_id="S1",
        capacity=8,
        status=status,
        generated_at=NOW,
        rented_count=rented,
    )


def test_snapshot_write_overwrites_and_flags_reachability(ledger, add_station, db_session):
    add_station("S1")

    ledger.write_station_snapshot(_snapshot(rented=2), reachable=True)
    ledger.write_station_snapshot(_snapshot(StationStatus.OFFLINE), reachable=False)

    stored = ledger.get_station_snapshot("S1")
    assert stored.status is StationStatus.OFFLINE
    assert stored.rented_count == 0

    station = db_session.get(Station, "S1")
    assert station.reachable is False
    assert station.last_seen_at is not None


def test_snapshot_round_trip(ledger, add_station):
    add_station("S1")
    snapshot = _snapshot(rented=1)

    ledger.write_station_snapshot(snapshot, reachable=True)

    assert ledger.get_station_snapshot("S1").to_json() == snapshot.to_json()
    assert ledger.get_station_snapshot("S9") is None
