from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Sequence, Set, Tuple

from loguru import logger

from station_reconciler.config.settings import Settings, parse_price_tiers
from station_reconciler.core.exceptions import DataAnomaly
from station_reconciler.schemas import (
    AnomalyRecord,
    CloseReason,
    CorrectionRecord,
    Reachable,
    ReconciliationPlan,
    RentalClosure,
    RentalRecord,
    StationInfo,
    StationSnapshot,
    StationStatus,
    TelemetryResult,
    Unreachable,
)
from station_reconciler.services.slots import SlotLayout

LEDGER_UNAVAILABLE = "ledger unavailable"
METADATA_UNAVAILABLE = "station metadata unavailable"


@dataclass(frozen=True)
class Sighting:
    station_id: str
    slot_id: Optional[int]


@dataclass(frozen=True)
class ReconciliationPolicy:
    grace_period: timedelta
    allowances: Dict[Decimal, timedelta] = field(default_factory=dict)
    auto_close_overdue: bool = False
    min_available_charge: int = 60

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReconciliationPolicy":
        return cls(
            grace_period=timedelta(seconds=settings.grace_period_sec),
            allowances={
                tier: timedelta(seconds=seconds)
                for tier, seconds in parse_price_tiers(
                    settings.price_tier_allowances
                ).items()
            },
            auto_close_overdue=settings.auto_close_overdue,
            min_available_charge=settings.min_available_charge,
        )

    def allowance_for(self, price_tier: Decimal) -> Optional[timedelta]:
        return self.allowances.get(Decimal(price_tier))

    def in_grace_period(self, rental: RentalRecord, now: datetime) -> bool:
        return now - rental.opened_at < self.grace_period


class ReconciliationEngine:
    """Merges one pass of fleet telemetry with the open-rental ledger.

    The engine does no I/O. Given the same stations, telemetry, rentals and
    reference time it returns the same plan, which the publisher then
    applies. Fleet-wide steps run in a fixed order: duplicate collapse,
    then presence-implies-return, then overdue classification, then the
    per-station slot overlay.
    """

    def __init__(self, policy: ReconciliationPolicy):
        self.policy = policy

    def reconcile(
        self,
        stations: Sequence[StationInfo],
        telemetry: Mapping[str, TelemetryResult],
        open_rentals: Optional[Sequence[RentalRecord]],
        now: datetime,
        metadata_unavailable: Sequence[str] = (),
    ) -> ReconciliationPlan:
        """Build the plan for one pass.

        `metadata_unavailable` lists registered stations whose metadata could
        not be read; they are published as Degraded and never fetched. A
        rental whose station is neither in `stations` nor in that list
        belongs to no registered station.
        """
        plan = ReconciliationPlan()
        stations = sorted(stations, key=lambda s: s.station_id)
        registered = {s.station_id for s in stations} | set(metadata_unavailable)

        layouts: Dict[str, SlotLayout] = {}
        for station in stations:
            result = telemetry.get(station.station_id)
            if isinstance(result, Reachable):
                layout = SlotLayout.empty(station.station_id, station.capacity)
                layout.apply_observations(result.slots)
                layouts[station.station_id] = layout
        plan.observed = set(layouts)

        presence, presence_anomalies = self.fleet_presence(stations, telemetry)

        remaining: List[RentalRecord] = []
        overdue: Dict[str, bool] = {}
        tier_anomalies: List[DataAnomaly] = []
        unknown_anomalies: List[DataAnomaly] = []
        ledger_available = open_rentals is not None

        if ledger_available:
            unknown_anomalies = self.unknown_stations(open_rentals, registered)
            survivors, duplicates = self.collapse_duplicates(open_rentals, now)
            survivors, returned = self.close_present(survivors, presence, now)
            remaining, overdue, expired, tier_anomalies = self.classify_overdue(
                survivors, presence, now
            )

            for closure in sorted(
                duplicates + returned + expired, key=lambda c: c.rental_id
            ):
                if closure.station_id in layouts:
                    plan.closures.append(closure)
                elif closure.station_id not in registered:
                    # no station to observe, so nothing to wait for
                    logger.info(
                        f"Applying {closure.reason.value} closure of rental "
                        f"{closure.rental_id}: station {closure.station_id} is not registered"
                    )
                    plan.closures.append(closure)
                else:
                    # fail-open: the rental's own station was not observed this pass
                    logger.info(
                        f"Deferring {closure.reason.value} closure of rental "
                        f"{closure.rental_id}: station {closure.station_id} not reachable"
                    )
                    plan.deferred.append(closure)

            # deferred rentals are still open in the ledger
            by_id = {r.rental_id: r for r in open_rentals}
            for closure in plan.deferred:
                plan.open_rentals += 1
                if self.is_overdue(by_id[closure.rental_id], now):
                    plan.overdue_rentals += 1
        else:
            logger.warning("Open rentals unavailable; publishing telemetry-only snapshots")

        plan.open_rentals += len(remaining)
        plan.overdue_rentals += sum(1 for r in remaining if overdue.get(r.rental_id))
        plan.anomalies.extend(unknown_anomalies)
        plan.anomalies.extend(presence_anomalies)
        plan.anomalies.extend(tier_anomalies)

        for sid in sorted(set(metadata_unavailable) - {s.station_id for s in stations}):
            plan.snapshots[sid] = StationSnapshot(
                station_id=sid,
                capacity=0,
                status=StationStatus.DEGRADED,
                reason=METADATA_UNAVAILABLE,
                generated_at=now,
            )

        for station in stations:
            sid = station.station_id
            result = telemetry.get(sid) or Unreachable("no telemetry collected")
            if sid not in layouts:
                plan.snapshots[sid] = self.offline_snapshot(station, result.reason, now)
                continue
            try:
                plan.snapshots[sid] = self.station_snapshot(
                    station,
                    layouts[sid],
                    [r for r in remaining if r.station_id == sid],
                    overdue,
                    [a for a in tier_anomalies + presence_anomalies if a.station_id == sid],
                    [c for c in plan.closures if c.station_id == sid],
                    ledger_available,
                    now,
                )
            except Exception as e:  # noqa: BLE001
                logger.exception(f"Failed to build snapshot for station {sid}: {e}")
                plan.snapshots[sid] = StationSnapshot(
                    station_id=sid,
                    name=station.name,
                    location=station.location,
                    capacity=station.capacity,
                    status=StationStatus.DEGRADED,
                    reason=f"reconciliation error: {e}",
                    generated_at=now,
                )
            plan.anomalies.extend(layouts[sid].anomalies)

        return plan

    # Fleet-wide steps

    @staticmethod
    def fleet_presence(
        stations: Sequence[StationInfo], telemetry: Mapping[str, TelemetryResult]
    ) -> Tuple[Dict[str, Sighting], List[DataAnomaly]]:
        """Every battery seen by any reachable station this pass."""
        presence: Dict[str, Sighting] = {}
        anomalies: List[DataAnomaly] = []
        for station in stations:
            result = telemetry.get(station.station_id)
            if not isinstance(result, Reachable):
                continue
            for observation in result.slots:
                battery_id = observation.battery_id
                if battery_id is None:
                    continue
                seen = presence.get(battery_id)
                if seen is not None:
                    if seen.station_id != station.station_id or seen.slot_id != observation.slot_id:
                        anomaly = DataAnomaly(
                            "battery_seen_twice",
                            station.station_id,
                            f"battery {battery_id} also reported at "
                            f"{seen.station_id} slot {seen.slot_id}",
                            battery_id=battery_id,
                        )
                        logger.warning(f"Data anomaly: {anomaly}")
                        anomalies.append(anomaly)
                    continue
                presence[battery_id] = Sighting(station.station_id, observation.slot_id)
        return presence, anomalies

    @staticmethod
    def unknown_stations(
        rentals: Sequence[RentalRecord], registered: Set[str]
    ) -> List[DataAnomaly]:
        """Open rentals that name a station missing from the station registry."""
        anomalies: List[DataAnomaly] = []
        for rental in sorted(rentals, key=lambda r: r.rental_id):
            if rental.station_id in registered:
                continue
            anomaly = DataAnomaly(
                "rental_station_unknown",
                rental.station_id,
                f"rental {rental.rental_id} belongs to unregistered station "
                f"{rental.station_id}",
                rental_id=rental.rental_id,
                battery_id=rental.battery_id,
            )
            logger.warning(f"Data anomaly: {anomaly}")
            anomalies.append(anomaly)
        return anomalies

    @staticmethod
    def collapse_duplicates(
        rentals: Sequence[RentalRecord], now: datetime
    ) -> Tuple[List[RentalRecord], List[RentalClosure]]:
        by_battery: Dict[str, List[RentalRecord]] = defaultdict(list)
        for rental in rentals:
            by_battery[rental.battery_id].append(rental)

        survivors: List[RentalRecord] = []
        closures: List[RentalClosure] = []
        for battery_id, group in by_battery.items():
            group.sort(key=lambda r: (r.opened_at, r.rental_id))
            keeper = group[-1]
            survivors.append(keeper)
            for stale in group[:-1]:
                logger.info(
                    f"Duplicate open rental {stale.rental_id} for battery {battery_id}; "
                    f"keeping {keeper.rental_id}"
                )
                closures.append(
                    RentalClosure(
                        rental_id=stale.rental_id,
                        battery_id=battery_id,
                        station_id=stale.station_id,
                        reason=CloseReason.AUTO_CLOSED_DUPLICATE,
                        closed_at=now,
                    )
                )
        survivors.sort(key=lambda r: (r.opened_at, r.rental_id))
        return survivors, closures

    def close_present(
        self,
        rentals: Sequence[RentalRecord],
        presence: Mapping[str, Sighting],
        now: datetime,
    ) -> Tuple[List[RentalRecord], List[RentalClosure]]:
        survivors: List[RentalRecord] = []
        closures: List[RentalClosure] = []
        for rental in rentals:
            sighting = presence.get(rental.battery_id)
            if sighting is None:
                survivors.append(rental)
                continue
            if self.policy.in_grace_period(rental, now):
                logger.debug(
                    f"Rental {rental.rental_id} within grace period; "
                    f"ignoring sighting of {rental.battery_id} at {sighting.station_id}"
                )
                survivors.append(rental)
                continue

            logger.info(
                f"Ghost rental {rental.rental_id}: battery {rental.battery_id} rented at "
                f"{rental.station_id}, found at {sighting.station_id} slot {sighting.slot_id}"
            )
            closures.append(
                RentalClosure(
                    rental_id=rental.rental_id,
                    battery_id=rental.battery_id,
                    station_id=rental.station_id,
                    reason=CloseReason.AUTO_RETURNED_PRESENT,
                    closed_at=now,
                    found_at_station_id=sighting.station_id,
                    found_at_slot_id=sighting.slot_id,
                )
            )
        return survivors, closures

    def is_overdue(self, rental: RentalRecord, now: datetime) -> bool:
        allowance = self.policy.allowance_for(rental.price_tier)
        return allowance is not None and now >= rental.opened_at + allowance

    def classify_overdue(
        self,
        rentals: Sequence[RentalRecord],
        presence: Mapping[str, Sighting],
        now: datetime,
    ) -> Tuple[List[RentalRecord], Dict[str, bool], List[RentalClosure], List[DataAnomaly]]:
        remaining: List[RentalRecord] = []
        overdue: Dict[str, bool] = {}
        closures: List[RentalClosure] = []
        anomalies: List[DataAnomaly] = []

        for rental in rentals:
            allowance = self.policy.allowance_for(rental.price_tier)
            if allowance is None:
                anomaly = DataAnomaly(
                    "unknown_price_tier",
                    rental.station_id,
                    f"rental {rental.rental_id} has price tier {rental.price_tier} "
                    f"with no allowed duration",
                    rental_id=rental.rental_id,
                )
                logger.warning(f"Data anomaly: {anomaly}")
                anomalies.append(anomaly)
                is_overdue = False
            else:
                is_overdue = self.is_overdue(rental, now)

            if (
                is_overdue
                and self.policy.auto_close_overdue
                and rental.battery_id not in presence
            ):
                logger.info(
                    f"Overdue rental {rental.rental_id}: battery {rental.battery_id} "
                    f"absent since {rental.opened_at.isoformat()}"
                )
                closures.append(
                    RentalClosure(
                        rental_id=rental.rental_id,
                        battery_id=rental.battery_id,
                        station_id=rental.station_id,
                        reason=CloseReason.AUTO_RETURNED_OVERDUE,
                        closed_at=now,
                    )
                )
                continue

            overdue[rental.rental_id] = is_overdue
            remaining.append(rental)

        return remaining, overdue, closures, anomalies

    # Per-station steps

    @staticmethod
    def offline_snapshot(
        station: StationInfo, reason: str, now: datetime
    ) -> StationSnapshot:
        return StationSnapshot(
            station_id=station.station_id,
            name=station.name,
            location=station.location,
            capacity=station.capacity,
            status=StationStatus.OFFLINE,
            reason=reason,
            generated_at=now,
        )

    def station_snapshot(
        self,
        station: StationInfo,
        layout: SlotLayout,
        rentals: Sequence[RentalRecord],
        overdue: Mapping[str, bool],
        extra_anomalies: Sequence[DataAnomaly],
        closures: Sequence[RentalClosure],
        ledger_available: bool,
        now: datetime,
    ) -> StationSnapshot:
        rentals = sorted(rentals, key=lambda r: (r.opened_at, r.rental_id))
        unplaced = layout.place_rentals(rentals, dict(overdue))

        anomalies = list(layout.anomalies) + list(extra_anomalies)
        if not ledger_available:
            status, reason = StationStatus.DEGRADED, LEDGER_UNAVAILABLE
        elif anomalies:
            status = StationStatus.DEGRADED
            reason = f"{len(anomalies)} data anomal{'y' if len(anomalies) == 1 else 'ies'}"
        else:
            status, reason = StationStatus.ONLINE, None

        return StationSnapshot(
            station_id=station.station_id,
            name=station.name,
            location=station.location,
            capacity=station.capacity,
            status=status,
            reason=reason,
            generated_at=now,
            slots=list(layout.slots),
            available_count=layout.available_count(self.policy.min_available_charge),
            rented_count=len(rentals),
            overdue_count=sum(1 for r in rentals if overdue.get(r.rental_id)),
            unplaced_rentals=unplaced,
            anomalies=[AnomalyRecord(kind=a.kind, detail=a.detail) for a in anomalies],
            corrections=[
                CorrectionRecord(
                    rental_id=c.rental_id,
                    battery_id=c.battery_id,
                    reason=c.reason,
                    found_at_station_id=c.found_at_station_id,
                )
                for c in sorted(closures, key=lambda c: c.rental_id)
            ],
        )
