"""Fixed-capacity slot layout of one station.

The layout starts as `capacity` empty slots, then takes telemetry
observations, then open rentals. Telemetry always keeps the slots it
reports on; rentals only go into slots left empty.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from loguru import logger

from station_reconciler.core.exceptions import DataAnomaly
from station_reconciler.schemas import (
    RentalRecord,
    SlotObservation,
    SlotState,
    SlotView,
)


@dataclass(frozen=True)
class SlotAssignment:
    assigned: Dict[str, int]
    unplaced: Tuple[str, ...]


def assign_slots(
    capacity: int,
    occupied: Iterable[int],
    requests: Sequence[Tuple[str, Optional[int]]],
) -> SlotAssignment:
    """Assign slots to (key, preferred_slot) requests.

    A request keeps its preferred slot when that slot is in range and free.
    Everything else gets the lowest free slot, in request order. Preferred
    slots are honoured before any fallback is handed out, so an earlier
    request can never steal a later request's recorded slot.
    """
    taken = {slot for slot in occupied if 1 <= slot <= capacity}
    assigned: Dict[str, int] = {}
    pending: List[str] = []

    for key, preferred in requests:
        if preferred is not None and 1 <= preferred <= capacity and preferred not in taken:
            assigned[key] = preferred
            taken.add(preferred)
        else:
            pending.append(key)

    free = (slot for slot in range(1, capacity + 1) if slot not in taken)
    unplaced: List[str] = []
    for key in pending:
        slot = next(free, None)
        if slot is None:
            unplaced.append(key)
            continue
        assigned[key] = slot
        taken.add(slot)

    return SlotAssignment(assigned=assigned, unplaced=tuple(unplaced))


def is_serviceable(observation: SlotObservation, min_charge: int) -> bool:
    return (
        observation.battery_id is not None
        and observation.lock_engaged
        and observation.charge_level >= min_charge
        and not observation.abnormal_flags
    )


@dataclass
class SlotLayout:
    station_id: str
    capacity: int
    slots: List[SlotView] = field(default_factory=list)
    observations: Dict[int, SlotObservation] = field(default_factory=dict)
    anomalies: List[DataAnomaly] = field(default_factory=list)

    @classmethod
    def empty(cls, station_id: str, capacity: int) -> "SlotLayout":
        return cls(
            station_id=station_id,
            capacity=capacity,
            slots=[SlotView.empty(slot_id) for slot_id in range(1, capacity + 1)],
        )

    def _anomaly(self, kind: str, detail: str, **context) -> None:
        anomaly = DataAnomaly(kind, self.station_id, detail, **context)
        logger.warning(f"Data anomaly: {anomaly} {context}")
        self.anomalies.append(anomaly)

    def apply_observations(self, observations: Iterable[SlotObservation]) -> None:
        for observation in observations:
            slot_id = observation.slot_id
            if slot_id is None or not 1 <= slot_id <= self.capacity:
                self._anomaly(
                    "slot_out_of_range",
                    f"telemetry slot {observation.raw_slot_id!r} outside 1..{self.capacity}",
                    battery_id=observation.battery_id,
                    raw_slot_id=observation.raw_slot_id,
                )
                continue
            if slot_id in self.observations:
                self._anomaly(
                    "slot_reported_twice",
                    f"telemetry reported slot {slot_id} more than once",
                    battery_id=observation.battery_id,
                    slot_id=slot_id,
                )
                continue

            self.observations[slot_id] = observation
            if observation.battery_id is not None:
                self.slots[slot_id - 1] = SlotView.occupied(observation)

    def occupied_slot_ids(self) -> List[int]:
        return [view.slot_id for view in self.slots if view.state is not SlotState.EMPTY]

    def place_rentals(
        self, rentals: Sequence[RentalRecord], overdue: Dict[str, bool]
    ) -> List[str]:
        """Overlay open rentals on empty slots; returns ids left without a slot."""
        assignment = assign_slots(
            self.capacity,
            self.occupied_slot_ids(),
            [(rental.rental_id, rental.slot_id) for rental in rentals],
        )
        by_id = {rental.rental_id: rental for rental in rentals}
        for rental_id, slot_id in assignment.assigned.items():
            rental = by_id[rental_id]
            if slot_id != rental.slot_id:
                logger.debug(
                    f"Rental {rental_id} moved from recorded slot {rental.slot_id} "
                    f"to virtual slot {slot_id} at station {self.station_id}"
                )
            self.slots[slot_id - 1] = SlotView.rented(
                slot_id, rental, overdue.get(rental_id, False)
            )

        for rental_id in assignment.unplaced:
            self._anomaly(
                "rentals_exceed_capacity",
                f"no free slot for open rental {rental_id}",
                rental_id=rental_id,
                battery_id=by_id[rental_id].battery_id,
            )
        return list(assignment.unplaced)

    def available_count(self, min_charge: int) -> int:
        return sum(
            1
            for slot_id, observation in self.observations.items()
            if self.slots[slot_id - 1].state is SlotState.OCCUPIED
            and is_serviceable(observation, min_charge)
        )
