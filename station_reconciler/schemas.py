from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Set, Tuple, Union

from pydantic import BaseModel, Field

from station_reconciler.core.exceptions import DataAnomaly
from station_reconciler.core.utils import json_dumps


class RentalStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class CloseReason(str, Enum):
    AUTO_RETURNED_PRESENT = "AutoReturnedPresent"
    AUTO_RETURNED_OVERDUE = "AutoReturnedOverdue"
    AUTO_CLOSED_DUPLICATE = "AutoClosedDuplicate"


class StationStatus(str, Enum):
    ONLINE = "Online"
    DEGRADED = "Degraded"
    OFFLINE = "Offline"


class SlotState(str, Enum):
    EMPTY = "Empty"
    OCCUPIED = "Occupied"
    RENTED = "Rented"


# Telemetry (lives for one pass only)


@dataclass(frozen=True)
class SlotObservation:
    slot_id: Optional[int]
    battery_id: Optional[str]
    charge_level: int = 0
    lock_engaged: bool = False
    abnormal_flags: FrozenSet[str] = frozenset()
    raw_slot_id: Optional[str] = None


@dataclass(frozen=True)
class Reachable:
    slots: Tuple[SlotObservation, ...] = ()


@dataclass(frozen=True)
class Unreachable:
    reason: str


TelemetryResult = Union[Reachable, Unreachable]


# Ledger records, detached from the ORM session


@dataclass(frozen=True)
class StationInfo:
    station_id: str
    capacity: int
    name: str = ""
    location: str = ""


@dataclass(frozen=True)
class RentalRecord:
    rental_id: str
    battery_id: str
    station_id: str
    slot_id: Optional[int]
    price_tier: Decimal
    opened_at: datetime
    customer_ref: str = ""
    status: RentalStatus = RentalStatus.OPEN


@dataclass(frozen=True)
class RentalClosure:
    rental_id: str
    battery_id: str
    station_id: str
    reason: CloseReason
    closed_at: datetime
    found_at_station_id: Optional[str] = None
    found_at_slot_id: Optional[int] = None

    @property
    def note(self) -> str:
        if self.reason is CloseReason.AUTO_RETURNED_PRESENT:
            return f"Auto-closed (battery physically at {self.found_at_station_id})"
        if self.reason is CloseReason.AUTO_RETURNED_OVERDUE:
            return "Auto-closed (overdue rental)"
        return "Auto-closed (superseded by a newer rental of the same battery)"


# Published snapshot


class SlotView(BaseModel):
    slot_id: int
    state: SlotState
    battery_id: Optional[str] = None
    charge_level: Optional[int] = None
    online: Optional[bool] = None
    rental_id: Optional[str] = None
    opened_at: Optional[datetime] = None
    overdue: Optional[bool] = None

    @classmethod
    def empty(cls, slot_id: int) -> "SlotView":
        return cls(slot_id=slot_id, state=SlotState.EMPTY)

    @classmethod
    def occupied(cls, observation: SlotObservation) -> "SlotView":
        return cls(
            slot_id=observation.slot_id,
            state=SlotState.OCCUPIED,
            battery_id=observation.battery_id,
            charge_level=observation.charge_level,
            online=observation.lock_engaged,
        )

    @classmethod
    def rented(cls, slot_id: int, rental: RentalRecord, overdue: bool) -> "SlotView":
        return cls(
            slot_id=slot_id,
            state=SlotState.RENTED,
            battery_id=rental.battery_id,
            rental_id=rental.rental_id,
            opened_at=rental.opened_at,
            overdue=overdue,
        )


class AnomalyRecord(BaseModel):
    kind: str
    detail: str


class CorrectionRecord(BaseModel):
    rental_id: str
    battery_id: str
    reason: CloseReason
    found_at_station_id: Optional[str] = None


class StationSnapshot(BaseModel):
    station_id: str
    name: str = ""
    location: str = ""
    capacity: int
    status: StationStatus
    reason: Optional[str] = None
    generated_at: datetime
    slots: List[SlotView] = Field(default_factory=list)
    available_count: int = 0
    rented_count: int = 0
    overdue_count: int = 0
    unplaced_rentals: List[str] = Field(default_factory=list)
    anomalies: List[AnomalyRecord] = Field(default_factory=list)
    corrections: List[CorrectionRecord] = Field(default_factory=list)

    def to_json(self) -> str:
        """Canonical serialization; identical snapshots give identical bytes."""
        return json_dumps(self.model_dump(mode="json"))


# Pass bookkeeping


@dataclass
class ReconciliationPlan:
    snapshots: Dict[str, StationSnapshot] = field(default_factory=dict)
    closures: List[RentalClosure] = field(default_factory=list)
    deferred: List[RentalClosure] = field(default_factory=list)
    # stations whose telemetry was read this pass
    observed: Set[str] = field(default_factory=set)
    anomalies: List[DataAnomaly] = field(default_factory=list)
    open_rentals: int = 0
    overdue_rentals: int = 0


@dataclass
class PublishResult:
    snapshots_written: int = 0
    snapshots_failed: int = 0
    closures_applied: int = 0
    closures_noop: int = 0
    closures_failed: int = 0
    aborted: bool = False


@dataclass
class PassResult:
    stations: int
    reachable: int
    closures_applied: int
    closures_failed: int
    closures_deferred: int
    anomalies: int
    duration_sec: float
    ledger_available: bool = True
    statuses: Dict[str, int] = field(default_factory=dict)
