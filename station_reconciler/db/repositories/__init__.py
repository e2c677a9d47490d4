from .rental import RentalRepository
from .snapshot import SnapshotRepository
from .station import StationRepository

__all__ = [
    "RentalRepository",
    "SnapshotRepository",
    "StationRepository",
]
