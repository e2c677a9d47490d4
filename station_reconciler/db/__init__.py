from .database import ensure_schema, get_engine, get_sessionmaker
from .models import Base, Rental, Station, StationSnapshotRecord

__all__ = [
    "Base",
    "Rental",
    "Station",
    "StationSnapshotRecord",
    "ensure_schema",
    "get_engine",
    "get_sessionmaker",
]
