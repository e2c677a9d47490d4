from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from station_reconciler.db.models import Station
from station_reconciler.schemas import StationInfo


class StationRepository:
    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, station_id: str) -> Optional[Station]:
        return self.session.get(Station, station_id)

    def list_ids(self) -> List[str]:
        return list(
            self.session.execute(select(Station.id).order_by(Station.id)).scalars().all()
        )

    def get_info(self, station_id: str) -> Optional[StationInfo]:
        station = self.get_by_id(station_id)
        if not station:
            return None
        return StationInfo(
            station_id=station.id,
            capacity=station.capacity,
            name=station.name or "",
            location=station.location or "",
        )

    def set_reachability(self, station_id: str, reachable: bool, at: datetime) -> bool:
        """Returns True when the flag actually flipped."""
        station = self.get_by_id(station_id)
        if not station:
            return False

        changed = station.reachable != reachable
        station.reachable = reachable
        if reachable:
            station.last_seen_at = at
        station.updated_at = at
        return changed
