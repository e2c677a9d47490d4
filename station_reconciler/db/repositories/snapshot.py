import json
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from station_reconciler.db.models import StationSnapshotRecord
from station_reconciler.schemas import StationSnapshot


class SnapshotRepository:
    def __init__(self, session: Session):
        self.session = session

    def get_record(self, station_id: str) -> Optional[StationSnapshotRecord]:
        return self.session.get(StationSnapshotRecord, station_id)

    def write_snapshot(self, snapshot: StationSnapshot, written_at: datetime) -> None:
        # full overwrite keyed by station
        self.session.merge(
            StationSnapshotRecord(
                station_id=snapshot.station_id,
                status=snapshot.status.value,
                reason=snapshot.reason,
                available_count=snapshot.available_count,
                rented_count=snapshot.rented_count,
                overdue_count=snapshot.overdue_count,
                payload=snapshot.to_json(),
                generated_at=snapshot.generated_at,
                updated_at=written_at,
            )
        )
        self.session.flush()

    def get_snapshot(self, station_id: str) -> Optional[StationSnapshot]:
        record = self.get_record(station_id)
        if not record:
            return None
        return StationSnapshot.model_validate(json.loads(record.payload))
