from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from station_reconciler.core.utils import aware
from station_reconciler.db.models import Rental
from station_reconciler.schemas import RentalRecord, RentalStatus


class RentalRepository:
    def __init__(self, session: Session):
        self.session = session

    def list_open(self) -> List[Rental]:
        return list(
            self.session.execute(
                select(Rental)
                .where(Rental.status == RentalStatus.OPEN.value)
                .order_by(Rental.opened_at, Rental.id)
            )
            .scalars()
            .all()
        )

    def list_open_records(self) -> List[RentalRecord]:
        return [self.to_record(rental) for rental in self.list_open()]

    def close_rental(
        self,
        rental_id: str,
        reason: str,
        closed_at: datetime,
        note: Optional[str] = None,
        found_at_station_id: Optional[str] = None,
    ) -> bool:
        """Close an open rental. Returns False if it was already closed."""
        result = self.session.execute(
            update(Rental)
            .where(Rental.id == rental_id, Rental.status == RentalStatus.OPEN.value)
            .values(
                status=RentalStatus.CLOSED.value,
                closed_at=closed_at,
                close_reason=reason,
                correction_note=note,
                found_at_station_id=found_at_station_id,
            )
        )

        updated = result.rowcount > 0
        if updated:
            logger.info(f"Closed rental {rental_id} with reason {reason}")
        else:
            logger.debug(f"Rental {rental_id} already closed, nothing to do")
        return updated

    @staticmethod
    def to_record(rental: Rental) -> RentalRecord:
        return RentalRecord(
            rental_id=rental.id,
            battery_id=rental.battery_id,
            station_id=rental.station_id,
            slot_id=rental.slot_id,
            price_tier=Decimal(rental.price_tier),
            opened_at=aware(rental.opened_at),
            customer_ref=rental.customer_ref or "",
            status=RentalStatus(rental.status),
        )
