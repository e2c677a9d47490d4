from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Station(Base):
    __tablename__ = "stations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # station IMEI
    name: Mapped[str] = mapped_column(String(128), default="")
    location: Mapped[str] = mapped_column(String(256), default="")
    iccid: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    capacity: Mapped[int] = mapped_column(Integer, default=8)
    reachable: Mapped[bool] = mapped_column(Boolean, default=False)
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


class Rental(Base):
    __tablename__ = "rentals"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    battery_id: Mapped[str] = mapped_column(String(64), index=True)
    station_id: Mapped[str] = mapped_column(String(64), index=True)
    slot_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    customer_ref: Mapped[str] = mapped_column(String(64), default="")
    price_tier: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    status: Mapped[str] = mapped_column(String(16), index=True)  # OPEN / CLOSED
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    closed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    close_reason: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    correction_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    found_at_station_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )


Index("ix_rentals_status_battery", Rental.status, Rental.battery_id)


class StationSnapshotRecord(Base):
    __tablename__ = "station_snapshots"

    station_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(16))
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    available_count: Mapped[int] = mapped_column(Integer, default=0)
    rented_count: Mapped[int] = mapped_column(Integer, default=0)
    overdue_count: Mapped[int] = mapped_column(Integer, default=0)
    payload: Mapped[str] = mapped_column(Text)
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
