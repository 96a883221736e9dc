"""
Module: meter_kernel.models.meter_reading
Responsibility: ORM persistence for standalone meter readings.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - reading is non-negative (CHECK constraint).
    - Chronological monotonicity against every other data point is enforced
      by ``ChronologyValidator`` before insert, never by the database.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, Date, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from meter_kernel.db.base import TrackedBase, UUIDString


class MeterReading(TrackedBase):
    """A reading of the shared meter taken by one user on one day."""

    __tablename__ = "meter_readings"

    __table_args__ = (
        CheckConstraint("reading >= 0", name="ck_meter_reading_non_negative"),
        Index("idx_meter_reading_date", "reading_date"),
        Index("idx_meter_reading_user_date", "user_id", "reading_date"),
    )

    user_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    reading: Mapped[Decimal] = mapped_column(nullable=False)

    reading_date: Mapped[date] = mapped_column(Date, nullable=False)

    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)

    def __repr__(self) -> str:
        return f"<MeterReading {self.reading} on {self.reading_date}>"
