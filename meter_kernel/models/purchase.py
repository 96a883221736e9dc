"""
Module: meter_kernel.models.purchase
Responsibility: ORM persistence for token purchases.
Architecture position: Kernel > Models.  May import from db/base.py and
    sibling models.

Invariants enforced:
    - total_tokens and total_payment are positive, meter_reading is
      non-negative (CHECK constraints).
    - At most one contribution and one receipt per purchase (unique FKs on
      the child tables); deleting a purchase deletes both.

Audit relevance:
    meter_reading is a point on the meter timeline and the baseline for the
    next purchase's consumption.  Edits after settlement go through
    ``PurchaseAdjustmentService`` so that dependent contributions are
    recalculated in the same transaction.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Boolean, CheckConstraint, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from meter_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from meter_kernel.models.contribution import UserContribution
    from meter_kernel.models.receipt import ReceiptData


class TokenPurchase(TrackedBase):
    """A prepaid token purchase for the shared meter."""

    __tablename__ = "token_purchases"

    __table_args__ = (
        CheckConstraint("total_tokens > 0", name="ck_purchase_tokens_positive"),
        CheckConstraint("total_payment > 0", name="ck_purchase_payment_positive"),
        CheckConstraint("meter_reading >= 0", name="ck_purchase_reading_non_negative"),
        Index("idx_purchase_date", "purchase_date"),
    )

    total_tokens: Mapped[Decimal] = mapped_column(nullable=False)

    # Internal settlement currency
    total_payment: Mapped[Decimal] = mapped_column(nullable=False)

    meter_reading: Mapped[Decimal] = mapped_column(nullable=False)

    purchase_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    is_emergency: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    contribution: Mapped[UserContribution | None] = relationship(
        back_populates="purchase",
        uselist=False,
        cascade="all, delete-orphan",
    )

    receipt: Mapped[ReceiptData | None] = relationship(
        back_populates="purchase",
        uselist=False,
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return (
            f"<TokenPurchase {self.total_tokens} kWh for {self.total_payment} "
            f"at {self.meter_reading} on {self.purchase_date}>"
        )
