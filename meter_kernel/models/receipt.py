"""
Module: meter_kernel.models.receipt
Responsibility: ORM persistence for official-currency utility receipts.
Architecture position: Kernel > Models.

Invariants enforced:
    - At most one receipt per purchase (unique nullable purchase_id).
    - All amounts are official-currency Decimals.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from meter_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from meter_kernel.models.purchase import TokenPurchase


class ReceiptData(TrackedBase):
    """Official receipt as issued by the utility."""

    __tablename__ = "receipt_data"

    purchase_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("token_purchases.id", ondelete="CASCADE"),
        nullable=True,
        unique=True,
    )

    token_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    account_number: Mapped[str | None] = mapped_column(String(64), nullable=True)

    kwh_purchased: Mapped[Decimal] = mapped_column(nullable=False)
    energy_cost: Mapped[Decimal] = mapped_column(nullable=False)
    debt: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    rea: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    vat: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)
    tendered: Mapped[Decimal | None] = mapped_column(nullable=True)

    transaction_datetime: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    purchase: Mapped[TokenPurchase | None] = relationship(back_populates="receipt")

    def __repr__(self) -> str:
        return f"<ReceiptData {self.kwh_purchased} kWh total {self.total_amount}>"
