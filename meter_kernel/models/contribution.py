"""
Module: meter_kernel.models.contribution
Responsibility: ORM persistence for user contributions.
Architecture position: Kernel > Models.

Invariants enforced:
    - One contribution per purchase (unique purchase_id).
    - tokens_consumed is non-negative and contribution_amount positive.
    - tokens_consumed is derived (meter_reading minus the previous
      purchase's reading); it is written only by the ledger services.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from meter_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from meter_kernel.models.purchase import TokenPurchase


class UserContribution(TrackedBase):
    """A user's settlement of one purchase."""

    __tablename__ = "user_contributions"

    __table_args__ = (
        CheckConstraint("contribution_amount > 0", name="ck_contribution_amount_positive"),
        CheckConstraint("tokens_consumed >= 0", name="ck_contribution_tokens_non_negative"),
        CheckConstraint("meter_reading >= 0", name="ck_contribution_reading_non_negative"),
    )

    purchase_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("token_purchases.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    user_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    contribution_amount: Mapped[Decimal] = mapped_column(nullable=False)

    meter_reading: Mapped[Decimal] = mapped_column(nullable=False)

    tokens_consumed: Mapped[Decimal] = mapped_column(nullable=False)

    purchase: Mapped[TokenPurchase] = relationship(back_populates="contribution")

    def __repr__(self) -> str:
        return f"<UserContribution {self.contribution_amount} for {self.tokens_consumed} kWh>"
