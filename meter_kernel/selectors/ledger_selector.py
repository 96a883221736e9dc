"""
Module: meter_kernel.selectors.ledger_selector
Responsibility: Builds the immutable ``LedgerSnapshot`` that every ledger
    rule is evaluated against, plus the narrower lookups reports need.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - A fresh snapshot is read for every call; nothing is memoised at module
      or instance level, so two rejected-then-retried writes never see a
      stale timeline.
    - Datetimes are normalised to UTC (SQLite returns naive values).

Failure modes:
    - Returns an empty snapshot when the ledger is empty.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from meter_kernel.domain.clock import as_utc
from meter_kernel.domain.dtos import (
    ContributionInfo,
    LedgerSnapshot,
    MeterReadingInfo,
    PurchaseInfo,
    ReceiptInfo,
)
from meter_kernel.models.contribution import UserContribution
from meter_kernel.models.meter_reading import MeterReading
from meter_kernel.models.purchase import TokenPurchase
from meter_kernel.models.receipt import ReceiptData
from meter_kernel.selectors.base import BaseSelector


def receipt_to_info(receipt: ReceiptData) -> ReceiptInfo:
    return ReceiptInfo(
        id=receipt.id,
        purchase_id=receipt.purchase_id,
        kwh_purchased=receipt.kwh_purchased,
        energy_cost=receipt.energy_cost,
        debt=receipt.debt,
        rea=receipt.rea,
        vat=receipt.vat,
        total_amount=receipt.total_amount,
        tendered=receipt.tendered,
        transaction_datetime=as_utc(receipt.transaction_datetime),
        token_number=receipt.token_number,
        account_number=receipt.account_number,
    )


def contribution_to_info(contribution: UserContribution) -> ContributionInfo:
    return ContributionInfo(
        id=contribution.id,
        purchase_id=contribution.purchase_id,
        user_id=contribution.user_id,
        contribution_amount=contribution.contribution_amount,
        meter_reading=contribution.meter_reading,
        tokens_consumed=contribution.tokens_consumed,
        created_at=as_utc(contribution.created_at),
    )


def purchase_to_info(purchase: TokenPurchase) -> PurchaseInfo:
    return PurchaseInfo(
        id=purchase.id,
        total_tokens=purchase.total_tokens,
        total_payment=purchase.total_payment,
        meter_reading=purchase.meter_reading,
        purchase_date=as_utc(purchase.purchase_date),
        is_emergency=purchase.is_emergency,
        created_by=purchase.created_by,
        created_at=as_utc(purchase.created_at),
        contribution=(
            contribution_to_info(purchase.contribution)
            if purchase.contribution is not None
            else None
        ),
        receipt=receipt_to_info(purchase.receipt) if purchase.receipt is not None else None,
    )


def reading_to_info(reading: MeterReading) -> MeterReadingInfo:
    return MeterReadingInfo(
        id=reading.id,
        user_id=reading.user_id,
        reading=reading.reading,
        reading_date=reading.reading_date,
        created_at=as_utc(reading.created_at),
        notes=reading.notes,
    )


class LedgerSelector(BaseSelector[TokenPurchase]):
    """
    Selector for the meter ledger.

    Guarantees:
        - ``snapshot()`` returns purchases with their contribution and
          receipt attached, and every standalone reading.
        - Rows already in the identity map are refreshed, so a snapshot
          taken after a flush sees new contributions and receipts.
        - Pending (flushed) rows of the caller's transaction are visible.
    """

    def snapshot(self) -> LedgerSnapshot:
        """Read the whole ledger as one immutable snapshot."""
        purchases = self.session.scalars(
            select(TokenPurchase).options(
                selectinload(TokenPurchase.contribution),
                selectinload(TokenPurchase.receipt),
            ).execution_options(populate_existing=True)
        ).all()
        readings = self.session.scalars(
            select(MeterReading).execution_options(populate_existing=True)
        ).all()
        return LedgerSnapshot(
            purchases=tuple(purchase_to_info(p) for p in purchases),
            readings=tuple(reading_to_info(r) for r in readings),
        )

    def purchase(self, purchase_id: UUID) -> PurchaseInfo | None:
        model = self.session.get(TokenPurchase, purchase_id, populate_existing=True)
        return purchase_to_info(model) if model is not None else None
