"""
Data Transfer Objects -- immutable ledger snapshots passed between layers.

Responsibility:
    Defines the frozen dataclasses that carry meter readings, purchases,
    contributions and receipts from the selector into the pure engines,
    plus the ``ValidationError`` / ``ValidationResult`` pair every rule
    returns.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  MUST NOT import
    from db/, models/, services/ or selectors/.

Invariants enforced:
    - ``LedgerSnapshot`` always holds purchases in chronological order
      ``(purchase_date, created_at, id)`` and readings in
      ``(reading_date, created_at, id)`` order.  Predecessor and successor
      lookups are position based on that order, never a date-window scan.
    - All quantities and amounts are ``Decimal``.

Failure modes:
    - ``ValueError`` from ``LedgerSnapshot.reading_points`` when a USER
      scope is requested without a user id.

Audit relevance:
    Every accept/reject decision is made against one snapshot read inside
    the writing transaction, so the decision can be replayed from the
    snapshot alone.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


# =============================================================================
# Validation results
# =============================================================================


@dataclass(frozen=True)
class ValidationError:
    """
    A single rule failure.

    Contract:
        Carries a machine-readable code, a human-readable message, the
        offending field and a details dict with the conflicting values.
    """

    code: str
    message: str
    field: str | None = None
    details: dict[str, Any] | None = None


@dataclass(frozen=True)
class ValidationResult:
    """
    Result of a ledger rule.

    Guarantees:
        - errors is always a tuple (never None)
        - bool(result) == result.is_valid
    """

    is_valid: bool
    errors: tuple[ValidationError, ...] = field(default_factory=tuple)

    @classmethod
    def success(cls) -> ValidationResult:
        return cls(is_valid=True, errors=())

    @classmethod
    def failure(cls, *errors: ValidationError) -> ValidationResult:
        return cls(is_valid=False, errors=tuple(errors))

    @classmethod
    def combine(cls, *results: ValidationResult) -> ValidationResult:
        """Merge several results; valid only when all are valid."""
        errors = tuple(e for r in results for e in r.errors)
        return cls(is_valid=not errors, errors=errors)

    @property
    def error_codes(self) -> tuple[str, ...]:
        return tuple(e.code for e in self.errors)

    def __bool__(self) -> bool:
        return self.is_valid


# =============================================================================
# Ledger entities
# =============================================================================


class ReadingSource(str, Enum):
    """Where a meter reading data point comes from."""

    METER_READING = "meter_reading"
    PURCHASE = "purchase"
    CONTRIBUTION = "contribution"


class ReadingScope(str, Enum):
    """Which readings a chronology check compares against."""

    GLOBAL = "global"  # the one physical meter
    USER = "user"  # standalone readings of one user plus purchase readings


@dataclass(frozen=True)
class MeterReadingInfo:
    """A standalone meter reading."""

    id: UUID
    user_id: UUID
    reading: Decimal
    reading_date: date
    created_at: datetime
    notes: str | None = None


@dataclass(frozen=True)
class ReceiptInfo:
    """Official-currency receipt for a purchase."""

    id: UUID
    kwh_purchased: Decimal
    energy_cost: Decimal
    debt: Decimal
    rea: Decimal
    vat: Decimal
    total_amount: Decimal
    transaction_datetime: datetime
    tendered: Decimal | None = None
    purchase_id: UUID | None = None
    token_number: str | None = None
    account_number: str | None = None

    @property
    def cost_per_kwh(self) -> Decimal:
        if self.kwh_purchased == 0:
            return Decimal("0")
        return self.total_amount / self.kwh_purchased


@dataclass(frozen=True)
class ContributionInfo:
    """The single contribution settling a purchase."""

    id: UUID
    purchase_id: UUID
    user_id: UUID
    contribution_amount: Decimal
    meter_reading: Decimal
    tokens_consumed: Decimal
    created_at: datetime


@dataclass(frozen=True)
class PurchaseInfo:
    """
    A token purchase with its optional contribution and receipt.

    ``total_payment`` is in the internal (settlement) currency.
    """

    id: UUID
    total_tokens: Decimal
    total_payment: Decimal
    meter_reading: Decimal
    purchase_date: datetime
    is_emergency: bool
    created_by: UUID
    created_at: datetime
    contribution: ContributionInfo | None = None
    receipt: ReceiptInfo | None = None

    @property
    def cost_per_kwh(self) -> Decimal:
        if self.total_tokens == 0:
            return Decimal("0")
        return self.total_payment / self.total_tokens

    @property
    def sort_key(self) -> tuple[datetime, datetime, str]:
        return (self.purchase_date, self.created_at, str(self.id))


@dataclass(frozen=True)
class ReadingPoint:
    """
    One data point on the meter timeline.

    Standalone readings, purchase readings and contribution readings are
    all points on the same physical counter.
    """

    source: ReadingSource
    entity_id: UUID
    reading: Decimal
    reading_date: date
    recorded_at: datetime
    user_id: UUID | None = None

    @property
    def sort_key(self) -> tuple[date, Decimal, datetime]:
        return (self.reading_date, self.reading, self.recorded_at)


# =============================================================================
# Snapshot
# =============================================================================


@dataclass(frozen=True)
class LedgerSnapshot:
    """
    Immutable view of the ledger at one instant.

    Contract:
        Built by ``LedgerSelector.snapshot()`` inside the caller's
        transaction.  Engines derive every predecessor/successor from the
        sorted tuples held here.

    Guarantees:
        - ``purchases`` sorted by ``(purchase_date, created_at, id)``.
        - ``readings`` sorted by ``(reading_date, created_at, id)``.
    """

    purchases: tuple[PurchaseInfo, ...] = ()
    readings: tuple[MeterReadingInfo, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "purchases", tuple(sorted(self.purchases, key=lambda p: p.sort_key))
        )
        object.__setattr__(
            self,
            "readings",
            tuple(
                sorted(
                    self.readings,
                    key=lambda r: (r.reading_date, r.created_at, str(r.id)),
                )
            ),
        )

    # -- purchases ---------------------------------------------------------

    def purchase(self, purchase_id: UUID) -> PurchaseInfo | None:
        for p in self.purchases:
            if p.id == purchase_id:
                return p
        return None

    def position(self, purchase_id: UUID) -> int | None:
        for i, p in enumerate(self.purchases):
            if p.id == purchase_id:
                return i
        return None

    def previous_purchase(self, purchase_id: UUID) -> PurchaseInfo | None:
        """Chronological predecessor of a purchase in the snapshot."""
        pos = self.position(purchase_id)
        if pos is None or pos == 0:
            return None
        return self.purchases[pos - 1]

    def next_purchase(self, purchase_id: UUID) -> PurchaseInfo | None:
        """Chronological successor of a purchase in the snapshot."""
        pos = self.position(purchase_id)
        if pos is None or pos + 1 >= len(self.purchases):
            return None
        return self.purchases[pos + 1]

    def purchases_before(self, when: datetime) -> tuple[PurchaseInfo, ...]:
        """Purchases dated strictly before ``when``, chronological."""
        return tuple(p for p in self.purchases if p.purchase_date < when)

    @property
    def first_purchase(self) -> PurchaseInfo | None:
        return self.purchases[0] if self.purchases else None

    @property
    def latest_created_purchase(self) -> PurchaseInfo | None:
        """Most recently created purchase, regardless of its purchase date."""
        if not self.purchases:
            return None
        return max(self.purchases, key=lambda p: (p.created_at, p.purchase_date, str(p.id)))

    def unpaid_purchases(self) -> tuple[PurchaseInfo, ...]:
        """Purchases still waiting for their contribution, oldest first."""
        return tuple(p for p in self.purchases if p.contribution is None)

    # -- contributions -----------------------------------------------------

    def contribution(self, contribution_id: UUID) -> ContributionInfo | None:
        for p in self.purchases:
            if p.contribution is not None and p.contribution.id == contribution_id:
                return p.contribution
        return None

    @property
    def contributions(self) -> tuple[ContributionInfo, ...]:
        return tuple(p.contribution for p in self.purchases if p.contribution is not None)

    # -- timeline ----------------------------------------------------------

    def reading_points(
        self,
        scope: ReadingScope = ReadingScope.GLOBAL,
        user_id: UUID | None = None,
        include_contributions: bool = True,
    ) -> tuple[ReadingPoint, ...]:
        """
        All data points on the meter timeline.

        USER scope narrows standalone readings to one user; purchase and
        contribution readings always apply since there is one meter.
        """
        if scope is ReadingScope.USER and user_id is None:
            raise ValueError("USER reading scope requires a user_id")

        points: list[ReadingPoint] = []
        for r in self.readings:
            if scope is ReadingScope.USER and r.user_id != user_id:
                continue
            points.append(
                ReadingPoint(
                    source=ReadingSource.METER_READING,
                    entity_id=r.id,
                    reading=r.reading,
                    reading_date=r.reading_date,
                    recorded_at=r.created_at,
                    user_id=r.user_id,
                )
            )
        for p in self.purchases:
            points.append(
                ReadingPoint(
                    source=ReadingSource.PURCHASE,
                    entity_id=p.id,
                    reading=p.meter_reading,
                    reading_date=p.purchase_date.date(),
                    recorded_at=p.created_at,
                    user_id=p.created_by,
                )
            )
            if include_contributions and p.contribution is not None:
                c = p.contribution
                points.append(
                    ReadingPoint(
                        source=ReadingSource.CONTRIBUTION,
                        entity_id=c.id,
                        reading=c.meter_reading,
                        reading_date=p.purchase_date.date(),
                        recorded_at=c.created_at,
                        user_id=c.user_id,
                    )
                )
        return tuple(sorted(points, key=lambda pt: pt.sort_key))

    def replace_purchase(self, updated: PurchaseInfo) -> LedgerSnapshot:
        """Return a copy with one purchase swapped (used for what-if plans)."""
        return LedgerSnapshot(
            purchases=tuple(updated if p.id == updated.id else p for p in self.purchases),
            readings=self.readings,
        )
