"""
meter_engines.constraints -- Token ledger constraint checker.

Responsibility:
    Rules that keep the purchase/contribution chain consistent: one
    contribution per purchase, consumption bounded by the tokens the
    previous purchase supplied, strict purchase sequencing, contribution
    ordering, and the deletion rule.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Every rule takes a
    ``LedgerSnapshot`` and returns a ``ValidationResult``; services turn
    failures into typed exceptions.

Invariants enforced:
    - tokens_consumed = contribution reading - previous purchase reading,
      and 0 <= tokens_consumed <= previous.total_tokens - already consumed.
    - At most one contribution per purchase.
    - A purchase cannot be created while an earlier one is unsettled
      (admins may bypass).
    - Non-admins cannot date a purchase before the latest one.
    - Only the most recently created purchase may be deleted.

Failure modes:
    - Unknown purchase ids produce ``PURCHASE_NOT_FOUND`` failures rather
      than exceptions.

Audit relevance:
    The previous-purchase relation is taken from the snapshot's
    chronological order, so the "previous purchase" used in a decision can
    be reconstructed from the snapshot alone.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from meter_engines.chronology import fmt_quantity
from meter_engines.tracer import traced_engine
from meter_kernel.domain.currency import round_money
from meter_kernel.domain.dtos import (
    LedgerSnapshot,
    PurchaseInfo,
    ValidationError,
    ValidationResult,
)
from meter_kernel.logging_config import get_logger

logger = get_logger("engines.constraints")


@dataclass(frozen=True)
class ContributionProgress:
    """How far the household is through settling its purchases."""

    total_purchases: int
    contributed: int
    pending: int
    progress_pct: Decimal
    next_purchase_id: UUID | None
    next_purchase_date: datetime | None


def _not_found(purchase_id: UUID) -> ValidationResult:
    return ValidationResult.failure(
        ValidationError(
            code="PURCHASE_NOT_FOUND",
            message=f"Purchase not found: {purchase_id}",
            field="purchase_id",
        )
    )


class LedgerConstraintChecker:
    """
    Purchase/contribution chain rules.

    Contract:
        Pure functions over a snapshot -- no I/O, no clock.
    Guarantees:
        - Every rule returns a ValidationResult; failures carry the
          conflicting ids and quantities in ``details``.
    Non-goals:
        - Does not check meter-timeline monotonicity; that is
          ``ChronologyValidator``'s job.
    """

    @traced_engine("constraints", "1.0", fingerprint_fields=("purchase_id",))
    def check_single_contribution(
        self, *, purchase_id: UUID, snapshot: LedgerSnapshot
    ) -> ValidationResult:
        purchase = snapshot.purchase(purchase_id)
        if purchase is None:
            return _not_found(purchase_id)
        if purchase.contribution is not None:
            logger.warning(
                "duplicate_contribution_rejected",
                extra={
                    "purchase_id": str(purchase_id),
                    "existing_contribution_id": str(purchase.contribution.id),
                },
            )
            return ValidationResult.failure(
                ValidationError(
                    code="DUPLICATE_CONTRIBUTION",
                    message="This purchase already has a contribution",
                    field="purchase_id",
                    details={"existing_contribution_id": str(purchase.contribution.id)},
                )
            )
        return ValidationResult.success()

    def check_purchase_mutable(
        self, *, purchase_id: UUID, snapshot: LedgerSnapshot, is_admin: bool = False
    ) -> ValidationResult:
        """A settled purchase may only be edited by an admin."""
        purchase = snapshot.purchase(purchase_id)
        if purchase is None:
            return _not_found(purchase_id)
        if purchase.contribution is not None and not is_admin:
            return ValidationResult.failure(
                ValidationError(
                    code="PURCHASE_HAS_CONTRIBUTION",
                    message="Purchase has a matching contribution and can only be changed by an admin",
                    field="purchase_id",
                    details={"contribution_id": str(purchase.contribution.id)},
                )
            )
        return ValidationResult.success()

    def derive_tokens_consumed(
        self, *, purchase_id: UUID, meter_reading: Decimal, snapshot: LedgerSnapshot
    ) -> Decimal | None:
        """
        Tokens consumed since the previous purchase.

        The first purchase has an implicit zero-consumption previous state,
        so its baseline is its own reading.  Returns None for an unknown
        purchase.
        """
        purchase = snapshot.purchase(purchase_id)
        if purchase is None:
            return None
        previous = snapshot.previous_purchase(purchase_id)
        baseline = previous.meter_reading if previous is not None else purchase.meter_reading
        return meter_reading - baseline

    @traced_engine(
        "constraints",
        "1.0",
        fingerprint_fields=("purchase_id", "tokens_consumed", "exclude_contribution_id"),
    )
    def check_token_availability(
        self,
        *,
        purchase_id: UUID,
        tokens_consumed: Decimal,
        snapshot: LedgerSnapshot,
        exclude_contribution_id: UUID | None = None,
    ) -> ValidationResult:
        """
        Consumption must fit in what the previous purchase supplied.

        Already-consumed tokens are those recorded by other contributions
        drawing on the same previous purchase; the contribution being edited
        is excluded.
        """
        purchase = snapshot.purchase(purchase_id)
        if purchase is None:
            return _not_found(purchase_id)

        if tokens_consumed < 0:
            return ValidationResult.failure(
                ValidationError(
                    code="NEGATIVE_CONSUMPTION",
                    message=(
                        f"Tokens consumed cannot be negative ({fmt_quantity(tokens_consumed)}); "
                        "the meter reading is below the previous purchase reading"
                    ),
                    field="tokens_consumed",
                    details={"tokens_consumed": str(tokens_consumed)},
                )
            )

        previous = snapshot.previous_purchase(purchase_id)
        if previous is None:
            return ValidationResult.success()

        already_consumed = self._consumed_from(previous, snapshot, exclude_contribution_id)
        available = previous.total_tokens - already_consumed
        if tokens_consumed > available:
            logger.warning(
                "token_availability_rejected",
                extra={
                    "purchase_id": str(purchase_id),
                    "previous_purchase_id": str(previous.id),
                    "requested": str(tokens_consumed),
                    "available": str(available),
                },
            )
            return ValidationResult.failure(
                ValidationError(
                    code="INSUFFICIENT_TOKENS",
                    message=(
                        "Insufficient tokens available from previous purchase. "
                        f"Requested: {fmt_quantity(tokens_consumed)}, "
                        f"Available: {fmt_quantity(available)}"
                    ),
                    field="tokens_consumed",
                    details={
                        "requested": str(tokens_consumed),
                        "available": str(available),
                        "previous_purchase_id": str(previous.id),
                        "previous_total_tokens": str(previous.total_tokens),
                        "already_consumed": str(already_consumed),
                    },
                )
            )
        return ValidationResult.success()

    def check_meter_reading_match(
        self, *, purchase_id: UUID, meter_reading: Decimal, snapshot: LedgerSnapshot
    ) -> ValidationResult:
        """The contribution reading is the purchase reading."""
        purchase = snapshot.purchase(purchase_id)
        if purchase is None:
            return _not_found(purchase_id)
        if meter_reading != purchase.meter_reading:
            return ValidationResult.failure(
                ValidationError(
                    code="METER_READING_MISMATCH",
                    message=(
                        f"Contribution meter reading {fmt_quantity(meter_reading)} must equal "
                        f"the purchase meter reading {fmt_quantity(purchase.meter_reading)}"
                    ),
                    field="meter_reading",
                    details={
                        "contribution_reading": str(meter_reading),
                        "purchase_reading": str(purchase.meter_reading),
                    },
                )
            )
        return ValidationResult.success()

    @traced_engine("constraints", "1.0", fingerprint_fields=("purchase_date", "bypass_admin"))
    def check_sequential_purchase(
        self,
        *,
        purchase_date: datetime,
        snapshot: LedgerSnapshot,
        bypass_admin: bool = False,
    ) -> ValidationResult:
        """No new purchase after an unsettled one."""
        if bypass_admin:
            logger.info(
                "sequential_purchase_bypassed",
                extra={"purchase_date": purchase_date.isoformat()},
            )
            return ValidationResult.success()

        unpaid = [p for p in snapshot.purchases_before(purchase_date) if p.contribution is None]
        if unpaid:
            blocking = unpaid[0]
            logger.warning(
                "sequential_purchase_rejected",
                extra={
                    "purchase_date": purchase_date.isoformat(),
                    "blocking_purchase_id": str(blocking.id),
                    "unpaid_count": len(unpaid),
                },
            )
            return ValidationResult.failure(
                ValidationError(
                    code="PREVIOUS_PURCHASE_UNPAID",
                    message=(
                        "Cannot create a new purchase: the purchase of "
                        f"{blocking.purchase_date.date().isoformat()} has no contribution yet. "
                        "Record its contribution first"
                    ),
                    field="purchase_date",
                    details={
                        "blocking_purchase_id": str(blocking.id),
                        "blocking_purchase_date": blocking.purchase_date.isoformat(),
                        "unpaid_count": len(unpaid),
                    },
                )
            )
        return ValidationResult.success()

    @traced_engine("constraints", "1.0", fingerprint_fields=("purchase_date", "is_admin"))
    def check_purchase_appended(
        self,
        *,
        purchase_date: datetime,
        snapshot: LedgerSnapshot,
        is_admin: bool = False,
    ) -> ValidationResult:
        """
        Non-admins only add purchases at the end of the chain.

        A purchase dated before the latest one would become the predecessor
        of an existing purchase; admins insert through the cascade planner.
        """
        latest = snapshot.purchases[-1] if snapshot.purchases else None
        if latest is None or purchase_date >= latest.purchase_date or is_admin:
            return ValidationResult.success()

        logger.warning(
            "backdated_purchase_rejected",
            extra={
                "purchase_date": purchase_date.isoformat(),
                "latest_purchase_id": str(latest.id),
            },
        )
        return ValidationResult.failure(
            ValidationError(
                code="PURCHASE_BACKDATED",
                message=(
                    f"Cannot create a purchase dated {purchase_date.date().isoformat()}: "
                    f"it is earlier than the latest purchase "
                    f"({latest.purchase_date.date().isoformat()}). Ask an admin to insert it"
                ),
                field="purchase_date",
                details={
                    "latest_purchase_id": str(latest.id),
                    "latest_purchase_date": latest.purchase_date.isoformat(),
                },
            )
        )

    def check_contribution_order(
        self, *, purchase_id: UUID, snapshot: LedgerSnapshot, is_admin: bool = False
    ) -> ValidationResult:
        """Non-admins settle the oldest unsettled purchase first."""
        purchase = snapshot.purchase(purchase_id)
        if purchase is None:
            return _not_found(purchase_id)
        if is_admin:
            return ValidationResult.success()
        unpaid = snapshot.unpaid_purchases()
        if unpaid and unpaid[0].id != purchase_id and purchase.contribution is None:
            oldest = unpaid[0]
            return ValidationResult.failure(
                ValidationError(
                    code="CONTRIBUTION_OUT_OF_ORDER",
                    message=(
                        "Contributions must be made in chronological order; settle the "
                        f"purchase of {oldest.purchase_date.date().isoformat()} first"
                    ),
                    field="purchase_id",
                    details={"next_purchase_id": str(oldest.id)},
                )
            )
        return ValidationResult.success()

    @traced_engine("constraints", "1.0", fingerprint_fields=("purchase_id", "is_admin"))
    def check_deletion(
        self, *, purchase_id: UUID, snapshot: LedgerSnapshot, is_admin: bool = False
    ) -> ValidationResult:
        """Only the latest-created purchase, and only while unsettled unless admin."""
        purchase = snapshot.purchase(purchase_id)
        if purchase is None:
            return _not_found(purchase_id)

        latest = snapshot.latest_created_purchase
        if latest is not None and latest.id != purchase_id:
            return ValidationResult.failure(
                ValidationError(
                    code="PURCHASE_NOT_LATEST",
                    message=(
                        "Only the most recently created purchase can be deleted; "
                        "deleting an earlier one would break the purchase chain"
                    ),
                    field="purchase_id",
                    details={"latest_purchase_id": str(latest.id)},
                )
            )
        if purchase.contribution is not None and not is_admin:
            return ValidationResult.failure(
                ValidationError(
                    code="PURCHASE_HAS_CONTRIBUTION",
                    message="Cannot delete a purchase that already has a contribution",
                    field="purchase_id",
                    details={"contribution_id": str(purchase.contribution.id)},
                )
            )
        return ValidationResult.success()

    def contribution_progress(self, *, snapshot: LedgerSnapshot) -> ContributionProgress:
        total = len(snapshot.purchases)
        unpaid = snapshot.unpaid_purchases()
        contributed = total - len(unpaid)
        progress = (
            round_money(Decimal(contributed) / Decimal(total) * 100) if total else Decimal("100.00")
        )
        nxt = unpaid[0] if unpaid else None
        return ContributionProgress(
            total_purchases=total,
            contributed=contributed,
            pending=len(unpaid),
            progress_pct=progress,
            next_purchase_id=nxt.id if nxt else None,
            next_purchase_date=nxt.purchase_date if nxt else None,
        )

    @staticmethod
    def _consumed_from(
        previous: PurchaseInfo,
        snapshot: LedgerSnapshot,
        exclude_contribution_id: UUID | None,
    ) -> Decimal:
        total = Decimal("0")
        for p in snapshot.purchases:
            if p.contribution is None or p.contribution.id == exclude_contribution_id:
                continue
            prior = snapshot.previous_purchase(p.id)
            if prior is not None and prior.id == previous.id:
                total += p.contribution.tokens_consumed
        return total
