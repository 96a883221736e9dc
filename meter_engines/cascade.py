"""
meter_engines.cascade -- Cascading recalculation of dependent contributions.

Responsibility:
    Plan the contribution updates implied by an admin edit of a purchase's
    meter reading or token count, and check every recomputed value against
    the token-availability rule before anything is written.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Produces an
    ``AdjustmentPlan``; ``PurchaseAdjustmentService`` applies it atomically
    or rejects it as a whole.

Invariants enforced:
    - The edited purchase's own contribution is synced to the new reading
      and its consumption re-derived against the previous purchase.
    - The next purchase draws on the edited purchase, settled or not:
      0 <= next.reading - new_reading <= new_total_tokens, and its
      contribution (if any) is re-derived from that span.
    - A purchase inserted before existing ones is checked the same way
      against the purchase that now follows it.
    - A plan with violations carries no partial updates for the service to
      apply.

Failure modes:
    - Unknown purchase ids and non-positive token counts come back as plan
      violations, never exceptions.

Audit relevance:
    Each ``ContributionUpdate`` records old and new values plus the trigger,
    which become the audit payload for the mutated contribution.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any
from uuid import UUID

from meter_engines.chronology import fmt_quantity
from meter_engines.constraints import LedgerConstraintChecker
from meter_engines.tracer import traced_engine
from meter_kernel.domain.dtos import (
    LedgerSnapshot,
    PurchaseInfo,
    ValidationError,
)
from meter_kernel.logging_config import get_logger

logger = get_logger("engines.cascade")


@dataclass(frozen=True)
class ContributionUpdate:
    """One contribution rewritten by a purchase edit."""

    contribution_id: UUID
    purchase_id: UUID
    user_id: UUID
    old_meter_reading: Decimal
    new_meter_reading: Decimal
    old_tokens_consumed: Decimal
    new_tokens_consumed: Decimal
    trigger: str

    @property
    def tokens_delta(self) -> Decimal:
        return self.new_tokens_consumed - self.old_tokens_consumed

    @property
    def old_values(self) -> dict[str, str]:
        return {
            "meter_reading": str(self.old_meter_reading),
            "tokens_consumed": str(self.old_tokens_consumed),
        }

    @property
    def new_values(self) -> dict[str, str]:
        return {
            "meter_reading": str(self.new_meter_reading),
            "tokens_consumed": str(self.new_tokens_consumed),
        }


@dataclass(frozen=True)
class AdjustmentPlan:
    """
    Everything a purchase edit would change.

    Contract:
        ``updates`` is only applied when ``violations`` is empty.
    Guarantees:
        - ``old_values`` / ``new_values`` hold the purchase fields, as
          strings, keyed by column name.
    Non-goals:
        - Does not re-run chronology; the service does that first.
    """

    purchase_id: UUID
    old_values: dict[str, Any]
    new_values: dict[str, Any]
    updates: tuple[ContributionUpdate, ...] = ()
    violations: tuple[ValidationError, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.violations

    @property
    def requires_recalculation(self) -> bool:
        return bool(self.updates)

    @property
    def violation_codes(self) -> tuple[str, ...]:
        return tuple(v.code for v in self.violations)


@dataclass(frozen=True)
class ChangeImpact:
    """An ``AdjustmentPlan`` with a readable summary for a preview."""

    plan: AdjustmentPlan
    summary: str
    messages: tuple[str, ...] = ()

    @property
    def can_proceed(self) -> bool:
        return self.plan.is_valid


def _violation(code: str, message: str, **details: Any) -> ValidationError:
    return ValidationError(
        code=code,
        message=message,
        field="meter_reading" if "reading" in code.lower() else "tokens_consumed",
        details={k: str(v) for k, v in details.items()},
    )


def _check_successor(
    nxt: PurchaseInfo,
    reading: Decimal,
    tokens: Decimal,
    trigger: str,
) -> tuple[list[ValidationError], ContributionUpdate | None]:
    """
    Check the purchase that draws on a (new or edited) predecessor.

    The span up to the next purchase's reading must fit in the
    predecessor's tokens whether or not that purchase is settled yet.
    """
    dependent = nxt.contribution
    next_reading = dependent.meter_reading if dependent is not None else nxt.meter_reading
    label = "Next contribution" if dependent is not None else "Next purchase"
    next_tokens = next_reading - reading
    ids = {"contribution_id": dependent.id} if dependent is not None else {"next_purchase_id": nxt.id}

    violations: list[ValidationError] = []
    if next_tokens < 0:
        violations.append(
            _violation(
                "NEGATIVE_CONSUMPTION",
                (
                    f"{label} meter reading ({fmt_quantity(next_reading)}) "
                    f"is below the new purchase meter reading ({fmt_quantity(reading)})"
                ),
                attempted=next_tokens,
                **ids,
            )
        )
    elif next_tokens > tokens:
        violations.append(
            _violation(
                "INSUFFICIENT_TOKENS",
                (
                    f"Recalculated consumption ({fmt_quantity(next_tokens)} kWh) exceeds "
                    f"available tokens ({fmt_quantity(tokens)} kWh)"
                ),
                attempted=next_tokens,
                available=tokens,
                **ids,
            )
        )

    if dependent is None or next_tokens == dependent.tokens_consumed:
        return violations, None
    return violations, ContributionUpdate(
        contribution_id=dependent.id,
        purchase_id=nxt.id,
        user_id=dependent.user_id,
        old_meter_reading=dependent.meter_reading,
        new_meter_reading=dependent.meter_reading,
        old_tokens_consumed=dependent.tokens_consumed,
        new_tokens_consumed=next_tokens,
        trigger=trigger,
    )


@traced_engine(
    "cascade",
    "1.0",
    fingerprint_fields=("purchase_id", "new_meter_reading", "new_total_tokens", "new_total_payment"),
)
def plan_purchase_adjustment(
    *,
    snapshot: LedgerSnapshot,
    purchase_id: UUID,
    new_meter_reading: Decimal | None = None,
    new_total_tokens: Decimal | None = None,
    new_total_payment: Decimal | None = None,
    trigger: str = "purchase_adjustment",
) -> AdjustmentPlan:
    """
    Plan a purchase edit and its dependent contribution updates.

    Preconditions:
        ``snapshot`` was read inside the caller's transaction.
    Postconditions:
        When ``is_valid`` is False, ``updates`` is empty.
    """
    purchase = snapshot.purchase(purchase_id)
    if purchase is None:
        return AdjustmentPlan(
            purchase_id=purchase_id,
            old_values={},
            new_values={},
            violations=(
                ValidationError(
                    code="PURCHASE_NOT_FOUND",
                    message=f"Purchase not found: {purchase_id}",
                    field="purchase_id",
                ),
            ),
        )

    reading = new_meter_reading if new_meter_reading is not None else purchase.meter_reading
    tokens = new_total_tokens if new_total_tokens is not None else purchase.total_tokens
    payment = new_total_payment if new_total_payment is not None else purchase.total_payment

    old_values = {
        "meter_reading": str(purchase.meter_reading),
        "total_tokens": str(purchase.total_tokens),
        "total_payment": str(purchase.total_payment),
    }
    new_values = {
        "meter_reading": str(reading),
        "total_tokens": str(tokens),
        "total_payment": str(payment),
    }

    violations: list[ValidationError] = []
    if reading < 0:
        violations.append(
            _violation(
                "NEGATIVE_READING",
                f"Meter reading cannot be negative ({fmt_quantity(reading)})",
                meter_reading=reading,
            )
        )
    if tokens <= 0:
        violations.append(
            _violation(
                "INVALID_TOTAL_TOKENS",
                f"Total tokens must be positive ({fmt_quantity(tokens)})",
                total_tokens=tokens,
            )
        )
    if payment <= 0:
        violations.append(
            _violation(
                "INVALID_TOTAL_PAYMENT",
                f"Total payment must be positive ({payment})",
                total_payment=payment,
            )
        )
    if violations:
        return AdjustmentPlan(purchase_id, old_values, new_values, violations=tuple(violations))

    edited = replace(purchase, meter_reading=reading, total_tokens=tokens, total_payment=payment)
    what_if = snapshot.replace_purchase(edited)
    checker = LedgerConstraintChecker()
    updates: list[ContributionUpdate] = []

    own = purchase.contribution
    if own is not None:
        own_tokens = checker.derive_tokens_consumed(
            purchase_id=purchase_id, meter_reading=reading, snapshot=what_if
        )
        result = checker.check_token_availability(
            purchase_id=purchase_id,
            tokens_consumed=own_tokens,
            snapshot=what_if,
            exclude_contribution_id=own.id,
        )
        violations.extend(result.errors)
        if own.meter_reading != reading or own.tokens_consumed != own_tokens:
            updates.append(
                ContributionUpdate(
                    contribution_id=own.id,
                    purchase_id=purchase_id,
                    user_id=own.user_id,
                    old_meter_reading=own.meter_reading,
                    new_meter_reading=reading,
                    old_tokens_consumed=own.tokens_consumed,
                    new_tokens_consumed=own_tokens,
                    trigger=trigger,
                )
            )

    nxt = what_if.next_purchase(purchase_id)
    if nxt is not None:
        found, update = _check_successor(nxt, reading, tokens, trigger)
        violations.extend(found)
        if update is not None:
            updates.append(update)

    if violations:
        logger.warning(
            "purchase_adjustment_rejected",
            extra={
                "purchase_id": str(purchase_id),
                "violations": [v.code for v in violations],
                "attempted": new_values,
            },
        )
        return AdjustmentPlan(purchase_id, old_values, new_values, violations=tuple(violations))

    logger.info(
        "purchase_adjustment_planned",
        extra={"purchase_id": str(purchase_id), "contribution_updates": len(updates)},
    )
    return AdjustmentPlan(purchase_id, old_values, new_values, updates=tuple(updates))


@traced_engine("cascade", "1.0", fingerprint_fields=("purchase",))
def plan_purchase_insertion(
    *,
    snapshot: LedgerSnapshot,
    purchase: PurchaseInfo,
    trigger: str = "purchase_insertion",
) -> AdjustmentPlan:
    """
    Plan the recalculation caused by inserting a purchase into the chain.

    A purchase dated before existing ones becomes the predecessor of the
    purchase that follows it, so that purchase's consumption is re-derived
    from the inserted reading and must fit in the inserted tokens.

    Postconditions:
        When ``is_valid`` is False, ``updates`` is empty.
    """
    new_values = {
        "meter_reading": str(purchase.meter_reading),
        "total_tokens": str(purchase.total_tokens),
        "total_payment": str(purchase.total_payment),
    }
    what_if = LedgerSnapshot(
        purchases=snapshot.purchases + (purchase,),
        readings=snapshot.readings,
    )
    nxt = what_if.next_purchase(purchase.id)
    if nxt is None:
        return AdjustmentPlan(purchase.id, {}, new_values)

    violations, update = _check_successor(
        nxt, purchase.meter_reading, purchase.total_tokens, trigger
    )
    if violations:
        logger.warning(
            "purchase_insertion_rejected",
            extra={
                "purchase_id": str(purchase.id),
                "next_purchase_id": str(nxt.id),
                "violations": [v.code for v in violations],
                "attempted": new_values,
            },
        )
        return AdjustmentPlan(purchase.id, {}, new_values, violations=tuple(violations))

    logger.info(
        "purchase_insertion_planned",
        extra={
            "purchase_id": str(purchase.id),
            "next_purchase_id": str(nxt.id),
            "contribution_updates": int(update is not None),
        },
    )
    updates = (update,) if update is not None else ()
    return AdjustmentPlan(purchase.id, {}, new_values, updates=updates)


def _describe(update: ContributionUpdate) -> str:
    delta = update.tokens_delta
    sign = "+" if delta >= 0 else ""
    return (
        f"Contribution {update.contribution_id} tokens consumed will change from "
        f"{fmt_quantity(update.old_tokens_consumed)} kWh to "
        f"{fmt_quantity(update.new_tokens_consumed)} kWh ({sign}{fmt_quantity(delta)} kWh difference)"
    )


def analyze_impact(
    *,
    snapshot: LedgerSnapshot,
    purchase_id: UUID,
    new_meter_reading: Decimal | None = None,
    new_total_tokens: Decimal | None = None,
    new_total_payment: Decimal | None = None,
) -> ChangeImpact:
    """Preview a purchase edit without applying it."""
    plan = plan_purchase_adjustment(
        snapshot=snapshot,
        purchase_id=purchase_id,
        new_meter_reading=new_meter_reading,
        new_total_tokens=new_total_tokens,
        new_total_payment=new_total_payment,
        trigger="impact_analysis",
    )
    if not plan.is_valid:
        return ChangeImpact(
            plan=plan,
            summary="The change cannot be applied: it would invalidate dependent contributions.",
            messages=tuple(v.message for v in plan.violations),
        )
    if not plan.updates:
        return ChangeImpact(
            plan=plan, summary="No associated contribution will be affected by these changes."
        )
    return ChangeImpact(
        plan=plan,
        summary=(
            f"Changing this purchase will automatically recalculate "
            f"{len(plan.updates)} contribution(s)."
        ),
        messages=tuple(_describe(u) for u in plan.updates),
    )
