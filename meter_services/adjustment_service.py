"""
meter_services.adjustment_service -- Admin purchase edits with cascading recalculation.

Responsibility:
    Preview and apply edits to a purchase's meter reading, token count or
    payment.  Dependent contributions (the purchase's own and the next
    purchase's) are recomputed by ``plan_purchase_adjustment`` and written
    in the same savepoint as the purchase itself.

Architecture position:
    Services -- imperative shell.  Composes ChronologyValidator,
    LedgerConstraintChecker and the cascade planner over a fresh
    ``LedgerSelector`` snapshot.

Invariants enforced:
    - The edited reading is re-validated against the timeline with the
      purchase (and its contribution) excluded.
    - All-or-nothing: the purchase row and its one or two dependent
      contributions change together or not at all.

Failure modes:
    - ``PurchaseNotFoundError`` for an unknown purchase.
    - ``PurchaseLockedError`` when a non-admin edits a settled purchase.
    - ``ChronologyViolationError`` when the new reading breaks the timeline.
    - ``CascadeViolationError`` when a dependent contribution would break
      token availability; nothing is written.

Audit relevance:
    Every mutated row is handed to the audit sink as an ``AuditPayload``
    with old values, new values and the trigger.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from meter_config import LedgerConfig, get_active_config
from meter_engines.cascade import (
    AdjustmentPlan,
    ChangeImpact,
    analyze_impact,
    plan_purchase_adjustment,
)
from meter_engines.chronology import ChronologyValidator
from meter_engines.constraints import LedgerConstraintChecker
from meter_kernel.domain.clock import Clock, SystemClock
from meter_kernel.domain.dtos import PurchaseInfo
from meter_kernel.exceptions import (
    CascadeViolationError,
    ChronologyViolationError,
    PurchaseNotFoundError,
    violation_for,
)
from meter_kernel.logging_config import LogContext, get_logger
from meter_kernel.models import TokenPurchase, UserContribution
from meter_kernel.selectors.ledger_selector import LedgerSelector
from meter_kernel.services.base import BaseService

logger = get_logger("services.adjustment")


@dataclass(frozen=True)
class AuditPayload:
    """Structured change record handed to the audit collaborator."""

    entity_type: str
    entity_id: UUID
    old_values: dict[str, Any]
    new_values: dict[str, Any]
    trigger: str
    actor_id: UUID | None = None
    occurred_at: datetime | None = None


AuditSink = Callable[[AuditPayload], None]


@dataclass(frozen=True)
class AdjustmentResult:
    purchase: PurchaseInfo
    plan: AdjustmentPlan
    audit: tuple[AuditPayload, ...] = field(default_factory=tuple)


class PurchaseAdjustmentService(BaseService[TokenPurchase]):
    """
    Purchase edits with dependent contribution updates.

    Contract:
        ``preview`` never writes.  ``apply`` writes inside
        ``session.begin_nested()`` and flushes; the caller commits.
    Guarantees:
        - A raised error leaves the purchase and its contributions as they
          were.
        - One audit payload per changed row, purchase first.
    Non-goals:
        - Does not change purchase dates.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: LedgerConfig | None = None,
        audit_sink: AuditSink | None = None,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._config = config or get_active_config()
        self._audit_sink = audit_sink
        self._selector = LedgerSelector(session)
        self._chronology = ChronologyValidator(self._config.chronology)
        self._constraints = LedgerConstraintChecker()

    def preview(
        self,
        *,
        purchase_id: UUID,
        new_meter_reading: Decimal | None = None,
        new_total_tokens: Decimal | None = None,
        new_total_payment: Decimal | None = None,
    ) -> ChangeImpact:
        """What the edit would change, without writing anything."""
        snapshot = self._selector.snapshot()
        if snapshot.purchase(purchase_id) is None:
            raise PurchaseNotFoundError(purchase_id)
        return analyze_impact(
            snapshot=snapshot,
            purchase_id=purchase_id,
            new_meter_reading=new_meter_reading,
            new_total_tokens=new_total_tokens,
            new_total_payment=new_total_payment,
        )

    def apply(
        self,
        *,
        purchase_id: UUID,
        new_meter_reading: Decimal | None = None,
        new_total_tokens: Decimal | None = None,
        new_total_payment: Decimal | None = None,
        actor_id: UUID | None = None,
        is_admin: bool = False,
    ) -> AdjustmentResult:
        """
        Apply a purchase edit and its cascade atomically.

        Raises:
            PurchaseLockedError: Settled purchase edited by a non-admin.
            ChronologyViolationError: New reading breaks the timeline.
            CascadeViolationError: A dependent contribution would become
                invalid.
        """
        snapshot = self._selector.snapshot()
        purchase = snapshot.purchase(purchase_id)
        if purchase is None:
            raise PurchaseNotFoundError(purchase_id)

        mutable = self._constraints.check_purchase_mutable(
            purchase_id=purchase_id, snapshot=snapshot, is_admin=is_admin
        )
        if not mutable.is_valid:
            raise violation_for(mutable.errors)

        if new_meter_reading is not None and new_meter_reading != purchase.meter_reading:
            chronology = self._chronology.validate(
                reading=new_meter_reading,
                reading_date=purchase.purchase_date.date(),
                snapshot=snapshot,
                exclude_id=purchase_id,
            )
            if not chronology.is_valid:
                raise violation_for(chronology.errors, ChronologyViolationError)

        plan = plan_purchase_adjustment(
            snapshot=snapshot,
            purchase_id=purchase_id,
            new_meter_reading=new_meter_reading,
            new_total_tokens=new_total_tokens,
            new_total_payment=new_total_payment,
        )
        if not plan.is_valid:
            raise CascadeViolationError(
                purchase_id,
                attempted={
                    "meter_reading": new_meter_reading,
                    "total_tokens": new_total_tokens,
                    "total_payment": new_total_payment,
                },
                violations=plan.violations,
            )

        now = self._clock.now()
        with self.session.begin_nested():
            model = self.session.get(TokenPurchase, purchase_id)
            model.meter_reading = Decimal(plan.new_values["meter_reading"])
            model.total_tokens = Decimal(plan.new_values["total_tokens"])
            model.total_payment = Decimal(plan.new_values["total_payment"])
            model.updated_at = now
            for update in plan.updates:
                contribution = self.session.get(UserContribution, update.contribution_id)
                contribution.meter_reading = update.new_meter_reading
                contribution.tokens_consumed = update.new_tokens_consumed
                contribution.updated_at = now
            self.session.flush()

        audit = [
            AuditPayload(
                entity_type="TokenPurchase",
                entity_id=purchase_id,
                old_values=plan.old_values,
                new_values=plan.new_values,
                trigger="purchase_adjustment",
                actor_id=actor_id,
                occurred_at=now,
            )
        ]
        audit.extend(
            AuditPayload(
                entity_type="UserContribution",
                entity_id=u.contribution_id,
                old_values=u.old_values,
                new_values=u.new_values,
                trigger=u.trigger,
                actor_id=actor_id,
                occurred_at=now,
            )
            for u in plan.updates
        )
        if self._audit_sink is not None:
            for payload in audit:
                self._audit_sink(payload)

        with LogContext.bind(purchase_id=purchase_id, actor_id=actor_id):
            logger.info(
                "purchase_adjusted",
                extra={
                    "old_values": plan.old_values,
                    "new_values": plan.new_values,
                    "contributions_recalculated": [str(u.contribution_id) for u in plan.updates],
                },
            )
        return AdjustmentResult(
            purchase=self._selector.purchase(purchase_id),
            plan=plan,
            audit=tuple(audit),
        )
