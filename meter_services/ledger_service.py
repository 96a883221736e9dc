"""
meter_services.ledger_service -- Validated writes to the meter ledger.

Responsibility:
    Record meter readings, purchases and contributions, edit contributions
    and delete purchases.  Every write reads a fresh snapshot inside the
    caller's transaction, runs the chronology validator and the ledger
    constraint checker against it, and only then touches the session.

Architecture position:
    Services -- imperative shell over meter_engines + meter_kernel.
    Reads through ``LedgerSelector``; writes ORM rows and flushes.

Invariants enforced:
    - Accepted readings never break the monotonic meter timeline.
    - tokens_consumed is derived, never taken from the caller, and fits
      in what the previous purchase supplied.
    - One contribution per purchase; contributions settle the oldest
      unpaid purchase first (admins excepted).
    - No new purchase while an earlier one is unsettled (admins excepted).
    - Non-admins append purchases; an admin insertion before existing
      purchases re-derives the following contribution in the same
      savepoint.
    - Only the latest-created purchase can be deleted.

Failure modes:
    - ``LedgerRuleViolation`` subclasses (see ``violation_for``) for rule
      failures; nothing is written.
    - ``PurchaseNotFoundError`` / ``ContributionNotFoundError`` for
      unknown ids.

Audit relevance:
    created_at comes from the injected Clock so that chronological
    tie-breaks are reproducible.  Every accepted write logs a structured
    event carrying the affected ids.

Usage:
    with session_scope() as session:
        service = LedgerService(session, clock=SystemClock())
        purchase = service.record_purchase(
            total_tokens=Decimal("1000"),
            total_payment=Decimal("100"),
            meter_reading=Decimal("5000"),
            purchase_date=datetime(2024, 1, 1, tzinfo=UTC),
            created_by=admin_id,
        )
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from meter_config import LedgerConfig, get_active_config
from meter_engines.cascade import plan_purchase_insertion
from meter_engines.chronology import ChronologyValidator
from meter_engines.constraints import LedgerConstraintChecker
from meter_engines.receipt_matching import ReceiptRow, validate_receipt_row
from meter_kernel.domain.clock import Clock, SystemClock, as_utc
from meter_kernel.domain.dtos import (
    ContributionInfo,
    LedgerSnapshot,
    MeterReadingInfo,
    PurchaseInfo,
    ReadingScope,
    ValidationError,
    ValidationResult,
)
from meter_kernel.exceptions import (
    CascadeViolationError,
    ChronologyViolationError,
    ContributionNotFoundError,
    LedgerRuleViolation,
    PurchaseDeletionError,
    PurchaseNotFoundError,
    violation_for,
)
from meter_kernel.logging_config import LogContext, get_logger
from meter_kernel.models import MeterReading, ReceiptData, TokenPurchase, UserContribution
from meter_kernel.selectors.ledger_selector import (
    LedgerSelector,
    contribution_to_info,
    reading_to_info,
)
from meter_kernel.services.base import BaseService

logger = get_logger("services.ledger")


@dataclass(frozen=True)
class RecordedReading:
    """An accepted meter reading and any soft consumption warnings."""

    reading: MeterReadingInfo
    warnings: tuple[str, ...] = ()


def _require(result: ValidationResult, default: type[LedgerRuleViolation] = LedgerRuleViolation) -> None:
    if not result.is_valid:
        raise violation_for(result.errors, default)


def _positive(value: Decimal, code: str, field: str, label: str) -> ValidationResult:
    if value > 0:
        return ValidationResult.success()
    return ValidationResult.failure(
        ValidationError(code=code, message=f"{label} must be positive", field=field)
    )


def _non_negative_reading(value: Decimal) -> ValidationResult:
    if value >= 0:
        return ValidationResult.success()
    return ValidationResult.failure(
        ValidationError(
            code="NEGATIVE_READING",
            message="Meter reading cannot be negative",
            field="meter_reading",
        )
    )


def receipt_from_row(row: ReceiptRow, purchase_id: UUID | None) -> ReceiptData:
    """ORM receipt for a validated import row."""
    filled = row.with_defaults()
    return ReceiptData(
        purchase_id=purchase_id,
        token_number=filled.token_number,
        account_number=filled.account_number,
        kwh_purchased=filled.kwh_purchased,
        energy_cost=filled.energy_cost,
        debt=filled.debt,
        rea=filled.rea,
        vat=filled.vat,
        total_amount=filled.total_amount,
        tendered=filled.tendered,
        transaction_datetime=filled.parsed_datetime,
    )


class LedgerService(BaseService[TokenPurchase]):
    """
    Validated ledger writes.

    Contract:
        Every public method reads a new snapshot, validates, writes and
        flushes.  The caller owns the transaction.
    Guarantees:
        - A raised violation means no row was added, changed or removed.
    Non-goals:
        - Does not decide who is an admin; callers pass ``is_admin``.
        - Purchase edits with dependent contributions go through
          ``PurchaseAdjustmentService``.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: LedgerConfig | None = None,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._config = config or get_active_config()
        self._selector = LedgerSelector(session)
        self._chronology = ChronologyValidator(self._config.chronology)
        self._constraints = LedgerConstraintChecker()

    def snapshot(self) -> LedgerSnapshot:
        return self._selector.snapshot()

    # -- meter readings ----------------------------------------------------

    def record_meter_reading(
        self,
        *,
        user_id: UUID,
        reading: Decimal,
        reading_date: date,
        notes: str | None = None,
        scope: ReadingScope = ReadingScope.GLOBAL,
    ) -> RecordedReading:
        """Record a standalone meter reading after chronology checks."""
        _require(_non_negative_reading(reading), ChronologyViolationError)

        snapshot = self.snapshot()
        result = self._chronology.validate(
            reading=reading,
            reading_date=reading_date,
            snapshot=snapshot,
            scope=scope,
            user_id=user_id if scope is ReadingScope.USER else None,
            require_purchase_baseline=self._config.chronology.require_purchase_baseline,
        )
        _require(result.as_validation_result(), ChronologyViolationError)

        now = self._clock.now()
        model = MeterReading(
            user_id=user_id,
            reading=reading,
            reading_date=reading_date,
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        self.session.add(model)
        self.session.flush()

        logger.info(
            "meter_reading_recorded",
            extra={
                "reading_id": str(model.id),
                "user_id": str(user_id),
                "reading": str(reading),
                "reading_date": reading_date.isoformat(),
                "warnings": list(result.warnings),
            },
        )
        return RecordedReading(reading=reading_to_info(model), warnings=result.warnings)

    # -- purchases ---------------------------------------------------------

    def record_purchase(
        self,
        *,
        total_tokens: Decimal,
        total_payment: Decimal,
        meter_reading: Decimal,
        purchase_date: datetime,
        created_by: UUID,
        is_emergency: bool = False,
        is_admin: bool = False,
        receipt: ReceiptRow | None = None,
    ) -> PurchaseInfo:
        """
        Record a token purchase, optionally with its official receipt.

        Raises:
            SequentialPurchaseError: An earlier purchase has no contribution,
                or the purchase is dated before the latest one, and the
                caller is not an admin.
            CascadeViolationError: An admin-inserted purchase would leave
                the purchase that now follows it without enough tokens.
            ChronologyViolationError: The purchase reading breaks the
                meter timeline.
        """
        purchase_date = as_utc(purchase_date)
        _require(
            ValidationResult.combine(
                _positive(total_tokens, "INVALID_TOTAL_TOKENS", "total_tokens", "Total tokens"),
                _positive(total_payment, "INVALID_TOTAL_PAYMENT", "total_payment", "Total payment"),
                _non_negative_reading(meter_reading),
            )
        )
        if receipt is not None:
            _require(validate_receipt_row(receipt, 1, self._config.receipt))

        snapshot = self.snapshot()
        _require(
            ValidationResult.combine(
                self._constraints.check_sequential_purchase(
                    purchase_date=purchase_date, snapshot=snapshot, bypass_admin=is_admin
                ),
                self._constraints.check_purchase_appended(
                    purchase_date=purchase_date, snapshot=snapshot, is_admin=is_admin
                ),
            )
        )
        chronology = self._chronology.validate(
            reading=meter_reading,
            reading_date=purchase_date.date(),
            snapshot=snapshot,
        )
        _require(chronology.as_validation_result(), ChronologyViolationError)

        now = self._clock.now()
        candidate = PurchaseInfo(
            id=uuid4(),
            total_tokens=total_tokens,
            total_payment=total_payment,
            meter_reading=meter_reading,
            purchase_date=purchase_date,
            is_emergency=is_emergency,
            created_by=created_by,
            created_at=now,
        )
        plan = plan_purchase_insertion(snapshot=snapshot, purchase=candidate)
        if not plan.is_valid:
            raise CascadeViolationError(
                candidate.id,
                {"meter_reading": meter_reading, "total_tokens": total_tokens},
                plan.violations,
            )

        with self.session.begin_nested():
            model = TokenPurchase(
                id=candidate.id,
                total_tokens=total_tokens,
                total_payment=total_payment,
                meter_reading=meter_reading,
                purchase_date=purchase_date,
                is_emergency=is_emergency,
                created_by=created_by,
                created_at=now,
                updated_at=now,
            )
            self.session.add(model)
            if receipt is not None:
                receipt_model = receipt_from_row(receipt, model.id)
                receipt_model.created_at = now
                receipt_model.updated_at = now
                self.session.add(receipt_model)
            for update in plan.updates:
                contribution = self.session.get(UserContribution, update.contribution_id)
                contribution.tokens_consumed = update.new_tokens_consumed
                contribution.updated_at = now
            self.session.flush()

        with LogContext.bind(purchase_id=model.id, actor_id=created_by):
            logger.info(
                "purchase_recorded",
                extra={
                    "total_tokens": str(total_tokens),
                    "total_payment": str(total_payment),
                    "meter_reading": str(meter_reading),
                    "purchase_date": purchase_date.isoformat(),
                    "is_emergency": is_emergency,
                    "with_receipt": receipt is not None,
                    "contributions_recalculated": [str(u.contribution_id) for u in plan.updates],
                },
            )
        return self._selector.purchase(model.id)

    def delete_purchase(self, *, purchase_id: UUID, is_admin: bool = False) -> None:
        """Delete the latest-created purchase together with its dependents."""
        snapshot = self.snapshot()
        if snapshot.purchase(purchase_id) is None:
            raise PurchaseNotFoundError(purchase_id)
        _require(
            self._constraints.check_deletion(
                purchase_id=purchase_id, snapshot=snapshot, is_admin=is_admin
            ),
            PurchaseDeletionError,
        )

        model = self.session.get(TokenPurchase, purchase_id)
        self.session.delete(model)
        self.session.flush()
        logger.info(
            "purchase_deleted",
            extra={"purchase_id": str(purchase_id), "is_admin": is_admin},
        )

    # -- contributions -----------------------------------------------------

    def record_contribution(
        self,
        *,
        purchase_id: UUID,
        user_id: UUID,
        contribution_amount: Decimal,
        meter_reading: Decimal,
        is_admin: bool = False,
    ) -> ContributionInfo:
        """
        Settle a purchase with its single contribution.

        Rules run in order and the first failure is raised: single
        contribution, contribution order, reading match, token
        availability.
        """
        _require(
            ValidationResult.combine(
                _positive(
                    contribution_amount,
                    "INVALID_CONTRIBUTION_AMOUNT",
                    "contribution_amount",
                    "Contribution amount",
                ),
                _non_negative_reading(meter_reading),
            )
        )

        snapshot = self.snapshot()
        if snapshot.purchase(purchase_id) is None:
            raise PurchaseNotFoundError(purchase_id)

        checks = self._constraints
        _require(checks.check_single_contribution(purchase_id=purchase_id, snapshot=snapshot))
        _require(
            checks.check_contribution_order(
                purchase_id=purchase_id, snapshot=snapshot, is_admin=is_admin
            )
        )
        _require(
            checks.check_meter_reading_match(
                purchase_id=purchase_id, meter_reading=meter_reading, snapshot=snapshot
            )
        )
        tokens_consumed = checks.derive_tokens_consumed(
            purchase_id=purchase_id, meter_reading=meter_reading, snapshot=snapshot
        )
        _require(
            checks.check_token_availability(
                purchase_id=purchase_id, tokens_consumed=tokens_consumed, snapshot=snapshot
            )
        )

        now = self._clock.now()
        model = UserContribution(
            purchase_id=purchase_id,
            user_id=user_id,
            contribution_amount=contribution_amount,
            meter_reading=meter_reading,
            tokens_consumed=tokens_consumed,
            created_at=now,
            updated_at=now,
        )
        self.session.add(model)
        self.session.flush()

        with LogContext.bind(purchase_id=purchase_id, contribution_id=model.id, actor_id=user_id):
            logger.info(
                "contribution_recorded",
                extra={
                    "contribution_amount": str(contribution_amount),
                    "meter_reading": str(meter_reading),
                    "tokens_consumed": str(tokens_consumed),
                },
            )
        return contribution_to_info(model)

    def update_contribution(
        self,
        *,
        contribution_id: UUID,
        contribution_amount: Decimal | None = None,
        meter_reading: Decimal | None = None,
    ) -> ContributionInfo:
        """
        Edit a contribution; a new reading re-derives tokens_consumed.

        Availability is re-checked with the edited contribution excluded
        from the already-consumed total.
        """
        snapshot = self.snapshot()
        existing = snapshot.contribution(contribution_id)
        if existing is None:
            raise ContributionNotFoundError(contribution_id)

        if contribution_amount is not None:
            _require(
                _positive(
                    contribution_amount,
                    "INVALID_CONTRIBUTION_AMOUNT",
                    "contribution_amount",
                    "Contribution amount",
                )
            )

        tokens_consumed = existing.tokens_consumed
        if meter_reading is not None:
            _require(_non_negative_reading(meter_reading))
            checks = self._constraints
            _require(
                checks.check_meter_reading_match(
                    purchase_id=existing.purchase_id,
                    meter_reading=meter_reading,
                    snapshot=snapshot,
                )
            )
            tokens_consumed = checks.derive_tokens_consumed(
                purchase_id=existing.purchase_id, meter_reading=meter_reading, snapshot=snapshot
            )
            _require(
                checks.check_token_availability(
                    purchase_id=existing.purchase_id,
                    tokens_consumed=tokens_consumed,
                    snapshot=snapshot,
                    exclude_contribution_id=contribution_id,
                )
            )

        model = self.session.get(UserContribution, contribution_id)
        if contribution_amount is not None:
            model.contribution_amount = contribution_amount
        if meter_reading is not None:
            model.meter_reading = meter_reading
            model.tokens_consumed = tokens_consumed
        model.updated_at = self._clock.now()
        self.session.flush()

        logger.info(
            "contribution_updated",
            extra={
                "contribution_id": str(contribution_id),
                "old_tokens_consumed": str(existing.tokens_consumed),
                "new_tokens_consumed": str(tokens_consumed),
            },
        )
        return contribution_to_info(model)
