"""
Typed exception hierarchy for the meter ledger.

Every exception carries a ``code`` class attribute (machine readable,
stable across message wording changes) and stores its context as
attributes so that logs and API layers can serialise it without parsing
the message.

    MeterLedgerError (base)
    |
    +-- LedgerRuleViolation            (carries ValidationError tuple)
    |   +-- ChronologyViolationError
    |   +-- TokenAvailabilityError
    |   +-- DuplicateContributionError
    |   +-- SequentialPurchaseError
    |   +-- ContributionOrderError
    |   +-- MeterReadingMismatchError
    |   +-- PurchaseLockedError
    |   +-- PurchaseDeletionError
    |
    +-- CascadeViolationError
    |
    +-- NotFoundError
    |   +-- PurchaseNotFoundError
    |   +-- ContributionNotFoundError
    |
    +-- CurrencyError
        +-- InvalidCurrencyError
        +-- InvalidExchangeRateError

Engines never raise for business rule failures; they return a
``ValidationResult``.  Services translate failed results into the
``LedgerRuleViolation`` subclass matching the first error code (see
``violation_for``).
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from meter_kernel.domain.dtos import ValidationError


class MeterLedgerError(Exception):
    """Base exception for all meter ledger errors."""

    code: str = "METER_LEDGER_ERROR"


# Rule violations


class LedgerRuleViolation(MeterLedgerError):
    """A write was rejected by one or more ledger rules."""

    code: str = "LEDGER_RULE_VIOLATION"

    def __init__(self, errors: Sequence[ValidationError]):
        self.errors = tuple(errors)
        self.error_codes = tuple(e.code for e in self.errors)
        message = "; ".join(e.message for e in self.errors) or self.code
        super().__init__(message)


class ChronologyViolationError(LedgerRuleViolation):
    """Meter reading breaks the monotonic timeline."""

    code: str = "CHRONOLOGY_VIOLATION"


class TokenAvailabilityError(LedgerRuleViolation):
    """Contribution claims more tokens than the previous purchase provided."""

    code: str = "TOKEN_AVAILABILITY"


class DuplicateContributionError(LedgerRuleViolation):
    """Purchase already has its single contribution."""

    code: str = "DUPLICATE_CONTRIBUTION"


class SequentialPurchaseError(LedgerRuleViolation):
    """An earlier purchase has not been settled by a contribution."""

    code: str = "SEQUENTIAL_PURCHASE"


class ContributionOrderError(LedgerRuleViolation):
    """Contributions must settle the oldest unpaid purchase first."""

    code: str = "CONTRIBUTION_ORDER"


class MeterReadingMismatchError(LedgerRuleViolation):
    """Contribution reading differs from the purchase reading."""

    code: str = "METER_READING_MISMATCH"


class PurchaseLockedError(LedgerRuleViolation):
    """Purchase has a contribution and cannot be edited without admin rights."""

    code: str = "PURCHASE_LOCKED"


class PurchaseDeletionError(LedgerRuleViolation):
    """Purchase cannot be deleted."""

    code: str = "PURCHASE_DELETION"


_VIOLATION_BY_RULE: dict[str, type[LedgerRuleViolation]] = {
    "READING_BELOW_SAME_DATE_MAX": ChronologyViolationError,
    "READING_BELOW_PREVIOUS": ChronologyViolationError,
    "READING_ABOVE_NEXT": ChronologyViolationError,
    "READING_ABOVE_CEILING": ChronologyViolationError,
    "NO_PURCHASE_BASELINE": ChronologyViolationError,
    "CONSUMPTION_ANOMALY": ChronologyViolationError,
    "INSUFFICIENT_TOKENS": TokenAvailabilityError,
    "NEGATIVE_CONSUMPTION": TokenAvailabilityError,
    "DUPLICATE_CONTRIBUTION": DuplicateContributionError,
    "PREVIOUS_PURCHASE_UNPAID": SequentialPurchaseError,
    "PURCHASE_BACKDATED": SequentialPurchaseError,
    "CONTRIBUTION_OUT_OF_ORDER": ContributionOrderError,
    "METER_READING_MISMATCH": MeterReadingMismatchError,
    "PURCHASE_HAS_CONTRIBUTION": PurchaseLockedError,
    "PURCHASE_NOT_LATEST": PurchaseDeletionError,
}


def violation_for(
    errors: Sequence[ValidationError],
    default: type[LedgerRuleViolation] = LedgerRuleViolation,
) -> LedgerRuleViolation:
    """Build the typed violation for a failed rule result."""
    if not errors:
        return default(errors)
    exc_type = _VIOLATION_BY_RULE.get(errors[0].code, default)
    return exc_type(errors)


# Cascading recalculation


class CascadeViolationError(MeterLedgerError):
    """
    A purchase edit would leave a dependent contribution inconsistent.

    Raised before any write; the ledger is unchanged.
    """

    code: str = "CASCADE_VIOLATION"

    def __init__(
        self,
        purchase_id: Any,
        attempted: dict[str, Decimal | None],
        violations: Sequence[ValidationError],
    ):
        self.purchase_id = str(purchase_id)
        self.attempted = dict(attempted)
        self.violations = tuple(violations)
        super().__init__(
            f"Adjustment of purchase {purchase_id} rejected: "
            + "; ".join(v.message for v in self.violations)
        )


# Lookups


class NotFoundError(MeterLedgerError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"


class PurchaseNotFoundError(NotFoundError):
    code: str = "PURCHASE_NOT_FOUND"

    def __init__(self, purchase_id: Any):
        self.purchase_id = str(purchase_id)
        super().__init__(f"Purchase not found: {purchase_id}")


class ContributionNotFoundError(NotFoundError):
    code: str = "CONTRIBUTION_NOT_FOUND"

    def __init__(self, contribution_id: Any):
        self.contribution_id = str(contribution_id)
        super().__init__(f"Contribution not found: {contribution_id}")


# Currency


class CurrencyError(MeterLedgerError):
    """Base exception for currency errors."""

    code: str = "CURRENCY_ERROR"


class InvalidCurrencyError(CurrencyError):
    """Currency code is not registered."""

    code: str = "INVALID_CURRENCY"

    def __init__(self, currency: str):
        self.currency = currency
        super().__init__(f"Invalid currency code: {currency}")


class InvalidExchangeRateError(CurrencyError):
    """Exchange rate is zero, negative or otherwise unusable."""

    code: str = "INVALID_EXCHANGE_RATE"

    def __init__(self, rate: Any, reason: str):
        self.rate = str(rate)
        self.reason = reason
        super().__init__(f"Invalid exchange rate {rate}: {reason}")
