"""
meter_engines.receipt_matching -- Score imported receipts against purchases.

Responsibility:
    Validate imported official receipt rows and pair each with the purchase
    it most likely belongs to, scored on date proximity and kWh similarity.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Follows the scored
    suggestion approach of a document matching engine: every candidate is
    evaluated, the best score wins, and confidence bands decide whether the
    pairing is trusted.

Invariants enforced:
    - Only purchases without a receipt are candidates.
    - Ties keep the first best candidate in the order given.
    - ``match_all`` is greedy in receipt date order and only HIGH
      confidence matches consume their purchase.

Failure modes:
    - Unparseable dates produce a NONE match with a warning, never an
      exception.

Usage:
    from meter_engines.receipt_matching import ReceiptMatcher

    matches = ReceiptMatcher().match_all(rows=rows, purchases=snapshot.purchases)
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum

from meter_config.schema import MatchingConfig, ReceiptConfig
from meter_engines.tracer import traced_engine
from meter_kernel.domain.clock import as_utc
from meter_kernel.domain.dtos import PurchaseInfo, ValidationError, ValidationResult
from meter_kernel.logging_config import get_logger

logger = get_logger("engines.receipt_matching")

ZERO = Decimal("0")
HUNDRED = Decimal("100")
SECONDS_PER_DAY = Decimal("86400")

_DATETIME_FORMATS = ("%d/%m/%y %H:%M:%S", "%d/%m/%Y %H:%M:%S", "%d/%m/%y", "%d/%m/%Y")


class MatchConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


@dataclass(frozen=True)
class ReceiptRow:
    """
    One imported receipt line, official currency.

    Numeric fields are None when the source cell was empty.
    """

    transaction_datetime: str | None
    kwh_purchased: Decimal | None
    energy_cost: Decimal | None
    total_amount: Decimal | None
    tendered: Decimal | None
    debt: Decimal | None = None
    rea: Decimal | None = None
    vat: Decimal | None = None
    token_number: str | None = None
    account_number: str | None = None

    @property
    def parsed_datetime(self) -> datetime | None:
        return parse_receipt_datetime(self.transaction_datetime)

    def with_defaults(self) -> ReceiptRow:
        """Optional charge components default to zero."""
        return replace(
            self,
            debt=self.debt if self.debt is not None else ZERO,
            rea=self.rea if self.rea is not None else ZERO,
            vat=self.vat if self.vat is not None else ZERO,
        )


@dataclass(frozen=True)
class ReceiptMatch:
    row: ReceiptRow
    purchase: PurchaseInfo | None
    confidence: MatchConfidence
    score: int
    reasons: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


def parse_receipt_datetime(text: str | None) -> datetime | None:
    """
    Parse ``dd/mm/yy HH:MM:SS`` (also 4-digit years, or date only).

    Receipt times are read as UTC.  Returns None when malformed.
    """
    if not text:
        return None
    cleaned = " ".join(text.split())
    for fmt in _DATETIME_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).replace(tzinfo=UTC)
        except ValueError:
            continue
    return None


_FAR_FUTURE = datetime.max.replace(tzinfo=UTC)


def receipt_order_key(row: ReceiptRow) -> datetime:
    """Sort key used by ``match_all``: oldest first, undated rows last."""
    return row.parsed_datetime or _FAR_FUTURE


def days_between(a: datetime, b: datetime) -> Decimal:
    """Absolute distance in fractional days."""
    seconds = abs((as_utc(a) - as_utc(b)).total_seconds())
    return Decimal(str(seconds)) / SECONDS_PER_DAY


def kwh_match_percentage(receipt_kwh: Decimal, purchase_kwh: Decimal) -> Decimal:
    """``100 - |d| / mean * 100`` floored at 0; 0 when either side is 0."""
    if receipt_kwh == 0 or purchase_kwh == 0:
        return ZERO
    diff = abs(receipt_kwh - purchase_kwh)
    mean = (receipt_kwh + purchase_kwh) / 2
    return max(ZERO, HUNDRED - diff / mean * HUNDRED)


def _row_error(code: str, row_number: int, message: str, field: str) -> ValidationError:
    return ValidationError(
        code=code,
        message=f"Row {row_number}: {message}",
        field=field,
        details={"row": row_number},
    )


def validate_receipt_row(
    row: ReceiptRow,
    row_number: int,
    config: ReceiptConfig | None = None,
) -> ValidationResult:
    """Every problem with one imported row, each message prefixed ``Row N:``."""
    tolerance = (config or ReceiptConfig()).total_tolerance
    errors: list[ValidationError] = []

    if not row.transaction_datetime:
        errors.append(
            _row_error("DATE_REQUIRED", row_number, "Transaction date/time is required",
                       "transaction_datetime")
        )
    elif row.parsed_datetime is None:
        errors.append(
            _row_error("INVALID_DATE", row_number,
                       "Invalid date format (expected dd/mm/yy hh:mm:ss)", "transaction_datetime")
        )

    if row.kwh_purchased is None:
        errors.append(_row_error("KWH_REQUIRED", row_number, "kWh Purchased is required",
                                 "kwh_purchased"))
    elif row.kwh_purchased <= 0:
        errors.append(_row_error("KWH_NOT_POSITIVE", row_number,
                                 "kWh Purchased must be positive", "kwh_purchased"))

    if row.energy_cost is None:
        errors.append(_row_error("ENERGY_COST_REQUIRED", row_number, "Energy Cost is required",
                                 "energy_cost"))
    elif row.energy_cost < 0:
        errors.append(_row_error("ENERGY_COST_NEGATIVE", row_number,
                                 "Energy Cost cannot be negative", "energy_cost"))

    if row.total_amount is None:
        errors.append(_row_error("TOTAL_REQUIRED", row_number, "Total Amount is required",
                                 "total_amount"))
    elif row.total_amount <= 0:
        errors.append(_row_error("TOTAL_NOT_POSITIVE", row_number,
                                 "Total Amount must be positive", "total_amount"))

    if row.tendered is None:
        errors.append(_row_error("TENDERED_REQUIRED", row_number, "Amount Tendered is required",
                                 "tendered"))
    elif row.tendered <= 0:
        errors.append(_row_error("TENDERED_NOT_POSITIVE", row_number,
                                 "Amount Tendered must be positive", "tendered"))

    filled = row.with_defaults()
    if filled.energy_cost is not None and filled.total_amount is not None:
        calculated = filled.energy_cost + filled.debt + filled.rea + filled.vat
        if abs(calculated - filled.total_amount) > tolerance:
            errors.append(
                _row_error(
                    "TOTAL_MISMATCH",
                    row_number,
                    f"Total mismatch (calculated: {calculated:.2f}, "
                    f"entered: {filled.total_amount:.2f})",
                    "total_amount",
                )
            )

    if errors:
        return ValidationResult.failure(*errors)
    return ValidationResult.success()


class ReceiptMatcher:
    """
    Receipt-to-purchase matching engine.

    Contract:
        Pure functions -- no I/O, no clock.
    Guarantees:
        - Score is the sum of one date band and one kWh band (0-100).
        - Confidence: HIGH >= 80, MEDIUM >= 50, LOW >= 20, else NONE
          (bands configurable).
    Non-goals:
        - Does not attach receipts; the import service does that.
        - Greedy, not globally optimal assignment.
    """

    def __init__(self, config: MatchingConfig | None = None):
        self._config = config or MatchingConfig()

    def _score(self, row_date: datetime, kwh: Decimal, purchase: PurchaseInfo) -> tuple[int, list[str]]:
        score = 0
        reasons: list[str] = []

        gap = days_between(row_date, purchase.purchase_date)
        for i, band in enumerate(self._config.date_bands):
            if gap <= band.limit:
                score += band.points
                if i == 0:
                    reasons.append("Exact date match")
                elif i == 1:
                    reasons.append(f"Close date match ({gap:.1f} days apart)")
                else:
                    reasons.append(f"Nearby date ({gap:.1f} days apart)")
                break

        similarity = kwh_match_percentage(kwh, purchase.total_tokens)
        for i, band in enumerate(self._config.kwh_bands):
            if similarity >= band.limit:
                score += band.points
                if i == 0:
                    reasons.append("Exact kWh match")
                elif i == 1:
                    reasons.append(f"Very close kWh match ({similarity:.1f}%)")
                elif i == 2:
                    reasons.append(f"Close kWh match ({similarity:.1f}%)")
                else:
                    reasons.append(f"Approximate kWh match ({similarity:.1f}%)")
                break

        return score, reasons

    @traced_engine("receipt_matching", "1.0", fingerprint_fields=("row", "purchases"))
    def match(self, *, row: ReceiptRow, purchases: Sequence[PurchaseInfo]) -> ReceiptMatch:
        """Best purchase for one receipt row."""
        row_date = row.parsed_datetime
        if row_date is None:
            return ReceiptMatch(
                row=row,
                purchase=None,
                confidence=MatchConfidence.NONE,
                score=0,
                warnings=("Invalid transaction date format",),
            )

        candidates = [p for p in purchases if p.receipt is None]
        if not candidates:
            return ReceiptMatch(
                row=row,
                purchase=None,
                confidence=MatchConfidence.NONE,
                score=0,
                warnings=("No purchases available for matching (all have receipts)",),
            )

        kwh = row.kwh_purchased if row.kwh_purchased is not None else ZERO
        best: PurchaseInfo | None = None
        best_score = 0
        best_reasons: list[str] = []
        for purchase in candidates:
            score, reasons = self._score(row_date, kwh, purchase)
            if score > best_score:
                best, best_score, best_reasons = purchase, score, reasons

        cfg = self._config
        if best_score >= cfg.high_confidence:
            confidence, warnings = MatchConfidence.HIGH, ()
        elif best_score >= cfg.medium_confidence:
            confidence = MatchConfidence.MEDIUM
            warnings = ("Match confidence is medium - please verify",)
        elif best_score >= cfg.low_confidence:
            confidence = MatchConfidence.LOW
            warnings = ("Match confidence is low - manual verification recommended",)
        else:
            confidence = MatchConfidence.NONE
            warnings = ("No suitable purchase found - may need to create new purchase",)
            best, best_reasons = None, []

        logger.debug(
            "receipt_match_evaluated",
            extra={
                "transaction_datetime": row.transaction_datetime,
                "candidates": len(candidates),
                "score": best_score,
                "confidence": confidence.value,
                "matched_purchase_id": str(best.id) if best else None,
            },
        )
        return ReceiptMatch(
            row=row,
            purchase=best,
            confidence=confidence,
            score=best_score,
            reasons=tuple(best_reasons),
            warnings=warnings,
        )

    def match_all(
        self, *, rows: Sequence[ReceiptRow], purchases: Sequence[PurchaseInfo]
    ) -> list[ReceiptMatch]:
        """
        Match rows oldest first; a HIGH match consumes its purchase.

        Rows with unparseable dates keep their relative order after the
        dated ones.
        """
        t0 = time.monotonic()
        ordered = sorted(rows, key=receipt_order_key)

        used: set = set()
        results: list[ReceiptMatch] = []
        for row in ordered:
            available = [p for p in purchases if p.id not in used]
            result = self.match(row=row, purchases=available)
            if result.confidence is MatchConfidence.HIGH and result.purchase is not None:
                used.add(result.purchase.id)
            results.append(result)

        duration_ms = round((time.monotonic() - t0) * 1000, 2)
        logger.info(
            "receipt_matching_completed",
            extra={
                "rows": len(rows),
                "high": sum(1 for r in results if r.confidence is MatchConfidence.HIGH),
                "medium": sum(1 for r in results if r.confidence is MatchConfidence.MEDIUM),
                "low": sum(1 for r in results if r.confidence is MatchConfidence.LOW),
                "none": sum(1 for r in results if r.confidence is MatchConfidence.NONE),
                "duration_ms": duration_ms,
            },
        )
        return results
