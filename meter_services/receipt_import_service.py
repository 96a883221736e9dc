"""
meter_services.receipt_import_service -- Bulk receipt import with matching.

Responsibility:
    Validate a batch of receipt rows, match the valid ones to purchases and
    attach confident matches as ``ReceiptData``.  Produces an
    ``ImportReport`` listing per-row errors and every match decision.

Architecture position:
    Services -- imperative shell over ``ReceiptMatcher`` and
    ``validate_receipt_row``.  Rows usually come from
    ``meter_ingestion.read_receipt_csv``.

Invariants enforced:
    - One bad row never blocks the others.
    - A purchase receives at most one receipt.
    - Only matches at or above ``min_confidence`` (HIGH by default) are
      attached; the rest are reported for manual review.

Failure modes:
    - None raised for row problems; they are collected in the report.

Audit relevance:
    The report records the score, confidence and reasons behind every
    attachment.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from meter_config import LedgerConfig, get_active_config
from meter_engines.receipt_matching import (
    MatchConfidence,
    ReceiptMatch,
    ReceiptMatcher,
    ReceiptRow,
    receipt_order_key,
    validate_receipt_row,
)
from meter_ingestion import ParsedReceiptRow, read_receipt_csv
from meter_kernel.domain.clock import Clock, SystemClock
from meter_kernel.domain.dtos import ValidationError
from meter_kernel.logging_config import get_logger
from meter_kernel.models import ReceiptData
from meter_kernel.selectors.ledger_selector import LedgerSelector
from meter_kernel.services.base import BaseService
from meter_services.ledger_service import receipt_from_row

logger = get_logger("services.receipt_import")

_CONFIDENCE_RANK = {
    MatchConfidence.NONE: 0,
    MatchConfidence.LOW: 1,
    MatchConfidence.MEDIUM: 2,
    MatchConfidence.HIGH: 3,
}


@dataclass(frozen=True)
class RowMatchOutcome:
    row_number: int
    match: ReceiptMatch
    imported: bool
    receipt_id: UUID | None = None

    @property
    def purchase_id(self) -> UUID | None:
        return self.match.purchase.id if self.match.purchase is not None else None


@dataclass(frozen=True)
class ImportReport:
    total_rows: int
    validation_errors: dict[int, tuple[ValidationError, ...]] = field(default_factory=dict)
    outcomes: tuple[RowMatchOutcome, ...] = ()

    @property
    def imported_count(self) -> int:
        return sum(1 for o in self.outcomes if o.imported)

    @property
    def review_count(self) -> int:
        return sum(1 for o in self.outcomes if not o.imported)

    @property
    def failed_rows(self) -> tuple[int, ...]:
        return tuple(sorted(self.validation_errors))

    def error_messages(self) -> dict[int, list[str]]:
        return {n: [e.message for e in errs] for n, errs in self.validation_errors.items()}


class ReceiptImportService(BaseService[ReceiptData]):
    """
    Receipt batch import.

    Contract:
        ``import_rows(..., attach=False)`` is a dry run and writes nothing.
    Guarantees:
        - Row numbers in the report are the caller's row numbers.
    Non-goals:
        - Does not create purchases for unmatched receipts.
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
        self._matcher = ReceiptMatcher(self._config.matching)

    def import_rows(
        self,
        rows: Sequence[ReceiptRow | ParsedReceiptRow],
        *,
        attach: bool = True,
        min_confidence: MatchConfidence = MatchConfidence.HIGH,
        first_row_number: int = 1,
    ) -> ImportReport:
        """Validate, match and (optionally) attach a batch of receipts."""
        parsed = [
            r if isinstance(r, ParsedReceiptRow)
            else ParsedReceiptRow(row_number=first_row_number + i, row=r)
            for i, r in enumerate(rows)
        ]

        errors: dict[int, tuple[ValidationError, ...]] = {}
        valid: list[ParsedReceiptRow] = []
        for item in parsed:
            result = validate_receipt_row(item.row, item.row_number, self._config.receipt)
            row_errors = item.errors + result.errors
            if row_errors:
                errors[item.row_number] = row_errors
            else:
                valid.append(item)

        # Pre-sorted with the matcher's own key so results line up one to one.
        valid.sort(key=lambda item: receipt_order_key(item.row))
        snapshot = self._selector.snapshot()
        matches = self._matcher.match_all(
            rows=[item.row for item in valid], purchases=snapshot.purchases
        )

        outcomes: list[RowMatchOutcome] = []
        now = self._clock.now()
        threshold = _CONFIDENCE_RANK[min_confidence]
        claimed: set[UUID] = set()
        for item, match in zip(valid, matches, strict=True):
            row_number = item.row_number
            purchase = match.purchase
            eligible = (
                attach
                and purchase is not None
                and purchase.id not in claimed
                and _CONFIDENCE_RANK[match.confidence] >= threshold
            )
            if not eligible:
                outcomes.append(RowMatchOutcome(row_number=row_number, match=match, imported=False))
                continue

            model = receipt_from_row(match.row, purchase.id)
            model.created_at = now
            model.updated_at = now
            self.session.add(model)
            self.session.flush()
            claimed.add(purchase.id)
            outcomes.append(
                RowMatchOutcome(
                    row_number=row_number, match=match, imported=True, receipt_id=model.id
                )
            )

        report = ImportReport(
            total_rows=len(parsed),
            validation_errors=errors,
            outcomes=tuple(sorted(outcomes, key=lambda o: o.row_number)),
        )
        logger.info(
            "receipt_import_completed",
            extra={
                "total_rows": report.total_rows,
                "invalid_rows": len(errors),
                "imported": report.imported_count,
                "needs_review": report.review_count,
                "attach": attach,
                "min_confidence": min_confidence.value,
            },
        )
        return report

    def import_csv(
        self,
        source_path: Path | str,
        options: dict[str, Any] | None = None,
        *,
        attach: bool = True,
        min_confidence: MatchConfidence = MatchConfidence.HIGH,
    ) -> ImportReport:
        return self.import_rows(
            read_receipt_csv(source_path, options), attach=attach, min_confidence=min_confidence
        )
