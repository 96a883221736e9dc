"""
meter_services -- Imperative shell over the meter ledger engines.

Every service takes the caller's SQLAlchemy ``Session``, reads a fresh
snapshot through ``LedgerSelector`` before each decision, and flushes
without committing.
"""

from meter_services.adjustment_service import (
    AdjustmentResult,
    AuditPayload,
    PurchaseAdjustmentService,
)
from meter_services.ledger_service import LedgerService, RecordedReading
from meter_services.receipt_import_service import (
    ImportReport,
    ReceiptImportService,
    RowMatchOutcome,
)
from meter_services.report_service import CostReportService

__all__ = [
    "AdjustmentResult",
    "AuditPayload",
    "CostReportService",
    "ImportReport",
    "LedgerService",
    "PurchaseAdjustmentService",
    "ReceiptImportService",
    "RecordedReading",
    "RowMatchOutcome",
]
