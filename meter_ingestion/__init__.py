"""
meter_ingestion -- Receipt CSV ingestion.

Reads official receipt exports and normalises each line into a
``ReceiptRow`` for ``ReceiptImportService``.  File I/O and row parsing
only; no database access.

Architecture:
    meter_ingestion/ is a top-level package.  Nothing in meter_kernel/ or
    meter_engines/ imports from ingestion.
"""

from meter_ingestion.receipt_rows import (
    ParsedReceiptRow,
    parse_amount,
    read_receipt_csv,
    rows_from_records,
)

__all__ = [
    "ParsedReceiptRow",
    "parse_amount",
    "read_receipt_csv",
    "rows_from_records",
]
