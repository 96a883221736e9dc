"""
CSV source adapter for receipt exports.

Uses csv.DictReader. Configurable: delimiter, encoding, has_header,
skip_rows. Handles BOM via utf-8-sig when encoding is utf-8. Streams rows;
headerless files get the positional receipt column names.
"""

from __future__ import annotations

import csv
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from meter_kernel.logging_config import get_logger

logger = get_logger("ingestion.csv")

# Column order of the receipt export when the file has no header.
RECEIPT_COLUMNS: tuple[str, ...] = (
    "transaction_datetime",
    "token_number",
    "account_number",
    "kwh_purchased",
    "energy_cost",
    "debt",
    "rea",
    "vat",
    "total_amount",
    "tendered",
)


def _get_encoding(options: dict[str, Any]) -> str:
    enc = options.get("encoding", "utf-8")
    if enc.lower() == "utf-8":
        return "utf-8-sig"  # Strip BOM if present
    return enc


class CsvSourceAdapter:
    """Read CSV files as one dict per row. Streams; does not load entire file."""

    def read(self, source_path: Path, options: dict[str, Any] | None = None) -> Iterator[dict[str, Any]]:
        options = options or {}
        encoding = _get_encoding(options)
        delimiter = options.get("delimiter", ",")
        has_header = options.get("has_header", True)
        skip_rows = int(options.get("skip_rows", 0))

        count = 0
        with Path(source_path).open("r", encoding=encoding, newline="") as f:
            for _ in range(skip_rows):
                next(f, None)
            if has_header:
                reader = csv.DictReader(f, delimiter=delimiter)
                for row in reader:
                    count += 1
                    yield row
            else:
                columns = tuple(options.get("columns") or RECEIPT_COLUMNS)
                for row in csv.reader(f, delimiter=delimiter):
                    if not any(cell.strip() for cell in row):
                        continue
                    count += 1
                    yield dict(zip(columns, row))

        logger.info(
            "csv_source_read",
            extra={"source_path": str(source_path), "rows": count, "has_header": has_header},
        )
