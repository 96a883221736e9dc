"""
Receipt row normalisation.

Maps raw CSV records (any of the accepted header spellings) onto
``ReceiptRow``.  Numeric cells accept thousands separators and an optional
currency prefix; an unparseable cell becomes a per-row error, never an
exception, so one bad row does not block the batch.

Architecture: meter_ingestion. ZERO DB I/O. Imports only from
meter_kernel.domain and meter_engines.receipt_matching.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

from meter_engines.receipt_matching import ReceiptRow
from meter_ingestion.adapters.csv_adapter import CsvSourceAdapter
from meter_kernel.domain.dtos import ValidationError

_AMOUNT_FIELDS: dict[str, str] = {
    "kwh_purchased": "kWh Purchased",
    "energy_cost": "Energy Cost",
    "debt": "Debt",
    "rea": "REA",
    "vat": "VAT",
    "total_amount": "Total Amount",
    "tendered": "Amount Tendered",
}

HEADER_ALIASES: dict[str, str] = {
    "transaction_datetime": "transaction_datetime",
    "transactiondatetime": "transaction_datetime",
    "transaction_date_time": "transaction_datetime",
    "date": "transaction_datetime",
    "datetime": "transaction_datetime",
    "token_number": "token_number",
    "tokennumber": "token_number",
    "token": "token_number",
    "account_number": "account_number",
    "accountnumber": "account_number",
    "account": "account_number",
    "kwh_purchased": "kwh_purchased",
    "kwhpurchased": "kwh_purchased",
    "kwh": "kwh_purchased",
    "energy_cost": "energy_cost",
    "energycost": "energy_cost",
    "energycostzwg": "energy_cost",
    "debt": "debt",
    "debtzwg": "debt",
    "rea": "rea",
    "reazwg": "rea",
    "vat": "vat",
    "vatzwg": "vat",
    "total_amount": "total_amount",
    "totalamount": "total_amount",
    "totalamountzwg": "total_amount",
    "total": "total_amount",
    "tendered": "tendered",
    "tenderedzwg": "tendered",
    "amount_tendered": "tendered",
    "amounttendered": "tendered",
    "amounttenderedzwg": "tendered",
}

_CURRENCY_PREFIX = re.compile(r"^(ZWG|ZWL|USD|\$)\s*", re.IGNORECASE)


@dataclass(frozen=True)
class ParsedReceiptRow:
    """One source line after normalisation; ``errors`` are parse errors only."""

    row_number: int
    row: ReceiptRow
    errors: tuple[ValidationError, ...] = ()


def normalise_header(name: str) -> str | None:
    key = re.sub(r"[\s\-()/]+", "_", name.strip().lower()).strip("_")
    if key in HEADER_ALIASES:
        return HEADER_ALIASES[key]
    return HEADER_ALIASES.get(key.replace("_", ""))


def parse_amount(text: Any) -> Decimal | None:
    """
    Parse a numeric cell.

    Returns None for an empty cell; raises InvalidOperation when the cell
    is not a number.
    """
    if text is None:
        return None
    if isinstance(text, Decimal):
        return text
    cleaned = _CURRENCY_PREFIX.sub("", str(text).strip()).replace(",", "")
    if not cleaned:
        return None
    value = Decimal(cleaned)
    if not value.is_finite():
        raise InvalidOperation(cleaned)
    return value


def _text(value: Any) -> str | None:
    if value is None:
        return None
    stripped = str(value).strip()
    return stripped or None


def record_to_row(record: Mapping[str, Any], row_number: int) -> ParsedReceiptRow:
    fields: dict[str, Any] = {}
    for header, value in record.items():
        if header is None:
            continue
        target = normalise_header(header)
        if target is not None and target not in fields:
            fields[target] = value

    errors: list[ValidationError] = []
    amounts: dict[str, Decimal | None] = {}
    for name, label in _AMOUNT_FIELDS.items():
        try:
            amounts[name] = parse_amount(fields.get(name))
        except InvalidOperation:
            amounts[name] = None
            errors.append(
                ValidationError(
                    code="INVALID_NUMBER",
                    message=f"Row {row_number}: {label} must be a number",
                    field=name,
                    details={"row": row_number, "value": str(fields.get(name))},
                )
            )

    row = ReceiptRow(
        transaction_datetime=_text(fields.get("transaction_datetime")),
        token_number=_text(fields.get("token_number")),
        account_number=_text(fields.get("account_number")),
        **amounts,
    )
    return ParsedReceiptRow(row_number=row_number, row=row, errors=tuple(errors))


def rows_from_records(
    records: Iterable[Mapping[str, Any]], first_row_number: int = 2
) -> list[ParsedReceiptRow]:
    """Normalise records; row numbers count the header as row 1."""
    return [record_to_row(r, first_row_number + i) for i, r in enumerate(records)]


def read_receipt_csv(
    source_path: Path | str, options: dict[str, Any] | None = None
) -> list[ParsedReceiptRow]:
    options = options or {}
    first = 2 if options.get("has_header", True) else 1
    first += int(options.get("skip_rows", 0))
    records = CsvSourceAdapter().read(Path(source_path), options)
    return rows_from_records(records, first_row_number=first)
