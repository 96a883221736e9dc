"""
Pure domain layer.

Snapshot DTOs, rounding helpers and the clock abstraction.  Nothing in
this package touches the ORM, the database or the wall clock (except
SystemClock).
"""

from meter_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from meter_kernel.domain.currency import (
    CurrencyInfo,
    CurrencyRegistry,
    round_money,
    round_quantity,
    round_rate,
    to_decimal,
)
from meter_kernel.domain.dtos import (
    ContributionInfo,
    LedgerSnapshot,
    MeterReadingInfo,
    PurchaseInfo,
    ReadingPoint,
    ReadingScope,
    ReadingSource,
    ReceiptInfo,
    ValidationError,
    ValidationResult,
)

__all__ = [
    "Clock",
    "ContributionInfo",
    "CurrencyInfo",
    "CurrencyRegistry",
    "DeterministicClock",
    "LedgerSnapshot",
    "MeterReadingInfo",
    "PurchaseInfo",
    "ReadingPoint",
    "ReadingScope",
    "ReadingSource",
    "ReceiptInfo",
    "SystemClock",
    "ValidationError",
    "ValidationResult",
    "round_money",
    "round_quantity",
    "round_rate",
    "to_decimal",
]
