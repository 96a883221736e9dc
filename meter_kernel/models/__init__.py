"""ORM models for the meter ledger."""

from meter_kernel.models.contribution import UserContribution
from meter_kernel.models.meter_reading import MeterReading
from meter_kernel.models.purchase import TokenPurchase
from meter_kernel.models.receipt import ReceiptData

__all__ = [
    "MeterReading",
    "ReceiptData",
    "TokenPurchase",
    "UserContribution",
]
