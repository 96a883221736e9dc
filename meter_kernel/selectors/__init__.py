"""Read-only selectors returning immutable ledger DTOs."""

from meter_kernel.selectors.ledger_selector import LedgerSelector

__all__ = ["LedgerSelector"]
