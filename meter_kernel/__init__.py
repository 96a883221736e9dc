"""
Meter Kernel - shared prepaid meter ledger core

Domain values and snapshots, typed exceptions, structured logging and
the SQLAlchemy persistence adapter for:
- Meter readings recorded by the household
- Token purchases with their meter reading at purchase time
- One contribution per purchase settling the consumption since the
  previous purchase
- Official-currency receipts attached to purchases
"""

__version__ = "0.1.0"
