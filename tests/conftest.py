"""
Pytest fixtures for the meter ledger test suite.

Provides:
- Structured logging configured once per session, LogContext cleared per test
- In-memory SQLite sessions (one fresh database per test)
- A deterministic clock
- ``ledger``: an in-memory snapshot builder for engine tests

Environment Variables:
- DATABASE_URL: optional SQLAlchemy URL for the service tests.  Defaults to
  in-memory SQLite.
"""

import json
import logging
import os
from dataclasses import replace
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from io import StringIO
from uuid import UUID, uuid4

import pytest

from meter_config import get_active_config
from meter_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session,
    init_engine_from_url,
    reset_engine,
)
from meter_kernel.domain.clock import DeterministicClock
from meter_kernel.domain.dtos import (
    ContributionInfo,
    LedgerSnapshot,
    MeterReadingInfo,
    PurchaseInfo,
    ReceiptInfo,
)
from meter_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)

# Test actor ID for all test operations
TEST_ACTOR_ID = uuid4()

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture meter_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, ledger_service):
            ledger_service.record_purchase(...)
            logs = captured_logs()
            assert any(r["message"] == "purchase_recorded" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("meter_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database
# =============================================================================


def get_database_url() -> str:
    return os.environ.get("DATABASE_URL", "sqlite://")


@pytest.fixture
def session():
    """A session on a freshly created schema; rolled back and dropped after."""
    init_engine_from_url(get_database_url())
    create_tables()
    db_session = get_session()
    yield db_session
    db_session.rollback()
    db_session.close()
    drop_tables()
    reset_engine()


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(BASE_TIME)


@pytest.fixture
def config():
    return get_active_config()


@pytest.fixture
def actor_id() -> UUID:
    return TEST_ACTOR_ID


# =============================================================================
# Snapshot builder
# =============================================================================


def as_moment(value: date | datetime | str) -> datetime:
    """Dates (or ISO date strings) become noon UTC on that day."""
    if isinstance(value, str):
        value = date.fromisoformat(value)
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    return datetime(value.year, value.month, value.day, 12, 0, 0, tzinfo=UTC)


class SnapshotBuilder:
    """Builds ``LedgerSnapshot`` values without a database."""

    def __init__(self):
        self._purchases: dict[UUID, PurchaseInfo] = {}
        self._readings: list[MeterReadingInfo] = []
        self._tick = 0

    def _created(self) -> datetime:
        self._tick += 1
        return BASE_TIME + timedelta(minutes=self._tick)

    def purchase(
        self,
        on: date | datetime | str,
        *,
        tokens: str = "1000",
        payment: str = "100",
        reading: str = "5000",
        emergency: bool = False,
    ) -> PurchaseInfo:
        info = PurchaseInfo(
            id=uuid4(),
            total_tokens=Decimal(tokens),
            total_payment=Decimal(payment),
            meter_reading=Decimal(reading),
            purchase_date=as_moment(on),
            is_emergency=emergency,
            created_by=TEST_ACTOR_ID,
            created_at=self._created(),
        )
        self._purchases[info.id] = info
        return info

    def contribute(
        self,
        purchase: PurchaseInfo,
        *,
        user_id: UUID | None = None,
        amount: str | None = None,
        reading: str | None = None,
        tokens: str | None = None,
    ) -> ContributionInfo:
        """Attach a contribution; tokens default to the derived consumption."""
        current = self._purchases[purchase.id]
        meter = Decimal(reading) if reading is not None else current.meter_reading
        if tokens is not None:
            consumed = Decimal(tokens)
        else:
            previous = self.snapshot().previous_purchase(current.id)
            consumed = meter - (previous.meter_reading if previous else current.meter_reading)
        info = ContributionInfo(
            id=uuid4(),
            purchase_id=current.id,
            user_id=user_id or TEST_ACTOR_ID,
            contribution_amount=Decimal(amount) if amount is not None else current.total_payment,
            meter_reading=meter,
            tokens_consumed=consumed,
            created_at=self._created(),
        )
        self._purchases[current.id] = replace(current, contribution=info)
        return info

    def receipt(
        self,
        purchase: PurchaseInfo,
        *,
        total: str,
        kwh: str | None = None,
        when: date | datetime | str | None = None,
    ) -> ReceiptInfo:
        current = self._purchases[purchase.id]
        total_amount = Decimal(total)
        info = ReceiptInfo(
            id=uuid4(),
            kwh_purchased=Decimal(kwh) if kwh is not None else current.total_tokens,
            energy_cost=total_amount,
            debt=Decimal("0"),
            rea=Decimal("0"),
            vat=Decimal("0"),
            total_amount=total_amount,
            transaction_datetime=as_moment(when) if when else current.purchase_date,
            tendered=total_amount,
            purchase_id=current.id,
        )
        self._purchases[current.id] = replace(current, receipt=info)
        return info

    def reading(self, on: date | str, value: str, *, user_id: UUID | None = None) -> MeterReadingInfo:
        info = MeterReadingInfo(
            id=uuid4(),
            user_id=user_id or TEST_ACTOR_ID,
            reading=Decimal(value),
            reading_date=date.fromisoformat(on) if isinstance(on, str) else on,
            created_at=self._created(),
        )
        self._readings.append(info)
        return info

    def get(self, purchase_id: UUID) -> PurchaseInfo:
        return self._purchases[purchase_id]

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(
            purchases=tuple(self._purchases.values()),
            readings=tuple(self._readings),
        )


@pytest.fixture
def ledger() -> SnapshotBuilder:
    return SnapshotBuilder()
