"""
Service-level fixtures: every service shares the test session and clock.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from meter_services import (
    CostReportService,
    LedgerService,
    PurchaseAdjustmentService,
    ReceiptImportService,
)


@pytest.fixture
def ledger_service(session, clock, config):
    return LedgerService(session, clock=clock, config=config)


@pytest.fixture
def audit_log():
    return []


@pytest.fixture
def adjustment_service(session, clock, config, audit_log):
    return PurchaseAdjustmentService(session, clock=clock, config=config, audit_sink=audit_log.append)


@pytest.fixture
def import_service(session, clock, config):
    return ReceiptImportService(session, clock=clock, config=config)


@pytest.fixture
def report_service(session, config):
    return CostReportService(session, config=config)


class HouseholdLedger:
    """Drives ``LedgerService`` through a realistic purchase/contribution history."""

    def __init__(self, service: LedgerService, clock, actor_id):
        self.service = service
        self.clock = clock
        self.actor_id = actor_id
        self.users = {"alice": uuid4(), "bob": uuid4()}

    def buy(self, when, tokens: str, payment: str, reading: str, **kwargs):
        self.clock.advance(60)
        return self.service.record_purchase(
            total_tokens=Decimal(tokens),
            total_payment=Decimal(payment),
            meter_reading=Decimal(reading),
            purchase_date=when,
            created_by=self.actor_id,
            **kwargs,
        )

    def settle(self, purchase, user: str = "alice", amount: str | None = None, **kwargs):
        self.clock.advance(60)
        return self.service.record_contribution(
            purchase_id=purchase.id,
            user_id=self.users[user],
            contribution_amount=Decimal(amount) if amount else purchase.total_payment,
            meter_reading=purchase.meter_reading,
            **kwargs,
        )


@pytest.fixture
def household(ledger_service, clock, actor_id):
    return HouseholdLedger(ledger_service, clock, actor_id)
