"""
Tests for PurchaseAdjustmentService: preview, atomic apply and audit payloads.

Chain used (all through LedgerService):

    A  2024-01-01  1000 kWh  reading 5000   settled
    B  2024-02-01   800 kWh  reading 5800   settled (800 kWh from A)
    C  2024-03-01   500 kWh  reading 6500   settled (700 kWh from B)
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from meter_kernel.exceptions import (
    CascadeViolationError,
    ChronologyViolationError,
    PurchaseLockedError,
    PurchaseNotFoundError,
)
from meter_kernel.models import TokenPurchase, UserContribution

D = Decimal


def on(year: int, month: int, day: int) -> datetime:
    return datetime(year, month, day, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def chain(household):
    a = household.buy(on(2024, 1, 1), "1000", "100", "5000")
    household.settle(a)
    b = household.buy(on(2024, 2, 1), "800", "90", "5800")
    household.settle(b)
    c = household.buy(on(2024, 3, 1), "500", "60", "6500")
    household.settle(c, user="bob")
    snapshot = household.service.snapshot()
    return snapshot.purchase(a.id), snapshot.purchase(b.id), snapshot.purchase(c.id)


def _tokens(session, contribution_id) -> Decimal:
    return session.scalar(
        select(UserContribution.tokens_consumed).where(UserContribution.id == contribution_id)
    )


class TestPreview:

    def test_preview_lists_recalculations_without_writing(
        self, chain, adjustment_service, session
    ):
        _, b, c = chain

        impact = adjustment_service.preview(purchase_id=b.id, new_meter_reading=D("5900"))

        assert impact.can_proceed
        assert len(impact.plan.updates) == 2
        assert "recalculate 2 contribution(s)" in impact.summary
        assert _tokens(session, c.contribution.id) == D("700")

    def test_preview_of_invalid_change(self, chain, adjustment_service):
        _, b, _ = chain

        impact = adjustment_service.preview(purchase_id=b.id, new_meter_reading=D("5600"))

        assert not impact.can_proceed
        assert impact.plan.violation_codes == ("INSUFFICIENT_TOKENS",)

    def test_preview_unknown_purchase(self, adjustment_service):
        with pytest.raises(PurchaseNotFoundError):
            adjustment_service.preview(purchase_id=uuid4())


class TestApply:

    def test_reading_change_cascades(self, chain, adjustment_service, session, actor_id):
        _, b, c = chain

        result = adjustment_service.apply(
            purchase_id=b.id, new_meter_reading=D("5900"), actor_id=actor_id, is_admin=True
        )

        assert result.purchase.meter_reading == D("5900")
        assert result.purchase.contribution.meter_reading == D("5900")
        assert result.purchase.contribution.tokens_consumed == D("900")
        assert _tokens(session, c.contribution.id) == D("600")

    def test_audit_payloads_purchase_first(
        self, chain, adjustment_service, audit_log, actor_id, clock
    ):
        _, b, c = chain

        result = adjustment_service.apply(
            purchase_id=b.id, new_meter_reading=D("5900"), actor_id=actor_id, is_admin=True
        )

        assert audit_log == list(result.audit)
        purchase_entry, own_entry, next_entry = audit_log
        assert purchase_entry.entity_type == "TokenPurchase"
        assert purchase_entry.entity_id == b.id
        assert D(purchase_entry.old_values["meter_reading"]) == D("5800")
        assert D(purchase_entry.new_values["meter_reading"]) == D("5900")
        assert purchase_entry.actor_id == actor_id
        assert purchase_entry.occurred_at == clock.now()
        assert own_entry.entity_type == "UserContribution"
        assert own_entry.entity_id == b.contribution.id
        assert next_entry.entity_id == c.contribution.id
        assert D(next_entry.new_values["tokens_consumed"]) == D("600")

    def test_invalid_cascade_rejected_and_nothing_written(
        self, chain, adjustment_service, session, audit_log
    ):
        _, b, c = chain

        with pytest.raises(CascadeViolationError) as exc_info:
            adjustment_service.apply(
                purchase_id=b.id, new_meter_reading=D("5600"), is_admin=True
            )

        error = exc_info.value
        assert error.purchase_id == str(b.id)
        assert error.attempted["meter_reading"] == D("5600")
        assert [v.code for v in error.violations] == ["INSUFFICIENT_TOKENS"]
        assert session.get(TokenPurchase, b.id).meter_reading == D("5800")
        assert _tokens(session, c.contribution.id) == D("700")
        assert audit_log == []

    def test_token_cut_below_unsettled_successor_rejected(
        self, household, adjustment_service, session, audit_log
    ):
        a = household.buy(on(2024, 1, 1), "1000", "100", "5000")
        household.settle(a)
        b = household.buy(on(2024, 2, 1), "800", "90", "5800")

        with pytest.raises(CascadeViolationError) as exc_info:
            adjustment_service.apply(purchase_id=a.id, new_total_tokens=D("500"), is_admin=True)

        assert [v.code for v in exc_info.value.violations] == ["INSUFFICIENT_TOKENS"]
        assert session.get(TokenPurchase, a.id).total_tokens == D("1000")
        assert audit_log == []
        assert household.settle(b).tokens_consumed == D("800")

    def test_settled_purchase_locked_for_non_admin(self, chain, adjustment_service):
        _, b, _ = chain

        with pytest.raises(PurchaseLockedError):
            adjustment_service.apply(purchase_id=b.id, new_total_payment=D("95"))

    def test_unsettled_purchase_editable_by_anyone(self, household, adjustment_service):
        a = household.buy(on(2024, 1, 1), "1000", "100", "5000")

        result = adjustment_service.apply(purchase_id=a.id, new_total_payment=D("110"))

        assert result.purchase.total_payment == D("110")
        assert result.plan.updates == ()

    def test_new_reading_must_respect_chronology(self, chain, adjustment_service):
        _, b, _ = chain

        with pytest.raises(ChronologyViolationError) as exc_info:
            adjustment_service.apply(
                purchase_id=b.id, new_meter_reading=D("4900"), is_admin=True
            )

        assert exc_info.value.error_codes == ("READING_BELOW_PREVIOUS",)

    def test_caller_rollback_discards_applied_change(
        self, chain, adjustment_service, session
    ):
        _, b, _ = chain
        session.commit()

        adjustment_service.apply(purchase_id=b.id, new_meter_reading=D("5900"), is_admin=True)
        session.rollback()

        assert session.get(TokenPurchase, b.id).meter_reading == D("5800")

    def test_adjustment_logged(self, chain, adjustment_service, captured_logs):
        _, b, _ = chain

        adjustment_service.apply(purchase_id=b.id, new_meter_reading=D("5900"), is_admin=True)

        adjusted = [r for r in captured_logs() if r["message"] == "purchase_adjusted"]
        assert adjusted[0]["purchase_id"] == str(b.id)
        assert len(adjusted[0]["contributions_recalculated"]) == 2
