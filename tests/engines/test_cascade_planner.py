"""
Tests for purchase adjustment planning and impact preview.

The chain used throughout:

    A  2024-01-01  1000 kWh  reading 5000   contribution at 5000 (0 kWh)
    B  2024-02-01   800 kWh  reading 5800   contribution at 5800 (800 kWh from A)
    C  2024-03-01   500 kWh  reading 6500   contribution at 6500 (700 kWh from B)
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from meter_engines.cascade import analyze_impact, plan_purchase_adjustment

D = Decimal


@pytest.fixture
def chain(ledger):
    a = ledger.purchase("2024-01-01", tokens="1000", payment="100", reading="5000")
    ledger.contribute(a)
    b = ledger.purchase("2024-02-01", tokens="800", payment="90", reading="5800")
    ledger.contribute(b)
    c = ledger.purchase("2024-03-01", tokens="500", payment="60", reading="6500")
    ledger.contribute(c)
    return ledger, a, ledger.get(b.id), ledger.get(c.id)


class TestPlan:

    def test_reading_change_cascades_to_own_and_next(self, chain):
        ledger, _, b, c = chain

        plan = plan_purchase_adjustment(
            snapshot=ledger.snapshot(), purchase_id=b.id, new_meter_reading=D("5900")
        )

        assert plan.is_valid
        assert plan.requires_recalculation
        own, following = plan.updates
        assert own.contribution_id == b.contribution.id
        assert (own.old_meter_reading, own.new_meter_reading) == (D("5800"), D("5900"))
        assert (own.old_tokens_consumed, own.new_tokens_consumed) == (D("800"), D("900"))
        assert following.contribution_id == c.contribution.id
        assert following.purchase_id == c.id
        assert following.new_meter_reading == D("6500")
        assert following.new_tokens_consumed == D("600")
        assert following.tokens_delta == D("-100")
        assert plan.old_values["meter_reading"] == "5800"
        assert plan.new_values["meter_reading"] == "5900"

    def test_update_carries_audit_values(self, chain):
        ledger, _, b, _ = chain

        plan = plan_purchase_adjustment(
            snapshot=ledger.snapshot(),
            purchase_id=b.id,
            new_meter_reading=D("5900"),
            trigger="admin_correction",
        )

        own = plan.updates[0]
        assert own.trigger == "admin_correction"
        assert own.old_values == {"meter_reading": "5800", "tokens_consumed": "800"}
        assert own.new_values == {"meter_reading": "5900", "tokens_consumed": "900"}

    def test_payment_only_change_needs_no_recalculation(self, chain):
        ledger, _, b, _ = chain

        plan = plan_purchase_adjustment(
            snapshot=ledger.snapshot(), purchase_id=b.id, new_total_payment=D("120")
        )

        assert plan.is_valid
        assert not plan.requires_recalculation
        assert plan.new_values["total_payment"] == "120"

    def test_next_consumption_exceeding_tokens_rejected(self, chain):
        ledger, _, b, _ = chain

        plan = plan_purchase_adjustment(
            snapshot=ledger.snapshot(), purchase_id=b.id, new_meter_reading=D("5600")
        )

        assert not plan.is_valid
        assert plan.updates == ()
        assert plan.violation_codes == ("INSUFFICIENT_TOKENS",)
        assert plan.violations[0].message == (
            "Recalculated consumption (900 kWh) exceeds available tokens (800 kWh)"
        )

    def test_shrinking_tokens_below_next_consumption_rejected(self, chain):
        ledger, _, b, _ = chain

        plan = plan_purchase_adjustment(
            snapshot=ledger.snapshot(), purchase_id=b.id, new_total_tokens=D("600")
        )

        assert plan.violation_codes == ("INSUFFICIENT_TOKENS",)

    def test_reading_past_next_contribution_rejected(self, chain):
        ledger, _, b, _ = chain

        plan = plan_purchase_adjustment(
            snapshot=ledger.snapshot(), purchase_id=b.id, new_meter_reading=D("6600")
        )

        assert set(plan.violation_codes) == {"INSUFFICIENT_TOKENS", "NEGATIVE_CONSUMPTION"}
        assert plan.updates == ()

    def test_last_purchase_only_updates_its_own_contribution(self, chain):
        ledger, _, _, c = chain

        plan = plan_purchase_adjustment(
            snapshot=ledger.snapshot(), purchase_id=c.id, new_meter_reading=D("6550")
        )

        assert plan.is_valid
        assert [u.contribution_id for u in plan.updates] == [c.contribution.id]
        assert plan.updates[0].new_tokens_consumed == D("750")

    def test_unsettled_successor_still_bounds_tokens(self, ledger):
        a = ledger.purchase("2024-01-01", tokens="1000", payment="100", reading="5000")
        ledger.contribute(a)
        b = ledger.purchase("2024-02-01", tokens="800", payment="90", reading="5800")

        plan = plan_purchase_adjustment(
            snapshot=ledger.snapshot(), purchase_id=a.id, new_total_tokens=D("500")
        )

        assert plan.violation_codes == ("INSUFFICIENT_TOKENS",)
        assert plan.updates == ()
        assert plan.violations[0].details["next_purchase_id"] == str(b.id)
        assert plan.violations[0].details["attempted"] == "800"

    def test_unsettled_successor_within_tokens_needs_no_update(self, ledger):
        a = ledger.purchase("2024-01-01", tokens="1000", payment="100", reading="5000")
        ledger.contribute(a)
        ledger.purchase("2024-02-01", tokens="800", payment="90", reading="5800")

        plan = plan_purchase_adjustment(
            snapshot=ledger.snapshot(), purchase_id=a.id, new_total_tokens=D("800")
        )

        assert plan.is_valid
        assert not plan.requires_recalculation

    def test_reading_above_unsettled_successor_rejected(self, ledger):
        a = ledger.purchase("2024-01-01", tokens="1000", payment="100", reading="5000")
        ledger.purchase("2024-02-01", tokens="800", payment="90", reading="5800")

        plan = plan_purchase_adjustment(
            snapshot=ledger.snapshot(), purchase_id=a.id, new_meter_reading=D("5900")
        )

        assert plan.violation_codes == ("NEGATIVE_CONSUMPTION",)
        assert plan.violations[0].message == (
            "Next purchase meter reading (5800) is below the new purchase meter reading (5900)"
        )

    @pytest.mark.parametrize(
        "changes, code",
        [
            ({"new_meter_reading": D("-1")}, "NEGATIVE_READING"),
            ({"new_total_tokens": D("0")}, "INVALID_TOTAL_TOKENS"),
            ({"new_total_payment": D("0")}, "INVALID_TOTAL_PAYMENT"),
        ],
    )
    def test_invalid_values_rejected(self, chain, changes, code):
        ledger, _, b, _ = chain

        plan = plan_purchase_adjustment(snapshot=ledger.snapshot(), purchase_id=b.id, **changes)

        assert plan.violation_codes == (code,)

    def test_unknown_purchase(self, ledger):
        plan = plan_purchase_adjustment(snapshot=ledger.snapshot(), purchase_id=uuid4())

        assert plan.violation_codes == ("PURCHASE_NOT_FOUND",)

    def test_rejection_logged_with_attempted_values(self, chain, captured_logs):
        ledger, _, b, _ = chain

        plan_purchase_adjustment(
            snapshot=ledger.snapshot(), purchase_id=b.id, new_meter_reading=D("5600")
        )

        rejected = [r for r in captured_logs() if r["message"] == "purchase_adjustment_rejected"]
        assert rejected[0]["level"] == "WARNING"
        assert rejected[0]["violations"] == ["INSUFFICIENT_TOKENS"]
        assert rejected[0]["attempted"]["meter_reading"] == "5600"


class TestImpact:

    def test_impact_describes_each_recalculation(self, chain):
        ledger, _, b, c = chain

        impact = analyze_impact(
            snapshot=ledger.snapshot(), purchase_id=b.id, new_meter_reading=D("5900")
        )

        assert impact.can_proceed
        assert impact.summary == (
            "Changing this purchase will automatically recalculate 2 contribution(s)."
        )
        assert impact.messages[0] == (
            f"Contribution {b.contribution.id} tokens consumed will change from "
            "800 kWh to 900 kWh (+100 kWh difference)"
        )
        assert impact.messages[1] == (
            f"Contribution {c.contribution.id} tokens consumed will change from "
            "700 kWh to 600 kWh (-100 kWh difference)"
        )
        assert all(u.trigger == "impact_analysis" for u in impact.plan.updates)

    def test_impact_without_dependents(self, chain):
        ledger, _, b, _ = chain

        impact = analyze_impact(
            snapshot=ledger.snapshot(), purchase_id=b.id, new_total_payment=D("95")
        )

        assert impact.summary == "No associated contribution will be affected by these changes."
        assert impact.messages == ()

    def test_impact_of_invalid_change(self, chain):
        ledger, _, b, _ = chain

        impact = analyze_impact(
            snapshot=ledger.snapshot(), purchase_id=b.id, new_meter_reading=D("5600")
        )

        assert not impact.can_proceed
        assert impact.summary.startswith("The change cannot be applied")
        assert impact.messages == (
            "Recalculated consumption (900 kWh) exceeds available tokens (800 kWh)",
        )
