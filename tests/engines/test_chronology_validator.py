"""
Tests for the chronology validator.

Covers:
- Same-date maximum, previous and next reading bounds
- Purchase-based ceiling and the purchase baseline requirement
- Consumption anomaly handling in reject / warn / off modes
- Soft high, low and zero consumption warnings
- Exclusion of the record being edited
- GLOBAL vs USER scope
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from meter_config.schema import AnomalyMode, ChronologyConfig
from meter_engines.chronology import ChronologyValidator, fmt_quantity
from meter_kernel.domain.dtos import ReadingScope


@pytest.fixture
def validator():
    return ChronologyValidator()


@pytest.fixture
def steady_ledger(ledger):
    """Purchase on Jan 1 at 5000, then 10 kWh/day readings on Jan 11 and Jan 21."""
    ledger.purchase("2024-01-01", reading="5000", tokens="1000")
    ledger.reading("2024-01-11", "5100")
    ledger.reading("2024-01-21", "5200")
    return ledger


def _validate(validator, snapshot, reading, on, **kwargs):
    return validator.validate(
        reading=Decimal(reading),
        reading_date=date.fromisoformat(on),
        snapshot=snapshot,
        **kwargs,
    )


class TestOrderingBounds:

    def test_empty_ledger_accepts_any_reading(self, validator, ledger):
        result = _validate(validator, ledger.snapshot(), "1234", "2024-01-01")

        assert result.is_valid
        assert result.errors == ()

    def test_purchase_baseline_required_for_first_reading(self, validator, ledger):
        result = _validate(
            validator, ledger.snapshot(), "1234", "2024-01-01", require_purchase_baseline=True
        )

        assert not result.is_valid
        assert result.errors[0].code == "NO_PURCHASE_BASELINE"

    def test_reading_below_previous_rejected(self, validator, ledger):
        purchase = ledger.purchase("2024-01-01", reading="5000")

        result = _validate(validator, ledger.snapshot(), "4990", "2024-01-05")

        assert not result.is_valid
        error = result.errors[0]
        assert error.code == "READING_BELOW_PREVIOUS"
        assert error.details["conflicting_reading"] == "5000"
        assert error.details["conflicting_id"] == str(purchase.id)
        assert error.details["conflicting_source"] == "purchase"

    def test_reading_above_next_rejected(self, validator, ledger):
        ledger.purchase("2024-01-01", reading="5000")
        ledger.reading("2024-01-10", "5100")

        result = _validate(validator, ledger.snapshot(), "5200", "2024-01-05")

        assert not result.is_valid
        assert result.errors[0].code == "READING_ABOVE_NEXT"
        assert result.errors[0].details["conflicting_reading"] == "5100"

    def test_reading_below_same_date_max_rejected(self, validator, ledger):
        ledger.purchase("2024-01-01", reading="5000")
        ledger.reading("2024-01-05", "5100")

        result = _validate(validator, ledger.snapshot(), "5050", "2024-01-05")

        assert not result.is_valid
        assert result.errors[0].code == "READING_BELOW_SAME_DATE_MAX"

    def test_equal_same_date_reading_accepted(self, validator, ledger):
        ledger.purchase("2024-01-01", reading="5000")
        ledger.reading("2024-01-05", "5100")

        result = _validate(validator, ledger.snapshot(), "5100", "2024-01-05")

        assert result.is_valid

    def test_contribution_readings_are_timeline_points(self, validator, ledger):
        purchase = ledger.purchase("2024-01-01", reading="5000")
        ledger.contribute(purchase)

        result = _validate(validator, ledger.snapshot(), "4999", "2024-01-02")

        assert not result.is_valid
        assert result.errors[0].code == "READING_BELOW_PREVIOUS"


class TestCeiling:

    def test_reading_at_ceiling_accepted(self, validator, ledger):
        ledger.purchase("2024-01-01", reading="5000", tokens="1000")

        assert _validate(validator, ledger.snapshot(), "6000", "2024-01-05").is_valid

    def test_reading_above_ceiling_rejected(self, validator, ledger):
        first = ledger.purchase("2024-01-01", reading="5000", tokens="1000")

        result = _validate(validator, ledger.snapshot(), "6001", "2024-01-05")

        assert not result.is_valid
        error = result.errors[0]
        assert error.code == "READING_ABOVE_CEILING"
        assert error.details["ceiling"] == "6000"
        assert error.details["first_purchase_id"] == str(first.id)

    def test_ceiling_includes_purchases_up_to_reading_date(self, validator, ledger):
        ledger.purchase("2024-01-01", reading="5000", tokens="1000")
        ledger.purchase("2024-03-01", reading="5900", tokens="800")
        snapshot = ledger.snapshot()

        assert _validate(validator, snapshot, "6800", "2024-03-31").is_valid
        rejected = _validate(validator, snapshot, "6801", "2024-03-31")
        assert rejected.errors[0].code == "READING_ABOVE_CEILING"


class TestAnomalies:

    def test_spike_rejected_in_reject_mode(self, validator, steady_ledger):
        result = _validate(validator, steady_ledger.snapshot(), "5300", "2024-01-22")

        assert not result.is_valid
        error = result.errors[0]
        assert error.code == "CONSUMPTION_ANOMALY"
        assert Decimal(error.details["threshold"]) == Decimal("50")
        assert Decimal(error.details["historical_average"]) == Decimal("10")

    def test_spike_warns_in_warn_mode(self, steady_ledger):
        validator = ChronologyValidator(ChronologyConfig(anomaly_mode=AnomalyMode.WARN))

        result = _validate(validator, steady_ledger.snapshot(), "5300", "2024-01-22")

        assert result.is_valid
        assert any("unusually high" in w for w in result.warnings)

    def test_spike_ignored_when_anomaly_checks_off(self, steady_ledger):
        validator = ChronologyValidator(ChronologyConfig(anomaly_mode=AnomalyMode.OFF))

        result = _validate(validator, steady_ledger.snapshot(), "5300", "2024-01-22")

        assert result.is_valid
        assert result.warnings == ()
        assert result.statistics is None

    def test_high_usage_warning_below_anomaly_threshold(self, validator, steady_ledger):
        result = _validate(validator, steady_ledger.snapshot(), "5230", "2024-01-22")

        assert result.is_valid
        assert any("significantly higher" in w for w in result.warnings)

    def test_low_usage_warning(self, validator, steady_ledger):
        result = _validate(validator, steady_ledger.snapshot(), "5205", "2024-01-31")

        assert result.is_valid
        assert any("unusually low" in w for w in result.warnings)

    def test_zero_consumption_over_several_days_warns(self, validator, steady_ledger):
        result = _validate(validator, steady_ledger.snapshot(), "5200", "2024-01-25")

        assert result.is_valid
        assert any("No consumption recorded across 4 days" in w for w in result.warnings)

    def test_statistics_reported_for_normal_reading(self, validator, steady_ledger):
        result = _validate(validator, steady_ledger.snapshot(), "5300", "2024-01-31")

        assert result.is_valid
        assert result.warnings == ()
        stats = result.statistics
        assert stats.sample_size == 2
        assert stats.days_between == 10
        assert stats.daily_consumption == Decimal("10")

    def test_short_history_skips_anomaly_check(self, validator, ledger):
        ledger.purchase("2024-01-01", reading="5000", tokens="1000")

        result = _validate(validator, ledger.snapshot(), "5900", "2024-01-02")

        assert result.is_valid
        assert result.statistics is None


class TestExclusionAndScope:

    def test_excluded_purchase_and_its_contribution_are_ignored(self, validator, ledger):
        first = ledger.purchase("2024-01-01", reading="5000")
        ledger.contribute(first)
        ledger.purchase("2024-02-01", reading="6000", tokens="800")
        snapshot = ledger.snapshot()

        blocked = _validate(validator, snapshot, "4900", "2024-01-01")
        allowed = _validate(validator, snapshot, "4900", "2024-01-01", exclude_id=first.id)

        assert blocked.errors[0].code == "READING_BELOW_SAME_DATE_MAX"
        assert allowed.is_valid

    def test_user_scope_requires_user_id(self, validator, ledger):
        with pytest.raises(ValueError):
            _validate(validator, ledger.snapshot(), "100", "2024-01-01", scope=ReadingScope.USER)

    def test_user_scope_ignores_other_users_readings(self, validator, ledger):
        me, other = uuid4(), uuid4()
        ledger.purchase("2024-01-01", reading="5000")
        ledger.reading("2024-01-10", "5100", user_id=other)
        snapshot = ledger.snapshot()

        global_result = _validate(validator, snapshot, "5200", "2024-01-05")
        user_result = _validate(
            validator, snapshot, "5200", "2024-01-05", scope=ReadingScope.USER, user_id=me
        )

        assert global_result.errors[0].code == "READING_ABOVE_NEXT"
        assert user_result.is_valid


class TestLoggingAndFormatting:

    def test_rejection_is_logged(self, validator, ledger, captured_logs):
        ledger.purchase("2024-01-01", reading="5000")

        _validate(validator, ledger.snapshot(), "4000", "2024-01-05")

        records = captured_logs()
        rejected = [r for r in records if r["message"] == "reading_chronology_rejected"]
        assert rejected and rejected[0]["error_code"] == "READING_BELOW_PREVIOUS"
        traces = [r for r in records if r["message"] == "METER_ENGINE_TRACE"]
        assert traces[-1]["engine_name"] == "chronology"
        assert traces[-1]["outcome"] == "rejected"
        assert traces[-1]["error_codes"] == ["READING_BELOW_PREVIOUS"]
        assert len(traces[-1]["input_fingerprint"]) == 16

    def test_fmt_quantity_drops_trailing_zeros(self):
        assert fmt_quantity(Decimal("5200.000000000")) == "5200"
        assert fmt_quantity(Decimal("12.50")) == "12.5"
