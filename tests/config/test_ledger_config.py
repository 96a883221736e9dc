"""
Tests for ledger configuration loading.

Covers the packaged defaults, override merging, checksum determinism and
rejection of out-of-range values.
"""

from decimal import Decimal

import pytest
import yaml

from meter_config import AnomalyMode, get_active_config
from meter_config.loader import (
    DEFAULTS_PATH,
    compute_checksum,
    deep_merge,
    load_config,
    load_yaml_file,
    parse_config,
)


@pytest.fixture
def defaults() -> dict:
    return load_yaml_file(DEFAULTS_PATH)


def write_override(tmp_path, data: dict):
    path = tmp_path / "override.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


class TestDefaults:

    def test_packaged_defaults(self):
        config = load_config()

        assert config.config_id == "household-meter"
        assert config.currency.internal == "USD"
        assert config.currency.official == "ZWG"
        assert config.chronology.anomaly_mode is AnomalyMode.REJECT
        assert config.chronology.anomaly_floor == Decimal("50")
        assert config.receipt.total_tolerance == Decimal("0.02")
        assert config.allocation.emergency_penalty_rate == Decimal("0.10")

    def test_score_bands_ordered_for_matching(self):
        matching = load_config().matching

        assert [b.limit for b in matching.date_bands] == [Decimal("1"), Decimal("3"), Decimal("7")]
        assert [b.limit for b in matching.kwh_bands] == [
            Decimal("99"),
            Decimal("95"),
            Decimal("90"),
            Decimal("80"),
        ]
        assert [b.points for b in matching.kwh_bands] == [50, 40, 25, 10]

    def test_active_config_traced(self, captured_logs):
        config = get_active_config()

        traces = [r for r in captured_logs() if r["message"] == "METER_CONFIG_TRACE"]
        assert traces[0]["config_id"] == "household-meter"
        assert traces[0]["config_checksum"] == config.checksum
        assert traces[0]["anomaly_mode"] == "reject"


class TestOverrides:

    def test_override_merged_over_defaults(self, tmp_path):
        path = write_override(
            tmp_path, {"chronology": {"anomaly_mode": "warn"}, "receipt": {"total_tolerance": "0.05"}}
        )

        config = get_active_config(path)

        assert config.chronology.anomaly_mode is AnomalyMode.WARN
        assert config.chronology.anomaly_history_window == 30
        assert config.receipt.total_tolerance == Decimal("0.05")

    def test_override_changes_checksum(self, tmp_path):
        path = write_override(tmp_path, {"version": 2})

        assert get_active_config(path).checksum != get_active_config().checksum

    def test_missing_override_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "missing.yaml")

    def test_non_mapping_file_rejected(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n- 2\n")

        with pytest.raises(ValueError, match="top-level YAML must be a mapping"):
            load_config(path)

    def test_deep_merge_leaves_inputs_untouched(self):
        base = {"a": {"x": 1, "y": 2}, "b": 1}
        override = {"a": {"y": 3}, "c": 4}

        merged = deep_merge(base, override)

        assert merged == {"a": {"x": 1, "y": 3}, "b": 1, "c": 4}
        assert base == {"a": {"x": 1, "y": 2}, "b": 1}


class TestValidation:

    def test_checksum_is_deterministic(self, defaults):
        reordered = dict(reversed(list(defaults.items())))

        assert compute_checksum(defaults) == compute_checksum(reordered)

    @pytest.mark.parametrize(
        "section, key, value, message",
        [
            ("chronology", "anomaly_mode", "sometimes", "anomaly_mode must be one of"),
            ("chronology", "anomaly_history_window", 0, "must be positive"),
            ("chronology", "anomaly_floor", "lots", "not a number"),
            ("currency", "official", "usd", "must differ"),
            ("matching", "medium_confidence", 90, "high > medium > low"),
            ("forecast", "window", -1, "must be positive"),
        ],
    )
    def test_invalid_values_rejected(self, defaults, section, key, value, message):
        data = deep_merge(defaults, {section: {key: value}})

        with pytest.raises(ValueError, match=message):
            parse_config(data)

    def test_missing_section(self, defaults):
        del defaults["allocation"]

        with pytest.raises(KeyError):
            parse_config(defaults)
