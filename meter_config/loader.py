"""
Configuration Loader (``meter_config.loader``).

Responsibility
--------------
Loads YAML files and parses them into the frozen dataclasses of
``meter_config.schema``.  Runtime callers go through
``meter_config.get_active_config()``.

Invariants enforced
-------------------
* An override file is deep-merged over ``defaults.yaml``; keys it omits
  keep their default value.
* Every threshold is parsed to ``Decimal`` via its string form.
* ``compute_checksum`` is deterministic for identical merged data.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Out-of-range or unknown values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from meter_config.schema import (
    AllocationConfig,
    AnomalyMode,
    ChronologyConfig,
    CurrencyConfig,
    ForecastConfig,
    LedgerConfig,
    MatchingConfig,
    RateTrendConfig,
    ReceiptConfig,
    ReconciliationConfig,
    ScoreBand,
)

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top-level YAML must be a mapping")
    return data


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def parse_decimal(value: Any, name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"{name}: not a number: {value!r}") from exc


def _positive_int(value: Any, name: str) -> int:
    result = int(value)
    if result <= 0:
        raise ValueError(f"{name} must be positive, got {value!r}")
    return result


def parse_currency(data: dict[str, Any]) -> CurrencyConfig:
    internal = str(data["internal"]).upper()
    official = str(data["official"]).upper()
    if internal == official:
        raise ValueError("currency.internal and currency.official must differ")
    return CurrencyConfig(internal=internal, official=official)


def parse_chronology(data: dict[str, Any]) -> ChronologyConfig:
    try:
        mode = AnomalyMode(str(data["anomaly_mode"]).lower())
    except ValueError as exc:
        raise ValueError(
            f"chronology.anomaly_mode must be one of "
            f"{[m.value for m in AnomalyMode]}, got {data['anomaly_mode']!r}"
        ) from exc
    return ChronologyConfig(
        anomaly_mode=mode,
        anomaly_history_window=_positive_int(
            data["anomaly_history_window"], "chronology.anomaly_history_window"
        ),
        anomaly_floor=parse_decimal(data["anomaly_floor"], "chronology.anomaly_floor"),
        anomaly_mean_multiplier=parse_decimal(
            data["anomaly_mean_multiplier"], "chronology.anomaly_mean_multiplier"
        ),
        anomaly_median_multiplier=parse_decimal(
            data["anomaly_median_multiplier"], "chronology.anomaly_median_multiplier"
        ),
        anomaly_max_multiplier=parse_decimal(
            data["anomaly_max_multiplier"], "chronology.anomaly_max_multiplier"
        ),
        high_usage_multiplier=parse_decimal(
            data["high_usage_multiplier"], "chronology.high_usage_multiplier"
        ),
        low_usage_ratio=parse_decimal(data["low_usage_ratio"], "chronology.low_usage_ratio"),
        require_purchase_baseline=bool(data["require_purchase_baseline"]),
    )


def parse_matching(data: dict[str, Any]) -> MatchingConfig:
    date_bands = tuple(
        sorted(
            (
                ScoreBand(parse_decimal(b["days"], "matching.date_thresholds"), int(b["points"]))
                for b in data["date_thresholds"]
            ),
            key=lambda b: b.limit,
        )
    )
    kwh_bands = tuple(
        sorted(
            (
                ScoreBand(
                    parse_decimal(b["match_pct"], "matching.kwh_thresholds"), int(b["points"])
                )
                for b in data["kwh_thresholds"]
            ),
            key=lambda b: b.limit,
            reverse=True,
        )
    )
    high = int(data["high_confidence"])
    medium = int(data["medium_confidence"])
    low = int(data["low_confidence"])
    if not high > medium > low > 0:
        raise ValueError(
            "matching confidence bands must satisfy high > medium > low > 0, "
            f"got {high}/{medium}/{low}"
        )
    return MatchingConfig(
        date_bands=date_bands,
        kwh_bands=kwh_bands,
        high_confidence=high,
        medium_confidence=medium,
        low_confidence=low,
    )


def parse_forecast(data: dict[str, Any]) -> ForecastConfig:
    return ForecastConfig(
        window=_positive_int(data["window"], "forecast.window"),
        minimum_trend_points=_positive_int(
            data["minimum_trend_points"], "forecast.minimum_trend_points"
        ),
        trend_threshold_pct=parse_decimal(
            data["trend_threshold_pct"], "forecast.trend_threshold_pct"
        ),
        adjustment_pct=parse_decimal(data["adjustment_pct"], "forecast.adjustment_pct"),
        high_confidence_points=_positive_int(
            data["high_confidence_points"], "forecast.high_confidence_points"
        ),
        medium_confidence_points=_positive_int(
            data["medium_confidence_points"], "forecast.medium_confidence_points"
        ),
        default_horizon_days=_positive_int(
            data["default_horizon_days"], "forecast.default_horizon_days"
        ),
    )


def parse_config(data: dict[str, Any]) -> LedgerConfig:
    """
    Parse a fully merged configuration dict.

    Raises:
        KeyError: if a required section or key is missing.
        ValueError: if a value is out of range.
    """
    trend = data["exchange_rate_trend"]
    recon = data["reconciliation"]
    return LedgerConfig(
        config_id=str(data["config_id"]),
        version=int(data["version"]),
        checksum=compute_checksum(data),
        currency=parse_currency(data["currency"]),
        chronology=parse_chronology(data["chronology"]),
        matching=parse_matching(data["matching"]),
        forecast=parse_forecast(data["forecast"]),
        exchange_rate_trend=RateTrendConfig(
            minimum_points=_positive_int(
                trend["minimum_points"], "exchange_rate_trend.minimum_points"
            ),
            threshold_pct=parse_decimal(trend["threshold_pct"], "exchange_rate_trend.threshold_pct"),
        ),
        reconciliation=ReconciliationConfig(
            variance_tolerance=parse_decimal(
                recon["variance_tolerance"], "reconciliation.variance_tolerance"
            ),
            comparison_threshold_pct=parse_decimal(
                recon["comparison_threshold_pct"], "reconciliation.comparison_threshold_pct"
            ),
        ),
        receipt=ReceiptConfig(
            total_tolerance=parse_decimal(
                data["receipt"]["total_tolerance"], "receipt.total_tolerance"
            ),
        ),
        allocation=AllocationConfig(
            emergency_penalty_rate=parse_decimal(
                data["allocation"]["emergency_penalty_rate"],
                "allocation.emergency_penalty_rate",
            ),
        ),
    )


def load_config(path: Path | None = None) -> LedgerConfig:
    """Load defaults, merge an optional override file, parse."""
    data = load_yaml_file(DEFAULTS_PATH)
    if path is not None:
        data = deep_merge(data, load_yaml_file(Path(path)))
    return parse_config(data)


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
