"""
Ledger configuration schema.

Frozen dataclasses parsed from YAML by ``meter_config.loader``.  Every
threshold the engines use lives here; engines take a ``LedgerConfig`` (or
one of its sections) at construction time and never read files.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum


class AnomalyMode(str, Enum):
    """How a consumption spike beyond the anomaly threshold is treated."""

    REJECT = "reject"
    WARN = "warn"
    OFF = "off"


@dataclass(frozen=True)
class CurrencyConfig:
    internal: str = "USD"
    official: str = "ZWG"


@dataclass(frozen=True)
class ChronologyConfig:
    anomaly_mode: AnomalyMode = AnomalyMode.REJECT
    anomaly_history_window: int = 30
    anomaly_floor: Decimal = Decimal("50")
    anomaly_mean_multiplier: Decimal = Decimal("3")
    anomaly_median_multiplier: Decimal = Decimal("4")
    anomaly_max_multiplier: Decimal = Decimal("1.5")
    high_usage_multiplier: Decimal = Decimal("2")
    low_usage_ratio: Decimal = Decimal("0.1")
    require_purchase_baseline: bool = True


@dataclass(frozen=True)
class ScoreBand:
    """Points awarded when a measure is within ``limit``."""

    limit: Decimal
    points: int


@dataclass(frozen=True)
class MatchingConfig:
    # Days apart, ascending: at most ``limit`` days earns ``points``
    date_bands: tuple[ScoreBand, ...] = (
        ScoreBand(Decimal("1"), 50),
        ScoreBand(Decimal("3"), 35),
        ScoreBand(Decimal("7"), 20),
    )
    # kWh match percentage, descending: at least ``limit`` earns ``points``
    kwh_bands: tuple[ScoreBand, ...] = (
        ScoreBand(Decimal("99"), 50),
        ScoreBand(Decimal("95"), 40),
        ScoreBand(Decimal("90"), 25),
        ScoreBand(Decimal("80"), 10),
    )
    high_confidence: int = 80
    medium_confidence: int = 50
    low_confidence: int = 20


@dataclass(frozen=True)
class ForecastConfig:
    window: int = 6
    minimum_trend_points: int = 3
    trend_threshold_pct: Decimal = Decimal("10")
    adjustment_pct: Decimal = Decimal("5")
    high_confidence_points: int = 10
    medium_confidence_points: int = 5
    default_horizon_days: int = 30


@dataclass(frozen=True)
class RateTrendConfig:
    minimum_points: int = 3
    threshold_pct: Decimal = Decimal("5")


@dataclass(frozen=True)
class ReconciliationConfig:
    variance_tolerance: Decimal = Decimal("0.01")
    comparison_threshold_pct: Decimal = Decimal("10")


@dataclass(frozen=True)
class ReceiptConfig:
    total_tolerance: Decimal = Decimal("0.02")


@dataclass(frozen=True)
class AllocationConfig:
    emergency_penalty_rate: Decimal = Decimal("0.10")


@dataclass(frozen=True)
class LedgerConfig:
    """The complete runtime configuration."""

    config_id: str = "household-meter"
    version: int = 1
    checksum: str = ""
    currency: CurrencyConfig = field(default_factory=CurrencyConfig)
    chronology: ChronologyConfig = field(default_factory=ChronologyConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    forecast: ForecastConfig = field(default_factory=ForecastConfig)
    exchange_rate_trend: RateTrendConfig = field(default_factory=RateTrendConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    receipt: ReceiptConfig = field(default_factory=ReceiptConfig)
    allocation: AllocationConfig = field(default_factory=AllocationConfig)
