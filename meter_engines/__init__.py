"""
Module: meter_engines
Responsibility:
    Package entrypoint that re-exports the public symbols of the pure
    calculation engines.  This is the canonical import surface for
    meter_services.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import meter_kernel.domain, meter_config.schema and sibling
    engine modules.  MUST NOT import meter_services or the ORM models.

Invariants enforced:
    - Purity: engines never call ``datetime.now()``; services pass dates in.
    - Decimal-only arithmetic for quantities, money and rates.
    - Determinism: identical inputs always produce identical outputs.

Audit relevance:
    Engine entry points are wrapped by ``@traced_engine`` and emit
    METER_ENGINE_TRACE records with an input fingerprint.

Usage:
    from meter_engines import ChronologyValidator, LedgerConstraintChecker
    from meter_engines import CostAllocator, DualCurrencyEngine, ReceiptMatcher
"""

from meter_kernel.logging_config import get_logger

logger = get_logger("engines")

from meter_engines.allocation import (
    BalanceEntry,
    ContributionCost,
    CostAllocator,
    CostBreakdown,
    CostRecommendation,
    EfficiencyRating,
    EmergencyImpact,
    OptimalContribution,
    PeriodCostAnalysis,
    RunningBalance,
    UserCostSummary,
)
from meter_engines.cascade import (
    AdjustmentPlan,
    ChangeImpact,
    ContributionUpdate,
    analyze_impact,
    plan_purchase_adjustment,
    plan_purchase_insertion,
)
from meter_engines.chronology import (
    ChronologyResult,
    ChronologyValidator,
    ConsumptionStatistics,
)
from meter_engines.constraints import ContributionProgress, LedgerConstraintChecker
from meter_engines.dual_currency import (
    CostForecast,
    CostVariance,
    DualCurrencyCost,
    DualCurrencyEngine,
    DualCurrencySummary,
    ForecastConfidence,
    OfficialBreakdown,
    PaymentComparison,
    PriceTrend,
    PricingTrend,
    RateTrend,
    VarianceDirection,
)
from meter_engines.receipt_matching import (
    MatchConfidence,
    ReceiptMatch,
    ReceiptMatcher,
    ReceiptRow,
    parse_receipt_datetime,
    validate_receipt_row,
)
from meter_engines.tracer import traced_engine

logger.debug("meter_engines_loaded")

__all__ = [
    "AdjustmentPlan",
    "BalanceEntry",
    "ChangeImpact",
    "ChronologyResult",
    "ChronologyValidator",
    "ConsumptionStatistics",
    "ContributionCost",
    "ContributionProgress",
    "ContributionUpdate",
    "CostAllocator",
    "CostBreakdown",
    "CostForecast",
    "CostRecommendation",
    "CostVariance",
    "DualCurrencyCost",
    "DualCurrencyEngine",
    "DualCurrencySummary",
    "EfficiencyRating",
    "EmergencyImpact",
    "ForecastConfidence",
    "LedgerConstraintChecker",
    "MatchConfidence",
    "OfficialBreakdown",
    "OptimalContribution",
    "PaymentComparison",
    "PeriodCostAnalysis",
    "PriceTrend",
    "PricingTrend",
    "RateTrend",
    "ReceiptMatch",
    "ReceiptMatcher",
    "ReceiptRow",
    "RunningBalance",
    "UserCostSummary",
    "VarianceDirection",
    "analyze_impact",
    "parse_receipt_datetime",
    "plan_purchase_adjustment",
    "plan_purchase_insertion",
    "traced_engine",
    "validate_receipt_row",
]
