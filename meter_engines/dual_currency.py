"""
meter_engines.dual_currency -- Dual-currency reconciliation.

Responsibility:
    Compare what users paid in the internal settlement currency with the
    official-currency cost printed on receipts: implied exchange rates,
    conversions, per-contribution variance, per-user summaries, pricing
    trends and a simple price forecast.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Implied rate = official total / internal paid, rounded to 4 places;
      0 when nothing was paid.
    - Conversions with a non-positive rate yield 0, never a division error.
    - Variance direction uses a symmetric tolerance (default 0.01):
      OVERPAID above it, UNDERPAID below its negative, EXACT otherwise.
    - Pricing trends are ascending by purchase date.

Failure modes:
    - ``dual_cost`` returns None for purchases without a receipt.
    - Forecast over zero receipted purchases returns zero prices with LOW
      confidence and STABLE trend.

Audit relevance:
    The implied rate is derived from the two amounts actually recorded for
    the purchase, so every conversion can be re-derived from the receipt.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum

from meter_config.schema import ForecastConfig, RateTrendConfig, ReconciliationConfig
from meter_engines.allocation import ContributionCost
from meter_engines.tracer import traced_engine
from meter_kernel.domain.currency import round_money, round_quantity, round_rate
from meter_kernel.domain.dtos import PurchaseInfo
from meter_kernel.logging_config import get_logger

logger = get_logger("engines.dual_currency")

ZERO = Decimal("0")
HUNDRED = Decimal("100")


class VarianceDirection(str, Enum):
    OVERPAID = "overpaid"
    UNDERPAID = "underpaid"
    EXACT = "exact"


class RateTrend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class PriceTrend(str, Enum):
    RISING = "rising"
    FALLING = "falling"
    STABLE = "stable"


class ForecastConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class OfficialBreakdown:
    """Official-currency receipt components, proportional to consumption."""

    total_cost: Decimal
    cost_per_kwh: Decimal
    energy_cost: Decimal
    debt: Decimal
    rea: Decimal
    vat: Decimal


@dataclass(frozen=True)
class CostVariance:
    absolute: Decimal
    percentage: Decimal
    direction: VarianceDirection


@dataclass(frozen=True)
class DualCurrencyCost:
    internal_true_cost: Decimal
    internal_cost_per_kwh: Decimal
    official: OfficialBreakdown
    official_cost_in_internal: Decimal
    implied_exchange_rate: Decimal
    tokens_consumed: Decimal
    variance: CostVariance


@dataclass(frozen=True)
class DualCurrencySummary:
    total_tokens_used: Decimal
    internal_total_paid: Decimal
    internal_average_cost_per_kwh: Decimal
    account_balance: Decimal
    official_total_cost: Decimal
    official_average_cost_per_kwh: Decimal
    official_breakdown: OfficialBreakdown
    average_exchange_rate: Decimal
    exchange_rate_trend: RateTrend
    variance_percentage: Decimal
    effective_rate: Decimal
    receipts_available: int
    total_purchases: int
    completeness: Decimal


@dataclass(frozen=True)
class PricingTrend:
    date: datetime
    official_per_kwh: Decimal
    internal_per_kwh: Decimal
    exchange_rate: Decimal
    kwh_purchased: Decimal


@dataclass(frozen=True)
class CostForecast:
    predicted_official_per_kwh: Decimal
    predicted_internal_equivalent: Decimal
    confidence: ForecastConfidence
    trend: PriceTrend
    data_points: int
    forecast_period: str


@dataclass(frozen=True)
class PaymentComparison:
    internal_paid: Decimal
    official_true_cost: Decimal
    official_in_internal: Decimal
    variance: Decimal
    variance_percentage: Decimal
    effective_savings: Decimal
    recommendation: str


def _half_split_change(values: Sequence[Decimal]) -> Decimal | None:
    """Percent change of the second half's mean over the first half's."""
    mid = len(values) // 2
    first, second = values[:mid], values[mid:]
    if not first or not second:
        return None
    first_avg = sum(first, ZERO) / len(first)
    second_avg = sum(second, ZERO) / len(second)
    if first_avg == 0:
        return None
    return (second_avg - first_avg) / first_avg * HUNDRED


class DualCurrencyEngine:
    """
    Internal vs official currency reconciliation.

    Contract:
        Pure functions -- no I/O, no clock.  Currency codes are labels only;
        every amount is a Decimal in the currency its field names.
    """

    def __init__(
        self,
        forecast_config: ForecastConfig | None = None,
        trend_config: RateTrendConfig | None = None,
        reconciliation_config: ReconciliationConfig | None = None,
    ):
        self._forecast = forecast_config or ForecastConfig()
        self._trend = trend_config or RateTrendConfig()
        self._recon = reconciliation_config or ReconciliationConfig()

    # -- primitives --------------------------------------------------------

    @staticmethod
    def implied_exchange_rate(internal_paid: Decimal, official_total: Decimal) -> Decimal:
        """Official units per internal unit."""
        if internal_paid <= 0:
            return ZERO
        return round_rate(official_total / internal_paid)

    @staticmethod
    def convert_official_to_internal(amount: Decimal, rate: Decimal) -> Decimal:
        if rate <= 0:
            return ZERO
        return round_money(amount / rate)

    @staticmethod
    def convert_internal_to_official(amount: Decimal, rate: Decimal) -> Decimal:
        return round_money(amount * rate)

    @staticmethod
    def official_cost_per_kwh(purchase: PurchaseInfo) -> Decimal:
        receipt = purchase.receipt
        if receipt is None or receipt.kwh_purchased <= 0:
            return ZERO
        return round_rate(receipt.total_amount / receipt.kwh_purchased)

    def _direction(self, variance: Decimal) -> VarianceDirection:
        tolerance = self._recon.variance_tolerance
        if variance > tolerance:
            return VarianceDirection.OVERPAID
        if variance < -tolerance:
            return VarianceDirection.UNDERPAID
        return VarianceDirection.EXACT

    # -- per purchase ------------------------------------------------------

    @traced_engine("dual_currency", "1.0", fingerprint_fields=("purchase", "tokens_consumed"))
    def dual_cost(
        self, *, purchase: PurchaseInfo, tokens_consumed: Decimal
    ) -> DualCurrencyCost | None:
        """Both-currency cost of ``tokens_consumed`` from one purchase."""
        receipt = purchase.receipt
        if receipt is None:
            return None

        internal_true = (
            tokens_consumed / purchase.total_tokens * purchase.total_payment
            if purchase.total_tokens > 0
            else ZERO
        )
        share = tokens_consumed / receipt.kwh_purchased if receipt.kwh_purchased > 0 else ZERO
        official_total = share * receipt.total_amount

        rate = self.implied_exchange_rate(purchase.total_payment, receipt.total_amount)
        official_in_internal = self.convert_official_to_internal(official_total, rate)

        variance = internal_true - official_in_internal
        percentage = variance / internal_true * HUNDRED if internal_true != 0 else ZERO

        result = DualCurrencyCost(
            internal_true_cost=round_money(internal_true),
            internal_cost_per_kwh=round_rate(purchase.cost_per_kwh),
            official=OfficialBreakdown(
                total_cost=round_money(official_total),
                cost_per_kwh=self.official_cost_per_kwh(purchase),
                energy_cost=round_money(share * receipt.energy_cost),
                debt=round_money(share * receipt.debt),
                rea=round_money(share * receipt.rea),
                vat=round_money(share * receipt.vat),
            ),
            official_cost_in_internal=official_in_internal,
            implied_exchange_rate=rate,
            tokens_consumed=round_quantity(tokens_consumed),
            variance=CostVariance(
                absolute=round_money(variance),
                percentage=round_money(percentage),
                direction=self._direction(variance),
            ),
        )
        logger.debug(
            "dual_cost_computed",
            extra={
                "purchase_id": str(purchase.id),
                "implied_exchange_rate": str(rate),
                "variance": str(result.variance.absolute),
                "direction": result.variance.direction.value,
            },
        )
        return result

    # -- per user ----------------------------------------------------------

    @traced_engine("dual_currency", "1.0", fingerprint_fields=("contributions",))
    def user_summary(self, *, contributions: Sequence[ContributionCost]) -> DualCurrencySummary:
        """Dual-currency figures across a user's contributions."""
        rows = sorted(contributions, key=lambda r: r.sort_key)
        tokens = paid = ZERO
        official_total = energy = debt = rea = vat = ZERO
        rates: list[Decimal] = []

        for row in rows:
            c, p = row.contribution, row.purchase
            tokens += c.tokens_consumed
            paid += c.contribution_amount
            receipt = p.receipt
            if receipt is None:
                continue
            share = c.tokens_consumed / receipt.kwh_purchased if receipt.kwh_purchased > 0 else ZERO
            official_total += share * receipt.total_amount
            energy += share * receipt.energy_cost
            debt += share * receipt.debt
            rea += share * receipt.rea
            vat += share * receipt.vat
            rates.append(self.implied_exchange_rate(p.total_payment, receipt.total_amount))

        average_rate = sum(rates, ZERO) / len(rates) if rates else ZERO
        trend = RateTrend.STABLE
        if len(rates) >= self._trend.minimum_points:
            change = _half_split_change(rates)
            if change is not None and change > self._trend.threshold_pct:
                trend = RateTrend.INCREASING
            elif change is not None and change < -self._trend.threshold_pct:
                trend = RateTrend.DECREASING

        official_in_internal = self.convert_official_to_internal(official_total, average_rate)
        balance = paid - official_in_internal
        count = len(rows)

        return DualCurrencySummary(
            total_tokens_used=round_quantity(tokens),
            internal_total_paid=round_money(paid),
            internal_average_cost_per_kwh=round_rate(paid / tokens) if tokens > 0 else ZERO,
            account_balance=round_money(balance),
            official_total_cost=round_money(official_total),
            official_average_cost_per_kwh=(
                round_rate(official_total / tokens) if tokens > 0 else ZERO
            ),
            official_breakdown=OfficialBreakdown(
                total_cost=round_money(official_total),
                cost_per_kwh=round_rate(official_total / tokens) if tokens > 0 else ZERO,
                energy_cost=round_money(energy),
                debt=round_money(debt),
                rea=round_money(rea),
                vat=round_money(vat),
            ),
            average_exchange_rate=round_rate(average_rate),
            exchange_rate_trend=trend,
            variance_percentage=round_money(balance / paid * HUNDRED) if paid > 0 else ZERO,
            effective_rate=round_rate(official_in_internal / tokens) if tokens > 0 else ZERO,
            receipts_available=len(rates),
            total_purchases=count,
            completeness=(
                round_money(Decimal(len(rates)) / Decimal(count) * HUNDRED) if count else ZERO
            ),
        )

    # -- trends and forecast -----------------------------------------------

    def pricing_trends(self, purchases: Sequence[PurchaseInfo]) -> list[PricingTrend]:
        """Per-purchase prices for receipted purchases, ascending by date."""
        trends = [
            PricingTrend(
                date=p.purchase_date,
                official_per_kwh=self.official_cost_per_kwh(p),
                internal_per_kwh=round_rate(p.cost_per_kwh),
                exchange_rate=self.implied_exchange_rate(p.total_payment, p.receipt.total_amount),
                kwh_purchased=round_quantity(p.receipt.kwh_purchased),
            )
            for p in sorted(purchases, key=lambda p: p.sort_key)
            if p.receipt is not None
        ]
        return trends

    @traced_engine("dual_currency", "1.0", fingerprint_fields=("purchases", "horizon_days"))
    def forecast(
        self, *, purchases: Sequence[PurchaseInfo], horizon_days: int | None = None
    ) -> CostForecast:
        """Moving-average forecast of the official per-kWh price."""
        cfg = self._forecast
        days = horizon_days if horizon_days is not None else cfg.default_horizon_days
        period = f"{days} days"
        trends = self.pricing_trends(purchases)
        if not trends:
            return CostForecast(
                predicted_official_per_kwh=ZERO,
                predicted_internal_equivalent=ZERO,
                confidence=ForecastConfidence.LOW,
                trend=PriceTrend.STABLE,
                data_points=0,
                forecast_period=period,
            )

        window = trends[-cfg.window :]
        prices = [t.official_per_kwh for t in window]
        predicted = sum(prices, ZERO) / len(prices)

        direction = PriceTrend.STABLE
        if len(window) >= cfg.minimum_trend_points:
            change = _half_split_change(prices)
            if change is not None and change > cfg.trend_threshold_pct:
                direction = PriceTrend.RISING
            elif change is not None and change < -cfg.trend_threshold_pct:
                direction = PriceTrend.FALLING

        adjustment = cfg.adjustment_pct / HUNDRED
        if direction is PriceTrend.RISING:
            predicted *= 1 + adjustment
        elif direction is PriceTrend.FALLING:
            predicted *= 1 - adjustment

        average_rate = sum((t.exchange_rate for t in window), ZERO) / len(window)
        internal_equivalent = predicted / average_rate if average_rate > 0 else ZERO

        if len(trends) >= cfg.high_confidence_points:
            confidence = ForecastConfidence.HIGH
        elif len(trends) >= cfg.medium_confidence_points:
            confidence = ForecastConfidence.MEDIUM
        else:
            confidence = ForecastConfidence.LOW

        logger.info(
            "cost_forecast_computed",
            extra={
                "data_points": len(trends),
                "trend": direction.value,
                "confidence": confidence.value,
            },
        )
        return CostForecast(
            predicted_official_per_kwh=round_rate(predicted),
            predicted_internal_equivalent=round_rate(internal_equivalent),
            confidence=confidence,
            trend=direction,
            data_points=len(trends),
            forecast_period=period,
        )

    def compare_payment(
        self, internal_paid: Decimal, official_true_cost: Decimal, rate: Decimal
    ) -> PaymentComparison:
        """Internal payment against an official cost, with advice."""
        official_in_internal = self.convert_official_to_internal(official_true_cost, rate)
        variance = internal_paid - official_in_internal
        percentage = variance / internal_paid * HUNDRED if internal_paid > 0 else ZERO
        limit = internal_paid * self._recon.comparison_threshold_pct / HUNDRED

        if variance > limit:
            advice = "You are overpaying significantly. Consider reducing contributions."
        elif variance < -limit:
            advice = "You are underpaying. Increase contributions to cover true costs."
        else:
            advice = "Your payments are well-aligned with true costs."

        return PaymentComparison(
            internal_paid=round_money(internal_paid),
            official_true_cost=round_money(official_true_cost),
            official_in_internal=official_in_internal,
            variance=round_money(variance),
            variance_percentage=round_money(percentage),
            effective_savings=round_money(variance) if variance > 0 else ZERO,
            recommendation=advice,
        )
