"""
meter_services.report_service -- Read-only cost reports.

Responsibility:
    Build user cost summaries, the running balance, dual-currency figures,
    pricing trends, forecasts, period analysis and contribution progress
    from a fresh ledger snapshot.

Architecture position:
    Services -- read side.  Reads through ``LedgerSelector`` and delegates
    every calculation to ``CostAllocator``, ``DualCurrencyEngine`` and
    ``LedgerConstraintChecker``.  Never writes.

Failure modes:
    - Missing receipts degrade to None or zero-confidence results.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from meter_config import LedgerConfig, get_active_config
from meter_engines.allocation import (
    ContributionCost,
    CostAllocator,
    CostBreakdown,
    CostRecommendation,
    OptimalContribution,
    PeriodCostAnalysis,
    RunningBalance,
)
from meter_engines.constraints import ContributionProgress, LedgerConstraintChecker
from meter_engines.dual_currency import (
    CostForecast,
    DualCurrencyCost,
    DualCurrencyEngine,
    DualCurrencySummary,
    PricingTrend,
)
from meter_kernel.exceptions import PurchaseNotFoundError
from meter_kernel.logging_config import get_logger
from meter_kernel.models import TokenPurchase
from meter_kernel.selectors.ledger_selector import LedgerSelector
from meter_kernel.services.base import BaseService

logger = get_logger("services.reports")


class CostReportService(BaseService[TokenPurchase]):
    """Cost and currency reports over the current ledger."""

    def __init__(self, session: Session, config: LedgerConfig | None = None):
        super().__init__(session)
        self._config = config or get_active_config()
        self._selector = LedgerSelector(session)
        self._allocator = CostAllocator(self._config.allocation)
        self._currency = DualCurrencyEngine(
            self._config.forecast,
            self._config.exchange_rate_trend,
            self._config.reconciliation,
        )
        self._constraints = LedgerConstraintChecker()

    def user_cost_summary(self, user_id: UUID) -> CostBreakdown:
        snapshot = self._selector.snapshot()
        return self._allocator.user_summary(
            contributions=ContributionCost.from_snapshot(snapshot, user_id)
        )

    def cost_recommendations(self, user_id: UUID) -> CostRecommendation:
        return self._allocator.recommendations(self.user_cost_summary(user_id))

    def running_balance(self) -> RunningBalance:
        """Household balance across every contribution, in purchase order."""
        snapshot = self._selector.snapshot()
        first = snapshot.first_purchase
        return self._allocator.running_balance(
            contributions=ContributionCost.from_snapshot(snapshot),
            first_purchase_id=first.id if first is not None else None,
        )

    def period_analysis(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> PeriodCostAnalysis:
        snapshot = self._selector.snapshot()
        return self._allocator.period_analysis(
            purchases=snapshot.purchases, start=start, end=end
        )

    def optimal_contribution(
        self, purchase_id: UUID, tokens_consumed: Decimal, include_emergency_penalty: bool = True
    ) -> OptimalContribution:
        purchase = self._selector.purchase(purchase_id)
        if purchase is None:
            raise PurchaseNotFoundError(purchase_id)
        return self._allocator.optimal_contribution(
            tokens_consumed, purchase, include_emergency_penalty
        )

    def contribution_progress(self) -> ContributionProgress:
        return self._constraints.contribution_progress(snapshot=self._selector.snapshot())

    # -- dual currency -----------------------------------------------------

    def dual_currency_cost(self, contribution_id: UUID) -> DualCurrencyCost | None:
        """None when the contribution's purchase has no receipt."""
        snapshot = self._selector.snapshot()
        contribution = snapshot.contribution(contribution_id)
        if contribution is None:
            return None
        purchase = snapshot.purchase(contribution.purchase_id)
        return self._currency.dual_cost(
            purchase=purchase, tokens_consumed=contribution.tokens_consumed
        )

    def dual_currency_summary(self, user_id: UUID) -> DualCurrencySummary:
        snapshot = self._selector.snapshot()
        return self._currency.user_summary(
            contributions=ContributionCost.from_snapshot(snapshot, user_id)
        )

    def pricing_trends(self) -> list[PricingTrend]:
        return self._currency.pricing_trends(self._selector.snapshot().purchases)

    def cost_forecast(self, horizon_days: int | None = None) -> CostForecast:
        snapshot = self._selector.snapshot()
        forecast = self._currency.forecast(purchases=snapshot.purchases, horizon_days=horizon_days)
        logger.info(
            "cost_forecast_reported",
            extra={
                "data_points": forecast.data_points,
                "confidence": forecast.confidence.value,
                "trend": forecast.trend.value,
            },
        )
        return forecast
