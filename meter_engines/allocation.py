"""
meter_engines.allocation -- Proportional cost allocation and running balance.

Responsibility:
    Turn contributions into money: the true cost of the tokens a user
    consumed, per-user cost breakdowns with emergency premium, the global
    running balance, period analysis across users, optimal contribution
    suggestions and efficiency recommendations.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Proportionality: cost = tokens_used / total_tokens * total_cost.  A
      zero-token purchase yields zero cost, never a division error.
    - Decimal arithmetic throughout; outputs rounded HALF_UP to 2 places.
    - The running balance is always accumulated in purchase chronological
      order, and the very first purchase counts zero consumption.

Failure modes:
    - None for expected business conditions: empty inputs and zero
      denominators produce zero figures.

Audit relevance:
    ``RunningBalance.entries`` keeps the per-contribution fair share and
    balance movement so a reported balance can be traced line by line.

Usage:
    from meter_engines.allocation import ContributionCost, CostAllocator

    allocator = CostAllocator()
    rows = ContributionCost.from_snapshot(snapshot, user_id=user_id)
    breakdown = allocator.user_summary(contributions=rows)
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from meter_config.schema import AllocationConfig
from meter_engines.tracer import traced_engine
from meter_kernel.domain.currency import round_money, round_rate
from meter_kernel.domain.dtos import ContributionInfo, LedgerSnapshot, PurchaseInfo
from meter_kernel.logging_config import get_logger

logger = get_logger("engines.allocation")

ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class ContributionCost:
    """A contribution paired with the purchase it settles."""

    contribution: ContributionInfo
    purchase: PurchaseInfo

    @property
    def sort_key(self) -> tuple:
        return (*self.purchase.sort_key, self.contribution.created_at)

    @classmethod
    def from_snapshot(
        cls, snapshot: LedgerSnapshot, user_id: UUID | None = None
    ) -> list[ContributionCost]:
        """All (or one user's) contributions, chronological."""
        return [
            cls(contribution=p.contribution, purchase=p)
            for p in snapshot.purchases
            if p.contribution is not None
            and (user_id is None or p.contribution.user_id == user_id)
        ]


@dataclass(frozen=True)
class CostBreakdown:
    """Cost figures for one user (or a group), internal currency."""

    total_tokens_used: Decimal
    total_amount_paid: Decimal
    total_true_cost: Decimal
    average_cost_per_kwh: Decimal
    efficiency: Decimal
    overpayment: Decimal
    emergency_premium: Decimal
    regular_cost_per_kwh: Decimal
    emergency_cost_per_kwh: Decimal

    @classmethod
    def zero(cls) -> CostBreakdown:
        return cls(ZERO, ZERO, ZERO, ZERO, ZERO, ZERO, ZERO, ZERO, ZERO)


@dataclass(frozen=True)
class BalanceEntry:
    """One step of the running balance."""

    contribution_id: UUID
    purchase_id: UUID
    purchase_date: datetime
    contribution_amount: Decimal
    effective_tokens: Decimal
    fair_share: Decimal
    balance_change: Decimal
    running_balance: Decimal


@dataclass(frozen=True)
class RunningBalance:
    balance: Decimal
    entries: tuple[BalanceEntry, ...] = ()


@dataclass(frozen=True)
class UserCostSummary:
    user_id: UUID
    breakdown: CostBreakdown
    contribution_ids: tuple[UUID, ...]
    purchase_ids: tuple[UUID, ...]


@dataclass(frozen=True)
class EmergencyImpact:
    regular_purchases: int
    emergency_purchases: int
    additional_cost: Decimal
    percentage_increase: Decimal


@dataclass(frozen=True)
class PeriodCostAnalysis:
    period_start: datetime | None
    period_end: datetime | None
    users: tuple[UserCostSummary, ...]
    total: CostBreakdown
    emergency_impact: EmergencyImpact


@dataclass(frozen=True)
class OptimalContribution:
    base_contribution: Decimal
    emergency_penalty: Decimal
    total: Decimal
    cost_per_kwh: Decimal


class EfficiencyRating(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


@dataclass(frozen=True)
class CostRecommendation:
    rating: EfficiencyRating
    recommendations: tuple[str, ...]
    potential_savings: Decimal


class CostAllocator:
    """
    Proportional cost allocation.

    Contract:
        Pure functions -- no I/O, no clock.
    Guarantees:
        - Inputs are re-sorted into purchase chronological order wherever
          the order matters.
        - Monetary outputs are rounded to 2 places; nothing is rounded
          before the final figure.
    """

    def __init__(self, config: AllocationConfig | None = None):
        self._config = config or AllocationConfig()

    @staticmethod
    def true_cost(tokens_used: Decimal, total_tokens: Decimal, total_cost: Decimal) -> Decimal:
        """Unrounded proportional cost; 0 when the purchase has no tokens."""
        if total_tokens == 0:
            return ZERO
        return tokens_used / total_tokens * total_cost

    @traced_engine("allocation", "1.0", fingerprint_fields=("contributions",))
    def user_summary(self, *, contributions: Sequence[ContributionCost]) -> CostBreakdown:
        """Cost breakdown across a user's contributions."""
        if not contributions:
            return CostBreakdown.zero()

        tokens = paid = true_cost = ZERO
        regular_tokens = emergency_tokens = ZERO
        regular_cost = emergency_cost = ZERO

        for row in sorted(contributions, key=lambda r: r.sort_key):
            c, p = row.contribution, row.purchase
            cost = self.true_cost(c.tokens_consumed, p.total_tokens, p.total_payment)
            tokens += c.tokens_consumed
            paid += c.contribution_amount
            true_cost += cost
            if p.is_emergency:
                emergency_tokens += c.tokens_consumed
                emergency_cost += cost
            else:
                regular_tokens += c.tokens_consumed
                regular_cost += cost

        regular_per_kwh = regular_cost / regular_tokens if regular_tokens > 0 else ZERO
        emergency_per_kwh = emergency_cost / emergency_tokens if emergency_tokens > 0 else ZERO
        premium = (
            emergency_cost - emergency_tokens * regular_per_kwh
            if emergency_tokens > 0 and regular_per_kwh > 0
            else ZERO
        )

        breakdown = CostBreakdown(
            total_tokens_used=round_money(tokens),
            total_amount_paid=round_money(paid),
            total_true_cost=round_money(true_cost),
            average_cost_per_kwh=round_rate(true_cost / tokens) if tokens > 0 else ZERO,
            efficiency=(
                round_money(true_cost / paid * HUNDRED) if true_cost > 0 and paid > 0 else ZERO
            ),
            overpayment=round_money(paid - true_cost),
            emergency_premium=round_money(premium),
            regular_cost_per_kwh=round_rate(regular_per_kwh),
            emergency_cost_per_kwh=round_rate(emergency_per_kwh),
        )
        logger.info(
            "user_cost_summary_computed",
            extra={
                "contribution_count": len(contributions),
                "total_true_cost": str(breakdown.total_true_cost),
                "overpayment": str(breakdown.overpayment),
            },
        )
        return breakdown

    @traced_engine("allocation", "1.0", fingerprint_fields=("contributions", "first_purchase_id"))
    def running_balance(
        self,
        *,
        contributions: Sequence[ContributionCost],
        first_purchase_id: UUID | None,
    ) -> RunningBalance:
        """
        Global running balance.

        Sorts by purchase order, then accumulates.  ``first_purchase_id`` is
        the ledger's chronologically first purchase, whose contribution
        counts zero consumption.
        """
        ordered = sorted(contributions, key=lambda r: r.sort_key)
        return self.accumulate_balance(ordered, first_purchase_id)

    def accumulate_balance(
        self,
        contributions: Sequence[ContributionCost],
        first_purchase_id: UUID | None,
    ) -> RunningBalance:
        """Accumulate in the order given; callers wanting a ledger balance sort first."""
        balance = ZERO
        entries: list[BalanceEntry] = []
        for row in contributions:
            c, p = row.contribution, row.purchase
            effective = ZERO if p.id == first_purchase_id else c.tokens_consumed
            fair_share = self.true_cost(effective, p.total_tokens, p.total_payment)
            change = c.contribution_amount - fair_share
            balance += change
            entries.append(
                BalanceEntry(
                    contribution_id=c.id,
                    purchase_id=p.id,
                    purchase_date=p.purchase_date,
                    contribution_amount=c.contribution_amount,
                    effective_tokens=effective,
                    fair_share=round_money(fair_share),
                    balance_change=round_money(change),
                    running_balance=round_money(balance),
                )
            )
        return RunningBalance(balance=round_money(balance), entries=tuple(entries))

    @traced_engine("allocation", "1.0", fingerprint_fields=("start", "end"))
    def period_analysis(
        self,
        *,
        purchases: Sequence[PurchaseInfo],
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> PeriodCostAnalysis:
        """
        Per-user cost summaries for a period.

        Contributions are filtered by creation time and purchases by
        purchase date; either bound may be omitted.
        """

        def in_period(moment: datetime) -> bool:
            if start is not None and moment < start:
                return False
            if end is not None and moment > end:
                return False
            return True

        period_purchases = [p for p in purchases if in_period(p.purchase_date)]
        rows = [
            ContributionCost(contribution=p.contribution, purchase=p)
            for p in sorted(purchases, key=lambda p: p.sort_key)
            if p.contribution is not None and in_period(p.contribution.created_at)
        ]

        by_user: dict[UUID, list[ContributionCost]] = {}
        for row in rows:
            by_user.setdefault(row.contribution.user_id, []).append(row)

        users = tuple(
            UserCostSummary(
                user_id=user_id,
                breakdown=self.user_summary(contributions=user_rows),
                contribution_ids=tuple(r.contribution.id for r in user_rows),
                purchase_ids=tuple(r.purchase.id for r in user_rows),
            )
            for user_id, user_rows in by_user.items()
        )

        tokens = sum((u.breakdown.total_tokens_used for u in users), ZERO)
        paid = sum((u.breakdown.total_amount_paid for u in users), ZERO)
        true_cost = sum((u.breakdown.total_true_cost for u in users), ZERO)
        total = CostBreakdown(
            total_tokens_used=tokens,
            total_amount_paid=paid,
            total_true_cost=true_cost,
            average_cost_per_kwh=round_rate(true_cost / tokens) if tokens > 0 else ZERO,
            efficiency=(
                round_money(true_cost / paid * HUNDRED) if true_cost > 0 and paid > 0 else ZERO
            ),
            overpayment=sum((u.breakdown.overpayment for u in users), ZERO),
            emergency_premium=sum((u.breakdown.emergency_premium for u in users), ZERO),
            regular_cost_per_kwh=ZERO,
            emergency_cost_per_kwh=ZERO,
        )

        return PeriodCostAnalysis(
            period_start=start,
            period_end=end,
            users=users,
            total=total,
            emergency_impact=self._emergency_impact(period_purchases, rows),
        )

    @staticmethod
    def _emergency_impact(
        purchases: Sequence[PurchaseInfo], rows: Sequence[ContributionCost]
    ) -> EmergencyImpact:
        regular = [p for p in purchases if not p.is_emergency]
        emergency = [p for p in purchases if p.is_emergency]
        avg_regular = (
            sum((p.cost_per_kwh for p in regular), ZERO) / len(regular) if regular else ZERO
        )
        avg_emergency = (
            sum((p.cost_per_kwh for p in emergency), ZERO) / len(emergency) if emergency else ZERO
        )
        emergency_tokens = sum(
            (r.contribution.tokens_consumed for r in rows if r.purchase.is_emergency), ZERO
        )
        additional = (
            emergency_tokens * (avg_emergency - avg_regular)
            if emergency_tokens > 0 and avg_regular > 0
            else ZERO
        )
        increase = (
            (avg_emergency - avg_regular) / avg_regular * HUNDRED if avg_regular > 0 else ZERO
        )
        return EmergencyImpact(
            regular_purchases=len(regular),
            emergency_purchases=len(emergency),
            additional_cost=round_money(additional),
            percentage_increase=round_money(increase),
        )

    def optimal_contribution(
        self,
        tokens_consumed: Decimal,
        purchase: PurchaseInfo,
        include_emergency_penalty: bool = True,
    ) -> OptimalContribution:
        """Fair contribution for a consumption, with the emergency penalty."""
        base = self.true_cost(tokens_consumed, purchase.total_tokens, purchase.total_payment)
        penalty = (
            base * self._config.emergency_penalty_rate
            if purchase.is_emergency and include_emergency_penalty
            else ZERO
        )
        return OptimalContribution(
            base_contribution=round_money(base),
            emergency_penalty=round_money(penalty),
            total=round_money(base + penalty),
            cost_per_kwh=round_rate(purchase.cost_per_kwh),
        )

    def recommendations(self, breakdown: CostBreakdown) -> CostRecommendation:
        """Efficiency rating and advice for a cost breakdown."""
        advice: list[str] = []
        savings = ZERO
        overpayment = breakdown.overpayment

        if breakdown.efficiency >= 95:
            rating = EfficiencyRating.EXCELLENT
            advice.append("You are paying very close to your true usage cost.")
        elif breakdown.efficiency >= 85:
            rating = EfficiencyRating.GOOD
            advice.append("Your payments are reasonably aligned with your usage.")
        elif breakdown.efficiency >= 70:
            rating = EfficiencyRating.FAIR
            advice.append(
                "Consider adjusting your contribution amounts to better match your usage."
            )
            savings = abs(overpayment) * Decimal("0.5")
        else:
            rating = EfficiencyRating.POOR
            advice.append("Your payments are significantly misaligned with your actual usage.")
            savings = abs(overpayment) * Decimal("0.8")

        if breakdown.emergency_premium > 0 and breakdown.total_true_cost > 0:
            impact = breakdown.emergency_premium / breakdown.total_true_cost * HUNDRED
            if impact > 20:
                advice.append(
                    f"Emergency purchases increased your costs by {impact:.1f}%. "
                    "Consider planning ahead to avoid emergency rates."
                )

        tolerance = breakdown.total_true_cost * Decimal("0.1")
        if overpayment > tolerance:
            advice.append(
                f"You are overpaying by {round_money(overpayment)}. "
                "Consider reducing your contribution amounts."
            )
        elif overpayment < -tolerance:
            advice.append(
                f"You are underpaying by {round_money(abs(overpayment))}. "
                "Consider increasing your contribution amounts."
            )

        return CostRecommendation(
            rating=rating,
            recommendations=tuple(advice),
            potential_savings=round_money(savings),
        )
