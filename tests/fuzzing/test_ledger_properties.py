"""
Property-based tests for the ledger engines.

Hypothesis generates consistent purchase chains (each contribution draws no
more than the previous purchase supplied) and checks that the rules hold for
every one of them:

- Readings below the latest point are always rejected
- Token consumption is conserved along the chain
- Cost allocation is proportional and sums back to the purchase total
- The running balance does not depend on input order
- Currency conversion round trips stay within rounding tolerance
"""

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from uuid import uuid4

from hypothesis import HealthCheck, assume, given, settings
from hypothesis import strategies as st

from meter_config.schema import AnomalyMode, ChronologyConfig
from meter_engines.allocation import ContributionCost, CostAllocator
from meter_engines.chronology import ChronologyValidator
from meter_engines.constraints import LedgerConstraintChecker
from meter_engines.dual_currency import DualCurrencyEngine
from meter_kernel.domain.dtos import (
    ContributionInfo,
    LedgerSnapshot,
    MeterReadingInfo,
    PurchaseInfo,
)

START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)
ACTOR = uuid4()

PROPERTY_SETTINGS = settings(
    max_examples=100,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)


@st.composite
def purchase_chains(draw, min_size: int = 2, max_size: int = 8) -> LedgerSnapshot:
    """A fully settled chain of purchases with consistent readings."""
    size = draw(st.integers(min_value=min_size, max_value=max_size))
    purchases: list[PurchaseInfo] = []
    reading = Decimal(draw(st.integers(min_value=0, max_value=50_000)))
    when = START
    previous_tokens: Decimal | None = None

    for i in range(size):
        tokens = Decimal(draw(st.integers(min_value=50, max_value=2_000)))
        payment = Decimal(draw(st.integers(min_value=5, max_value=500)))
        if previous_tokens is None:
            consumed = Decimal("0")
        else:
            consumed = Decimal(draw(st.integers(min_value=0, max_value=int(previous_tokens))))
            when = when + timedelta(days=draw(st.integers(min_value=1, max_value=40)))
        reading += consumed

        purchase_id = uuid4()
        created = START + timedelta(minutes=2 * i)
        contribution = ContributionInfo(
            id=uuid4(),
            purchase_id=purchase_id,
            user_id=draw(st.sampled_from([ACTOR, uuid4()])),
            contribution_amount=Decimal(draw(st.integers(min_value=1, max_value=500))),
            meter_reading=reading,
            tokens_consumed=consumed,
            created_at=created + timedelta(minutes=1),
        )
        purchases.append(
            PurchaseInfo(
                id=purchase_id,
                total_tokens=tokens,
                total_payment=payment,
                meter_reading=reading,
                purchase_date=when,
                is_emergency=draw(st.booleans()),
                created_by=ACTOR,
                created_at=created,
                contribution=contribution,
            )
        )
        previous_tokens = tokens

    return LedgerSnapshot(purchases=tuple(purchases))


class TestChronologyProperties:

    @given(chain=purchase_chains(), drop=st.integers(min_value=1, max_value=500))
    @PROPERTY_SETTINGS
    def test_reading_below_latest_point_rejected(self, chain, drop):
        latest = chain.purchases[-1]

        result = ChronologyValidator().validate(
            reading=latest.meter_reading - drop,
            reading_date=(latest.purchase_date + timedelta(days=1)).date(),
            snapshot=chain,
        )

        assert not result.is_valid
        assert result.errors[0].code in ("READING_BELOW_PREVIOUS", "NEGATIVE_READING")

    @given(chain=purchase_chains())
    @PROPERTY_SETTINGS
    def test_unchanged_reading_after_latest_point_accepted(self, chain):
        latest = chain.purchases[-1]

        result = ChronologyValidator().validate(
            reading=latest.meter_reading,
            reading_date=(latest.purchase_date + timedelta(days=1)).date(),
            snapshot=chain,
        )

        assert result.is_valid


    @given(
        candidates=st.lists(
            st.tuples(
                st.integers(min_value=0, max_value=60),
                st.integers(min_value=1_000, max_value=5_000),
            ),
            min_size=1,
            max_size=25,
        )
    )
    @PROPERTY_SETTINGS
    def test_accepted_readings_never_decrease(self, candidates):
        validator = ChronologyValidator(ChronologyConfig(anomaly_mode=AnomalyMode.OFF))
        baseline = PurchaseInfo(
            id=uuid4(),
            total_tokens=Decimal("100000"),
            total_payment=Decimal("100"),
            meter_reading=Decimal("1000"),
            purchase_date=START,
            is_emergency=False,
            created_by=ACTOR,
            created_at=START,
        )
        accepted: list[MeterReadingInfo] = []

        for i, (offset, value) in enumerate(candidates):
            reading_date = START.date() + timedelta(days=offset)
            snapshot = LedgerSnapshot(purchases=(baseline,), readings=tuple(accepted))
            result = validator.validate(
                reading=Decimal(value), reading_date=reading_date, snapshot=snapshot
            )
            if result.is_valid:
                accepted.append(
                    MeterReadingInfo(
                        id=uuid4(),
                        user_id=ACTOR,
                        reading=Decimal(value),
                        reading_date=reading_date,
                        created_at=START + timedelta(seconds=i + 1),
                    )
                )

        for earlier in accepted:
            for later in accepted:
                if earlier.reading_date < later.reading_date:
                    assert earlier.reading <= later.reading
                elif earlier.reading_date == later.reading_date and earlier.created_at < later.created_at:
                    assert earlier.reading <= later.reading


class TestTokenProperties:

    @given(chain=purchase_chains())
    @PROPERTY_SETTINGS
    def test_consumption_is_conserved(self, chain):
        checker = LedgerConstraintChecker()

        derived = [
            checker.derive_tokens_consumed(
                purchase_id=p.id, meter_reading=p.contribution.meter_reading, snapshot=chain
            )
            for p in chain.purchases
        ]

        assert derived == [p.contribution.tokens_consumed for p in chain.purchases]
        assert sum(derived, Decimal("0")) == (
            chain.purchases[-1].meter_reading - chain.purchases[0].meter_reading
        )

    @given(chain=purchase_chains())
    @PROPERTY_SETTINGS
    def test_recorded_contributions_stay_available(self, chain):
        checker = LedgerConstraintChecker()

        for p in chain.purchases:
            result = checker.check_token_availability(
                purchase_id=p.id,
                tokens_consumed=p.contribution.tokens_consumed,
                snapshot=chain,
                exclude_contribution_id=p.contribution.id,
            )
            assert result.is_valid

    @given(chain=purchase_chains(), extra=st.integers(min_value=1, max_value=1_000))
    @PROPERTY_SETTINGS
    def test_more_than_supplied_rejected(self, chain, extra):
        checker = LedgerConstraintChecker()
        previous, current = chain.purchases[-2], chain.purchases[-1]

        result = checker.check_token_availability(
            purchase_id=current.id,
            tokens_consumed=previous.total_tokens + extra,
            snapshot=chain,
            exclude_contribution_id=current.contribution.id,
        )

        assert result.error_codes == ("INSUFFICIENT_TOKENS",)


class TestAllocationProperties:

    @given(
        total_tokens=st.integers(min_value=1, max_value=5_000),
        total_cost=st.decimals(min_value="0.01", max_value="10000", places=2),
        cut=st.floats(min_value=0, max_value=1),
    )
    @PROPERTY_SETTINGS
    def test_cost_is_proportional_and_sums_to_total(self, total_tokens, total_cost, cut):
        tokens = Decimal(total_tokens)
        part = Decimal(int(total_tokens * cut))

        first = CostAllocator.true_cost(part, tokens, total_cost)
        rest = CostAllocator.true_cost(tokens - part, tokens, total_cost)

        assert Decimal("0") <= first <= total_cost
        assert abs(first + rest - total_cost) < Decimal("1e-20")

    @given(
        total_tokens=st.integers(min_value=3, max_value=5_000),
        total_cost=st.decimals(min_value="0.01", max_value="10000", places=2),
        data=st.data(),
    )
    @PROPERTY_SETTINGS
    def test_cost_scales_linearly(self, total_tokens, total_cost, data):
        tokens = Decimal(total_tokens)
        used = Decimal(data.draw(st.integers(min_value=1, max_value=(total_tokens - 1) // 2)))

        single = CostAllocator.true_cost(used, tokens, total_cost)
        double = CostAllocator.true_cost(2 * used, tokens, total_cost)

        assert abs(single / used - double / (2 * used)) < Decimal("1e-20")
        assert CostAllocator.true_cost(tokens, tokens, total_cost) == total_cost

    @given(total_cost=st.decimals(min_value="0", max_value="10000", places=2))
    @PROPERTY_SETTINGS
    def test_zero_token_purchase_costs_nothing(self, total_cost):
        assert CostAllocator.true_cost(Decimal("10"), Decimal("0"), total_cost) == 0

    @given(chain=purchase_chains(), data=st.data())
    @PROPERTY_SETTINGS
    def test_running_balance_independent_of_input_order(self, chain, data):
        allocator = CostAllocator()
        rows = ContributionCost.from_snapshot(chain)
        shuffled = data.draw(st.permutations(rows))
        first_id = chain.first_purchase.id

        ordered = allocator.running_balance(contributions=rows, first_purchase_id=first_id)
        reordered = allocator.running_balance(contributions=shuffled, first_purchase_id=first_id)

        assert reordered == ordered
        assert ordered.entries[0].effective_tokens == 0

    @given(chain=purchase_chains(min_size=3), data=st.data())
    @PROPERTY_SETTINGS
    def test_unsorted_accumulation_follows_input_order(self, chain, data):
        allocator = CostAllocator()
        rows = ContributionCost.from_snapshot(chain)
        shuffled = data.draw(st.permutations(rows))
        assume(list(shuffled) != rows)
        first_id = chain.first_purchase.id

        ordered = allocator.running_balance(contributions=rows, first_purchase_id=first_id)
        unsorted = allocator.accumulate_balance(shuffled, first_id)

        assert [e.contribution_id for e in unsorted.entries] == [
            r.contribution.id for r in shuffled
        ]
        assert [e.contribution_id for e in unsorted.entries] != [
            e.contribution_id for e in ordered.entries
        ]

    @given(chain=purchase_chains())
    @PROPERTY_SETTINGS
    def test_balance_is_paid_minus_fair_share(self, chain):
        rows = ContributionCost.from_snapshot(chain)
        first = chain.first_purchase

        balance = CostAllocator().running_balance(contributions=rows, first_purchase_id=first.id)

        paid = sum((r.contribution.contribution_amount for r in rows), Decimal("0"))
        fair = sum(
            (
                CostAllocator.true_cost(
                    r.contribution.tokens_consumed if r.purchase.id != first.id else Decimal("0"),
                    r.purchase.total_tokens,
                    r.purchase.total_payment,
                )
                for r in rows
            ),
            Decimal("0"),
        )
        assert abs(balance.balance - (paid - fair)) <= Decimal("0.005")

    @given(chain=purchase_chains())
    @PROPERTY_SETTINGS
    def test_reversing_purchase_dates_changes_the_first_purchase(self, chain):
        # Entering the chain in creation order but with reversed purchase
        # dates moves the zero-consumption slot to the newest entry.
        dates = [p.purchase_date for p in chain.purchases]
        flipped = LedgerSnapshot(
            purchases=tuple(
                replace(p, purchase_date=d) for p, d in zip(chain.purchases, reversed(dates))
            )
        )

        assert flipped.first_purchase.id == chain.purchases[-1].id


class TestCurrencyProperties:

    @given(
        amount=st.decimals(min_value="0.01", max_value="100000", places=2),
        rate=st.decimals(min_value="1", max_value="10000", places=4),
    )
    @PROPERTY_SETTINGS
    def test_internal_round_trip(self, amount, rate):
        engine = DualCurrencyEngine()

        official = engine.convert_internal_to_official(amount, rate)
        back = engine.convert_official_to_internal(official, rate)

        assert abs(back - amount) <= Decimal("0.01")

    @given(
        amount=st.decimals(min_value="0.01", max_value="1000000", places=2),
        rate=st.decimals(min_value="1", max_value="10000", places=4),
    )
    @PROPERTY_SETTINGS
    def test_official_round_trip(self, amount, rate):
        engine = DualCurrencyEngine()

        internal = engine.convert_official_to_internal(amount, rate)
        back = engine.convert_internal_to_official(internal, rate)

        assert abs(back - amount) <= rate * Decimal("0.005") + Decimal("0.005")
