"""
meter_engines.chronology -- Monotonic meter-timeline validation.

Responsibility:
    Decide whether a candidate reading ``(value, date)`` fits the existing
    timeline of the one physical meter.  Standalone readings, purchase
    readings and contribution readings are all points on that timeline.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Receives a
    ``LedgerSnapshot`` read by the caller inside its write transaction.

Invariants enforced:
    - Readings never decrease with time: same-date maximum, nearest earlier
      point and nearest later point all bound the candidate.
    - A reading cannot exceed the first purchase's reading plus every token
      bought up to that date.
    - Checks run in a fixed order and the first failure is returned, so the
      rejection names the single conflicting point.

Failure modes:
    - Returns an invalid ``ChronologyResult`` (never raises) for rule
      failures.  ``ValueError`` only for a USER scope without a user id.

Audit relevance:
    Every rejection carries the conflicting reading value, its date and the
    kind of record it came from in ``details``.

Usage:
    from meter_engines.chronology import ChronologyValidator

    result = ChronologyValidator().validate(
        reading=Decimal("5250"),
        reading_date=date(2024, 3, 1),
        snapshot=selector.snapshot(),
    )
    if not result:
        raise violation_for(result.errors)
"""

from __future__ import annotations

import statistics as stats
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from uuid import UUID

from meter_config.schema import AnomalyMode, ChronologyConfig
from meter_engines.tracer import traced_engine
from meter_kernel.domain.currency import round_quantity
from meter_kernel.domain.dtos import (
    LedgerSnapshot,
    PurchaseInfo,
    ReadingPoint,
    ReadingScope,
    ValidationError,
    ValidationResult,
)
from meter_kernel.logging_config import get_logger

logger = get_logger("engines.chronology")


def fmt_quantity(value: Decimal) -> str:
    """Render a reading without trailing zeros or exponent."""
    return f"{value.normalize():f}"


@dataclass(frozen=True)
class ConsumptionStatistics:
    """Daily consumption figures behind an anomaly decision."""

    daily_consumption: Decimal
    days_between: int
    sample_size: int
    average: Decimal
    median: Decimal
    maximum: Decimal
    threshold: Decimal


@dataclass(frozen=True)
class ChronologyResult:
    """
    Outcome of a chronology check.

    Warnings never make the result invalid.
    """

    is_valid: bool
    errors: tuple[ValidationError, ...] = ()
    warnings: tuple[str, ...] = ()
    statistics: ConsumptionStatistics | None = None

    def as_validation_result(self) -> ValidationResult:
        return ValidationResult(is_valid=self.is_valid, errors=self.errors)

    def __bool__(self) -> bool:
        return self.is_valid


def _conflict(point: ReadingPoint) -> dict:
    return {
        "conflicting_reading": str(point.reading),
        "conflicting_date": point.reading_date.isoformat(),
        "conflicting_source": point.source.value,
        "conflicting_id": str(point.entity_id),
    }


class ChronologyValidator:
    """
    Validates candidate readings against the meter timeline.

    Contract:
        Pure -- no I/O, no clock.  All data arrives in the snapshot.
    Guarantees:
        - Same inputs give the same result.
        - ``exclude_id`` removes the record being edited; excluding a
          purchase also excludes its contribution's reading.
    Non-goals:
        - Does not persist anything or raise for rule failures.
    """

    def __init__(self, config: ChronologyConfig | None = None):
        self._config = config or ChronologyConfig()

    @traced_engine(
        "chronology",
        "1.0",
        fingerprint_fields=("reading", "reading_date", "scope", "user_id", "exclude_id"),
    )
    def validate(
        self,
        *,
        reading: Decimal,
        reading_date: date,
        snapshot: LedgerSnapshot,
        scope: ReadingScope = ReadingScope.GLOBAL,
        user_id: UUID | None = None,
        exclude_id: UUID | None = None,
        require_purchase_baseline: bool = False,
    ) -> ChronologyResult:
        """
        Validate a candidate reading.

        Args:
            reading: Candidate meter value.
            reading_date: Day the value was read.
            snapshot: Ledger state to validate against.
            scope: GLOBAL for the whole meter, USER for one user's readings.
            user_id: Required for USER scope.
            exclude_id: Record being edited (reading, purchase or contribution).
            require_purchase_baseline: Reject when no purchase exists yet
                (standalone readings need one to bound the ceiling).
        """
        t0 = time.monotonic()
        excluded = self._excluded_ids(snapshot, exclude_id)
        points = [
            p
            for p in snapshot.reading_points(scope, user_id)
            if p.entity_id not in excluded
        ]
        purchases = [p for p in snapshot.purchases if p.id not in excluded]

        result = self.check_points(
            reading=reading,
            reading_date=reading_date,
            points=points,
            purchases=purchases,
            require_purchase_baseline=require_purchase_baseline,
        )

        duration_ms = round((time.monotonic() - t0) * 1000, 2)
        if result.is_valid:
            logger.info(
                "reading_chronology_accepted",
                extra={
                    "reading": str(reading),
                    "reading_date": reading_date.isoformat(),
                    "scope": scope.value,
                    "points_checked": len(points),
                    "warning_count": len(result.warnings),
                    "duration_ms": duration_ms,
                },
            )
        else:
            logger.warning(
                "reading_chronology_rejected",
                extra={
                    "reading": str(reading),
                    "reading_date": reading_date.isoformat(),
                    "scope": scope.value,
                    "error_code": result.errors[0].code,
                    "details": result.errors[0].details,
                    "duration_ms": duration_ms,
                },
            )
        for warning in result.warnings:
            logger.warning(
                "reading_consumption_warning",
                extra={"reading": str(reading), "warning": warning},
            )
        return result

    def check_points(
        self,
        reading: Decimal,
        reading_date: date,
        points: Sequence[ReadingPoint],
        purchases: Sequence[PurchaseInfo],
        require_purchase_baseline: bool = False,
    ) -> ChronologyResult:
        """Run the ordered checks over an already filtered point set."""
        same_day = [p for p in points if p.reading_date == reading_date]
        if same_day:
            highest = max(same_day, key=lambda p: p.reading)
            if reading < highest.reading:
                return self._reject(
                    "READING_BELOW_SAME_DATE_MAX",
                    f"Reading {fmt_quantity(reading)} is below the reading of "
                    f"{fmt_quantity(highest.reading)} already recorded on "
                    f"{reading_date.isoformat()} ({highest.source.value})",
                    highest,
                )

        earlier = [p for p in points if p.reading_date < reading_date]
        previous = max(earlier, key=lambda p: (p.reading_date, p.reading), default=None)
        if previous is not None and reading < previous.reading:
            return self._reject(
                "READING_BELOW_PREVIOUS",
                f"Reading {fmt_quantity(reading)} is below the earlier reading of "
                f"{fmt_quantity(previous.reading)} on {previous.reading_date.isoformat()} "
                f"({previous.source.value}); meter readings cannot decrease over time",
                previous,
            )

        later = [p for p in points if p.reading_date > reading_date]
        following = min(later, key=lambda p: (p.reading_date, p.reading), default=None)
        if following is not None and reading > following.reading:
            return self._reject(
                "READING_ABOVE_NEXT",
                f"Reading {fmt_quantity(reading)} is above the later reading of "
                f"{fmt_quantity(following.reading)} on {following.reading_date.isoformat()} "
                f"({following.source.value})",
                following,
            )

        ceiling_error = self._check_ceiling(reading, reading_date, purchases, require_purchase_baseline)
        if ceiling_error is not None:
            return ChronologyResult(is_valid=False, errors=(ceiling_error,))

        warnings: list[str] = []
        statistics_: ConsumptionStatistics | None = None
        if previous is not None:
            days_between = (reading_date - previous.reading_date).days
            consumption = reading - previous.reading
            if consumption == 0 and days_between > 1:
                warnings.append(
                    f"No consumption recorded across {days_between} days since "
                    f"{previous.reading_date.isoformat()}"
                )
            if self._config.anomaly_mode is not AnomalyMode.OFF:
                anomaly = self._check_anomaly(
                    reading, reading_date, consumption, days_between, earlier, warnings
                )
                if isinstance(anomaly, ValidationError):
                    return ChronologyResult(is_valid=False, errors=(anomaly,))
                statistics_ = anomaly

        return ChronologyResult(is_valid=True, warnings=tuple(warnings), statistics=statistics_)

    # ------------------------------------------------------------------

    @staticmethod
    def _excluded_ids(snapshot: LedgerSnapshot, exclude_id: UUID | None) -> set[UUID]:
        if exclude_id is None:
            return set()
        excluded = {exclude_id}
        purchase = snapshot.purchase(exclude_id)
        if purchase is not None and purchase.contribution is not None:
            excluded.add(purchase.contribution.id)
        return excluded

    @staticmethod
    def _reject(code: str, message: str, point: ReadingPoint) -> ChronologyResult:
        return ChronologyResult(
            is_valid=False,
            errors=(
                ValidationError(
                    code=code,
                    message=message,
                    field="meter_reading",
                    details=_conflict(point),
                ),
            ),
        )

    @staticmethod
    def _check_ceiling(
        reading: Decimal,
        reading_date: date,
        purchases: Sequence[PurchaseInfo],
        require_purchase_baseline: bool,
    ) -> ValidationError | None:
        if not purchases:
            if require_purchase_baseline:
                return ValidationError(
                    code="NO_PURCHASE_BASELINE",
                    message=(
                        "No token purchase exists yet; record a purchase before "
                        "adding meter readings"
                    ),
                    field="meter_reading",
                )
            return None

        first = min(purchases, key=lambda p: p.sort_key)
        bought = sum(
            (p.total_tokens for p in purchases if p.purchase_date.date() <= reading_date),
            Decimal("0"),
        )
        ceiling = first.meter_reading + bought
        if reading > ceiling:
            return ValidationError(
                code="READING_ABOVE_CEILING",
                message=(
                    f"Reading {fmt_quantity(reading)} exceeds the maximum possible "
                    f"{fmt_quantity(ceiling)} (first purchase reading "
                    f"{fmt_quantity(first.meter_reading)} plus {fmt_quantity(bought)} "
                    f"tokens bought up to {reading_date.isoformat()})"
                ),
                field="meter_reading",
                details={
                    "ceiling": str(ceiling),
                    "first_purchase_reading": str(first.meter_reading),
                    "tokens_purchased": str(bought),
                    "first_purchase_id": str(first.id),
                },
            )
        return None

    def _check_anomaly(
        self,
        reading: Decimal,
        reading_date: date,
        consumption: Decimal,
        days_between: int,
        earlier: Sequence[ReadingPoint],
        warnings: list[str],
    ) -> ConsumptionStatistics | ValidationError | None:
        cfg = self._config
        # One point per (date, reading); purchase and contribution readings coincide
        distinct = {(p.reading_date, p.reading): p for p in earlier}
        history = sorted(distinct.values(), key=lambda p: (p.reading_date, p.reading), reverse=True)
        history = history[: cfg.anomaly_history_window]
        if len(history) < 2:
            return None

        daily_history: list[Decimal] = []
        for current, prior in zip(history, history[1:]):
            delta = current.reading - prior.reading
            days = (current.reading_date - prior.reading_date).days
            daily = delta / Decimal(days) if days > 0 else delta
            if daily >= 0:
                daily_history.append(daily)
        if not daily_history:
            return None

        average = sum(daily_history, Decimal("0")) / Decimal(len(daily_history))
        median = stats.median(sorted(daily_history))
        maximum = max(daily_history)
        threshold = max(
            average * cfg.anomaly_mean_multiplier,
            median * cfg.anomaly_median_multiplier,
            maximum * cfg.anomaly_max_multiplier,
            cfg.anomaly_floor,
        )
        daily_consumption = consumption / Decimal(days_between) if days_between > 0 else consumption

        figures = ConsumptionStatistics(
            daily_consumption=daily_consumption,
            days_between=days_between,
            sample_size=len(daily_history),
            average=average,
            median=median,
            maximum=maximum,
            threshold=threshold,
        )

        if daily_consumption > threshold:
            message = (
                f"Daily consumption of {round_quantity(daily_consumption)} kWh is unusually "
                f"high; historical average is {round_quantity(average)} kWh/day and maximum "
                f"{round_quantity(maximum)} kWh/day. Please verify the reading"
            )
            if cfg.anomaly_mode is AnomalyMode.REJECT:
                return ValidationError(
                    code="CONSUMPTION_ANOMALY",
                    message=message,
                    field="meter_reading",
                    details={
                        "reading": str(reading),
                        "reading_date": reading_date.isoformat(),
                        "daily_consumption": str(daily_consumption),
                        "days_between": days_between,
                        "historical_average": str(average),
                        "historical_max": str(maximum),
                        "threshold": str(threshold),
                    },
                )
            warnings.append(message)
        elif daily_consumption > average * cfg.high_usage_multiplier:
            warnings.append(
                f"Daily consumption of {round_quantity(daily_consumption)} kWh is significantly "
                f"higher than the average of {round_quantity(average)} kWh/day"
            )

        low_limit = max(Decimal("0"), average * cfg.low_usage_ratio)
        if daily_consumption < low_limit and consumption > 0:
            warnings.append(
                f"Daily consumption of {round_quantity(daily_consumption)} kWh is unusually "
                f"low compared to the average of {round_quantity(average)} kWh/day"
            )
        return figures
