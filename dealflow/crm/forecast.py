from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal

from opentelemetry import trace

from dealflow.crm.errors import ValidationError
from dealflow.crm.models import CRMDeal, utcnow
from dealflow.crm.stages import CENT, HUNDRED, days_between
from dealflow.crm.store import EntityStore
from dealflow.metrics import observe_forecast


logger = logging.getLogger("dealflow.crm.forecast")
tracer = trace.get_tracer("dealflow.crm.forecast")

FORECAST_PERIODS = ("current_month", "next_month", "current_quarter", "next_quarter")
UNASSIGNED_OWNER = "Unassigned"

# (days stale strictly greater than, multiplier); the first match wins.
STALENESS_MULTIPLIERS: tuple[tuple[int, Decimal], ...] = (
    (30, Decimal("0.5")),
    (14, Decimal("0.7")),
    (7, Decimal("0.8")),
)
FRESH_DAYS = 2
FRESH_MULTIPLIER = Decimal("1.1")


@dataclass(slots=True)
class ForecastBucket:
    deal_count: int = 0
    total_value: Decimal = Decimal("0")
    weighted_value: Decimal = Decimal("0")
    probability_sum: int = 0
    average_probability: float = 0.0

    def add(self, value: Decimal, weighted: Decimal, probability: int) -> None:
        self.deal_count += 1
        self.total_value += value
        self.weighted_value += weighted
        self.probability_sum += probability

    def finalize(self) -> None:
        self.total_value = self.total_value.quantize(CENT, rounding=ROUND_HALF_UP)
        self.weighted_value = self.weighted_value.quantize(CENT, rounding=ROUND_HALF_UP)
        self.average_probability = self.probability_sum / self.deal_count if self.deal_count else 0.0


@dataclass(slots=True)
class Forecast:
    period: str
    start_date: date
    end_date: date
    total_value: Decimal = Decimal("0")
    weighted_value: Decimal = Decimal("0")
    deal_count: int = 0
    confidence: int = 0
    by_stage: dict[str, ForecastBucket] = field(default_factory=dict)
    by_owner: dict[str, ForecastBucket] = field(default_factory=dict)


def _first_of_month(year: int, month: int) -> date:
    year += (month - 1) // 12
    month = (month - 1) % 12 + 1
    return date(year, month, 1)


def resolve_period(period: str, today: date) -> tuple[date, date]:
    """Return the half-open ``[start, end)`` window for a forecast period."""
    if period == "current_month":
        return _first_of_month(today.year, today.month), _first_of_month(today.year, today.month + 1)
    if period == "next_month":
        return _first_of_month(today.year, today.month + 1), _first_of_month(today.year, today.month + 2)

    quarter_start_month = 3 * ((today.month - 1) // 3) + 1
    if period == "current_quarter":
        return (
            _first_of_month(today.year, quarter_start_month),
            _first_of_month(today.year, quarter_start_month + 3),
        )
    if period == "next_quarter":
        return (
            _first_of_month(today.year, quarter_start_month + 3),
            _first_of_month(today.year, quarter_start_month + 6),
        )
    raise ValidationError(f"unknown forecast period: {period}", fields=["period"])


def staleness_multiplier(days_stale: int) -> Decimal:
    for threshold, multiplier in STALENESS_MULTIPLIERS:
        if days_stale > threshold:
            return multiplier
    if days_stale <= FRESH_DAYS:
        return FRESH_MULTIPLIER
    return Decimal("1")


def deal_confidence(deal: CRMDeal, now: datetime) -> Decimal:
    adjusted = Decimal(deal.probability) * staleness_multiplier(days_between(deal.updated_at, now))
    return min(adjusted, HUNDRED)


def confidence_score(deals: list[CRMDeal], now: datetime) -> int:
    if not deals:
        return 0
    average = sum((deal_confidence(deal, now) for deal in deals), Decimal("0")) / len(deals)
    return int(average.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _owner_label(deal: CRMDeal) -> str:
    owner = deal.owner
    if owner is not None and owner.name:
        return owner.name
    return UNASSIGNED_OWNER


@dataclass(slots=True)
class ForecastEngine:
    store: EntityStore
    clock: Callable[[], datetime] = utcnow

    def generate_forecast(
        self,
        period: str,
        *,
        owner_id: uuid.UUID | None = None,
        pipeline_id: uuid.UUID | None = None,
    ) -> Forecast:
        now = self.clock()
        start, end = resolve_period(period, now.date())
        started = time.perf_counter()

        with tracer.start_as_current_span("crm.forecast.generate") as span:
            span.set_attribute("period", period)
            deals = self.store.list_deals_in_window(start, end, owner_id=owner_id, pipeline_id=pipeline_id)
            forecast = Forecast(period=period, start_date=start, end_date=end)
            totals = ForecastBucket()

            for deal in deals:
                value = Decimal(deal.value)
                weighted = value * Decimal(deal.probability) / HUNDRED
                totals.add(value, weighted, deal.probability)
                forecast.by_stage.setdefault(deal.stage.name, ForecastBucket()).add(value, weighted, deal.probability)
                forecast.by_owner.setdefault(_owner_label(deal), ForecastBucket()).add(value, weighted, deal.probability)

            totals.finalize()
            for bucket in (*forecast.by_stage.values(), *forecast.by_owner.values()):
                bucket.finalize()

            forecast.total_value = totals.total_value
            forecast.weighted_value = totals.weighted_value
            forecast.deal_count = totals.deal_count
            forecast.confidence = confidence_score(deals, now)
            span.set_attribute("deal_count", forecast.deal_count)

        observe_forecast(period, time.perf_counter() - started)
        logger.info("forecast.generated", extra={"period": period, "deal_count": forecast.deal_count})
        return forecast
