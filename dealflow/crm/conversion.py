from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from opentelemetry import trace

from dealflow.crm.errors import NotFoundError
from dealflow.crm.models import CRMDeal, CRMPipelineStage, utcnow
from dealflow.crm.store import EntityStore


logger = logging.getLogger("dealflow.crm.conversion")
tracer = trace.get_tracer("dealflow.crm.conversion")

WINDOW_MONTHS = 12


@dataclass(frozen=True, slots=True)
class ConversionRate:
    from_stage: str
    to_stage: str
    rate: float
    deal_count: int


def trailing_window_start(now: datetime, months: int = WINDOW_MONTHS) -> datetime:
    year = now.year - months // 12
    month = now.month - months % 12
    if month < 1:
        year -= 1
        month += 12
    day = now.day
    while True:
        try:
            return now.replace(year=year, month=month, day=day)
        except ValueError:
            day -= 1


def passed_through(
    deal: CRMDeal,
    stage: CRMPipelineStage,
    visited_stage_ids: set[uuid.UUID],
) -> bool:
    if visited_stage_ids:
        return stage.id in visited_stage_ids
    # No recorded history: assume every stage up to the current one was visited.
    return deal.stage.sort_order >= stage.sort_order


@dataclass(slots=True)
class ConversionAnalyzer:
    store: EntityStore
    clock: Callable[[], datetime] = utcnow

    def get_conversion_rates(self, pipeline_id: uuid.UUID) -> dict[str, ConversionRate]:
        if self.store.get_pipeline(pipeline_id) is None:
            raise NotFoundError("pipeline", pipeline_id)

        now = self.clock()
        with tracer.start_as_current_span("crm.conversion.rates") as span:
            span.set_attribute("pipeline_id", str(pipeline_id))
            stages = self.store.list_stages_by_pipeline(pipeline_id)
            deals = self.store.list_closed_deals_in_window(pipeline_id, trailing_window_start(now), now)
            visits = self.store.list_stage_visits([deal.id for deal in deals])

            counts = [
                sum(1 for deal in deals if passed_through(deal, stage, visits.get(deal.id, set())))
                for stage in stages
            ]

            rates: dict[str, ConversionRate] = {}
            for index in range(len(stages) - 1):
                from_stage, to_stage = stages[index], stages[index + 1]
                from_count, to_count = counts[index], counts[index + 1]
                rate = (to_count / from_count) * 100 if from_count else 0.0
                rates[f"{from_stage.name}_to_{to_stage.name}"] = ConversionRate(
                    from_stage=from_stage.name,
                    to_stage=to_stage.name,
                    rate=rate,
                    deal_count=from_count,
                )

        logger.info("conversion.computed", extra={"pipeline_id": str(pipeline_id), "deal_count": len(deals)})
        return rates
