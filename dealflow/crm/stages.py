"""Deal stage transitions, rotten-deal detection and line-item valuation.

Deals may move from any stage to any other stage of their pipeline; the only
derived state is the probability (copied from the target stage), the
``stage_changed_at`` timestamp and ``actual_close_date``, which tracks whether
the current stage is terminal.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from opentelemetry import trace

from dealflow import events
from dealflow.core.config import get_settings
from dealflow.crm.activity import DEAL_CREATED, STAGE_CHANGE, VALUE_CHANGE, ActivityEvent, ActivityLog
from dealflow.crm.errors import NotFoundError, ValidationError
from dealflow.crm.models import CRMDeal, CRMPipeline, CRMPipelineStage, ensure_utc, utcnow
from dealflow.crm.store import EntityStore
from dealflow.metrics import observe_stage_transition, observe_value_recalculation


logger = logging.getLogger("dealflow.crm.stages")
tracer = trace.get_tracer("dealflow.crm.stages")

CENT = Decimal("0.01")
HUNDRED = Decimal("100")
SECONDS_PER_DAY = 86400


def line_item_total(quantity: int, unit_price: Decimal, discount_percent: Decimal) -> Decimal:
    gross = Decimal(quantity) * Decimal(unit_price)
    return (gross * (1 - Decimal(discount_percent) / HUNDRED)).quantize(CENT, rounding=ROUND_HALF_UP)


def days_between(earlier: datetime, later: datetime) -> int:
    elapsed = ensure_utc(later) - ensure_utc(earlier)
    return int(elapsed.total_seconds() // SECONDS_PER_DAY)


def is_rotten(deal: CRMDeal, now: datetime) -> bool:
    if deal.actual_close_date is not None:
        return False
    rotten_days = deal.stage.rotten_days
    if rotten_days is None:
        return False
    return days_between(deal.stage_changed_at, now) > rotten_days


@dataclass(slots=True)
class StageTransitionEngine:
    store: EntityStore
    activity_log: ActivityLog
    clock: Callable[[], datetime] = utcnow

    def create_pipeline(
        self,
        name: str,
        stages: Sequence[Mapping[str, Any]],
        *,
        is_default: bool = False,
    ) -> CRMPipeline:
        with tracer.start_as_current_span("crm.pipeline.create"):
            with self.store.transaction():
                pipeline = self.store.create_pipeline(name, stages, is_default=is_default)
        logger.info("pipeline.created", extra={"pipeline_id": str(pipeline.id)})
        return pipeline

    def create_deal(
        self,
        *,
        title: str,
        pipeline_id: uuid.UUID,
        stage_id: uuid.UUID | None = None,
        value: Decimal = Decimal("0"),
        currency_code: str | None = None,
        owner_id: uuid.UUID | None = None,
        contact_id: uuid.UUID | None = None,
        expected_close_date: date | None = None,
        description: str | None = None,
        custom_fields: Mapping[str, Any] | None = None,
    ) -> CRMDeal:
        stage = self._resolve_initial_stage(pipeline_id, stage_id)
        if owner_id is not None and self.store.get_user(owner_id) is None:
            raise NotFoundError("user", owner_id)
        if contact_id is not None and self.store.get_contact(contact_id) is None:
            raise NotFoundError("contact", contact_id)
        now = self.clock()

        with tracer.start_as_current_span("crm.deal.create") as span:
            with self.store.transaction():
                deal = self.store.create_deal(
                    {
                        "title": title.strip(),
                        "description": description,
                        "value": Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP),
                        "currency_code": currency_code or get_settings().default_currency_code,
                        "probability": stage.default_probability,
                        "stage_id": stage.id,
                        "owner_id": owner_id,
                        "contact_id": contact_id,
                        "expected_close_date": expected_close_date,
                        "actual_close_date": now if stage.is_terminal else None,
                        "stage_changed_at": now,
                        "custom_fields": dict(custom_fields or {}),
                        "created_at": now,
                        "updated_at": now,
                    }
                )
                self.store.record_stage_visit(deal.id, stage.id, now)
            span.set_attribute("deal_id", str(deal.id))

        self.activity_log.append(
            ActivityEvent(
                type=DEAL_CREATED,
                entity_type="deal",
                entity_id=deal.id,
                description=f"Deal created in stage {stage.name}",
                timestamp=now,
                metadata={"stage_id": str(stage.id), "stage_name": stage.name},
            )
        )
        return deal

    def move_to_stage(self, deal_id: uuid.UUID, target_stage_id: uuid.UUID, reason: str | None = None) -> CRMDeal:
        deal = self.store.get_deal(deal_id)
        if deal is None:
            raise NotFoundError("deal", deal_id)
        target = self.store.get_stage(target_stage_id)
        if target is None:
            raise NotFoundError("stage", target_stage_id)

        previous = self.store.get_stage(deal.stage_id)
        if previous is not None and target.pipeline_id != previous.pipeline_id:
            raise ValidationError("stage must belong to the deal's pipeline", fields=["stage_id"])
        previous_name = previous.name if previous is not None else None
        previous_stage_id = deal.stage_id
        now = self.clock()

        patch: dict[str, Any] = {
            "stage_id": target.id,
            "probability": target.default_probability,
            "stage_changed_at": now,
            "updated_at": now,
        }
        if target.is_terminal:
            patch["actual_close_date"] = now
        elif deal.actual_close_date is not None:
            # Reopened: the deal is no longer closed.
            patch["actual_close_date"] = None

        with tracer.start_as_current_span("crm.deal.move_to_stage") as span:
            span.set_attribute("deal_id", str(deal_id))
            span.set_attribute("to_stage", target.name)
            with self.store.transaction():
                deal = self.store.update_deal(deal_id, patch)
                self.store.record_stage_visit(deal_id, target.id, now)

        observe_stage_transition(target.stage_type)
        logger.info(
            "deal.stage_changed",
            extra={"deal_id": str(deal_id), "from_stage": previous_name, "to_stage": target.name},
        )

        description = f"Stage changed from {previous_name} to {target.name}"
        if reason:
            description = f"{description}: {reason}"
        self.activity_log.append(
            ActivityEvent(
                type=STAGE_CHANGE,
                entity_type="deal",
                entity_id=deal_id,
                description=description,
                timestamp=now,
                metadata={
                    "previous_stage_id": str(previous_stage_id),
                    "previous_stage": previous_name,
                    "new_stage_id": str(target.id),
                    "new_stage": target.name,
                    "reason": reason,
                },
            )
        )
        events.publish(
            events.build_envelope(
                "crm.deal.stage_changed",
                {
                    "deal_id": str(deal_id),
                    "from_stage_id": str(previous_stage_id),
                    "to_stage_id": str(target.id),
                    "is_terminal": target.is_terminal,
                },
            )
        )
        return deal

    def get_rotten_deals(self, owner_id: uuid.UUID | None = None) -> list[CRMDeal]:
        now = self.clock()
        candidates = self.store.list_open_deals_with_rotten_threshold(owner_id)
        return [deal for deal in candidates if is_rotten(deal, now)]

    def recalculate_value(self, deal_id: uuid.UUID, line_items: Sequence[Any]) -> CRMDeal:
        """Replace a deal's line items and derive its value from them.

        ``line_items`` are validated ``LineItemInput`` objects or mappings with
        the same keys. The replacement and the new total commit together.
        """
        deal = self.store.get_deal(deal_id)
        if deal is None:
            raise NotFoundError("deal", deal_id)

        rows = [self._line_item_row(item) for item in line_items]
        new_total = sum((row["line_total"] for row in rows), Decimal("0")).quantize(CENT, rounding=ROUND_HALF_UP)
        previous_total = Decimal(deal.value).quantize(CENT, rounding=ROUND_HALF_UP)
        now = self.clock()

        with tracer.start_as_current_span("crm.deal.recalculate_value") as span:
            span.set_attribute("deal_id", str(deal_id))
            span.set_attribute("line_item_count", len(rows))
            with self.store.transaction():
                self.store.replace_deal_line_items(deal_id, rows)
                deal = self.store.update_deal(deal_id, {"value": new_total, "updated_at": now})

        observe_value_recalculation()
        self.activity_log.append(
            ActivityEvent(
                type=VALUE_CHANGE,
                entity_type="deal",
                entity_id=deal_id,
                description=f"Deal value changed from {previous_total} to {new_total}",
                timestamp=now,
                metadata={
                    "previous_value": str(previous_total),
                    "new_value": str(new_total),
                    "line_item_count": len(rows),
                },
            )
        )
        events.publish(
            events.build_envelope(
                "crm.deal.value_changed",
                {"deal_id": str(deal_id), "previous_value": str(previous_total), "new_value": str(new_total)},
            )
        )
        return deal

    def _resolve_initial_stage(self, pipeline_id: uuid.UUID, stage_id: uuid.UUID | None) -> CRMPipelineStage:
        if stage_id is not None:
            stage = self.store.get_stage(stage_id)
            if stage is None:
                raise NotFoundError("stage", stage_id)
            if stage.pipeline_id != pipeline_id:
                raise ValidationError("stage must belong to the deal's pipeline", fields=["stage_id"])
            return stage

        if self.store.get_pipeline(pipeline_id) is None:
            raise NotFoundError("pipeline", pipeline_id)
        stages = self.store.list_stages_by_pipeline(pipeline_id)
        if not stages:
            raise ValidationError("pipeline has no stages", fields=["pipeline_id"])
        return stages[0]

    def _line_item_row(self, item: Any) -> dict[str, Any]:
        data = item if isinstance(item, Mapping) else item.model_dump()
        quantity = data["quantity"]
        unit_price = Decimal(str(data["unit_price"]))
        discount_percent = Decimal(str(data.get("discount_percent") or 0))
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("quantity must be a positive integer", fields=["quantity"])
        if unit_price < 0:
            raise ValidationError("unit_price must be non-negative", fields=["unit_price"])
        if not Decimal("0") <= discount_percent <= HUNDRED:
            raise ValidationError("discount_percent must be between 0 and 100", fields=["discount_percent"])
        return {
            "product_name": str(data.get("product_name") or "Item"),
            "quantity": quantity,
            "unit_price": unit_price,
            "discount_percent": discount_percent,
            "line_total": line_item_total(quantity, unit_price, discount_percent),
        }
