"""Contact lifecycle progression.

Unlike deal stages, lifecycle stages only move along a fixed directed graph.
``status`` is never set directly; it is derived from the lifecycle stage.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from opentelemetry import trace

from dealflow import events
from dealflow.crm.activity import LIFECYCLE_CHANGE, ActivityEvent, ActivityLog
from dealflow.crm.errors import InvalidProgressionError, NotFoundError
from dealflow.crm.models import CRMContact, ContactStatus, LifecycleStage, utcnow
from dealflow.crm.stages import days_between
from dealflow.crm.store import EntityStore
from dealflow.metrics import observe_lifecycle_progression


logger = logging.getLogger("dealflow.crm.lifecycle")
tracer = trace.get_tracer("dealflow.crm.lifecycle")

PROGRESSION_GRAPH: dict[LifecycleStage, frozenset[LifecycleStage]] = {
    LifecycleStage.SUBSCRIBER: frozenset({LifecycleStage.LEAD}),
    LifecycleStage.LEAD: frozenset({LifecycleStage.MARKETING_QUALIFIED, LifecycleStage.SALES_QUALIFIED}),
    LifecycleStage.MARKETING_QUALIFIED: frozenset({LifecycleStage.SALES_QUALIFIED, LifecycleStage.LEAD}),
    LifecycleStage.SALES_QUALIFIED: frozenset({LifecycleStage.OPPORTUNITY, LifecycleStage.MARKETING_QUALIFIED}),
    LifecycleStage.OPPORTUNITY: frozenset({LifecycleStage.CUSTOMER, LifecycleStage.SALES_QUALIFIED}),
    LifecycleStage.CUSTOMER: frozenset({LifecycleStage.EVANGELIST}),
    LifecycleStage.EVANGELIST: frozenset(),
}

STATUS_BY_STAGE: dict[LifecycleStage, ContactStatus] = {
    LifecycleStage.SUBSCRIBER: ContactStatus.LEAD,
    LifecycleStage.LEAD: ContactStatus.LEAD,
    LifecycleStage.MARKETING_QUALIFIED: ContactStatus.PROSPECT,
    LifecycleStage.SALES_QUALIFIED: ContactStatus.QUALIFIED,
    LifecycleStage.OPPORTUNITY: ContactStatus.QUALIFIED,
    LifecycleStage.CUSTOMER: ContactStatus.CUSTOMER,
    LifecycleStage.EVANGELIST: ContactStatus.CUSTOMER,
}

LEAD_FOLLOW_UP_DAYS = 3
CUSTOMER_CHECK_IN_DAYS = 30


@dataclass(frozen=True, slots=True)
class NextAction:
    type: str
    priority: str
    reason: str


def can_progress(current: LifecycleStage, target: LifecycleStage) -> bool:
    return target in PROGRESSION_GRAPH[current]


def status_for(stage: LifecycleStage) -> ContactStatus:
    return STATUS_BY_STAGE[stage]


@dataclass(slots=True)
class LifecycleProgressionEngine:
    store: EntityStore
    activity_log: ActivityLog
    clock: Callable[[], datetime] = utcnow

    def create_contact(self, **fields: object) -> CRMContact:
        stage = LifecycleStage(fields.pop("lifecycle_stage", LifecycleStage.LEAD))
        owner_id = fields.get("owner_id")
        if owner_id is not None and self.store.get_user(owner_id) is None:  # type: ignore[arg-type]
            raise NotFoundError("user", owner_id)
        now = self.clock()
        with self.store.transaction():
            contact = self.store.create_contact(
                {
                    **fields,
                    "lifecycle_stage": stage.value,
                    "status": status_for(stage).value,
                    "created_at": now,
                    "updated_at": now,
                }
            )
        return contact

    def progress(self, contact_id: uuid.UUID, target_stage: LifecycleStage | str, reason: str | None = None) -> CRMContact:
        contact = self.store.get_contact(contact_id)
        if contact is None:
            raise NotFoundError("contact", contact_id)

        current = LifecycleStage(contact.lifecycle_stage)
        target = LifecycleStage(target_stage)
        if not can_progress(current, target):
            observe_lifecycle_progression("rejected")
            logger.warning(
                "contact.progression_rejected",
                extra={"contact_id": str(contact_id), "from_stage": current.value, "to_stage": target.value},
            )
            raise InvalidProgressionError(current.value, target.value)

        now = self.clock()
        status = status_for(target)
        with tracer.start_as_current_span("crm.contact.progress") as span:
            span.set_attribute("contact_id", str(contact_id))
            span.set_attribute("to_stage", target.value)
            with self.store.transaction():
                contact = self.store.update_contact(
                    contact_id,
                    {"lifecycle_stage": target.value, "status": status.value, "updated_at": now},
                )

        observe_lifecycle_progression("accepted")
        logger.info(
            "contact.lifecycle_changed",
            extra={"contact_id": str(contact_id), "from_stage": current.value, "to_stage": target.value},
        )

        description = f"Lifecycle stage changed from {current.value} to {target.value}"
        if reason:
            description = f"{description}: {reason}"
        self.activity_log.append(
            ActivityEvent(
                type=LIFECYCLE_CHANGE,
                entity_type="contact",
                entity_id=contact_id,
                description=description,
                timestamp=now,
                metadata={"previous_stage": current.value, "new_stage": target.value, "reason": reason},
            )
        )
        events.publish(
            events.build_envelope(
                "crm.contact.lifecycle_changed",
                {"contact_id": str(contact_id), "from_stage": current.value, "to_stage": target.value},
            )
        )
        return contact

    def calculate_next_actions(self, contact_id: uuid.UUID) -> list[NextAction]:
        contact = self.store.get_contact(contact_id)
        if contact is None:
            raise NotFoundError("contact", contact_id)

        stage = LifecycleStage(contact.lifecycle_stage)
        days_since_contact = self._days_since_contact(contact)
        actions: list[NextAction] = []

        if stage is LifecycleStage.LEAD and _exceeds(days_since_contact, LEAD_FOLLOW_UP_DAYS):
            actions.append(
                NextAction(
                    type="FOLLOW_UP_CALL",
                    priority="HIGH",
                    reason=_silence_reason("lead", days_since_contact),
                )
            )
        if stage is LifecycleStage.MARKETING_QUALIFIED:
            actions.append(
                NextAction(
                    type="SALES_HANDOFF",
                    priority="HIGH",
                    reason="Marketing qualified lead is ready for sales handoff",
                )
            )
        if stage is LifecycleStage.SALES_QUALIFIED and self.store.count_deals_for_contact(contact_id) == 0:
            actions.append(
                NextAction(
                    type="CREATE_OPPORTUNITY",
                    priority="MEDIUM",
                    reason="Sales qualified contact has no associated deals",
                )
            )
        if stage is LifecycleStage.CUSTOMER and _exceeds(days_since_contact, CUSTOMER_CHECK_IN_DAYS):
            actions.append(
                NextAction(
                    type="CHECK_IN",
                    priority="LOW",
                    reason=_silence_reason("customer", days_since_contact),
                )
            )
        return actions

    def _days_since_contact(self, contact: CRMContact) -> int | None:
        if contact.last_contacted_at is None:
            return None
        return days_between(contact.last_contacted_at, self.clock())


def _exceeds(days_since_contact: int | None, threshold: int) -> bool:
    # Never contacted counts as overdue.
    return days_since_contact is None or days_since_contact > threshold


def _silence_reason(kind: str, days_since_contact: int | None) -> str:
    if days_since_contact is None:
        return f"No recorded contact with {kind}"
    return f"No contact with {kind} for {days_since_contact} days"
