from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dealflow.context import get_correlation_id
from dealflow.core.config import get_settings
from dealflow.crm.models import CRMActivity
from dealflow.metrics import observe_activity_append_failure


logger = logging.getLogger("dealflow.crm.activity")

STAGE_CHANGE = "STAGE_CHANGE"
VALUE_CHANGE = "VALUE_CHANGE"
LIFECYCLE_CHANGE = "LIFECYCLE_CHANGE"
DEAL_CREATED = "DEAL_CREATED"


@dataclass(frozen=True, slots=True)
class ActivityEvent:
    type: str
    entity_type: str
    entity_id: uuid.UUID
    description: str
    timestamp: datetime
    metadata: dict[str, Any] = field(default_factory=dict)


class ActivityLog(Protocol):
    def append(self, event: ActivityEvent) -> None: ...


class SqlActivityLog:
    """Append-only activity log stored in ``crm_activity``.

    Appends run in their own commit after the domain write has committed, so a
    failed append never undoes the mutation it describes. Failures are rolled
    back, logged and counted.
    """

    def __init__(self, session: Session, actor_user_id: str | None = None) -> None:
        self.session = session
        self.actor_user_id = actor_user_id

    def append(self, event: ActivityEvent) -> None:
        if not get_settings().activity_log_enabled:
            return

        row = CRMActivity(
            activity_type=event.type,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            description=event.description,
            metadata_json=dict(event.metadata),
            actor_user_id=self.actor_user_id,
            correlation_id=get_correlation_id(),
            occurred_at=event.timestamp,
        )
        try:
            self.session.add(row)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            observe_activity_append_failure(event.type)
            logger.exception(
                "activity.append_failed",
                extra={"activity_type": event.type, "error": str(exc)},
            )

    def list_for_entity(self, entity_id: uuid.UUID) -> list[CRMActivity]:
        rows = self.session.scalars(
            select(CRMActivity)
            .where(CRMActivity.entity_id == entity_id)
            .order_by(CRMActivity.occurred_at.asc(), CRMActivity.id.asc())
        ).all()
        return list(rows)
