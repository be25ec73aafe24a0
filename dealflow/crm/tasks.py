from __future__ import annotations

import logging
import uuid

from sqlalchemy.orm import Session

from dealflow import events
from dealflow.core.celery_app import celery_app
from dealflow.core.database import SessionLocal
from dealflow.crm.activity import SqlActivityLog
from dealflow.crm.stages import StageTransitionEngine
from dealflow.crm.store import SqlAlchemyEntityStore
from dealflow.metrics import observe_rotten_deals


logger = logging.getLogger("dealflow.crm.tasks")


def sweep_rotten_deals(session: Session, owner_id: uuid.UUID | None = None) -> list[str]:
    """Publish ``crm.deal.rotten`` for every open deal idle past its stage threshold."""
    engine = StageTransitionEngine(
        store=SqlAlchemyEntityStore(session),
        activity_log=SqlActivityLog(session, actor_user_id="system"),
    )
    rotten = engine.get_rotten_deals(owner_id)
    observe_rotten_deals(len(rotten))

    for deal in rotten:
        events.publish(
            events.build_envelope(
                "crm.deal.rotten",
                {
                    "deal_id": str(deal.id),
                    "stage_id": str(deal.stage_id),
                    "owner_id": str(deal.owner_id) if deal.owner_id else None,
                    "rotten_days": deal.stage.rotten_days,
                },
            )
        )

    logger.info("deal.rotten_sweep", extra={"deal_count": len(rotten)})
    return [str(deal.id) for deal in rotten]


@celery_app.task(name="crm.sweep_rotten_deals")
def sweep_rotten_deals_task(owner_id: str | None = None) -> list[str]:
    session = SessionLocal()
    try:
        return sweep_rotten_deals(session, uuid.UUID(owner_id) if owner_id else None)
    finally:
        session.close()
