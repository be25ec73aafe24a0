"""Demo data: two users, a default sales pipeline, two contacts and two open deals."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from dealflow.crm.activity import SqlActivityLog
from dealflow.crm.lifecycle import LifecycleProgressionEngine
from dealflow.crm.models import CRMUser, LifecycleStage, utcnow
from dealflow.crm.stages import StageTransitionEngine
from dealflow.crm.store import SqlAlchemyEntityStore


logger = logging.getLogger("dealflow.crm.seed")

DEFAULT_PIPELINE_NAME = "Sales Pipeline"
DEFAULT_STAGES = [
    {"name": "Prospecting", "sort_order": 0, "default_probability": 10, "rotten_days": 14},
    {"name": "Qualification", "sort_order": 1, "default_probability": 25, "rotten_days": 14},
    {"name": "Proposal", "sort_order": 2, "default_probability": 50, "rotten_days": 21},
    {"name": "Negotiation", "sort_order": 3, "default_probability": 75, "rotten_days": 14},
    {"name": "Closed Won", "sort_order": 4, "default_probability": 100, "rotten_days": None},
    {"name": "Closed Lost", "sort_order": 5, "default_probability": 0, "rotten_days": None},
]


def seed_demo_data(session: Session, clock: Callable[[], datetime] = utcnow) -> bool:
    """Insert the demo data set. Returns False when it is already present."""
    existing = session.scalar(select(CRMUser).where(CRMUser.email == "admin@crm.com"))
    if existing is not None:
        logger.info("seed.skipped", extra={"status": "already_seeded"})
        return False

    store = SqlAlchemyEntityStore(session)
    activity_log = SqlActivityLog(session, actor_user_id="seed")
    stages = StageTransitionEngine(store=store, activity_log=activity_log, clock=clock)
    lifecycle = LifecycleProgressionEngine(store=store, activity_log=activity_log, clock=clock)
    now = clock()

    admin = CRMUser(email="admin@crm.com", name="CRM Admin", role="ADMIN", created_at=now)
    sales = CRMUser(email="sales@crm.com", name="Sales Representative", role="USER", created_at=now)
    with store.transaction():
        session.add_all([admin, sales])

    pipeline = stages.create_pipeline(DEFAULT_PIPELINE_NAME, DEFAULT_STAGES, is_default=True)
    by_name = {stage.name: stage for stage in store.list_stages_by_pipeline(pipeline.id)}

    john = lifecycle.create_contact(
        name="John Doe",
        email="john@acme.com",
        phone="+1-555-0123",
        job_title="CTO",
        company_name="Acme Corporation",
        owner_id=sales.id,
        lifecycle_stage=LifecycleStage.OPPORTUNITY,
        last_contacted_at=now - timedelta(days=2),
        tags=["decision-maker", "technical"],
        custom_fields={"LinkedIn": "https://linkedin.com/in/johndoe", "Preferred Contact Method": "Email"},
    )
    jane = lifecycle.create_contact(
        name="Jane Smith",
        email="jane@techstart.com",
        phone="+1-555-0456",
        job_title="CEO",
        company_name="TechStart Inc",
        owner_id=admin.id,
        lifecycle_stage=LifecycleStage.SALES_QUALIFIED,
        last_contacted_at=now - timedelta(days=5),
        tags=["founder", "strategic"],
        custom_fields={"LinkedIn": "https://linkedin.com/in/janesmith", "Company Stage": "Series A"},
    )

    stages.create_deal(
        title="Acme Corp CRM Implementation",
        description="Enterprise CRM setup and integration",
        pipeline_id=pipeline.id,
        stage_id=by_name["Proposal"].id,
        value=Decimal("75000"),
        owner_id=sales.id,
        contact_id=john.id,
        expected_close_date=(now + timedelta(days=20)).date(),
        custom_fields={"Implementation Timeline": "6 months", "Decision Committee": "CTO, CFO, CEO"},
    )
    stages.create_deal(
        title="TechStart Sales Automation",
        description="Sales process automation and analytics",
        pipeline_id=pipeline.id,
        stage_id=by_name["Negotiation"].id,
        value=Decimal("25000"),
        owner_id=admin.id,
        contact_id=jane.id,
        expected_close_date=(now + timedelta(days=35)).date(),
        custom_fields={"Contract Type": "Annual", "Payment Terms": "Net 30"},
    )

    logger.info("seed.completed", extra={"pipeline_id": str(pipeline.id), "deal_count": 2})
    return True


def main() -> None:
    from dealflow.core.database import SessionLocal
    from dealflow.logging import configure_logging

    configure_logging()
    session = SessionLocal()
    try:
        seed_demo_data(session)
    finally:
        session.close()


if __name__ == "__main__":
    main()
