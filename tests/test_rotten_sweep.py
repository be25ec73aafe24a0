from __future__ import annotations

from collections.abc import Generator
from datetime import timedelta

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealflow import events
from dealflow.core.database import Base
from dealflow.core.events import InternalEvent, event_bus
from dealflow.crm.activity import SqlActivityLog
from dealflow.crm.models import utcnow
from dealflow.crm.stages import StageTransitionEngine
from dealflow.crm.store import SqlAlchemyEntityStore
from dealflow.crm.tasks import sweep_rotten_deals


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_events() -> Generator[None, None, None]:
    events.published_events.clear()
    yield
    events.published_events.clear()


def _detected_total() -> float:
    return REGISTRY.get_sample_value("crm_rotten_deals_detected_total") or 0.0


def test_sweep_publishes_rotten_deal_events(db_session: Session) -> None:
    past = utcnow() - timedelta(days=10)
    engine = StageTransitionEngine(
        store=SqlAlchemyEntityStore(db_session),
        activity_log=SqlActivityLog(db_session),
        clock=lambda: past,
    )
    pipeline = engine.create_pipeline(
        "Sales",
        [
            {"name": "Discovery", "sort_order": 0, "default_probability": 20, "rotten_days": 5},
            {"name": "Closed Won", "sort_order": 1, "default_probability": 100},
        ],
    )
    stale = engine.create_deal(title="Forgotten", pipeline_id=pipeline.id)

    received: list[InternalEvent] = []
    event_bus.subscribe("crm.deal.rotten", received.append)
    before = _detected_total()
    try:
        rotten_ids = sweep_rotten_deals(db_session)
    finally:
        event_bus.unsubscribe("crm.deal.rotten", received.append)

    assert rotten_ids == [str(stale.id)]
    assert _detected_total() == before + 1
    assert len(received) == 1
    assert received[0].payload["payload"]["deal_id"] == str(stale.id)
    assert received[0].payload["payload"]["rotten_days"] == 5


def test_sweep_with_no_rotten_deals(db_session: Session) -> None:
    assert sweep_rotten_deals(db_session) == []
    assert [item for item in events.published_events if item["event_type"] == "crm.deal.rotten"] == []
