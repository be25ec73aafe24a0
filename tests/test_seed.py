from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealflow.core.database import Base
from dealflow.crm.forecast import ForecastEngine
from dealflow.crm.lifecycle import LifecycleProgressionEngine
from dealflow.crm.models import CRMContact, CRMDeal, CRMPipeline, CRMUser
from dealflow.crm.seed import DEFAULT_PIPELINE_NAME, seed_demo_data
from dealflow.crm.activity import SqlActivityLog
from dealflow.crm.store import SqlAlchemyEntityStore


NOW = datetime(2026, 5, 5, 9, 0, tzinfo=timezone.utc)


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


def test_seed_creates_demo_pipeline_once(db_session: Session) -> None:
    assert seed_demo_data(db_session, clock=lambda: NOW) is True
    assert seed_demo_data(db_session, clock=lambda: NOW) is False

    assert db_session.scalar(select(func.count(CRMUser.id))) == 2
    assert db_session.scalar(select(func.count(CRMContact.id))) == 2
    pipeline = db_session.scalar(select(CRMPipeline).where(CRMPipeline.name == DEFAULT_PIPELINE_NAME))
    assert pipeline is not None
    assert pipeline.is_default is True
    assert [stage.name for stage in pipeline.stages][-2:] == ["Closed Won", "Closed Lost"]

    deals = {deal.title: deal for deal in db_session.scalars(select(CRMDeal))}
    assert Decimal(deals["Acme Corp CRM Implementation"].value) == Decimal("75000.00")
    assert deals["TechStart Sales Automation"].probability == 75


def test_seeded_data_feeds_forecast_and_next_actions(db_session: Session) -> None:
    seed_demo_data(db_session, clock=lambda: NOW)
    store = SqlAlchemyEntityStore(db_session)

    forecast = ForecastEngine(store=store, clock=lambda: NOW).generate_forecast("current_month")
    assert forecast.deal_count == 1
    assert forecast.weighted_value == Decimal("37500.00")
    assert list(forecast.by_owner) == ["Sales Representative"]

    jane = db_session.scalar(select(CRMContact).where(CRMContact.email == "jane@techstart.com"))
    assert jane is not None
    lifecycle = LifecycleProgressionEngine(store=store, activity_log=SqlActivityLog(db_session), clock=lambda: NOW)
    assert lifecycle.calculate_next_actions(jane.id) == []
