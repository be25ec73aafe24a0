from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealflow.core.database import Base
from dealflow.crm.errors import NotFoundError
from dealflow.crm.models import CRMPipeline, CRMUser
from dealflow.crm.store import SqlAlchemyEntityStore


NOW = datetime(2026, 5, 15, 12, 0, tzinfo=timezone.utc)


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


@pytest.fixture()
def store(db_session: Session) -> SqlAlchemyEntityStore:
    return SqlAlchemyEntityStore(db_session)


def _deal(stage_id: uuid.UUID, title: str, **fields: object) -> dict:
    return {
        "title": title,
        "value": Decimal("100"),
        "probability": 10,
        "stage_id": stage_id,
        "stage_changed_at": NOW,
        "created_at": NOW,
        "updated_at": NOW,
        **fields,
    }


def test_list_open_deals_by_pipeline_skips_closed_and_foreign_deals(store: SqlAlchemyEntityStore) -> None:
    with store.transaction():
        sales = store.create_pipeline("Sales", [{"name": "Open", "sort_order": 0}, {"name": "Closed Won", "sort_order": 1}])
        other = store.create_pipeline("Other", [{"name": "Open", "sort_order": 0}])
        sales_open, sales_won = store.list_stages_by_pipeline(sales.id)
        other_open = store.list_stages_by_pipeline(other.id)[0]
        store.create_deal(_deal(sales_open.id, "open"))
        store.create_deal(_deal(sales_won.id, "won", actual_close_date=NOW))
        store.create_deal(_deal(other_open.id, "elsewhere"))

    assert [deal.title for deal in store.list_open_deals_by_pipeline(sales.id)] == ["open"]


def test_list_deals_in_window_is_half_open(store: SqlAlchemyEntityStore) -> None:
    with store.transaction():
        pipeline = store.create_pipeline("Sales", [{"name": "Open", "sort_order": 0}])
        stage = store.list_stages_by_pipeline(pipeline.id)[0]
        store.create_deal(_deal(stage.id, "first day", expected_close_date=date(2026, 5, 1)))
        store.create_deal(_deal(stage.id, "boundary", expected_close_date=date(2026, 6, 1)))

    deals = store.list_deals_in_window(date(2026, 5, 1), date(2026, 6, 1))
    assert [deal.title for deal in deals] == ["first day"]


def test_get_user_and_contact_counts(store: SqlAlchemyEntityStore, db_session: Session) -> None:
    user = CRMUser(email="admin@crm.com", name="CRM Admin", role="ADMIN")
    db_session.add(user)
    db_session.commit()

    fetched = store.get_user(user.id)
    assert fetched is not None
    assert fetched.name == "CRM Admin"
    assert store.get_user(uuid.uuid4()) is None

    with store.transaction():
        contact = store.create_contact({"name": "John Doe", "created_at": NOW, "updated_at": NOW})
        pipeline = store.create_pipeline("Sales", [{"name": "Open", "sort_order": 0}])
        stage = store.list_stages_by_pipeline(pipeline.id)[0]
        store.create_deal(_deal(stage.id, "linked", contact_id=contact.id))

    assert store.count_deals_for_contact(contact.id) == 1
    assert store.count_deals_for_contact(uuid.uuid4()) == 0


def test_update_missing_rows_raise_not_found(store: SqlAlchemyEntityStore) -> None:
    with pytest.raises(NotFoundError):
        store.update_deal(uuid.uuid4(), {"title": "x"})
    with pytest.raises(NotFoundError):
        store.update_contact(uuid.uuid4(), {"name": "x"})
    with pytest.raises(NotFoundError):
        store.replace_deal_line_items(uuid.uuid4(), [])


def test_transaction_rolls_back_on_error(store: SqlAlchemyEntityStore, db_session: Session) -> None:
    with pytest.raises(RuntimeError):
        with store.transaction():
            store.create_pipeline("Doomed", [{"name": "Open", "sort_order": 0}])
            raise RuntimeError("boom")

    assert db_session.query(CRMPipeline).count() == 0
