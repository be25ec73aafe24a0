from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealflow import events
from dealflow.core.database import Base
from dealflow.crm.activity import SqlActivityLog
from dealflow.crm.errors import NotFoundError, ValidationError
from dealflow.crm.models import CRMActivity, CRMDeal, CRMDealLineItem, CRMPipeline, ensure_utc
from dealflow.crm.stages import StageTransitionEngine, days_between, line_item_total
from dealflow.crm.store import SqlAlchemyEntityStore


NOW = datetime(2026, 5, 15, 12, 0, tzinfo=timezone.utc)

STAGES = [
    {"name": "Lead", "sort_order": 0, "default_probability": 10, "rotten_days": 7},
    {"name": "Proposal", "sort_order": 1, "default_probability": 50, "rotten_days": None},
    {"name": "Closed Won", "sort_order": 2, "default_probability": 100},
    {"name": "Closed Lost", "sort_order": 3, "default_probability": 0},
]


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


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


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(NOW)


@pytest.fixture()
def store(db_session: Session) -> SqlAlchemyEntityStore:
    return SqlAlchemyEntityStore(db_session)


@pytest.fixture()
def engine(db_session: Session, store: SqlAlchemyEntityStore, clock: FakeClock) -> StageTransitionEngine:
    return StageTransitionEngine(
        store=store,
        activity_log=SqlActivityLog(db_session, actor_user_id="user-1"),
        clock=clock,
    )


@pytest.fixture()
def pipeline(engine: StageTransitionEngine) -> CRMPipeline:
    return engine.create_pipeline("Sales", STAGES, is_default=True)


def _stage_id(store: SqlAlchemyEntityStore, pipeline: CRMPipeline, name: str) -> uuid.UUID:
    return next(stage.id for stage in store.list_stages_by_pipeline(pipeline.id) if stage.name == name)


def test_create_pipeline_orders_stages_and_infers_terminal_types(
    store: SqlAlchemyEntityStore,
    pipeline: CRMPipeline,
) -> None:
    stages = store.list_stages_by_pipeline(pipeline.id)
    assert [stage.name for stage in stages] == ["Lead", "Proposal", "Closed Won", "Closed Lost"]
    assert [stage.stage_type for stage in stages] == ["Open", "Open", "ClosedWon", "ClosedLost"]
    assert [stage.is_terminal for stage in stages] == [False, False, True, True]


def test_create_pipeline_rejects_duplicate_sort_order(engine: StageTransitionEngine, db_session: Session) -> None:
    with pytest.raises(ValidationError):
        engine.create_pipeline(
            "Broken",
            [
                {"name": "One", "sort_order": 1},
                {"name": "Two", "sort_order": 1},
            ],
        )
    assert db_session.scalars(select(CRMPipeline)).all() == []


def test_create_deal_defaults_to_first_stage(
    engine: StageTransitionEngine,
    store: SqlAlchemyEntityStore,
    pipeline: CRMPipeline,
) -> None:
    deal = engine.create_deal(title="  New Deal  ", pipeline_id=pipeline.id, value=Decimal("1000"))

    assert deal.title == "New Deal"
    assert deal.stage_id == _stage_id(store, pipeline, "Lead")
    assert deal.probability == 10
    assert deal.currency_code == "USD"
    assert deal.actual_close_date is None
    assert ensure_utc(deal.stage_changed_at) == NOW


def test_create_deal_rejects_stage_from_another_pipeline(
    engine: StageTransitionEngine,
    store: SqlAlchemyEntityStore,
    pipeline: CRMPipeline,
) -> None:
    other = engine.create_pipeline("Other", [{"name": "Start", "sort_order": 0}])

    with pytest.raises(ValidationError) as exc_info:
        engine.create_deal(title="Mismatch", pipeline_id=pipeline.id, stage_id=_stage_id(store, other, "Start"))
    assert exc_info.value.fields == ["stage_id"]


def test_move_to_stage_rejects_stage_from_another_pipeline(
    engine: StageTransitionEngine,
    store: SqlAlchemyEntityStore,
    pipeline: CRMPipeline,
    db_session: Session,
) -> None:
    other = engine.create_pipeline("Other", [{"name": "Start", "sort_order": 0, "default_probability": 90}])
    deal = engine.create_deal(title="Stay put", pipeline_id=pipeline.id)

    with pytest.raises(ValidationError) as exc_info:
        engine.move_to_stage(deal.id, _stage_id(store, other, "Start"))
    assert exc_info.value.fields == ["stage_id"]

    unchanged = store.get_deal(deal.id)
    assert unchanged is not None
    assert unchanged.stage.pipeline_id == pipeline.id
    assert unchanged.probability == 10
    assert db_session.scalars(select(CRMActivity).where(CRMActivity.activity_type == "STAGE_CHANGE")).all() == []


def test_create_deal_rejects_unknown_owner_or_contact(
    engine: StageTransitionEngine,
    pipeline: CRMPipeline,
    db_session: Session,
) -> None:
    with pytest.raises(NotFoundError) as owner_error:
        engine.create_deal(title="Orphan", pipeline_id=pipeline.id, owner_id=uuid.uuid4())
    assert owner_error.value.resource == "user"

    with pytest.raises(NotFoundError) as contact_error:
        engine.create_deal(title="Orphan", pipeline_id=pipeline.id, contact_id=uuid.uuid4())
    assert contact_error.value.resource == "contact"

    assert db_session.scalars(select(CRMDeal)).all() == []


def test_move_to_stage_sets_probability_and_stage_changed_at(
    engine: StageTransitionEngine,
    store: SqlAlchemyEntityStore,
    pipeline: CRMPipeline,
    clock: FakeClock,
) -> None:
    deal = engine.create_deal(title="Deal", pipeline_id=pipeline.id)
    clock.advance(days=3)

    moved = engine.move_to_stage(deal.id, _stage_id(store, pipeline, "Proposal"), "demo went well")

    assert moved.probability == 50
    assert ensure_utc(moved.stage_changed_at) == clock.now
    assert moved.actual_close_date is None

    stage_events = [item for item in events.published_events if item["event_type"] == "crm.deal.stage_changed"]
    assert len(stage_events) == 1
    assert stage_events[0]["payload"]["deal_id"] == str(deal.id)
    assert stage_events[0]["payload"]["is_terminal"] is False


def test_move_to_terminal_stage_sets_close_date_and_reopen_clears_it(
    engine: StageTransitionEngine,
    store: SqlAlchemyEntityStore,
    pipeline: CRMPipeline,
    clock: FakeClock,
) -> None:
    deal = engine.create_deal(title="Deal", pipeline_id=pipeline.id)

    clock.advance(days=1)
    won = engine.move_to_stage(deal.id, _stage_id(store, pipeline, "Closed Won"))
    assert won.probability == 100
    assert won.actual_close_date is not None
    assert ensure_utc(won.actual_close_date) == clock.now

    clock.advance(days=1)
    lost = engine.move_to_stage(deal.id, _stage_id(store, pipeline, "Closed Lost"))
    assert ensure_utc(lost.actual_close_date) == clock.now

    reopened = engine.move_to_stage(deal.id, _stage_id(store, pipeline, "Proposal"))
    assert reopened.actual_close_date is None
    assert reopened.probability == 50


def test_move_to_stage_records_activity(
    engine: StageTransitionEngine,
    store: SqlAlchemyEntityStore,
    pipeline: CRMPipeline,
    db_session: Session,
) -> None:
    deal = engine.create_deal(title="Deal", pipeline_id=pipeline.id)
    engine.move_to_stage(deal.id, _stage_id(store, pipeline, "Proposal"), "qualified budget")

    activity = db_session.scalar(select(CRMActivity).where(CRMActivity.activity_type == "STAGE_CHANGE"))
    assert activity is not None
    assert activity.entity_id == deal.id
    assert activity.actor_user_id == "user-1"
    assert activity.metadata_json["previous_stage"] == "Lead"
    assert activity.metadata_json["new_stage"] == "Proposal"
    assert activity.metadata_json["reason"] == "qualified budget"
    assert activity.description == "Stage changed from Lead to Proposal: qualified budget"


def test_move_to_stage_unknown_deal_or_stage(
    engine: StageTransitionEngine,
    store: SqlAlchemyEntityStore,
    pipeline: CRMPipeline,
) -> None:
    with pytest.raises(NotFoundError):
        engine.move_to_stage(uuid.uuid4(), _stage_id(store, pipeline, "Proposal"))

    deal = engine.create_deal(title="Deal", pipeline_id=pipeline.id)
    with pytest.raises(NotFoundError) as exc_info:
        engine.move_to_stage(deal.id, uuid.uuid4())
    assert exc_info.value.resource == "stage"


def test_rotten_deals_exclude_closed_and_untracked_stages(
    engine: StageTransitionEngine,
    store: SqlAlchemyEntityStore,
    pipeline: CRMPipeline,
    clock: FakeClock,
) -> None:
    stale = engine.create_deal(title="Stale lead", pipeline_id=pipeline.id)
    untracked = engine.create_deal(
        title="Stale proposal",
        pipeline_id=pipeline.id,
        stage_id=_stage_id(store, pipeline, "Proposal"),
    )
    closed = engine.create_deal(title="Closed", pipeline_id=pipeline.id)
    engine.move_to_stage(closed.id, _stage_id(store, pipeline, "Closed Won"))

    clock.advance(days=7)
    assert engine.get_rotten_deals() == []

    clock.advance(days=1)
    fresh = engine.create_deal(title="Fresh lead", pipeline_id=pipeline.id)

    rotten_ids = {deal.id for deal in engine.get_rotten_deals()}
    assert rotten_ids == {stale.id}
    assert untracked.id not in rotten_ids
    assert closed.id not in rotten_ids
    assert fresh.id not in rotten_ids


def test_rotten_deals_filter_by_owner(
    engine: StageTransitionEngine,
    pipeline: CRMPipeline,
    clock: FakeClock,
) -> None:
    owner_id = uuid.uuid4()
    engine.create_deal(title="Unowned", pipeline_id=pipeline.id)
    clock.advance(days=10)

    assert len(engine.get_rotten_deals()) == 1
    assert engine.get_rotten_deals(owner_id) == []


def test_recalculate_value_sums_discounted_line_items(
    engine: StageTransitionEngine,
    pipeline: CRMPipeline,
    db_session: Session,
) -> None:
    deal = engine.create_deal(title="Deal", pipeline_id=pipeline.id, value=Decimal("999"))
    items = [
        {"product_name": "Seats", "quantity": 2, "unit_price": Decimal("100"), "discount_percent": Decimal("10")},
        {"product_name": "Setup", "quantity": 1, "unit_price": Decimal("50"), "discount_percent": Decimal("0")},
        {"product_name": "Training", "quantity": 5, "unit_price": Decimal("20"), "discount_percent": Decimal("20")},
    ]

    updated = engine.recalculate_value(deal.id, items)

    assert Decimal(updated.value) == Decimal("310.00")
    assert [Decimal(item.line_total) for item in updated.line_items] == [
        Decimal("180.00"),
        Decimal("50.00"),
        Decimal("80.00"),
    ]

    activity = db_session.scalar(select(CRMActivity).where(CRMActivity.activity_type == "VALUE_CHANGE"))
    assert activity is not None
    assert activity.metadata_json["previous_value"] == "999.00"
    assert activity.metadata_json["new_value"] == "310.00"


def test_recalculate_value_is_idempotent(
    engine: StageTransitionEngine,
    pipeline: CRMPipeline,
    db_session: Session,
) -> None:
    deal = engine.create_deal(title="Deal", pipeline_id=pipeline.id)
    items = [
        {"product_name": "Seats", "quantity": 3, "unit_price": Decimal("19.99"), "discount_percent": Decimal("5")},
        {"product_name": "Support", "quantity": 1, "unit_price": Decimal("250")},
    ]

    first = Decimal(engine.recalculate_value(deal.id, items).value)
    second = Decimal(engine.recalculate_value(deal.id, items).value)

    assert first == second
    count = db_session.scalars(select(CRMDealLineItem).where(CRMDealLineItem.deal_id == deal.id)).all()
    assert len(count) == len(items)


@pytest.mark.parametrize(
    "item, field",
    [
        ({"product_name": "X", "quantity": 0, "unit_price": Decimal("1")}, "quantity"),
        ({"product_name": "X", "quantity": -2, "unit_price": Decimal("1")}, "quantity"),
        ({"product_name": "X", "quantity": 1, "unit_price": Decimal("-1")}, "unit_price"),
        ({"product_name": "X", "quantity": 1, "unit_price": Decimal("1"), "discount_percent": Decimal("101")}, "discount_percent"),
    ],
)
def test_recalculate_value_rejects_invalid_line_items(
    engine: StageTransitionEngine,
    pipeline: CRMPipeline,
    item: dict,
    field: str,
) -> None:
    deal = engine.create_deal(title="Deal", pipeline_id=pipeline.id, value=Decimal("42"))

    with pytest.raises(ValidationError) as exc_info:
        engine.recalculate_value(deal.id, [item])
    assert exc_info.value.fields == [field]

    unchanged = engine.store.get_deal(deal.id)
    assert unchanged is not None
    assert Decimal(unchanged.value) == Decimal("42.00")


def test_recalculate_value_rolls_back_line_items_when_update_fails(
    engine: StageTransitionEngine,
    store: SqlAlchemyEntityStore,
    pipeline: CRMPipeline,
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    deal = engine.create_deal(title="Deal", pipeline_id=pipeline.id)
    engine.recalculate_value(deal.id, [{"product_name": "Base", "quantity": 1, "unit_price": Decimal("100")}])

    def fail_update(deal_id: uuid.UUID, patch: dict) -> CRMDeal:
        raise RuntimeError("storage unavailable")

    monkeypatch.setattr(store, "update_deal", fail_update)
    with pytest.raises(RuntimeError):
        engine.recalculate_value(
            deal.id,
            [
                {"product_name": "A", "quantity": 1, "unit_price": Decimal("1")},
                {"product_name": "B", "quantity": 1, "unit_price": Decimal("2")},
            ],
        )

    rows = db_session.scalars(select(CRMDealLineItem).where(CRMDealLineItem.deal_id == deal.id)).all()
    assert [row.product_name for row in rows] == ["Base"]
    reloaded = db_session.get(CRMDeal, deal.id)
    assert reloaded is not None
    assert Decimal(reloaded.value) == Decimal("100.00")


def test_line_item_total_rounds_half_up() -> None:
    assert line_item_total(1, Decimal("0.05"), Decimal("50")) == Decimal("0.03")
    assert line_item_total(3, Decimal("10"), Decimal("100")) == Decimal("0.00")


def test_days_between_handles_naive_values() -> None:
    naive = datetime(2026, 5, 1, 12, 0)
    assert days_between(naive, NOW) == 14
    assert days_between(NOW - timedelta(hours=47), NOW) == 1


def test_create_deal_accepts_expected_close_date(engine: StageTransitionEngine, pipeline: CRMPipeline) -> None:
    deal = engine.create_deal(title="Deal", pipeline_id=pipeline.id, expected_close_date=date(2026, 5, 30))
    assert deal.expected_close_date == date(2026, 5, 30)
