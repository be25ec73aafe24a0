from __future__ import annotations

import uuid
from collections import defaultdict
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Protocol

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session, selectinload

from dealflow.crm.errors import NotFoundError, ValidationError
from dealflow.crm.models import (
    CRMContact,
    CRMDeal,
    CRMDealLineItem,
    CRMDealStageVisit,
    CRMPipeline,
    CRMPipelineStage,
    CRMUser,
    infer_stage_type,
)


class EntityStore(Protocol):
    """Persistence capabilities the pipeline engines rely on."""

    def transaction(self) -> Any: ...

    def get_deal(self, deal_id: uuid.UUID) -> CRMDeal | None: ...

    def get_stage(self, stage_id: uuid.UUID) -> CRMPipelineStage | None: ...

    def get_pipeline(self, pipeline_id: uuid.UUID) -> CRMPipeline | None: ...

    def get_user(self, user_id: uuid.UUID) -> CRMUser | None: ...

    def get_contact(self, contact_id: uuid.UUID) -> CRMContact | None: ...

    def list_stages_by_pipeline(self, pipeline_id: uuid.UUID) -> list[CRMPipelineStage]: ...

    def list_open_deals_by_pipeline(self, pipeline_id: uuid.UUID) -> list[CRMDeal]: ...

    def list_open_deals_with_rotten_threshold(self, owner_id: uuid.UUID | None = None) -> list[CRMDeal]: ...

    def list_deals_in_window(
        self,
        start: date,
        end: date,
        *,
        owner_id: uuid.UUID | None = None,
        pipeline_id: uuid.UUID | None = None,
    ) -> list[CRMDeal]: ...

    def list_closed_deals_in_window(self, pipeline_id: uuid.UUID, start: datetime, end: datetime) -> list[CRMDeal]: ...

    def list_stage_visits(self, deal_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, set[uuid.UUID]]: ...

    def count_deals_for_contact(self, contact_id: uuid.UUID) -> int: ...

    def create_pipeline(self, name: str, stages: Sequence[Mapping[str, Any]], *, is_default: bool = False) -> CRMPipeline: ...

    def create_deal(self, fields: Mapping[str, Any]) -> CRMDeal: ...

    def create_contact(self, fields: Mapping[str, Any]) -> CRMContact: ...

    def update_deal(self, deal_id: uuid.UUID, patch: Mapping[str, Any]) -> CRMDeal: ...

    def update_contact(self, contact_id: uuid.UUID, patch: Mapping[str, Any]) -> CRMContact: ...

    def replace_deal_line_items(self, deal_id: uuid.UUID, items: Sequence[Mapping[str, Any]]) -> list[CRMDealLineItem]: ...

    def record_stage_visit(self, deal_id: uuid.UUID, stage_id: uuid.UUID, entered_at: datetime) -> None: ...


class SqlAlchemyEntityStore:
    """EntityStore backed by a single SQLAlchemy session.

    Writes are flushed but never committed here; callers group them with
    ``transaction()`` so a logical mutation lands all-or-nothing.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        try:
            yield self.session
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def get_deal(self, deal_id: uuid.UUID) -> CRMDeal | None:
        return self.session.scalar(
            select(CRMDeal)
            .where(CRMDeal.id == deal_id)
            .options(selectinload(CRMDeal.stage), selectinload(CRMDeal.line_items))
        )

    def get_stage(self, stage_id: uuid.UUID) -> CRMPipelineStage | None:
        return self.session.scalar(select(CRMPipelineStage).where(CRMPipelineStage.id == stage_id))

    def get_pipeline(self, pipeline_id: uuid.UUID) -> CRMPipeline | None:
        return self.session.scalar(
            select(CRMPipeline).where(CRMPipeline.id == pipeline_id).options(selectinload(CRMPipeline.stages))
        )

    def get_user(self, user_id: uuid.UUID) -> CRMUser | None:
        return self.session.get(CRMUser, user_id)

    def get_contact(self, contact_id: uuid.UUID) -> CRMContact | None:
        return self.session.get(CRMContact, contact_id)

    def list_stages_by_pipeline(self, pipeline_id: uuid.UUID) -> list[CRMPipelineStage]:
        rows = self.session.scalars(
            select(CRMPipelineStage)
            .where(CRMPipelineStage.pipeline_id == pipeline_id)
            .order_by(CRMPipelineStage.sort_order.asc())
        ).all()
        return list(rows)

    def list_open_deals_by_pipeline(self, pipeline_id: uuid.UUID) -> list[CRMDeal]:
        rows = self.session.scalars(
            select(CRMDeal)
            .join(CRMPipelineStage, CRMDeal.stage_id == CRMPipelineStage.id)
            .where(and_(CRMPipelineStage.pipeline_id == pipeline_id, CRMDeal.actual_close_date.is_(None)))
            .options(selectinload(CRMDeal.stage))
            .order_by(CRMDeal.created_at.asc())
        ).all()
        return list(rows)

    def list_open_deals_with_rotten_threshold(self, owner_id: uuid.UUID | None = None) -> list[CRMDeal]:
        stmt = (
            select(CRMDeal)
            .join(CRMPipelineStage, CRMDeal.stage_id == CRMPipelineStage.id)
            .where(and_(CRMDeal.actual_close_date.is_(None), CRMPipelineStage.rotten_days.is_not(None)))
            .options(selectinload(CRMDeal.stage))
        )
        if owner_id is not None:
            stmt = stmt.where(CRMDeal.owner_id == owner_id)
        return list(self.session.scalars(stmt.order_by(CRMDeal.stage_changed_at.asc())).all())

    def list_deals_in_window(
        self,
        start: date,
        end: date,
        *,
        owner_id: uuid.UUID | None = None,
        pipeline_id: uuid.UUID | None = None,
    ) -> list[CRMDeal]:
        stmt = (
            select(CRMDeal)
            .join(CRMPipelineStage, CRMDeal.stage_id == CRMPipelineStage.id)
            .where(
                and_(
                    CRMDeal.actual_close_date.is_(None),
                    CRMDeal.expected_close_date.is_not(None),
                    CRMDeal.expected_close_date >= start,
                    CRMDeal.expected_close_date < end,
                )
            )
            .options(selectinload(CRMDeal.stage), selectinload(CRMDeal.owner))
        )
        if owner_id is not None:
            stmt = stmt.where(CRMDeal.owner_id == owner_id)
        if pipeline_id is not None:
            stmt = stmt.where(CRMPipelineStage.pipeline_id == pipeline_id)
        return list(self.session.scalars(stmt.order_by(CRMDeal.expected_close_date.asc())).all())

    def list_closed_deals_in_window(self, pipeline_id: uuid.UUID, start: datetime, end: datetime) -> list[CRMDeal]:
        rows = self.session.scalars(
            select(CRMDeal)
            .join(CRMPipelineStage, CRMDeal.stage_id == CRMPipelineStage.id)
            .where(
                and_(
                    CRMPipelineStage.pipeline_id == pipeline_id,
                    CRMDeal.actual_close_date.is_not(None),
                    CRMDeal.actual_close_date >= start,
                    CRMDeal.actual_close_date <= end,
                )
            )
            .options(selectinload(CRMDeal.stage))
        ).all()
        return list(rows)

    def list_stage_visits(self, deal_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, set[uuid.UUID]]:
        visits: dict[uuid.UUID, set[uuid.UUID]] = defaultdict(set)
        if not deal_ids:
            return visits
        rows = self.session.execute(
            select(CRMDealStageVisit.deal_id, CRMDealStageVisit.stage_id).where(
                CRMDealStageVisit.deal_id.in_(list(deal_ids))
            )
        ).all()
        for deal_id, stage_id in rows:
            visits[deal_id].add(stage_id)
        return visits

    def count_deals_for_contact(self, contact_id: uuid.UUID) -> int:
        count = self.session.scalar(select(func.count(CRMDeal.id)).where(CRMDeal.contact_id == contact_id))
        return int(count or 0)

    def create_pipeline(
        self,
        name: str,
        stages: Sequence[Mapping[str, Any]],
        *,
        is_default: bool = False,
    ) -> CRMPipeline:
        sort_orders = [int(stage["sort_order"]) for stage in stages]
        if len(set(sort_orders)) != len(sort_orders):
            raise ValidationError("stage sort_order must be unique within a pipeline", fields=["sort_order"])

        pipeline = CRMPipeline(name=name.strip(), is_default=is_default)
        self.session.add(pipeline)
        self.session.flush()

        for stage in stages:
            stage_name = str(stage["name"]).strip()
            stage_type = stage.get("stage_type") or infer_stage_type(stage_name).value
            self.session.add(
                CRMPipelineStage(
                    pipeline_id=pipeline.id,
                    name=stage_name,
                    sort_order=int(stage["sort_order"]),
                    stage_type=stage_type,
                    default_probability=int(stage.get("default_probability") or 0),
                    rotten_days=stage.get("rotten_days"),
                )
            )
        self.session.flush()
        self.session.refresh(pipeline)
        return pipeline

    def create_deal(self, fields: Mapping[str, Any]) -> CRMDeal:
        deal = CRMDeal(**fields)
        self.session.add(deal)
        self.session.flush()
        return deal

    def create_contact(self, fields: Mapping[str, Any]) -> CRMContact:
        contact = CRMContact(**fields)
        self.session.add(contact)
        self.session.flush()
        return contact

    def update_deal(self, deal_id: uuid.UUID, patch: Mapping[str, Any]) -> CRMDeal:
        deal = self.get_deal(deal_id)
        if deal is None:
            raise NotFoundError("deal", deal_id)
        for field_name, value in patch.items():
            setattr(deal, field_name, value)
        self.session.flush()
        return deal

    def update_contact(self, contact_id: uuid.UUID, patch: Mapping[str, Any]) -> CRMContact:
        contact = self.get_contact(contact_id)
        if contact is None:
            raise NotFoundError("contact", contact_id)
        for field_name, value in patch.items():
            setattr(contact, field_name, value)
        self.session.flush()
        return contact

    def replace_deal_line_items(
        self,
        deal_id: uuid.UUID,
        items: Sequence[Mapping[str, Any]],
    ) -> list[CRMDealLineItem]:
        deal = self.get_deal(deal_id)
        if deal is None:
            raise NotFoundError("deal", deal_id)

        deal.line_items.clear()
        self.session.flush()

        replacements = [CRMDealLineItem(position=index, **item) for index, item in enumerate(items)]
        deal.line_items.extend(replacements)
        self.session.flush()
        return replacements

    def record_stage_visit(self, deal_id: uuid.UUID, stage_id: uuid.UUID, entered_at: datetime) -> None:
        self.session.add(CRMDealStageVisit(deal_id=deal_id, stage_id=stage_id, entered_at=entered_at))
        self.session.flush()
