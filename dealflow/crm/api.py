from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from dealflow.context import get_correlation_id
from dealflow.core.auth import AuthUser, get_current_user
from dealflow.core.database import get_db
from dealflow.crm.activity import SqlActivityLog
from dealflow.crm.conversion import ConversionAnalyzer
from dealflow.crm.errors import DealflowError, InvalidProgressionError, NotFoundError, ValidationError
from dealflow.crm.forecast import ForecastEngine
from dealflow.crm.lifecycle import LifecycleProgressionEngine
from dealflow.crm.schemas import (
    ContactCreate,
    ContactProgressRequest,
    ContactRead,
    ConversionRateRead,
    DealCreate,
    DealLineItemsReplace,
    DealMoveStageRequest,
    DealRead,
    ForecastPeriod,
    ForecastRead,
    NextActionRead,
    PipelineCreate,
    PipelineRead,
)
from dealflow.crm.stages import StageTransitionEngine
from dealflow.crm.store import SqlAlchemyEntityStore


pipelines_router = APIRouter(prefix="/api/crm", tags=["crm.pipelines"])
deals_router = APIRouter(prefix="/api/crm", tags=["crm.deals"])
forecast_router = APIRouter(prefix="/api/crm", tags=["crm.forecast"])
contacts_router = APIRouter(prefix="/api/crm", tags=["crm.contacts"])

_ERROR_STATUS: dict[type[DealflowError], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidProgressionError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(code=code, message=message, details=details, correlation_id=correlation_id)
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def domain_error_response(request: Request, exc: DealflowError) -> JSONResponse:
    details: Any = None
    if isinstance(exc, InvalidProgressionError):
        details = {"from": exc.from_stage, "to": exc.to_stage}
    elif isinstance(exc, ValidationError):
        details = {"fields": exc.fields}
    elif isinstance(exc, NotFoundError):
        details = {"resource": exc.resource, "id": str(exc.resource_id)}
    return error_response(
        request,
        status_code=_ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST),
        code=exc.code,
        message=str(exc),
        details=details,
    )


def get_store(db: Session = Depends(get_db)) -> SqlAlchemyEntityStore:
    return SqlAlchemyEntityStore(db)


def get_activity_log(db: Session = Depends(get_db), user: AuthUser = Depends(get_current_user)) -> SqlActivityLog:
    return SqlActivityLog(db, actor_user_id=user.sub)


def get_stage_engine(
    store: SqlAlchemyEntityStore = Depends(get_store),
    activity_log: SqlActivityLog = Depends(get_activity_log),
) -> StageTransitionEngine:
    return StageTransitionEngine(store=store, activity_log=activity_log)


def get_lifecycle_engine(
    store: SqlAlchemyEntityStore = Depends(get_store),
    activity_log: SqlActivityLog = Depends(get_activity_log),
) -> LifecycleProgressionEngine:
    return LifecycleProgressionEngine(store=store, activity_log=activity_log)


def _deal_read(engine: StageTransitionEngine, deal_id: uuid.UUID) -> DealRead:
    deal = engine.store.get_deal(deal_id)
    if deal is None:
        raise NotFoundError("deal", deal_id)
    return DealRead.model_validate(deal)


@pipelines_router.post("/pipelines", response_model=PipelineRead, status_code=status.HTTP_201_CREATED)
def create_pipeline(
    request: Request,
    dto: PipelineCreate,
    engine: StageTransitionEngine = Depends(get_stage_engine),
) -> PipelineRead | JSONResponse:
    try:
        pipeline = engine.create_pipeline(
            dto.name,
            [stage.model_dump() for stage in dto.stages],
            is_default=dto.is_default,
        )
        return PipelineRead.model_validate(engine.store.get_pipeline(pipeline.id))
    except DealflowError as exc:
        return domain_error_response(request, exc)


@pipelines_router.get("/pipelines/{pipeline_id}", response_model=PipelineRead)
def get_pipeline(
    request: Request,
    pipeline_id: uuid.UUID,
    store: SqlAlchemyEntityStore = Depends(get_store),
) -> PipelineRead | JSONResponse:
    pipeline = store.get_pipeline(pipeline_id)
    if pipeline is None:
        return domain_error_response(request, NotFoundError("pipeline", pipeline_id))
    return PipelineRead.model_validate(pipeline)


@pipelines_router.get("/pipelines/{pipeline_id}/conversion-rates", response_model=dict[str, ConversionRateRead])
def get_conversion_rates(
    request: Request,
    pipeline_id: uuid.UUID,
    store: SqlAlchemyEntityStore = Depends(get_store),
) -> dict[str, ConversionRateRead] | JSONResponse:
    try:
        rates = ConversionAnalyzer(store=store).get_conversion_rates(pipeline_id)
    except DealflowError as exc:
        return domain_error_response(request, exc)
    return {
        key: ConversionRateRead.model_validate(
            {"from": item.from_stage, "to": item.to_stage, "rate": item.rate, "deal_count": item.deal_count}
        )
        for key, item in rates.items()
    }


@deals_router.post("/deals", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    dto: DealCreate,
    engine: StageTransitionEngine = Depends(get_stage_engine),
) -> DealRead | JSONResponse:
    try:
        deal = engine.create_deal(**dto.model_dump())
        return _deal_read(engine, deal.id)
    except DealflowError as exc:
        return domain_error_response(request, exc)


@deals_router.get("/deals/rotten", response_model=list[DealRead])
def list_rotten_deals(
    owner_id: uuid.UUID | None = Query(default=None),
    engine: StageTransitionEngine = Depends(get_stage_engine),
) -> list[DealRead]:
    return [DealRead.model_validate(deal) for deal in engine.get_rotten_deals(owner_id)]


@deals_router.get("/deals/{deal_id}", response_model=DealRead)
def get_deal(
    request: Request,
    deal_id: uuid.UUID,
    engine: StageTransitionEngine = Depends(get_stage_engine),
) -> DealRead | JSONResponse:
    try:
        return _deal_read(engine, deal_id)
    except DealflowError as exc:
        return domain_error_response(request, exc)


@deals_router.post("/deals/{deal_id}/move-stage", response_model=DealRead)
def move_deal_stage(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealMoveStageRequest,
    engine: StageTransitionEngine = Depends(get_stage_engine),
) -> DealRead | JSONResponse:
    try:
        engine.move_to_stage(deal_id, dto.stage_id, dto.reason)
        return _deal_read(engine, deal_id)
    except DealflowError as exc:
        return domain_error_response(request, exc)


@deals_router.put("/deals/{deal_id}/line-items", response_model=DealRead)
def replace_deal_line_items(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealLineItemsReplace,
    engine: StageTransitionEngine = Depends(get_stage_engine),
) -> DealRead | JSONResponse:
    try:
        engine.recalculate_value(deal_id, dto.line_items)
        return _deal_read(engine, deal_id)
    except DealflowError as exc:
        return domain_error_response(request, exc)


@forecast_router.get("/forecast", response_model=ForecastRead)
def get_forecast(
    request: Request,
    period: ForecastPeriod = Query(default="current_month"),
    owner_id: uuid.UUID | None = Query(default=None),
    pipeline_id: uuid.UUID | None = Query(default=None),
    store: SqlAlchemyEntityStore = Depends(get_store),
) -> ForecastRead | JSONResponse:
    try:
        forecast = ForecastEngine(store=store).generate_forecast(period, owner_id=owner_id, pipeline_id=pipeline_id)
    except DealflowError as exc:
        return domain_error_response(request, exc)
    return ForecastRead.model_validate(forecast)


@contacts_router.post("/contacts", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    request: Request,
    dto: ContactCreate,
    engine: LifecycleProgressionEngine = Depends(get_lifecycle_engine),
) -> ContactRead | JSONResponse:
    try:
        contact = engine.create_contact(**dto.model_dump())
    except DealflowError as exc:
        return domain_error_response(request, exc)
    return ContactRead.model_validate(contact)


@contacts_router.get("/contacts/{contact_id}", response_model=ContactRead)
def get_contact(
    request: Request,
    contact_id: uuid.UUID,
    store: SqlAlchemyEntityStore = Depends(get_store),
) -> ContactRead | JSONResponse:
    contact = store.get_contact(contact_id)
    if contact is None:
        return domain_error_response(request, NotFoundError("contact", contact_id))
    return ContactRead.model_validate(contact)


@contacts_router.post("/contacts/{contact_id}/progress", response_model=ContactRead)
def progress_contact(
    request: Request,
    contact_id: uuid.UUID,
    dto: ContactProgressRequest,
    engine: LifecycleProgressionEngine = Depends(get_lifecycle_engine),
) -> ContactRead | JSONResponse:
    try:
        contact = engine.progress(contact_id, dto.target_stage, dto.reason)
    except DealflowError as exc:
        return domain_error_response(request, exc)
    return ContactRead.model_validate(contact)


@contacts_router.get("/contacts/{contact_id}/next-actions", response_model=list[NextActionRead])
def get_next_actions(
    request: Request,
    contact_id: uuid.UUID,
    engine: LifecycleProgressionEngine = Depends(get_lifecycle_engine),
) -> list[NextActionRead] | JSONResponse:
    try:
        actions = engine.calculate_next_actions(contact_id)
    except DealflowError as exc:
        return domain_error_response(request, exc)
    return [NextActionRead.model_validate(action) for action in actions]
