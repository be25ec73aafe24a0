from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from dealflow.crm.models import LifecycleStage


StageTypeName = Literal["Open", "ClosedWon", "ClosedLost"]
ForecastPeriod = Literal["current_month", "next_month", "current_quarter", "next_quarter"]
ActionPriority = Literal["HIGH", "MEDIUM", "LOW"]


class PipelineStageCreate(BaseModel):
    name: str = Field(min_length=1)
    sort_order: int = Field(ge=0)
    default_probability: int = Field(default=0, ge=0, le=100)
    rotten_days: int | None = Field(default=None, ge=0)
    stage_type: StageTypeName | None = None


class PipelineCreate(BaseModel):
    name: str = Field(min_length=1)
    is_default: bool = False
    stages: list[PipelineStageCreate] = Field(min_length=1)


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    name: str
    sort_order: int
    stage_type: str
    default_probability: int
    rotten_days: int | None
    is_terminal: bool


class PipelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    is_default: bool
    created_at: datetime
    stages: list[PipelineStageRead] = Field(default_factory=list)


class DealCreate(BaseModel):
    title: str = Field(min_length=1)
    pipeline_id: UUID
    stage_id: UUID | None = None
    description: str | None = None
    value: Decimal = Field(default=Decimal("0"), ge=0)
    currency_code: str | None = Field(default=None, min_length=3, max_length=16)
    owner_id: UUID | None = None
    contact_id: UUID | None = None
    expected_close_date: date | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class LineItemInput(BaseModel):
    product_name: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(ge=0)
    discount_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)


class DealLineItemsReplace(BaseModel):
    line_items: list[LineItemInput] = Field(default_factory=list)


class DealLineItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    product_name: str
    quantity: int
    unit_price: float
    discount_percent: float
    line_total: float


class DealMoveStageRequest(BaseModel):
    stage_id: UUID
    reason: str | None = None


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: str | None
    value: float
    currency_code: str
    probability: int
    stage_id: UUID
    owner_id: UUID | None
    contact_id: UUID | None
    expected_close_date: date | None
    actual_close_date: datetime | None
    stage_changed_at: datetime
    custom_fields: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    line_items: list[DealLineItemRead] = Field(default_factory=list)


class ForecastBucketRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    deal_count: int
    total_value: float
    weighted_value: float
    average_probability: float


class ForecastRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    period: ForecastPeriod
    start_date: date
    end_date: date
    total_value: float
    weighted_value: float
    deal_count: int
    confidence: int = Field(ge=0, le=100)
    by_stage: dict[str, ForecastBucketRead]
    by_owner: dict[str, ForecastBucketRead]


class ConversionRateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    from_: str = Field(alias="from")
    to: str
    rate: float
    deal_count: int


class ContactCreate(BaseModel):
    name: str = Field(min_length=1)
    email: str | None = None
    phone: str | None = None
    job_title: str | None = None
    company_name: str | None = None
    owner_id: UUID | None = None
    lifecycle_stage: LifecycleStage = LifecycleStage.LEAD
    last_contacted_at: datetime | None = None
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: str | None
    phone: str | None
    job_title: str | None
    company_name: str | None
    owner_id: UUID | None
    lifecycle_stage: LifecycleStage
    status: str
    last_contacted_at: datetime | None
    tags: list[str]
    custom_fields: dict[str, Any]
    created_at: datetime
    updated_at: datetime


class ContactProgressRequest(BaseModel):
    target_stage: LifecycleStage
    reason: str | None = None


class NextActionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    type: str
    priority: ActionPriority
    reason: str
