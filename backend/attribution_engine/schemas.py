"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from attribution_engine.models import AttributionModelEnum, TouchpointTypeEnum
from attribution_engine.services.reconciliation import SweepMode


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])


class TouchpointCreate(BaseModel):
    """A marketing interaction to append for a visitor."""

    visitor_id: str = Field(..., min_length=1, description="Anonymous visitor id from the pixel")
    occurred_at: datetime = Field(..., description="When the interaction happened (UTC)")
    channel: str = Field("direct", description="Channel: meta, google, tiktok, email, organic, direct...")
    touchpoint_type: TouchpointTypeEnum = TouchpointTypeEnum.click
    platform: Optional[str] = None
    campaign: Optional[str] = None
    adset_id: Optional[str] = None
    ad_id: Optional[str] = None
    click_ids: Dict[str, str] = Field(default_factory=dict, description="platform -> click id (fbclid, gclid, ttclid)")
    customer_id: Optional[str] = None
    email_hash: Optional[str] = Field(None, description="SHA256 of the normalized email")
    source_url: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    session_id: Optional[str] = None


class TouchpointResponse(BaseModel):
    id: UUID
    visitor_id: str
    occurred_at: datetime
    channel: str


class ConversionCreate(BaseModel):
    """A purchase to attribute. Idempotent per order id."""

    order_id: str = Field(..., min_length=1)
    revenue_cents: int = Field(..., ge=0, description="Revenue in minor units of `currency`")
    currency: str = Field("USD", min_length=3, max_length=3)
    occurred_at: datetime
    visitor_id: Optional[str] = None
    customer_id: Optional[str] = None
    email_hash: Optional[str] = None
    click_ids: Dict[str, str] = Field(default_factory=dict)


class ConversionCreateResponse(BaseModel):
    conversion_id: UUID
    order_id: str
    status: str
    created: bool


class ProcessRequest(BaseModel):
    """Optional inputs for a pipeline run."""

    weight_overrides: Optional[Dict[str, float]] = Field(
        None,
        description="touchpoint_id -> weight from an external model; enables data_driven",
    )
    enqueue: bool = Field(False, description="Queue the run on the worker instead of running inline")


class ForwardingStatus(BaseModel):
    platform: str
    status: str
    attempts: int
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None


class ConversionStatusResponse(BaseModel):
    conversion_id: UUID
    order_id: str
    status: str
    attempts: int
    last_error: Optional[str] = None
    requires_review: bool = False
    attributed_at: Optional[datetime] = None
    forwarding: List[ForwardingStatus] = Field(default_factory=list)


class AllocationResponse(BaseModel):
    touchpoint_id: str
    channel: str
    credit_fraction: float
    revenue_cents: int
    position: int


class AttributionResultResponse(BaseModel):
    conversion_id: UUID
    model: AttributionModelEnum
    attribution_window: str
    total_touchpoints: int
    calculated_at: datetime
    allocations: List[AllocationResponse]


class SweepRequest(BaseModel):
    mode: SweepMode = SweepMode.stuck
    start: Optional[datetime] = Field(None, description="Recalculate mode: range start (inclusive)")
    end: Optional[datetime] = Field(None, description="Recalculate mode: range end (exclusive)")


class SweepResponse(BaseModel):
    tenant_id: str
    mode: SweepMode
    scanned: int
    redriven: int
    recalculated: int
    quarantined: int
    skipped: int
    errors: int
    statuses: Dict[str, int]
    error_details: List[Dict[str, Any]]
