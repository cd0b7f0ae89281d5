"""Attribution engine endpoints.

WHAT:
    Internal API keyed by tenant:
    - Ingest touchpoints and conversions
    - Trigger the pipeline for a conversion (inline or queued)
    - Read conversion status and per-model attribution results
    - Run a reconciliation sweep on demand

WHY:
    Order webhooks, the pixel collector and operators drive the engine over
    HTTP; scheduled work goes through the arq worker instead.

SECURITY: Protected by the X-Internal-Api-Key header (INTERNAL_API_KEY)
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from attribution_engine import schemas
from attribution_engine.deps import get_attribution_service, verify_internal_api_key
from attribution_engine.exceptions import ConversionNotFoundError
from attribution_engine.models import AttributionModelEnum
from attribution_engine.services.attribution_service import AttributionService
from attribution_engine.workers.arq_enqueue import enqueue_process_conversion

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/tenants",
    tags=["Attribution"],
    dependencies=[Depends(verify_internal_api_key)],
)


def _not_found(e: ConversionNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)


# =============================================================================
# INGESTION
# =============================================================================

@router.post(
    "/{tenant_id}/touchpoints",
    response_model=schemas.TouchpointResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a touchpoint",
)
def record_touchpoint(
    tenant_id: str,
    payload: schemas.TouchpointCreate,
    service: AttributionService = Depends(get_attribution_service),
):
    fields = payload.model_dump(exclude={"visitor_id", "occurred_at"})
    fields["touchpoint_type"] = payload.touchpoint_type.value
    touchpoint = service.record_touchpoint(tenant_id, payload.visitor_id, payload.occurred_at, **fields)
    return schemas.TouchpointResponse(
        id=touchpoint.id,
        visitor_id=touchpoint.visitor_id,
        occurred_at=touchpoint.occurred_at,
        channel=touchpoint.channel,
    )


@router.post(
    "/{tenant_id}/conversions",
    response_model=schemas.ConversionCreateResponse,
    summary="Record a conversion (idempotent per order id)",
)
def record_conversion(
    tenant_id: str,
    payload: schemas.ConversionCreate,
    service: AttributionService = Depends(get_attribution_service),
):
    conversion, created = service.record_conversion(
        tenant_id,
        order_id=payload.order_id,
        revenue_cents=payload.revenue_cents,
        occurred_at=payload.occurred_at,
        currency=payload.currency,
        visitor_id=payload.visitor_id,
        customer_id=payload.customer_id,
        email_hash=payload.email_hash,
        click_ids=payload.click_ids,
    )
    return schemas.ConversionCreateResponse(
        conversion_id=conversion.id,
        order_id=conversion.order_id,
        status=conversion.status,
        created=created,
    )


# =============================================================================
# PROCESSING
# =============================================================================

@router.post(
    "/{tenant_id}/conversions/{conversion_id}/process",
    summary="Run the attribution pipeline for a conversion",
)
async def process_conversion(
    tenant_id: str,
    conversion_id: UUID,
    payload: Optional[schemas.ProcessRequest] = None,
    service: AttributionService = Depends(get_attribution_service),
):
    payload = payload or schemas.ProcessRequest()
    try:
        if payload.enqueue:
            service.store(tenant_id).require_conversion(conversion_id)
            return await enqueue_process_conversion(tenant_id, conversion_id)
        result = await service.run_pipeline(tenant_id, conversion_id, payload.weight_overrides)
    except ConversionNotFoundError as e:
        raise _not_found(e)
    return result.to_dict()


@router.post(
    "/{tenant_id}/reconciliation",
    response_model=schemas.SweepResponse,
    summary="Run a reconciliation sweep",
)
async def run_reconciliation_sweep(
    tenant_id: str,
    payload: schemas.SweepRequest,
    service: AttributionService = Depends(get_attribution_service),
):
    date_range = None
    if payload.start or payload.end:
        if not (payload.start and payload.end):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start and end must be given together")
        date_range = (payload.start, payload.end)
    try:
        report = await service.run_reconciliation_sweep(tenant_id, payload.mode, date_range)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return report.to_dict()


# =============================================================================
# READ SIDE
# =============================================================================

@router.get(
    "/{tenant_id}/conversions/{conversion_id}",
    response_model=schemas.ConversionStatusResponse,
    summary="Conversion status and forwarding state",
)
def get_conversion_status(
    tenant_id: str,
    conversion_id: UUID,
    service: AttributionService = Depends(get_attribution_service),
):
    try:
        return service.get_conversion_status(tenant_id, conversion_id)
    except ConversionNotFoundError as e:
        raise _not_found(e)


@router.get(
    "/{tenant_id}/conversions/{conversion_id}/attribution/{model}",
    response_model=schemas.AttributionResultResponse,
    summary="Attribution result for one model",
)
def get_attribution(
    tenant_id: str,
    conversion_id: UUID,
    model: AttributionModelEnum,
    service: AttributionService = Depends(get_attribution_service),
):
    try:
        result = service.get_attribution(tenant_id, conversion_id, model)
    except ConversionNotFoundError as e:
        raise _not_found(e)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No {model.value} result for conversion {conversion_id}",
        )
    return schemas.AttributionResultResponse(
        conversion_id=result.conversion_id,
        model=result.model,
        attribution_window=result.attribution_window,
        total_touchpoints=result.total_touchpoints,
        calculated_at=result.calculated_at,
        allocations=result.allocations,
    )
