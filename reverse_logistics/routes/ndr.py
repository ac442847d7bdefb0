# ==== NDR ROUTES ==== #

"""
Tracking ingest and NDR Event endpoints.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from reverse_logistics.business.access import Actor, ActorRole, ensure_role
from reverse_logistics.business.ndr_types import NDRType
from reverse_logistics.business.state_machines import NDRStatus
from reverse_logistics.middleware.actor import get_actor
from reverse_logistics.observability.tracing import get_tracer
from reverse_logistics.routes.dependencies import PageParams, get_ndr_pipeline
from reverse_logistics.schemas.common import PaginatedResponse, paginated
from reverse_logistics.schemas.ndr import (
    EscalateNDRRequest,
    NDREventResponse,
    NDRInputRequest,
    ResolveNDRRequest,
    TrackingIngestResponse,
    TrackingUpdateRequest,
)
from reverse_logistics.services.analytics import StatsWindow
from reverse_logistics.services.ndr_pipeline import NDRFilters, NDRPipeline
from reverse_logistics.storage.db import get_db_session


router = APIRouter()
tracer = get_tracer(__name__)


def _response(ndr) -> NDREventResponse:
    return NDREventResponse.model_validate(ndr)


@router.post("/tracking", response_model=TrackingIngestResponse)
async def ingest_tracking_update(
    body: TrackingUpdateRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    pipeline: NDRPipeline = Depends(get_ndr_pipeline),
) -> TrackingIngestResponse:
    """
    Ingest one courier tracking update.

    Failed deliveries open (or extend) the shipment's NDR, classify it and
    start its workflow; a delivery closes an open NDR. Replaying the same
    attempt is a no-op.
    """
    with tracer.start_as_current_span("ingest_tracking_update") as span:
        span.set_attribute("shipment_id", body.shipment_id)
        ndr = await pipeline.process_update(db, body.shipment_id, body.to_domain(), actor)
        span.set_attribute("ndr_detected", ndr is not None)
        return TrackingIngestResponse(ndr_detected=ndr is not None, ndr=_response(ndr) if ndr else None)


@router.get("", response_model=PaginatedResponse[NDREventResponse])
async def list_ndrs(
    status: Optional[NDRStatus] = Query(None),
    ndr_type: Optional[NDRType] = Query(None),
    company_id: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    paging: PageParams = Depends(),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    pipeline: NDRPipeline = Depends(get_ndr_pipeline),
) -> Dict[str, Any]:
    filters = NDRFilters(
        status=status,
        ndr_type=ndr_type,
        company_id=company_id,
        start_date=start_date,
        end_date=end_date,
        search=search,
    )
    rows, total = await pipeline.list_ndrs(db, actor, filters, paging.page, paging.limit)
    return paginated(rows, total, paging.page, paging.limit, _response)


@router.get("/stats", response_model=Dict[str, Any])
async def ndr_stats(
    company_id: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    pipeline: NDRPipeline = Depends(get_ndr_pipeline),
) -> Dict[str, Any]:
    return await pipeline.get_stats(db, actor, StatsWindow(company_id, start_date, end_date))


@router.get("/{ndr_id}", response_model=NDREventResponse)
async def get_ndr(
    ndr_id: int,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    pipeline: NDRPipeline = Depends(get_ndr_pipeline),
) -> NDREventResponse:
    return _response(await pipeline.get_ndr(db, ndr_id, actor))


@router.post("/{ndr_id}/classify", response_model=NDREventResponse)
async def classify_ndr(
    ndr_id: int,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    pipeline: NDRPipeline = Depends(get_ndr_pipeline),
) -> NDREventResponse:
    """Re-run classification; a changed type restarts the workflow."""
    ensure_role(actor, ActorRole.SELLER, ActorRole.WAREHOUSE)
    await pipeline.get_ndr(db, ndr_id, actor)
    await pipeline.classifier.classify(db, ndr_id)
    return _response(await pipeline.resolver.start_workflow(db, ndr_id))


@router.post("/{ndr_id}/inputs", response_model=NDREventResponse)
async def record_ndr_input(
    ndr_id: int,
    body: NDRInputRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    pipeline: NDRPipeline = Depends(get_ndr_pipeline),
) -> NDREventResponse:
    """Customer or warehouse input (address update, reattempt, confirmation, RTO request)."""
    ndr = await pipeline.resolver.record_input(db, ndr_id, body.input_type, actor, body.payload)
    return _response(ndr)


@router.post("/{ndr_id}/resolve", response_model=NDREventResponse)
async def resolve_ndr(
    ndr_id: int,
    body: ResolveNDRRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    pipeline: NDRPipeline = Depends(get_ndr_pipeline),
) -> NDREventResponse:
    return _response(await pipeline.resolver.resolve(db, ndr_id, body.method, actor, body.notes))


@router.post("/{ndr_id}/escalate", response_model=NDREventResponse)
async def escalate_ndr(
    ndr_id: int,
    body: EscalateNDRRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    pipeline: NDRPipeline = Depends(get_ndr_pipeline),
) -> NDREventResponse:
    return _response(await pipeline.resolver.escalate(db, ndr_id, body.reason, actor))
