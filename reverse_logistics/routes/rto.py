# ==== RTO ROUTES ==== #

"""
RTO Event and disposition endpoints.

Thin layer over ``RTOEngine`` and ``DispositionEngine``: parses requests,
maps aggregates to responses and leaves every rule to the services.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Query, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from reverse_logistics.business.access import Actor
from reverse_logistics.business.quality_check import PhotoUpload
from reverse_logistics.business.reason_codes import RTOReason, RTOTrigger
from reverse_logistics.business.state_machines import RTOStatus
from reverse_logistics.middleware.actor import get_actor
from reverse_logistics.observability.tracing import get_tracer
from reverse_logistics.routes.dependencies import PageParams, get_disposition_engine, get_rto_engine
from reverse_logistics.schemas.common import PaginatedResponse, paginated
from reverse_logistics.schemas.returns import QCResultRequest
from reverse_logistics.schemas.rto import (
    DispositionRequest,
    DispositionSuggestionResponse,
    QCPhotosResponse,
    RTOEventResponse,
    RTOStatusUpdateRequest,
    TriggerRTORequest,
)
from reverse_logistics.services.analytics import StatsWindow
from reverse_logistics.services.disposition_engine import DispositionEngine
from reverse_logistics.services.rto_engine import RTOEngine, RTOFilters
from reverse_logistics.storage.db import get_db_session


router = APIRouter()
tracer = get_tracer(__name__)


def _response(rto) -> RTOEventResponse:
    return RTOEventResponse.model_validate(rto)


# ==== QUERIES ==== #


@router.get("", response_model=PaginatedResponse[RTOEventResponse])
async def list_rtos(
    status: Optional[RTOStatus] = Query(None),
    reason: Optional[RTOReason] = Query(None),
    trigger: Optional[RTOTrigger] = Query(None),
    company_id: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    search: Optional[str] = Query(None, max_length=100, description="Shipment, order or AWB text"),
    paging: PageParams = Depends(),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    engine: RTOEngine = Depends(get_rto_engine),
) -> Dict[str, Any]:
    """List RTO Events of the caller's company, newest first."""
    with tracer.start_as_current_span("list_rtos") as span:
        span.set_attribute("page", paging.page)
        filters = RTOFilters(
            status=status,
            reason=reason,
            trigger=trigger,
            company_id=company_id,
            start_date=start_date,
            end_date=end_date,
            search=search,
        )
        rows, total = await engine.list_rtos(db, actor, filters, paging.page, paging.limit)
        span.set_attribute("total", total)
        return paginated(rows, total, paging.page, paging.limit, _response)


@router.get("/pending", response_model=PaginatedResponse[RTOEventResponse])
async def pending_rtos(
    company_id: Optional[str] = Query(None),
    paging: PageParams = Depends(),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    engine: RTOEngine = Depends(get_rto_engine),
) -> Dict[str, Any]:
    """QC queue: RTOs received at the warehouse, oldest first."""
    rows, total = await engine.get_pending_rtos(db, actor, paging.page, paging.limit, company_id)
    return paginated(rows, total, paging.page, paging.limit, _response)


@router.get("/stats", response_model=Dict[str, Any])
async def rto_stats(
    company_id: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    engine: RTOEngine = Depends(get_rto_engine),
) -> Dict[str, Any]:
    return await engine.get_stats(db, actor, StatsWindow(company_id, start_date, end_date))


@router.get("/{rto_id}", response_model=RTOEventResponse)
async def get_rto(
    rto_id: int,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    engine: RTOEngine = Depends(get_rto_engine),
) -> RTOEventResponse:
    return _response(await engine.get_rto(db, rto_id, actor))


# ==== LIFECYCLE ==== #


@router.post("", response_model=RTOEventResponse, status_code=201)
async def trigger_rto(
    body: TriggerRTORequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    engine: RTOEngine = Depends(get_rto_engine),
) -> RTOEventResponse:
    """
    Trigger an RTO for a shipment.

    Answers 409 ``RTO_ALREADY_ACTIVE`` when the shipment already has a
    non-disposed RTO and 429 with ``Retry-After`` when rate limited.
    """
    rto = await engine.trigger_rto(
        db,
        shipment_id=body.shipment_id,
        reason=body.reason,
        trigger=body.trigger,
        actor=actor,
        source_ndr_id=body.ndr_event_id,
        remarks=body.remarks,
    )
    return _response(rto)


@router.post("/{rto_id}/status", response_model=RTOEventResponse)
async def update_rto_status(
    rto_id: int,
    body: RTOStatusUpdateRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    engine: RTOEngine = Depends(get_rto_engine),
) -> RTOEventResponse:
    return _response(await engine.update_status(db, rto_id, body.status, actor, body.timestamp, body.reverse_awb))


@router.post("/{rto_id}/qc/photos", response_model=QCPhotosResponse)
async def upload_qc_photos(
    rto_id: int,
    files: List[UploadFile] = File(...),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    engine: RTOEngine = Depends(get_rto_engine),
) -> QCPhotosResponse:
    """Attach QC evidence photos (JPEG, PNG, WebP or HEIC)."""
    photos = [
        PhotoUpload(
            filename=upload.filename or "photo",
            content_type=upload.content_type or "application/octet-stream",
            data=await upload.read(),
        )
        for upload in files
    ]
    return QCPhotosResponse(urls=await engine.upload_qc_photos(db, rto_id, photos, actor))


@router.post("/{rto_id}/qc", response_model=RTOEventResponse)
async def record_qc(
    rto_id: int,
    body: QCResultRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    engine: RTOEngine = Depends(get_rto_engine),
) -> RTOEventResponse:
    return _response(await engine.record_qc_result(db, rto_id, body.to_domain(), actor))


# ==== DISPOSITION ==== #


@router.get("/{rto_id}/disposition/suggestion", response_model=DispositionSuggestionResponse)
async def suggest_disposition(
    rto_id: int,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    engine: DispositionEngine = Depends(get_disposition_engine),
) -> DispositionSuggestionResponse:
    return DispositionSuggestionResponse.model_validate(await engine.suggest_disposition(db, rto_id, actor))


@router.post("/{rto_id}/disposition", response_model=RTOEventResponse)
async def execute_disposition(
    rto_id: int,
    body: DispositionRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    engine: DispositionEngine = Depends(get_disposition_engine),
) -> RTOEventResponse:
    """Restock, scrap or return to seller; moves the RTO to ``disposed``."""
    rto = await engine.execute_disposition(db, rto_id, body.action, actor, body.notes, body.override)
    return _response(rto)
