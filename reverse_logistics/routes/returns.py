# ==== RETURN ORDER ROUTES ==== #

"""
Return order endpoints.

Request parsing and response shaping only; every rule lives in
``ReturnEngine``. Writes return the full aggregate, lists return the
``{data, pagination}`` envelope.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from reverse_logistics.business.access import Actor
from reverse_logistics.business.reason_codes import ReturnReason
from reverse_logistics.business.state_machines import ReturnStatus
from reverse_logistics.middleware.actor import get_actor
from reverse_logistics.observability.tracing import get_tracer
from reverse_logistics.routes.dependencies import PageParams, get_return_engine
from reverse_logistics.schemas.common import PaginatedResponse, paginated
from reverse_logistics.schemas.returns import (
    CancelReturnRequest,
    CreateReturnRequest,
    PickupStatusRequest,
    QCResultRequest,
    RefundRequest,
    ReturnOrderResponse,
    ReviewReturnRequest,
)
from reverse_logistics.services.analytics import StatsWindow
from reverse_logistics.services.return_engine import ReturnEngine, ReturnFilters
from reverse_logistics.storage.db import get_db_session


router = APIRouter()
tracer = get_tracer(__name__)


def _response(return_order) -> ReturnOrderResponse:
    return ReturnOrderResponse.model_validate(return_order)


# ==== CREATE AND QUERY ==== #


@router.post("", response_model=ReturnOrderResponse, status_code=201)
async def create_return(
    body: CreateReturnRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    engine: ReturnEngine = Depends(get_return_engine),
) -> ReturnOrderResponse:
    """Create a return request for items of an order."""
    return _response(await engine.create_return_request(db, body.to_domain(), actor))


@router.get("", response_model=PaginatedResponse[ReturnOrderResponse])
async def list_returns(
    status: Optional[ReturnStatus] = Query(None),
    reason: Optional[ReturnReason] = Query(None),
    company_id: Optional[str] = Query(None),
    customer_id: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    search: Optional[str] = Query(None, max_length=100, description="Return id, order id or customer text"),
    breached_only: bool = Query(False),
    paging: PageParams = Depends(),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    engine: ReturnEngine = Depends(get_return_engine),
) -> Dict[str, Any]:
    """
    List returns visible to the caller, newest first.

    Customers only see their own returns; sellers and warehouse staff only
    their company's.
    """
    with tracer.start_as_current_span("list_returns") as span:
        span.set_attribute("page", paging.page)
        filters = ReturnFilters(
            status=status,
            reason=reason,
            company_id=company_id,
            customer_id=customer_id,
            start_date=start_date,
            end_date=end_date,
            search=search,
            breached_only=breached_only,
        )
        rows, total = await engine.list_returns(db, actor, filters, paging.page, paging.limit)
        span.set_attribute("total", total)
        return paginated(rows, total, paging.page, paging.limit, _response)


@router.get("/stats", response_model=Dict[str, Any])
async def return_stats(
    company_id: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    engine: ReturnEngine = Depends(get_return_engine),
) -> Dict[str, Any]:
    return await engine.get_stats(db, actor, StatsWindow(company_id, start_date, end_date))


@router.get("/{return_id}", response_model=ReturnOrderResponse)
async def get_return(
    return_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    engine: ReturnEngine = Depends(get_return_engine),
) -> ReturnOrderResponse:
    return _response(await engine.get_return(db, return_id, actor))


# ==== LIFECYCLE ==== #


@router.post("/{return_id}/review", response_model=ReturnOrderResponse)
async def review_return(
    return_id: str,
    body: ReviewReturnRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    engine: ReturnEngine = Depends(get_return_engine),
) -> ReturnOrderResponse:
    """Seller approval or rejection; rejection needs a reason."""
    return _response(await engine.review_return_request(db, return_id, body.decision, actor, body.reason))


@router.post("/{return_id}/pickup", response_model=ReturnOrderResponse)
async def schedule_pickup(
    return_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    engine: ReturnEngine = Depends(get_return_engine),
) -> ReturnOrderResponse:
    return _response(await engine.schedule_pickup(db, return_id, actor))


@router.post("/{return_id}/pickup/status", response_model=ReturnOrderResponse)
async def update_pickup_status(
    return_id: str,
    body: PickupStatusRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    engine: ReturnEngine = Depends(get_return_engine),
) -> ReturnOrderResponse:
    """Courier pickup update (picked up, in transit, received, failed)."""
    return _response(
        await engine.update_pickup_status(db, return_id, body.status, actor, body.timestamp, body.remarks)
    )


@router.post("/{return_id}/qc", response_model=ReturnOrderResponse)
async def record_qc(
    return_id: str,
    body: QCResultRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    engine: ReturnEngine = Depends(get_return_engine),
) -> ReturnOrderResponse:
    """One-time QC verdict; a second call answers 409 ``QC_ALREADY_RECORDED``."""
    return _response(await engine.record_qc_result(db, return_id, body.to_domain(), actor))


@router.post("/{return_id}/restock", response_model=ReturnOrderResponse)
async def restock_items(
    return_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    engine: ReturnEngine = Depends(get_return_engine),
) -> ReturnOrderResponse:
    """Retry putting QC-accepted items back on stock after an inventory failure."""
    return _response(await engine.restock_items(db, return_id, actor))


@router.post("/{return_id}/refund", response_model=ReturnOrderResponse)
async def process_refund(
    return_id: str,
    body: Optional[RefundRequest] = None,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    engine: ReturnEngine = Depends(get_return_engine),
) -> ReturnOrderResponse:
    """
    Pay the refund. Safe to retry: a completed refund is returned as is.
    """
    override_reason = body.override_reason if body else None
    return _response(await engine.process_refund(db, return_id, actor, override_reason))


@router.post("/{return_id}/cancel", response_model=ReturnOrderResponse)
async def cancel_return(
    return_id: str,
    body: CancelReturnRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db_session),
    engine: ReturnEngine = Depends(get_return_engine),
) -> ReturnOrderResponse:
    return _response(await engine.cancel_return(db, return_id, actor, body.reason))
