# ==== NDR PIPELINE SERVICE ==== #

"""
Tracking update intake and NDR queries.

Wires the detector, classifier and resolver together: a failed delivery is
detected (or appended to the open NDR), classified, and its workflow
started, all in the caller's transaction.
"""

import datetime as dt
from dataclasses import dataclass
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional, Tuple

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from reverse_logistics.business.access import (
    Actor,
    ActorRole,
    ensure_company_access,
    ensure_record_access,
    ensure_role,
)
from reverse_logistics.business.errors import NotFoundError
from reverse_logistics.business.ndr_types import NDRType
from reverse_logistics.business.state_machines import NDRStatus
from reverse_logistics.integrations.ports import Collaborators
from reverse_logistics.observability.logging import get_logger
from reverse_logistics.observability.tracing import get_tracer
from reverse_logistics.services.analytics import StatsWindow, ndr_stats, resolve_window
from reverse_logistics.services.ndr_classifier import NDRClassifier
from reverse_logistics.services.ndr_detector import NDRDetector, TrackingUpdate, get_ndr_event
from reverse_logistics.services.ndr_resolver import NDRResolver
from reverse_logistics.services.rto_engine import RTOEngine
from reverse_logistics.storage.db import get_session, paginate
from reverse_logistics.storage.models import NDREvent, to_naive_utc, utcnow


tracer = get_tracer(__name__)
logger = get_logger(__name__)


@dataclass(frozen=True)
class NDRFilters:
    status: Optional[NDRStatus] = None
    ndr_type: Optional[NDRType] = None
    company_id: Optional[str] = None
    start_date: Optional[dt.datetime] = None
    end_date: Optional[dt.datetime] = None
    search: Optional[str] = None


class NDRPipeline:
    """
    Detection, classification and workflow start for tracking updates.

    Args:
        collaborators: Ports for shipment lookup, courier and notifications
        rto_engine: Engine used by ``trigger_rto`` workflow actions
        workflow_path: Optional workflow YAML override
    """

    def __init__(
        self,
        collaborators: Collaborators,
        rto_engine: Optional[RTOEngine] = None,
        workflow_path: Optional[str] = None,
    ):
        self.collaborators = collaborators
        self.rto_engine = rto_engine or RTOEngine(collaborators)
        self.resolver = NDRResolver(collaborators, self.rto_engine, workflow_path)
        self.detector = NDRDetector(self.resolver)
        self.classifier = NDRClassifier(workflow_path)

    async def process_update(
        self,
        db: AsyncSession,
        shipment_id: str,
        update: TrackingUpdate,
        actor: Actor,
        now: Optional[dt.datetime] = None,
    ) -> Optional[NDREvent]:
        """
        Run one tracking update through detection, classification and workflow.

        Returns:
            Optional[NDREvent]: The NDR touched by the update, ``None`` when
            the update is not a delivery failure

        Raises:
            NotFoundError: Unknown shipment
            DomainValidationError: Malformed tracking update
        """
        now = now or utcnow()
        shipment = await self.collaborators.directory.get_shipment(shipment_id)
        if shipment is None:
            raise NotFoundError("shipment", shipment_id)
        ensure_company_access(actor, shipment.company_id, "shipment")

        with tracer.start_as_current_span("ndr_process_update") as span:
            span.set_attribute("shipment_id", shipment_id)
            ndr = await self.detector.detect(db, update, shipment)
            if ndr is None:
                return None

            span.set_attribute("ndr_id", ndr.id)
            if ndr.status in (NDRStatus.DETECTED.value, NDRStatus.CLASSIFYING.value, NDRStatus.IN_RESOLUTION.value):
                ndr = await self.classifier.classify(db, ndr.id, now)
                ndr = await self.resolver.start_workflow(db, ndr.id, now)
            return ndr

    async def process_batch(
        self,
        updates: List[Tuple[str, TrackingUpdate]],
        actor: Actor,
        session_factory: Callable[[], AsyncContextManager[AsyncSession]] = get_session,
    ) -> Dict[str, Any]:
        """Process ``(shipment_id, update)`` pairs, one transaction per update."""
        summary: Dict[str, Any] = {"processed": 0, "ndrs": [], "errors": []}
        for shipment_id, update in updates:
            try:
                async with session_factory() as db:
                    ndr = await self.process_update(db, shipment_id, update, actor)
            except Exception as e:
                logger.warning("Tracking update failed", shipment_id=shipment_id, error=str(e))
                summary["errors"].append({"shipment_id": shipment_id, "error": str(e)})
                continue
            summary["processed"] += 1
            if ndr is not None:
                summary["ndrs"].append(ndr.id)
        return summary

    # --► QUERIES

    async def get_ndr(self, db: AsyncSession, ndr_id: int, actor: Actor) -> NDREvent:
        ndr = await get_ndr_event(db, ndr_id)
        ensure_record_access(actor, ndr.company_id, ndr.customer_id, "ndr")
        return ndr

    async def list_ndrs(
        self,
        db: AsyncSession,
        actor: Actor,
        filters: NDRFilters,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[NDREvent], int]:
        """Filtered, newest-first page of NDR Events visible to ``actor``."""
        ensure_role(actor, ActorRole.SELLER, ActorRole.WAREHOUSE)
        company_id = filters.company_id if actor.is_privileged else actor.company_id

        stmt = select(NDREvent)
        if company_id:
            stmt = stmt.where(NDREvent.company_id == company_id)
        if filters.status:
            stmt = stmt.where(NDREvent.status == NDRStatus(filters.status).value)
        if filters.ndr_type:
            stmt = stmt.where(NDREvent.ndr_type == NDRType(filters.ndr_type).value)
        if filters.start_date:
            stmt = stmt.where(NDREvent.created_at >= to_naive_utc(filters.start_date))
        if filters.end_date:
            stmt = stmt.where(NDREvent.created_at <= to_naive_utc(filters.end_date))
        if filters.search:
            text = filters.search.strip()
            shipment_ids = await self.collaborators.directory.find_shipments_matching(company_id, text)
            pattern = f"%{text}%"
            stmt = stmt.where(or_(
                NDREvent.shipment_id.in_(shipment_ids),
                NDREvent.awb.ilike(pattern),
                NDREvent.order_id.ilike(pattern),
            ))

        stmt = stmt.order_by(NDREvent.created_at.desc(), NDREvent.id.desc())
        return await paginate(db, stmt, page, limit)

    async def get_stats(self, db: AsyncSession, actor: Actor, window: StatsWindow) -> Dict[str, Any]:
        return await ndr_stats(db, resolve_window(actor, window))
