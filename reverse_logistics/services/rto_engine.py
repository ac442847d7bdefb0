# ==== RTO ENGINE SERVICE ==== #

"""
Return-to-origin lifecycle.

Creates RTO Events (automatically from an escalated NDR or manually) and
advances them through courier transit, warehouse receipt and a one-time
quality check. Triggers are rate limited per company and per shipment. The
new row claims the shipment before the reverse AWB is booked and the RTO
charge is taken from the company wallet; if either upstream call fails the
claim is dropped again, so no partial event survives.

State machine::

    initiated -> in_transit -> qc_pending -> qc_completed -> disposed
    initiated -> qc_pending   (courier reports arrival directly)
"""

import datetime as dt
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import redis.asyncio as redis
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from reverse_logistics.business.access import (
    Actor,
    ActorRole,
    ensure_company_access,
    ensure_record_access,
    ensure_role,
)
from reverse_logistics.business.errors import (
    ConflictError,
    DomainValidationError,
    NotFoundError,
    RateLimitedError,
    UpstreamError,
)
from reverse_logistics.business.ndr_types import normalize_status
from reverse_logistics.business.quality_check import PhotoUpload, QCInput, build_qc_record, validate_photos
from reverse_logistics.business.reason_codes import RTOReason, RTOTrigger, rto_reason_description
from reverse_logistics.business.state_machines import NDRStatus, RTOStatus, assert_transition
from reverse_logistics.integrations.ports import Collaborators, RefundReceipt, ReverseAWB, ShipmentSnapshot
from reverse_logistics.observability.logging import get_logger, log_business_event
from reverse_logistics.observability.metrics import (
    ndr_outcomes_total,
    qc_results_total,
    rate_limited_total,
    rto_rejections_total,
    rto_status_transitions_total,
    rto_triggered_total,
)
from reverse_logistics.observability.tracing import get_tracer
from reverse_logistics.resilience.circuit_breaker import CircuitBreakerError
from reverse_logistics.resilience.rate_limiter import RateLimiter, RedisRateLimiter
from reverse_logistics.services.analytics import StatsWindow, resolve_window, rto_stats
from reverse_logistics.services.ndr_detector import find_open_ndr, get_ndr_event
from reverse_logistics.settings import settings
from reverse_logistics.storage.db import flush_or_conflict, paginate
from reverse_logistics.storage.models import NDREvent, RTOEvent, to_naive_utc, utcnow
from reverse_logistics.storage.redis import get_redis_client


tracer = get_tracer(__name__)
logger = get_logger(__name__)

Limiter = Union[RateLimiter, RedisRateLimiter]

# Normalized courier statuses and the RTO status they confirm
COURIER_STATUS_MAP = {
    "PICKED_UP": RTOStatus.IN_TRANSIT,
    "IN_TRANSIT": RTOStatus.IN_TRANSIT,
    "RTO_IN_TRANSIT": RTOStatus.IN_TRANSIT,
    "DELIVERED_TO_WAREHOUSE": RTOStatus.QC_PENDING,
    "RECEIVED": RTOStatus.QC_PENDING,
    "RTO_DELIVERED": RTOStatus.QC_PENDING,
}

# Targets reachable through update_status; QC and disposition have their own operations
_STATUS_UPDATE_TARGETS = frozenset({RTOStatus.IN_TRANSIT, RTOStatus.QC_PENDING})


@dataclass(frozen=True)
class RTOFilters:
    status: Optional[RTOStatus] = None
    reason: Optional[RTOReason] = None
    trigger: Optional[RTOTrigger] = None
    company_id: Optional[str] = None
    start_date: Optional[dt.datetime] = None
    end_date: Optional[dt.datetime] = None
    search: Optional[str] = None


def build_rate_limiter(max_requests: int, window_seconds: float) -> Limiter:
    """Limiter for the configured backend (``memory`` or ``redis``)."""
    if settings.RTO_RATE_LIMIT_BACKEND == "redis":
        return RedisRateLimiter(max_requests, window_seconds, get_redis_client, prefix="rto")
    return RateLimiter(max_requests, window_seconds)


async def get_rto_event(db: AsyncSession, rto_id: int) -> RTOEvent:
    """
    Raises:
        NotFoundError: Unknown RTO id
    """
    rto = await db.get(RTOEvent, rto_id)
    if rto is None:
        raise NotFoundError("rto", rto_id)
    return rto


async def find_active_rto(db: AsyncSession, shipment_id: str) -> Optional[RTOEvent]:
    result = await db.execute(
        select(RTOEvent).where(
            RTOEvent.shipment_id == shipment_id,
            RTOEvent.return_status != RTOStatus.DISPOSED.value,
        )
    )
    return result.scalars().first()


class RTOEngine:
    """
    Creates and advances RTO Events.

    Args:
        collaborators: Courier, directory and storage ports
        company_limiter: Trigger limiter keyed by company
        shipment_limiter: Trigger limiter keyed by shipment
    """

    def __init__(
        self,
        collaborators: Collaborators,
        company_limiter: Optional[Limiter] = None,
        shipment_limiter: Optional[Limiter] = None,
    ):
        self.collaborators = collaborators
        self.company_limiter = company_limiter or build_rate_limiter(
            settings.RTO_COMPANY_RATE_LIMIT, settings.RTO_COMPANY_RATE_WINDOW_SECONDS
        )
        self.shipment_limiter = shipment_limiter or build_rate_limiter(
            settings.RTO_SHIPMENT_RATE_LIMIT, settings.RTO_SHIPMENT_RATE_WINDOW_SECONDS
        )

    # --► TRIGGER

    async def _check_rate_limit(self, limiter: Limiter, scope: str, key: str) -> None:
        try:
            decision = await limiter.hit(f"{scope}:{key}")
        except (redis.RedisError, CircuitBreakerError) as e:
            raise UpstreamError("redis", "rate_limit", str(e)) from e

        if not decision.allowed:
            rate_limited_total.labels(scope=scope).inc()
            rto_rejections_total.labels(reason="rate_limited").inc()
            raise RateLimitedError(
                f"Too many RTO triggers for this {scope}; retry in {decision.retry_after:.0f}s",
                retry_after=decision.retry_after,
                scope=scope,
            )

    async def _source_ndr(
        self, db: AsyncSession, shipment_id: str, source_ndr_id: Optional[int]
    ) -> Optional[NDREvent]:
        if source_ndr_id is None:
            return await find_open_ndr(db, shipment_id)
        ndr = await get_ndr_event(db, source_ndr_id)
        if ndr.shipment_id != shipment_id:
            raise DomainValidationError.for_field("ndr_event_id", "NDR belongs to a different shipment")
        assert_transition("ndr", ndr.status, NDRStatus.RTO_TRIGGERED)
        return ndr

    async def _release_claim(self, db: AsyncSession, rto: RTOEvent) -> None:
        await db.delete(rto)
        await db.flush()

    async def _deduct_charges(self, shipment: ShipmentSnapshot, reverse: ReverseAWB) -> Optional[RefundReceipt]:
        if reverse.charges_cents <= 0:
            return None
        return await self.collaborators.payment.charge(
            f"wallet:{shipment.company_id}",
            reverse.charges_cents,
            f"rto-charge:{shipment.shipment_id}:{reverse.awb}",
        )

    async def _notify_trigger(
        self, db: AsyncSession, rto: RTOEvent, shipment: ShipmentSnapshot, reason: RTOReason
    ) -> None:
        """Tell the warehouse an RTO is inbound and the customer why. Failed notices are only logged."""
        notifications = self.collaborators.notifications
        try:
            await notifications.notify(
                settings.WAREHOUSE_NOTIFICATION_CHANNEL,
                settings.WAREHOUSE_NOTIFICATION_RECIPIENT,
                "rto_incoming",
                {
                    "rto_id": rto.id,
                    "awb": shipment.awb,
                    "reverse_awb": rto.reverse_awb,
                    "expected_return_date": rto.expected_return_date.isoformat(),
                    "rto_reason": reason.value,
                    "requires_qc": True,
                },
            )
            rto.warehouse_notified = True
        except UpstreamError as e:
            logger.warning("RTO warehouse notification failed", rto_id=rto.id, error=e.message)

        contact = shipment.customer_contact or {}
        if contact.get("phone"):
            try:
                await notifications.notify(
                    settings.CUSTOMER_NOTIFICATION_CHANNEL,
                    contact["phone"],
                    "rto_initiated",
                    {
                        "customer_name": contact.get("name"),
                        "order_id": rto.order_id,
                        "reason": rto_reason_description(reason.value),
                        "reverse_awb": rto.reverse_awb,
                    },
                )
                rto.customer_notified = True
            except UpstreamError as e:
                logger.warning("RTO customer notification failed", rto_id=rto.id, error=e.message)

        await flush_or_conflict(db, "rto")

    async def trigger_rto(
        self,
        db: AsyncSession,
        shipment_id: str,
        reason: RTOReason | str,
        trigger: RTOTrigger | str,
        actor: Actor,
        source_ndr_id: Optional[int] = None,
        remarks: Optional[str] = None,
        now: Optional[dt.datetime] = None,
    ) -> RTOEvent:
        """
        Start a return to origin for a shipment.

        Args:
            db: Database session
            shipment_id: Shipment being returned
            reason: RTO reason code
            trigger: ``auto`` (deadline monitor, workflow) or ``manual``
            actor: Who triggers it
            source_ndr_id: NDR the RTO supersedes; defaults to the open NDR
            remarks: Free-text note
            now: Trigger time

        Returns:
            RTOEvent: New event in ``initiated``

        Raises:
            NotFoundError: Unknown shipment
            DomainValidationError: Unknown reason
            ConflictError: ``RTO_ALREADY_ACTIVE``
            RateLimitedError: Company or shipment trigger limit reached
            UpstreamError: Reverse AWB or wallet charge failed; nothing persisted
        """
        try:
            reason = RTOReason(reason)
        except ValueError as e:
            raise DomainValidationError.for_field("reason", f"Unknown RTO reason '{reason}'") from e
        trigger = RTOTrigger(trigger)
        now = now or utcnow()
        ensure_role(actor, ActorRole.SELLER, ActorRole.WAREHOUSE)

        with tracer.start_as_current_span("rto_trigger") as span:
            span.set_attribute("shipment_id", shipment_id)
            span.set_attribute("reason", reason.value)
            span.set_attribute("trigger", trigger.value)

            shipment = await self.collaborators.directory.get_shipment(shipment_id)
            if shipment is None:
                raise NotFoundError("shipment", shipment_id)
            ensure_company_access(actor, shipment.company_id, "shipment")

            if await find_active_rto(db, shipment_id) is not None:
                rto_rejections_total.labels(reason="already_active").inc()
                raise ConflictError(
                    f"Shipment '{shipment_id}' already has an active RTO",
                    code="RTO_ALREADY_ACTIVE",
                    details={"shipment_id": shipment_id},
                )

            ndr = await self._source_ndr(db, shipment_id, source_ndr_id)

            await self._check_rate_limit(self.company_limiter, "company", shipment.company_id)
            await self._check_rate_limit(self.shipment_limiter, "shipment", shipment_id)

            items: List[dict] = []
            category = None
            if shipment.order_id:
                order = await self.collaborators.directory.get_order(shipment.order_id)
                if order is not None:
                    items = [
                        {
                            "sku": line.sku,
                            "product_id": line.product_id,
                            "quantity": line.quantity,
                            "unit_price_cents": line.unit_price_cents,
                        }
                        for line in order.items
                    ]
                    category = next((line.category for line in order.items if line.category), None)

            # The row claims the shipment before any upstream booking
            rto = RTOEvent(
                shipment_id=shipment_id,
                order_id=shipment.order_id,
                company_id=shipment.company_id,
                customer_id=shipment.customer_id,
                ndr_event_id=ndr.id if ndr is not None else None,
                rto_reason=reason.value,
                trigger=trigger.value,
                triggered_by=actor.id,
                triggered_at=now,
                remarks=remarks,
                return_status=RTOStatus.INITIATED.value,
                expected_return_date=now + dt.timedelta(days=settings.RTO_EXPECTED_RETURN_DAYS),
                courier_id=shipment.courier_id,
                rto_charges_cents=0,
                items=items,
                product_category=category,
                qc_photos=[],
                status_history=[{
                    "from": None,
                    "to": RTOStatus.INITIATED.value,
                    "actor": actor.as_audit(),
                    "timestamp": now.isoformat(),
                    "notes": remarks,
                }],
            )
            db.add(rto)
            try:
                await flush_or_conflict(db, "rto")
            except ConflictError as e:
                rto_rejections_total.labels(reason="already_active").inc()
                raise ConflictError(
                    f"Shipment '{shipment_id}' already has an active RTO",
                    code="RTO_ALREADY_ACTIVE",
                    details={"shipment_id": shipment_id},
                ) from e

            try:
                reverse = await self.collaborators.courier.create_reverse_awb(shipment, reason.value)
            except UpstreamError:
                rto_rejections_total.labels(reason="courier_failure").inc()
                await self._release_claim(db, rto)
                raise
            try:
                receipt = await self._deduct_charges(shipment, reverse)
            except UpstreamError:
                rto_rejections_total.labels(reason="charge_failure").inc()
                await self._release_claim(db, rto)
                raise

            rto.reverse_awb = reverse.awb
            rto.courier_id = reverse.courier_id or shipment.courier_id
            rto.rto_charges_cents = reverse.charges_cents
            rto.charges_transaction_id = receipt.transaction_id if receipt else None
            await flush_or_conflict(db, "rto")

            if ndr is not None:
                ndr.status = NDRStatus.RTO_TRIGGERED.value
                ndr.rto_event_id = rto.id
                ndr.rto_pending = False
                ndr.next_action_due_at = None
                await flush_or_conflict(db, "ndr")
                ndr_outcomes_total.labels(outcome="rto_triggered", ndr_type=ndr.ndr_type or "unclassified").inc()

            span.set_attribute("rto_id", rto.id)
            rto_triggered_total.labels(trigger=trigger.value, reason=reason.value).inc()
            log_business_event(
                "rto_triggered",
                rto.company_id,
                rto_id=rto.id,
                shipment_id=shipment_id,
                ndr_id=rto.ndr_event_id,
                reason=reason.value,
                trigger=trigger.value,
                reverse_awb=rto.reverse_awb,
            )

            await self._notify_trigger(db, rto, shipment, reason)
            return rto

    # --► STATUS UPDATES

    def _move(self, rto: RTOEvent, target: RTOStatus, actor: Actor, now: dt.datetime, **extra) -> None:
        previous = rto.return_status
        assert_transition("rto", previous, target)
        rto.return_status = target.value
        rto.append_history({
            "from": previous,
            "to": target.value,
            "actor": actor.as_audit(),
            "timestamp": now.isoformat(),
            **extra,
        })
        rto_status_transitions_total.labels(from_status=previous, to_status=target.value).inc()

    async def update_status(
        self,
        db: AsyncSession,
        rto_id: int,
        status: str,
        actor: Actor,
        timestamp: Optional[dt.datetime] = None,
        reverse_awb: Optional[str] = None,
    ) -> RTOEvent:
        """
        Apply a courier confirmation or explicit status change.

        A repeated confirmation of the current status is a no-op.

        Raises:
            DomainValidationError: Unknown status, or in_transit without a reverse AWB
            InvalidTransitionError: Move not allowed from the current status
        """
        now = to_naive_utc(timestamp) if timestamp else utcnow()
        rto = await get_rto_event(db, rto_id)
        ensure_company_access(actor, rto.company_id, "rto")
        ensure_role(actor, ActorRole.SELLER, ActorRole.WAREHOUSE)

        courier_status = normalize_status(status)
        target = COURIER_STATUS_MAP.get(courier_status)
        if target is None:
            try:
                target = RTOStatus(status.strip().lower())
            except ValueError as e:
                raise DomainValidationError.for_field("status", f"Unknown RTO status '{status}'") from e
            if target not in _STATUS_UPDATE_TARGETS:
                raise DomainValidationError.for_field(
                    "status", f"'{target.value}' is set by the QC and disposition operations"
                )

        if rto.return_status == target.value:
            return rto

        if reverse_awb:
            rto.reverse_awb = reverse_awb
        if target == RTOStatus.IN_TRANSIT and not rto.reverse_awb:
            raise DomainValidationError.for_field("reverse_awb", "A reverse AWB is required before transit")

        self._move(rto, target, actor, now, courier_status=courier_status)
        if target == RTOStatus.QC_PENDING:
            rto.actual_return_date = now

        await flush_or_conflict(db, "rto")
        logger.info("RTO status updated", rto_id=rto.id, status=rto.return_status, courier_status=courier_status)
        return rto

    # --► QUALITY CHECK

    async def upload_qc_photos(
        self,
        db: AsyncSession,
        rto_id: int,
        files: Sequence[PhotoUpload],
        actor: Actor,
    ) -> List[str]:
        """
        Store QC evidence photos and attach their URLs to the RTO.

        Raises:
            DomainValidationError: Too many, empty, oversized or non-image files
            ConflictError: QC already recorded
            UpstreamError: Storage upload failed
        """
        rto = await get_rto_event(db, rto_id)
        ensure_company_access(actor, rto.company_id, "rto")
        ensure_role(actor, ActorRole.WAREHOUSE, ActorRole.SELLER)
        if rto.qc_completed_at is not None:
            raise ConflictError("QC already recorded for this RTO", code="QC_ALREADY_RECORDED")

        existing = list(rto.qc_photos or [])
        validate_photos(files, len(existing), settings.QC_MAX_PHOTOS, settings.QC_MAX_PHOTO_BYTES)

        with tracer.start_as_current_span("rto_upload_qc_photos") as span:
            span.set_attribute("rto_id", rto_id)
            span.set_attribute("photo_count", len(files))
            urls = [
                await self.collaborators.storage.upload(photo.data, f"rto-qc/{rto_id}", photo.content_type)
                for photo in files
            ]

        rto.qc_photos = existing + urls
        await flush_or_conflict(db, "rto")
        return urls

    async def record_qc_result(
        self,
        db: AsyncSession,
        rto_id: int,
        qc_input: QCInput,
        actor: Actor,
        now: Optional[dt.datetime] = None,
    ) -> RTOEvent:
        """
        Record the one-time QC verdict and move to ``qc_completed``.

        Raises:
            ConflictError: ``QC_ALREADY_RECORDED``; state is left unchanged
            InvalidTransitionError: RTO not yet received at the warehouse
            DomainValidationError: Quantities inconsistent with the result
        """
        now = now or utcnow()
        rto = await get_rto_event(db, rto_id)
        ensure_company_access(actor, rto.company_id, "rto")
        ensure_role(actor, ActorRole.WAREHOUSE)

        if rto.qc_completed_at is not None:
            raise ConflictError(
                "QC already recorded for this RTO",
                code="QC_ALREADY_RECORDED",
                details={"rto_id": rto_id, "result": (rto.qc or {}).get("result")},
            )
        assert_transition("rto", rto.return_status, RTOStatus.QC_COMPLETED)

        with tracer.start_as_current_span("rto_record_qc") as span:
            span.set_attribute("rto_id", rto_id)
            span.set_attribute("result", qc_input.result.value)

            rto.qc = build_qc_record(qc_input, rto.items or [], actor, now, photos=rto.qc_photos or [])
            rto.qc_completed_at = now
            self._move(rto, RTOStatus.QC_COMPLETED, actor, now, qc_result=qc_input.result.value)
            await flush_or_conflict(db, "rto")

        qc_results_total.labels(entity="rto", result=qc_input.result.value).inc()
        log_business_event("rto_qc_completed", rto.company_id, rto_id=rto.id, result=qc_input.result.value)
        return rto

    # --► QUERIES

    async def get_rto(self, db: AsyncSession, rto_id: int, actor: Actor) -> RTOEvent:
        rto = await get_rto_event(db, rto_id)
        ensure_record_access(actor, rto.company_id, rto.customer_id, "rto")
        return rto

    def _scope(self, actor: Actor, company_id: Optional[str]) -> Optional[str]:
        ensure_role(actor, ActorRole.SELLER, ActorRole.WAREHOUSE)
        if actor.is_privileged:
            return company_id
        return actor.company_id

    async def list_rtos(
        self,
        db: AsyncSession,
        actor: Actor,
        filters: RTOFilters,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[RTOEvent], int]:
        """Filtered, newest-first page of RTO Events visible to ``actor``."""
        company_id = self._scope(actor, filters.company_id)
        stmt = select(RTOEvent)
        if company_id:
            stmt = stmt.where(RTOEvent.company_id == company_id)
        if filters.status:
            stmt = stmt.where(RTOEvent.return_status == RTOStatus(filters.status).value)
        if filters.reason:
            stmt = stmt.where(RTOEvent.rto_reason == RTOReason(filters.reason).value)
        if filters.trigger:
            stmt = stmt.where(RTOEvent.trigger == RTOTrigger(filters.trigger).value)
        if filters.start_date:
            stmt = stmt.where(RTOEvent.triggered_at >= to_naive_utc(filters.start_date))
        if filters.end_date:
            stmt = stmt.where(RTOEvent.triggered_at <= to_naive_utc(filters.end_date))
        if filters.search:
            text = filters.search.strip()
            shipment_ids = await self.collaborators.directory.find_shipments_matching(company_id, text)
            pattern = f"%{text}%"
            stmt = stmt.where(or_(
                RTOEvent.shipment_id.in_(shipment_ids),
                RTOEvent.shipment_id.ilike(pattern),
                RTOEvent.order_id.ilike(pattern),
                RTOEvent.reverse_awb.ilike(pattern),
            ))

        stmt = stmt.order_by(RTOEvent.triggered_at.desc(), RTOEvent.id.desc())
        return await paginate(db, stmt, page, limit)

    async def get_pending_rtos(
        self,
        db: AsyncSession,
        actor: Actor,
        page: int = 1,
        limit: int = 20,
        company_id: Optional[str] = None,
    ) -> Tuple[List[RTOEvent], int]:
        """QC queue: RTOs received at the warehouse, oldest arrival first."""
        company_id = self._scope(actor, company_id)
        stmt = select(RTOEvent).where(RTOEvent.return_status == RTOStatus.QC_PENDING.value)
        if company_id:
            stmt = stmt.where(RTOEvent.company_id == company_id)
        stmt = stmt.order_by(RTOEvent.actual_return_date.asc(), RTOEvent.id.asc())
        return await paginate(db, stmt, page, limit)

    async def get_stats(self, db: AsyncSession, actor: Actor, window: StatsWindow) -> dict:
        return await rto_stats(db, resolve_window(actor, window))
