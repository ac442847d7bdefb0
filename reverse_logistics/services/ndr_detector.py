# ==== NDR DETECTOR SERVICE ==== #

"""
NDR detection from courier tracking updates.

Turns failed-delivery tracking updates into NDR Events. Detection is
idempotent per shipment and attempt: a repeated attempt (same attempt
number or timestamp) is a no-op, and further attempts on a shipment with an
open NDR are appended to it instead of creating a second event.
"""

import datetime as dt
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from reverse_logistics.business.access import Actor
from reverse_logistics.business.errors import DomainValidationError, NotFoundError
from reverse_logistics.business.ndr_types import is_delivered, is_failed_delivery, normalize_status
from reverse_logistics.business.state_machines import NDR_OPEN_STATUSES, NDRStatus
from reverse_logistics.integrations.ports import ShipmentSnapshot
from reverse_logistics.observability.logging import get_logger, log_business_event
from reverse_logistics.observability.metrics import ndr_attempts_recorded_total, ndr_events_detected_total
from reverse_logistics.observability.tracing import get_tracer
from reverse_logistics.storage.db import flush_or_conflict
from reverse_logistics.storage.models import NDREvent, to_naive_utc

if TYPE_CHECKING:
    from reverse_logistics.services.ndr_resolver import NDRResolver


tracer = get_tracer(__name__)
logger = get_logger(__name__)


@dataclass(frozen=True)
class TrackingUpdate:
    """Courier tracking update, status already normalized by the courier layer."""

    status: str
    timestamp: Optional[dt.datetime]
    remark: Optional[str] = None
    attempt_number: Optional[int] = None
    carrier_code: Optional[str] = None


# ==== NDR LOOKUPS ==== #


async def get_ndr_event(db: AsyncSession, ndr_id: int) -> NDREvent:
    """Load an NDR Event by id.

    Raises:
        NotFoundError: Unknown id
    """
    ndr = await db.get(NDREvent, ndr_id)
    if ndr is None:
        raise NotFoundError("ndr", ndr_id)
    return ndr


async def find_open_ndr(db: AsyncSession, shipment_id: str) -> Optional[NDREvent]:
    """The single non-terminal NDR Event of a shipment, if any."""
    result = await db.execute(
        select(NDREvent).where(
            NDREvent.shipment_id == shipment_id,
            NDREvent.status.in_([status.value for status in NDR_OPEN_STATUSES]),
        )
    )
    return result.scalars().first()


# ==== DETECTOR ==== #


class NDRDetector:
    """
    Creates and extends NDR Events from tracking updates.

    A delivered update for a shipment with an open NDR is handed to the
    resolver so the NDR closes as delivered on reattempt.
    """

    def __init__(self, resolver: Optional["NDRResolver"] = None):
        self.resolver = resolver

    @staticmethod
    def _validate(update: TrackingUpdate, shipment: Optional[ShipmentSnapshot]) -> None:
        errors = []
        if shipment is None or not shipment.shipment_id:
            errors.append({"field": "shipment_id", "message": "Shipment reference is required"})
        if update.timestamp is None:
            errors.append({"field": "timestamp", "message": "Tracking update timestamp is required"})
        if not update.status:
            errors.append({"field": "status", "message": "Tracking status is required"})
        if errors:
            raise DomainValidationError("Invalid tracking update", field_errors=errors)

    async def detect(
        self,
        db: AsyncSession,
        update: TrackingUpdate,
        shipment: Optional[ShipmentSnapshot],
    ) -> Optional[NDREvent]:
        """
        Process one tracking update.

        Args:
            db: Database session
            update: Normalized tracking update
            shipment: Shipment snapshot (id, order, company, awb, contact)

        Returns:
            Optional[NDREvent]: The created or extended NDR; ``None`` when the
            update is not a delivery failure

        Raises:
            DomainValidationError: Missing shipment reference or timestamp
        """
        self._validate(update, shipment)

        with tracer.start_as_current_span("ndr_detect") as span:
            span.set_attribute("shipment_id", shipment.shipment_id)
            span.set_attribute("tracking_status", update.status)

            if is_delivered(update.status):
                await self._close_on_delivery(db, shipment)
                return None

            if not is_failed_delivery(update.status):
                span.set_attribute("ndr_detected", False)
                return None

            timestamp = to_naive_utc(update.timestamp)
            existing = await find_open_ndr(db, shipment.shipment_id)
            if existing is not None:
                span.set_attribute("ndr_id", existing.id)
                return await self._record_attempt(db, existing, update, timestamp)

            ndr = NDREvent(
                shipment_id=shipment.shipment_id,
                order_id=shipment.order_id,
                company_id=shipment.company_id,
                customer_id=shipment.customer_id,
                awb=shipment.awb,
                raw_reason=update.remark,
                carrier_status=normalize_status(update.status),
                carrier_code=update.carrier_code,
                status=NDRStatus.DETECTED.value,
                ndr_type=None,
                attempt_count=1,
                attempts=[self._attempt_entry(update, timestamp, 1)],
                action_log=[],
                classification_history=[],
                customer_contact=dict(shipment.customer_contact or {}),
            )
            db.add(ndr)

            try:
                await db.flush()
            except IntegrityError:
                # Lost the race against a concurrent detection of the same shipment
                await db.rollback()
                existing = await find_open_ndr(db, shipment.shipment_id)
                if existing is None:
                    raise
                return await self._record_attempt(db, existing, update, timestamp)

            span.set_attribute("ndr_id", ndr.id)
            ndr_events_detected_total.labels(company=shipment.company_id).inc()
            log_business_event(
                "ndr_detected",
                shipment.company_id,
                ndr_id=ndr.id,
                shipment_id=ndr.shipment_id,
                awb=ndr.awb,
                reason=update.remark,
            )
            return ndr

    @staticmethod
    def _attempt_entry(update: TrackingUpdate, timestamp: dt.datetime, attempt: int) -> dict:
        return {
            "attempt": update.attempt_number or attempt,
            "reason": update.remark,
            "status": normalize_status(update.status),
            "carrier_code": update.carrier_code,
            "timestamp": timestamp.isoformat(),
        }

    async def _record_attempt(
        self,
        db: AsyncSession,
        ndr: NDREvent,
        update: TrackingUpdate,
        timestamp: dt.datetime,
    ) -> NDREvent:
        if ndr.has_attempt(update.attempt_number, timestamp):
            logger.debug("Duplicate delivery attempt ignored", ndr_id=ndr.id, attempt=update.attempt_number)
            return ndr

        ndr.attempt_count += 1
        ndr.append_attempt(self._attempt_entry(update, timestamp, ndr.attempt_count))
        # The latest remark drives reclassification
        if update.remark:
            ndr.raw_reason = update.remark
        if update.carrier_code:
            ndr.carrier_code = update.carrier_code
        ndr.carrier_status = normalize_status(update.status)

        await flush_or_conflict(db, "ndr")
        ndr_attempts_recorded_total.labels(company=ndr.company_id).inc()
        logger.info("Delivery attempt appended to NDR", ndr_id=ndr.id, attempt_count=ndr.attempt_count)
        return ndr

    async def _close_on_delivery(self, db: AsyncSession, shipment: ShipmentSnapshot) -> None:
        if self.resolver is None:
            return
        ndr = await find_open_ndr(db, shipment.shipment_id)
        if ndr is None:
            return
        await self.resolver.resolve(
            db,
            ndr.id,
            method="delivered_on_reattempt",
            actor=Actor.system("tracking"),
            notes="Courier reported delivery",
        )
