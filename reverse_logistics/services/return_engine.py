# ==== RETURN ORDER ENGINE SERVICE ==== #

"""
Customer-initiated return lifecycle.

Covers the path from the customer's request through seller review, courier
pickup, warehouse quality check and refund (or cancellation). QC is a
one-time write, and refunds are idempotent: a stable payment reference is
claimed before the payment call so a retried or crashed refund is
re-derived from the payment service instead of being paid twice.

State table::

    requested -> {approved, rejected}
    approved -> pickup_scheduled
    pickup_scheduled -> {in_transit, qc_pending, approved (pickup failed)}
    in_transit -> qc_pending -> qc_completed -> {refunded, rejected}
    any non-terminal -> cancelled
"""

import datetime as dt
import secrets
import string
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from reverse_logistics.business.access import (
    Actor,
    ActorRole,
    ensure_record_access,
    ensure_role,
)
from reverse_logistics.business.errors import (
    ConflictError,
    DomainValidationError,
    ForbiddenError,
    NotFoundError,
    UpstreamError,
)
from reverse_logistics.business.ndr_types import normalize_status
from reverse_logistics.business.quality_check import QCInput, accepted_quantities, build_qc_record
from reverse_logistics.business.reason_codes import QCResult, RefundMethod, ReturnReason
from reverse_logistics.business.refunds import (
    REFUND_OVERRIDE_ACTION,
    calculate_actual_refund,
    calculate_preliminary_refund,
    is_eligible_for_refund,
)
from reverse_logistics.business.state_machines import (
    RETURN_TERMINAL_STATUSES,
    RefundStatus,
    ReturnStatus,
    assert_transition,
)
from reverse_logistics.integrations.ports import Collaborators
from reverse_logistics.observability.logging import get_logger, log_business_event
from reverse_logistics.observability.metrics import (
    qc_results_total,
    refund_amount_cents,
    refunds_total,
    return_status_transitions_total,
    returns_created_total,
)
from reverse_logistics.observability.tracing import get_tracer
from reverse_logistics.services.analytics import StatsWindow, resolve_window, return_stats
from reverse_logistics.settings import settings
from reverse_logistics.storage.db import flush_or_conflict, paginate
from reverse_logistics.storage.models import ReturnOrder, to_naive_utc, utcnow


tracer = get_tracer(__name__)
logger = get_logger(__name__)

# Normalized courier pickup statuses and the return status they lead to
PICKUP_STATUS_MAP = {
    "PICKED_UP": ReturnStatus.IN_TRANSIT,
    "IN_TRANSIT": ReturnStatus.IN_TRANSIT,
    "OUT_FOR_DELIVERY": ReturnStatus.IN_TRANSIT,
    "DELIVERED_TO_WAREHOUSE": ReturnStatus.QC_PENDING,
    "RECEIVED": ReturnStatus.QC_PENDING,
    "PICKUP_FAILED": ReturnStatus.APPROVED,
    "FAILED": ReturnStatus.APPROVED,
}

_RETURN_ID_ALPHABET = string.ascii_uppercase + string.digits


def generate_return_id(now: dt.datetime) -> str:
    """``RET-YYYYMMDD-XXXXX`` with a random alphanumeric suffix."""
    suffix = "".join(secrets.choice(_RETURN_ID_ALPHABET) for _ in range(5))
    return f"RET-{now:%Y%m%d}-{suffix}"


# ==== REQUEST TYPES ==== #


@dataclass(frozen=True)
class ReturnItemInput:
    sku: str
    quantity: int
    unit_price_cents: Optional[int] = None


@dataclass(frozen=True)
class ReturnRequest:
    order_id: str
    return_reason: ReturnReason
    items: List[ReturnItemInput]
    refund_method: RefundMethod = RefundMethod.ORIGINAL_PAYMENT
    shipment_id: Optional[str] = None
    return_reason_text: Optional[str] = None
    customer_comments: Optional[str] = None


@dataclass(frozen=True)
class ReturnFilters:
    status: Optional[ReturnStatus] = None
    reason: Optional[ReturnReason] = None
    company_id: Optional[str] = None
    customer_id: Optional[str] = None
    start_date: Optional[dt.datetime] = None
    end_date: Optional[dt.datetime] = None
    search: Optional[str] = None
    breached_only: bool = False


@dataclass
class _ItemCheck:
    items: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)


# ==== LOOKUPS ==== #


async def get_return_order(db: AsyncSession, return_id: str) -> ReturnOrder:
    """
    Raises:
        NotFoundError: Unknown or soft-deleted return
    """
    result = await db.execute(
        select(ReturnOrder).where(ReturnOrder.return_id == return_id, ReturnOrder.is_deleted.is_(False))
    )
    return_order = result.scalars().first()
    if return_order is None:
        raise NotFoundError("return", return_id)
    return return_order


async def find_open_return(db: AsyncSession, order_id: str) -> Optional[ReturnOrder]:
    result = await db.execute(
        select(ReturnOrder).where(
            ReturnOrder.order_id == order_id,
            ReturnOrder.is_deleted.is_(False),
            ReturnOrder.status.notin_([status.value for status in RETURN_TERMINAL_STATUSES]),
        )
    )
    return result.scalars().first()


# ==== RETURN ENGINE ==== #


class ReturnEngine:
    """Drives return orders through review, pickup, QC and refund."""

    def __init__(self, collaborators: Collaborators):
        self.collaborators = collaborators

    @staticmethod
    def _timeline_entry(
        status: str,
        actor: Actor,
        now: dt.datetime,
        action: str,
        notes: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return {
            "status": status,
            "timestamp": now.isoformat(),
            "actor": actor.as_audit(),
            "action": action,
            "notes": notes,
            "metadata": metadata or {},
        }

    def _move(
        self,
        return_order: ReturnOrder,
        target: ReturnStatus,
        actor: Actor,
        now: dt.datetime,
        action: str,
        notes: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        previous = return_order.status
        assert_transition("return", previous, target)
        return_order.status = target.value
        return_order.append_timeline(self._timeline_entry(target.value, actor, now, action, notes, metadata))
        return_status_transitions_total.labels(from_status=previous, to_status=target.value).inc()

    # --► CREATE AND REVIEW

    @staticmethod
    def _check_items(request: ReturnRequest, order) -> _ItemCheck:
        check = _ItemCheck()
        if not request.items:
            check.errors.append({"field": "items", "message": "At least one item is required"})
            return check

        seen = set()
        for index, item in enumerate(request.items):
            line = order.line_for(item.sku)
            prefix = f"items[{index}]"
            if line is None:
                check.errors.append({"field": f"{prefix}.sku", "message": f"SKU '{item.sku}' is not in the order"})
                continue
            if item.sku in seen:
                check.errors.append({"field": f"{prefix}.sku", "message": f"SKU '{item.sku}' listed twice"})
                continue
            seen.add(item.sku)
            if item.quantity < 1 or item.quantity > line.quantity:
                check.errors.append({
                    "field": f"{prefix}.quantity",
                    "message": f"Quantity must be between 1 and the ordered {line.quantity}",
                })
                continue
            if item.unit_price_cents is not None and item.unit_price_cents != line.unit_price_cents:
                check.errors.append({
                    "field": f"{prefix}.unit_price_cents",
                    "message": "Unit price does not match the order price",
                })
                continue
            check.items.append({
                "product_id": line.product_id,
                "sku": line.sku,
                "name": line.name,
                "quantity": item.quantity,
                "unit_price_cents": line.unit_price_cents,
            })
        return check

    async def create_return_request(
        self,
        db: AsyncSession,
        request: ReturnRequest,
        actor: Actor,
        now: Optional[dt.datetime] = None,
    ) -> ReturnOrder:
        """
        Create a return for items of a delivered order.

        Returns:
            ReturnOrder: New return in ``requested`` with the preliminary refund

        Raises:
            NotFoundError: Unknown order
            DomainValidationError: Items not in the order, over-quantity or mispriced
            ConflictError: ``RETURN_ALREADY_EXISTS`` for an open return on the order
        """
        now = now or utcnow()
        ensure_role(actor, ActorRole.CUSTOMER, ActorRole.SELLER)

        with tracer.start_as_current_span("return_create") as span:
            span.set_attribute("order_id", request.order_id)

            order = await self.collaborators.directory.get_order(request.order_id)
            if order is None:
                raise NotFoundError("order", request.order_id)
            ensure_record_access(actor, order.company_id, order.customer_id, "order")

            check = self._check_items(request, order)
            if check.errors:
                raise DomainValidationError("Invalid return items", field_errors=check.errors)

            existing = await find_open_return(db, request.order_id)
            if existing is not None:
                raise ConflictError(
                    f"Order '{request.order_id}' already has an open return",
                    code="RETURN_ALREADY_EXISTS",
                    details={"return_id": existing.return_id},
                )

            reason = ReturnReason(request.return_reason)
            return_order = ReturnOrder(
                return_id=generate_return_id(now),
                order_id=request.order_id,
                shipment_id=request.shipment_id,
                company_id=order.company_id,
                customer_id=order.customer_id or actor.customer_id or actor.id,
                status=ReturnStatus.REQUESTED.value,
                return_reason=reason.value,
                return_reason_text=request.return_reason_text,
                customer_comments=request.customer_comments,
                items=check.items,
                refund_method=RefundMethod(request.refund_method).value,
                refund_amount_cents=calculate_preliminary_refund(check.items),
                refund_status=RefundStatus.PENDING.value,
                sla_pickup_deadline=now + dt.timedelta(hours=settings.RETURN_PICKUP_SLA_HOURS),
                sla_is_breached=False,
                is_deleted=False,
                timeline=[self._timeline_entry(ReturnStatus.REQUESTED.value, actor, now, "created",
                                               request.customer_comments)],
            )
            db.add(return_order)
            await flush_or_conflict(db, "return")

            span.set_attribute("return_id", return_order.return_id)
            returns_created_total.labels(reason=reason.value).inc()
            log_business_event(
                "return_requested",
                return_order.company_id,
                return_id=return_order.return_id,
                order_id=return_order.order_id,
                reason=reason.value,
                refund_amount_cents=return_order.refund_amount_cents,
            )
            return return_order

    async def review_return_request(
        self,
        db: AsyncSession,
        return_id: str,
        decision: str,
        actor: Actor,
        reason: Optional[str] = None,
        now: Optional[dt.datetime] = None,
    ) -> ReturnOrder:
        """
        Seller approval or rejection of a requested return.

        Raises:
            DomainValidationError: Unknown decision or rejection without a reason
            InvalidTransitionError: Return already reviewed
        """
        now = now or utcnow()
        return_order = await get_return_order(db, return_id)
        ensure_record_access(actor, return_order.company_id, return_order.customer_id, "return")
        ensure_role(actor, ActorRole.SELLER)

        decision = (decision or "").strip().lower()
        if decision not in ("approve", "approved", "reject", "rejected"):
            raise DomainValidationError.for_field("decision", "Decision must be 'approve' or 'reject'")
        approve = decision.startswith("approve")
        if not approve and not (reason and reason.strip()):
            raise DomainValidationError.for_field("reason", "A rejection reason is required")

        target = ReturnStatus.APPROVED if approve else ReturnStatus.REJECTED
        self._move(return_order, target, actor, now, "reviewed", reason)
        return_order.seller_review = {
            "status": target.value,
            "reason": reason,
            "actor": actor.as_audit(),
            "reviewed_at": now.isoformat(),
        }
        await flush_or_conflict(db, "return")

        log_business_event("return_reviewed", return_order.company_id, return_id=return_id, decision=target.value)
        return return_order

    # --► PICKUP

    async def schedule_pickup(
        self,
        db: AsyncSession,
        return_id: str,
        actor: Actor,
        now: Optional[dt.datetime] = None,
    ) -> ReturnOrder:
        """
        Book the reverse pickup with the courier.

        Raises:
            InvalidTransitionError: Return not approved
            UpstreamError: Courier booking failed; return unchanged
        """
        now = now or utcnow()
        return_order = await get_return_order(db, return_id)
        ensure_record_access(actor, return_order.company_id, return_order.customer_id, "return")
        ensure_role(actor, ActorRole.SELLER)
        assert_transition("return", return_order.status, ReturnStatus.PICKUP_SCHEDULED)

        booking = await self.collaborators.courier.schedule_pickup({
            "return_id": return_order.return_id,
            "order_id": return_order.order_id,
            "shipment_id": return_order.shipment_id,
            "company_id": return_order.company_id,
            "items": return_order.items,
        })

        return_order.pickup = {
            "status": "scheduled",
            "scheduled_date": booking.scheduled_date.isoformat() if booking.scheduled_date else None,
            "courier_id": booking.courier_id,
            "awb": booking.awb,
            "tracking_url": booking.tracking_url,
            "picked_up_at": None,
            "delivered_at": None,
            "failure_reason": None,
        }
        self._move(return_order, ReturnStatus.PICKUP_SCHEDULED, actor, now, "pickup_scheduled",
                   metadata={"awb": booking.awb})
        await flush_or_conflict(db, "return")
        return return_order

    async def update_pickup_status(
        self,
        db: AsyncSession,
        return_id: str,
        courier_status: str,
        actor: Actor,
        timestamp: Optional[dt.datetime] = None,
        remarks: Optional[str] = None,
    ) -> ReturnOrder:
        """
        Apply a courier pickup update.

        Receipt at the warehouse starts the QC window; a failed pickup sends
        the return back to ``approved`` for rescheduling. Repeating the
        current status is a no-op.

        Raises:
            DomainValidationError: Unknown courier status
            InvalidTransitionError: Update does not fit the current status
        """
        now = to_naive_utc(timestamp) if timestamp else utcnow()
        return_order = await get_return_order(db, return_id)
        ensure_record_access(actor, return_order.company_id, return_order.customer_id, "return")
        ensure_role(actor, ActorRole.SELLER, ActorRole.WAREHOUSE)

        normalized = normalize_status(courier_status)
        target = PICKUP_STATUS_MAP.get(normalized)
        if target is None:
            raise DomainValidationError.for_field("status", f"Unknown pickup status '{courier_status}'")

        pickup = dict(return_order.pickup or {})
        if return_order.status == target.value and target != ReturnStatus.APPROVED:
            return return_order

        self._move(return_order, target, actor, now, "pickup_update", remarks, {"courier_status": normalized})

        if target == ReturnStatus.IN_TRANSIT:
            pickup["status"] = "picked_up"
            pickup["picked_up_at"] = pickup.get("picked_up_at") or now.isoformat()
        elif target == ReturnStatus.QC_PENDING:
            pickup["status"] = "delivered"
            pickup["delivered_at"] = now.isoformat()
            return_order.sla_qc_deadline = now + dt.timedelta(hours=settings.RETURN_QC_SLA_HOURS)
        else:
            pickup["status"] = "failed"
            pickup["failure_reason"] = remarks or "Pickup failed"
        return_order.pickup = pickup

        await flush_or_conflict(db, "return")
        logger.info("Return pickup updated", return_id=return_id, status=return_order.status, courier_status=normalized)
        return return_order

    # --► QUALITY CHECK

    async def record_qc_result(
        self,
        db: AsyncSession,
        return_id: str,
        qc_input: QCInput,
        actor: Actor,
        now: Optional[dt.datetime] = None,
    ) -> ReturnOrder:
        """
        Record the one-time QC verdict and compute the actual refund.

        A fully rejected QC sets the refund to zero and closes the return
        as ``rejected``.

        Raises:
            ConflictError: ``QC_ALREADY_RECORDED``; state is left unchanged
            InvalidTransitionError: Return not awaiting QC
            DomainValidationError: Quantities inconsistent with the result
        """
        now = now or utcnow()
        return_order = await get_return_order(db, return_id)
        ensure_record_access(actor, return_order.company_id, return_order.customer_id, "return")
        ensure_role(actor, ActorRole.WAREHOUSE)

        if return_order.qc_completed_at is not None:
            raise ConflictError(
                "QC already recorded for this return",
                code="QC_ALREADY_RECORDED",
                details={"return_id": return_id, "result": (return_order.qc or {}).get("result")},
            )
        assert_transition("return", return_order.status, ReturnStatus.QC_COMPLETED)

        with tracer.start_as_current_span("return_record_qc") as span:
            span.set_attribute("return_id", return_id)
            span.set_attribute("result", qc_input.result.value)

            record = build_qc_record(qc_input, return_order.items, actor, now)
            return_order.qc = record
            return_order.qc_completed_at = now
            return_order.refund_amount_cents = calculate_actual_refund(return_order.items, record)
            self._move(return_order, ReturnStatus.QC_COMPLETED, actor, now, "qc_recorded", qc_input.notes,
                       {"result": record["result"]})

            if QCResult(record["result"]) == QCResult.REJECTED:
                self._move(return_order, ReturnStatus.REJECTED, actor, now, "qc_rejected", qc_input.notes)
            else:
                return_order.sla_refund_deadline = now + dt.timedelta(hours=settings.RETURN_REFUND_SLA_HOURS)
                return_order.inventory = {"status": "pending", "applied": {}, "updated_at": None,
                                          "failure_reason": None}

            await flush_or_conflict(db, "return")

        qc_results_total.labels(entity="return", result=record["result"]).inc()
        log_business_event(
            "return_qc_completed",
            return_order.company_id,
            return_id=return_id,
            result=record["result"],
            refund_amount_cents=return_order.refund_amount_cents,
        )

        if return_order.inventory is not None:
            # The verdict is kept even when the inventory service is down
            await db.commit()
            await self._restock(db, return_order, now)
        return return_order

    # --► INVENTORY

    async def _restock(self, db: AsyncSession, return_order: ReturnOrder, now: dt.datetime) -> None:
        """
        Put QC-accepted quantities back on stock, one SKU at a time.

        Each adjustment is committed as it lands so a retry only sends the
        SKUs still missing. A failing inventory call marks the sub-record
        ``failed`` and is logged; the return itself moves on.
        """
        inventory = self.collaborators.inventory
        state = dict(return_order.inventory or {})
        applied = dict(state.get("applied") or {})

        for sku, quantity in accepted_quantities(return_order.qc or {}).items():
            if quantity <= 0 or sku in applied:
                continue
            try:
                await inventory.adjust_stock(sku, quantity, f"return-restock:{return_order.return_id}:{sku}")
            except UpstreamError as e:
                return_order.inventory = {**state, "applied": applied, "status": "failed",
                                          "failure_reason": e.message}
                await flush_or_conflict(db, "return")
                await db.commit()
                logger.warning("Return restock failed", return_id=return_order.return_id, sku=sku, error=e.message)
                return
            applied[sku] = quantity
            return_order.inventory = {**state, "applied": applied}
            await flush_or_conflict(db, "return")
            await db.commit()

        return_order.inventory = {**state, "applied": applied, "status": "updated",
                                  "updated_at": now.isoformat(), "failure_reason": None}
        await flush_or_conflict(db, "return")
        logger.info("Return items restocked", return_id=return_order.return_id, skus=sorted(applied))

    async def restock_items(
        self,
        db: AsyncSession,
        return_id: str,
        actor: Actor,
        now: Optional[dt.datetime] = None,
    ) -> ReturnOrder:
        """
        Retry the restock of QC-accepted items after an inventory failure.

        Raises:
            DomainValidationError: ``NOTHING_TO_RESTOCK`` when QC accepted nothing
            ConflictError: ``INVENTORY_ALREADY_UPDATED``
        """
        now = now or utcnow()
        return_order = await get_return_order(db, return_id)
        ensure_record_access(actor, return_order.company_id, return_order.customer_id, "return")
        ensure_role(actor, ActorRole.WAREHOUSE)

        if return_order.inventory is None:
            raise DomainValidationError("No QC-accepted items to restock", code="NOTHING_TO_RESTOCK")
        if return_order.inventory.get("status") == "updated":
            raise ConflictError(
                "Inventory already updated for this return",
                code="INVENTORY_ALREADY_UPDATED",
                details={"return_id": return_id, "applied": return_order.inventory.get("applied")},
            )

        await self._restock(db, return_order, now)
        return return_order

    # --► REFUND

    async def process_refund(
        self,
        db: AsyncSession,
        return_id: str,
        actor: Actor,
        override_reason: Optional[str] = None,
        now: Optional[dt.datetime] = None,
    ) -> ReturnOrder:
        """
        Pay the refund, exactly once.

        The refund is claimed as ``processing`` under the stable reference
        ``refund:<return_id>`` and committed before the payment call. A
        refund found in ``processing`` (crash or timeout) is looked up at
        the payment service first and only re-requested under the same
        reference when the payment service has no record of it.

        Args:
            db: Database session (committed at the claim and on failure)
            return_id: Return identifier
            actor: Seller, admin or system
            override_reason: Admin override allowing a refund without a passing QC
            now: Processing time

        Returns:
            ReturnOrder: Refunded return, or the existing record if already refunded

        Raises:
            ForbiddenError: Override by a non-admin
            DomainValidationError: Not eligible, or nothing to refund
            UpstreamError: Payment failed; refund marked ``failed``, safe to retry
        """
        now = now or utcnow()
        return_order = await get_return_order(db, return_id)
        ensure_record_access(actor, return_order.company_id, return_order.customer_id, "return")
        ensure_role(actor, ActorRole.SELLER)

        if return_order.refund_status == RefundStatus.COMPLETED.value:
            return return_order

        if override_reason is not None:
            if actor.role != ActorRole.ADMIN:
                raise ForbiddenError("Only an admin can override refund eligibility")
            if not override_reason.strip():
                raise DomainValidationError.for_field("override_reason", "An override reason is required")
            return_order.append_timeline(self._timeline_entry(
                return_order.status, actor, now, REFUND_OVERRIDE_ACTION, override_reason.strip()
            ))

        if not is_eligible_for_refund(
            return_order.status, return_order.qc, return_order.timeline or [], return_order.refund_status
        ):
            raise DomainValidationError(
                "Return is not eligible for refund", code="REFUND_NOT_ELIGIBLE"
            )
        if return_order.refund_amount_cents <= 0:
            raise DomainValidationError("Refund amount must be greater than zero", code="REFUND_NOT_ELIGIBLE")

        reference = return_order.refund_reference or f"refund:{return_order.return_id}"
        account_id = f"{return_order.refund_method}:{return_order.customer_id}"

        with tracer.start_as_current_span("return_process_refund") as span:
            span.set_attribute("return_id", return_id)
            span.set_attribute("amount_cents", return_order.refund_amount_cents)

            receipt = None
            if return_order.refund_status == RefundStatus.PROCESSING.value:
                receipt = await self.collaborators.payment.find_refund(reference)
                span.set_attribute("recovered", receipt is not None)

            if receipt is None:
                return_order.refund_status = RefundStatus.PROCESSING.value
                return_order.refund_reference = reference
                return_order.refund_failure_reason = None
                await flush_or_conflict(db, "return")
                await db.commit()

                try:
                    receipt = await self.collaborators.payment.refund(
                        account_id, return_order.refund_amount_cents, reference
                    )
                except UpstreamError as e:
                    return_order.refund_status = RefundStatus.FAILED.value
                    return_order.refund_failure_reason = e.message
                    return_order.append_timeline(self._timeline_entry(
                        return_order.status, actor, now, "refund_failed", e.message
                    ))
                    await flush_or_conflict(db, "return")
                    await db.commit()
                    refunds_total.labels(status="failed").inc()
                    logger.error("Refund failed", return_id=return_id, reference=reference, error=e.message)
                    raise

            return_order.refund_status = RefundStatus.COMPLETED.value
            return_order.refund_reference = reference
            return_order.refund_transaction_id = receipt.transaction_id
            return_order.refund_completed_at = now
            self._move(return_order, ReturnStatus.REFUNDED, actor, now, "refunded",
                       metadata={"transaction_id": receipt.transaction_id, "amount_cents": receipt.amount_cents})
            await flush_or_conflict(db, "return")

        refunds_total.labels(status="completed").inc()
        refund_amount_cents.observe(return_order.refund_amount_cents)
        log_business_event(
            "refund_completed",
            return_order.company_id,
            return_id=return_id,
            transaction_id=receipt.transaction_id,
            amount_cents=return_order.refund_amount_cents,
        )
        await self._notify_refund(return_order)
        return return_order

    async def _notify_refund(self, return_order: ReturnOrder) -> None:
        """Tell the customer the refund went out; a failed notice is only logged."""
        if not return_order.shipment_id:
            return
        try:
            shipment = await self.collaborators.directory.get_shipment(return_order.shipment_id)
            contact = (shipment.customer_contact if shipment else None) or {}
            if not contact.get("phone"):
                return
            await self.collaborators.notifications.notify(
                settings.CUSTOMER_NOTIFICATION_CHANNEL,
                contact["phone"],
                "return_refunded",
                {
                    "customer_name": contact.get("name"),
                    "return_id": return_order.return_id,
                    "amount_cents": return_order.refund_amount_cents,
                    "currency": return_order.currency,
                    "refund_method": return_order.refund_method,
                    "transaction_id": return_order.refund_transaction_id,
                },
            )
        except UpstreamError as e:
            logger.warning("Refund notification failed", return_id=return_order.return_id, error=e.message)

    # --► CANCELLATION

    async def cancel_return(
        self,
        db: AsyncSession,
        return_id: str,
        actor: Actor,
        reason: str,
        now: Optional[dt.datetime] = None,
    ) -> ReturnOrder:
        """
        Cancel a return that has not reached a terminal state.

        Only the customer who owns the return, or an admin, may cancel.

        Raises:
            ForbiddenError: Caller is neither the owning customer nor an admin
            DomainValidationError: Missing reason
            ConflictError: Refund in progress
            InvalidTransitionError: Already refunded, rejected or cancelled
        """
        now = now or utcnow()
        return_order = await get_return_order(db, return_id)
        ensure_record_access(actor, return_order.company_id, return_order.customer_id, "return")
        ensure_role(actor, ActorRole.CUSTOMER)

        if not (reason and reason.strip()):
            raise DomainValidationError.for_field("reason", "A cancellation reason is required")
        if return_order.refund_status in (RefundStatus.PROCESSING.value, RefundStatus.COMPLETED.value):
            raise ConflictError("A refund is already in progress for this return", code="REFUND_IN_PROGRESS")

        self._move(return_order, ReturnStatus.CANCELLED, actor, now, "cancelled", reason)
        return_order.cancellation = {
            "cancelled_by": actor.as_audit(),
            "cancelled_at": now.isoformat(),
            "reason": reason,
        }
        await flush_or_conflict(db, "return")

        log_business_event("return_cancelled", return_order.company_id, return_id=return_id, actor=actor.id)
        return return_order

    # --► QUERIES

    async def get_return(self, db: AsyncSession, return_id: str, actor: Actor) -> ReturnOrder:
        return_order = await get_return_order(db, return_id)
        ensure_record_access(actor, return_order.company_id, return_order.customer_id, "return")
        return return_order

    async def list_returns(
        self,
        db: AsyncSession,
        actor: Actor,
        filters: ReturnFilters,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[ReturnOrder], int]:
        """Filtered, newest-first page of returns visible to ``actor``."""
        company_id = filters.company_id
        customer_id = filters.customer_id
        if actor.role == ActorRole.CUSTOMER:
            customer_id = actor.customer_id
            company_id = None
        elif not actor.is_privileged:
            company_id = actor.company_id

        stmt = select(ReturnOrder).where(ReturnOrder.is_deleted.is_(False))
        if company_id:
            stmt = stmt.where(ReturnOrder.company_id == company_id)
        if customer_id:
            stmt = stmt.where(ReturnOrder.customer_id == customer_id)
        if filters.status:
            stmt = stmt.where(ReturnOrder.status == ReturnStatus(filters.status).value)
        if filters.reason:
            stmt = stmt.where(ReturnOrder.return_reason == ReturnReason(filters.reason).value)
        if filters.start_date:
            stmt = stmt.where(ReturnOrder.created_at >= to_naive_utc(filters.start_date))
        if filters.end_date:
            stmt = stmt.where(ReturnOrder.created_at <= to_naive_utc(filters.end_date))
        if filters.breached_only:
            stmt = stmt.where(ReturnOrder.sla_is_breached.is_(True))
        if filters.search:
            text = filters.search.strip()
            order_ids = await self.collaborators.directory.find_orders_matching(company_id, text)
            pattern = f"%{text}%"
            stmt = stmt.where(or_(
                ReturnOrder.order_id.in_(order_ids),
                ReturnOrder.return_id.ilike(pattern),
                ReturnOrder.order_id.ilike(pattern),
            ))

        stmt = stmt.order_by(ReturnOrder.created_at.desc(), ReturnOrder.id.desc())
        return await paginate(db, stmt, page, limit)

    async def get_stats(self, db: AsyncSession, actor: Actor, window: StatsWindow) -> Dict[str, Any]:
        return await return_stats(db, resolve_window(actor, window))
