"""SQLAlchemy models for the reverse-logistics engine."""

import datetime as dt
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    String, Integer, JSON, Boolean, Text, DateTime, Index, text
)
from sqlalchemy.orm import Mapped, mapped_column

from reverse_logistics.storage.db import Base


def utcnow() -> dt.datetime:
    """Naive UTC timestamp used for every stored datetime."""
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(dt.timezone.utc).replace(tzinfo=None)


# JSON columns are never mutated in place; the helpers below reassign the
# list so the ORM sees the change.
def _appended(current: Optional[List[Dict[str, Any]]], entry: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [*(current or []), entry]


_NDR_OPEN = "status IN ('detected', 'classifying', 'in_resolution', 'escalated')"
_RTO_ACTIVE = "return_status <> 'disposed'"


class NDREvent(Base):
    """Failed delivery attempt(s) of one shipment and their resolution."""

    __tablename__ = "ndr_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shipment_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=True, index=True)
    company_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=True, index=True)
    awb: Mapped[str] = mapped_column(String(64), nullable=True, index=True)

    # Failure reason and classification
    raw_reason: Mapped[str] = mapped_column(Text, nullable=True)
    carrier_status: Mapped[str] = mapped_column(String(64), nullable=True)
    carrier_code: Mapped[str] = mapped_column(String(64), nullable=True)
    ndr_type: Mapped[str] = mapped_column(String(32), nullable=True, index=True)
    classification_history: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    classified_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=True)

    status: Mapped[str] = mapped_column(String(16), default="detected", nullable=False)
    resolution_deadline: Mapped[dt.datetime] = mapped_column(DateTime, nullable=True)

    # Attempts and workflow progress
    attempt_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    attempts: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    action_log: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    customer_contact: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=True)
    next_action_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_action_due_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=True)
    awaiting_input: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Outcome
    resolved_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=True)
    resolution_method: Mapped[str] = mapped_column(String(32), nullable=True)
    resolved_by: Mapped[str] = mapped_column(String(64), nullable=True)
    resolution_notes: Mapped[str] = mapped_column(Text, nullable=True)
    escalated_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=True)
    escalation_reason: Mapped[str] = mapped_column(Text, nullable=True)

    # Auto-RTO hand-off, claimed with a lease by the deadline monitor
    rto_pending: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    rto_claimed_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=True)
    rto_event_id: Mapped[int] = mapped_column(Integer, nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index(
            "uq_ndr_events_open_shipment", "shipment_id",
            unique=True,
            postgresql_where=text(_NDR_OPEN),
            sqlite_where=text(_NDR_OPEN),
        ),
        Index("ix_ndr_events_status_deadline", "status", "resolution_deadline"),
        Index("ix_ndr_events_next_action", "status", "next_action_due_at"),
        Index("ix_ndr_events_company_created", "company_id", "created_at"),
    )

    def append_attempt(self, entry: Dict[str, Any]) -> None:
        self.attempts = _appended(self.attempts, entry)

    def append_action(self, entry: Dict[str, Any]) -> None:
        self.action_log = _appended(self.action_log, entry)

    def append_classification(self, entry: Dict[str, Any]) -> None:
        self.classification_history = _appended(self.classification_history, entry)

    def has_attempt(self, attempt_number: Optional[int], timestamp: dt.datetime) -> bool:
        """Whether this attempt (by number or timestamp) is already recorded."""
        stamp = timestamp.isoformat()
        for entry in self.attempts or []:
            if attempt_number is not None and entry.get("attempt") == attempt_number:
                return True
            if entry.get("timestamp") == stamp:
                return True
        return False


class RTOEvent(Base):
    """Return-to-origin of an undelivered shipment."""

    __tablename__ = "rto_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shipment_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=True, index=True)
    company_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=True, index=True)
    ndr_event_id: Mapped[int] = mapped_column(Integer, nullable=True, index=True)

    rto_reason: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    trigger: Mapped[str] = mapped_column(String(16), nullable=False)
    triggered_by: Mapped[str] = mapped_column(String(64), nullable=False)
    triggered_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    remarks: Mapped[str] = mapped_column(Text, nullable=True)

    return_status: Mapped[str] = mapped_column(String(16), default="initiated", nullable=False)
    expected_return_date: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    actual_return_date: Mapped[dt.datetime] = mapped_column(DateTime, nullable=True)
    reverse_awb: Mapped[str] = mapped_column(String(64), nullable=True, index=True)
    courier_id: Mapped[str] = mapped_column(String(64), nullable=True)
    rto_charges_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    charges_transaction_id: Mapped[str] = mapped_column(String(128), nullable=True)
    warehouse_notified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    customer_notified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    items: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    product_category: Mapped[str] = mapped_column(String(64), nullable=True)

    # QC is written once; qc_completed_at marks it
    qc: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=True)
    qc_photos: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    qc_completed_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=True)

    disposition: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=True)
    # Claim and per-SKU progress of a disposition being executed
    disposition_progress: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=True)
    status_history: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index(
            "uq_rto_events_active_shipment", "shipment_id",
            unique=True,
            postgresql_where=text(_RTO_ACTIVE),
            sqlite_where=text(_RTO_ACTIVE),
        ),
        Index("ix_rto_events_company_status", "company_id", "return_status"),
        Index("ix_rto_events_company_triggered", "company_id", "triggered_at"),
    )

    def append_history(self, entry: Dict[str, Any]) -> None:
        self.status_history = _appended(self.status_history, entry)


class ReturnOrder(Base):
    """Customer-initiated return and its refund."""

    __tablename__ = "return_orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    return_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    shipment_id: Mapped[str] = mapped_column(String(64), nullable=True, index=True)
    company_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    status: Mapped[str] = mapped_column(String(20), default="requested", nullable=False)
    seller_review: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=True)

    return_reason: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    return_reason_text: Mapped[str] = mapped_column(Text, nullable=True)
    customer_comments: Mapped[str] = mapped_column(Text, nullable=True)
    items: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False)

    refund_method: Mapped[str] = mapped_column(String(20), nullable=False)
    refund_amount_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="INR", nullable=False)

    pickup: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=True)

    qc: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=True)
    qc_completed_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=True)
    # Restock of QC-accepted items: status, per-SKU applied quantities, failure reason
    inventory: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=True)

    # Refund sub-record, flat so claims can guard on it
    refund_status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    refund_reference: Mapped[str] = mapped_column(String(64), nullable=True)
    refund_transaction_id: Mapped[str] = mapped_column(String(128), nullable=True)
    refund_completed_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=True)
    refund_failure_reason: Mapped[str] = mapped_column(Text, nullable=True)

    # SLA record
    sla_pickup_deadline: Mapped[dt.datetime] = mapped_column(DateTime, nullable=True)
    sla_qc_deadline: Mapped[dt.datetime] = mapped_column(DateTime, nullable=True)
    sla_refund_deadline: Mapped[dt.datetime] = mapped_column(DateTime, nullable=True)
    sla_is_breached: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sla_breached_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=True)
    sla_breached_stage: Mapped[str] = mapped_column(String(16), nullable=True)
    # One flag per stage so a later stage still breaches after an earlier one
    sla_pickup_breached: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sla_qc_breached: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sla_refund_breached: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    cancellation: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=True)
    timeline: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_return_orders_company_status", "company_id", "status"),
        Index("ix_return_orders_company_created", "company_id", "created_at"),
        Index("ix_return_orders_pickup_sla", "status", "sla_pickup_breached", "sla_pickup_deadline"),
    )

    def append_timeline(self, entry: Dict[str, Any]) -> None:
        self.timeline = _appended(self.timeline, entry)

    @property
    def sla(self) -> Dict[str, Any]:
        return {
            "pickup_deadline": self.sla_pickup_deadline,
            "qc_deadline": self.sla_qc_deadline,
            "refund_deadline": self.sla_refund_deadline,
            "is_breached": self.sla_is_breached,
            "breached_at": self.sla_breached_at,
            "breached_stage": self.sla_breached_stage,
            "breached_stages": [
                stage for stage, flag in (
                    ("pickup", self.sla_pickup_breached),
                    ("qc", self.sla_qc_breached),
                    ("refund", self.sla_refund_breached),
                ) if flag
            ],
        }

    @property
    def refund(self) -> Dict[str, Any]:
        return {
            "status": self.refund_status,
            "reference": self.refund_reference,
            "transaction_id": self.refund_transaction_id,
            "completed_at": self.refund_completed_at,
            "failure_reason": self.refund_failure_reason,
        }


# ==== END OF MODELS ==== #
