"""Pydantic schemas for tracking ingest and NDR Events."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from reverse_logistics.business.ndr_types import NDRInputType, NDRType
from reverse_logistics.business.state_machines import NDRStatus
from reverse_logistics.services.ndr_detector import TrackingUpdate
from reverse_logistics.storage.models import to_naive_utc


class TrackingUpdateRequest(BaseModel):
    """Courier tracking update for one shipment."""

    shipment_id: str = Field(..., min_length=1, max_length=64)
    status: str = Field(..., min_length=1, max_length=64)
    timestamp: datetime
    remark: Optional[str] = Field(None, max_length=2000)
    attempt_number: Optional[int] = Field(None, ge=1)
    carrier_code: Optional[str] = Field(None, max_length=64)

    def to_domain(self) -> TrackingUpdate:
        return TrackingUpdate(
            status=self.status,
            timestamp=to_naive_utc(self.timestamp),
            remark=self.remark,
            attempt_number=self.attempt_number,
            carrier_code=self.carrier_code,
        )

    class Config:
        """Pydantic configuration."""
        json_schema_extra = {
            "example": {
                "shipment_id": "shp-1001",
                "status": "UNDELIVERED",
                "timestamp": "2025-08-16T10:00:00Z",
                "remark": "Customer not available, phone switched off",
                "attempt_number": 1,
            }
        }


class NDRInputRequest(BaseModel):
    input_type: NDRInputType
    payload: Dict[str, Any] = Field(default_factory=dict)


class ResolveNDRRequest(BaseModel):
    method: str = Field("manual", min_length=1, max_length=32)
    notes: Optional[str] = Field(None, max_length=2000)


class EscalateNDRRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class NDREventResponse(BaseModel):
    """Full NDR Event aggregate."""

    id: int
    shipment_id: str
    order_id: Optional[str] = None
    company_id: str
    customer_id: Optional[str] = None
    awb: Optional[str] = None
    raw_reason: Optional[str] = None
    carrier_status: Optional[str] = None
    carrier_code: Optional[str] = None
    ndr_type: Optional[NDRType] = None
    classification_history: List[Dict[str, Any]]
    classified_at: Optional[datetime] = None
    status: NDRStatus
    resolution_deadline: Optional[datetime] = None
    attempt_count: int
    attempts: List[Dict[str, Any]]
    action_log: List[Dict[str, Any]]
    customer_contact: Optional[Dict[str, Any]] = None
    next_action_index: int
    next_action_due_at: Optional[datetime] = None
    awaiting_input: bool
    resolved_at: Optional[datetime] = None
    resolution_method: Optional[str] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None
    escalated_at: Optional[datetime] = None
    escalation_reason: Optional[str] = None
    rto_pending: bool
    rto_event_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime
    version: int

    class Config:
        """Pydantic configuration."""
        from_attributes = True


class TrackingIngestResponse(BaseModel):
    ndr_detected: bool
    ndr: Optional[NDREventResponse] = None
