"""Pydantic schemas for RTO Events and dispositions."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from reverse_logistics.business.reason_codes import DispositionAction, RTOReason, RTOTrigger
from reverse_logistics.business.state_machines import RTOStatus


class TriggerRTORequest(BaseModel):
    """Manual RTO trigger."""

    shipment_id: str = Field(..., min_length=1, max_length=64)
    reason: RTOReason
    trigger: RTOTrigger = RTOTrigger.MANUAL
    ndr_event_id: Optional[int] = None
    remarks: Optional[str] = Field(None, max_length=2000)

    class Config:
        """Pydantic configuration."""
        json_schema_extra = {
            "example": {
                "shipment_id": "shp-1001",
                "reason": "customer_cancellation",
                "remarks": "Customer cancelled before the second attempt",
            }
        }


class RTOStatusUpdateRequest(BaseModel):
    status: str = Field(..., min_length=1, max_length=64)
    timestamp: Optional[datetime] = None
    reverse_awb: Optional[str] = Field(None, max_length=64)


class DispositionRequest(BaseModel):
    action: DispositionAction
    notes: Optional[str] = Field(None, max_length=2000)
    override: bool = False


class DispositionSuggestionResponse(BaseModel):
    action: DispositionAction
    reason: str

    class Config:
        """Pydantic configuration."""
        from_attributes = True


class QCPhotosResponse(BaseModel):
    urls: List[str]


class RTOEventResponse(BaseModel):
    """Full RTO Event aggregate."""

    id: int
    shipment_id: str
    order_id: Optional[str] = None
    company_id: str
    customer_id: Optional[str] = None
    ndr_event_id: Optional[int] = None
    rto_reason: RTOReason
    trigger: RTOTrigger
    triggered_by: str
    triggered_at: datetime
    remarks: Optional[str] = None
    return_status: RTOStatus
    expected_return_date: datetime
    actual_return_date: Optional[datetime] = None
    reverse_awb: Optional[str] = None
    courier_id: Optional[str] = None
    rto_charges_cents: int
    charges_transaction_id: Optional[str] = None
    warehouse_notified: bool = False
    customer_notified: bool = False
    items: List[Dict[str, Any]]
    product_category: Optional[str] = None
    qc: Optional[Dict[str, Any]] = None
    qc_photos: List[str]
    qc_completed_at: Optional[datetime] = None
    disposition: Optional[Dict[str, Any]] = None
    status_history: List[Dict[str, Any]]
    created_at: datetime
    updated_at: datetime
    version: int

    class Config:
        """Pydantic configuration."""
        from_attributes = True
