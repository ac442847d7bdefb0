"""Pydantic schemas for return orders."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from reverse_logistics.business.quality_check import QCInput, QCItemInput
from reverse_logistics.business.reason_codes import QCResult, RefundMethod, ReturnReason
from reverse_logistics.business.state_machines import RefundStatus, ReturnStatus
from reverse_logistics.services.return_engine import ReturnItemInput, ReturnRequest


class ReturnItemRequest(BaseModel):
    sku: str = Field(..., min_length=1, max_length=64)
    quantity: int = Field(..., ge=1)
    unit_price_cents: Optional[int] = Field(None, ge=0)


class CreateReturnRequest(BaseModel):
    """Customer return request."""

    order_id: str = Field(..., min_length=1, max_length=64)
    shipment_id: Optional[str] = Field(None, max_length=64)
    return_reason: ReturnReason
    return_reason_text: Optional[str] = Field(None, max_length=2000)
    customer_comments: Optional[str] = Field(None, max_length=2000)
    items: List[ReturnItemRequest] = Field(..., min_length=1)
    refund_method: RefundMethod = RefundMethod.ORIGINAL_PAYMENT

    def to_domain(self) -> ReturnRequest:
        return ReturnRequest(
            order_id=self.order_id,
            shipment_id=self.shipment_id,
            return_reason=self.return_reason,
            return_reason_text=self.return_reason_text,
            customer_comments=self.customer_comments,
            items=[ReturnItemInput(item.sku, item.quantity, item.unit_price_cents) for item in self.items],
            refund_method=self.refund_method,
        )

    class Config:
        """Pydantic configuration."""
        json_schema_extra = {
            "example": {
                "order_id": "ord-20250816-0042",
                "return_reason": "size_issue",
                "customer_comments": "Runs one size small",
                "items": [{"sku": "TSHIRT-M-BLUE", "quantity": 1, "unit_price_cents": 79900}],
                "refund_method": "wallet",
            }
        }


class ReviewReturnRequest(BaseModel):
    decision: Literal["approve", "reject"]
    reason: Optional[str] = Field(None, max_length=2000)


class PickupStatusRequest(BaseModel):
    """Courier pickup update."""

    status: str = Field(..., min_length=1, max_length=64)
    timestamp: Optional[datetime] = None
    remarks: Optional[str] = Field(None, max_length=2000)


class QCItemRequest(BaseModel):
    sku: str
    quantity_accepted: int = Field(..., ge=0)
    quantity_rejected: int = Field(..., ge=0)
    condition: Optional[str] = Field(None, max_length=200)
    notes: Optional[str] = Field(None, max_length=2000)


class QCResultRequest(BaseModel):
    """Inspector verdict; items may be omitted for approved or rejected."""

    result: QCResult
    items: List[QCItemRequest] = Field(default_factory=list)
    notes: Optional[str] = Field(None, max_length=2000)
    photos: List[str] = Field(default_factory=list)

    def to_domain(self) -> QCInput:
        return QCInput(
            result=self.result,
            items=[
                QCItemInput(item.sku, item.quantity_accepted, item.quantity_rejected, item.condition, item.notes)
                for item in self.items
            ],
            notes=self.notes,
            photos=list(self.photos),
        )


class RefundRequest(BaseModel):
    override_reason: Optional[str] = Field(None, max_length=2000)


class CancelReturnRequest(BaseModel):
    reason: str = Field(..., max_length=2000)

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("A cancellation reason is required")
        return value.strip()


class ReturnOrderResponse(BaseModel):
    """Full return order aggregate."""

    id: int
    return_id: str
    order_id: str
    shipment_id: Optional[str] = None
    company_id: str
    customer_id: str
    status: ReturnStatus
    seller_review: Optional[Dict[str, Any]] = None
    return_reason: ReturnReason
    return_reason_text: Optional[str] = None
    customer_comments: Optional[str] = None
    items: List[Dict[str, Any]]
    refund_method: RefundMethod
    refund_amount_cents: int
    currency: str
    pickup: Optional[Dict[str, Any]] = None
    qc: Optional[Dict[str, Any]] = None
    inventory: Optional[Dict[str, Any]] = None
    refund: Dict[str, Any]
    refund_status: RefundStatus
    sla: Dict[str, Any]
    cancellation: Optional[Dict[str, Any]] = None
    timeline: List[Dict[str, Any]]
    created_at: datetime
    updated_at: datetime
    version: int

    class Config:
        """Pydantic configuration."""
        from_attributes = True
