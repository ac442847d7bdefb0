# ==== COLLABORATOR PORTS ==== #

"""
Interfaces of the external collaborators the workflow engine calls.

Services depend only on these protocols; ``http_clients`` provides the httpx
adapters used in production and tests substitute mocks. Every call may raise
``UpstreamError``.
"""

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable


# ==== REFERENCE SNAPSHOTS ==== #


@dataclass(frozen=True)
class OrderLine:
    product_id: str
    sku: str
    quantity: int
    unit_price_cents: int
    name: Optional[str] = None
    category: Optional[str] = None


@dataclass(frozen=True)
class OrderSnapshot:
    order_id: str
    company_id: str
    customer_id: Optional[str]
    items: List[OrderLine] = field(default_factory=list)
    payment_mode: str = "prepaid"
    delivery_address: Dict[str, Any] = field(default_factory=dict)

    def line_for(self, sku: str) -> Optional[OrderLine]:
        for line in self.items:
            if line.sku == sku:
                return line
        return None


@dataclass(frozen=True)
class ShipmentSnapshot:
    shipment_id: str
    order_id: Optional[str]
    company_id: str
    customer_id: Optional[str] = None
    awb: Optional[str] = None
    courier_id: Optional[str] = None
    customer_contact: Dict[str, Any] = field(default_factory=dict)
    delivery_address: Dict[str, Any] = field(default_factory=dict)


# ==== COLLABORATOR RESULTS ==== #


@dataclass(frozen=True)
class ReverseAWB:
    awb: str
    courier_id: Optional[str] = None
    tracking_url: Optional[str] = None
    charges_cents: int = 0


@dataclass(frozen=True)
class PickupBooking:
    awb: str
    scheduled_date: dt.datetime
    tracking_url: Optional[str] = None
    courier_id: Optional[str] = None


@dataclass(frozen=True)
class RefundReceipt:
    reference: str
    transaction_id: str
    amount_cents: int
    status: str = "completed"


# ==== PROTOCOLS ==== #


@runtime_checkable
class CourierClient(Protocol):
    async def check_serviceability(self, pincode: str) -> Dict[str, Any]: ...

    async def get_rates(
        self, origin: str, destination: str, package: Dict[str, Any], payment_mode: str
    ) -> List[Dict[str, Any]]: ...

    async def create_reverse_awb(self, shipment: ShipmentSnapshot, reason: str) -> ReverseAWB: ...

    async def schedule_pickup(self, return_order: Dict[str, Any]) -> PickupBooking: ...

    async def request_reattempt(
        self, shipment: ShipmentSnapshot, address: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]: ...


@runtime_checkable
class PaymentService(Protocol):
    async def refund(self, account_id: str, amount_cents: int, reference: str) -> RefundReceipt: ...

    async def charge(self, account_id: str, amount_cents: int, reference: str) -> RefundReceipt: ...

    async def find_refund(self, reference: str) -> Optional[RefundReceipt]: ...


@runtime_checkable
class NotificationService(Protocol):
    async def notify(self, channel: str, recipient: str, template: str, data: Dict[str, Any]) -> None: ...


@runtime_checkable
class InventoryService(Protocol):
    async def adjust_stock(self, sku: str, delta: int, reason: str) -> None: ...


@runtime_checkable
class StorageService(Protocol):
    async def upload(self, data: bytes, folder: str, content_type: str) -> str: ...


@runtime_checkable
class ReferenceDirectory(Protocol):
    """Read-only query port over orders and shipments owned elsewhere."""

    async def get_shipment(self, shipment_id: str) -> Optional[ShipmentSnapshot]: ...

    async def get_order(self, order_id: str) -> Optional[OrderSnapshot]: ...

    async def find_orders_matching(self, company_id: Optional[str], text: str) -> List[str]: ...

    async def find_shipments_matching(self, company_id: Optional[str], text: str) -> List[str]: ...


@dataclass
class Collaborators:
    """Bundle of ports handed to the services."""

    courier: CourierClient
    payment: PaymentService
    notifications: NotificationService
    inventory: InventoryService
    storage: StorageService
    directory: ReferenceDirectory
