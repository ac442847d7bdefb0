# ==== COLLABORATOR HTTP ADAPTERS ==== #

"""
httpx adapters for the courier, payment, notification, inventory, storage
and order-directory collaborators.

Each call runs inside the collaborator's circuit breaker with tenacity
retries for transient failures (network errors, 5xx, 429). Anything that
still fails surfaces as ``UpstreamError`` so services never see transport
exceptions.
"""

import datetime as dt
import functools
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import httpx

from reverse_logistics.business.errors import UpstreamError
from reverse_logistics.integrations.ports import (
    Collaborators,
    OrderLine,
    OrderSnapshot,
    PickupBooking,
    RefundReceipt,
    ReverseAWB,
    ShipmentSnapshot,
)
from reverse_logistics.observability.metrics import (
    collaborator_latency_seconds,
    collaborator_requests_total,
)
from reverse_logistics.observability.tracing import get_tracer
from reverse_logistics.resilience.circuit_breaker import CircuitBreakerError
from reverse_logistics.resilience.decorators import collaborator_resilient
from reverse_logistics.resilience.retry_policies import is_transient_http_error
from reverse_logistics.settings import settings


tracer = get_tracer(__name__)

T = TypeVar("T")


def upstream_call(service: str, operation: str):
    """Resilient collaborator call with metrics and error translation.

    Raises:
        UpstreamError: Open circuit, exhausted retries or non-retryable HTTP error
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        resilient = collaborator_resilient(service, operation)(func)

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            status = "success"
            start = time.perf_counter()

            with tracer.start_as_current_span(f"{service}.{operation}") as span:
                span.set_attribute("collaborator.service", service)
                span.set_attribute("collaborator.operation", operation)
                try:
                    return await resilient(*args, **kwargs)

                except CircuitBreakerError as e:
                    status = "circuit_open"
                    raise UpstreamError(service, operation, str(e), retryable=True) from e

                except httpx.HTTPStatusError as e:
                    status = f"http_{e.response.status_code}"
                    span.set_attribute("http.status_code", e.response.status_code)
                    raise UpstreamError(
                        service, operation,
                        f"HTTP {e.response.status_code}",
                        retryable=is_transient_http_error(e),
                    ) from e

                except httpx.HTTPError as e:
                    status = "transport_error"
                    raise UpstreamError(service, operation, type(e).__name__, retryable=True) from e

                finally:
                    span.set_attribute("collaborator.status", status)
                    collaborator_requests_total.labels(
                        service=service, operation=operation, status=status
                    ).inc()
                    collaborator_latency_seconds.labels(
                        service=service, operation=operation
                    ).observe(time.perf_counter() - start)

        return wrapper

    return decorator


class _HTTPCollaborator:
    """Shared httpx client setup."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout or settings.COLLABORATOR_TIMEOUT_SECONDS,
        )

    async def _json(self, method: str, path: str, **kwargs) -> Any:
        response = await self._client.request(method, path, **kwargs)
        response.raise_for_status()
        if not response.content:
            return None
        return response.json()

    async def aclose(self) -> None:
        await self._client.aclose()


def _parse_datetime(value: Optional[str]) -> Optional[dt.datetime]:
    if not value:
        return None
    parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(dt.timezone.utc).replace(tzinfo=None)
    return parsed


# ==== COURIER ==== #


class HTTPCourierClient(_HTTPCollaborator):
    """Courier aggregator gateway."""

    @upstream_call("courier", "check_serviceability")
    async def check_serviceability(self, pincode: str) -> Dict[str, Any]:
        return await self._json("GET", f"/serviceability/{pincode}")

    @upstream_call("courier", "get_rates")
    async def get_rates(
        self, origin: str, destination: str, package: Dict[str, Any], payment_mode: str
    ) -> List[Dict[str, Any]]:
        body = await self._json("POST", "/rates", json={
            "origin": origin,
            "destination": destination,
            "package": package,
            "payment_mode": payment_mode,
        })
        return body.get("rates", [])

    @upstream_call("courier", "create_reverse_awb")
    async def create_reverse_awb(self, shipment: ShipmentSnapshot, reason: str) -> ReverseAWB:
        body = await self._json("POST", "/reverse-shipments", json={
            "shipment_id": shipment.shipment_id,
            "awb": shipment.awb,
            "courier_id": shipment.courier_id,
            "reason": reason,
        })
        return ReverseAWB(
            awb=body["awb"],
            courier_id=body.get("courier_id"),
            tracking_url=body.get("tracking_url"),
            charges_cents=int(body.get("charges_cents", 0)),
        )

    @upstream_call("courier", "schedule_pickup")
    async def schedule_pickup(self, return_order: Dict[str, Any]) -> PickupBooking:
        body = await self._json("POST", "/pickups", json=return_order)
        return PickupBooking(
            awb=body["awb"],
            scheduled_date=_parse_datetime(body["scheduled_date"]),
            tracking_url=body.get("tracking_url"),
            courier_id=body.get("courier_id"),
        )

    @upstream_call("courier", "request_reattempt")
    async def request_reattempt(
        self, shipment: ShipmentSnapshot, address: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"awb": shipment.awb}
        if address:
            payload["address"] = address
        return await self._json("POST", f"/shipments/{shipment.shipment_id}/reattempt", json=payload) or {}


# ==== PAYMENT ==== #


class HTTPPaymentService(_HTTPCollaborator):
    """Wallet / payment gateway. ``reference`` makes refunds and charges idempotent upstream."""

    @upstream_call("payment", "refund")
    async def refund(self, account_id: str, amount_cents: int, reference: str) -> RefundReceipt:
        body = await self._json(
            "POST", "/refunds",
            json={"account_id": account_id, "amount_cents": amount_cents, "reference": reference},
            headers={"Idempotency-Key": reference},
        )
        return RefundReceipt(
            reference=reference,
            transaction_id=body["transaction_id"],
            amount_cents=int(body.get("amount_cents", amount_cents)),
            status=body.get("status", "completed"),
        )

    @upstream_call("payment", "charge")
    async def charge(self, account_id: str, amount_cents: int, reference: str) -> RefundReceipt:
        body = await self._json(
            "POST", "/charges",
            json={"account_id": account_id, "amount_cents": amount_cents, "reference": reference},
            headers={"Idempotency-Key": reference},
        )
        return RefundReceipt(
            reference=reference,
            transaction_id=body["transaction_id"],
            amount_cents=int(body.get("amount_cents", amount_cents)),
            status=body.get("status", "completed"),
        )

    @upstream_call("payment", "find_refund")
    async def find_refund(self, reference: str) -> Optional[RefundReceipt]:
        response = await self._client.get(f"/refunds/{reference}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        body = response.json()
        return RefundReceipt(
            reference=reference,
            transaction_id=body["transaction_id"],
            amount_cents=int(body["amount_cents"]),
            status=body.get("status", "completed"),
        )


# ==== NOTIFICATIONS, INVENTORY, STORAGE ==== #


class HTTPNotificationService(_HTTPCollaborator):

    @upstream_call("notifications", "notify")
    async def notify(self, channel: str, recipient: str, template: str, data: Dict[str, Any]) -> None:
        await self._json("POST", "/notifications", json={
            "channel": channel,
            "recipient": recipient,
            "template": template,
            "data": data,
        })


class HTTPInventoryService(_HTTPCollaborator):

    @upstream_call("inventory", "adjust_stock")
    async def adjust_stock(self, sku: str, delta: int, reason: str) -> None:
        await self._json("POST", f"/inventory/{sku}/adjustments", json={"delta": delta, "reason": reason})


class HTTPStorageService(_HTTPCollaborator):

    @upstream_call("storage", "upload")
    async def upload(self, data: bytes, folder: str, content_type: str) -> str:
        body = await self._json(
            "POST", "/objects",
            params={"folder": folder},
            content=data,
            headers={"Content-Type": content_type},
        )
        return body["url"]


# ==== ORDER DIRECTORY ==== #


class HTTPReferenceDirectory(_HTTPCollaborator):
    """Read-only lookups of orders and shipments owned by the order service."""

    @upstream_call("directory", "get_shipment")
    async def get_shipment(self, shipment_id: str) -> Optional[ShipmentSnapshot]:
        response = await self._client.get(f"/shipments/{shipment_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        body = response.json()
        return ShipmentSnapshot(
            shipment_id=body["shipment_id"],
            order_id=body.get("order_id"),
            company_id=body["company_id"],
            customer_id=body.get("customer_id"),
            awb=body.get("awb"),
            courier_id=body.get("courier_id"),
            customer_contact=body.get("customer_contact") or {},
            delivery_address=body.get("delivery_address") or {},
        )

    @upstream_call("directory", "get_order")
    async def get_order(self, order_id: str) -> Optional[OrderSnapshot]:
        response = await self._client.get(f"/orders/{order_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        body = response.json()
        return OrderSnapshot(
            order_id=body["order_id"],
            company_id=body["company_id"],
            customer_id=body.get("customer_id"),
            items=[
                OrderLine(
                    product_id=item["product_id"],
                    sku=item["sku"],
                    quantity=int(item["quantity"]),
                    unit_price_cents=int(item["unit_price_cents"]),
                    name=item.get("name"),
                    category=item.get("category"),
                )
                for item in body.get("items", [])
            ],
            payment_mode=body.get("payment_mode", "prepaid"),
            delivery_address=body.get("delivery_address") or {},
        )

    @upstream_call("directory", "find_orders_matching")
    async def find_orders_matching(self, company_id: Optional[str], text: str) -> List[str]:
        params = {"q": text}
        if company_id:
            params["company_id"] = company_id
        body = await self._json("GET", "/orders/search", params=params)
        return list(body.get("order_ids", []))

    @upstream_call("directory", "find_shipments_matching")
    async def find_shipments_matching(self, company_id: Optional[str], text: str) -> List[str]:
        params = {"q": text}
        if company_id:
            params["company_id"] = company_id
        body = await self._json("GET", "/shipments/search", params=params)
        return list(body.get("shipment_ids", []))


# ==== COLLABORATOR REGISTRY ==== #


_collaborators: Optional[Collaborators] = None


def build_http_collaborators() -> Collaborators:
    """Adapters for every collaborator, configured from settings."""
    key = settings.COLLABORATOR_API_KEY
    return Collaborators(
        courier=HTTPCourierClient(settings.COURIER_API_BASE_URL, key),
        payment=HTTPPaymentService(settings.PAYMENT_API_BASE_URL, key),
        notifications=HTTPNotificationService(settings.NOTIFICATION_API_BASE_URL, key),
        inventory=HTTPInventoryService(settings.INVENTORY_API_BASE_URL, key),
        storage=HTTPStorageService(settings.STORAGE_API_BASE_URL, key),
        directory=HTTPReferenceDirectory(settings.DIRECTORY_API_BASE_URL, key),
    )


def get_collaborators() -> Collaborators:
    """Get the global collaborator bundle, building HTTP adapters on first use."""
    global _collaborators
    if _collaborators is None:
        _collaborators = build_http_collaborators()
    return _collaborators


def set_collaborators(collaborators: Optional[Collaborators]) -> None:
    """Replace the global bundle (``None`` rebuilds from settings on next use)."""
    global _collaborators
    _collaborators = collaborators


async def close_collaborators() -> None:
    global _collaborators
    if _collaborators is None:
        return
    for port in vars(_collaborators).values():
        if isinstance(port, _HTTPCollaborator):
            await port.aclose()
    _collaborators = None
