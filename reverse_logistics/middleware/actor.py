# ==== ACTOR IDENTIFICATION MIDDLEWARE ==== #

"""
Actor identification for request isolation.

Authentication happens upstream (API gateway); the gateway forwards who is
calling in ``X-Actor-Id``, ``X-Actor-Role``, ``X-Company-Id`` and
``X-Customer-Id``. This middleware validates those headers and injects the
resulting ``Actor`` into the request scope, where route dependencies pick it
up for record-level access checks.
"""

import json

from fastapi import Request
from starlette.types import ASGIApp, Receive, Scope, Send

from reverse_logistics.business.access import Actor, ActorRole
from reverse_logistics.business.errors import ForbiddenError
from reverse_logistics.observability.tracing import get_tracer


# ==== MODULE INITIALIZATION ==== #

tracer = get_tracer(__name__)

# Roles a caller may claim over HTTP; ``system`` is reserved for workers
HTTP_ROLES = frozenset({ActorRole.CUSTOMER, ActorRole.SELLER, ActorRole.WAREHOUSE, ActorRole.ADMIN})


# ==== UTILITY FUNCTIONS ==== #

def get_actor(request: Request) -> Actor:
    """
    FastAPI dependency returning the caller injected by ``ActorMiddleware``.

    Raises:
        ForbiddenError: No actor on the request (exempt path)
    """
    actor = request.scope.get("actor")
    if actor is None:
        raise ForbiddenError("Caller identity is required")
    return actor


def _is_valid_identifier(value: str) -> bool:
    if not value or len(value) > 64:
        return False
    # Alphanumeric characters, hyphens, underscores and dots only
    return all(c.isalnum() or c in "-_." for c in value)


# ==== ACTOR MIDDLEWARE CLASS ==== #

class ActorMiddleware:
    """
    Extract and validate the calling actor.

    Sellers and warehouse staff must name their company, customers their
    customer id; admins may omit both.
    """

    def __init__(self, app: ASGIApp, require_actor: bool = True):
        self.app = app
        self.require_actor = require_actor

        # --► PATHS EXEMPT FROM ACTOR VALIDATION
        self.exempt_paths = {
            "/healthz",
            "/readyz",
            "/info",
            "/metrics",
            "/docs",
            "/redoc",
            "/openapi.json",
        }

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        # ⚠️ Always allow OPTIONS requests (CORS preflight)
        if scope["method"] == "OPTIONS" or scope["path"] in self.exempt_paths:
            await self.app(scope, receive, send)
            return

        headers = {key.decode().lower(): value.decode() for key, value in scope["headers"]}
        actor_id = headers.get("x-actor-id")
        role_value = headers.get("x-actor-role")

        if not actor_id or not role_value:
            if self.require_actor:
                await self._send_error_response(send, 401, "Missing X-Actor-Id or X-Actor-Role header")
                return
            await self.app(scope, receive, send)
            return

        # --► HEADER VALIDATION
        try:
            role = ActorRole(role_value.strip().lower())
        except ValueError:
            role = None
        if role not in HTTP_ROLES:
            await self._send_error_response(send, 400, f"Invalid X-Actor-Role '{role_value}'")
            return

        company_id = headers.get("x-company-id")
        customer_id = headers.get("x-customer-id")
        for value in (actor_id, company_id, customer_id):
            if value is not None and not _is_valid_identifier(value):
                await self._send_error_response(send, 400, "Invalid actor header format")
                return

        if role in (ActorRole.SELLER, ActorRole.WAREHOUSE) and not company_id:
            await self._send_error_response(send, 400, "X-Company-Id is required for this role")
            return
        if role == ActorRole.CUSTOMER and not customer_id:
            await self._send_error_response(send, 400, "X-Customer-Id is required for customers")
            return

        # --► SCOPE INJECTION FOR DOWNSTREAM PROCESSING
        scope["actor"] = Actor(id=actor_id, role=role, company_id=company_id, customer_id=customer_id)
        await self.app(scope, receive, send)

    async def _send_error_response(self, send: Send, status: int, message: str) -> None:
        """Send an error response directly through ASGI."""
        body = json.dumps({
            "error": "Unauthorized" if status == 401 else "Bad request",
            "message": message,
            "code": "INVALID_ACTOR",
            "details": {},
            "correlation_id": None,
        })
        await send({
            "type": "http.response.start",
            "status": status,
            "headers": [
                [b"content-type", b"application/json"],
            ],
        })
        await send({
            "type": "http.response.body",
            "body": body.encode(),
        })
