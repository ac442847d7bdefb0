# ==== DOMAIN ERROR TAXONOMY ==== #

"""
Structured errors raised by the workflow engine.

Every error carries a stable ``code`` so the HTTP layer (and any other
caller) can render consistent messaging without parsing free text, and an
HTTP-style ``status_code`` used by the FastAPI exception handler.
Collaborator failures are kept distinct (``UpstreamError``) so callers can
decide to retry.
"""

from typing import Any, Dict, List, Optional


class ReverseLogisticsError(Exception):
    """Base class for all domain errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class DomainValidationError(ReverseLogisticsError):
    """Malformed input, rejected before any state mutation."""

    code = "VALIDATION_ERROR"
    status_code = 422

    def __init__(
        self,
        message: str,
        field_errors: Optional[List[Dict[str, str]]] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message, code=code, details={"fields": field_errors or []})
        self.field_errors = field_errors or []

    @classmethod
    def for_field(cls, field: str, message: str) -> "DomainValidationError":
        return cls(message, field_errors=[{"field": field, "message": message}])


class NotFoundError(ReverseLogisticsError):
    """Unknown return, RTO, NDR, order or shipment id."""

    status_code = 404

    def __init__(self, entity: str, identifier: Any):
        super().__init__(
            f"{entity.replace('_', ' ').capitalize()} '{identifier}' not found",
            code=f"{entity.upper()}_NOT_FOUND",
            details={"entity": entity, "id": str(identifier)},
        )


class ConflictError(ReverseLogisticsError):
    """Operation collides with existing state (duplicate, already done)."""

    code = "CONFLICT"
    status_code = 409


class InvalidTransitionError(ConflictError):
    """Requested status change is not in the lifecycle's transition table."""

    code = "INVALID_STATE_TRANSITION"

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            f"Cannot move {entity} from '{current}' to '{target}'",
            details={"entity": entity, "current_status": current, "target_status": target},
        )
        self.current = current
        self.target = target


class ForbiddenError(ReverseLogisticsError):
    """Cross-company or cross-customer access to a record."""

    code = "FORBIDDEN"
    status_code = 403


class RateLimitedError(ReverseLogisticsError):
    """Trigger frequency exceeded; carries a retry-after hint in seconds."""

    code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, message: str, retry_after: float, scope: str):
        super().__init__(message, details={"retry_after": round(retry_after, 3), "scope": scope})
        self.retry_after = retry_after
        self.scope = scope


class UpstreamError(ReverseLogisticsError):
    """A courier, payment, inventory, notification or storage call failed."""

    code = "UPSTREAM_FAILURE"
    status_code = 502

    def __init__(self, service: str, operation: str, message: str, retryable: bool = True):
        super().__init__(
            f"{service}.{operation} failed: {message}",
            details={"service": service, "operation": operation, "retryable": retryable},
        )
        self.service = service
        self.operation = operation
        self.retryable = retryable
