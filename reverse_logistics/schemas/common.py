"""Pydantic schemas shared by every resource."""

import math
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, TypeVar

from pydantic import BaseModel, Field


T = TypeVar("T")


class PaginationMeta(BaseModel):
    """Page position of a list response."""

    page: int
    limit: int
    total: int
    pages: int


class PaginatedResponse(BaseModel, Generic[T]):
    """List envelope: ``{data, pagination}``."""

    data: List[T]
    pagination: PaginationMeta


def paginated(rows: Sequence[Any], total: int, page: int, limit: int, convert: Callable[[Any], T]) -> Dict[str, Any]:
    return {
        "data": [convert(row) for row in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if limit else 0,
        },
    }


class ErrorResponse(BaseModel):
    """Body of every error response."""

    error: str
    message: str
    code: str
    details: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = None

    class Config:
        """Pydantic configuration."""
        json_schema_extra = {
            "example": {
                "error": "Conflict",
                "message": "Shipment 'shp-1001' already has an active RTO",
                "code": "RTO_ALREADY_ACTIVE",
                "details": {"shipment_id": "shp-1001"},
                "correlation_id": "550e8400-e29b-41d4-a716-446655440000",
            }
        }
