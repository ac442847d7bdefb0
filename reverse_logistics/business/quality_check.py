# ==== QUALITY CHECK RULES ==== #

"""
Quality check input validation shared by RTO events and return orders.

A QC record is written once. Per-SKU quantities must add up to what was
sent back and agree with the overall result: ``approved`` accepts
everything, ``rejected`` accepts nothing, ``partial`` needs some of each.
"""

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from reverse_logistics.business.access import Actor
from reverse_logistics.business.errors import DomainValidationError
from reverse_logistics.business.reason_codes import QCResult


ALLOWED_PHOTO_TYPES = frozenset({"image/jpeg", "image/png", "image/webp", "image/heic"})


@dataclass(frozen=True)
class QCItemInput:
    sku: str
    quantity_accepted: int
    quantity_rejected: int
    condition: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class QCInput:
    """Inspector's verdict; ``items`` may be omitted for approved or rejected."""

    result: QCResult
    items: List[QCItemInput] = field(default_factory=list)
    notes: Optional[str] = None
    photos: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class PhotoUpload:
    filename: str
    content_type: str
    data: bytes


def _requested_quantities(requested_items: Sequence[Mapping[str, Any]]) -> Dict[str, int]:
    quantities: Dict[str, int] = {}
    for item in requested_items:
        quantities[item["sku"]] = quantities.get(item["sku"], 0) + int(item["quantity"])
    return quantities


def resolve_qc_items(qc: QCInput, requested_items: Sequence[Mapping[str, Any]]) -> List[QCItemInput]:
    """
    Validate per-item quantities against the returned items and the result.

    Args:
        qc: Inspector input
        requested_items: Items that were sent back (``sku``, ``quantity``)

    Returns:
        List[QCItemInput]: One entry per returned SKU

    Raises:
        DomainValidationError: Unknown SKU, quantities not adding up, or
            quantities contradicting the result
    """
    result = QCResult(qc.result)
    requested = _requested_quantities(requested_items)

    if not qc.items:
        if result == QCResult.PARTIAL:
            raise DomainValidationError.for_field("items", "A partial QC result needs per-item quantities")
        accept_all = result == QCResult.APPROVED
        return [
            QCItemInput(
                sku=sku,
                quantity_accepted=quantity if accept_all else 0,
                quantity_rejected=0 if accept_all else quantity,
            )
            for sku, quantity in requested.items()
        ]

    errors: List[Dict[str, str]] = []
    seen = set()
    for index, item in enumerate(qc.items):
        if item.sku not in requested:
            errors.append({"field": f"items[{index}].sku", "message": f"SKU '{item.sku}' was not returned"})
            continue
        if item.sku in seen:
            errors.append({"field": f"items[{index}].sku", "message": f"SKU '{item.sku}' listed twice"})
            continue
        seen.add(item.sku)
        if item.quantity_accepted < 0 or item.quantity_rejected < 0:
            errors.append({"field": f"items[{index}]", "message": "Quantities cannot be negative"})
        elif item.quantity_accepted + item.quantity_rejected != requested[item.sku]:
            errors.append({
                "field": f"items[{index}]",
                "message": f"Accepted plus rejected must equal returned quantity {requested[item.sku]}",
            })

    missing = sorted(set(requested) - seen)
    if missing:
        errors.append({"field": "items", "message": f"Missing QC entries for: {', '.join(missing)}"})
    if errors:
        raise DomainValidationError("Invalid QC items", field_errors=errors)

    accepted = sum(item.quantity_accepted for item in qc.items)
    rejected = sum(item.quantity_rejected for item in qc.items)
    if result == QCResult.APPROVED and rejected:
        raise DomainValidationError.for_field("result", "An approved QC cannot reject items")
    if result == QCResult.REJECTED and accepted:
        raise DomainValidationError.for_field("result", "A rejected QC cannot accept items")
    if result == QCResult.PARTIAL and not (accepted and rejected):
        raise DomainValidationError.for_field("result", "A partial QC needs accepted and rejected items")

    return list(qc.items)


def build_qc_record(
    qc: QCInput,
    requested_items: Sequence[Mapping[str, Any]],
    inspector: Actor,
    now: dt.datetime,
    photos: Sequence[str] = (),
) -> Dict[str, Any]:
    """Validated, JSON-ready QC sub-record."""
    items = resolve_qc_items(qc, requested_items)
    return {
        "status": "completed",
        "result": QCResult(qc.result).value,
        "items": [
            {
                "sku": item.sku,
                "quantity_accepted": item.quantity_accepted,
                "quantity_rejected": item.quantity_rejected,
                "condition": item.condition,
                "notes": item.notes,
            }
            for item in items
        ],
        "photos": [*photos, *qc.photos],
        "notes": qc.notes,
        "inspector": inspector.as_audit(),
        "completed_at": now.isoformat(),
    }


def accepted_quantities(qc_record: Mapping[str, Any]) -> Dict[str, int]:
    return {item["sku"]: int(item["quantity_accepted"]) for item in qc_record.get("items", [])}


def rejected_quantities(qc_record: Mapping[str, Any]) -> Dict[str, int]:
    return {item["sku"]: int(item["quantity_rejected"]) for item in qc_record.get("items", [])}


def validate_photos(photos: Sequence[PhotoUpload], existing: int, max_photos: int, max_bytes: int) -> None:
    """
    Raises:
        DomainValidationError: Too many photos, wrong type, empty or oversized file
    """
    if not photos:
        raise DomainValidationError.for_field("files", "At least one photo is required")
    if existing + len(photos) > max_photos:
        raise DomainValidationError.for_field("files", f"At most {max_photos} QC photos are allowed")

    errors = []
    for photo in photos:
        if photo.content_type not in ALLOWED_PHOTO_TYPES:
            errors.append({"field": photo.filename, "message": f"Unsupported image type '{photo.content_type}'"})
        elif not photo.data:
            errors.append({"field": photo.filename, "message": "Empty file"})
        elif len(photo.data) > max_bytes:
            errors.append({"field": photo.filename, "message": f"File exceeds {max_bytes} bytes"})
    if errors:
        raise DomainValidationError("Invalid QC photos", field_errors=errors)
