# ==== BUSINESS REASON CODES ==== #

"""
Reason codes and business enumerations for the reverse-logistics workflows.

This module defines the closed vocabularies shared by the RTO, return and
disposition engines (RTO reasons, return reasons, refund methods, QC results
and disposition actions) along with per-reason business rules.
"""

from enum import Enum
from typing import Any, Dict


# ==== ENUMERATION DEFINITIONS ==== #


class RTOReason(str, Enum):
    """Why a shipment is travelling back to origin."""

    NDR_UNRESOLVED = "ndr_unresolved"
    CUSTOMER_CANCELLATION = "customer_cancellation"
    QC_FAILURE = "qc_failure"
    REFUSED = "refused"
    DAMAGED_IN_TRANSIT = "damaged_in_transit"
    INCORRECT_PRODUCT = "incorrect_product"
    OTHER = "other"


class RTOTrigger(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


class ReturnReason(str, Enum):
    """Customer-facing return reasons."""

    DEFECTIVE = "defective"
    WRONG_ITEM = "wrong_item"
    SIZE_ISSUE = "size_issue"
    COLOR_MISMATCH = "color_mismatch"
    NOT_AS_DESCRIBED = "not_as_described"
    DAMAGED_IN_TRANSIT = "damaged_in_transit"
    CHANGED_MIND = "changed_mind"
    QUALITY_ISSUE = "quality_issue"
    DUPLICATE_ORDER = "duplicate_order"
    OTHER = "other"


class RefundMethod(str, Enum):
    WALLET = "wallet"
    ORIGINAL_PAYMENT = "original_payment"
    BANK_TRANSFER = "bank_transfer"


class QCResult(str, Enum):
    """Outcome of a warehouse quality check.

    ``approved`` means every item passed, ``rejected`` means none did and
    ``partial`` means at least one item of each.
    """

    APPROVED = "approved"
    REJECTED = "rejected"
    PARTIAL = "partial"


class DispositionAction(str, Enum):
    RESTOCK = "restock"
    SCRAP = "scrap"
    RETURN_TO_SELLER = "return_to_seller"
    HOLD_FOR_REVIEW = "hold_for_review"


EXECUTABLE_DISPOSITIONS = frozenset({
    DispositionAction.RESTOCK,
    DispositionAction.SCRAP,
    DispositionAction.RETURN_TO_SELLER,
})


# ==== BUSINESS RULES CONFIGURATION ==== #


RTO_REASON_CONFIG: Dict[str, Dict[str, Any]] = {
    RTOReason.NDR_UNRESOLVED: {"courier_liable": False, "description": "Delivery failure not resolved in time"},
    RTOReason.CUSTOMER_CANCELLATION: {"courier_liable": False, "description": "Customer cancelled before delivery"},
    RTOReason.QC_FAILURE: {"courier_liable": False, "description": "Failed pre-delivery quality check"},
    RTOReason.REFUSED: {"courier_liable": False, "description": "Customer refused the parcel"},
    RTOReason.DAMAGED_IN_TRANSIT: {"courier_liable": True, "description": "Parcel damaged by the carrier"},
    RTOReason.INCORRECT_PRODUCT: {"courier_liable": False, "description": "Wrong product dispatched"},
    RTOReason.OTHER: {"courier_liable": False, "description": "Other reason"},
}


def rto_reason_description(reason: str) -> str:
    return RTO_REASON_CONFIG.get(RTOReason(reason), {}).get("description", "Unable to complete delivery")


def is_courier_liable(reason: str) -> bool:
    """Whether losses on an RTO with this reason are claimable from the courier."""
    return bool(RTO_REASON_CONFIG.get(RTOReason(reason), {}).get("courier_liable", False))
