# ==== NDR TYPES AND CLASSIFICATION RULES ==== #

"""
Canonical NDR types and the deterministic rule table that maps carrier
failure remarks and codes onto them.

Carrier status codes are normalized upstream into a small vocabulary
(``FAILED_DELIVERY_STATUSES``/``DELIVERED_STATUSES``); remarks remain free
text and are matched against ordered keyword patterns. The first matching
rule wins so the outcome never depends on dictionary ordering.
"""

import re
from enum import Enum
from typing import Dict, List, Optional, Pattern, Tuple


# ==== ENUMERATION DEFINITIONS ==== #


class NDRType(str, Enum):
    """Canonical failure categories selecting a resolution workflow."""

    CUSTOMER_UNAVAILABLE = "customer_unavailable"
    ADDRESS_ISSUE = "address_issue"
    REFUSED = "refused"
    PAYMENT_ISSUE = "payment_issue"
    PREMISES_CLOSED = "premises_closed"
    DELIVERY_RESCHEDULED = "delivery_rescheduled"
    OUT_OF_SERVICE_AREA = "out_of_service_area"
    OTHER = "other"


class NDRActionType(str, Enum):
    """Workflow steps a resolution workflow may contain."""

    CALL_CUSTOMER = "call_customer"
    SEND_WHATSAPP = "send_whatsapp"
    SEND_SMS = "send_sms"
    SEND_EMAIL = "send_email"
    UPDATE_ADDRESS = "update_address"
    REQUEST_REATTEMPT = "request_reattempt"
    TRIGGER_RTO = "trigger_rto"


# Channel used by the notification collaborator for each messaging action
ACTION_CHANNELS: Dict[NDRActionType, str] = {
    NDRActionType.CALL_CUSTOMER: "voice",
    NDRActionType.SEND_WHATSAPP: "whatsapp",
    NDRActionType.SEND_SMS: "sms",
    NDRActionType.SEND_EMAIL: "email",
    NDRActionType.UPDATE_ADDRESS: "whatsapp",
}


class NDRInputType(str, Enum):
    """External inputs that re-evaluate an NDR in resolution."""

    ADDRESS_UPDATED = "address_updated"
    REATTEMPT_REQUESTED = "reattempt_requested"
    CUSTOMER_CONFIRMED = "customer_confirmed"
    WAREHOUSE_CONFIRMED = "warehouse_confirmed"
    RTO_REQUESTED = "rto_requested"


# ==== TRACKING STATUS VOCABULARY ==== #


FAILED_DELIVERY_STATUSES = frozenset({
    "NDR",
    "UNDELIVERED",
    "DELIVERY_FAILED",
    "DELIVERY_ATTEMPTED",
    "FAILED_ATTEMPT",
})

DELIVERED_STATUSES = frozenset({"DELIVERED"})


def normalize_status(status: str) -> str:
    return re.sub(r"[\s\-]+", "_", status.strip()).upper()


def is_failed_delivery(status: str) -> bool:
    return normalize_status(status) in FAILED_DELIVERY_STATUSES


def is_delivered(status: str) -> bool:
    return normalize_status(status) in DELIVERED_STATUSES


# ==== CLASSIFICATION RULE TABLE ==== #


# Normalized carrier reason codes, checked before remark keywords
CARRIER_CODE_RULES: Dict[str, NDRType] = {
    "CNA": NDRType.CUSTOMER_UNAVAILABLE,
    "CUST_NOT_AVAILABLE": NDRType.CUSTOMER_UNAVAILABLE,
    "CONSIGNEE_UNAVAILABLE": NDRType.CUSTOMER_UNAVAILABLE,
    "ADDRESS_INCOMPLETE": NDRType.ADDRESS_ISSUE,
    "ADDRESS_INCORRECT": NDRType.ADDRESS_ISSUE,
    "WRONG_ADDRESS": NDRType.ADDRESS_ISSUE,
    "REFUSED": NDRType.REFUSED,
    "CONSIGNEE_REFUSED": NDRType.REFUSED,
    "COD_NOT_READY": NDRType.PAYMENT_ISSUE,
    "OFFICE_CLOSED": NDRType.PREMISES_CLOSED,
    "PREMISES_CLOSED": NDRType.PREMISES_CLOSED,
    "CUSTOMER_RESCHEDULED": NDRType.DELIVERY_RESCHEDULED,
    "ODA": NDRType.OUT_OF_SERVICE_AREA,
    "NON_SERVICEABLE": NDRType.OUT_OF_SERVICE_AREA,
}

_KEYWORD_RULES: List[Tuple[str, NDRType]] = [
    (r"\brefus|\bdeclin|\bdid not accept|\bnot interested\b", NDRType.REFUSED),
    (r"\bcod\b|\bcash\b|\bpayment\b|\bamount not ready\b", NDRType.PAYMENT_ISSUE),
    (r"\bclosed\b|\bholiday\b|\bshop shut\b", NDRType.PREMISES_CLOSED),
    (r"\breschedul|\bdeliver later\b|\bnext day\b|\bfuture delivery\b", NDRType.DELIVERY_RESCHEDULED),
    (r"\bout of (delivery|service) area\b|\bnon[- ]serviceable\b|\boda\b", NDRType.OUT_OF_SERVICE_AREA),
    (
        r"\bnot available\b|\bunavailable\b|\bnot reachable\b|\bno response\b|\bnot at home\b"
        r"|\bdoor locked\b|\bphone (switched )?off\b|\bnot answering\b",
        NDRType.CUSTOMER_UNAVAILABLE,
    ),
    (r"\baddress\b|\blandmark\b|\bpincode\b|\bnot locat|\bwrong location\b|\bincomplete\b", NDRType.ADDRESS_ISSUE),
]

KEYWORD_RULES: List[Tuple[Pattern[str], NDRType]] = [
    (re.compile(pattern, re.IGNORECASE), ndr_type) for pattern, ndr_type in _KEYWORD_RULES
]


def classify_reason(reason: Optional[str], carrier_code: Optional[str] = None) -> NDRType:
    """Map a carrier code and/or free-text remark to a canonical NDR type.

    Args:
        reason: Free-text remark from the carrier
        carrier_code: Normalized carrier reason code, if any

    Returns:
        NDRType: Matching type, ``NDRType.OTHER`` when nothing matches
    """
    if carrier_code:
        code_type = CARRIER_CODE_RULES.get(normalize_status(carrier_code))
        if code_type is not None:
            return code_type

    if reason:
        for pattern, ndr_type in KEYWORD_RULES:
            if pattern.search(reason):
                return ndr_type

    return NDRType.OTHER
