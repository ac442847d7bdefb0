# ==== LIFECYCLE STATE MACHINES ==== #

"""
Closed status enums and explicit transition tables.

Each aggregate (NDR Event, RTO Event, Return Order) is mutated only through
``assert_transition``, which rejects any move absent from its table before
the caller writes anything.
"""

from enum import Enum
from typing import Dict, FrozenSet, Type

from reverse_logistics.business.errors import InvalidTransitionError


# ==== STATUS ENUMERATIONS ==== #


class NDRStatus(str, Enum):
    """NDR Event lifecycle."""

    DETECTED = "detected"
    CLASSIFYING = "classifying"
    IN_RESOLUTION = "in_resolution"
    RESOLVED = "resolved"
    ESCALATED = "escalated"
    RTO_TRIGGERED = "rto_triggered"


class RTOStatus(str, Enum):
    """RTO Event return status."""

    INITIATED = "initiated"
    IN_TRANSIT = "in_transit"
    QC_PENDING = "qc_pending"
    QC_COMPLETED = "qc_completed"
    DISPOSED = "disposed"


class ReturnStatus(str, Enum):
    """Return Order lifecycle."""

    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    PICKUP_SCHEDULED = "pickup_scheduled"
    IN_TRANSIT = "in_transit"
    QC_PENDING = "qc_pending"
    QC_COMPLETED = "qc_completed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# ==== TRANSITION TABLES ==== #


NDR_TRANSITIONS: Dict[NDRStatus, FrozenSet[NDRStatus]] = {
    NDRStatus.DETECTED: frozenset({NDRStatus.CLASSIFYING, NDRStatus.RESOLVED, NDRStatus.RTO_TRIGGERED}),
    NDRStatus.CLASSIFYING: frozenset({NDRStatus.IN_RESOLUTION, NDRStatus.RESOLVED, NDRStatus.RTO_TRIGGERED}),
    NDRStatus.IN_RESOLUTION: frozenset({NDRStatus.RESOLVED, NDRStatus.ESCALATED, NDRStatus.RTO_TRIGGERED}),
    NDRStatus.ESCALATED: frozenset({NDRStatus.RTO_TRIGGERED, NDRStatus.RESOLVED}),
    NDRStatus.RESOLVED: frozenset(),
    NDRStatus.RTO_TRIGGERED: frozenset(),
}

RTO_TRANSITIONS: Dict[RTOStatus, FrozenSet[RTOStatus]] = {
    RTOStatus.INITIATED: frozenset({RTOStatus.IN_TRANSIT, RTOStatus.QC_PENDING}),
    RTOStatus.IN_TRANSIT: frozenset({RTOStatus.QC_PENDING}),
    RTOStatus.QC_PENDING: frozenset({RTOStatus.QC_COMPLETED}),
    RTOStatus.QC_COMPLETED: frozenset({RTOStatus.DISPOSED}),
    RTOStatus.DISPOSED: frozenset(),
}

RETURN_TRANSITIONS: Dict[ReturnStatus, FrozenSet[ReturnStatus]] = {
    ReturnStatus.REQUESTED: frozenset({ReturnStatus.APPROVED, ReturnStatus.REJECTED, ReturnStatus.CANCELLED}),
    ReturnStatus.APPROVED: frozenset({ReturnStatus.PICKUP_SCHEDULED, ReturnStatus.REFUNDED, ReturnStatus.CANCELLED}),
    # Pickup failure sends the return back to approved for rescheduling
    ReturnStatus.PICKUP_SCHEDULED: frozenset({
        ReturnStatus.IN_TRANSIT, ReturnStatus.QC_PENDING, ReturnStatus.APPROVED,
        ReturnStatus.REFUNDED, ReturnStatus.CANCELLED,
    }),
    ReturnStatus.IN_TRANSIT: frozenset({ReturnStatus.QC_PENDING, ReturnStatus.REFUNDED, ReturnStatus.CANCELLED}),
    ReturnStatus.QC_PENDING: frozenset({ReturnStatus.QC_COMPLETED, ReturnStatus.REFUNDED, ReturnStatus.CANCELLED}),
    ReturnStatus.QC_COMPLETED: frozenset({ReturnStatus.REFUNDED, ReturnStatus.REJECTED, ReturnStatus.CANCELLED}),
    ReturnStatus.REJECTED: frozenset(),
    ReturnStatus.REFUNDED: frozenset(),
    ReturnStatus.CANCELLED: frozenset(),
}

# Refunds ahead of qc_completed are only reachable with an admin override,
# checked by business.refunds.is_eligible_for_refund

_TABLES: Dict[Type[Enum], Dict] = {
    NDRStatus: NDR_TRANSITIONS,
    RTOStatus: RTO_TRANSITIONS,
    ReturnStatus: RETURN_TRANSITIONS,
}

NDR_OPEN_STATUSES = frozenset({
    NDRStatus.DETECTED, NDRStatus.CLASSIFYING, NDRStatus.IN_RESOLUTION, NDRStatus.ESCALATED,
})
RETURN_TERMINAL_STATUSES = frozenset({
    ReturnStatus.REJECTED, ReturnStatus.REFUNDED, ReturnStatus.CANCELLED,
})


# ==== TRANSITION CHECKS ==== #


def can_transition(current: Enum, target: Enum) -> bool:
    """Return True when ``current -> target`` is in the lifecycle table."""
    table = _TABLES[type(target)]
    return target in table[type(target)(current)]


def assert_transition(entity: str, current: str, target: Enum) -> None:
    """Raise ``InvalidTransitionError`` unless the move is allowed.

    Args:
        entity: Aggregate name used in the error (``return_order``, ...)
        current: Stored status value
        target: Desired status member
    """
    if not can_transition(type(target)(current), target):
        raise InvalidTransitionError(entity, str(current), target.value)


def is_terminal(status: Enum) -> bool:
    return not _TABLES[type(status)][status]
