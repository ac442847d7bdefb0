# ==== REFUND CALCULATIONS ==== #

"""
Pure refund computations over a return order snapshot.

Amounts are integer minor units. Items are mappings with ``sku``,
``quantity`` and ``unit_price_cents``; a QC record holds ``result`` and
per-item ``items`` entries with ``sku``, ``quantity_accepted`` and
``quantity_rejected``.
"""

from typing import Any, Iterable, Mapping, Optional, Sequence

from reverse_logistics.business.reason_codes import QCResult
from reverse_logistics.business.state_machines import RefundStatus, ReturnStatus


REFUND_OVERRIDE_ACTION = "refund_override"
REFUNDABLE_QC_RESULTS = frozenset({QCResult.APPROVED.value, QCResult.PARTIAL.value})
# Statuses an admin override may refund from, QC not required
OVERRIDE_REFUNDABLE_STATUSES = frozenset({
    ReturnStatus.APPROVED.value,
    ReturnStatus.PICKUP_SCHEDULED.value,
    ReturnStatus.IN_TRANSIT.value,
    ReturnStatus.QC_PENDING.value,
    ReturnStatus.QC_COMPLETED.value,
})


def line_total(item: Mapping[str, Any]) -> int:
    return int(item["quantity"]) * int(item["unit_price_cents"])


def calculate_preliminary_refund(items: Iterable[Mapping[str, Any]]) -> int:
    """Sum of requested line totals, before QC."""
    return sum(line_total(item) for item in items)


def rejected_deduction(items: Sequence[Mapping[str, Any]], qc_items: Iterable[Mapping[str, Any]]) -> int:
    """Value of every rejected unit, priced at the requested unit price."""
    prices = {item["sku"]: int(item["unit_price_cents"]) for item in items}
    requested = {item["sku"]: int(item["quantity"]) for item in items}
    deduction = 0
    for qc_item in qc_items:
        sku = qc_item["sku"]
        rejected = min(int(qc_item.get("quantity_rejected", 0)), requested.get(sku, 0))
        deduction += rejected * prices.get(sku, 0)
    return deduction


def calculate_actual_refund(items: Sequence[Mapping[str, Any]], qc: Optional[Mapping[str, Any]]) -> int:
    """Refund owed after QC: the full amount minus rejected-item deductions.

    Args:
        items: Requested return items
        qc: Completed QC record, ``None`` before QC

    Returns:
        int: Refund in minor units; 0 for a rejected QC or before QC
    """
    if not qc or qc.get("result") not in REFUNDABLE_QC_RESULTS:
        return 0

    full_amount = calculate_preliminary_refund(items)
    if qc["result"] == QCResult.APPROVED.value:
        return full_amount
    return max(full_amount - rejected_deduction(items, qc.get("items", [])), 0)


def has_refund_override(timeline: Iterable[Mapping[str, Any]]) -> bool:
    """Whether an admin recorded a refund override in the timeline."""
    return any(entry.get("action") == REFUND_OVERRIDE_ACTION for entry in timeline)


def is_eligible_for_refund(
    status: str,
    qc: Optional[Mapping[str, Any]],
    timeline: Iterable[Mapping[str, Any]],
    refund_status: Optional[str] = None,
) -> bool:
    """Whether a refund may be paid out for the return in its current state.

    A refund needs a completed QC that accepted something, or an explicit
    admin override entry in the timeline (any post-approval, pre-terminal
    status). Completed refunds are never eligible again.
    """
    if refund_status == RefundStatus.COMPLETED.value:
        return False
    if status == ReturnStatus.QC_COMPLETED.value and qc and qc.get("result") in REFUNDABLE_QC_RESULTS:
        return True
    return status in OVERRIDE_REFUNDABLE_STATUSES and has_refund_override(timeline)
