# ==== REVERSE LOGISTICS ANALYTICS ==== #

"""
Aggregate statistics for returns, RTO Events and NDR Events.

Counts are grouped in SQL; durations are computed in Python over the two
timestamp columns so the same code runs on PostgreSQL and SQLite.
"""

import datetime as dt
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from reverse_logistics.business.access import Actor, ActorRole, ensure_role
from reverse_logistics.business.reason_codes import QCResult
from reverse_logistics.business.state_machines import NDRStatus, RefundStatus
from reverse_logistics.observability.tracing import get_tracer
from reverse_logistics.storage.models import NDREvent, ReturnOrder, RTOEvent, to_naive_utc


tracer = get_tracer(__name__)

_PASSING_QC = (QCResult.APPROVED.value, QCResult.PARTIAL.value)


@dataclass(frozen=True)
class StatsWindow:
    company_id: Optional[str] = None
    start_date: Optional[dt.datetime] = None
    end_date: Optional[dt.datetime] = None


def resolve_window(actor: Actor, window: StatsWindow) -> StatsWindow:
    """Pin non-privileged actors to their own company."""
    ensure_role(actor, ActorRole.SELLER, ActorRole.WAREHOUSE)
    if actor.is_privileged:
        return window
    return StatsWindow(actor.company_id, window.start_date, window.end_date)


def _ratio(part: int, whole: int) -> float:
    return round(part / whole, 4) if whole else 0.0


def _average_hours(pairs) -> float:
    durations = [(end - start).total_seconds() / 3600 for start, end in pairs if start and end]
    return round(sum(durations) / len(durations), 2) if durations else 0.0


def _filtered(stmt, model, column, window: StatsWindow):
    if window.company_id:
        stmt = stmt.where(model.company_id == window.company_id)
    if window.start_date:
        stmt = stmt.where(column >= to_naive_utc(window.start_date))
    if window.end_date:
        stmt = stmt.where(column <= to_naive_utc(window.end_date))
    return stmt


async def _grouped(db: AsyncSession, model, group_column, time_column, window: StatsWindow, extra=()) -> Dict[str, int]:
    stmt = select(group_column, func.count()).group_by(group_column)
    for clause in extra:
        stmt = stmt.where(clause)
    stmt = _filtered(stmt, model, time_column, window)
    rows = await db.execute(stmt)
    return {key: count for key, count in rows.all() if key is not None}


# ==== RETURN STATS ==== #


async def return_stats(db: AsyncSession, window: StatsWindow) -> Dict[str, Any]:
    """
    Return volume, reasons, refunds, QC pass rate and SLA health.

    Returns:
        Dict[str, Any]: ``total_returns``, ``by_status``, ``top_reasons``,
        ``average_refund_cents``, ``total_refunded_cents``, ``qc_pass_rate``,
        ``average_processing_hours`` and ``sla_breach_rate``
    """
    with tracer.start_as_current_span("analytics_return_stats"):
        live = (ReturnOrder.is_deleted.is_(False),)
        by_status = await _grouped(db, ReturnOrder, ReturnOrder.status, ReturnOrder.created_at, window, live)
        by_reason = await _grouped(db, ReturnOrder, ReturnOrder.return_reason, ReturnOrder.created_at, window, live)
        total = sum(by_status.values())

        refunded_stmt = _filtered(
            select(
                func.count(),
                func.coalesce(func.sum(ReturnOrder.refund_amount_cents), 0),
            ).where(*live, ReturnOrder.refund_status == RefundStatus.COMPLETED.value),
            ReturnOrder, ReturnOrder.created_at, window,
        )
        refunded_count, refunded_sum = (await db.execute(refunded_stmt)).one()

        qc_rows = await db.execute(_filtered(
            select(ReturnOrder.qc).where(*live, ReturnOrder.qc_completed_at.is_not(None)),
            ReturnOrder, ReturnOrder.created_at, window,
        ))
        qc_results = [qc.get("result") for (qc,) in qc_rows.all() if qc]

        timing_rows = await db.execute(_filtered(
            select(ReturnOrder.created_at, ReturnOrder.refund_completed_at).where(
                *live, ReturnOrder.refund_completed_at.is_not(None)
            ),
            ReturnOrder, ReturnOrder.created_at, window,
        ))

        breached_stmt = _filtered(
            select(func.count()).where(*live, ReturnOrder.sla_is_breached.is_(True)),
            ReturnOrder, ReturnOrder.created_at, window,
        )
        breached = (await db.execute(breached_stmt)).scalar_one()

    top_reasons: List[Dict[str, Any]] = [
        {"reason": reason, "count": count}
        for reason, count in sorted(by_reason.items(), key=lambda pair: pair[1], reverse=True)[:5]
    ]
    return {
        "total_returns": total,
        "by_status": by_status,
        "top_reasons": top_reasons,
        "refunded_count": refunded_count,
        "total_refunded_cents": int(refunded_sum),
        "average_refund_cents": int(refunded_sum // refunded_count) if refunded_count else 0,
        "qc_pass_rate": _ratio(sum(1 for result in qc_results if result in _PASSING_QC), len(qc_results)),
        "average_processing_hours": _average_hours(timing_rows.all()),
        "sla_breach_rate": _ratio(breached, total),
    }


# ==== RTO STATS ==== #


async def rto_stats(db: AsyncSession, window: StatsWindow) -> Dict[str, Any]:
    """RTO volume by status, reason and trigger, return times, QC and dispositions."""
    with tracer.start_as_current_span("analytics_rto_stats"):
        by_status = await _grouped(db, RTOEvent, RTOEvent.return_status, RTOEvent.triggered_at, window)
        by_reason = await _grouped(db, RTOEvent, RTOEvent.rto_reason, RTOEvent.triggered_at, window)
        by_trigger = await _grouped(db, RTOEvent, RTOEvent.trigger, RTOEvent.triggered_at, window)

        charges = (await db.execute(_filtered(
            select(func.coalesce(func.sum(RTOEvent.rto_charges_cents), 0)),
            RTOEvent, RTOEvent.triggered_at, window,
        ))).scalar_one()

        returned = await db.execute(_filtered(
            select(RTOEvent.triggered_at, RTOEvent.actual_return_date).where(
                RTOEvent.actual_return_date.is_not(None)
            ),
            RTOEvent, RTOEvent.triggered_at, window,
        ))

        outcome_rows = await db.execute(_filtered(
            select(RTOEvent.qc, RTOEvent.disposition).where(RTOEvent.qc_completed_at.is_not(None)),
            RTOEvent, RTOEvent.triggered_at, window,
        ))

    qc_results: List[str] = []
    dispositions: Dict[str, int] = {}
    for qc, disposition in outcome_rows.all():
        if qc:
            qc_results.append(qc.get("result"))
        if disposition:
            action = disposition.get("action")
            dispositions[action] = dispositions.get(action, 0) + 1

    return {
        "total_rtos": sum(by_status.values()),
        "by_status": by_status,
        "by_reason": by_reason,
        "by_trigger": by_trigger,
        "total_charges_cents": int(charges),
        "average_return_hours": _average_hours(returned.all()),
        "qc_pass_rate": _ratio(sum(1 for result in qc_results if result in _PASSING_QC), len(qc_results)),
        "dispositions": dispositions,
    }


# ==== NDR STATS ==== #


async def ndr_stats(db: AsyncSession, window: StatsWindow) -> Dict[str, Any]:
    """NDR volume by status and type, resolution and RTO conversion rates."""
    with tracer.start_as_current_span("analytics_ndr_stats"):
        by_status = await _grouped(db, NDREvent, NDREvent.status, NDREvent.created_at, window)
        by_type = await _grouped(db, NDREvent, NDREvent.ndr_type, NDREvent.created_at, window)

        average_attempts = (await db.execute(_filtered(
            select(func.avg(NDREvent.attempt_count)), NDREvent, NDREvent.created_at, window,
        ))).scalar_one()

        resolved = await db.execute(_filtered(
            select(NDREvent.created_at, NDREvent.resolved_at).where(NDREvent.resolved_at.is_not(None)),
            NDREvent, NDREvent.created_at, window,
        ))

    resolved_count = by_status.get(NDRStatus.RESOLVED.value, 0)
    rto_count = by_status.get(NDRStatus.RTO_TRIGGERED.value, 0)
    closed = resolved_count + rto_count
    return {
        "total_ndrs": sum(by_status.values()),
        "by_status": by_status,
        "by_type": by_type,
        "open_ndrs": sum(count for status, count in by_status.items() if status not in (
            NDRStatus.RESOLVED.value, NDRStatus.RTO_TRIGGERED.value
        )),
        "resolution_rate": _ratio(resolved_count, closed),
        "rto_conversion_rate": _ratio(rto_count, closed),
        "average_attempts": round(float(average_attempts or 0), 2),
        "average_resolution_hours": _average_hours(resolved.all()),
    }
