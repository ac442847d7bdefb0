# ==== SLA DEADLINE MONITOR ==== #

"""
Periodic sweep over NDR Events and return orders.

Every entity a sweep acts on is first claimed with a conditional UPDATE
that re-checks the selecting predicate and bumps ``version``; only a claim
with ``rowcount == 1`` goes on to side effects, so overlapping sweeps (or a
sweep racing a user write) act on each entity at most once. Each entity is
processed in its own session and a failure is logged and counted without
aborting the rest of the sweep.

Sweep steps:
    1. NDRs in resolution past their deadline are escalated, then handed to
       the RTO Engine or reported to operations
    2. Escalated NDRs whose auto-RTO failed are retried once their lease expires
    3. Returns past a pickup, QC or refund deadline are flagged breached once
       per stage and reported; nothing is cancelled automatically
    4. NDR workflow actions whose delay has elapsed are executed
"""

import asyncio
import datetime as dt
import time
from dataclasses import asdict, dataclass
from typing import Any, AsyncContextManager, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from reverse_logistics.business.access import Actor
from reverse_logistics.business.errors import ConflictError, RateLimitedError, UpstreamError
from reverse_logistics.business.reason_codes import RTOReason, RTOTrigger
from reverse_logistics.business.refunds import REFUNDABLE_QC_RESULTS
from reverse_logistics.business.state_machines import NDRStatus, RefundStatus, ReturnStatus
from reverse_logistics.integrations.ports import Collaborators
from reverse_logistics.observability.logging import get_logger, log_business_event
from reverse_logistics.observability.metrics import (
    sla_breach_count,
    sla_sweep_claims_total,
    sla_sweep_duration_seconds,
    sla_sweep_failures_total,
)
from reverse_logistics.observability.tracing import get_tracer
from reverse_logistics.services.ndr_resolver import NDRResolver
from reverse_logistics.services.policy_loader import get_workflow
from reverse_logistics.services.rto_engine import RTOEngine
from reverse_logistics.settings import settings
from reverse_logistics.storage.db import get_session
from reverse_logistics.storage.models import NDREvent, ReturnOrder, utcnow


tracer = get_tracer(__name__)
logger = get_logger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


@dataclass
class SweepReport:
    """Counts for one sweep."""

    escalated: int = 0
    auto_rtos: int = 0
    rto_retries: int = 0
    escalation_notices: int = 0
    breaches: int = 0
    actions_run: int = 0
    claims_lost: int = 0
    failures: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


# Return SLA stages: status guard, deadline column and breach flag per stage
_BREACH_STAGES = {
    "pickup": (
        ReturnOrder.status.in_([ReturnStatus.REQUESTED.value, ReturnStatus.APPROVED.value]),
        ReturnOrder.sla_pickup_deadline,
        ReturnOrder.sla_pickup_breached,
    ),
    "qc": (
        ReturnOrder.status == ReturnStatus.QC_PENDING.value,
        ReturnOrder.sla_qc_deadline,
        ReturnOrder.sla_qc_breached,
    ),
    "refund": (
        and_(
            ReturnOrder.status == ReturnStatus.QC_COMPLETED.value,
            ReturnOrder.refund_status != RefundStatus.COMPLETED.value,
        ),
        ReturnOrder.sla_refund_deadline,
        ReturnOrder.sla_refund_breached,
    ),
}


class DeadlineMonitor:
    """
    Claims due entities and fires their auto-actions.

    Args:
        collaborators: Ports used for notifications and the auto-RTO
        session_factory: Async context manager yielding a committing session
        rto_engine: Engine for auto-RTOs; built from ``collaborators`` if omitted
        resolver: Workflow executor for due NDR actions
        clock: Naive-UTC time source
        batch_size: Max entities per step per sweep
        concurrency: Max entities processed at once
    """

    def __init__(
        self,
        collaborators: Collaborators,
        session_factory: SessionFactory = get_session,
        rto_engine: Optional[RTOEngine] = None,
        resolver: Optional[NDRResolver] = None,
        clock: Callable[[], dt.datetime] = utcnow,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        workflow_path: Optional[str] = None,
    ):
        self.collaborators = collaborators
        self.session_factory = session_factory
        self.rto_engine = rto_engine or RTOEngine(collaborators)
        self.resolver = resolver or NDRResolver(collaborators, self.rto_engine, workflow_path)
        self.clock = clock
        self.batch_size = batch_size or settings.SLA_SWEEP_BATCH_SIZE
        self.concurrency = concurrency or settings.SLA_SWEEP_CONCURRENCY
        self.workflow_path = workflow_path
        self.actor = Actor.system()

    # ==== SWEEP ==== #

    async def sweep_once(self, now: Optional[dt.datetime] = None) -> SweepReport:
        """
        Run every sweep step once.

        Args:
            now: Sweep time; defaults to the monitor clock

        Returns:
            SweepReport: What the sweep did
        """
        now = now or self.clock()
        report = SweepReport()
        started = time.perf_counter()

        with tracer.start_as_current_span("sla_sweep") as span:
            await self._for_each("ndr_escalation", await self._expired_ndrs(now),
                                 lambda ndr_id: self._escalate_ndr(ndr_id, now, report), report)
            await self._for_each("ndr_rto_retry", await self._stale_rto_claims(now),
                                 lambda ndr_id: self._retry_auto_rto(ndr_id, now, report), report)
            for stage in _BREACH_STAGES:
                await self._for_each(f"return_{stage}_breach", await self._breached_returns(stage, now),
                                     lambda return_pk, stage=stage: self._flag_breach(return_pk, stage, now, report),
                                     report)
            await self._for_each("ndr_actions", await self._due_actions(now),
                                 lambda row: self._run_due_actions(row[0], row[1], now, report), report)

            for key, value in report.to_dict().items():
                span.set_attribute(key, value)

        duration = time.perf_counter() - started
        sla_sweep_duration_seconds.observe(duration)
        logger.info("Deadline sweep completed", duration_seconds=round(duration, 3), **report.to_dict())
        return report

    async def run(self, stop_event: asyncio.Event, interval: Optional[float] = None) -> None:
        """Sweep until ``stop_event`` is set, stopping between iterations."""
        interval = interval if interval is not None else settings.SLA_SWEEP_INTERVAL_SECONDS
        logger.info("Deadline monitor started", interval_seconds=interval)

        while not stop_event.is_set():
            try:
                await self.sweep_once()
            except Exception as e:
                # Candidate queries failing (database down) must not kill the worker
                sla_sweep_failures_total.labels(kind="sweep", error_type=type(e).__name__).inc()
                logger.exception("Deadline sweep failed", error=str(e))

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

        logger.info("Deadline monitor stopped")

    async def _for_each(
        self,
        kind: str,
        items: List[Any],
        handler: Callable[[Any], Awaitable[Optional[bool]]],
        report: SweepReport,
    ) -> None:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def isolated(item: Any) -> None:
            async with semaphore:
                try:
                    won = await handler(item)
                except Exception as e:
                    report.failures += 1
                    sla_sweep_failures_total.labels(kind=kind, error_type=type(e).__name__).inc()
                    logger.exception("Deadline sweep entity failed", kind=kind, entity=str(item), error=str(e))
                    return
                outcome = "won" if won else "lost"
                if not won:
                    report.claims_lost += 1
                sla_sweep_claims_total.labels(kind=kind, outcome=outcome).inc()

        await asyncio.gather(*(isolated(item) for item in items))

    # ==== CANDIDATE QUERIES ==== #

    async def _ids(self, stmt) -> List[Any]:
        async with self.session_factory() as db:
            result = await db.execute(stmt.limit(self.batch_size))
            return list(result.all())

    async def _expired_ndrs(self, now: dt.datetime) -> List[int]:
        rows = await self._ids(
            select(NDREvent.id)
            .where(NDREvent.status == NDRStatus.IN_RESOLUTION.value, NDREvent.resolution_deadline < now)
            .order_by(NDREvent.resolution_deadline)
        )
        return [row[0] for row in rows]

    async def _stale_rto_claims(self, now: dt.datetime) -> List[int]:
        cutoff = now - dt.timedelta(seconds=settings.SLA_AUTO_RTO_LEASE_SECONDS)
        rows = await self._ids(
            select(NDREvent.id)
            .where(
                NDREvent.status == NDRStatus.ESCALATED.value,
                NDREvent.rto_pending.is_(True),
                NDREvent.rto_claimed_at < cutoff,
            )
            .order_by(NDREvent.rto_claimed_at)
        )
        return [row[0] for row in rows]

    async def _breached_returns(self, stage: str, now: dt.datetime) -> List[int]:
        guard, deadline, flag = _BREACH_STAGES[stage]
        rows = await self._ids(
            select(ReturnOrder.id)
            .where(
                guard,
                deadline < now,
                flag.is_(False),
                ReturnOrder.is_deleted.is_(False),
            )
            .order_by(deadline)
        )
        return [row[0] for row in rows]

    async def _due_actions(self, now: dt.datetime) -> List[Any]:
        return await self._ids(
            select(NDREvent.id, NDREvent.next_action_due_at)
            .where(
                NDREvent.status == NDRStatus.IN_RESOLUTION.value,
                NDREvent.awaiting_input.is_(False),
                NDREvent.next_action_due_at <= now,
            )
            .order_by(NDREvent.next_action_due_at)
        )

    # ==== NDR ESCALATION ==== #

    @staticmethod
    async def _claim(db: AsyncSession, stmt) -> bool:
        result = await db.execute(stmt.execution_options(synchronize_session=False))
        return result.rowcount == 1

    async def _escalate_ndr(self, ndr_id: int, now: dt.datetime, report: SweepReport) -> bool:
        async with self.session_factory() as db:
            ndr_type = (await db.execute(select(NDREvent.ndr_type).where(NDREvent.id == ndr_id))).scalar_one()
            workflow = get_workflow(ndr_type or "other", self.workflow_path)

            won = await self._claim(db, update(NDREvent).where(
                NDREvent.id == ndr_id,
                NDREvent.status == NDRStatus.IN_RESOLUTION.value,
                NDREvent.resolution_deadline < now,
            ).values(
                status=NDRStatus.ESCALATED.value,
                escalated_at=now,
                escalation_reason="Resolution deadline passed",
                next_action_due_at=None,
                rto_pending=workflow.auto_trigger_rto,
                rto_claimed_at=now if workflow.auto_trigger_rto else None,
                updated_at=now,
                version=NDREvent.version + 1,
            ))
            if not won:
                return False

            ndr = await db.get(NDREvent, ndr_id)
            ndr.append_action({
                "action": "escalate",
                "sequence": ndr.next_action_index + 1,
                "status": "success",
                "actor": self.actor.as_audit(),
                "timestamp": now.isoformat(),
                "result": {"reason": "Resolution deadline passed", "auto_trigger_rto": workflow.auto_trigger_rto},
            })
            await db.flush()
            # Escalation stands even if the follow-up below fails
            await db.commit()

            report.escalated += 1
            sla_breach_count.labels(entity="ndr", stage="resolution").inc()
            log_business_event("ndr_escalated", ndr.company_id, ndr_id=ndr_id, reason="deadline", actor=self.actor.id)

            if workflow.auto_trigger_rto:
                await self._auto_rto(db, ndr, now, report)
            else:
                await self._notify_escalation("ndr_escalated", {
                    "ndr_id": ndr.id,
                    "shipment_id": ndr.shipment_id,
                    "company_id": ndr.company_id,
                    "ndr_type": ndr.ndr_type,
                    "deadline": ndr.resolution_deadline.isoformat() if ndr.resolution_deadline else None,
                })
                report.escalation_notices += 1
            return True

    async def _retry_auto_rto(self, ndr_id: int, now: dt.datetime, report: SweepReport) -> bool:
        cutoff = now - dt.timedelta(seconds=settings.SLA_AUTO_RTO_LEASE_SECONDS)
        async with self.session_factory() as db:
            won = await self._claim(db, update(NDREvent).where(
                NDREvent.id == ndr_id,
                NDREvent.status == NDRStatus.ESCALATED.value,
                NDREvent.rto_pending.is_(True),
                NDREvent.rto_claimed_at < cutoff,
            ).values(rto_claimed_at=now, updated_at=now, version=NDREvent.version + 1))
            if not won:
                return False
            await db.commit()

            ndr = await db.get(NDREvent, ndr_id)
            report.rto_retries += 1
            await self._auto_rto(db, ndr, now, report)
            return True

    async def _auto_rto(self, db: AsyncSession, ndr: NDREvent, now: dt.datetime, report: SweepReport) -> None:
        """Hand an escalated NDR to the RTO Engine; upstream failures wait for the lease."""
        try:
            rto = await self.rto_engine.trigger_rto(
                db,
                shipment_id=ndr.shipment_id,
                reason=RTOReason.NDR_UNRESOLVED,
                trigger=RTOTrigger.AUTO,
                actor=self.actor,
                source_ndr_id=ndr.id,
                remarks="Auto-triggered after the NDR resolution deadline passed",
                now=now,
            )
        except (UpstreamError, RateLimitedError) as e:
            logger.warning(
                "Auto-RTO deferred",
                ndr_id=ndr.id,
                shipment_id=ndr.shipment_id,
                error_code=e.code,
                error=e.message,
            )
            return
        except ConflictError as e:
            if e.code != "RTO_ALREADY_ACTIVE":
                raise
            # Someone else already returned the shipment; stop retrying
            ndr = await db.get(NDREvent, ndr.id, populate_existing=True)
            ndr.rto_pending = False
            await db.flush()
            logger.warning("Auto-RTO skipped, shipment already has an active RTO", ndr_id=ndr.id)
            return

        report.auto_rtos += 1
        logger.info("Auto-RTO triggered", ndr_id=ndr.id, rto_id=rto.id, shipment_id=ndr.shipment_id)

    # ==== RETURN SLA BREACHES ==== #

    async def _flag_breach(self, return_pk: int, stage: str, now: dt.datetime, report: SweepReport) -> bool:
        guard, deadline, flag = _BREACH_STAGES[stage]
        async with self.session_factory() as db:
            won = await self._claim(db, update(ReturnOrder).where(
                ReturnOrder.id == return_pk,
                guard,
                deadline < now,
                flag.is_(False),
            ).values(
                **{flag.key: True},
                sla_is_breached=True,
                sla_breached_at=now,
                sla_breached_stage=stage,
                updated_at=now,
                version=ReturnOrder.version + 1,
            ))
            if not won:
                return False

            return_order = await db.get(ReturnOrder, return_pk)
            return_order.append_timeline({
                "status": return_order.status,
                "timestamp": now.isoformat(),
                "actor": self.actor.as_audit(),
                "action": "sla_breached",
                "notes": f"{stage} deadline passed",
                "metadata": {"stage": stage},
            })
            await db.flush()
            await db.commit()

        report.breaches += 1
        sla_breach_count.labels(entity="return", stage=stage).inc()
        log_business_event("return_sla_breached", return_order.company_id,
                           return_id=return_order.return_id, stage=stage)
        await self._notify_escalation("return_sla_breached", {
            "return_id": return_order.return_id,
            "order_id": return_order.order_id,
            "company_id": return_order.company_id,
            "status": return_order.status,
            "stage": stage,
            "qc_passed": (return_order.qc or {}).get("result") in REFUNDABLE_QC_RESULTS,
        })
        report.escalation_notices += 1
        return True

    # ==== DUE WORKFLOW ACTIONS ==== #

    async def _run_due_actions(self, ndr_id: int, due_at: dt.datetime, now: dt.datetime, report: SweepReport) -> bool:
        async with self.session_factory() as db:
            # Claim and actions share one transaction; a failure re-arms the claim
            won = await self._claim(db, update(NDREvent).where(
                NDREvent.id == ndr_id,
                NDREvent.status == NDRStatus.IN_RESOLUTION.value,
                NDREvent.next_action_due_at == due_at,
            ).values(next_action_due_at=None, version=NDREvent.version + 1))
            if not won:
                return False

            await self.resolver.execute_due_actions(db, ndr_id, now)
            report.actions_run += 1
            return True

    async def _notify_escalation(self, template: str, data: Dict[str, Any]) -> None:
        await self.collaborators.notifications.notify(
            settings.ESCALATION_CHANNEL, settings.ESCALATION_RECIPIENT, template, data
        )
