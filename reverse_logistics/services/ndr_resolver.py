# ==== NDR RESOLVER SERVICE ==== #

"""
NDR resolution workflow execution.

Runs the configured workflow of a classified NDR: sequenced actions with
delays measured from classification, manual steps that pause until an input
arrives, and re-evaluation on every customer or warehouse input. The
deadline-driven escalation to RTO lives in the deadline monitor.

State machine::

    detected -> classifying -> in_resolution -> {resolved | escalated}
    escalated -> {rto_triggered | resolved}
"""

import datetime as dt
from typing import TYPE_CHECKING, Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from reverse_logistics.business.access import (
    Actor,
    ActorRole,
    ensure_company_access,
    ensure_record_access,
    ensure_role,
)
from reverse_logistics.business.errors import (
    ConflictError,
    DomainValidationError,
    ForbiddenError,
    RateLimitedError,
    UpstreamError,
)
from reverse_logistics.business.ndr_types import ACTION_CHANNELS, NDRActionType, NDRInputType, NDRType
from reverse_logistics.business.reason_codes import RTOReason, RTOTrigger
from reverse_logistics.business.state_machines import NDR_OPEN_STATUSES, NDRStatus, assert_transition
from reverse_logistics.integrations.ports import Collaborators, ShipmentSnapshot
from reverse_logistics.observability.logging import get_logger, log_business_event
from reverse_logistics.observability.metrics import ndr_actions_executed_total, ndr_outcomes_total
from reverse_logistics.observability.tracing import get_tracer
from reverse_logistics.services.ndr_detector import get_ndr_event
from reverse_logistics.services.policy_loader import WorkflowAction, WorkflowDefinition, get_workflow
from reverse_logistics.storage.db import flush_or_conflict
from reverse_logistics.storage.models import NDREvent, utcnow

if TYPE_CHECKING:
    from reverse_logistics.services.rto_engine import RTOEngine


tracer = get_tracer(__name__)
logger = get_logger(__name__)

# Inputs that close the NDR (after any courier follow-up); the only ones open to customers
RESOLUTION_INPUTS = frozenset({
    NDRInputType.ADDRESS_UPDATED,
    NDRInputType.REATTEMPT_REQUESTED,
    NDRInputType.CUSTOMER_CONFIRMED,
})


def shipment_from_ndr(ndr: NDREvent) -> ShipmentSnapshot:
    return ShipmentSnapshot(
        shipment_id=ndr.shipment_id,
        order_id=ndr.order_id,
        company_id=ndr.company_id,
        customer_id=ndr.customer_id,
        awb=ndr.awb,
        customer_contact=dict(ndr.customer_contact or {}),
    )


def requested_rto_reason(payload: Dict[str, Any]) -> RTOReason:
    """
    Raises:
        DomainValidationError: Unknown RTO reason
    """
    value = payload.get("reason", RTOReason.NDR_UNRESOLVED.value)
    try:
        return RTOReason(value)
    except ValueError as e:
        raise DomainValidationError.for_field("reason", f"Unknown RTO reason '{value}'") from e


class NDRResolver:
    """
    Executes NDR resolution workflows.

    Args:
        collaborators: Courier and notification ports used by actions
        rto_engine: Engine used by ``trigger_rto`` actions and RTO requests
        workflow_path: Optional workflow YAML override
    """

    def __init__(
        self,
        collaborators: Collaborators,
        rto_engine: Optional["RTOEngine"] = None,
        workflow_path: Optional[str] = None,
    ):
        self.collaborators = collaborators
        self.rto_engine = rto_engine
        self.workflow_path = workflow_path

    def _workflow(self, ndr: NDREvent) -> WorkflowDefinition:
        return get_workflow(ndr.ndr_type or NDRType.OTHER, self.workflow_path)

    # --► WORKFLOW EXECUTION

    async def start_workflow(self, db: AsyncSession, ndr_id: int, now: Optional[dt.datetime] = None) -> NDREvent:
        """
        Schedule the first pending action and run whatever is already due.

        Calling it again on a started workflow only runs due actions.

        Raises:
            InvalidTransitionError: NDR is not in resolution
        """
        now = now or utcnow()
        ndr = await get_ndr_event(db, ndr_id)
        if ndr.status != NDRStatus.IN_RESOLUTION.value:
            assert_transition("ndr", ndr.status, NDRStatus.IN_RESOLUTION)

        workflow = self._workflow(ndr)
        first = workflow.action_at(ndr.next_action_index)
        if first is not None and ndr.next_action_due_at is None and not ndr.awaiting_input:
            ndr.next_action_due_at = self._due_at(ndr, first)
            logger.info(
                "NDR workflow started",
                ndr_id=ndr.id,
                ndr_type=ndr.ndr_type,
                action_count=len(workflow.actions),
            )

        return await self.execute_due_actions(db, ndr_id, now)

    async def execute_due_actions(self, db: AsyncSession, ndr_id: int, now: Optional[dt.datetime] = None) -> NDREvent:
        """
        Run every auto action whose delay has elapsed, in sequence order.

        A manual action halts the cursor until ``record_input`` advances it;
        a ``trigger_rto`` action that succeeds ends the workflow.
        """
        now = now or utcnow()
        ndr = await get_ndr_event(db, ndr_id)
        if ndr.status != NDRStatus.IN_RESOLUTION.value:
            return ndr

        workflow = self._workflow(ndr)

        with tracer.start_as_current_span("ndr_execute_due_actions") as span:
            span.set_attribute("ndr_id", ndr.id)
            executed = 0

            while ndr.status == NDRStatus.IN_RESOLUTION.value:
                action = workflow.action_at(ndr.next_action_index)
                if action is None:
                    ndr.next_action_due_at = None
                    break

                due_at = self._due_at(ndr, action)
                if due_at > now:
                    ndr.next_action_due_at = due_at
                    break

                if not action.auto_execute:
                    if not ndr.awaiting_input:
                        ndr.awaiting_input = True
                        ndr.append_action(self._log_entry(action, "awaiting_input", Actor.system("workflow"), now))
                    ndr.next_action_due_at = None
                    break

                outcome = await self._execute_action(db, ndr, action, now)
                executed += 1
                if action.type == NDRActionType.TRIGGER_RTO and outcome["status"] == "success":
                    break
                ndr.next_action_index += 1

            span.set_attribute("actions_executed", executed)
            await flush_or_conflict(db, "ndr")
            return ndr

    @staticmethod
    def _due_at(ndr: NDREvent, action: WorkflowAction) -> dt.datetime:
        base = ndr.classified_at or ndr.created_at or utcnow()
        return base + dt.timedelta(minutes=action.delay_minutes)

    @staticmethod
    def _log_entry(
        action: WorkflowAction,
        status: str,
        actor: Actor,
        now: dt.datetime,
        result: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return {
            "action": action.type.value,
            "sequence": action.sequence,
            "status": status,
            "actor": actor.as_audit(),
            "timestamp": now.isoformat(),
            "result": result or {},
        }

    async def _execute_action(
        self,
        db: AsyncSession,
        ndr: NDREvent,
        action: WorkflowAction,
        now: dt.datetime,
    ) -> Dict[str, Any]:
        actor = Actor.system("workflow")
        with tracer.start_as_current_span("ndr_execute_action") as span:
            span.set_attribute("ndr_id", ndr.id)
            span.set_attribute("action", action.type.value)
            try:
                if action.type == NDRActionType.TRIGGER_RTO:
                    outcome = await self._trigger_rto(db, ndr, actor)
                elif action.type == NDRActionType.REQUEST_REATTEMPT:
                    response = await self.collaborators.courier.request_reattempt(shipment_from_ndr(ndr))
                    outcome = {"status": "success", "result": response or {}}
                else:
                    outcome = await self._send_message(ndr, action)
            except (UpstreamError, RateLimitedError) as e:
                outcome = {"status": "failed", "result": {"error": e.code, "message": e.message}}
            except ConflictError as e:
                if e.code != "RTO_ALREADY_ACTIVE":
                    raise
                outcome = {"status": "failed", "result": {"error": e.code, "message": e.message}}

            span.set_attribute("status", outcome["status"])

        ndr.append_action(self._log_entry(action, outcome["status"], actor, now, outcome["result"]))
        ndr_actions_executed_total.labels(action=action.type.value, status=outcome["status"]).inc()
        logger.info(
            "NDR workflow action executed",
            ndr_id=ndr.id,
            action=action.type.value,
            sequence=action.sequence,
            status=outcome["status"],
        )
        return outcome

    async def _send_message(self, ndr: NDREvent, action: WorkflowAction) -> Dict[str, Any]:
        contact = ndr.customer_contact or {}
        channel = ACTION_CHANNELS[action.type]
        recipient = contact.get("email") if channel == "email" else contact.get("phone")
        if not recipient:
            return {"status": "skipped", "result": {"reason": f"No {channel} contact available"}}

        await self.collaborators.notifications.notify(
            channel,
            recipient,
            action.template or f"ndr_{action.type.value}",
            {
                "ndr_id": ndr.id,
                "awb": ndr.awb,
                "order_id": ndr.order_id,
                "ndr_type": ndr.ndr_type,
                "reason": ndr.raw_reason,
                "customer_name": contact.get("name"),
            },
        )
        return {"status": "success", "result": {"channel": channel}}

    async def _trigger_rto(self, db: AsyncSession, ndr: NDREvent, actor: Actor) -> Dict[str, Any]:
        if self.rto_engine is None:
            return {"status": "skipped", "result": {"reason": "RTO engine not configured"}}
        rto = await self.rto_engine.trigger_rto(
            db,
            shipment_id=ndr.shipment_id,
            reason=RTOReason.NDR_UNRESOLVED,
            trigger=RTOTrigger.AUTO,
            actor=actor,
            source_ndr_id=ndr.id,
        )
        return {"status": "success", "result": {"rto_id": rto.id, "reverse_awb": rto.reverse_awb}}

    # --► INPUTS AND OUTCOMES

    async def record_input(
        self,
        db: AsyncSession,
        ndr_id: int,
        input_type: NDRInputType | str,
        actor: Actor,
        payload: Optional[Dict[str, Any]] = None,
        now: Optional[dt.datetime] = None,
    ) -> NDREvent:
        """
        Apply a customer or warehouse input and re-evaluate the workflow.

        Resolution inputs (address update, reattempt request, customer
        confirmation) resolve the NDR, the first two after asking the courier
        for a reattempt. ``rto_requested`` triggers a manual RTO. Anything
        else is logged and advances a paused workflow.

        Raises:
            DomainValidationError: Address update without an address, or an unknown RTO reason
            ForbiddenError: Input not open to the actor
            InvalidTransitionError: NDR already closed
            UpstreamError: Courier reattempt request failed
        """
        now = now or utcnow()
        input_type = NDRInputType(input_type)
        payload = payload or {}
        ndr = await get_ndr_event(db, ndr_id)
        ensure_record_access(actor, ndr.company_id, ndr.customer_id, "ndr")
        if actor.role == ActorRole.CUSTOMER and input_type not in RESOLUTION_INPUTS:
            raise ForbiddenError(f"Customers cannot submit '{input_type.value}'")

        if ndr.status not in {status.value for status in NDR_OPEN_STATUSES}:
            assert_transition("ndr", ndr.status, NDRStatus.RESOLVED)
        if input_type == NDRInputType.ADDRESS_UPDATED:
            address = payload.get("address")
            if not isinstance(address, dict) or not address:
                raise DomainValidationError.for_field("address", "Updated address is required")
        rto_reason = None
        if input_type == NDRInputType.RTO_REQUESTED:
            if self.rto_engine is None:
                raise DomainValidationError.for_field("input_type", "RTO requests are not supported here")
            ensure_role(actor, ActorRole.SELLER, ActorRole.WAREHOUSE)
            rto_reason = requested_rto_reason(payload)

        with tracer.start_as_current_span("ndr_record_input") as span:
            span.set_attribute("ndr_id", ndr.id)
            span.set_attribute("input_type", input_type.value)

            ndr.append_action({
                "action": f"input:{input_type.value}",
                "sequence": ndr.next_action_index + 1,
                "status": "received",
                "actor": actor.as_audit(),
                "timestamp": now.isoformat(),
                "result": {key: value for key, value in payload.items() if key != "address"},
            })

            if rto_reason is not None:
                await self.rto_engine.trigger_rto(
                    db,
                    shipment_id=ndr.shipment_id,
                    reason=rto_reason,
                    trigger=RTOTrigger.MANUAL,
                    actor=actor,
                    source_ndr_id=ndr.id,
                    remarks=payload.get("notes"),
                )
                return ndr

            if input_type in (NDRInputType.ADDRESS_UPDATED, NDRInputType.REATTEMPT_REQUESTED):
                address = payload.get("address")
                if input_type == NDRInputType.ADDRESS_UPDATED:
                    contact = dict(ndr.customer_contact or {})
                    contact["address"] = address
                    ndr.customer_contact = contact
                await self.collaborators.courier.request_reattempt(shipment_from_ndr(ndr), address=address)

            if input_type in RESOLUTION_INPUTS:
                return await self._close(db, ndr, input_type.value, actor, payload.get("notes"), now)

            # Warehouse confirmation completes a paused manual step
            if ndr.awaiting_input:
                ndr.awaiting_input = False
                ndr.next_action_index += 1
                ndr.next_action_due_at = None
            await flush_or_conflict(db, "ndr")
            return await self.execute_due_actions(db, ndr.id, now)

    async def resolve(
        self,
        db: AsyncSession,
        ndr_id: int,
        method: str,
        actor: Actor,
        notes: Optional[str] = None,
        now: Optional[dt.datetime] = None,
    ) -> NDREvent:
        """
        Close an NDR as resolved.

        Raises:
            ForbiddenError: Customer actor or another company's NDR
            InvalidTransitionError: Already resolved or superseded by an RTO
        """
        ndr = await get_ndr_event(db, ndr_id)
        ensure_company_access(actor, ndr.company_id, "ndr")
        ensure_role(actor, ActorRole.SELLER, ActorRole.WAREHOUSE)
        return await self._close(db, ndr, method, actor, notes, now or utcnow())

    async def _close(
        self,
        db: AsyncSession,
        ndr: NDREvent,
        method: str,
        actor: Actor,
        notes: Optional[str],
        now: dt.datetime,
    ) -> NDREvent:
        assert_transition("ndr", ndr.status, NDRStatus.RESOLVED)

        previous = ndr.status
        ndr.status = NDRStatus.RESOLVED.value
        ndr.resolved_at = now
        ndr.resolution_method = method
        ndr.resolved_by = actor.id
        ndr.resolution_notes = notes
        ndr.next_action_due_at = None
        ndr.awaiting_input = False
        ndr.rto_pending = False
        await flush_or_conflict(db, "ndr")

        ndr_outcomes_total.labels(outcome="resolved", ndr_type=ndr.ndr_type or "unclassified").inc()
        log_business_event(
            "ndr_resolved",
            ndr.company_id,
            ndr_id=ndr.id,
            method=method,
            resolved_by=actor.id,
            previous_status=previous,
        )
        return ndr

    async def escalate(
        self,
        db: AsyncSession,
        ndr_id: int,
        reason: str,
        actor: Actor,
        now: Optional[dt.datetime] = None,
    ) -> NDREvent:
        """
        Escalate an NDR for human handling. Escalating twice is a no-op.

        Raises:
            ForbiddenError: Customer actor or another company's NDR
            InvalidTransitionError: NDR already closed
        """
        now = now or utcnow()
        ndr = await get_ndr_event(db, ndr_id)
        ensure_company_access(actor, ndr.company_id, "ndr")
        ensure_role(actor, ActorRole.SELLER, ActorRole.WAREHOUSE)
        if ndr.status == NDRStatus.ESCALATED.value:
            logger.warning("NDR already escalated", ndr_id=ndr.id)
            return ndr
        assert_transition("ndr", ndr.status, NDRStatus.ESCALATED)

        ndr.status = NDRStatus.ESCALATED.value
        ndr.escalated_at = now
        ndr.escalation_reason = reason
        ndr.next_action_due_at = None
        ndr.append_action({
            "action": "escalate",
            "sequence": ndr.next_action_index + 1,
            "status": "success",
            "actor": actor.as_audit(),
            "timestamp": now.isoformat(),
            "result": {"reason": reason},
        })
        await flush_or_conflict(db, "ndr")

        ndr_outcomes_total.labels(outcome="escalated", ndr_type=ndr.ndr_type or "unclassified").inc()
        log_business_event("ndr_escalated", ndr.company_id, ndr_id=ndr.id, reason=reason, actor=actor.id)
        return ndr
