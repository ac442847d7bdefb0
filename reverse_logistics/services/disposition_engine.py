# ==== DISPOSITION ENGINE SERVICE ==== #

"""
Post-QC disposition of RTO goods.

Suggests what to do with returned goods (restock, scrap, return to seller or
hold for review) from the QC record, and executes the chosen action with its
side effects: stock is credited back for restocks, and scrapped goods that
were damaged in transit are credited to the seller through the payment
service. Execution first claims the RTO with a versioned, committed lease
and commits each applied side effect, so a retry after a partial failure
never credits the same SKU twice.
"""

import datetime as dt
import re
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from reverse_logistics.business.access import Actor, ActorRole, ensure_company_access, ensure_role
from reverse_logistics.business.errors import ConflictError, DomainValidationError, ForbiddenError, UpstreamError
from reverse_logistics.business.quality_check import accepted_quantities, rejected_quantities
from reverse_logistics.business.reason_codes import (
    EXECUTABLE_DISPOSITIONS,
    DispositionAction,
    QCResult,
    is_courier_liable,
)
from reverse_logistics.business.state_machines import RTOStatus, assert_transition
from reverse_logistics.integrations.ports import Collaborators
from reverse_logistics.observability.logging import get_logger, log_business_event
from reverse_logistics.observability.metrics import dispositions_total
from reverse_logistics.observability.tracing import get_tracer
from reverse_logistics.services.rto_engine import get_rto_event
from reverse_logistics.settings import settings
from reverse_logistics.storage.db import flush_or_conflict
from reverse_logistics.storage.models import RTOEvent, utcnow


tracer = get_tracer(__name__)
logger = get_logger(__name__)


# ==== SUGGESTION RULES ==== #


# Categories that can never go back on the shelf once they left the warehouse
NON_RESTOCKABLE_CATEGORIES = frozenset({
    "perishable",
    "food",
    "grocery",
    "cosmetics",
    "personal_care",
    "innerwear",
    "medicine",
    "hygiene",
})

# QC notes that make the verdict uncertain
AMBIGUITY_PATTERN = re.compile(
    r"\bunclear\b|\bunsure\b|\binconclusive\b|\bneeds? review\b|\bsuspect|\btamper|\bverify\b",
    re.IGNORECASE,
)

# QC notes describing goods fit to send back but not to resell
CONDITION_PATTERN = re.compile(
    r"\bused\b|\bworn\b|\bseal (broken|opened)\b|\bopened\b|\bmissing (tag|tags|accessor\w*)\b"
    r"|\bpackaging damaged\b|\bbox damaged\b|\bminor damage\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class DispositionSuggestion:
    action: DispositionAction
    reason: str


def _qc_text(qc: Dict) -> str:
    parts = [qc.get("notes") or ""]
    for item in qc.get("items", []):
        parts.append(item.get("condition") or "")
        parts.append(item.get("notes") or "")
    return " ".join(part for part in parts if part)


def suggest_for_qc(qc: Dict, product_category: Optional[str]) -> DispositionSuggestion:
    """Pure suggestion rule over a QC record and the product category."""
    result = QCResult(qc["result"])
    text = _qc_text(qc)

    if result == QCResult.REJECTED:
        return DispositionSuggestion(DispositionAction.SCRAP, "QC rejected every item")
    if result == QCResult.PARTIAL:
        return DispositionSuggestion(DispositionAction.HOLD_FOR_REVIEW, "QC accepted only part of the items")
    if AMBIGUITY_PATTERN.search(text):
        return DispositionSuggestion(DispositionAction.HOLD_FOR_REVIEW, "QC notes flag an uncertain verdict")
    if product_category and product_category.strip().lower() in NON_RESTOCKABLE_CATEGORIES:
        return DispositionSuggestion(
            DispositionAction.RETURN_TO_SELLER, f"Category '{product_category}' cannot be restocked"
        )
    if CONDITION_PATTERN.search(text):
        return DispositionSuggestion(DispositionAction.RETURN_TO_SELLER, "QC notes describe used or opened goods")
    return DispositionSuggestion(DispositionAction.RESTOCK, "QC approved, goods are resaleable")


# ==== DISPOSITION ENGINE ==== #


class DispositionEngine:
    """Suggests and executes dispositions for QC-completed RTOs."""

    def __init__(self, collaborators: Collaborators):
        self.collaborators = collaborators

    async def suggest_disposition(self, db: AsyncSession, rto_id: int, actor: Actor) -> DispositionSuggestion:
        """
        Suggest a disposition without changing anything.

        Raises:
            InvalidTransitionError: QC not completed yet
        """
        rto = await get_rto_event(db, rto_id)
        ensure_company_access(actor, rto.company_id, "rto")
        if rto.qc_completed_at is None or not rto.qc:
            assert_transition("rto", rto.return_status, RTOStatus.DISPOSED)
        return suggest_for_qc(rto.qc, rto.product_category)

    async def execute_disposition(
        self,
        db: AsyncSession,
        rto_id: int,
        action: DispositionAction | str,
        actor: Actor,
        notes: Optional[str] = None,
        override: bool = False,
        now: Optional[dt.datetime] = None,
    ) -> RTOEvent:
        """
        Execute a disposition and move the RTO to ``disposed``.

        Args:
            db: Database session
            rto_id: RTO Event id
            action: restock, scrap or return_to_seller
            actor: Warehouse user or admin
            notes: Free-text note
            override: Allow restocking goods the QC rejected (admin only)
            now: Execution time

        Returns:
            RTOEvent: Disposed event with its disposition record

        Raises:
            ConflictError: ``RTO_ALREADY_DISPOSED``, or another execution holds the lease
            ForbiddenError: Override by a non-admin
            InvalidTransitionError: QC not completed
            DomainValidationError: hold_for_review, or restock of rejected goods without override
            UpstreamError: Inventory or payment call failed; RTO left undisposed and a retry
                resumes after the side effects already applied
        """
        now = now or utcnow()
        action = DispositionAction(action)
        rto = await get_rto_event(db, rto_id)
        ensure_company_access(actor, rto.company_id, "rto")
        ensure_role(actor, ActorRole.WAREHOUSE)

        if rto.return_status == RTOStatus.DISPOSED.value:
            raise ConflictError(
                "RTO already disposed",
                code="RTO_ALREADY_DISPOSED",
                details={"rto_id": rto_id, "action": (rto.disposition or {}).get("action")},
            )
        assert_transition("rto", rto.return_status, RTOStatus.DISPOSED)

        if action not in EXECUTABLE_DISPOSITIONS:
            raise DomainValidationError.for_field(
                "action", "hold_for_review is a suggestion only; choose restock, scrap or return_to_seller"
            )
        if override and not actor.is_privileged:
            raise ForbiddenError("Only an admin can override a QC verdict")

        qc = rto.qc or {}
        result = QCResult(qc["result"])
        if action == DispositionAction.RESTOCK and result == QCResult.REJECTED and not override:
            raise DomainValidationError.for_field("action", "Goods rejected at QC cannot be restocked without override")

        with tracer.start_as_current_span("rto_execute_disposition") as span:
            span.set_attribute("rto_id", rto_id)
            span.set_attribute("action", action.value)
            span.set_attribute("override", override)

            await self._claim(db, rto, action, override, now)
            try:
                credit_cents, transaction_id = await self._apply(db, rto, action, override, qc, result)
            except UpstreamError:
                await self._release(db, rto)
                raise

            rto.disposition = {
                "action": action.value,
                "actor": actor.as_audit(),
                "notes": notes,
                "override": override,
                "restocked": dict(rto.disposition_progress.get("applied") or {}),
                "credit_adjustment_cents": credit_cents,
                "transaction_id": transaction_id,
                "executed_at": now.isoformat(),
            }
            previous = rto.return_status
            rto.return_status = RTOStatus.DISPOSED.value
            rto.append_history({
                "from": previous,
                "to": RTOStatus.DISPOSED.value,
                "actor": actor.as_audit(),
                "timestamp": now.isoformat(),
                "disposition": action.value,
            })
            await flush_or_conflict(db, "rto")

        dispositions_total.labels(action=action.value, override=str(override).lower()).inc()
        log_business_event(
            "rto_disposed",
            rto.company_id,
            rto_id=rto.id,
            action=action.value,
            override=override,
            credit_adjustment_cents=credit_cents,
        )
        return rto

    # --► EXECUTION PROGRESS

    async def _save_progress(self, db: AsyncSession, rto: RTOEvent, **changes) -> None:
        # Committed at once so a retry sees what already reached the collaborators
        rto.disposition_progress = {**(rto.disposition_progress or {}), **changes}
        await flush_or_conflict(db, "rto")
        await db.commit()

    async def _claim(
        self, db: AsyncSession, rto: RTOEvent, action: DispositionAction, override: bool, now: dt.datetime
    ) -> None:
        """
        Take the execution lease before any side effect.

        Raises:
            ConflictError: ``CONCURRENT_MODIFICATION`` while another execution
                holds the lease or a different action is half applied
        """
        progress = rto.disposition_progress
        if progress:
            if progress["action"] != action.value or progress["override"] != override:
                raise ConflictError(
                    f"Disposition '{progress['action']}' is partly applied; retry it to finish",
                    code="CONCURRENT_MODIFICATION",
                    details={"entity": "rto", "action": progress["action"]},
                )
            claimed_at = progress.get("claimed_at")
            lease = dt.timedelta(seconds=settings.DISPOSITION_LEASE_SECONDS)
            if claimed_at and dt.datetime.fromisoformat(claimed_at) > now - lease:
                raise ConflictError(
                    "Disposition is being executed",
                    code="CONCURRENT_MODIFICATION",
                    details={"entity": "rto", "action": action.value},
                )
            await self._save_progress(db, rto, claimed_at=now.isoformat())
            return

        await self._save_progress(
            db, rto,
            action=action.value,
            override=override,
            claimed_at=now.isoformat(),
            applied={},
            transaction_id=None,
        )

    async def _release(self, db: AsyncSession, rto: RTOEvent) -> None:
        await self._save_progress(db, rto, claimed_at=None)

    async def _apply(
        self,
        db: AsyncSession,
        rto: RTOEvent,
        action: DispositionAction,
        override: bool,
        qc: Dict,
        result: QCResult,
    ) -> Tuple[int, Optional[str]]:
        """Run the side effects not yet recorded in the progress; returns (credit, transaction id)."""
        reference = f"rto-disposition:{rto.id}"

        if action == DispositionAction.RESTOCK:
            quantities = accepted_quantities(qc)
            if override and result == QCResult.REJECTED:
                quantities = rejected_quantities(qc)
            for sku, quantity in quantities.items():
                applied = rto.disposition_progress.get("applied") or {}
                if quantity <= 0 or sku in applied:
                    continue
                await self.collaborators.inventory.adjust_stock(sku, quantity, f"{reference}:{sku}")
                await self._save_progress(db, rto, applied={**applied, sku: quantity})
            return 0, None

        if action == DispositionAction.SCRAP and is_courier_liable(rto.rto_reason):
            credit_cents = self._rejected_value(rto, qc)
            if credit_cents <= 0:
                return 0, None
            if rto.disposition_progress.get("transaction_id") is None:
                receipt = await self.collaborators.payment.refund(rto.company_id, credit_cents, reference)
                await self._save_progress(db, rto, transaction_id=receipt.transaction_id)
            return credit_cents, rto.disposition_progress["transaction_id"]

        return 0, None

    @staticmethod
    def _rejected_value(rto: RTOEvent, qc: Dict) -> int:
        prices = {item["sku"]: int(item["unit_price_cents"]) for item in rto.items or []}
        return sum(quantity * prices.get(sku, 0) for sku, quantity in rejected_quantities(qc).items())
