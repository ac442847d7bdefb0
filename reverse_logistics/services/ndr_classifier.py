# ==== NDR CLASSIFIER SERVICE ==== #

"""
NDR classification into canonical types.

Classification is deterministic (carrier code table, then ordered remark
keyword rules) and idempotent: reclassifying recomputes the type and the
resolution deadline from the original ``classified_at`` and only records
history when the type actually changes.
"""

import datetime as dt
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from reverse_logistics.business.ndr_types import classify_reason
from reverse_logistics.business.state_machines import NDRStatus, assert_transition
from reverse_logistics.observability.logging import get_logger
from reverse_logistics.observability.metrics import ndr_classified_total
from reverse_logistics.observability.tracing import get_tracer
from reverse_logistics.services.ndr_detector import get_ndr_event
from reverse_logistics.services.policy_loader import get_workflow
from reverse_logistics.storage.db import flush_or_conflict
from reverse_logistics.storage.models import NDREvent, utcnow


tracer = get_tracer(__name__)
logger = get_logger(__name__)

# Statuses in which an NDR may be (re)classified
_CLASSIFIABLE = frozenset({
    NDRStatus.DETECTED.value,
    NDRStatus.CLASSIFYING.value,
    NDRStatus.IN_RESOLUTION.value,
})


class NDRClassifier:
    """Assigns NDR types and resolution deadlines."""

    def __init__(self, workflow_path: Optional[str] = None):
        self.workflow_path = workflow_path

    async def classify(self, db: AsyncSession, ndr_id: int, now: Optional[dt.datetime] = None) -> NDREvent:
        """
        Classify an NDR and move it into resolution.

        Args:
            db: Database session
            ndr_id: NDR Event id
            now: Classification time for first classification (defaults to now)

        Returns:
            NDREvent: Classified event in ``in_resolution``

        Raises:
            NotFoundError: Unknown NDR
            InvalidTransitionError: NDR is escalated or terminal
        """
        ndr = await get_ndr_event(db, ndr_id)

        with tracer.start_as_current_span("ndr_classify") as span:
            span.set_attribute("ndr_id", ndr_id)

            if ndr.status not in _CLASSIFIABLE:
                assert_transition("ndr", ndr.status, NDRStatus.CLASSIFYING)

            ndr_type = classify_reason(ndr.raw_reason, ndr.carrier_code)
            workflow = get_workflow(ndr_type, self.workflow_path)
            classified_at = ndr.classified_at or now or utcnow()
            previous_type = ndr.ndr_type

            if ndr.status == NDRStatus.DETECTED.value:
                assert_transition("ndr", ndr.status, NDRStatus.CLASSIFYING)
                ndr.status = NDRStatus.CLASSIFYING.value
            if ndr.status == NDRStatus.CLASSIFYING.value:
                assert_transition("ndr", ndr.status, NDRStatus.IN_RESOLUTION)
                ndr.status = NDRStatus.IN_RESOLUTION.value

            ndr.classified_at = classified_at
            ndr.resolution_deadline = classified_at + dt.timedelta(hours=workflow.max_resolution_hours)

            if previous_type != ndr_type.value:
                ndr.ndr_type = ndr_type.value
                ndr.append_classification({
                    "ndr_type": ndr_type.value,
                    "previous_type": previous_type,
                    "reason": ndr.raw_reason,
                    "timestamp": (now or utcnow()).isoformat(),
                })
                # A different workflow restarts from its first action
                ndr.next_action_index = 0
                ndr.next_action_due_at = None
                ndr.awaiting_input = False
                ndr_classified_total.labels(ndr_type=ndr_type.value).inc()

            await flush_or_conflict(db, "ndr")

            span.set_attribute("ndr_type", ndr_type.value)
            span.set_attribute("type_changed", previous_type != ndr_type.value)
            logger.info(
                "NDR classified",
                ndr_id=ndr.id,
                ndr_type=ndr_type.value,
                previous_type=previous_type,
                resolution_deadline=ndr.resolution_deadline.isoformat(),
            )
            return ndr
