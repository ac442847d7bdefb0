"""Unit tests for NDR detection, classification and workflow execution."""

from datetime import timedelta
from unittest.mock import ANY

import pytest

from reverse_logistics.business.access import Actor, ActorRole
from reverse_logistics.business.errors import (
    DomainValidationError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    UpstreamError,
)
from reverse_logistics.business.ndr_types import NDRInputType
from reverse_logistics.business.state_machines import NDRStatus, RTOStatus
from reverse_logistics.services.analytics import StatsWindow
from reverse_logistics.services.ndr_detector import TrackingUpdate
from reverse_logistics.services.ndr_pipeline import NDRFilters, NDRPipeline
from reverse_logistics.services.rto_engine import find_active_rto


@pytest.fixture
def pipeline(collaborators, rto_engine):
    return NDRPipeline(collaborators, rto_engine=rto_engine)


def failed(base_time, remark="Customer not available, phone switched off", attempt=1, hours=0, code=None):
    return TrackingUpdate(
        status="UNDELIVERED",
        timestamp=base_time + timedelta(hours=hours),
        remark=remark,
        attempt_number=attempt,
        carrier_code=code,
    )


@pytest.mark.unit
class TestNDRDetection:
    """Test tracking update intake."""

    @pytest.mark.asyncio
    async def test_failed_attempt_creates_classified_ndr(self, db, pipeline, collaborators, system_actor, base_time):
        """Test a failed delivery becomes an NDR in resolution with its first action run."""
        ndr = await pipeline.process_update(db, "shp-1001", failed(base_time), system_actor, now=base_time)

        assert ndr.status == NDRStatus.IN_RESOLUTION.value
        assert ndr.ndr_type == "customer_unavailable"
        assert ndr.company_id == "comp-1"
        assert ndr.awb == "AWB1001"
        assert ndr.attempt_count == 1
        assert ndr.classified_at == base_time
        assert ndr.resolution_deadline == base_time + timedelta(hours=48)

        # WhatsApp goes out immediately, the SMS reminder waits an hour
        collaborators.notifications.notify.assert_awaited_once_with(
            "whatsapp", "+919800000001", "ndr_customer_unavailable", ANY
        )
        assert [entry["action"] for entry in ndr.action_log] == ["send_whatsapp"]
        assert ndr.next_action_index == 1
        assert ndr.next_action_due_at == base_time + timedelta(minutes=60)

    @pytest.mark.asyncio
    async def test_non_failure_updates_are_ignored(self, db, pipeline, system_actor, base_time):
        """Test in-transit updates create nothing."""
        update = TrackingUpdate(status="IN_TRANSIT", timestamp=base_time, remark="Reached hub")
        assert await pipeline.process_update(db, "shp-1001", update, system_actor, now=base_time) is None

    @pytest.mark.asyncio
    async def test_repeated_attempt_is_idempotent(self, db, pipeline, collaborators, system_actor, base_time):
        """Test replaying the same attempt neither duplicates the NDR nor re-runs actions."""
        first = await pipeline.process_update(db, "shp-1001", failed(base_time), system_actor, now=base_time)
        again = await pipeline.process_update(db, "shp-1001", failed(base_time), system_actor, now=base_time)

        assert again.id == first.id
        assert again.attempt_count == 1
        assert len(again.attempts) == 1
        assert collaborators.notifications.notify.await_count == 1

    @pytest.mark.asyncio
    async def test_new_attempt_reclassifies(self, db, pipeline, system_actor, base_time):
        """Test a later attempt with a new remark switches type and restarts the workflow."""
        ndr = await pipeline.process_update(db, "shp-1001", failed(base_time), system_actor, now=base_time)
        later = base_time + timedelta(hours=2)
        ndr = await pipeline.process_update(
            db, "shp-1001",
            failed(base_time, remark="Customer refused to accept", attempt=2, hours=2),
            system_actor, now=later,
        )

        assert ndr.attempt_count == 2
        assert ndr.ndr_type == "refused"
        assert [entry["ndr_type"] for entry in ndr.classification_history] == ["customer_unavailable", "refused"]
        # Deadline is measured from the first classification
        assert ndr.resolution_deadline == base_time + timedelta(hours=24)
        # The refused workflow opens with a manual call
        assert ndr.awaiting_input is True
        assert ndr.action_log[-1]["status"] == "awaiting_input"

    @pytest.mark.asyncio
    async def test_carrier_code_drives_type(self, db, pipeline, system_actor, base_time):
        """Test the carrier code wins over a vague remark."""
        ndr = await pipeline.process_update(
            db, "shp-1001", failed(base_time, remark="See notes", code="ODA"), system_actor, now=base_time,
        )
        assert ndr.ndr_type == "out_of_service_area"
        assert ndr.resolution_deadline == base_time + timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_delivery_closes_open_ndr(self, db, pipeline, system_actor, base_time):
        """Test a delivered update resolves the open NDR."""
        ndr = await pipeline.process_update(db, "shp-1001", failed(base_time), system_actor, now=base_time)
        delivered = TrackingUpdate(status="DELIVERED", timestamp=base_time + timedelta(hours=26))

        assert await pipeline.process_update(db, "shp-1001", delivered, system_actor) is None
        assert ndr.status == NDRStatus.RESOLVED.value
        assert ndr.resolution_method == "delivered_on_reattempt"

    @pytest.mark.asyncio
    async def test_invalid_updates(self, db, pipeline, system_actor, other_seller, base_time):
        """Test missing timestamps, unknown shipments and foreign companies are rejected."""
        with pytest.raises(DomainValidationError):
            await pipeline.process_update(
                db, "shp-1001", TrackingUpdate(status="UNDELIVERED", timestamp=None), system_actor,
            )
        with pytest.raises(NotFoundError) as exc_info:
            await pipeline.process_update(db, "shp-404", failed(base_time), system_actor)
        assert exc_info.value.code == "SHIPMENT_NOT_FOUND"
        with pytest.raises(ForbiddenError):
            await pipeline.process_update(db, "shp-1001", failed(base_time), other_seller)

    @pytest.mark.asyncio
    async def test_batch_isolates_failures(self, pipeline, session_factory, system_actor, base_time):
        """Test one bad update in a batch leaves the others committed."""
        summary = await pipeline.process_batch(
            [
                ("shp-1001", failed(base_time)),
                ("shp-404", failed(base_time)),
            ],
            system_actor,
            session_factory=session_factory,
        )

        assert summary["processed"] == 1
        assert len(summary["ndrs"]) == 1
        assert summary["errors"][0]["shipment_id"] == "shp-404"


@pytest.mark.unit
class TestNDRWorkflow:
    """Test workflow progression, inputs and outcomes."""

    @pytest.mark.asyncio
    async def test_due_actions_run_in_sequence(self, db, pipeline, collaborators, system_actor, base_time):
        """Test actions run once their delay has elapsed and pause at manual steps."""
        ndr = await pipeline.process_update(db, "shp-1001", failed(base_time), system_actor, now=base_time)
        ndr = await pipeline.resolver.execute_due_actions(db, ndr.id, base_time + timedelta(hours=5))

        assert [entry["action"] for entry in ndr.action_log] == ["send_whatsapp", "send_sms", "call_customer"]
        assert ndr.action_log[-1]["status"] == "awaiting_input"
        assert ndr.awaiting_input is True
        assert ndr.next_action_due_at is None
        collaborators.courier.request_reattempt.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_action_advances(self, db, pipeline, collaborators, system_actor, base_time):
        """Test a collaborator failure is logged and the workflow moves on."""
        collaborators.courier.request_reattempt.side_effect = UpstreamError("courier", "request_reattempt", "503")
        ndr = await pipeline.process_update(
            db, "shp-1001", failed(base_time, remark="Shop closed"), system_actor, now=base_time,
        )
        ndr = await pipeline.resolver.execute_due_actions(db, ndr.id, base_time + timedelta(hours=17))

        assert ndr.action_log[-1]["action"] == "request_reattempt"
        assert ndr.action_log[-1]["status"] == "failed"
        assert ndr.action_log[-1]["result"]["error"] == "UPSTREAM_FAILURE"
        assert ndr.next_action_index == 2
        assert ndr.status == NDRStatus.IN_RESOLUTION.value

    @pytest.mark.asyncio
    async def test_address_update_resolves(self, db, pipeline, collaborators, seller, system_actor, base_time):
        """Test an address update asks for a reattempt and resolves the NDR."""
        ndr = await pipeline.process_update(
            db, "shp-1001", failed(base_time, remark="Address incomplete"), system_actor, now=base_time,
        )
        address = {"line1": "14 MG Road", "city": "Bengaluru", "pincode": "560001"}

        with pytest.raises(DomainValidationError):
            await pipeline.resolver.record_input(db, ndr.id, NDRInputType.ADDRESS_UPDATED, seller, {})

        ndr = await pipeline.resolver.record_input(
            db, ndr.id, "address_updated", seller, {"address": address, "notes": "Landmark added"},
        )

        collaborators.courier.request_reattempt.assert_awaited_once_with(ANY, address=address)
        assert ndr.status == NDRStatus.RESOLVED.value
        assert ndr.resolution_method == "address_updated"
        assert ndr.resolved_by == "seller-1"
        assert ndr.customer_contact["address"] == address

    @pytest.mark.asyncio
    async def test_warehouse_confirmation_resumes_workflow(self, db, pipeline, warehouse, system_actor, base_time):
        """Test confirming a manual step lets the next action run when due."""
        ndr = await pipeline.process_update(
            db, "shp-1001", failed(base_time, remark="Customer refused"), system_actor, now=base_time,
        )
        assert ndr.awaiting_input is True

        ndr = await pipeline.resolver.record_input(
            db, ndr.id, NDRInputType.WAREHOUSE_CONFIRMED, warehouse, now=base_time + timedelta(hours=1),
        )
        assert ndr.awaiting_input is False
        assert ndr.next_action_due_at == base_time + timedelta(hours=12)

        ndr = await pipeline.resolver.execute_due_actions(db, ndr.id, base_time + timedelta(hours=13))
        assert ndr.status == NDRStatus.RTO_TRIGGERED.value
        rto = await find_active_rto(db, "shp-1001")
        assert rto.trigger == "auto"
        assert rto.ndr_event_id == ndr.id

    @pytest.mark.asyncio
    async def test_rto_request_input(self, db, pipeline, seller, system_actor, base_time):
        """Test a seller's RTO request supersedes the NDR with a manual RTO."""
        ndr = await pipeline.process_update(db, "shp-1001", failed(base_time), system_actor, now=base_time)
        await pipeline.resolver.record_input(db, ndr.id, "rto_requested", seller, {"reason": "refused"})

        rto = await find_active_rto(db, "shp-1001")
        assert rto.trigger == "manual"
        assert rto.rto_reason == "refused"
        assert rto.return_status == RTOStatus.INITIATED.value
        assert ndr.status == NDRStatus.RTO_TRIGGERED.value
        assert ndr.rto_event_id == rto.id

    @pytest.mark.asyncio
    async def test_resolution_is_final(self, db, pipeline, seller, system_actor, base_time):
        """Test a resolved NDR cannot be resolved, escalated or fed input again."""
        ndr = await pipeline.process_update(db, "shp-1001", failed(base_time), system_actor, now=base_time)
        await pipeline.resolver.resolve(db, ndr.id, "manual", seller, notes="Customer collected")

        with pytest.raises(InvalidTransitionError):
            await pipeline.resolver.resolve(db, ndr.id, "manual", seller)
        with pytest.raises(InvalidTransitionError):
            await pipeline.resolver.escalate(db, ndr.id, "late", seller)
        with pytest.raises(InvalidTransitionError):
            await pipeline.resolver.record_input(db, ndr.id, "customer_confirmed", seller)

    @pytest.mark.asyncio
    async def test_escalation_is_idempotent(self, db, pipeline, seller, system_actor, base_time):
        """Test escalating twice keeps the first escalation."""
        ndr = await pipeline.process_update(db, "shp-1001", failed(base_time), system_actor, now=base_time)
        first_time = base_time + timedelta(hours=3)
        await pipeline.resolver.escalate(db, ndr.id, "Customer unreachable", seller, now=first_time)
        ndr = await pipeline.resolver.escalate(db, ndr.id, "Again", seller, now=first_time + timedelta(hours=1))

        assert ndr.status == NDRStatus.ESCALATED.value
        assert ndr.escalated_at == first_time
        assert ndr.escalation_reason == "Customer unreachable"

    @pytest.mark.asyncio
    async def test_other_company_cannot_touch_ndr(self, db, pipeline, other_seller, system_actor, base_time):
        """Test cross-company access is refused."""
        ndr = await pipeline.process_update(db, "shp-1001", failed(base_time), system_actor, now=base_time)
        with pytest.raises(ForbiddenError):
            await pipeline.get_ndr(db, ndr.id, other_seller)
        with pytest.raises(ForbiddenError):
            await pipeline.resolver.resolve(db, ndr.id, "manual", other_seller)

    @pytest.mark.asyncio
    async def test_customer_reaches_only_own_ndr(self, db, pipeline, customer, system_actor, base_time):
        """Test another customer can neither read nor act on an NDR."""
        ndr = await pipeline.process_update(db, "shp-1001", failed(base_time), system_actor, now=base_time)
        stranger = Actor(id="cust-999", role=ActorRole.CUSTOMER, customer_id="cust-999")

        assert ndr.customer_id == "cust-1"
        assert (await pipeline.get_ndr(db, ndr.id, customer)).id == ndr.id
        with pytest.raises(ForbiddenError):
            await pipeline.get_ndr(db, ndr.id, stranger)
        with pytest.raises(ForbiddenError):
            await pipeline.resolver.record_input(db, ndr.id, "customer_confirmed", stranger)
        with pytest.raises(ForbiddenError):
            await pipeline.resolver.resolve(db, ndr.id, "manual", stranger)
        with pytest.raises(ForbiddenError):
            await pipeline.resolver.escalate(db, ndr.id, "Hurry", stranger)
        assert ndr.status == NDRStatus.IN_RESOLUTION.value

    @pytest.mark.asyncio
    async def test_customer_inputs_are_limited(self, db, pipeline, collaborators, customer, system_actor,
                                               base_time):
        """Test the owning customer may confirm delivery but not resolve, escalate or request an RTO."""
        ndr = await pipeline.process_update(db, "shp-1001", failed(base_time), system_actor, now=base_time)

        with pytest.raises(ForbiddenError):
            await pipeline.resolver.resolve(db, ndr.id, "manual", customer)
        with pytest.raises(ForbiddenError):
            await pipeline.resolver.escalate(db, ndr.id, "Hurry", customer)
        for input_type in ("warehouse_confirmed", "rto_requested"):
            with pytest.raises(ForbiddenError):
                await pipeline.resolver.record_input(db, ndr.id, input_type, customer, {"reason": "refused"})
        assert await find_active_rto(db, "shp-1001") is None
        collaborators.courier.create_reverse_awb.assert_not_awaited()

        ndr = await pipeline.resolver.record_input(db, ndr.id, "customer_confirmed", customer)
        assert ndr.status == NDRStatus.RESOLVED.value
        assert ndr.resolved_by == "cust-1"

    @pytest.mark.asyncio
    async def test_unknown_rto_reason_is_validation_error(self, db, pipeline, collaborators, seller, system_actor,
                                                          base_time):
        """Test an RTO request with an unknown reason changes nothing."""
        ndr = await pipeline.process_update(db, "shp-1001", failed(base_time), system_actor, now=base_time)
        logged = len(ndr.action_log)

        with pytest.raises(DomainValidationError) as exc_info:
            await pipeline.resolver.record_input(db, ndr.id, "rto_requested", seller, {"reason": "moon_phase"})

        assert exc_info.value.field_errors[0]["field"] == "reason"
        assert ndr.status == NDRStatus.IN_RESOLUTION.value
        assert len(ndr.action_log) == logged
        assert await find_active_rto(db, "shp-1001") is None
        collaborators.courier.create_reverse_awb.assert_not_awaited()


@pytest.mark.unit
class TestNDRQueries:
    """Test NDR listing and statistics."""

    @pytest.mark.asyncio
    async def test_list_scoped_to_company(self, db, pipeline, seller, other_seller, system_actor, base_time):
        """Test sellers only list their own NDRs and search matches the AWB."""
        await pipeline.process_update(db, "shp-1001", failed(base_time), system_actor, now=base_time)

        rows, total = await pipeline.list_ndrs(db, seller, NDRFilters(search="AWB1001"))
        assert total == 1
        assert rows[0].shipment_id == "shp-1001"

        rows, total = await pipeline.list_ndrs(db, other_seller, NDRFilters())
        assert total == 0

        rows, total = await pipeline.list_ndrs(db, seller, NDRFilters(status=NDRStatus.RESOLVED))
        assert total == 0

    @pytest.mark.asyncio
    async def test_customers_cannot_list(self, db, pipeline, customer):
        """Test NDR listings are closed to customers."""
        with pytest.raises(ForbiddenError):
            await pipeline.list_ndrs(db, customer, NDRFilters())

    @pytest.mark.asyncio
    async def test_stats(self, db, pipeline, seller, system_actor, base_time):
        """Test NDR statistics count open and resolved events."""
        ndr = await pipeline.process_update(db, "shp-1001", failed(base_time), system_actor, now=base_time)
        await pipeline.resolver.resolve(db, ndr.id, "manual", seller)

        stats = await pipeline.get_stats(db, seller, StatsWindow())
        assert stats["total_ndrs"] == 1
        assert stats["by_status"] == {"resolved": 1}
        assert stats["by_type"] == {"customer_unavailable": 1}
        assert stats["open_ndrs"] == 0
        assert stats["resolution_rate"] == 1.0
        assert stats["average_attempts"] == 1.0
