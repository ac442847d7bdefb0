"""Unit tests for the SLA Deadline Monitor sweep."""

import asyncio
from datetime import timedelta
from unittest.mock import ANY

import pytest
from sqlalchemy import func, select

from reverse_logistics.business.errors import UpstreamError
from reverse_logistics.business.reason_codes import RefundMethod, ReturnReason
from reverse_logistics.business.state_machines import NDRStatus, ReturnStatus
from reverse_logistics.integrations.ports import ReverseAWB
from reverse_logistics.services.ndr_detector import TrackingUpdate
from reverse_logistics.services.ndr_pipeline import NDRPipeline
from reverse_logistics.services.return_engine import ReturnEngine, ReturnItemInput, ReturnRequest
from reverse_logistics.services.sla_monitor import DeadlineMonitor, SweepReport
from reverse_logistics.settings import settings
from reverse_logistics.storage.models import NDREvent, ReturnOrder, RTOEvent


@pytest.fixture
def monitor(collaborators, session_factory, rto_engine):
    return DeadlineMonitor(collaborators, session_factory=session_factory, rto_engine=rto_engine, concurrency=1)


@pytest.fixture
def open_ndr(collaborators, session_factory, rto_engine, system_actor, base_time):
    """Commit an NDR classified at ``base_time``."""
    async def build(remark="Customer not available, phone switched off", code=None):
        pipeline = NDRPipeline(collaborators, rto_engine=rto_engine)
        update = TrackingUpdate(
            status="UNDELIVERED",
            timestamp=base_time,
            remark=remark,
            attempt_number=1,
            carrier_code=code,
        )
        async with session_factory() as db:
            ndr = await pipeline.process_update(db, "shp-1001", update, system_actor, now=base_time)
            return ndr.id

    return build


async def load_ndr(session_factory, ndr_id):
    async with session_factory() as db:
        return await db.get(NDREvent, ndr_id)


async def count_rtos(session_factory):
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(RTOEvent))).scalar_one()


@pytest.mark.unit
class TestNDREscalation:
    """Test deadline escalation and the auto-RTO hand-off."""

    @pytest.mark.asyncio
    async def test_nothing_escalates_before_the_deadline(self, monitor, open_ndr, session_factory, base_time):
        """Test an NDR inside its window only has its due actions run."""
        ndr_id = await open_ndr()

        report = await monitor.sweep_once(now=base_time + timedelta(hours=47))

        assert report.escalated == 0
        assert report.actions_run == 1
        ndr = await load_ndr(session_factory, ndr_id)
        assert ndr.status == NDRStatus.IN_RESOLUTION.value
        assert [entry["action"] for entry in ndr.action_log][:2] == ["send_whatsapp", "send_sms"]

    @pytest.mark.asyncio
    async def test_expired_ndr_triggers_one_auto_rto(self, monitor, open_ndr, session_factory, base_time):
        """Test an expired NDR escalates and returns the shipment exactly once."""
        ndr_id = await open_ndr()

        report = await monitor.sweep_once(now=base_time + timedelta(hours=49))
        assert report.escalated == 1
        assert report.auto_rtos == 1

        again = await monitor.sweep_once(now=base_time + timedelta(hours=50))
        assert again.escalated == 0
        assert again.auto_rtos == 0

        ndr = await load_ndr(session_factory, ndr_id)
        assert ndr.status == NDRStatus.RTO_TRIGGERED.value
        assert ndr.rto_pending is False
        assert any(entry["action"] == "escalate" for entry in ndr.action_log)
        assert await count_rtos(session_factory) == 1

        async with session_factory() as db:
            rto = (await db.execute(select(RTOEvent))).scalar_one()
        assert rto.trigger == "auto"
        assert rto.rto_reason == "ndr_unresolved"
        assert rto.ndr_event_id == ndr_id

    @pytest.mark.asyncio
    async def test_workflow_without_auto_rto_notifies_operations(self, monitor, open_ndr, collaborators,
                                                                 session_factory, base_time):
        """Test an unserviceable-area NDR escalates to a human instead of returning."""
        ndr_id = await open_ndr(remark="Pincode not serviceable", code="ODA")

        report = await monitor.sweep_once(now=base_time + timedelta(hours=25))

        assert report.escalated == 1
        assert report.auto_rtos == 0
        assert report.escalation_notices == 1
        collaborators.notifications.notify.assert_any_await(
            settings.ESCALATION_CHANNEL, settings.ESCALATION_RECIPIENT, "ndr_escalated", ANY
        )
        ndr = await load_ndr(session_factory, ndr_id)
        assert ndr.status == NDRStatus.ESCALATED.value
        assert ndr.rto_pending is False
        assert await count_rtos(session_factory) == 0

    @pytest.mark.asyncio
    async def test_failed_auto_rto_is_retried_after_the_lease(self, monitor, open_ndr, collaborators,
                                                              session_factory, base_time):
        """Test a courier outage defers the auto-RTO until the claim lease runs out."""
        ndr_id = await open_ndr()
        collaborators.courier.create_reverse_awb.side_effect = UpstreamError(
            "courier", "create_reverse_awb", "HTTP 503"
        )
        escalated_at = base_time + timedelta(hours=49)

        report = await monitor.sweep_once(now=escalated_at)
        assert report.escalated == 1
        assert report.auto_rtos == 0
        ndr = await load_ndr(session_factory, ndr_id)
        assert ndr.status == NDRStatus.ESCALATED.value
        assert ndr.rto_pending is True

        collaborators.courier.create_reverse_awb.side_effect = None
        collaborators.courier.create_reverse_awb.return_value = ReverseAWB("RAWB1001", "courier-1", None, 12000)

        within_lease = await monitor.sweep_once(now=escalated_at + timedelta(minutes=5))
        assert within_lease.rto_retries == 0

        after_lease = await monitor.sweep_once(
            now=escalated_at + timedelta(seconds=settings.SLA_AUTO_RTO_LEASE_SECONDS + 60)
        )
        assert after_lease.rto_retries == 1
        assert after_lease.auto_rtos == 1
        ndr = await load_ndr(session_factory, ndr_id)
        assert ndr.status == NDRStatus.RTO_TRIGGERED.value
        assert ndr.rto_pending is False
        assert await count_rtos(session_factory) == 1


    @pytest.mark.asyncio
    async def test_overlapping_sweeps_escalate_once(self, monitor, open_ndr, collaborators, session_factory,
                                                    rto_engine, base_time):
        """Test two sweeps racing over the same expired NDR escalate and return it once."""
        ndr_id = await open_ndr()
        other = DeadlineMonitor(collaborators, session_factory=session_factory, rto_engine=rto_engine, concurrency=1)
        now = base_time + timedelta(hours=49)

        first, second = await asyncio.gather(monitor.sweep_once(now=now), other.sweep_once(now=now))

        assert first.escalated + second.escalated == 1
        assert first.auto_rtos + second.auto_rtos == 1
        assert first.failures + second.failures == 0
        assert await count_rtos(session_factory) == 1
        assert collaborators.courier.create_reverse_awb.await_count == 1
        ndr = await load_ndr(session_factory, ndr_id)
        assert ndr.status == NDRStatus.RTO_TRIGGERED.value
        assert [entry["action"] for entry in ndr.action_log].count("escalate") == 1

@pytest.mark.unit
class TestReturnBreaches:
    """Test return SLA breach flagging."""

    @pytest.fixture
    def requested_return(self, collaborators, session_factory, customer, base_time):
        async def build():
            engine = ReturnEngine(collaborators)
            request = ReturnRequest(
                order_id="ord-1001",
                return_reason=ReturnReason.SIZE_ISSUE,
                items=[ReturnItemInput("TSHIRT-M-BLUE", 1)],
                refund_method=RefundMethod.WALLET,
                shipment_id="shp-1001",
            )
            async with session_factory() as db:
                return_order = await engine.create_return_request(db, request, customer, now=base_time)
                return return_order.id

        return build

    @pytest.mark.asyncio
    async def test_pickup_breach_is_flagged_once(self, monitor, requested_return, collaborators,
                                                 session_factory, base_time):
        """Test a missed pickup deadline is flagged and notified a single time."""
        return_pk = await requested_return()

        early = await monitor.sweep_once(now=base_time + timedelta(hours=47))
        assert early.breaches == 0

        report = await monitor.sweep_once(now=base_time + timedelta(hours=49))
        assert report.breaches == 1
        assert report.escalation_notices == 1
        collaborators.notifications.notify.assert_any_await(
            settings.ESCALATION_CHANNEL, settings.ESCALATION_RECIPIENT, "return_sla_breached", ANY
        )

        again = await monitor.sweep_once(now=base_time + timedelta(hours=50))
        assert again.breaches == 0

        async with session_factory() as db:
            return_order = await db.get(ReturnOrder, return_pk)
        assert return_order.sla_is_breached is True
        assert return_order.sla_breached_stage == "pickup"
        assert return_order.sla_breached_at == base_time + timedelta(hours=49)
        assert return_order.sla["breached_stages"] == ["pickup"]
        assert return_order.timeline[-1]["action"] == "sla_breached"
        # Breaches never cancel the return
        assert return_order.status == ReturnStatus.REQUESTED.value

    @pytest.mark.asyncio
    async def test_each_stage_breaches_on_its_own(self, monitor, requested_return, collaborators, session_factory,
                                                  seller, base_time):
        """Test a QC breach is still flagged after the same return missed its pickup deadline."""
        return_pk = await requested_return()
        first = await monitor.sweep_once(now=base_time + timedelta(hours=49))
        assert first.breaches == 1

        engine = ReturnEngine(collaborators)
        async with session_factory() as db:
            return_id = (await db.get(ReturnOrder, return_pk)).return_id
            await engine.review_return_request(db, return_id, "approve", seller, now=base_time + timedelta(hours=49))
            await engine.schedule_pickup(db, return_id, seller, now=base_time + timedelta(hours=49))
            await engine.update_pickup_status(db, return_id, "PICKED_UP", seller, base_time + timedelta(hours=50))
            await engine.update_pickup_status(
                db, return_id, "DELIVERED_TO_WAREHOUSE", seller, base_time + timedelta(hours=52),
            )

        inside_qc_window = await monitor.sweep_once(now=base_time + timedelta(hours=60))
        assert inside_qc_window.breaches == 0

        second = await monitor.sweep_once(now=base_time + timedelta(hours=77))
        assert second.breaches == 1
        assert await monitor.sweep_once(now=base_time + timedelta(hours=78)) == SweepReport()

        async with session_factory() as db:
            return_order = await db.get(ReturnOrder, return_pk)
        assert return_order.sla["breached_stages"] == ["pickup", "qc"]
        assert return_order.sla_breached_stage == "qc"
        assert return_order.sla_breached_at == base_time + timedelta(hours=77)
        assert [entry["metadata"]["stage"] for entry in return_order.timeline
                if entry["action"] == "sla_breached"] == ["pickup", "qc"]

    @pytest.mark.asyncio
    async def test_notification_failure_keeps_the_flag(self, monitor, requested_return, collaborators,
                                                       session_factory, base_time):
        """Test a failed escalation notice is counted and the breach still stands."""
        return_pk = await requested_return()
        collaborators.notifications.notify.side_effect = RuntimeError("smtp down")

        report = await monitor.sweep_once(now=base_time + timedelta(hours=49))

        assert report.failures == 1
        async with session_factory() as db:
            return_order = await db.get(ReturnOrder, return_pk)
        assert return_order.sla_is_breached is True


@pytest.mark.unit
class TestSweepReport:
    """Test the sweep report."""

    def test_to_dict(self):
        """Test every counter is reported."""
        report = SweepReport(escalated=2, breaches=1)
        assert report.to_dict() == {
            "escalated": 2,
            "auto_rtos": 0,
            "rto_retries": 0,
            "escalation_notices": 0,
            "breaches": 1,
            "actions_run": 0,
            "claims_lost": 0,
            "failures": 0,
        }

    @pytest.mark.asyncio
    async def test_empty_sweep(self, monitor, base_time):
        """Test a sweep over an empty database does nothing."""
        report = await monitor.sweep_once(now=base_time)
        assert report == SweepReport()


@pytest.mark.unit
class TestMonitorLoop:
    """Test the long-running worker loop."""

    @pytest.mark.asyncio
    async def test_loop_survives_a_failed_sweep_and_stops(self, monitor):
        """Test a failing sweep is logged and the loop exits once the stop event is set."""
        stop_event = asyncio.Event()
        calls = []

        async def sweep_once(now=None):
            calls.append(now)
            if len(calls) == 1:
                raise RuntimeError("database unavailable")
            stop_event.set()
            return SweepReport()

        monitor.sweep_once = sweep_once
        await asyncio.wait_for(monitor.run(stop_event, interval=0.01), timeout=5)

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_stop_event_interrupts_the_wait(self, monitor):
        """Test setting the stop event ends the loop without waiting out the interval."""
        stop_event = asyncio.Event()
        task = asyncio.create_task(monitor.run(stop_event, interval=3600))
        await asyncio.sleep(0.05)
        assert not task.done()

        stop_event.set()
        await asyncio.wait_for(task, timeout=5)
        assert task.exception() is None

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, monitor):
        """Test cancelling the worker task stops it instead of being swallowed."""
        task = asyncio.create_task(monitor.run(asyncio.Event(), interval=3600))
        await asyncio.sleep(0.05)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert task.cancelled()
