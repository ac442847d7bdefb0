"""Unit tests for the RTO Engine."""

from datetime import timedelta

import pytest

from reverse_logistics.business.access import Actor, ActorRole
from reverse_logistics.business.errors import (
    ConflictError,
    DomainValidationError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    RateLimitedError,
    UpstreamError,
)
from reverse_logistics.business.quality_check import PhotoUpload, QCInput, QCItemInput
from reverse_logistics.business.reason_codes import QCResult, RTOReason, RTOTrigger
from reverse_logistics.business.state_machines import RTOStatus
from reverse_logistics.integrations.ports import RefundReceipt, ShipmentSnapshot
from reverse_logistics.resilience.rate_limiter import RateLimiter
from reverse_logistics.services.analytics import StatsWindow
from reverse_logistics.services.rto_engine import RTOEngine, RTOFilters, find_active_rto


async def trigger(rto_engine, db, actor, shipment_id="shp-1001", reason=RTOReason.REFUSED, **kwargs):
    return await rto_engine.trigger_rto(
        db, shipment_id=shipment_id, reason=reason, trigger=RTOTrigger.MANUAL, actor=actor, **kwargs
    )


@pytest.fixture
def second_shipment(shipments, shipment_snapshot):
    shipment = ShipmentSnapshot(
        shipment_id="shp-1002",
        order_id="ord-1001",
        company_id="comp-1",
        awb="AWB1002",
        courier_id="courier-1",
        customer_contact=shipment_snapshot.customer_contact,
    )
    shipments[shipment.shipment_id] = shipment
    return shipment


@pytest.mark.unit
class TestRTOTrigger:
    """Test RTO creation."""

    @pytest.mark.asyncio
    async def test_manual_trigger(self, db, rto_engine, collaborators, seller, base_time):
        """Test a manual trigger stores the reverse AWB, items and first history entry."""
        rto = await trigger(rto_engine, db, seller, remarks="Customer refused at door", now=base_time)

        assert rto.return_status == RTOStatus.INITIATED.value
        assert rto.trigger == "manual"
        assert rto.triggered_by == "seller-1"
        assert rto.reverse_awb == "RAWB1001"
        assert rto.rto_charges_cents == 12000
        assert rto.expected_return_date == base_time + timedelta(days=7)
        assert {item["sku"] for item in rto.items} == {"TSHIRT-M-BLUE", "CAP-BLK"}
        assert rto.product_category == "apparel"
        assert rto.status_history[0]["to"] == "initiated"
        assert rto.customer_id == "cust-1"
        collaborators.courier.create_reverse_awb.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_trigger_charges_company_wallet(self, db, rto_engine, collaborators, seller):
        """Test the RTO charge is taken from the seller wallet under a stable reference."""
        rto = await trigger(rto_engine, db, seller)

        collaborators.payment.charge.assert_awaited_once_with(
            "wallet:comp-1", 12000, "rto-charge:shp-1001:RAWB1001"
        )
        assert rto.charges_transaction_id == "chg-rto-charge:shp-1001:RAWB1001"

    @pytest.mark.asyncio
    async def test_trigger_notifies_warehouse_and_customer(self, db, rto_engine, collaborators, seller, base_time):
        """Test the warehouse hears about the inbound parcel and the customer about the reason."""
        rto = await trigger(rto_engine, db, seller, now=base_time)

        notify = collaborators.notifications.notify
        assert notify.await_count == 2
        notify.assert_any_await(
            "email",
            "warehouse-inbound@example.com",
            "rto_incoming",
            {
                "rto_id": rto.id,
                "awb": "AWB1001",
                "reverse_awb": "RAWB1001",
                "expected_return_date": (base_time + timedelta(days=7)).isoformat(),
                "rto_reason": "refused",
                "requires_qc": True,
            },
        )
        notify.assert_any_await(
            "whatsapp",
            "+919800000001",
            "rto_initiated",
            {
                "customer_name": "Asha Rao",
                "order_id": "ord-1001",
                "reason": "Customer refused the parcel",
                "reverse_awb": "RAWB1001",
            },
        )
        assert rto.warehouse_notified is True
        assert rto.customer_notified is True

    @pytest.mark.asyncio
    async def test_notification_failure_keeps_rto(self, db, rto_engine, collaborators, seller):
        """Test a notification outage is recorded on the flags, not raised."""
        collaborators.notifications.notify.side_effect = UpstreamError("notifications", "notify", "HTTP 503")

        rto = await trigger(rto_engine, db, seller)

        assert rto.return_status == RTOStatus.INITIATED.value
        assert rto.warehouse_notified is False
        assert rto.customer_notified is False
        assert await find_active_rto(db, "shp-1001") is not None

    @pytest.mark.asyncio
    async def test_second_trigger_conflicts(self, db, rto_engine, collaborators, seller):
        """Test a shipment holds at most one active RTO and the duplicate books nothing."""
        await trigger(rto_engine, db, seller)
        with pytest.raises(ConflictError) as exc_info:
            await trigger(rto_engine, db, seller)
        assert exc_info.value.code == "RTO_ALREADY_ACTIVE"
        assert collaborators.courier.create_reverse_awb.await_count == 1
        assert collaborators.payment.charge.await_count == 1

    @pytest.mark.asyncio
    async def test_racing_trigger_loses_before_booking(self, db, rto_engine, collaborators, seller, mocker):
        """Test a trigger that passes the lookup still loses on the row claim without booking an AWB."""
        await trigger(rto_engine, db, seller)
        await db.commit()
        mocker.patch("reverse_logistics.services.rto_engine.find_active_rto", return_value=None)

        with pytest.raises(ConflictError) as exc_info:
            await trigger(rto_engine, db, seller)

        assert exc_info.value.code == "RTO_ALREADY_ACTIVE"
        assert collaborators.courier.create_reverse_awb.await_count == 1
        assert collaborators.payment.charge.await_count == 1

    @pytest.mark.asyncio
    async def test_unknown_reason_is_validation_error(self, db, rto_engine, collaborators, seller):
        """Test a reason outside the catalogue is rejected before any booking."""
        with pytest.raises(DomainValidationError) as exc_info:
            await trigger(rto_engine, db, seller, reason="moon_phase")
        assert exc_info.value.code == "VALIDATION_ERROR"
        collaborators.courier.create_reverse_awb.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_courier_failure_persists_nothing(self, db, rto_engine, collaborators, seller):
        """Test a reverse AWB failure leaves no RTO behind."""
        collaborators.courier.create_reverse_awb.side_effect = UpstreamError(
            "courier", "create_reverse_awb", "HTTP 503"
        )
        with pytest.raises(UpstreamError):
            await trigger(rto_engine, db, seller)
        assert await find_active_rto(db, "shp-1001") is None
        collaborators.payment.charge.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_charge_failure_persists_nothing(self, db, rto_engine, collaborators, seller):
        """Test a wallet charge failure releases the shipment for a later retry."""
        collaborators.payment.charge.side_effect = [
            UpstreamError("payment", "charge", "HTTP 503"),
            RefundReceipt("rto-charge:shp-1001:RAWB1001", "chg-9", 12000),
        ]

        with pytest.raises(UpstreamError):
            await trigger(rto_engine, db, seller)
        assert await find_active_rto(db, "shp-1001") is None
        collaborators.notifications.notify.assert_not_awaited()

        rto = await trigger(rto_engine, db, seller)
        assert rto.reverse_awb == "RAWB1001"
        assert rto.charges_transaction_id == "chg-9"

    @pytest.mark.asyncio
    async def test_company_rate_limit(self, db, collaborators, seller, second_shipment):
        """Test the company limiter rejects triggers beyond its window."""
        engine = RTOEngine(
            collaborators,
            company_limiter=RateLimiter(1, 60),
            shipment_limiter=RateLimiter(5, 3600),
        )
        await trigger(engine, db, seller)
        with pytest.raises(RateLimitedError) as exc_info:
            await trigger(engine, db, seller, shipment_id=second_shipment.shipment_id)

        assert exc_info.value.scope == "company"
        assert exc_info.value.retry_after > 0
        assert collaborators.courier.create_reverse_awb.await_count == 1

    @pytest.mark.asyncio
    async def test_access_rules(self, db, rto_engine, customer, other_seller):
        """Test customers and other companies cannot trigger RTOs."""
        with pytest.raises(ForbiddenError):
            await trigger(rto_engine, db, customer)
        with pytest.raises(ForbiddenError):
            await trigger(rto_engine, db, other_seller)
        with pytest.raises(NotFoundError):
            await trigger(rto_engine, db, other_seller, shipment_id="shp-404")


@pytest.mark.unit
class TestRTOLifecycle:
    """Test courier updates, QC photos and the QC verdict."""

    @pytest.mark.asyncio
    async def test_courier_status_updates(self, db, rto_engine, seller, base_time):
        """Test courier statuses map onto the lifecycle and repeats are no-ops."""
        rto = await trigger(rto_engine, db, seller, now=base_time)

        rto = await rto_engine.update_status(db, rto.id, "PICKED_UP", seller, base_time + timedelta(hours=4))
        assert rto.return_status == RTOStatus.IN_TRANSIT.value
        rto = await rto_engine.update_status(db, rto.id, "in transit", seller)
        assert len(rto.status_history) == 2

        arrived = base_time + timedelta(days=3)
        rto = await rto_engine.update_status(db, rto.id, "RTO_DELIVERED", seller, arrived)
        assert rto.return_status == RTOStatus.QC_PENDING.value
        assert rto.actual_return_date == arrived

        with pytest.raises(InvalidTransitionError):
            await rto_engine.update_status(db, rto.id, "in_transit", seller)

    @pytest.mark.asyncio
    async def test_status_update_validation(self, db, rto_engine, seller):
        """Test unknown statuses and QC-owned statuses are refused."""
        rto = await trigger(rto_engine, db, seller)
        with pytest.raises(DomainValidationError):
            await rto_engine.update_status(db, rto.id, "teleported", seller)
        with pytest.raises(DomainValidationError):
            await rto_engine.update_status(db, rto.id, "disposed", seller)

    @pytest.mark.asyncio
    async def test_qc_photos_and_verdict(self, db, rto_engine, collaborators, seller, warehouse, base_time):
        """Test uploaded photos end up on the QC record."""
        rto = await trigger(rto_engine, db, seller)
        await rto_engine.update_status(db, rto.id, "DELIVERED_TO_WAREHOUSE", seller)

        urls = await rto_engine.upload_qc_photos(
            db, rto.id, [PhotoUpload("front.jpg", "image/jpeg", b"abc")], warehouse,
        )
        assert urls == [f"https://storage.test/rto-qc/{rto.id}/3"]

        rto = await rto_engine.record_qc_result(
            db, rto.id,
            QCInput(result=QCResult.PARTIAL, items=[
                QCItemInput("TSHIRT-M-BLUE", 1, 1, condition="torn seam"),
                QCItemInput("CAP-BLK", 1, 0),
            ], notes="One tee torn"),
            warehouse, now=base_time,
        )

        assert rto.return_status == RTOStatus.QC_COMPLETED.value
        assert rto.qc["result"] == "partial"
        assert rto.qc["photos"] == urls
        assert rto.qc["inspector"]["id"] == "wh-1"
        assert rto.qc_completed_at == base_time

        with pytest.raises(ConflictError) as exc_info:
            await rto_engine.upload_qc_photos(
                db, rto.id, [PhotoUpload("late.jpg", "image/jpeg", b"abc")], warehouse,
            )
        assert exc_info.value.code == "QC_ALREADY_RECORDED"

    @pytest.mark.asyncio
    async def test_qc_is_written_once(self, db, rto_engine, seller, warehouse):
        """Test a second QC verdict is refused and the first is kept."""
        rto = await trigger(rto_engine, db, seller)
        await rto_engine.update_status(db, rto.id, "RECEIVED", seller)
        await rto_engine.record_qc_result(db, rto.id, QCInput(result=QCResult.APPROVED), warehouse)

        with pytest.raises(ConflictError) as exc_info:
            await rto_engine.record_qc_result(db, rto.id, QCInput(result=QCResult.REJECTED), warehouse)
        assert exc_info.value.code == "QC_ALREADY_RECORDED"
        assert rto.qc["result"] == "approved"

    @pytest.mark.asyncio
    async def test_qc_rules(self, db, rto_engine, seller, warehouse):
        """Test QC needs a warehouse actor and a received shipment."""
        rto = await trigger(rto_engine, db, seller)
        with pytest.raises(InvalidTransitionError):
            await rto_engine.record_qc_result(db, rto.id, QCInput(result=QCResult.APPROVED), warehouse)
        await rto_engine.update_status(db, rto.id, "RECEIVED", seller)
        with pytest.raises(ForbiddenError):
            await rto_engine.record_qc_result(db, rto.id, QCInput(result=QCResult.APPROVED), seller)
        with pytest.raises(DomainValidationError):
            await rto_engine.upload_qc_photos(db, rto.id, [], warehouse)


@pytest.mark.unit
class TestRTOQueries:
    """Test RTO listings, the QC queue and statistics."""

    @pytest.mark.asyncio
    async def test_list_and_pending(self, db, rto_engine, seller, other_seller, second_shipment):
        """Test filters, company scoping and the QC queue."""
        first = await trigger(rto_engine, db, seller)
        await trigger(rto_engine, db, seller, shipment_id=second_shipment.shipment_id, reason="damaged_in_transit")
        await rto_engine.update_status(db, first.id, "RECEIVED", seller)

        rows, total = await rto_engine.list_rtos(db, seller, RTOFilters())
        assert total == 2
        rows, total = await rto_engine.list_rtos(db, seller, RTOFilters(reason=RTOReason.DAMAGED_IN_TRANSIT))
        assert [row.shipment_id for row in rows] == ["shp-1002"]
        rows, total = await rto_engine.list_rtos(db, seller, RTOFilters(search="RAWB1002"))
        assert total == 1
        rows, total = await rto_engine.list_rtos(db, other_seller, RTOFilters())
        assert total == 0

        pending, total = await rto_engine.get_pending_rtos(db, seller)
        assert [row.id for row in pending] == [first.id]

    @pytest.mark.asyncio
    async def test_customer_reads_only_own_rto(self, db, rto_engine, seller, customer):
        """Test a customer sees the RTO of their own shipment and nobody else's."""
        rto = await trigger(rto_engine, db, seller)
        stranger = Actor(id="cust-999", role=ActorRole.CUSTOMER, customer_id="cust-999")

        assert (await rto_engine.get_rto(db, rto.id, customer)).id == rto.id
        with pytest.raises(ForbiddenError):
            await rto_engine.get_rto(db, rto.id, stranger)
        with pytest.raises(ForbiddenError):
            await rto_engine.list_rtos(db, customer, RTOFilters())

    @pytest.mark.asyncio
    async def test_stats(self, db, rto_engine, seller, admin):
        """Test RTO statistics by status, reason and trigger."""
        await trigger(rto_engine, db, seller)

        stats = await rto_engine.get_stats(db, admin, StatsWindow(company_id="comp-1"))
        assert stats["total_rtos"] == 1
        assert stats["by_reason"] == {"refused": 1}
        assert stats["by_trigger"] == {"manual": 1}
        assert stats["total_charges_cents"] == 12000
