"""Unit tests for disposition suggestions and execution."""

from datetime import timedelta

import pytest

from reverse_logistics.business.errors import (
    ConflictError,
    DomainValidationError,
    ForbiddenError,
    InvalidTransitionError,
    UpstreamError,
)
from reverse_logistics.business.quality_check import QCInput, QCItemInput
from reverse_logistics.business.reason_codes import DispositionAction, QCResult, RTOReason, RTOTrigger
from reverse_logistics.business.state_machines import RTOStatus
from reverse_logistics.services.disposition_engine import DispositionEngine, suggest_for_qc


@pytest.fixture
def disposition_engine(collaborators):
    return DispositionEngine(collaborators)


@pytest.fixture
def qc_completed_rto(db, rto_engine, seller, warehouse):
    """Build an RTO through QC with the given verdict."""
    async def build(qc_input, reason=RTOReason.REFUSED):
        rto = await rto_engine.trigger_rto(
            db, shipment_id="shp-1001", reason=reason, trigger=RTOTrigger.MANUAL, actor=seller,
        )
        await rto_engine.update_status(db, rto.id, "RECEIVED", seller)
        return await rto_engine.record_qc_result(db, rto.id, qc_input, warehouse)

    return build


@pytest.mark.unit
class TestDispositionSuggestions:
    """Test the suggestion rules."""

    def test_rejected_goods_are_scrapped(self):
        """Test a fully rejected QC suggests scrap."""
        assert suggest_for_qc({"result": "rejected"}, "apparel").action == DispositionAction.SCRAP

    def test_partial_goes_to_review(self):
        """Test a partial QC needs a human decision."""
        assert suggest_for_qc({"result": "partial"}, "apparel").action == DispositionAction.HOLD_FOR_REVIEW

    def test_uncertain_notes_go_to_review(self):
        """Test ambiguous inspector notes hold the goods."""
        qc = {"result": "approved", "notes": "Seal looks suspect, verify with seller"}
        assert suggest_for_qc(qc, "electronics").action == DispositionAction.HOLD_FOR_REVIEW

    def test_non_restockable_category(self):
        """Test hygiene-sensitive categories go back to the seller."""
        suggestion = suggest_for_qc({"result": "approved"}, "Cosmetics")
        assert suggestion.action == DispositionAction.RETURN_TO_SELLER
        assert "Cosmetics" in suggestion.reason

    def test_used_goods_go_back_to_seller(self):
        """Test item conditions describing used goods prevent restocking."""
        qc = {"result": "approved", "items": [{"sku": "A", "condition": "worn once", "notes": None}]}
        assert suggest_for_qc(qc, "apparel").action == DispositionAction.RETURN_TO_SELLER

    def test_clean_approval_restocks(self):
        """Test a clean approval restocks."""
        assert suggest_for_qc({"result": "approved", "notes": "Tags intact"}, "apparel").action == (
            DispositionAction.RESTOCK
        )


@pytest.mark.unit
class TestDispositionExecution:
    """Test executing dispositions and their side effects."""

    @pytest.mark.asyncio
    async def test_restock_credits_accepted_units(self, db, disposition_engine, collaborators, qc_completed_rto,
                                                   warehouse):
        """Test restocking credits inventory for accepted quantities only."""
        rto = await qc_completed_rto(QCInput(result=QCResult.PARTIAL, items=[
            QCItemInput("TSHIRT-M-BLUE", 1, 1),
            QCItemInput("CAP-BLK", 1, 0),
        ]))

        rto = await disposition_engine.execute_disposition(db, rto.id, "restock", warehouse, notes="Shelf B4")

        assert rto.return_status == RTOStatus.DISPOSED.value
        assert rto.disposition["action"] == "restock"
        assert rto.disposition["actor"] == {"id": "wh-1", "role": "warehouse"}
        reference = f"rto-disposition:{rto.id}"
        assert sorted(call.args for call in collaborators.inventory.adjust_stock.await_args_list) == [
            ("CAP-BLK", 1, f"{reference}:CAP-BLK"),
            ("TSHIRT-M-BLUE", 1, f"{reference}:TSHIRT-M-BLUE"),
        ]
        assert rto.disposition["restocked"] == {"TSHIRT-M-BLUE": 1, "CAP-BLK": 1}

    @pytest.mark.asyncio
    async def test_disposing_twice_conflicts(self, db, disposition_engine, qc_completed_rto, warehouse):
        """Test a disposed RTO cannot be disposed again."""
        rto = await qc_completed_rto(QCInput(result=QCResult.APPROVED))
        await disposition_engine.execute_disposition(db, rto.id, DispositionAction.RETURN_TO_SELLER, warehouse)

        with pytest.raises(ConflictError) as exc_info:
            await disposition_engine.execute_disposition(db, rto.id, DispositionAction.SCRAP, warehouse)
        assert exc_info.value.code == "RTO_ALREADY_DISPOSED"
        assert exc_info.value.details["action"] == "return_to_seller"

    @pytest.mark.asyncio
    async def test_scrap_of_transit_damage_credits_seller(self, db, disposition_engine, collaborators,
                                                          qc_completed_rto, warehouse):
        """Test scrapping courier-damaged goods pays the rejected value back to the seller."""
        rto = await qc_completed_rto(QCInput(result=QCResult.REJECTED), reason=RTOReason.DAMAGED_IN_TRANSIT)

        rto = await disposition_engine.execute_disposition(db, rto.id, "scrap", warehouse)

        collaborators.payment.refund.assert_awaited_once_with("comp-1", 189700, f"rto-disposition:{rto.id}")
        assert rto.disposition["credit_adjustment_cents"] == 189700
        assert rto.disposition["transaction_id"] == f"txn-rto-disposition:{rto.id}"

    @pytest.mark.asyncio
    async def test_scrap_without_liability_pays_nothing(self, db, disposition_engine, collaborators,
                                                        qc_completed_rto, warehouse):
        """Test scrapping goods the courier is not liable for has no credit."""
        rto = await qc_completed_rto(QCInput(result=QCResult.REJECTED))
        rto = await disposition_engine.execute_disposition(db, rto.id, "scrap", warehouse)

        collaborators.payment.refund.assert_not_awaited()
        assert rto.disposition["credit_adjustment_cents"] == 0

    @pytest.mark.asyncio
    async def test_restocking_rejected_goods_needs_admin_override(self, db, disposition_engine, collaborators,
                                                                  qc_completed_rto, warehouse, admin):
        """Test rejected goods restock only with an admin override."""
        rto = await qc_completed_rto(QCInput(result=QCResult.REJECTED))

        with pytest.raises(DomainValidationError):
            await disposition_engine.execute_disposition(db, rto.id, "restock", warehouse)
        with pytest.raises(ForbiddenError):
            await disposition_engine.execute_disposition(db, rto.id, "restock", warehouse, override=True)
        assert rto.disposition_progress is None

        rto = await disposition_engine.execute_disposition(db, rto.id, "restock", admin, override=True)
        assert rto.disposition["override"] is True
        assert collaborators.inventory.adjust_stock.await_count == 2

    @pytest.mark.asyncio
    async def test_hold_for_review_is_not_executable(self, db, disposition_engine, qc_completed_rto, warehouse):
        """Test hold_for_review stays a suggestion."""
        rto = await qc_completed_rto(QCInput(result=QCResult.PARTIAL, items=[
            QCItemInput("TSHIRT-M-BLUE", 2, 0),
            QCItemInput("CAP-BLK", 0, 1),
        ]))
        suggestion = await disposition_engine.suggest_disposition(db, rto.id, warehouse)
        assert suggestion.action == DispositionAction.HOLD_FOR_REVIEW

        with pytest.raises(DomainValidationError):
            await disposition_engine.execute_disposition(db, rto.id, suggestion.action, warehouse)
        assert rto.return_status == RTOStatus.QC_COMPLETED.value

    @pytest.mark.asyncio
    async def test_failed_side_effect_leaves_rto_undisposed(self, db, disposition_engine, collaborators,
                                                            qc_completed_rto, warehouse):
        """Test an inventory failure keeps the RTO in qc_completed."""
        collaborators.inventory.adjust_stock.side_effect = UpstreamError("inventory", "adjust_stock", "HTTP 500")
        rto = await qc_completed_rto(QCInput(result=QCResult.APPROVED))

        with pytest.raises(UpstreamError):
            await disposition_engine.execute_disposition(db, rto.id, "restock", warehouse)
        assert rto.return_status == RTOStatus.QC_COMPLETED.value
        assert rto.disposition is None

    @pytest.mark.asyncio
    async def test_disposition_needs_qc(self, db, disposition_engine, rto_engine, seller, warehouse):
        """Test an RTO without QC can neither be suggested for nor disposed."""
        rto = await rto_engine.trigger_rto(
            db, shipment_id="shp-1001", reason="refused", trigger="manual", actor=seller,
        )
        with pytest.raises(InvalidTransitionError):
            await disposition_engine.suggest_disposition(db, rto.id, warehouse)
        with pytest.raises(InvalidTransitionError):
            await disposition_engine.execute_disposition(db, rto.id, "scrap", warehouse)

    @pytest.mark.asyncio
    async def test_retry_after_partial_restock_credits_each_sku_once(self, db, disposition_engine, collaborators,
                                                                     qc_completed_rto, warehouse):
        """Test a retry after one SKU landed only sends the SKUs still missing."""
        stock = {}

        async def adjust_stock(sku, delta, reason):
            if sku == "CAP-BLK" and "CAP-BLK" not in failed:
                failed.add(sku)
                raise UpstreamError("inventory", "adjust_stock", "HTTP 503")
            stock[sku] = stock.get(sku, 0) + delta

        failed = set()
        collaborators.inventory.adjust_stock.side_effect = adjust_stock
        rto = await qc_completed_rto(QCInput(result=QCResult.APPROVED))

        with pytest.raises(UpstreamError):
            await disposition_engine.execute_disposition(db, rto.id, "restock", warehouse)
        assert rto.return_status == RTOStatus.QC_COMPLETED.value
        assert rto.disposition_progress["applied"] == {"TSHIRT-M-BLUE": 2}
        assert rto.disposition_progress["claimed_at"] is None

        rto = await disposition_engine.execute_disposition(db, rto.id, "restock", warehouse)

        assert stock == {"TSHIRT-M-BLUE": 2, "CAP-BLK": 1}
        assert rto.return_status == RTOStatus.DISPOSED.value
        assert rto.disposition["restocked"] == {"TSHIRT-M-BLUE": 2, "CAP-BLK": 1}

    @pytest.mark.asyncio
    async def test_half_applied_action_cannot_switch(self, db, disposition_engine, collaborators, qc_completed_rto,
                                                     warehouse):
        """Test a different action is refused while a restock is partly applied."""
        collaborators.inventory.adjust_stock.side_effect = [None, UpstreamError("inventory", "adjust_stock", "down")]
        rto = await qc_completed_rto(QCInput(result=QCResult.APPROVED))

        with pytest.raises(UpstreamError):
            await disposition_engine.execute_disposition(db, rto.id, "restock", warehouse)
        with pytest.raises(ConflictError) as exc_info:
            await disposition_engine.execute_disposition(db, rto.id, "scrap", warehouse)

        assert exc_info.value.code == "CONCURRENT_MODIFICATION"
        assert exc_info.value.details["action"] == "restock"

    @pytest.mark.asyncio
    async def test_running_execution_holds_a_lease(self, db, disposition_engine, collaborators, qc_completed_rto,
                                                   warehouse, base_time):
        """Test a second execution inside the lease is refused and one after it proceeds."""
        rto = await qc_completed_rto(QCInput(result=QCResult.APPROVED))
        rto.disposition_progress = {
            "action": "restock",
            "override": False,
            "claimed_at": base_time.isoformat(),
            "applied": {},
            "transaction_id": None,
        }
        await db.flush()

        with pytest.raises(ConflictError) as exc_info:
            await disposition_engine.execute_disposition(
                db, rto.id, "restock", warehouse, now=base_time + timedelta(seconds=30),
            )
        assert exc_info.value.code == "CONCURRENT_MODIFICATION"
        collaborators.inventory.adjust_stock.assert_not_awaited()

        rto = await disposition_engine.execute_disposition(
            db, rto.id, "restock", warehouse, now=base_time + timedelta(minutes=10),
        )
        assert rto.return_status == RTOStatus.DISPOSED.value
        assert collaborators.inventory.adjust_stock.await_count == 2
