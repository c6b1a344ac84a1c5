"""
Integration tests for the full invoice reconciliation workflow.
"""

import pytest
import asyncio
from datetime import date
from decimal import Decimal
from unittest.mock import patch

from invoice_recon.config import TestConfig
from invoice_recon.exceptions import (
    ConcurrentRunInProgress,
    IncompleteReconciliation,
    InvalidLineItemState,
    InvalidTransition,
    InvoiceClosed,
    InvoiceNotFound,
    LineItemNotFound,
    MissingReason,
    UpstreamTimeout,
)
from invoice_recon.main import (
    InvoiceReconciliationEngine,
    format_output_json,
    reconcile_invoice,
    reconcile_invoices_batch,
)
from invoice_recon.schemas.invoice import (
    InvoiceStatus,
    MatchStatus,
    OCRPayload,
    RawLineItem,
    VendorInvoice,
)
from invoice_recon.schemas.ledger import MatchDecision
from invoice_recon.schemas.po import POLineItem, POStatus, PurchaseOrder
from invoice_recon.stages.lifecycle import AUTO_QUEUE_NOTE
from invoice_recon.store import InMemoryReconciliationStore


class SlowStore(InMemoryReconciliationStore):
    """Store whose invoice reads yield long enough for runs to overlap."""

    async def get_invoice(self, invoice_id):
        await asyncio.sleep(0.05)
        return await super().get_invoice(invoice_id)


class FastTimeoutConfig(TestConfig):
    UPSTREAM_TIMEOUT_SECONDS = 0.05


@pytest.fixture
def sample_po():
    """Weekly service and a roll-off rental for one client."""
    return PurchaseOrder(
        id="PO-1",
        po_number="PO-2026-001",
        vendor_id="V1",
        client_id="C1",
        status=POStatus.SENT,
        po_date=date(2026, 3, 1),
        total=Decimal("790.00"),
        line_items=[
            POLineItem(
                id="POL-1",
                po_id="PO-1",
                line_number=1,
                description="Weekly trash pickup 4yd",
                quantity=Decimal("4"),
                vendor_unit_price=Decimal("85.00"),
            ),
            POLineItem(
                id="POL-2",
                po_id="PO-1",
                line_number=2,
                description="30-yard dumpster rental",
                quantity=Decimal("1"),
                vendor_unit_price=Decimal("450.00"),
            ),
        ],
    )


@pytest.fixture
def sample_invoice():
    """One exact line (one cent off) and one reworded line."""
    return VendorInvoice.from_ocr(
        "INV-1",
        "V1",
        OCRPayload(
            confidence=95.0,
            line_items=[
                RawLineItem(description="Weekly trash pickup 4yd", quantity=4, unit_price="85.00", amount="340.01"),
                RawLineItem(description="Dumpster rental 30yd", quantity="1", unit_price="$450.00"),
            ],
        ),
        client_id="C1",
        invoice_date=date(2026, 3, 10),
        total_minor=79001,
    )


@pytest.fixture
def store(sample_po, sample_invoice):
    return InMemoryReconciliationStore(
        invoices=[sample_invoice],
        purchase_orders=[sample_po],
        cfg=TestConfig(),
    )


@pytest.fixture
def engine(store):
    return InvoiceReconciliationEngine(store, TestConfig())


class TestReconciliationRun:
    """End-to-end runs through the stage graph."""

    @pytest.mark.asyncio
    async def test_first_run(self, engine, store):
        result = await engine.reconcile_invoice("INV-1")

        kinds = [o.kind for o in result.line_item_outcomes]
        assert kinds == ["matched", "partial"]
        assert result.line_item_outcomes[0].po_line_item_id == "POL-1"
        assert result.line_item_outcomes[1].po_line_item_id == "POL-2"
        assert result.line_item_outcomes[1].score == pytest.approx(0.73)

        assert result.match_confidence == pytest.approx(0.865)
        assert result.final_confidence == pytest.approx(90.75)
        assert result.previous_state == InvoiceStatus.PENDING
        assert result.new_state == InvoiceStatus.UNDER_REVIEW
        assert result.notes == [AUTO_QUEUE_NOTE]
        assert result.matching_record_ids == [1, 2]
        assert result.discrepancies == []

        invoice = await store.get_invoice("INV-1")
        assert invoice.status == InvoiceStatus.UNDER_REVIEW
        assert invoice.final_confidence == pytest.approx(90.75)
        assert [i.match_status for i in invoice.line_items] == [MatchStatus.MATCHED, MatchStatus.PARTIAL]
        assert invoice.line_items[1].po_line_item_id == "POL-2"
        assert invoice.notes[-1].message == AUTO_QUEUE_NOTE

        boundary = invoice.to_boundary()
        assert boundary["total"] == "790.01"
        assert boundary["subtotal"] is None
        assert boundary["status"] == "under_review"

    @pytest.mark.asyncio
    async def test_rerun_on_unchanged_data_writes_nothing(self, engine, store):
        first = await engine.reconcile_invoice("INV-1")
        second = await engine.reconcile_invoice("INV-1")

        assert len(await store.records_for_invoice("INV-1")) == 2
        assert second.matching_record_ids == first.matching_record_ids
        assert second.final_confidence == first.final_confidence
        assert second.previous_state == InvoiceStatus.UNDER_REVIEW
        assert second.new_state == InvoiceStatus.UNDER_REVIEW
        assert second.notes == []
        assert second.run_id != first.run_id

    @pytest.mark.asyncio
    async def test_no_purchase_orders(self, sample_invoice):
        store = InMemoryReconciliationStore(invoices=[sample_invoice], cfg=TestConfig())
        engine = InvoiceReconciliationEngine(store, TestConfig())

        result = await engine.reconcile_invoice("INV-1")

        assert [o.kind for o in result.line_item_outcomes] == ["unmatched", "unmatched"]
        assert [d.type for d in result.discrepancies] == ["no_po"]
        assert result.new_state == InvoiceStatus.PENDING
        assert result.final_confidence == pytest.approx(47.5)

    @pytest.mark.asyncio
    async def test_scenario_d_unmatched_line_keeps_invoice_pending(self, sample_po):
        invoice = VendorInvoice.from_ocr(
            "INV-2",
            "V1",
            OCRPayload(
                confidence=90.0,
                line_items=[RawLineItem(description="Consulting fee", quantity=1, unit_price="999.00")],
            ),
            client_id="C1",
            invoice_date=date(2026, 3, 10),
        )
        store = InMemoryReconciliationStore(invoices=[invoice], purchase_orders=[sample_po], cfg=TestConfig())
        engine = InvoiceReconciliationEngine(store, TestConfig())

        result = await engine.reconcile_invoice("INV-2")

        assert result.line_item_outcomes[0].kind == "unmatched"
        assert result.final_confidence == 45.0
        assert result.new_state == InvoiceStatus.PENDING
        assert [d.type for d in result.discrepancies] == ["no_match"]

        records = await store.records_for_invoice("INV-2")
        assert len(records) == 1
        assert records[0].decision == MatchDecision.REJECTED

    @pytest.mark.asyncio
    async def test_scenario_c_unparseable_line_goes_manual(self, sample_po):
        invoice = VendorInvoice.from_ocr(
            "INV-3",
            "V1",
            OCRPayload(
                confidence=92.0,
                line_items=[RawLineItem(description="Dumpster rental", unit_price="N/A", amount="450.00")],
            ),
            client_id="C1",
            invoice_date=date(2026, 3, 10),
        )
        store = InMemoryReconciliationStore(invoices=[invoice], purchase_orders=[sample_po], cfg=TestConfig())
        engine = InvoiceReconciliationEngine(store, TestConfig())

        result = await engine.reconcile_invoice("INV-3")

        assert result.line_item_outcomes[0].kind == "unparseable"
        assert result.new_state == InvoiceStatus.PENDING

        stored = await store.get_invoice("INV-3")
        assert stored.line_items[0].match_status == MatchStatus.MANUAL
        assert {d.field for d in stored.line_items[0].diagnostics} >= {"unit_price"}

    @pytest.mark.asyncio
    async def test_oversized_price_only_affects_its_line(self, sample_po):
        invoice = VendorInvoice.from_ocr(
            "INV-5",
            "V1",
            OCRPayload(
                confidence=95.0,
                line_items=[
                    RawLineItem(description="Weekly trash pickup 4yd", quantity=4, unit_price="85.00"),
                    RawLineItem(description="Dumpster rental 30yd", quantity="1", unit_price="9" * 30),
                ],
            ),
            client_id="C1",
            invoice_date=date(2026, 3, 10),
        )
        store = InMemoryReconciliationStore(invoices=[invoice], purchase_orders=[sample_po], cfg=TestConfig())
        engine = InvoiceReconciliationEngine(store, TestConfig())

        result = await engine.reconcile_invoice("INV-5")

        assert [o.kind for o in result.line_item_outcomes] == ["matched", "unparseable"]
        assert result.new_state == InvoiceStatus.PENDING

        stored = await store.get_invoice("INV-5")
        assert stored.line_items[1].match_status == MatchStatus.MANUAL
        assert any(d.message == "out of range" for d in stored.line_items[1].diagnostics)

    @pytest.mark.asyncio
    async def test_unknown_invoice(self, engine):
        with pytest.raises(InvoiceNotFound):
            await engine.reconcile_invoice("INV-404")

    @pytest.mark.asyncio
    async def test_output_serializes(self, engine):
        result = await engine.reconcile_invoice("INV-1")
        text = format_output_json(result)
        assert '"new_state": "under_review"' in text
        assert '"kind": "partial"' in text


class TestReviewerOperations:
    """Acknowledge, reject, edit and lifecycle moves through the engine."""

    @pytest.mark.asyncio
    async def test_scenario_e_partial_must_be_acknowledged(self, engine, store):
        await engine.reconcile_invoice("INV-1")

        with pytest.raises(IncompleteReconciliation):
            await engine.approve("INV-1", actor="alice")
        assert (await store.get_invoice("INV-1")).status == InvoiceStatus.UNDER_REVIEW

        await engine.acknowledge_line_item("INV-1", "INV-1-L2", actor="alice")
        approved = await engine.approve("INV-1", actor="alice")
        assert approved.status == InvoiceStatus.APPROVED

        paid = await engine.mark_paid("INV-1", payment_reference="ACH-1001")
        assert paid.status == InvoiceStatus.PAID

    @pytest.mark.asyncio
    async def test_acknowledgement_survives_unchanged_rerun(self, engine, store):
        await engine.reconcile_invoice("INV-1")
        await engine.acknowledge_line_item("INV-1", "INV-1-L2")
        await engine.reconcile_invoice("INV-1")

        invoice = await store.get_invoice("INV-1")
        assert invoice.line_items[1].acknowledged is True

    @pytest.mark.asyncio
    async def test_only_partial_lines_can_be_acknowledged(self, engine):
        await engine.reconcile_invoice("INV-1")
        with pytest.raises(InvalidLineItemState):
            await engine.acknowledge_line_item("INV-1", "INV-1-L1")
        with pytest.raises(LineItemNotFound):
            await engine.acknowledge_line_item("INV-1", "INV-1-L9")

    @pytest.mark.asyncio
    async def test_rejected_match_is_not_proposed_again(self, engine, store):
        await engine.reconcile_invoice("INV-1")

        record = await engine.reject_match("INV-1", "INV-1-L2", "wrong container size", actor="alice")
        assert record.id == 3
        assert record.decision == MatchDecision.REJECTED
        assert record.actor == "alice"
        assert record.po_line_item_id == "POL-2"

        result = await engine.reconcile_invoice("INV-1")

        assert result.line_item_outcomes[1].kind == "manual"
        assert result.matching_record_ids == [1, 3]
        assert "rejected_match" in [d.type for d in result.discrepancies]
        assert len(await store.records_for_invoice("INV-1")) == 3

        with pytest.raises(IncompleteReconciliation):
            await engine.approve("INV-1", acknowledged_ids=["INV-1-L2"])

    @pytest.mark.asyncio
    async def test_reject_match_needs_reason(self, engine):
        await engine.reconcile_invoice("INV-1")
        with pytest.raises(MissingReason):
            await engine.reject_match("INV-1", "INV-1-L2", " ")

    @pytest.mark.asyncio
    async def test_dispute_edit_rerun_reopen(self, engine, store):
        await engine.reconcile_invoice("INV-1")

        with pytest.raises(MissingReason):
            await engine.dispute("INV-1", "")

        disputed = await engine.dispute("INV-1", "container size looks wrong", actor="alice")
        assert disputed.status == InvoiceStatus.DISPUTED

        with pytest.raises(InvalidTransition):
            await engine.reopen("INV-1")

        with pytest.raises(ValueError):
            await engine.edit_line_item("INV-1", "INV-1-L2", match_status="matched")

        await engine.edit_line_item("INV-1", "INV-1-L2", description="30-yard dumpster rental")
        result = await engine.reconcile_invoice("INV-1")

        assert result.line_item_outcomes[1].kind == "matched"
        assert result.new_state == InvoiceStatus.DISPUTED
        assert result.matching_record_ids == [1, 3]

        reopened = await engine.reopen("INV-1", actor="alice")
        assert reopened.status == InvoiceStatus.UNDER_REVIEW

        approved = await engine.approve("INV-1")
        assert approved.status == InvoiceStatus.APPROVED

    @pytest.mark.asyncio
    async def test_closed_invoice_is_not_reconciled_or_edited(self, engine, store):
        await engine.reconcile_invoice("INV-1")
        await engine.approve("INV-1", acknowledged_ids=["INV-1-L2"])

        with pytest.raises(InvoiceClosed):
            await engine.reconcile_invoice("INV-1")
        with pytest.raises(InvoiceClosed):
            await engine.edit_line_item("INV-1", "INV-1-L1", description="changed")
        assert len(await store.records_for_invoice("INV-1")) == 2

    @pytest.mark.asyncio
    async def test_manual_submit_and_reject(self, engine):
        submitted = await engine.submit_for_review("INV-1")
        assert submitted.status == InvoiceStatus.UNDER_REVIEW

        rejected = await engine.reject("INV-1", reason="duplicate")
        assert rejected.status == InvoiceStatus.REJECTED
        with pytest.raises(InvalidTransition):
            await engine.submit_for_review("INV-1")

    @pytest.mark.asyncio
    async def test_matching_records_newest_first(self, engine):
        await engine.reconcile_invoice("INV-1")
        await engine.reject_match("INV-1", "INV-1-L2", "wrong container size")

        records = await engine.get_matching_records("INV-1")

        assert [r.id for r in records] == [3, 2, 1]
        assert records[1].decision == MatchDecision.SUPERSEDED
        assert records[1].superseded_by == 3


class TestConcurrencyAndTimeouts:
    """Per-invoice locking and bounded upstream calls."""

    @pytest.mark.asyncio
    async def test_concurrent_run_on_same_invoice_fails_fast(self, sample_po, sample_invoice):
        store = SlowStore(invoices=[sample_invoice], purchase_orders=[sample_po], cfg=TestConfig())
        engine = InvoiceReconciliationEngine(store, TestConfig())

        results = await asyncio.gather(
            engine.reconcile_invoice("INV-1"),
            engine.reconcile_invoice("INV-1"),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], ConcurrentRunInProgress)
        assert errors[0].retryable is True
        assert len(await store.records_for_invoice("INV-1")) == 2
        assert engine.locks.is_locked("INV-1") is False
        assert len(engine.locks) == 0

    @pytest.mark.asyncio
    async def test_module_level_calls_on_one_store_share_locks(self, sample_po, sample_invoice):
        store = SlowStore(invoices=[sample_invoice], purchase_orders=[sample_po], cfg=TestConfig())

        results = await asyncio.gather(
            reconcile_invoice("INV-1", store),
            reconcile_invoice("INV-1", store),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], ConcurrentRunInProgress)
        assert len(await store.records_for_invoice("INV-1")) == 2

    @pytest.mark.asyncio
    async def test_upstream_timeout_leaves_state_untouched(self, store):
        engine = InvoiceReconciliationEngine(store, FastTimeoutConfig())

        async def slow_line_items(*args, **kwargs):
            await asyncio.sleep(1)
            return []

        with patch.object(store, "get_active_line_items", slow_line_items):
            with pytest.raises(UpstreamTimeout) as exc_info:
                await engine.reconcile_invoice("INV-1")

        assert exc_info.value.operation == "get_active_line_items"
        assert exc_info.value.code == "UPSTREAM_TIMEOUT"
        assert (await store.get_invoice("INV-1")).status == InvoiceStatus.PENDING
        assert await store.records_for_invoice("INV-1") == []
        assert engine.locks.is_locked("INV-1") is False

    @pytest.mark.asyncio
    async def test_batch_continues_past_failures(self, store):
        results = await reconcile_invoices_batch(["INV-1", "INV-404"], store)
        assert list(results) == ["INV-1"]
        assert results["INV-1"].new_state == InvoiceStatus.UNDER_REVIEW


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
