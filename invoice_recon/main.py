"""
Main entry point for the invoice reconciliation engine.

InvoiceReconciliationEngine wraps the stage graph with per-invoice locking,
snapshot reads, bounded upstream calls and an atomic commit, and exposes
the reviewer and lifecycle operations of the host system.
"""

import asyncio
import uuid
import weakref
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from invoice_recon.config import Config, get_config
from invoice_recon.exceptions import (
    InvalidLineItemState,
    InvoiceClosed,
    LineItemNotFound,
    MissingReason,
    ReconciliationError,
    UpstreamTimeout,
)
from invoice_recon.graph import get_reconciliation_graph
from invoice_recon.ledger import current_view, reviewer_rejected_pairs
from invoice_recon.locks import InvoiceLockRegistry
from invoice_recon.schemas.invoice import InvoiceLineItem, MatchStatus, VendorInvoice
from invoice_recon.schemas.ledger import MatchDecision, MatchingRecord, PlannedRecord
from invoice_recon.schemas.matching import Unmatched
from invoice_recon.schemas.output import ReconciliationResult
from invoice_recon.stages.lifecycle import CLOSED_STATUSES, SYSTEM_ACTOR, InvoiceLifecycle
from invoice_recon.state import ReconciliationState
from invoice_recon.store import ReconciliationStore, load_store_from_file
from invoice_recon.utils import dict_to_json_string
from invoice_recon.utils.logging import setup_logging


logger = setup_logging(__name__)
config = get_config()

EDITABLE_LINE_FIELDS = frozenset({"description", "quantity", "unit_price", "amount", "service_type"})

# Result of an invoice mutation: (invoice to persist, ledger rows to write)
Mutation = Tuple[VendorInvoice, List[PlannedRecord]]


def apply_outcomes(state: ReconciliationState) -> VendorInvoice:
    """
    Write a run's results onto a copy of the invoice snapshot.

    Acknowledgement survives only while the line stays partial on the same
    PO line.
    """
    invoice = state.invoice.model_copy(deep=True)
    outcomes = {o.line_item_id: o for o in state.outcomes}
    diagnostics = {n.ref_id: n.diagnostics for n in state.normalized_invoice_items}

    for item in invoice.line_items:
        outcome = outcomes.get(item.id)
        if outcome is None:
            continue

        keep_ack = (
            item.acknowledged
            and outcome.match_status == MatchStatus.PARTIAL
            and item.match_status == MatchStatus.PARTIAL
            and item.po_line_item_id == outcome.assigned_po_line_item_id
        )

        item.match_status = outcome.match_status
        item.po_line_item_id = outcome.assigned_po_line_item_id
        if outcome.assigned_po_line_item_id is not None:
            item.match_score = outcome.assigned_score
        elif isinstance(outcome, Unmatched):
            item.match_score = outcome.best_score
        else:
            item.match_score = None
        item.line_confidence = outcome.line_confidence
        item.diagnostics = list(diagnostics.get(item.id, []))
        item.acknowledged = keep_ack

    invoice.final_confidence = state.final_confidence
    if state.planned_status is not None:
        invoice.status = state.planned_status
    for note in state.system_notes:
        invoice.add_note(SYSTEM_ACTOR, note)
    invoice.updated_at = datetime.utcnow()

    return invoice


def build_output(state: ReconciliationState, written: List[MatchingRecord]) -> ReconciliationResult:
    """Build the host-facing result from the final state and the rows written."""
    view = dict(state.current_records)
    for record in written:
        view[record.line_item_id] = record

    record_ids = [
        view[item.id].id
        for item in state.invoice.line_items
        if item.id in view
    ]

    return ReconciliationResult(
        invoice_id=state.invoice_id,
        run_id=state.run_id,
        processing_timestamp=state.processing_timestamp,
        final_confidence=state.final_confidence,
        match_confidence=state.match_confidence,
        line_item_outcomes=state.outcomes,
        previous_state=state.previous_status or state.invoice.status,
        new_state=state.planned_status or state.invoice.status,
        matching_record_ids=record_ids,
        discrepancies=state.discrepancies,
        notes=list(state.system_notes),
    )


class InvoiceReconciliationEngine:
    """
    Reconciliation engine for one store.

    Every operation takes the invoice lock, reads a snapshot, computes the
    change in memory and persists it with a single commit.
    """

    def __init__(
        self,
        store: ReconciliationStore,
        cfg: Config = None,
        lock_registry: Optional[InvoiceLockRegistry] = None,
    ):
        self.store = store
        self.cfg = cfg or config
        self.locks = lock_registry or InvoiceLockRegistry()
        self.lifecycle = InvoiceLifecycle(self.cfg)

    async def _call(self, operation: str, awaitable: Awaitable) -> Any:
        """Await an upstream call under the configured timeout."""
        timeout = self.cfg.UPSTREAM_TIMEOUT_SECONDS
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Upstream call '{operation}' timed out after {timeout:.1f}s")
            raise UpstreamTimeout(operation, timeout) from None

    async def _run_graph(self, state: ReconciliationState) -> ReconciliationState:
        graph = get_reconciliation_graph(self.cfg)
        result = await graph.ainvoke(state)
        # LangGraph returns channel values as a dict
        if isinstance(result, dict):
            return ReconciliationState(**result)
        return result

    async def reconcile_invoice(self, invoice_id: str) -> ReconciliationResult:
        """
        Run normalize -> match -> resolve -> aggregate -> lifecycle for one invoice.

        Raises:
            InvoiceNotFound, InvoiceClosed, ConcurrentRunInProgress,
            UpstreamTimeout, LedgerConflict
        """
        async with self.locks.hold(invoice_id):
            invoice = await self._call("get_invoice", self.store.get_invoice(invoice_id))
            if invoice.status in CLOSED_STATUSES:
                raise InvoiceClosed(invoice_id, invoice.status.value)

            po_line_items = await self._call(
                "get_active_line_items",
                self.store.get_active_line_items(
                    invoice.vendor_id,
                    client_id=invoice.client_id,
                    site_id=invoice.site_id,
                    invoice_date=invoice.invoice_date,
                    invoice_total_minor=invoice.total_minor,
                    po_id=invoice.po_id,
                ),
            )
            records = await self._call(
                "records_for_invoice", self.store.records_for_invoice(invoice_id)
            )

            state = ReconciliationState(
                run_id=uuid.uuid4().hex,
                invoice_id=invoice_id,
                processing_timestamp=datetime.utcnow(),
                invoice=invoice,
                po_line_items=po_line_items,
                current_records=current_view(records),
                excluded_pairs=reviewer_rejected_pairs(records),
            )

            logger.info(f"Starting reconciliation run {state.run_id} for invoice {invoice_id}")
            logger.info(f"Line items: {len(invoice.line_items)}, PO line items: {len(po_line_items)}")

            final_state = await self._run_graph(state)
            logger.debug(f"Stage reasoning for {invoice_id}:\n{final_state.get_stage_reasoning()}")
            logger.debug(f"Run summary: {final_state.get_summary()}")
            updated = apply_outcomes(final_state)

            written = await self._call(
                "commit",
                self.store.commit(updated, final_state.planned_records, final_state.run_id),
            )

        result = build_output(final_state, written)
        logger.info(
            f"Reconciliation complete for {invoice_id}: final confidence "
            f"{result.final_confidence:.2f}, {result.previous_state.value} -> "
            f"{result.new_state.value}, {len(written)} record(s) written"
        )
        return result

    async def _mutate(
        self,
        invoice_id: str,
        operation: str,
        mutation: Callable[[VendorInvoice, List[MatchingRecord]], Mutation],
    ) -> Tuple[VendorInvoice, List[MatchingRecord]]:
        """Lock, read, apply ``mutation`` to the snapshot, commit."""
        async with self.locks.hold(invoice_id):
            invoice = await self._call("get_invoice", self.store.get_invoice(invoice_id))
            records = await self._call(
                "records_for_invoice", self.store.records_for_invoice(invoice_id)
            )

            updated, planned = mutation(invoice, records)
            updated.updated_at = datetime.utcnow()

            written = await self._call(
                "commit",
                self.store.commit(updated, planned, f"{operation}-{uuid.uuid4().hex}"),
            )

        logger.info(f"{operation} on invoice {invoice_id} committed ({len(written)} record(s))")
        return updated, written

    @staticmethod
    def _open_line_item(invoice: VendorInvoice, line_item_id: str) -> InvoiceLineItem:
        if invoice.status in CLOSED_STATUSES:
            raise InvoiceClosed(invoice.id, invoice.status.value)
        item = invoice.get_line_item(line_item_id)
        if item is None:
            raise LineItemNotFound(invoice.id, line_item_id)
        return item

    # Reviewer operations

    async def acknowledge_line_item(
        self,
        invoice_id: str,
        line_item_id: str,
        actor: str = "reviewer",
    ) -> VendorInvoice:
        """Mark a partial line as reviewed so that approval may proceed."""

        def mutation(invoice, records):
            item = self._open_line_item(invoice, line_item_id)
            if item.match_status != MatchStatus.PARTIAL:
                raise InvalidLineItemState(line_item_id, item.match_status.value, "acknowledge")
            item.acknowledged = True
            invoice.add_note(actor, f"acknowledged partial match on {line_item_id}")
            return invoice, []

        invoice, _ = await self._mutate(invoice_id, "acknowledge", mutation)
        return invoice

    async def reject_match(
        self,
        invoice_id: str,
        line_item_id: str,
        reason: str,
        actor: str = "reviewer",
    ) -> MatchingRecord:
        """
        Reject the engine's pairing for a line.

        Writes a reviewer rejection that supersedes the accepted record. The
        line becomes manual and the rejected PO line is never proposed for it
        again.
        """

        def mutation(invoice, records):
            item = self._open_line_item(invoice, line_item_id)
            if not reason or not reason.strip():
                raise MissingReason("reject a match")
            if item.match_status not in (MatchStatus.MATCHED, MatchStatus.PARTIAL):
                raise InvalidLineItemState(line_item_id, item.match_status.value, "reject the match of")

            current = current_view(records).get(line_item_id)
            planned = PlannedRecord(
                invoice_id=invoice.id,
                line_item_id=line_item_id,
                po_line_item_id=item.po_line_item_id,
                score=current.score if current else (item.match_score or 0.0),
                decision=MatchDecision.REJECTED,
                reason=reason.strip(),
                actor=actor,
                supersedes=current.id if current else None,
            )

            item.match_status = MatchStatus.MANUAL
            item.po_line_item_id = None
            item.match_score = None
            item.acknowledged = False
            invoice.add_note(actor, f"rejected match on {line_item_id}: {reason.strip()}")
            return invoice, [planned]

        _, written = await self._mutate(invoice_id, "reject_match", mutation)
        return written[0]

    async def edit_line_item(
        self,
        invoice_id: str,
        line_item_id: str,
        actor: str = "reviewer",
        **changes: Any,
    ) -> VendorInvoice:
        """
        Correct OCR fields on a line. Re-run reconciliation afterwards.

        Raises:
            ValueError: a field that is not editable
        """
        unknown = set(changes) - EDITABLE_LINE_FIELDS
        if unknown:
            raise ValueError(f"Fields not editable: {sorted(unknown)}")

        def mutation(invoice, records):
            item = self._open_line_item(invoice, line_item_id)
            for field, value in changes.items():
                setattr(item, field, value)
            item.acknowledged = False
            invoice.add_note(actor, f"edited {line_item_id}: {', '.join(sorted(changes))}")
            return invoice, []

        invoice, _ = await self._mutate(invoice_id, "edit_line_item", mutation)
        return invoice

    # Lifecycle operations

    async def submit_for_review(self, invoice_id: str, actor: str = "reviewer") -> VendorInvoice:
        def mutation(invoice, records):
            return self.lifecycle.submit_for_review(invoice, actor), []

        invoice, _ = await self._mutate(invoice_id, "submit_for_review", mutation)
        return invoice

    async def approve(
        self,
        invoice_id: str,
        actor: str = "reviewer",
        acknowledged_ids: Iterable[str] = (),
    ) -> VendorInvoice:
        def mutation(invoice, records):
            return self.lifecycle.approve(invoice, actor, acknowledged_ids), []

        invoice, _ = await self._mutate(invoice_id, "approve", mutation)
        return invoice

    async def dispute(self, invoice_id: str, reason: str, actor: str = "reviewer") -> VendorInvoice:
        def mutation(invoice, records):
            sequence = max((r.id for r in records), default=0)
            return self.lifecycle.dispute(invoice, reason, actor, sequence), []

        invoice, _ = await self._mutate(invoice_id, "dispute", mutation)
        return invoice

    async def reopen(self, invoice_id: str, actor: str = "reviewer") -> VendorInvoice:
        def mutation(invoice, records):
            sequence = max((r.id for r in records), default=0)
            return self.lifecycle.reopen(invoice, actor, sequence), []

        invoice, _ = await self._mutate(invoice_id, "reopen", mutation)
        return invoice

    async def reject(
        self,
        invoice_id: str,
        reason: Optional[str] = None,
        actor: str = "reviewer",
    ) -> VendorInvoice:
        def mutation(invoice, records):
            return self.lifecycle.reject(invoice, actor, reason), []

        invoice, _ = await self._mutate(invoice_id, "reject", mutation)
        return invoice

    async def mark_paid(
        self,
        invoice_id: str,
        payment_reference: Optional[str] = None,
        actor: str = "payments",
    ) -> VendorInvoice:
        """External payment confirmation; the invoice must be approved."""

        def mutation(invoice, records):
            return self.lifecycle.mark_paid(invoice, actor, payment_reference), []

        invoice, _ = await self._mutate(invoice_id, "mark_paid", mutation)
        return invoice

    async def get_matching_records(self, invoice_id: str) -> List[MatchingRecord]:
        """Ledger rows for an invoice, newest first."""
        await self._call("get_invoice", self.store.get_invoice(invoice_id))
        records = await self._call(
            "records_for_invoice", self.store.records_for_invoice(invoice_id)
        )
        return sorted(records, key=lambda r: r.id, reverse=True)


# Engine over the configured data file (singleton)
_default_engine: Optional[InvoiceReconciliationEngine] = None

# Lock registry per caller-supplied store; calls on the same store share it
_store_locks: "weakref.WeakKeyDictionary[ReconciliationStore, InvoiceLockRegistry]" = (
    weakref.WeakKeyDictionary()
)


def get_engine(store: Optional[ReconciliationStore] = None) -> InvoiceReconciliationEngine:
    """
    Get an engine for ``store``.

    Engines over the same store share one lock registry. Without a store,
    returns the engine backed by ``config.DATA_PATH``.
    """
    global _default_engine
    if store is not None:
        locks = _store_locks.get(store)
        if locks is None:
            locks = InvoiceLockRegistry()
            _store_locks[store] = locks
        return InvoiceReconciliationEngine(store, lock_registry=locks)

    if _default_engine is None:
        _default_engine = InvoiceReconciliationEngine(load_store_from_file(config.DATA_PATH))
    return _default_engine


async def reconcile_invoice(
    invoice_id: str,
    store: Optional[ReconciliationStore] = None,
) -> ReconciliationResult:
    """
    Reconcile a single invoice.

    Args:
        invoice_id: Invoice to reconcile
        store: Optional store; defaults to the configured data file

    Returns:
        ReconciliationResult for the run
    """
    engine = get_engine(store)
    return await engine.reconcile_invoice(invoice_id)


async def reconcile_invoices_batch(
    invoice_ids: List[str],
    store: Optional[ReconciliationStore] = None,
) -> Dict[str, ReconciliationResult]:
    """
    Reconcile several invoices concurrently.

    Failures are logged per invoice and do not stop the batch.
    """
    engine = get_engine(store)
    outcomes = await asyncio.gather(
        *(engine.reconcile_invoice(invoice_id) for invoice_id in invoice_ids),
        return_exceptions=True,
    )

    results = {}
    for invoice_id, outcome in zip(invoice_ids, outcomes):
        if isinstance(outcome, ReconciliationError):
            logger.error(f"Error reconciling {invoice_id}: {outcome.to_dict()}")
            continue
        if isinstance(outcome, BaseException):
            raise outcome
        results[invoice_id] = outcome

    logger.info(f"Batch reconciliation complete. Reconciled {len(results)}/{len(invoice_ids)} invoices.")
    return results


def format_output_json(output: ReconciliationResult) -> str:
    """Format output as JSON string."""
    return dict_to_json_string(output.model_dump(mode="json"))


if __name__ == "__main__":
    import sys

    if len(sys.argv) > 1:
        data_file = sys.argv[2] if len(sys.argv) > 2 else config.DATA_PATH
        store = load_store_from_file(data_file)

        if sys.argv[1] == "--all":
            results = asyncio.run(reconcile_invoices_batch(store.list_invoice_ids(), store))
            for result in results.values():
                print(format_output_json(result))
        else:
            output = asyncio.run(reconcile_invoice(sys.argv[1], store))
            print(format_output_json(output))
    else:
        print("Usage: python -m invoice_recon.main <invoice_id|--all> [data_file]")
