"""
Persistence collaborators for the reconciliation engine.

ReconciliationStore is the boundary to the PO store and to invoice and
ledger persistence. InMemoryReconciliationStore backs tests and the CLI;
a database-backed store implements the same coroutines.
"""

import json
from abc import ABC, abstractmethod
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from invoice_recon.config import Config, get_config
from invoice_recon.exceptions import InvoiceNotFound
from invoice_recon.ledger import MatchingLedger
from invoice_recon.schemas.invoice import VendorInvoice
from invoice_recon.schemas.ledger import MatchingRecord, PlannedRecord
from invoice_recon.schemas.po import POLineItem, PurchaseOrder
from invoice_recon.utils import id_sort_key
from invoice_recon.utils.logging import setup_logging


logger = setup_logging(__name__)
config = get_config()


class ReconciliationStore(ABC):
    """Storage operations the engine depends on. Reads return snapshots."""

    @abstractmethod
    async def get_invoice(self, invoice_id: str) -> VendorInvoice:
        """Raises InvoiceNotFound."""

    @abstractmethod
    async def get_active_line_items(
        self,
        vendor_id: str,
        client_id: Optional[str] = None,
        site_id: Optional[str] = None,
        invoice_date: Optional[date] = None,
        invoice_total_minor: Optional[int] = None,
        po_id: Optional[str] = None,
    ) -> List[POLineItem]:
        """PO line items an invoice may be matched against, in preference order."""

    @abstractmethod
    async def records_for_invoice(self, invoice_id: str) -> List[MatchingRecord]:
        """All ledger rows for an invoice, oldest first."""

    @abstractmethod
    async def commit(
        self,
        invoice: VendorInvoice,
        planned_records: List[PlannedRecord],
        run_id: str,
    ) -> List[MatchingRecord]:
        """
        Persist invoice state and ledger rows as one atomic write.

        Raises:
            InvoiceNotFound: invoice no longer exists
            LedgerConflict: planned rows were computed from a stale view
        """


def _within_window(po: PurchaseOrder, invoice_date: Optional[date], window_days: int) -> bool:
    if invoice_date is None:
        return True
    dates = [d for d in (po.po_date, po.expected_delivery_date) if d is not None]
    if not dates:
        return True
    window = timedelta(days=window_days)
    return any(invoice_date - window <= d <= invoice_date + window for d in dates)


class InMemoryReconciliationStore(ReconciliationStore):
    """
    Dict-backed store.

    Reads hand out deep copies, so a run works on a snapshot that later
    writes cannot change underneath it.
    """

    def __init__(
        self,
        invoices: Optional[Iterable[VendorInvoice]] = None,
        purchase_orders: Optional[Iterable[PurchaseOrder]] = None,
        records: Optional[Iterable[MatchingRecord]] = None,
        cfg: Config = None,
    ):
        self.cfg = cfg or config
        self._invoices: Dict[str, VendorInvoice] = {}
        self._purchase_orders: Dict[str, PurchaseOrder] = {}
        self.ledger = MatchingLedger(records)

        for invoice in invoices or []:
            self.add_invoice(invoice)
        for po in purchase_orders or []:
            self.add_purchase_order(po)

    def add_invoice(self, invoice: VendorInvoice) -> None:
        self._invoices[invoice.id] = invoice.model_copy(deep=True)

    def add_purchase_order(self, po: PurchaseOrder) -> None:
        self._purchase_orders[po.id] = po.model_copy(deep=True)

    def list_invoice_ids(self) -> List[str]:
        return sorted(self._invoices, key=id_sort_key)

    async def get_invoice(self, invoice_id: str) -> VendorInvoice:
        invoice = self._invoices.get(invoice_id)
        if invoice is None:
            raise InvoiceNotFound(invoice_id)
        return invoice.model_copy(deep=True)

    async def get_active_line_items(
        self,
        vendor_id: str,
        client_id: Optional[str] = None,
        site_id: Optional[str] = None,
        invoice_date: Optional[date] = None,
        invoice_total_minor: Optional[int] = None,
        po_id: Optional[str] = None,
    ) -> List[POLineItem]:
        """
        Select PO lines for matching.

        A linked PO is used as-is. Otherwise: open POs (draft, sent or
        approved), not deleted, same vendor, same client and site when the
        invoice names them, dated within the configured window of the
        invoice date. Ordered by closeness of PO total to invoice total,
        then newest PO first, then line number.
        """
        if po_id is not None:
            po = self._purchase_orders.get(po_id)
            if po is None or po.deleted:
                return []
            return [
                item.model_copy(deep=True)
                for item in sorted(po.line_items, key=lambda i: i.line_number)
            ]

        active_statuses = set(self.cfg.ACTIVE_PO_STATUSES)
        selected = [
            po
            for po in self._purchase_orders.values()
            if po.vendor_id == vendor_id
            and not po.deleted
            and po.status.value in active_statuses
            and (client_id is None or po.client_id == client_id)
            and (site_id is None or po.site_id == site_id)
            and _within_window(po, invoice_date, self.cfg.PO_DATE_WINDOW_DAYS)
        ]

        target = Decimal(invoice_total_minor or 0).scaleb(-self.cfg.MINOR_UNIT_DIGITS)

        def total_distance(po: PurchaseOrder) -> Decimal:
            return abs(po.computed_total - target)

        # Stable sorts, least significant key first
        selected.sort(key=lambda po: id_sort_key(po.id))
        selected.sort(key=lambda po: po.po_date or date.min, reverse=True)
        selected.sort(key=total_distance)

        return [
            item.model_copy(deep=True)
            for po in selected
            for item in sorted(po.line_items, key=lambda i: i.line_number)
        ]

    async def records_for_invoice(self, invoice_id: str) -> List[MatchingRecord]:
        return self.ledger.records_for_invoice(invoice_id)

    async def commit(
        self,
        invoice: VendorInvoice,
        planned_records: List[PlannedRecord],
        run_id: str,
    ) -> List[MatchingRecord]:
        if invoice.id not in self._invoices:
            raise InvoiceNotFound(invoice.id)

        # Ledger validation happens before either write
        written = self.ledger.apply(planned_records, run_id)
        self._invoices[invoice.id] = invoice.model_copy(deep=True)
        return written


def load_purchase_orders_from_file(po_file: str) -> List[PurchaseOrder]:
    """Load POs from a JSON list."""
    try:
        with open(po_file, "r") as f:
            po_data = json.load(f)
    except FileNotFoundError:
        logger.warning(f"PO file not found: {po_file}. Using empty PO list.")
        return []

    pos = [PurchaseOrder.model_validate(po_dict) for po_dict in po_data]
    logger.info(f"Loaded {len(pos)} purchase orders from {po_file}")
    return pos


def load_invoices_from_file(invoice_file: str) -> List[VendorInvoice]:
    """Load vendor invoices from a JSON list."""
    try:
        with open(invoice_file, "r") as f:
            invoice_data = json.load(f)
    except FileNotFoundError:
        logger.warning(f"Invoice file not found: {invoice_file}. Using empty invoice list.")
        return []

    invoices = [VendorInvoice.model_validate(inv_dict) for inv_dict in invoice_data]
    logger.info(f"Loaded {len(invoices)} invoices from {invoice_file}")
    return invoices


def load_store_from_file(data_file: str, cfg: Config = None) -> InMemoryReconciliationStore:
    """
    Seed an in-memory store from one JSON document with
    ``purchase_orders``, ``invoices`` and optional ``matching_records`` keys.
    """
    try:
        with open(data_file, "r") as f:
            data = json.load(f)
    except FileNotFoundError:
        logger.warning(f"Data file not found: {data_file}. Starting with an empty store.")
        data = {}

    store = InMemoryReconciliationStore(
        invoices=[VendorInvoice.model_validate(d) for d in data.get("invoices", [])],
        purchase_orders=[PurchaseOrder.model_validate(d) for d in data.get("purchase_orders", [])],
        records=[MatchingRecord.model_validate(d) for d in data.get("matching_records", [])],
        cfg=cfg,
    )
    logger.info(
        f"Loaded store from {data_file}: {len(store.list_invoice_ids())} invoice(s), "
        f"{len(store.ledger)} matching record(s)"
    )
    return store
