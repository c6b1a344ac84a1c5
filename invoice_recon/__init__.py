"""
Vendor Invoice Reconciliation Engine
"""

__version__ = "0.1.0"
__description__ = "Line-item reconciliation of vendor invoices against purchase orders"

from invoice_recon.main import (
    InvoiceReconciliationEngine,
    reconcile_invoice,
    reconcile_invoices_batch,
)
from invoice_recon.state import ReconciliationState
from invoice_recon.schemas.output import ReconciliationResult
from invoice_recon.store import InMemoryReconciliationStore, ReconciliationStore

__all__ = [
    "InvoiceReconciliationEngine",
    "reconcile_invoice",
    "reconcile_invoices_batch",
    "ReconciliationState",
    "ReconciliationResult",
    "InMemoryReconciliationStore",
    "ReconciliationStore",
]
