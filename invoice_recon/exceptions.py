"""
Typed exceptions for the reconciliation engine.

Every error carries a class-level ``code`` (machine readable) and a
``retryable`` flag so the host system can decide between surfacing a
validation error, retrying, or reporting a system fault.

    ReconciliationError (base)
    |
    +-- ParseFailure                 per-field, absorbed by the normalizer
    +-- NoCandidate                  informational, becomes an unmatched line
    +-- NotFoundError
    |   +-- InvoiceNotFound
    |   +-- LineItemNotFound
    +-- LifecycleError
    |   +-- InvalidTransition
    |   |   +-- IncompleteReconciliation
    |   +-- MissingReason
    |   +-- InvalidLineItemState
    |   +-- InvoiceClosed
    +-- ConcurrencyError
    |   +-- ConcurrentRunInProgress
    |   +-- LedgerConflict
    +-- UpstreamTimeout
"""

from typing import Any, Dict, List, Optional


class ReconciliationError(Exception):
    """Base exception for all reconciliation engine errors."""

    code: str = "RECONCILIATION_ERROR"
    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Structured form for logs and host-system responses."""
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class ParseFailure(ReconciliationError):
    """A single field could not be normalized."""

    code: str = "PARSE_FAILURE"

    def __init__(self, field: str, raw_value: Any, reason: str):
        self.field = field
        self.raw_value = raw_value
        self.reason = reason
        super().__init__(
            f"Could not parse {field} from {raw_value!r}: {reason}",
            {"field": field, "raw_value": None if raw_value is None else str(raw_value)},
        )


class NoCandidate(ReconciliationError):
    """No PO line item scored above the candidate floor."""

    code: str = "NO_CANDIDATE"

    def __init__(self, line_item_id: str):
        self.line_item_id = line_item_id
        super().__init__(
            f"No PO line item candidate for line item {line_item_id}",
            {"line_item_id": line_item_id},
        )


# Lookup errors


class NotFoundError(ReconciliationError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"


class InvoiceNotFound(NotFoundError):
    """Vendor invoice with given ID was not found."""

    code: str = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}", {"invoice_id": invoice_id})


class LineItemNotFound(NotFoundError):
    """Line item does not belong to the invoice."""

    code: str = "LINE_ITEM_NOT_FOUND"

    def __init__(self, invoice_id: str, line_item_id: str):
        self.invoice_id = invoice_id
        self.line_item_id = line_item_id
        super().__init__(
            f"Line item {line_item_id} not found on invoice {invoice_id}",
            {"invoice_id": invoice_id, "line_item_id": line_item_id},
        )


# Lifecycle errors


class LifecycleError(ReconciliationError):
    """Base exception for invoice lifecycle violations."""

    code: str = "LIFECYCLE_ERROR"


class InvalidTransition(LifecycleError):
    """The requested status transition is not allowed."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, from_status: str, to_status: str, reason: Optional[str] = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        message = f"Invalid transition: {from_status} -> {to_status}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(
            message,
            {"from": from_status, "to": to_status, "reason": reason},
        )


class IncompleteReconciliation(InvalidTransition):
    """Approval attempted while line items are still unresolved."""

    code: str = "INCOMPLETE_RECONCILIATION"

    def __init__(self, from_status: str, blocking_line_item_ids: List[str]):
        self.blocking_line_item_ids = list(blocking_line_item_ids)
        super().__init__(
            from_status,
            "approved",
            f"{len(self.blocking_line_item_ids)} line item(s) not reconciled",
        )
        self.details["blocking_line_item_ids"] = self.blocking_line_item_ids


class MissingReason(LifecycleError):
    """A reason string is required for this operation."""

    code: str = "MISSING_REASON"

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"A reason is required to {operation}", {"operation": operation})


class InvalidLineItemState(LifecycleError):
    """The line item is not in a state that allows the operation."""

    code: str = "INVALID_LINE_ITEM_STATE"

    def __init__(self, line_item_id: str, match_status: str, operation: str):
        self.line_item_id = line_item_id
        self.match_status = match_status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} line item {line_item_id} with match status {match_status}",
            {"line_item_id": line_item_id, "match_status": match_status, "operation": operation},
        )


class InvoiceClosed(LifecycleError):
    """The invoice is approved, paid or rejected and can no longer be reconciled."""

    code: str = "INVOICE_CLOSED"

    def __init__(self, invoice_id: str, status: str):
        self.invoice_id = invoice_id
        self.status = status
        super().__init__(
            f"Invoice {invoice_id} is {status}; reconciliation is closed",
            {"invoice_id": invoice_id, "status": status},
        )


# Concurrency and upstream errors


class ConcurrencyError(ReconciliationError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"
    retryable: bool = True


class ConcurrentRunInProgress(ConcurrencyError):
    """Another reconciliation run holds the invoice lock."""

    code: str = "CONCURRENT_RUN_IN_PROGRESS"

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(
            f"A reconciliation run is already in progress for invoice {invoice_id}",
            {"invoice_id": invoice_id},
        )


class LedgerConflict(ConcurrencyError):
    """A ledger write would supersede a record that is no longer current."""

    code: str = "LEDGER_CONFLICT"

    def __init__(self, record_id: int):
        self.record_id = record_id
        super().__init__(
            f"Matching record {record_id} is already superseded",
            {"record_id": record_id},
        )


class UpstreamTimeout(ReconciliationError):
    """PO store or persistence did not answer within the timeout."""

    code: str = "UPSTREAM_TIMEOUT"
    retryable: bool = True

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(
            f"Upstream call '{operation}' timed out after {timeout:.1f}s",
            {"operation": operation, "timeout": timeout},
        )
