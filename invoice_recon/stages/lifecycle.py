"""
Invoice Lifecycle State Machine
Governs transitions of the invoice ``status`` field.

    pending      -> under_review
    under_review -> approved | disputed | rejected
    disputed     -> under_review
    approved     -> paid
    paid, rejected: terminal

Every operation validates first and mutates only after all checks pass,
so a failed transition leaves the invoice untouched.
"""

from datetime import datetime
from typing import Dict, FrozenSet, Iterable, List, Optional

from invoice_recon.config import Config, get_config
from invoice_recon.exceptions import (
    IncompleteReconciliation,
    InvalidTransition,
    MissingReason,
)
from invoice_recon.schemas.invoice import InvoiceStatus, MatchStatus, VendorInvoice
from invoice_recon.state import ReconciliationState
from invoice_recon.utils.logging import setup_logging, log_stage_action


logger = setup_logging(__name__)
config = get_config()

STAGE_NAME = "LifecycleStateMachine"

SYSTEM_ACTOR = "system"
AUTO_QUEUE_NOTE = "auto-queued for review"

INVOICE_TRANSITIONS: Dict[InvoiceStatus, FrozenSet[InvoiceStatus]] = {
    InvoiceStatus.PENDING: frozenset({InvoiceStatus.UNDER_REVIEW}),
    InvoiceStatus.UNDER_REVIEW: frozenset({
        InvoiceStatus.APPROVED,
        InvoiceStatus.DISPUTED,
        InvoiceStatus.REJECTED,
    }),
    InvoiceStatus.DISPUTED: frozenset({InvoiceStatus.UNDER_REVIEW}),
    InvoiceStatus.APPROVED: frozenset({InvoiceStatus.PAID}),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.REJECTED: frozenset(),
}

TERMINAL_STATUSES: FrozenSet[InvoiceStatus] = frozenset({
    InvoiceStatus.PAID,
    InvoiceStatus.REJECTED,
})

# Statuses in which match results may no longer change
CLOSED_STATUSES: FrozenSet[InvoiceStatus] = frozenset({
    InvoiceStatus.APPROVED,
    InvoiceStatus.PAID,
    InvoiceStatus.REJECTED,
})

BLOCKING_MATCH_STATUSES: FrozenSet[MatchStatus] = frozenset({
    MatchStatus.UNMATCHED,
    MatchStatus.MANUAL,
})


def check_transition(from_status: InvoiceStatus, to_status: InvoiceStatus) -> None:
    """Raise InvalidTransition unless the table allows ``from -> to``."""
    if to_status not in INVOICE_TRANSITIONS.get(from_status, frozenset()):
        reason = "terminal state" if from_status in TERMINAL_STATUSES else None
        raise InvalidTransition(from_status.value, to_status.value, reason)


def can_auto_queue(
    status: InvoiceStatus,
    final_confidence: float,
    match_statuses: Iterable[MatchStatus],
    cfg: Config = None,
) -> bool:
    """
    Auto-advance rule applied after every reconciliation run.

    Only a pending invoice with final confidence at or above the gate and
    no unmatched or manual line moves on, and only to under_review.
    """
    cfg = cfg or config
    if status != InvoiceStatus.PENDING:
        return False
    if final_confidence < cfg.AUTO_REVIEW_CONFIDENCE:
        return False
    return not any(s in BLOCKING_MATCH_STATUSES for s in match_statuses)


def blocking_line_items(
    invoice: VendorInvoice,
    acknowledged_ids: Iterable[str] = (),
) -> List[str]:
    """Line items that prevent approval."""
    acknowledged = set(acknowledged_ids)
    blocking = []
    for item in invoice.line_items:
        if item.match_status == MatchStatus.MATCHED:
            continue
        if item.match_status == MatchStatus.PARTIAL and (
            item.acknowledged or item.id in acknowledged
        ):
            continue
        blocking.append(item.id)
    return blocking


class InvoiceLifecycle:
    """
    Transition operations on a VendorInvoice.

    Callers hand in a snapshot; the engine persists it only if the
    operation returns normally.
    """

    def __init__(self, cfg: Config = None):
        self.cfg = cfg or config

    def _transition(
        self,
        invoice: VendorInvoice,
        to_status: InvoiceStatus,
        actor: str,
        note: Optional[str] = None,
    ) -> VendorInvoice:
        from_status = invoice.status
        invoice.status = to_status
        invoice.updated_at = datetime.utcnow()
        if note:
            invoice.add_note(actor, note)

        logger.info(
            f"[{STAGE_NAME}] Invoice {invoice.id}: {from_status.value} -> {to_status.value} by {actor}"
        )
        return invoice

    def submit_for_review(self, invoice: VendorInvoice, actor: str) -> VendorInvoice:
        """Human move from pending to under_review."""
        check_transition(invoice.status, InvoiceStatus.UNDER_REVIEW)
        if invoice.status != InvoiceStatus.PENDING:
            raise InvalidTransition(invoice.status.value, InvoiceStatus.UNDER_REVIEW.value)
        return self._transition(invoice, InvoiceStatus.UNDER_REVIEW, actor, "submitted for review")

    def approve(
        self,
        invoice: VendorInvoice,
        actor: str,
        acknowledged_ids: Iterable[str] = (),
    ) -> VendorInvoice:
        """
        Approve an invoice under review.

        Every line must be matched, or partial and acknowledged by a human.
        ``acknowledged_ids`` lets the approver acknowledge partial lines in
        the same step.

        Raises:
            InvalidTransition: invoice is not under review
            IncompleteReconciliation: a line is not reconciled, or there are no lines
        """
        check_transition(invoice.status, InvoiceStatus.APPROVED)
        acknowledged_ids = set(acknowledged_ids)

        blocking = blocking_line_items(invoice, acknowledged_ids)
        if blocking or not invoice.line_items:
            raise IncompleteReconciliation(invoice.status.value, blocking)

        for item in invoice.line_items:
            if item.id in acknowledged_ids and item.match_status == MatchStatus.PARTIAL:
                item.acknowledged = True

        invoice.approved_at = datetime.utcnow()
        return self._transition(invoice, InvoiceStatus.APPROVED, actor, "approved")

    def dispute(
        self,
        invoice: VendorInvoice,
        reason: str,
        actor: str,
        ledger_sequence: int,
    ) -> VendorInvoice:
        """
        Dispute an invoice under review.

        ``ledger_sequence`` is the invoice's latest matching record id; a
        later reopen needs a record newer than it.
        """
        check_transition(invoice.status, InvoiceStatus.DISPUTED)
        if not reason or not reason.strip():
            raise MissingReason("dispute an invoice")

        invoice.dispute_reason = reason.strip()
        invoice.dispute_marker = ledger_sequence
        return self._transition(invoice, InvoiceStatus.DISPUTED, actor, f"disputed: {invoice.dispute_reason}")

    def reopen(self, invoice: VendorInvoice, actor: str, ledger_sequence: int) -> VendorInvoice:
        """
        Return a disputed invoice to review.

        Allowed only after at least one line was re-resolved since the dispute.
        """
        check_transition(invoice.status, InvoiceStatus.UNDER_REVIEW)
        marker = invoice.dispute_marker or 0
        if ledger_sequence <= marker:
            raise InvalidTransition(
                invoice.status.value,
                InvoiceStatus.UNDER_REVIEW.value,
                "no line item re-resolved since the dispute",
            )

        invoice.dispute_marker = None
        return self._transition(invoice, InvoiceStatus.UNDER_REVIEW, actor, "reopened after correction")

    def reject(self, invoice: VendorInvoice, actor: str, reason: Optional[str] = None) -> VendorInvoice:
        check_transition(invoice.status, InvoiceStatus.REJECTED)
        invoice.rejection_reason = reason
        note = f"rejected: {reason}" if reason else "rejected"
        return self._transition(invoice, InvoiceStatus.REJECTED, actor, note)

    def mark_paid(
        self,
        invoice: VendorInvoice,
        actor: str,
        payment_reference: Optional[str] = None,
    ) -> VendorInvoice:
        """Record the external payment confirmation; only approved invoices."""
        check_transition(invoice.status, InvoiceStatus.PAID)
        invoice.paid_at = datetime.utcnow()
        invoice.payment_reference = payment_reference
        note = f"paid (ref {payment_reference})" if payment_reference else "paid"
        return self._transition(invoice, InvoiceStatus.PAID, actor, note)


async def lifecycle_stage(state: ReconciliationState, cfg: Config = None) -> ReconciliationState:
    """
    Lifecycle node.

    Plans the post-run status only; the engine applies it inside the
    atomic commit.

    Updates state:
    - previous_status
    - planned_status
    - system_notes

    Adds reasoning log entry.
    """
    cfg = cfg or config
    state.previous_status = state.invoice.status

    statuses = [o.match_status for o in state.outcomes]
    if can_auto_queue(state.invoice.status, state.final_confidence, statuses, cfg):
        state.planned_status = InvoiceStatus.UNDER_REVIEW
        state.system_notes.append(AUTO_QUEUE_NOTE)
        message = f"Final confidence {state.final_confidence:.2f} clears the gate; {AUTO_QUEUE_NOTE}"
    else:
        state.planned_status = state.invoice.status
        blocking = sum(1 for s in statuses if s in BLOCKING_MATCH_STATUSES)
        message = (
            f"Status stays {state.invoice.status.value} "
            f"(final confidence {state.final_confidence:.2f}, {blocking} blocking line(s))"
        )

    log_stage_action(
        logger,
        STAGE_NAME,
        "planned",
        details={
            "invoice_id": state.invoice_id,
            "from": state.previous_status.value,
            "to": state.planned_status.value,
        },
        confidence=state.final_confidence,
    )

    state.add_reasoning(stage_name=STAGE_NAME, message=message, action=state.planned_status.value)

    return state
