"""
Matching Ledger
Append-only audit of every match decision, with a derived current view.

Rows are never deleted. A decision is replaced by appending a new row and
marking the old one superseded; the current view of a line item is its
latest row that is not superseded.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from invoice_recon.exceptions import LedgerConflict
from invoice_recon.schemas.ledger import MatchDecision, MatchingRecord, PlannedRecord
from invoice_recon.utils.logging import setup_logging


logger = setup_logging(__name__)


def current_view(records: Iterable[MatchingRecord]) -> Dict[str, MatchingRecord]:
    """line_item_id -> latest non-superseded record."""
    view: Dict[str, MatchingRecord] = {}
    for record in sorted(records, key=lambda r: r.id):
        if record.is_current:
            view[record.line_item_id] = record
    return view


def reviewer_rejected_pairs(records: Iterable[MatchingRecord]) -> List[Tuple[str, str]]:
    """
    (line_item_id, po_line_item_id) pairs a reviewer has ever rejected.

    Superseded rejections still count; they keep the pair out of later runs.
    """
    pairs = {
        (r.line_item_id, r.po_line_item_id)
        for r in records
        if r.is_reviewer_rejection and r.po_line_item_id is not None
    }
    return sorted(pairs)


class MatchingLedger:
    """In-process ledger; one sequence shared by all invoices."""

    def __init__(self, records: Optional[Iterable[MatchingRecord]] = None):
        self._records: Dict[int, MatchingRecord] = {}
        for record in records or []:
            self._records[record.id] = record.model_copy(deep=True)
        self._next_id = max(self._records, default=0) + 1

    def __len__(self) -> int:
        return len(self._records)

    @property
    def next_id(self) -> int:
        return self._next_id

    def get(self, record_id: int) -> Optional[MatchingRecord]:
        record = self._records.get(record_id)
        return record.model_copy(deep=True) if record else None

    def records_for_invoice(self, invoice_id: str) -> List[MatchingRecord]:
        """All rows for an invoice, oldest first."""
        return [
            r.model_copy(deep=True)
            for r in sorted(self._records.values(), key=lambda r: r.id)
            if r.invoice_id == invoice_id
        ]

    def current_view(self, invoice_id: str) -> Dict[str, MatchingRecord]:
        return current_view(self.records_for_invoice(invoice_id))

    def latest_sequence(self, invoice_id: str) -> int:
        """Highest record id written for the invoice, 0 if none."""
        return max(
            (r.id for r in self._records.values() if r.invoice_id == invoice_id),
            default=0,
        )

    def history(self, line_item_id: str) -> List[MatchingRecord]:
        """Every row for one line item, oldest first."""
        return [
            r.model_copy(deep=True)
            for r in sorted(self._records.values(), key=lambda r: r.id)
            if r.line_item_id == line_item_id
        ]

    def validate(self, planned: List[PlannedRecord]) -> None:
        """
        Check a batch before anything is written.

        Each planned row must supersede exactly the line's current row, so a
        batch planned from a stale view is refused as a whole.

        Raises:
            LedgerConflict: stale or duplicate supersession
        """
        seen_lines = set()
        for row in planned:
            key = (row.invoice_id, row.line_item_id)
            if key in seen_lines:
                raise LedgerConflict(row.supersedes or 0)
            seen_lines.add(key)

            view = self.current_view(row.invoice_id)
            current = view.get(row.line_item_id)
            current_id = current.id if current else None
            if row.supersedes != current_id:
                raise LedgerConflict(row.supersedes if row.supersedes is not None else current_id)

    def append(self, row: PlannedRecord, run_id: str, created_at: datetime) -> MatchingRecord:
        """Write one row and supersede its predecessor."""
        record = MatchingRecord(
            id=self._next_id,
            run_id=run_id,
            invoice_id=row.invoice_id,
            line_item_id=row.line_item_id,
            po_line_item_id=row.po_line_item_id,
            score=row.score,
            decision=row.decision,
            reason=row.reason,
            actor=row.actor,
            created_at=created_at,
        )
        self._next_id += 1

        if row.supersedes is not None:
            self.supersede(row.supersedes, record.id, created_at)

        self._records[record.id] = record
        return record.model_copy(deep=True)

    def supersede(self, record_id: int, superseded_by: int, at: datetime) -> None:
        record = self._records.get(record_id)
        if record is None or not record.is_current:
            raise LedgerConflict(record_id)
        record.prior_decision = record.decision
        record.decision = MatchDecision.SUPERSEDED
        record.superseded_at = at
        record.superseded_by = superseded_by

    def apply(self, planned: List[PlannedRecord], run_id: str) -> List[MatchingRecord]:
        """Validate then write a batch; nothing is written if validation fails."""
        self.validate(planned)
        now = datetime.utcnow()
        written = [self.append(row, run_id, now) for row in planned]
        if written:
            logger.debug(
                f"Ledger appended {len(written)} record(s) for run {run_id}: "
                f"{[r.id for r in written]}"
            )
        return written
