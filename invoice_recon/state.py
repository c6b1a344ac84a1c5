"""
Shared state object for one reconciliation run.
All pipeline stages read/write from this state to coordinate their work.
"""

from typing import Optional, List, Dict, Any, Tuple
from pydantic import BaseModel, Field
from datetime import datetime
from invoice_recon.schemas.invoice import InvoiceStatus, VendorInvoice
from invoice_recon.schemas.ledger import MatchingRecord, PlannedRecord
from invoice_recon.schemas.matching import CandidateScore, LineItemOutcome, NormalizedLineItem
from invoice_recon.schemas.output import DiscrepancyDetail
from invoice_recon.schemas.po import POLineItem


class ReasoningLogEntry(BaseModel):
    """A single entry in the stage reasoning log."""
    timestamp: datetime
    stage_name: str
    message: str
    confidence: Optional[float] = None
    action: Optional[str] = None


class ReconciliationState(BaseModel):
    """
    State for a single reconciliation run.

    The state is passed between stages. Each stage:
    1. Reads relevant state
    2. Performs its task (pure, no I/O)
    3. Updates state with results
    4. Adds reasoning log entry
    5. Passes state to next stage

    Persistence happens outside the pipeline, after the last stage.
    """

    # Run identification
    run_id: str
    invoice_id: str
    processing_timestamp: datetime

    # Snapshot inputs, read once at run start
    invoice: VendorInvoice
    po_line_items: List[POLineItem] = Field(default_factory=list)
    current_records: Dict[str, MatchingRecord] = Field(default_factory=dict)
    excluded_pairs: List[Tuple[str, str]] = Field(default_factory=list)

    # Normalization phase
    normalized_invoice_items: List[NormalizedLineItem] = Field(default_factory=list)
    normalized_po_items: List[NormalizedLineItem] = Field(default_factory=list)

    # Matching phase
    candidates: Dict[str, List[CandidateScore]] = Field(default_factory=dict)

    # Resolution phase
    assignment: Dict[str, CandidateScore] = Field(default_factory=dict)
    outcomes: List[LineItemOutcome] = Field(default_factory=list)
    discrepancies: List[DiscrepancyDetail] = Field(default_factory=list)
    planned_records: List[PlannedRecord] = Field(default_factory=list)

    # Aggregation phase
    match_confidence: float = 0.0
    final_confidence: float = 0.0

    # Lifecycle phase
    previous_status: Optional[InvoiceStatus] = None
    planned_status: Optional[InvoiceStatus] = None
    system_notes: List[str] = Field(default_factory=list)

    # Reasoning and audit trail
    reasoning_log: List[ReasoningLogEntry] = Field(default_factory=list)

    def add_reasoning(
        self,
        stage_name: str,
        message: str,
        confidence: Optional[float] = None,
        action: Optional[str] = None
    ) -> None:
        """Add an entry to the reasoning log."""
        self.reasoning_log.append(
            ReasoningLogEntry(
                timestamp=datetime.utcnow(),
                stage_name=stage_name,
                message=message,
                confidence=confidence,
                action=action,
            )
        )

    def get_stage_reasoning(self) -> str:
        """Get a human-readable summary of the stage reasoning."""
        if not self.reasoning_log:
            return "No reasoning available."

        lines = []
        for entry in self.reasoning_log:
            conf_str = f" (confidence: {entry.confidence:.2f})" if entry.confidence is not None else ""
            lines.append(f"[{entry.stage_name}] {entry.message}{conf_str}")

        return "\n".join(lines)

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of the current state."""
        return {
            "invoice_id": self.invoice_id,
            "run_id": self.run_id,
            "line_items": len(self.normalized_invoice_items),
            "po_line_items": len(self.normalized_po_items),
            "assigned": len(self.assignment),
            "discrepancies_found": len(self.discrepancies),
            "final_confidence": self.final_confidence,
            "planned_status": self.planned_status.value if self.planned_status else None,
        }
