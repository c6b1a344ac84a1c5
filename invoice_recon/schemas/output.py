"""
Output schemas for reconciliation results.
Defines the strict result returned to the host system.
"""

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from invoice_recon.schemas.invoice import InvoiceStatus
from invoice_recon.schemas.matching import LineItemOutcome


class DiscrepancyDetail(BaseModel):
    """Details of a single discrepancy surfaced for review."""
    type: str  # no_po, no_match, price_mismatch, quantity_mismatch, unparseable, rejected_match
    severity: str  # low, medium, high
    line_item_id: Optional[str] = None
    invoice_value: Optional[Any] = None
    po_value: Optional[Any] = None
    explanation: str


class ReconciliationResult(BaseModel):
    """Result of one reconciliation run."""
    invoice_id: str
    run_id: str
    processing_timestamp: datetime
    final_confidence: float = Field(ge=0.0, le=100.0)
    match_confidence: float = Field(ge=0.0, le=1.0)
    line_item_outcomes: List[LineItemOutcome] = Field(default_factory=list)
    previous_state: InvoiceStatus
    new_state: InvoiceStatus
    matching_record_ids: List[int] = Field(default_factory=list)
    discrepancies: List[DiscrepancyDetail] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "invoice_id": "VI-2026-001",
                "run_id": "3f2a9c0e5b7d4e1f8a6b2c9d0e1f2a3b",
                "processing_timestamp": "2026-01-30T10:30:00Z",
                "final_confidence": 87.5,
                "match_confidence": 0.85,
                "line_item_outcomes": [
                    {
                        "kind": "matched",
                        "line_item_id": "VI-2026-001-L1",
                        "po_line_item_id": "POL-1",
                        "score": 0.85,
                        "line_confidence": 87.5,
                    }
                ],
                "previous_state": "pending",
                "new_state": "under_review",
                "matching_record_ids": [1],
                "discrepancies": [],
                "notes": ["auto-queued for review"],
            }
        }
    )
