"""
Matching ledger schema.
Append-only audit rows for every match decision.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


ENGINE_ACTOR = "engine"


class MatchDecision(str, Enum):
    """Decision recorded for an invoice line item."""
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    SUPERSEDED = "superseded"


class MatchingRecord(BaseModel):
    """
    One ledger row.

    Rows are never deleted. The only mutation a row ever sees is being
    marked superseded by a later row for the same line item.
    """
    id: int
    run_id: str
    invoice_id: str
    line_item_id: str
    po_line_item_id: Optional[str] = None
    score: float = Field(default=0.0, ge=0.0, le=1.0)
    decision: MatchDecision
    reason: Optional[str] = None
    actor: str = ENGINE_ACTOR
    created_at: datetime = Field(default_factory=datetime.utcnow)
    superseded_at: Optional[datetime] = None
    superseded_by: Optional[int] = None
    prior_decision: Optional[MatchDecision] = None  # decision before supersession

    @property
    def is_current(self) -> bool:
        return self.decision != MatchDecision.SUPERSEDED

    @property
    def is_reviewer_rejection(self) -> bool:
        """A rejection made by a human rather than by the engine."""
        decision = self.prior_decision or self.decision
        return decision == MatchDecision.REJECTED and self.actor != ENGINE_ACTOR


class PlannedRecord(BaseModel):
    """
    A ledger row the resolver wants written.

    The store assigns the sequence id on commit and marks ``supersedes``
    (the line's current record, if any) as superseded in the same step.
    """
    invoice_id: str
    line_item_id: str
    po_line_item_id: Optional[str] = None
    score: float = Field(default=0.0, ge=0.0, le=1.0)
    decision: MatchDecision
    reason: Optional[str] = None
    actor: str = ENGINE_ACTOR
    supersedes: Optional[int] = None
