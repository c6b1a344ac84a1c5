"""
Matching data models.

NormalizedLineItem is the canonical comparable form of an invoice or PO line.
LineItemOutcome is a tagged union with one variant per reconciliation result,
so resolver and lifecycle logic can branch exhaustively on ``kind``.
"""

import json
from decimal import Decimal
from typing import Annotated, FrozenSet, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from invoice_recon.schemas.invoice import MatchStatus, ParseDiagnostic


class NormalizedLineItem(BaseModel):
    """Canonical form of a line item used for scoring."""
    ref_id: str
    description_tokens: FrozenSet[str] = frozenset()
    quantity: Optional[Decimal] = None
    unit_price_minor: Optional[int] = None
    amount_minor: Optional[int] = None
    service_type: Optional[str] = None
    unparseable: bool = False
    diagnostics: List[ParseDiagnostic] = Field(default_factory=list)

    def canonical_json(self) -> str:
        """Byte-stable rendering: sorted tokens, decimals as strings."""
        return json.dumps(
            {
                "ref_id": self.ref_id,
                "description_tokens": sorted(self.description_tokens),
                "quantity": None if self.quantity is None else str(self.quantity),
                "unit_price_minor": self.unit_price_minor,
                "amount_minor": self.amount_minor,
                "service_type": self.service_type,
                "unparseable": self.unparseable,
            },
            sort_keys=True,
            separators=(",", ":"),
        )


class CandidateScore(BaseModel):
    """A scored (invoice line, PO line) pair with its component breakdown."""
    line_item_id: str
    po_line_item_id: str
    score: float = Field(ge=0.0, le=1.0)
    description_score: float = 0.0
    service_type_match: bool = False
    amount_score: float = 0.0
    quantity_score: float = 0.0


class _Outcome(BaseModel):
    line_item_id: str
    line_confidence: float = Field(default=0.0, ge=0.0, le=100.0)

    @property
    def match_status(self) -> MatchStatus:
        raise NotImplementedError

    @property
    def assigned_po_line_item_id(self) -> Optional[str]:
        return None

    @property
    def assigned_score(self) -> float:
        """Score that counts towards match confidence; zero unless assigned."""
        return 0.0


class Matched(_Outcome):
    kind: Literal["matched"] = "matched"
    po_line_item_id: str
    score: float = Field(ge=0.0, le=1.0)

    @property
    def match_status(self) -> MatchStatus:
        return MatchStatus.MATCHED

    @property
    def assigned_po_line_item_id(self) -> Optional[str]:
        return self.po_line_item_id

    @property
    def assigned_score(self) -> float:
        return self.score


class Partial(_Outcome):
    """Accepted pairing that still needs a reviewer's acknowledgement."""
    kind: Literal["partial"] = "partial"
    po_line_item_id: str
    score: float = Field(ge=0.0, le=1.0)

    @property
    def match_status(self) -> MatchStatus:
        return MatchStatus.PARTIAL

    @property
    def assigned_po_line_item_id(self) -> Optional[str]:
        return self.po_line_item_id

    @property
    def assigned_score(self) -> float:
        return self.score


class Unmatched(_Outcome):
    kind: Literal["unmatched"] = "unmatched"
    best_po_line_item_id: Optional[str] = None
    best_score: Optional[float] = None

    @property
    def match_status(self) -> MatchStatus:
        return MatchStatus.UNMATCHED


class Unparseable(_Outcome):
    kind: Literal["unparseable"] = "unparseable"
    diagnostics: List[ParseDiagnostic] = Field(default_factory=list)

    @property
    def match_status(self) -> MatchStatus:
        return MatchStatus.MANUAL


class Manual(_Outcome):
    """A reviewer rejected the engine's pairing and nothing replaced it."""
    kind: Literal["manual"] = "manual"
    reason: str = ""
    rejected_po_line_item_id: Optional[str] = None

    @property
    def match_status(self) -> MatchStatus:
        return MatchStatus.MANUAL


LineItemOutcome = Annotated[
    Union[Matched, Partial, Unmatched, Unparseable, Manual],
    Field(discriminator="kind"),
]
