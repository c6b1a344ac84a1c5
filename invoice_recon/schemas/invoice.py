"""
Vendor invoice schema and data models.
Represents an OCR-extracted vendor invoice and its line items.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from invoice_recon.utils.money import format_minor


RawNumber = Optional[Union[Decimal, int, float, str]]


class InvoiceStatus(str, Enum):
    """Vendor invoice lifecycle states."""
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    DISPUTED = "disputed"
    PAID = "paid"
    REJECTED = "rejected"


class MatchStatus(str, Enum):
    """Reconciliation status of a single invoice line item."""
    UNMATCHED = "unmatched"
    MATCHED = "matched"
    PARTIAL = "partial"
    DISPUTED = "disputed"
    MANUAL = "manual"


class ParseDiagnostic(BaseModel):
    """A field that failed to normalize, kept on the line item for reviewers."""
    field: str
    raw_value: Optional[str] = None
    message: str


class RawLineItem(BaseModel):
    """A line item exactly as the OCR service delivered it."""
    description: Optional[str] = None
    quantity: RawNumber = None
    unit_price: RawNumber = None
    amount: RawNumber = None
    service_type: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=100.0)


class OCRPayload(BaseModel):
    """Output of the external OCR step."""
    raw_text: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=100.0)
    field_confidence: Dict[str, float] = Field(default_factory=dict)
    line_items: List[RawLineItem] = Field(default_factory=list)


class InvoiceLineItem(BaseModel):
    """A single line item on a vendor invoice."""
    id: str
    line_number: int
    description: str = ""
    quantity: RawNumber = None
    unit_price: RawNumber = None
    amount: RawNumber = None
    service_type: Optional[str] = None
    ocr_confidence: Optional[float] = Field(default=None, ge=0.0, le=100.0)

    # Written by the reconciliation engine
    match_status: MatchStatus = MatchStatus.UNMATCHED
    po_line_item_id: Optional[str] = None
    match_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    line_confidence: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    diagnostics: List[ParseDiagnostic] = Field(default_factory=list)

    # Written by reviewers
    acknowledged: bool = False


class InvoiceNote(BaseModel):
    """System or reviewer note attached to an invoice."""
    timestamp: datetime
    author: str
    message: str


class VendorInvoice(BaseModel):
    """A vendor invoice with its line items and reconciliation state."""
    id: str
    invoice_number: str = ""
    vendor_id: str
    client_id: Optional[str] = None
    site_id: Optional[str] = None
    po_id: Optional[str] = None  # linked PO; restricts matching to its lines
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None

    subtotal_minor: Optional[int] = None
    tax_minor: Optional[int] = None
    fees_minor: Optional[int] = None
    total_minor: Optional[int] = None
    currency: str = "USD"

    status: InvoiceStatus = InvoiceStatus.PENDING
    final_confidence: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    ocr: OCRPayload = Field(default_factory=OCRPayload)
    line_items: List[InvoiceLineItem] = Field(default_factory=list)
    notes: List[InvoiceNote] = Field(default_factory=list)

    dispute_reason: Optional[str] = None
    dispute_marker: Optional[int] = None  # ledger sequence at time of dispute
    rejection_reason: Optional[str] = None
    approved_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    payment_reference: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def get_line_item(self, line_item_id: str) -> Optional[InvoiceLineItem]:
        """Find a line item by id."""
        for item in self.line_items:
            if item.id == line_item_id:
                return item
        return None

    def add_note(self, author: str, message: str) -> None:
        """Add a note to the invoice."""
        self.notes.append(
            InvoiceNote(timestamp=datetime.utcnow(), author=author, message=message)
        )

    def to_boundary(self) -> Dict[str, Any]:
        """Render the invoice for the host system, money as decimal strings."""
        data = self.model_dump(mode="json")
        for field in ("subtotal", "tax", "fees", "total"):
            data[field] = format_minor(data.pop(f"{field}_minor"))
        return data

    @classmethod
    def from_ocr(
        cls,
        invoice_id: str,
        vendor_id: str,
        ocr: OCRPayload,
        client_id: Optional[str] = None,
        **fields: Any,
    ) -> "VendorInvoice":
        """
        Create a pending invoice from OCR output.

        Line item ids are derived from the invoice id and line position.
        """
        line_items = [
            InvoiceLineItem(
                id=f"{invoice_id}-L{idx}",
                line_number=idx,
                description=raw.description or "",
                quantity=raw.quantity,
                unit_price=raw.unit_price,
                amount=raw.amount,
                service_type=raw.service_type,
                ocr_confidence=raw.confidence,
            )
            for idx, raw in enumerate(ocr.line_items, 1)
        ]
        return cls(
            id=invoice_id,
            vendor_id=vendor_id,
            client_id=client_id,
            ocr=ocr,
            line_items=line_items,
            status=InvoiceStatus.PENDING,
            **fields,
        )
