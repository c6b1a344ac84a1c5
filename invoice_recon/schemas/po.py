"""
Purchase Order schema and data models.
Represents POs from the PO store; read-only to the reconciliation engine.
"""

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class POStatus(str, Enum):
    """Purchase order lifecycle states."""
    DRAFT = "draft"
    SENT = "sent"
    APPROVED = "approved"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ServiceType(str, Enum):
    """Service catalogue of the brokerage."""
    WASTE = "waste"
    RECYCLE = "recycle"
    ORGANICS = "organics"
    ROLL_OFF = "roll_off"
    COMPACTOR = "compactor"
    PORTABLE_TOILET = "portable_toilet"
    MEDICAL_WASTE = "medical_waste"
    HAZARDOUS_WASTE = "hazardous_waste"


class POLineItem(BaseModel):
    """A single line item in a Purchase Order."""
    id: str
    po_id: str
    line_number: int
    description: str
    service_type: Optional[str] = None
    quantity: Decimal = Decimal("1")
    unit_price: Optional[Decimal] = None
    vendor_unit_price: Optional[Decimal] = None
    client_unit_price: Optional[Decimal] = None
    amount: Optional[Decimal] = None
    notes: Optional[str] = None

    @property
    def effective_vendor_unit_price(self) -> Optional[Decimal]:
        """Price the vendor bills against; falls back to the generic unit price."""
        if self.vendor_unit_price is not None:
            return self.vendor_unit_price
        return self.unit_price

    @property
    def vendor_amount(self) -> Optional[Decimal]:
        """Amount the vendor is expected to invoice for this line."""
        price = self.effective_vendor_unit_price
        if price is not None:
            return self.quantity * price
        return self.amount

    @property
    def client_amount(self) -> Optional[Decimal]:
        """Amount billed onward to the client."""
        if self.client_unit_price is None:
            return None
        return self.quantity * self.client_unit_price


class PurchaseOrder(BaseModel):
    """A Purchase Order record."""
    id: str
    po_number: str
    vendor_id: str
    client_id: Optional[str] = None
    site_id: Optional[str] = None
    status: POStatus = POStatus.SENT
    po_date: Optional[date] = None
    expected_delivery_date: Optional[date] = None
    total: Optional[Decimal] = None
    deleted: bool = False
    line_items: List[POLineItem] = Field(default_factory=list)

    @property
    def computed_total(self) -> Decimal:
        """Total of vendor amounts when no stored total exists."""
        if self.total is not None:
            return self.total
        return sum(
            (item.vendor_amount or Decimal(0) for item in self.line_items),
            Decimal(0),
        )
