"""
Normalizer
Converts raw OCR line items and PO line items into a canonical comparable form.

Pure transform. Field-level failures become None plus a diagnostic; nothing
raised here escapes to the caller.
"""

import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, List, Optional

from rapidfuzz import fuzz

from invoice_recon.config import Config, get_config
from invoice_recon.exceptions import ParseFailure
from invoice_recon.schemas.invoice import InvoiceLineItem, ParseDiagnostic
from invoice_recon.schemas.matching import NormalizedLineItem
from invoice_recon.schemas.po import POLineItem, ServiceType
from invoice_recon.state import ReconciliationState
from invoice_recon.utils.logging import setup_logging, log_stage_action
from invoice_recon.utils.money import (
    decimal_to_minor,
    minor_to_decimal,
    normalize_quantity,
    parse_money,
    parse_quantity,
)


logger = setup_logging(__name__)
config = get_config()

STAGE_NAME = "Normalizer"

STOP_WORDS = frozenset({
    "a", "an", "and", "the", "of", "for", "to", "in", "on", "at", "by",
    "with", "per", "from", "as", "or", "is", "ea", "each", "x", "qty",
    "service", "services", "charge", "charges", "fee",
})

_PUNCTUATION = re.compile(r"[^\w\s]|_")

# Alias phrase -> service type, checked longest first so that
# "medical waste" wins over "waste".
SERVICE_TYPE_ALIASES = {
    "hazardous waste": ServiceType.HAZARDOUS_WASTE,
    "hazmat": ServiceType.HAZARDOUS_WASTE,
    "medical waste": ServiceType.MEDICAL_WASTE,
    "biohazard": ServiceType.MEDICAL_WASTE,
    "sharps": ServiceType.MEDICAL_WASTE,
    "portable toilet": ServiceType.PORTABLE_TOILET,
    "porta potty": ServiceType.PORTABLE_TOILET,
    "porta john": ServiceType.PORTABLE_TOILET,
    "restroom": ServiceType.PORTABLE_TOILET,
    "roll off": ServiceType.ROLL_OFF,
    "rolloff": ServiceType.ROLL_OFF,
    "dumpster": ServiceType.ROLL_OFF,
    "open top": ServiceType.ROLL_OFF,
    "compactor": ServiceType.COMPACTOR,
    "food waste": ServiceType.ORGANICS,
    "organics": ServiceType.ORGANICS,
    "compost": ServiceType.ORGANICS,
    "single stream": ServiceType.RECYCLE,
    "recycling": ServiceType.RECYCLE,
    "recycle": ServiceType.RECYCLE,
    "cardboard": ServiceType.RECYCLE,
    "occ": ServiceType.RECYCLE,
    "garbage": ServiceType.WASTE,
    "refuse": ServiceType.WASTE,
    "trash": ServiceType.WASTE,
    "msw": ServiceType.WASTE,
    "waste": ServiceType.WASTE,
}

_SERVICE_TYPE_VALUES = {member.value for member in ServiceType}


def clean_text(text: Optional[str]) -> str:
    """Lower-case and replace punctuation with whitespace."""
    if not text:
        return ""
    return " ".join(_PUNCTUATION.sub(" ", text.lower()).split())


def tokenize_description(text: Optional[str]) -> frozenset:
    """Description tokens for set similarity: cleaned, stop-words removed."""
    return frozenset(
        token for token in clean_text(text).split() if token not in STOP_WORDS
    )


def infer_service_type(
    description: Optional[str],
    explicit: Optional[str] = None,
    cutoff: float = None,
) -> Optional[str]:
    """
    Resolve the service type of a line.

    An explicit tag wins when it names a known service type. Otherwise the
    description is fuzzy-searched for service aliases. Short aliases
    (4 characters or fewer) must appear as whole tokens.

    Returns:
        ServiceType value, or None when nothing matches confidently
    """
    if cutoff is None:
        cutoff = config.SERVICE_TYPE_MATCH_CUTOFF

    if explicit:
        tag = clean_text(explicit).replace(" ", "_")
        if tag in _SERVICE_TYPE_VALUES:
            return tag
        # Free-text tag, treat like a description
        description = f"{explicit} {description or ''}"

    text = clean_text(description)
    if not text:
        return None
    tokens = set(text.split())

    best_type = None
    best_score = 0.0
    for alias in sorted(SERVICE_TYPE_ALIASES, key=lambda a: (-len(a), a)):
        if len(alias) <= 4:
            score = 100.0 if alias in tokens else 0.0
        elif len(alias) > len(text):
            continue
        else:
            score = fuzz.partial_ratio(alias, text)
        if score >= cutoff and score > best_score:
            best_score = score
            best_type = SERVICE_TYPE_ALIASES[alias].value

    return best_type


def _parse_field(
    parser: Callable[..., Any],
    raw: Any,
    field: str,
    diagnostics: List[ParseDiagnostic],
    *args: Any,
) -> Any:
    """Run a parser; a ParseFailure becomes a diagnostic and a None value."""
    try:
        return parser(raw, field, *args)
    except ParseFailure as e:
        diagnostics.append(
            ParseDiagnostic(
                field=field,
                raw_value=e.details.get("raw_value"),
                message=e.reason,
            )
        )
        return None


def _derive(compute: Callable[[], Any], field: str, diagnostics: List[ParseDiagnostic]) -> Any:
    """Run a derivation; an out-of-range result becomes a diagnostic and a None value."""
    try:
        return compute()
    except ParseFailure as e:
        diagnostics.append(ParseDiagnostic(field=field, message=f"derived value {e.reason}"))
        return None


def normalize_fields(
    ref_id: str,
    description: Optional[str],
    raw_quantity: Any,
    raw_unit_price: Any,
    raw_amount: Any,
    service_type: Optional[str] = None,
    cfg: Config = None,
) -> NormalizedLineItem:
    """
    Normalize one line item's raw fields.

    Derivation order:
    1. unit price from amount / quantity (quantity > 0)
    2. quantity from amount / unit price (unit price > 0)
    3. amount from quantity * unit price
    4. amount alone (quantity and unit price absent, not garbled):
       quantity 1, unit price = amount

    Returns:
        NormalizedLineItem; ``unparseable`` when quantity, unit price or
        amount still cannot be determined
    """
    cfg = cfg or config
    digits = cfg.MINOR_UNIT_DIGITS
    diagnostics: List[ParseDiagnostic] = []

    quantity = _parse_field(parse_quantity, raw_quantity, "quantity", diagnostics)
    unit_price = _parse_field(parse_money, raw_unit_price, "unit_price", diagnostics, digits)
    amount = _parse_field(parse_money, raw_amount, "amount", diagnostics, digits)
    garbled = {d.field for d in diagnostics}

    if unit_price is None and amount is not None and quantity is not None and quantity > 0:
        unit_price = _derive(
            lambda: decimal_to_minor(minor_to_decimal(amount, digits) / quantity, digits, "unit_price"),
            "unit_price",
            diagnostics,
        )

    if quantity is None and unit_price and amount is not None:
        derived = (Decimal(amount) / Decimal(unit_price)).quantize(
            Decimal("0.0001"), rounding=ROUND_HALF_UP
        )
        quantity = normalize_quantity(derived)

    if amount is None and quantity is not None and unit_price is not None:
        amount = _derive(
            lambda: decimal_to_minor(quantity * minor_to_decimal(unit_price, digits), digits),
            "amount",
            diagnostics,
        )

    if (
        amount is not None
        and quantity is None
        and unit_price is None
        and not garbled & {"quantity", "unit_price"}
    ):
        quantity = Decimal(1)
        unit_price = amount
        diagnostics.append(
            ParseDiagnostic(field="quantity", message="missing; assumed 1 from amount")
        )

    unparseable = quantity is None or unit_price is None or amount is None
    reported = {d.field for d in diagnostics}
    if unparseable:
        for field, value in (("quantity", quantity), ("unit_price", unit_price), ("amount", amount)):
            if value is None and field not in reported:
                diagnostics.append(
                    ParseDiagnostic(field=field, message="missing and could not be derived")
                )
    else:
        expected = _derive(
            lambda: decimal_to_minor(quantity * minor_to_decimal(unit_price, digits), digits),
            "amount",
            diagnostics,
        )
        if expected is not None and abs(expected - amount) > cfg.AMOUNT_TOLERANCE_MINOR:
            diagnostics.append(
                ParseDiagnostic(
                    field="amount",
                    raw_value=None if raw_amount is None else str(raw_amount),
                    message=(
                        f"amount_mismatch: quantity x unit price = {expected} minor units, "
                        f"amount = {amount}"
                    ),
                )
            )

    return NormalizedLineItem(
        ref_id=ref_id,
        description_tokens=tokenize_description(description),
        quantity=quantity,
        unit_price_minor=unit_price,
        amount_minor=amount,
        service_type=infer_service_type(description, service_type, cfg.SERVICE_TYPE_MATCH_CUTOFF),
        unparseable=unparseable,
        diagnostics=diagnostics,
    )


def normalize_invoice_line(item: InvoiceLineItem, cfg: Config = None) -> NormalizedLineItem:
    """Normalize an invoice line item."""
    return normalize_fields(
        item.id,
        item.description,
        item.quantity,
        item.unit_price,
        item.amount,
        item.service_type,
        cfg,
    )


def normalize_po_line(item: POLineItem, cfg: Config = None) -> NormalizedLineItem:
    """Normalize a PO line item against its vendor-facing price."""
    return normalize_fields(
        item.id,
        item.description,
        item.quantity,
        item.effective_vendor_unit_price,
        item.vendor_amount,
        item.service_type,
        cfg,
    )


async def normalizer_stage(state: ReconciliationState, cfg: Config = None) -> ReconciliationState:
    """
    Normalizer node.

    Updates state:
    - normalized_invoice_items
    - normalized_po_items

    Adds reasoning log entry.
    """
    cfg = cfg or config
    logger.info(f"[{STAGE_NAME}] Normalizing invoice {state.invoice_id}")

    state.normalized_invoice_items = [
        normalize_invoice_line(item, cfg) for item in state.invoice.line_items
    ]
    state.normalized_po_items = [
        normalize_po_line(item, cfg) for item in state.po_line_items
    ]

    unparseable = [n.ref_id for n in state.normalized_invoice_items if n.unparseable]
    for item_id in unparseable:
        logger.warning(f"[{STAGE_NAME}] Line item {item_id} is unparseable; routing to manual review")

    log_stage_action(
        logger,
        STAGE_NAME,
        "normalized",
        details={
            "invoice_id": state.invoice_id,
            "invoice_items": len(state.normalized_invoice_items),
            "po_items": len(state.normalized_po_items),
            "unparseable": len(unparseable),
        },
    )

    state.add_reasoning(
        stage_name=STAGE_NAME,
        message=(
            f"Normalized {len(state.normalized_invoice_items)} invoice line(s) and "
            f"{len(state.normalized_po_items)} PO line(s); {len(unparseable)} unparseable"
        ),
    )

    return state
