"""
Currency and quantity parsing for noisy OCR values.

Amounts are held as integer minor units (cents) internally and rendered as
decimal strings at the boundary.
"""

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

from invoice_recon.exceptions import ParseFailure


# Characters OCR commonly confuses with digits
_OCR_DIGIT_FIXES = str.maketrans({
    "O": "0", "o": "0", "D": "0",
    "l": "1", "I": "1", "|": "1", "i": "1",
    "S": "5", "s": "5",
    "B": "8",
    "Z": "2",
})

_CURRENCY_MARKERS = re.compile(r"(usd|us\$|cad|eur|gbp|[$€£¢])", re.IGNORECASE)
_QUANTITY_UNITS = re.compile(
    r"\s*(ea|each|hrs?|hours?|pulls?|lifts?|tons?|yds?|yards?|units?|loads?|x)\.?\s*$",
    re.IGNORECASE,
)
_NUMBER = re.compile(r"-?(\d+(\.\d*)?|\.\d+)")
_DECIMAL_COMMA = re.compile(r"-?\d+,\d{2}")

# Largest accepted magnitude is below 10**MAX_INTEGER_DIGITS whole units
MAX_INTEGER_DIGITS = 15


def _coerce_decimal(raw: Any, field: str) -> Optional[Decimal]:
    """Turn a raw OCR/DB value into a Decimal, or None when absent."""
    if raw is None:
        return None

    if isinstance(raw, bool):
        raise ParseFailure(field, raw, "boolean is not a number")

    if isinstance(raw, Decimal):
        if not raw.is_finite():
            raise ParseFailure(field, raw, "not a finite number")
        return raw

    if isinstance(raw, int):
        return Decimal(raw)

    if isinstance(raw, float):
        if raw != raw or raw in (float("inf"), float("-inf")):
            raise ParseFailure(field, raw, "not a finite number")
        return Decimal(str(raw))

    if not isinstance(raw, str):
        raise ParseFailure(field, raw, f"unsupported type {type(raw).__name__}")

    text = raw.strip()
    if not text:
        return None

    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]

    text = _CURRENCY_MARKERS.sub("", text)
    text = text.replace(" ", "")
    if text.startswith("-"):
        negative = not negative
        text = text[1:]

    if not any(ch.isdigit() for ch in text):
        raise ParseFailure(field, raw, "no digits found")

    text = text.translate(_OCR_DIGIT_FIXES)

    if "." not in text and _DECIMAL_COMMA.fullmatch(text):
        text = text.replace(",", ".")
    else:
        text = text.replace(",", "")

    if not _NUMBER.fullmatch(text):
        raise ParseFailure(field, raw, "not a number")

    try:
        value = Decimal(text)
    except InvalidOperation:
        raise ParseFailure(field, raw, "not a number")

    return -value if negative else value


def parse_money(raw: Any, field: str = "amount", digits: int = 2) -> Optional[int]:
    """
    Parse a currency value into integer minor units.

    Returns None when the value is absent (None or blank). Raises
    ParseFailure when a value is present but cannot be read.

    Examples:
        "$1,234.50" -> 123450
        "45O.00"    -> 45000   (OCR letter O read as zero)
        "(12.00)"   -> -1200
    """
    value = _coerce_decimal(raw, field)
    if value is None:
        return None
    return decimal_to_minor(value, digits, field, raw)


def parse_quantity(raw: Any, field: str = "quantity") -> Optional[Decimal]:
    """Parse a quantity, tolerating trailing unit words like 'ea' or 'hrs'."""
    if isinstance(raw, str):
        raw = _QUANTITY_UNITS.sub("", raw)
    value = _coerce_decimal(raw, field)
    if value is None:
        return None
    check_range(value, field, raw)
    return normalize_quantity(value)


def check_range(value: Decimal, field: str, raw: Any = None) -> None:
    """Raise ParseFailure for values too large to hold at fixed precision."""
    if value and value.adjusted() >= MAX_INTEGER_DIGITS:
        raise ParseFailure(field, value if raw is None else raw, "out of range")


def decimal_to_minor(value: Decimal, digits: int = 2, field: str = "amount", raw: Any = None) -> int:
    """
    Round half-up to the currency precision and scale to minor units.

    Raises ParseFailure when the value is out of range.
    """
    check_range(value, field, raw)
    exponent = Decimal(1).scaleb(-digits)
    return int((value.quantize(exponent, rounding=ROUND_HALF_UP) * (10 ** digits)).to_integral_value())


def minor_to_decimal(minor: int, digits: int = 2) -> Decimal:
    """Minor units back to a Decimal with fixed precision."""
    return (Decimal(minor) / (10 ** digits)).quantize(Decimal(1).scaleb(-digits))


def format_minor(minor: Optional[int], digits: int = 2) -> Optional[str]:
    """Render minor units as a decimal string, e.g. 45000 -> '450.00'."""
    if minor is None:
        return None
    return str(minor_to_decimal(minor, digits))


def normalize_quantity(value: Decimal) -> Decimal:
    """Canonical quantity: no trailing zeros and no exponent notation."""
    normalized = value.normalize()
    if normalized.as_tuple().exponent > 0:
        normalized = normalized.quantize(Decimal(1))
    if normalized == 0:
        return Decimal(0)
    return normalized
