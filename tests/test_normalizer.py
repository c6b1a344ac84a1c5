"""
Tests for the normalizer: money and quantity parsing, derivation rules,
service-type inference and canonical form.
"""

import pytest
from decimal import Decimal

from invoice_recon.exceptions import ParseFailure
from invoice_recon.schemas.invoice import InvoiceLineItem
from invoice_recon.schemas.po import POLineItem
from invoice_recon.stages.normalizer import (
    infer_service_type,
    normalize_fields,
    normalize_invoice_line,
    normalize_po_line,
    tokenize_description,
)
from invoice_recon.utils.money import format_minor, parse_money, parse_quantity


class TestParseMoney:
    """Currency parsing into minor units."""

    @pytest.mark.parametrize("raw,expected", [
        ("$1,234.50", 123450),
        ("450.00", 45000),
        ("  USD 1 200.00 ", 120000),
        ("(12.00)", -1200),
        ("12,50", 1250),
        ("1,234", 123400),
        (450, 45000),
        (19.99, 1999),
        (Decimal("12.345"), 1235),
    ])
    def test_parses_common_formats(self, raw, expected):
        assert parse_money(raw) == expected

    @pytest.mark.parametrize("raw,expected", [
        ("45O.00", 45000),
        ("$4S.0O", 4500),
        ("l,2B0.00", 128000),
    ])
    def test_repairs_ocr_digit_confusions(self, raw, expected):
        assert parse_money(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_absent_values_are_none(self, raw):
        assert parse_money(raw) is None

    @pytest.mark.parametrize("raw", ["N/A", "see attached", True, "12.3.4"])
    def test_garbled_values_raise(self, raw):
        with pytest.raises(ParseFailure) as exc_info:
            parse_money(raw, field="unit_price")
        assert exc_info.value.field == "unit_price"
        assert exc_info.value.code == "PARSE_FAILURE"

    @pytest.mark.parametrize("raw", ["1" * 30, 1e30, Decimal("1E+20"), "-" + "9" * 16])
    def test_out_of_range_values_raise(self, raw):
        with pytest.raises(ParseFailure) as exc_info:
            parse_money(raw, field="unit_price")
        assert exc_info.value.reason == "out of range"

    def test_largest_accepted_value(self):
        assert parse_money("999999999999999.99") == 99999999999999999

    def test_format_minor(self):
        assert format_minor(45000) == "450.00"
        assert format_minor(5) == "0.05"
        assert format_minor(None) is None


class TestParseQuantity:
    """Quantity parsing."""

    @pytest.mark.parametrize("raw,expected", [
        ("2 ea", "2"),
        ("1.50", "1.5"),
        ("10.00", "10"),
        ("3 pulls", "3"),
        (4, "4"),
    ])
    def test_normalizes_quantity(self, raw, expected):
        assert str(parse_quantity(raw)) == expected

    def test_garbled_quantity_raises(self):
        with pytest.raises(ParseFailure):
            parse_quantity("several")


def test_tokenize_strips_punctuation_and_stop_words():
    """Tokens are lower-cased with punctuation and stop-words removed."""
    assert tokenize_description("30-Yard Dumpster, Rental!") == frozenset(
        {"30", "yard", "dumpster", "rental"}
    )
    assert tokenize_description("Rental of the dumpster") == frozenset({"rental", "dumpster"})
    assert tokenize_description(None) == frozenset()


class TestServiceTypeInference:
    """Explicit tags and fuzzy alias lookup."""

    def test_explicit_tag_wins(self):
        assert infer_service_type("weekly trash pickup", explicit="Roll Off") == "roll_off"

    @pytest.mark.parametrize("description,expected", [
        ("Weekly trash pickup 4yd", "waste"),
        ("Dumpster rental 30yd", "roll_off"),
        ("Cardboard recycling 8yd", "recycle"),
        ("Medical waste disposal", "medical_waste"),
        ("Monthly porta potty service", "portable_toilet"),
        ("OCC pull", "recycle"),
    ])
    def test_inferred_from_description(self, description, expected):
        assert infer_service_type(description) == expected

    def test_no_confident_match(self):
        assert infer_service_type("Consulting fee") is None
        assert infer_service_type("") is None

    def test_short_alias_needs_whole_token(self):
        # "occ" inside "soccer" must not count
        assert infer_service_type("soccer field") is None


class TestDerivation:
    """Missing fields are derived where the others allow it."""

    def test_unit_price_from_amount_and_quantity(self):
        item = normalize_fields("L1", "Trash pickup", "2", None, "300.00")
        assert item.unit_price_minor == 15000
        assert not item.unparseable

    def test_quantity_from_amount_and_unit_price(self):
        item = normalize_fields("L1", "Trash pickup", None, "150.00", "300.00")
        assert item.quantity == Decimal("2")
        assert str(item.quantity) == "2"

    def test_amount_from_quantity_and_unit_price(self):
        item = normalize_fields("L1", "Trash pickup", "3", "12.50", None)
        assert item.amount_minor == 3750

    def test_amount_only_assumes_single_unit(self):
        item = normalize_fields("L1", "Dumpster swap", None, None, "$450.00")
        assert item.quantity == Decimal(1)
        assert item.unit_price_minor == 45000
        assert not item.unparseable
        assert any("assumed 1" in d.message for d in item.diagnostics)

    def test_garbled_price_without_quantity_is_unparseable(self):
        """Unparseable unit price and no quantity cannot be repaired."""
        item = normalize_fields("L1", "Dumpster rental", None, "N/A", "450.00")
        assert item.unparseable
        fields = {d.field for d in item.diagnostics}
        assert "unit_price" in fields
        assert "quantity" in fields

    def test_nothing_parseable(self):
        item = normalize_fields("L1", "Dumpster rental", None, None, None)
        assert item.unparseable
        assert len(item.diagnostics) == 3

    def test_amount_mismatch_is_diagnostic_only(self):
        item = normalize_fields("L1", "Trash pickup", "2", "10.00", "25.00")
        assert not item.unparseable
        assert item.amount_minor == 2500
        assert any(d.message.startswith("amount_mismatch") for d in item.diagnostics)

    def test_oversized_price_is_unparseable(self):
        item = normalize_fields("L1", "Dumpster rental", "1", "1" * 30, None)
        assert item.unparseable
        assert item.unit_price_minor is None
        assert [(d.field, d.message) for d in item.diagnostics] == [
            ("unit_price", "out of range"),
            ("amount", "missing and could not be derived"),
        ]

    def test_oversized_quantity_is_unparseable(self):
        item = normalize_fields("L1", "Trash pickup", 1e30, "10.00", None)
        assert item.unparseable
        assert item.diagnostics[0].field == "quantity"

    def test_derived_amount_out_of_range(self):
        item = normalize_fields("L1", "Trash pickup", "99999999999999", "99999999.00", None)
        assert item.unparseable
        assert item.amount_minor is None
        assert [d.message for d in item.diagnostics] == ["derived value out of range"]

    def test_derived_unit_price_out_of_range(self):
        item = normalize_fields("L1", "Trash pickup", "0.0001", None, "999999999999.00")
        assert item.unparseable
        assert [d.field for d in item.diagnostics] == ["unit_price"]

    def test_one_cent_rounding_is_tolerated(self):
        item = normalize_fields("L1", "Trash pickup", "4", "85.00", "340.01")
        assert item.diagnostics == []


class TestLineNormalization:
    """Invoice and PO line entry points."""

    def test_po_line_uses_vendor_price(self):
        po_item = POLineItem(
            id="POL-1",
            po_id="PO-1",
            line_number=1,
            description="30-yard dumpster rental",
            quantity=Decimal("1"),
            vendor_unit_price=Decimal("450.00"),
            client_unit_price=Decimal("520.00"),
        )
        normalized = normalize_po_line(po_item)
        assert normalized.amount_minor == 45000
        assert normalized.unit_price_minor == 45000
        assert normalized.service_type == "roll_off"
        assert po_item.client_amount == Decimal("520.00")

    def test_invoice_line(self):
        line = InvoiceLineItem(
            id="INV-1-L1",
            line_number=1,
            description="Dumpster rental 30yd",
            quantity="1",
            unit_price="$450.00",
        )
        normalized = normalize_invoice_line(line)
        assert normalized.ref_id == "INV-1-L1"
        assert normalized.description_tokens == frozenset({"dumpster", "rental", "30yd"})
        assert normalized.amount_minor == 45000

    def test_renormalizing_po_line_is_byte_identical(self):
        po_item = POLineItem(
            id="POL-7",
            po_id="PO-2",
            line_number=3,
            description="Compactor haul, 34 yd",
            quantity=Decimal("2.00"),
            vendor_unit_price=Decimal("612.5"),
        )
        first = normalize_po_line(po_item).canonical_json()
        second = normalize_po_line(po_item).canonical_json()
        assert first == second
        assert '"quantity":"2"' in first


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
