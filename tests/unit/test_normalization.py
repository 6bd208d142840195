"""Unit tests for field normalization."""

from decimal import Decimal

import pytest

from services.normalization.service import (
    convert_nepali_digits,
    convert_to_nepali_digits,
    format_nepali_amount,
    normalize_invoice_number,
    normalize_pan,
    normalize_string,
    normalize_vendor_name,
    parse_amount,
)


class TestDigitConversion:
    """Test Devanagari digit conversion."""

    def test_converts_all_digits(self) -> None:
        assert convert_nepali_digits("०१२३४५६७८९") == "0123456789"

    def test_leaves_other_characters(self) -> None:
        assert convert_nepali_digits("बिल नं. १२३") == "बिल नं. 123"
        assert convert_nepali_digits("INV-42") == "INV-42"

    def test_empty_input(self) -> None:
        assert convert_nepali_digits(None) is None
        assert convert_nepali_digits("") is None

    def test_to_nepali_digits(self) -> None:
        assert convert_to_nepali_digits("2082/09/07") == "२०८२/०९/०७"
        assert convert_to_nepali_digits(None) is None


class TestNormalizeString:
    """Test string canonicalization."""

    def test_collapses_whitespace(self) -> None:
        assert normalize_string("  Himal \t Traders\n ") == "Himal Traders"

    def test_strips_control_characters(self) -> None:
        assert normalize_string("Himal\x00 Traders\x7f") == "Himal Traders"

    def test_control_characters_removed_before_collapsing(self) -> None:
        assert normalize_string("Himal\nTraders") == "HimalTraders"
        assert normalize_string("Himal\r\n Traders") == "Himal Traders"
        assert normalize_string("\t\n") is None

    def test_empty_results(self) -> None:
        assert normalize_string(None) is None
        assert normalize_string("") is None
        assert normalize_string("   ") is None
        assert normalize_string("\x00\x01") is None


class TestNormalizeVendorName:
    """Test vendor-name normalization."""

    @pytest.mark.parametrize(
        "value",
        [
            "Himal Traders Pvt. Ltd.",
            "Himal Traders Pvt Ltd",
            "HIMAL TRADERS PRIVATE LIMITED",
            "Himal Traders (P) Ltd",
            "Himal Traders Limited",
            "Himal Traders, Ltd.",
            "Himal Traders P. Ltd",
            "Himal Traders Pvt.Ltd",
            "  himal   traders  ",
        ],
    )
    def test_suffix_variants_compare_equal(self, value: str) -> None:
        assert normalize_vendor_name(value) == "himal traders"

    def test_devanagari_suffix(self) -> None:
        assert normalize_vendor_name("हिमाल ट्रेडर्स प्रा. लि.") == "हिमाल ट्रेडर्स"
        assert normalize_vendor_name("हिमाल ट्रेडर्स प्रा लि") == "हिमाल ट्रेडर्स"

    def test_strips_only_one_suffix(self) -> None:
        assert normalize_vendor_name("Himal Ltd Ltd") == "himal ltd"

    def test_suffix_must_be_a_separate_word(self) -> None:
        """Should not cut a suffix out of the middle of a word."""
        assert normalize_vendor_name("Cobalt") == "cobalt"
        assert normalize_vendor_name("Limited") == "limited"

    def test_empty_input(self) -> None:
        assert normalize_vendor_name(None) is None
        assert normalize_vendor_name("  ") is None


class TestNormalizeInvoiceNumber:
    """Test invoice-number normalization."""

    def test_strips_separators(self) -> None:
        assert normalize_invoice_number("INV/2082 #0042") == "inv20820042"

    def test_keeps_hyphen(self) -> None:
        assert normalize_invoice_number("INV-001") == "inv-001"

    def test_converts_devanagari_digits(self) -> None:
        assert normalize_invoice_number("INV-००१२ / A") == "inv-0012a"

    def test_empty_results(self) -> None:
        assert normalize_invoice_number(None) is None
        assert normalize_invoice_number("#/ ") is None
        assert normalize_invoice_number("बिल") is None


class TestNormalizePAN:
    """Test PAN normalization."""

    def test_valid_pan(self) -> None:
        result = normalize_pan("601234567")

        assert result.normalized == "601234567"
        assert result.is_valid

    def test_pan_with_separators_and_devanagari(self) -> None:
        result = normalize_pan("PAN: ६०१-२३४-५६७")

        assert result.normalized == "601234567"
        assert result.is_valid

    def test_wrong_length(self) -> None:
        result = normalize_pan("12345")

        assert result.normalized == "12345"
        assert not result.is_valid

    def test_no_digits(self) -> None:
        result = normalize_pan("N/A")

        assert result.normalized is None
        assert not result.is_valid

    def test_empty_input(self) -> None:
        result = normalize_pan(None)

        assert result.normalized is None
        assert not result.is_valid


class TestParseAmount:
    """Test amount parsing."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("1130", Decimal("1130")),
            ("1,130.00", Decimal("1130.00")),
            ("1,23,456.50", Decimal("123456.50")),
            ("Rs. 1,130/-", Decimal("1130")),
            ("NPR 500", Decimal("500")),
            ("NRs. 75.5", Decimal("75.5")),
            ("रु. १,२३,४५६.५०", Decimal("123456.50")),
            ("₨ 99", Decimal("99")),
            ("-15.25", Decimal("-15.25")),
        ],
    )
    def test_parses_text(self, value: str, expected: Decimal) -> None:
        assert parse_amount(value) == expected

    def test_numbers_pass_through(self) -> None:
        assert parse_amount(1130) == Decimal("1130")
        assert parse_amount(1130.5) == Decimal("1130.5")
        assert parse_amount(Decimal("0")) == Decimal("0")

    def test_unparsable(self) -> None:
        assert parse_amount(None) is None
        assert parse_amount("") is None
        assert parse_amount("one thousand") is None
        assert parse_amount("12.34.56") is None

    def test_non_finite(self) -> None:
        assert parse_amount(float("nan")) is None
        assert parse_amount(float("inf")) is None
        assert parse_amount(Decimal("Infinity")) is None

    def test_bool_is_not_an_amount(self) -> None:
        assert parse_amount(True) is None  # type: ignore[arg-type]


class TestFormatNepaliAmount:
    """Test lakh-grouped formatting."""

    @pytest.mark.parametrize(
        ("amount", "expected"),
        [
            (1234567, "12,34,567.00"),
            (12345678.9, "1,23,45,678.90"),
            (1000, "1,000.00"),
            (100, "100.00"),
            (Decimal("-1500.5"), "-1,500.50"),
        ],
    )
    def test_grouping(self, amount: Decimal | float, expected: str) -> None:
        assert format_nepali_amount(amount) == expected

    def test_none(self) -> None:
        assert format_nepali_amount(None) == ""
