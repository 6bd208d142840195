"""Field normalization for Nepalese invoice data.

Handles the mixed-script values a vision model reads off an invoice:
1. Devanagari digit conversion (० to ९ -> 0 to 9)
2. String canonicalization (whitespace, control characters)
3. Vendor name, invoice number and PAN normalization
4. Amount parsing (currency symbols, Western and lakh separators)

Every function is null-safe: None or empty input normalizes to None.
"""

import re
from decimal import Decimal, InvalidOperation

from pydantic import BaseModel

NEPALI_DIGITS = "०१२३४५६७८९"
ASCII_DIGITS = "0123456789"

_TO_ASCII = str.maketrans(NEPALI_DIGITS, ASCII_DIGITS)
_TO_NEPALI = str.maketrans(ASCII_DIGITS, NEPALI_DIGITS)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_WHITESPACE = re.compile(r"\s+")
_NON_INVOICE_CHARS = re.compile(r"[^a-z0-9\-]")
_NON_DIGITS = re.compile(r"[^0-9]")

_CURRENCY_TOKENS = re.compile(r"(npr|nrs\.?|rs\.?|रु\.?|रू\.?|₨)", re.IGNORECASE)
_AMOUNT = re.compile(r"[+-]?(\d+(\.\d*)?|\.\d+)")

# Matched against the lowercased name; longest first so "pvt. ltd." wins over "ltd.".
CORPORATE_SUFFIXES = tuple(
    sorted(
        (
            "private limited",
            "pvt. ltd.",
            "pvt. ltd",
            "pvt ltd.",
            "pvt ltd",
            "pvt.ltd.",
            "pvt.ltd",
            "(pvt) ltd",
            "(p) ltd",
            "p. ltd.",
            "p. ltd",
            "p ltd",
            "limited",
            "ltd.",
            "ltd",
            "प्रा. लि.",
            "प्रा.लि.",
            "प्रा लि",
            "प्राइभेट लिमिटेड",
        ),
        key=len,
        reverse=True,
    )
)


class PANNormalization(BaseModel):
    """Result of PAN normalization.

    Attributes:
        normalized: Digits-only PAN, or None if no digits were present
        is_valid: Whether the PAN has exactly 9 digits
    """

    normalized: str | None
    is_valid: bool


# -------------------------------------------------------------------
# Digits
# -------------------------------------------------------------------


def convert_nepali_digits(value: str | None) -> str | None:
    """Convert Devanagari digits to ASCII, leaving other characters untouched."""
    if not value:
        return None
    return value.translate(_TO_ASCII)


def convert_to_nepali_digits(value: str | None) -> str | None:
    """Convert ASCII digits to Devanagari (for display)."""
    if not value:
        return None
    return value.translate(_TO_NEPALI)


# -------------------------------------------------------------------
# Strings
# -------------------------------------------------------------------


def normalize_string(value: str | None) -> str | None:
    """Canonicalize a free-text field.

    Control characters (tabs and line breaks included) are dropped first,
    then runs of remaining whitespace collapse to one space and the ends
    are trimmed: "Himal\\nTraders" becomes "HimalTraders".
    """
    if not value:
        return None

    normalized = _CONTROL_CHARS.sub("", value)
    normalized = _WHITESPACE.sub(" ", normalized).strip()
    return normalized or None


def normalize_vendor_name(value: str | None) -> str | None:
    """Normalize vendor name for comparison.

    Lowercases and strips one trailing corporate suffix, so
    "Himal Traders Pvt. Ltd." and "himal traders" compare equal.
    """
    normalized = normalize_string(value)
    if not normalized:
        return None

    normalized = normalized.lower()
    for suffix in CORPORATE_SUFFIXES:
        if normalized.endswith(" " + suffix) or normalized.endswith("," + suffix):
            normalized = normalized[: -len(suffix)].rstrip(" ,")
            break

    return normalized or None


def normalize_invoice_number(value: str | None) -> str | None:
    """Normalize invoice number: ASCII digits, lowercase, only [a-z0-9-]."""
    converted = convert_nepali_digits(value)
    if not converted:
        return None

    normalized = _NON_INVOICE_CHARS.sub("", converted.lower())
    return normalized or None


def normalize_pan(value: str | None) -> PANNormalization:
    """Normalize a PAN (Permanent Account Number) to its digits."""
    converted = convert_nepali_digits(value)
    if not converted:
        return PANNormalization(normalized=None, is_valid=False)

    digits = _NON_DIGITS.sub("", converted)
    return PANNormalization(normalized=digits or None, is_valid=len(digits) == 9)


# -------------------------------------------------------------------
# Amounts
# -------------------------------------------------------------------


def parse_amount(value: str | int | float | Decimal | None) -> Decimal | None:
    """Parse an amount into a Decimal.

    Accepts Devanagari digits, currency markers (Rs, NPR, रु), thousands
    separators in Western or lakh grouping and the "/-" suffix written
    after whole-rupee amounts.

    Returns:
        Decimal amount, or None if the value cannot be read as a number
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float, Decimal)):
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            return None
        return amount if amount.is_finite() else None

    text = convert_nepali_digits(str(value))
    if not text:
        return None

    text = _CURRENCY_TOKENS.sub("", text)
    text = _WHITESPACE.sub("", text).replace(",", "")
    if text.endswith("/-"):
        text = text[:-2]

    if not _AMOUNT.fullmatch(text):
        return None

    return Decimal(text)


def format_nepali_amount(amount: Decimal | float | None) -> str:
    """Format amount with lakh grouping, e.g. 1234567 -> "12,34,567.00"."""
    if amount is None:
        return ""

    quantized = Decimal(str(amount)).quantize(Decimal("0.01"))
    sign = "-" if quantized < 0 else ""
    int_part, dec_part = f"{abs(quantized):.2f}".split(".")

    if len(int_part) > 3:
        head, tail = int_part[:-3], int_part[-3:]
        groups = []
        while len(head) > 2:
            groups.insert(0, head[-2:])
            head = head[:-2]
        if head:
            groups.insert(0, head)
        int_part = ",".join(groups + [tail])

    return f"{sign}{int_part}.{dec_part}"
