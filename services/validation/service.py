"""Invoice validation rules for Nepalese VAT invoices.

Implements the checks behind the review flags:
1. Required fields (vendor, invoice number, primary date, grand total)
2. Math (taxable + VAT = total)
3. VAT consistency (VAT = taxable x rate)
4. PAN format (9 digits)
5. Date conversion and cross-calendar agreement

Amount comparisons use a +-2 NPR tolerance for rounding by default.
Flags are business signals, not errors: every check returns a result with
a human-readable note instead of raising.
"""

import logging
from decimal import Decimal

from pydantic import BaseModel

from services.normalization.service import normalize_pan, parse_amount
from services.shared.config import Settings
from services.shared.schema import (
    InvoiceValidationFlags,
    NormalizedDate,
    ProcessedInvoiceData,
)

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = 2.0
VAT_RATE_TOLERANCE = 1.0

STANDARD_VAT_RATE = Decimal(13)
ZERO_VAT_RATE = Decimal(0)
VALID_VAT_RATES = (ZERO_VAT_RATE, STANDARD_VAT_RATE)

REQUIRED_FIELDS = ("vendor_name", "invoice_number", "date", "grand_total")

Amount = Decimal | float | int | None


class MathCheckResult(BaseModel):
    """Result of the taxable + VAT = total check."""

    mismatch: bool
    expected_total: Decimal | None = None
    difference: Decimal | None = None
    note: str | None = None


class VatCheckResult(BaseModel):
    """Result of the VAT = taxable x rate check."""

    inconsistent: bool
    expected_vat: Decimal | None = None
    note: str | None = None


class MissingFieldsResult(BaseModel):
    """Result of the required-field check."""

    missing: bool
    fields: list[str]


class PANCheckResult(BaseModel):
    """Result of PAN validation."""

    valid: bool
    normalized: str | None = None
    note: str | None = None


class DateCheckResult(BaseModel):
    """Result of a date check (conversion, agreement or range)."""

    failed: bool
    note: str | None = None


def _to_decimal(value: Amount) -> Decimal | None:
    return parse_amount(value)


def _is_present(value: object) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


# -------------------------------------------------------------------
# Math and VAT
# -------------------------------------------------------------------


def check_math_mismatch(
    taxable_amount: Amount,
    vat_amount: Amount,
    grand_total: Amount,
    tolerance: float = AMOUNT_TOLERANCE,
) -> MathCheckResult:
    """Validate that taxable + VAT = total.

    Absent taxable or VAT amounts count as zero. If the total itself is
    absent the check cannot run and no mismatch is reported.
    """
    total = _to_decimal(grand_total)
    if total is None:
        return MathCheckResult(mismatch=False)

    taxable = _to_decimal(taxable_amount) or Decimal(0)
    vat = _to_decimal(vat_amount) or Decimal(0)
    expected_total = taxable + vat
    difference = abs(expected_total - total)

    if difference > Decimal(str(tolerance)):
        return MathCheckResult(
            mismatch=True,
            expected_total=expected_total,
            difference=difference,
            note=(
                f"Math mismatch: {taxable} + {vat} = {expected_total}, "
                f"but total is {total} (diff: {difference:.2f})"
            ),
        )

    return MathCheckResult(mismatch=False, expected_total=expected_total, difference=difference)


def infer_vat_rate(
    taxable_amount: Amount,
    vat_amount: Amount,
    explicit_rate: Amount,
    rate_tolerance: float = VAT_RATE_TOLERANCE,
) -> Decimal:
    """Infer the VAT rate when the invoice does not state a valid one.

    Rules:
    - Explicit rate in {0, 13}: use it
    - VAT absent or zero: 0
    - VAT within +-1 point of 13% of taxable: 13
    - VAT present but rate unconfirmed: 13
    """
    rate = _to_decimal(explicit_rate)
    if rate is not None and rate in VALID_VAT_RATES:
        return STANDARD_VAT_RATE if rate == STANDARD_VAT_RATE else ZERO_VAT_RATE

    vat = _to_decimal(vat_amount)
    if not vat:
        return ZERO_VAT_RATE

    taxable = _to_decimal(taxable_amount)
    if taxable and taxable > 0:
        implied_rate = vat / taxable * 100
        if abs(implied_rate - STANDARD_VAT_RATE) <= Decimal(str(rate_tolerance)):
            return STANDARD_VAT_RATE
        logger.debug(f"Implied VAT rate {implied_rate:.2f}% not close to 13%, defaulting to 13%")

    return STANDARD_VAT_RATE


def check_vat_inconsistent(
    taxable_amount: Amount,
    vat_amount: Amount,
    vat_rate: Amount,
    tolerance: float = AMOUNT_TOLERANCE,
) -> VatCheckResult:
    """Validate that VAT = taxable x rate.

    Only checked when the rate is positive, taxable is positive and a VAT
    amount is present.
    """
    rate = _to_decimal(vat_rate)
    taxable = _to_decimal(taxable_amount)
    vat = _to_decimal(vat_amount)

    if not rate or rate <= 0 or not taxable or taxable <= 0 or vat is None:
        return VatCheckResult(inconsistent=False)

    expected_vat = taxable * rate / 100
    difference = abs(expected_vat - vat)

    if difference > Decimal(str(tolerance)):
        return VatCheckResult(
            inconsistent=True,
            expected_vat=expected_vat,
            note=(
                f"VAT inconsistent: {rate}% of {taxable} = {expected_vat:.2f}, "
                f"but VAT is {vat} (diff: {difference:.2f})"
            ),
        )

    return VatCheckResult(inconsistent=False, expected_vat=expected_vat)


# -------------------------------------------------------------------
# Fields
# -------------------------------------------------------------------


def check_missing_fields(
    vendor_name: str | None,
    invoice_number: str | None,
    primary_date: object,
    grand_total: Amount,
) -> MissingFieldsResult:
    """Check that every field required for approval is present.

    A numeric zero counts as present; None and blank strings do not.
    """
    values = (vendor_name, invoice_number, primary_date, grand_total)
    fields = [name for name, value in zip(REQUIRED_FIELDS, values) if not _is_present(value)]
    return MissingFieldsResult(missing=bool(fields), fields=fields)


def validate_pan(pan: str | None) -> PANCheckResult:
    """Validate Nepal PAN: optional, but if present exactly 9 digits."""
    if not pan or not pan.strip():
        return PANCheckResult(valid=True)

    result = normalize_pan(pan)
    if not result.is_valid:
        digit_count = len(result.normalized or "")
        return PANCheckResult(
            valid=False,
            normalized=result.normalized,
            note=f'Invalid PAN format: "{pan}" (expected 9 digits, got {digit_count})',
        )

    return PANCheckResult(valid=True, normalized=result.normalized)


# -------------------------------------------------------------------
# Dates
# -------------------------------------------------------------------


def validate_date_conversion(date: NormalizedDate | None, label: str) -> DateCheckResult:
    """A date that was written on the invoice must convert to both calendars."""
    if date is None or date.conversion_valid:
        return DateCheckResult(failed=False)

    return DateCheckResult(
        failed=True,
        note=f'{label} conversion failed for: "{date.raw_text}"',
    )


def check_date_mismatch(
    transaction_date: NormalizedDate | None,
    bill_issuing_date: NormalizedDate | None,
) -> DateCheckResult:
    """Flag BS and AD dates on the same invoice that name different days."""
    if (
        transaction_date is None
        or bill_issuing_date is None
        or not transaction_date.conversion_valid
        or not bill_issuing_date.conversion_valid
        or transaction_date.calendar_detected == bill_issuing_date.calendar_detected
        or transaction_date.bs_date == bill_issuing_date.bs_date
    ):
        return DateCheckResult(failed=False)

    return DateCheckResult(
        failed=True,
        note=(
            f"Date mismatch: transaction date {transaction_date.raw_text} "
            f"({transaction_date.calendar_detected}) is {transaction_date.bs_date} BS, "
            f"bill issuing date {bill_issuing_date.raw_text} "
            f"({bill_issuing_date.calendar_detected}) is {bill_issuing_date.bs_date} BS"
        ),
    )


def validate_date_range(bs_date: str | None, min_year: int, max_year: int) -> DateCheckResult:
    """Advisory check that a BS date falls in the plausible bookkeeping window."""
    if not bs_date:
        return DateCheckResult(failed=False)

    try:
        year = int(bs_date[:4])
    except ValueError:
        return DateCheckResult(failed=True, note=f"Invalid date format: {bs_date}")

    if not min_year <= year <= max_year:
        return DateCheckResult(
            failed=True,
            note=f"Date year {year} is outside expected range ({min_year}-{max_year} BS)",
        )

    return DateCheckResult(failed=False)


# -------------------------------------------------------------------
# Complete validation
# -------------------------------------------------------------------


def can_approve(flags: InvoiceValidationFlags, vat_blocks: bool = False) -> bool:
    """Approval gate.

    Blocking: missing fields, math mismatch, failed date conversion.
    VAT inconsistency blocks only when vat_blocks is set; an invalid PAN
    never blocks.
    """
    if vat_blocks and flags.vat_inconsistent:
        return False
    return not flags.missing_fields and not flags.math_mismatch and not flags.date_conversion_failed


class ValidationEngine:
    """Computes the flag set for processed invoice data.

    Tolerances and the approval policy come from settings so that every
    worker applies the same rules.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize validation engine.

        Args:
            settings: Application settings with tolerance configuration
        """
        self.settings = settings

    def validate(self, data: ProcessedInvoiceData) -> InvoiceValidationFlags:
        """Run all checks and return the complete flag set.

        Notes are ordered: missing fields, math, VAT, PAN, dates.
        """
        notes: list[str] = []
        tolerance = self.settings.amount_tolerance

        missing = check_missing_fields(
            data.vendor_name_en,
            data.invoice_number_en,
            data.primary_date,
            data.grand_total,
        )
        if missing.missing:
            notes.append(f"Missing required fields: {', '.join(missing.fields)}")

        math = check_math_mismatch(
            data.taxable_amount, data.vat_amount, data.grand_total, tolerance
        )
        if math.note:
            notes.append(math.note)

        vat = check_vat_inconsistent(data.taxable_amount, data.vat_amount, data.vat_rate, tolerance)
        if vat.note:
            notes.append(vat.note)

        pan = validate_pan(data.seller_pan)
        if pan.note:
            notes.append(pan.note)

        date_conversion_failed = False
        for date, label in (
            (data.transaction_date, "Transaction date"),
            (data.bill_issuing_date, "Bill issuing date"),
        ):
            conversion = validate_date_conversion(date, label)
            if conversion.failed:
                date_conversion_failed = True
                notes.append(str(conversion.note))

        mismatch = check_date_mismatch(data.transaction_date, data.bill_issuing_date)
        if mismatch.note:
            notes.append(mismatch.note)

        if data.primary_date is not None:
            date_range = validate_date_range(
                data.primary_date.bs_date,
                self.settings.plausible_bs_year_min,
                self.settings.plausible_bs_year_max,
            )
            if date_range.note:
                notes.append(date_range.note)

        return InvoiceValidationFlags(
            missing_fields=missing.missing,
            math_mismatch=math.mismatch,
            vat_inconsistent=vat.inconsistent,
            date_conversion_failed=date_conversion_failed,
            date_mismatch=mismatch.failed,
            duplicate_invoice=False,
            pan_invalid=not pan.valid,
            notes=notes,
        )

    def can_approve(self, flags: InvoiceValidationFlags) -> bool:
        """Approval gate using the configured VAT policy."""
        return can_approve(flags, vat_blocks=self.settings.vat_inconsistent_blocks_approval)


def validate_invoice(
    data: ProcessedInvoiceData, settings: Settings | None = None
) -> InvoiceValidationFlags:
    """Compute the flag set for processed invoice data with the given settings."""
    return ValidationEngine(settings or Settings()).validate(data)
