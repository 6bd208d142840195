"""Invoice data models shared across the reconciliation engine.

RawExtraction is what the vision-extraction collaborator hands over;
ProcessedInvoiceData and InvoiceValidationFlags are what the engine
returns to persistence and to the review UI.
"""

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from services.normalization.service import parse_amount

CalendarType = Literal["BS", "AD"]
PrimaryDateSource = Literal["transaction", "bill_issuing"]


class LineItem(BaseModel):
    """One purchased item row from the invoice body."""

    description: str | None = None
    quantity: Decimal | None = None
    unit_price: Decimal | None = None
    amount: Decimal | None = None

    @field_validator("quantity", "unit_price", "amount", mode="before")
    @classmethod
    def _parse_number(cls, value: object) -> Decimal | None:
        return parse_amount(value)  # type: ignore[arg-type]


class OtherCharge(BaseModel):
    """A charge printed between subtotal and grand total (service charge, freight, discount)."""

    name: str | None = None
    amount: Decimal | None = None

    @field_validator("amount", mode="before")
    @classmethod
    def _parse_number(cls, value: object) -> Decimal | None:
        return parse_amount(value)  # type: ignore[arg-type]


class RawExtraction(BaseModel):
    """Header fields guessed from a photographed invoice.

    Every field is optional. Amounts may arrive as numbers or as text with
    Devanagari digits, currency markers and separators; text that cannot be
    read as a number becomes None.
    """

    # Vendor
    vendor_name_raw: str | None = Field(None, description="Vendor name exactly as written")
    vendor_name_en: str | None = Field(None, description="Vendor name in Roman script")
    seller_pan: str | None = Field(None, description="Seller PAN/VAT number")

    # Invoice number
    invoice_number_raw: str | None = Field(None, description="Invoice number exactly as written")
    invoice_number_en: str | None = Field(None, description="Invoice number with ASCII digits")

    # Transaction date (कारोबार मिति)
    transaction_date_raw: str | None = None
    transaction_date_calendar: CalendarType | None = None

    # Bill issuing date (बिजक जारी मिति)
    bill_issuing_date_raw: str | None = None
    bill_issuing_date_calendar: CalendarType | None = None

    # Amounts
    taxable_amount: Decimal | None = None
    vat_amount: Decimal | None = None
    vat_rate: Decimal | None = Field(None, description="VAT rate in percent (13 or 0)")
    grand_total: Decimal | None = None
    currency: str = "NPR"

    # Body
    line_items: list[LineItem] = Field(default_factory=list)
    other_charges: list[OtherCharge] = Field(default_factory=list)

    @field_validator("line_items", "other_charges", mode="before")
    @classmethod
    def _list_or_empty(cls, value: object) -> object:
        return value if isinstance(value, list) else []

    @field_validator("taxable_amount", "vat_amount", "grand_total", mode="before")
    @classmethod
    def _parse_amount(cls, value: object) -> Decimal | None:
        return parse_amount(value)  # type: ignore[arg-type]

    @field_validator("vat_rate", mode="before")
    @classmethod
    def _parse_rate(cls, value: object) -> Decimal | None:
        if isinstance(value, str):
            value = value.replace("%", "")
        return parse_amount(value)  # type: ignore[arg-type]

    @field_validator("transaction_date_calendar", "bill_issuing_date_calendar", mode="before")
    @classmethod
    def _parse_calendar(cls, value: object) -> str | None:
        if isinstance(value, str) and value.strip().upper() in ("BS", "AD"):
            return value.strip().upper()
        return None

    @field_validator("currency", mode="before")
    @classmethod
    def _default_currency(cls, value: object) -> str:
        return value.strip().upper() if isinstance(value, str) and value.strip() else "NPR"


class NormalizedDate(BaseModel):
    """A date field expressed in both calendars."""

    raw_text: str
    calendar_detected: CalendarType
    bs_date: str = Field(description="Bikram Sambat date, YYYY/MM/DD (empty if conversion failed)")
    ad_date: str = Field(description="Gregorian date, YYYY-MM-DD (empty if conversion failed)")
    conversion_valid: bool


class ProcessedInvoiceData(BaseModel):
    """Normalized invoice data after reconciliation."""

    # Vendor
    vendor_name_raw: str | None = None
    vendor_name_en: str | None = None
    seller_pan: str | None = Field(None, description="PAN as extracted")
    seller_pan_normalized: str | None = Field(None, description="PAN digits only")
    pan_valid: bool = False

    # Invoice number
    invoice_number_raw: str | None = None
    invoice_number_en: str | None = None

    # Dates
    transaction_date: NormalizedDate | None = None
    bill_issuing_date: NormalizedDate | None = None
    primary_date: NormalizedDate | None = None
    primary_date_source: PrimaryDateSource | None = None
    fiscal_year: str | None = None

    # Amounts
    taxable_amount: Decimal | None = None
    vat_amount: Decimal | None = None
    vat_rate: Decimal | None = None
    grand_total: Decimal | None = None
    currency: str = "NPR"

    # Body, carried through unchanged
    line_items: list[LineItem] = Field(default_factory=list)
    other_charges: list[OtherCharge] = Field(default_factory=list)

    # Computed
    is_vat_invoice: bool = False
    merge_key: str | None = None


class InvoiceValidationFlags(BaseModel):
    """Validation flags shown to the reviewer.

    missing_fields, math_mismatch and date_conversion_failed block approval;
    the others are soft signals. Every raised flag has a note.
    """

    missing_fields: bool = False
    math_mismatch: bool = False
    vat_inconsistent: bool = False
    date_conversion_failed: bool = False
    date_mismatch: bool = False
    duplicate_invoice: bool = False
    pan_invalid: bool = False
    notes: list[str] = Field(default_factory=list)

    def raised(self) -> list[str]:
        """Names of flags that are set."""
        return [
            name
            for name, value in self.model_dump(exclude={"notes"}).items()
            if value is True
        ]


class MergeCandidate(BaseModel):
    """An existing record sharing the current record's merge key."""

    existing_record_id: str
    merge_key: str
    confidence: Literal["exact"] = "exact"


class InvoiceProcessingResult(BaseModel):
    """Complete output of one pipeline run."""

    success: bool
    data: ProcessedInvoiceData
    flags: InvoiceValidationFlags
    merge_candidate: MergeCandidate | None = None
    can_approve: bool
