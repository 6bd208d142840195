"""Ledger export of approved invoices.

Export rules:
- Sort by primary BS date (ascending)
- Include both BS and AD dates
- Plain numbers, no thousands separators
- One row per logical invoice

Invoices still pending review with missing-field, math or VAT flags block
the export unless forced.
"""

import csv
import io
import logging
from dataclasses import dataclass
from decimal import Decimal

from pydantic import BaseModel, Field

from services.shared.schema import InvoiceValidationFlags
from services.storage.models import INVOICE_STATUS_APPROVED, Invoice
from services.storage.repository import InvoiceRepository

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = (
    ("sn", "S.N."),
    ("vendor_name", "Vendor Name"),
    ("seller_pan", "PAN"),
    ("invoice_number", "Invoice No."),
    ("invoice_date_bs", "Date (BS)"),
    ("invoice_date_ad", "Date (AD)"),
    ("taxable_amount", "Taxable Amount"),
    ("vat_amount", "VAT Amount"),
    ("grand_total", "Total"),
)

EXPORT_BLOCKING_FLAGS = ("missing_fields", "math_mismatch", "vat_inconsistent")


@dataclass
class ExportableInvoice:
    """Invoice fields needed for the ledger."""

    id: str
    vendor_name: str | None
    seller_pan: str | None
    invoice_number: str | None
    invoice_date_bs: str | None
    invoice_date_ad: str | None
    taxable_amount: Decimal | None
    vat_amount: Decimal | None
    grand_total: Decimal | None
    status: str
    fiscal_year: str | None = None
    flags: InvoiceValidationFlags | None = None

    @classmethod
    def from_record(
        cls, invoice: Invoice, flags: InvoiceValidationFlags | None = None
    ) -> "ExportableInvoice":
        return cls(
            id=invoice.id,
            vendor_name=invoice.vendor_name_en,
            seller_pan=invoice.seller_pan,
            invoice_number=invoice.invoice_number_en,
            invoice_date_bs=invoice.bs_date,
            invoice_date_ad=invoice.ad_date,
            taxable_amount=invoice.taxable_amount,
            vat_amount=invoice.vat_amount,
            grand_total=invoice.grand_total,
            status=invoice.status,
            fiscal_year=invoice.fiscal_year,
            flags=flags,
        )


@dataclass
class ExportRow:
    """One ledger line."""

    sn: int
    vendor_name: str
    seller_pan: str
    invoice_number: str
    invoice_date_bs: str
    invoice_date_ad: str
    taxable_amount: str
    vat_amount: str
    grand_total: str


class ExportSummary(BaseModel):
    """Totals and date range of an export."""

    total_invoices: int
    total_taxable: Decimal
    total_vat: Decimal
    total_amount: Decimal
    from_bs: str | None = None
    to_bs: str | None = None
    from_ad: str | None = None
    to_ad: str | None = None


class ExportResult(BaseModel):
    """Result of a workspace export.

    Attributes:
        success: Whether a CSV was produced
        csv: Ledger CSV content
        summary: Totals for the exported invoices
        blocking_invoice_ids: Flagged invoices that blocked the export
        error: Error message if the export was refused
    """

    success: bool
    csv: str | None = None
    summary: ExportSummary | None = None
    blocking_invoice_ids: list[str] = Field(default_factory=list)
    error: str | None = None


def _plain_amount(amount: Decimal | None) -> str:
    return "0" if amount is None else str(amount)


def sort_by_bs_date(invoices: list[ExportableInvoice]) -> list[ExportableInvoice]:
    """Ledger order: zero-padded YYYY/MM/DD strings sort chronologically."""
    return sorted(invoices, key=lambda inv: inv.invoice_date_bs or "")


def invoices_to_rows(invoices: list[ExportableInvoice]) -> list[ExportRow]:
    return [
        ExportRow(
            sn=index,
            vendor_name=inv.vendor_name or "",
            seller_pan=inv.seller_pan or "",
            invoice_number=inv.invoice_number or "",
            invoice_date_bs=inv.invoice_date_bs or "",
            invoice_date_ad=inv.invoice_date_ad or "",
            taxable_amount=_plain_amount(inv.taxable_amount),
            vat_amount=_plain_amount(inv.vat_amount),
            grand_total=_plain_amount(inv.grand_total),
        )
        for index, inv in enumerate(sort_by_bs_date(invoices), start=1)
    ]


def invoices_to_csv(invoices: list[ExportableInvoice]) -> str:
    """Render invoices as ledger CSV with a header row."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow([label for _, label in EXPORT_COLUMNS])
    for row in invoices_to_rows(invoices):
        writer.writerow([getattr(row, key) for key, _ in EXPORT_COLUMNS])
    return buffer.getvalue()


def calculate_export_summary(invoices: list[ExportableInvoice]) -> ExportSummary:
    ordered = sort_by_bs_date(invoices)
    first = ordered[0] if ordered else None
    last = ordered[-1] if ordered else None

    return ExportSummary(
        total_invoices=len(invoices),
        total_taxable=sum((inv.taxable_amount or Decimal(0) for inv in invoices), Decimal(0)),
        total_vat=sum((inv.vat_amount or Decimal(0) for inv in invoices), Decimal(0)),
        total_amount=sum((inv.grand_total or Decimal(0) for inv in invoices), Decimal(0)),
        from_bs=first.invoice_date_bs if first else None,
        to_bs=last.invoice_date_bs if last else None,
        from_ad=first.invoice_date_ad if first else None,
        to_ad=last.invoice_date_ad if last else None,
    )


def filter_by_fiscal_year(
    invoices: list[ExportableInvoice], fiscal_year: str
) -> list[ExportableInvoice]:
    return [inv for inv in invoices if inv.fiscal_year == fiscal_year]


def find_blocking_flags(invoices: list[ExportableInvoice]) -> list[str]:
    """Ids of unapproved invoices whose flags block export."""
    return [
        inv.id
        for inv in invoices
        if inv.status != INVOICE_STATUS_APPROVED
        and inv.flags is not None
        and any(getattr(inv.flags, name) for name in EXPORT_BLOCKING_FLAGS)
    ]


class LedgerExportService:
    """Builds the ledger CSV for a workspace."""

    def __init__(self, repository: InvoiceRepository) -> None:
        self.repository = repository

    def load_workspace(self, workspace_id: str) -> list[ExportableInvoice]:
        with self.repository.transaction() as session:
            return [
                ExportableInvoice.from_record(
                    invoice, self.repository.get_flags(session, invoice.id)
                )
                for invoice in self.repository.list_invoices(session, workspace_id)
            ]

    def export_workspace(
        self, workspace_id: str, force: bool = False, fiscal_year: str | None = None
    ) -> ExportResult:
        """Export approved invoices of a workspace.

        Args:
            workspace_id: Workspace to export
            force: Export even when flagged invoices are pending review
            fiscal_year: Restrict to one fiscal year, e.g. "2082/83"
        """
        invoices = self.load_workspace(workspace_id)
        if fiscal_year:
            invoices = filter_by_fiscal_year(invoices, fiscal_year)

        blocking = find_blocking_flags(invoices)
        if blocking and not force:
            logger.info(f"Export of workspace {workspace_id} blocked by {len(blocking)} invoice(s)")
            return ExportResult(
                success=False,
                blocking_invoice_ids=blocking,
                error="Export blocked: flagged invoices exist. Use force=true to override.",
            )

        approved = [inv for inv in invoices if inv.status == INVOICE_STATUS_APPROVED]
        if not approved:
            return ExportResult(success=False, error="No approved invoices to export")

        logger.info(f"Exporting {len(approved)} invoice(s) from workspace {workspace_id}")
        return ExportResult(
            success=True,
            csv=invoices_to_csv(approved),
            summary=calculate_export_summary(approved),
            blocking_invoice_ids=blocking,
        )
