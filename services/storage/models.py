"""SQLAlchemy models for the invoice tables."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

INVOICE_STATUS_PENDING = "pending_review"
INVOICE_STATUS_APPROVED = "approved"


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Invoice(Base):
    """One logical invoice, possibly spanning several uploaded pages."""

    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    workspace_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=INVOICE_STATUS_PENDING
    )  # pending_review | approved

    # Unique but nullable: many invoices may lack a key, none may share one.
    merge_key: Mapped[str | None] = mapped_column(String(512), unique=True, nullable=True)

    vendor_name_en: Mapped[str | None] = mapped_column(String(255), nullable=True)
    seller_pan: Mapped[str | None] = mapped_column(String(32), nullable=True)
    invoice_number_en: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    bs_date: Mapped[str | None] = mapped_column(String(10), nullable=True)
    ad_date: Mapped[str | None] = mapped_column(String(10), nullable=True)
    fiscal_year: Mapped[str | None] = mapped_column(String(7), nullable=True)
    taxable_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    vat_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    grand_total: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="NPR")

    # Lists of {description, quantity, unit_price, amount} and {name, amount}
    line_items: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    other_charges: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)

    # Full ProcessedInvoiceData as JSON
    processed_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class InvoicePage(Base):
    """An uploaded page image belonging to an invoice."""

    __tablename__ = "invoice_pages"
    __table_args__ = (UniqueConstraint("invoice_id", "page_no", name="uq_invoice_pages_page_no"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    invoice_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    page_no: Mapped[int] = mapped_column(Integer, nullable=False)
    storage_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    mime_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class Extraction(Base):
    """Raw extraction kept so corrections can be re-validated without re-extracting."""

    __tablename__ = "extractions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    invoice_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("invoices.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    extracted_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class InvoiceFlag(Base):
    """Validation flags for an invoice (one row per invoice)."""

    __tablename__ = "invoice_flags"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    invoice_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("invoices.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    missing_fields: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    math_mismatch: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    vat_inconsistent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    date_conversion_failed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    date_mismatch: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    duplicate_invoice: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    pan_invalid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
