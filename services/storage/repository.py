"""Relational persistence for invoices, pages, extractions and flags.

SQLAlchemy 2.0 repository used by the merge and reconciliation services:
- Unique index on invoices.merge_key as the datastore-level dedup guard
- SAVEPOINT-scoped merge-key claims (IntegrityError = a concurrent run won)
- Explicit child-row deletion so merges behave the same with or without
  database-level cascades

Methods take the session of the caller's transaction; open one with
InvoiceRepository.transaction().
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import Engine, Select, create_engine, delete, event, func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from services.shared.config import Settings
from services.shared.schema import InvoiceValidationFlags, ProcessedInvoiceData
from services.storage.models import (
    INVOICE_STATUS_PENDING,
    Base,
    Extraction,
    Invoice,
    InvoiceFlag,
    InvoicePage,
)

logger = logging.getLogger(__name__)

FLAG_FIELDS = (
    "missing_fields",
    "math_mismatch",
    "vat_inconsistent",
    "date_conversion_failed",
    "date_mismatch",
    "duplicate_invoice",
    "pan_invalid",
)


def create_database_engine(settings: Settings) -> Engine:
    """Create the SQLAlchemy engine for the configured database.

    SQLite gets foreign keys switched on and driver-level transaction
    handling disabled so that SAVEPOINTs work. Transactions open with
    BEGIN IMMEDIATE: the write lock is taken before the first read, and a
    second writer waits on the busy timeout instead of failing on upgrade.
    An in-memory SQLite database is pinned to a single shared connection.
    """
    url = settings.database_url
    if not url.startswith("sqlite"):
        return create_engine(url, echo=settings.database_echo, pool_pre_ping=True)

    kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
        kwargs["poolclass"] = StaticPool

    engine = create_engine(url, echo=settings.database_echo, **kwargs)

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(connection: Any) -> None:
        connection.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


_LOCK_SQLSTATES = frozenset({"40001", "40P01", "55P03"})


def is_lock_conflict(error: SQLAlchemyError) -> bool:
    """Whether a database error means a concurrent transaction held the rows.

    Covers SQLite busy/locked errors and PostgreSQL serialization failures,
    deadlocks and lock timeouts.
    """
    if not isinstance(error, OperationalError):
        return False
    orig = error.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _LOCK_SQLSTATES:
        return True
    message = str(orig).lower()
    return "database is locked" in message or "database is busy" in message


def init_schema(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    Base.metadata.create_all(engine)


def _flags_of(invoice_id: str) -> Select[tuple[InvoiceFlag]]:
    return select(InvoiceFlag).where(InvoiceFlag.invoice_id == invoice_id)


def flags_from_row(row: InvoiceFlag) -> InvoiceValidationFlags:
    return InvoiceValidationFlags(
        **{name: bool(getattr(row, name)) for name in FLAG_FIELDS},
        notes=list(row.notes or []),
    )


class InvoiceRepository:
    """Data access for the invoice tables."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Open a session inside one transaction: commit on exit, roll back on error."""
        with self._session_factory.begin() as session:
            yield session

    # -------------------------------------------------------------------
    # Invoices
    # -------------------------------------------------------------------

    def create_invoice(
        self,
        session: Session,
        workspace_id: str,
        page_paths: list[str],
        invoice_id: str | None = None,
    ) -> Invoice:
        """Register an invoice shell with its pages numbered from 1."""
        invoice = Invoice(workspace_id=workspace_id, status=INVOICE_STATUS_PENDING)
        if invoice_id:
            invoice.id = invoice_id
        session.add(invoice)
        session.flush()

        for page_no, path in enumerate(page_paths, start=1):
            session.add(InvoicePage(invoice_id=invoice.id, page_no=page_no, storage_path=path))
        session.flush()

        logger.info(f"Created invoice {invoice.id} with {len(page_paths)} page(s)")
        return invoice

    def get_invoice(
        self, session: Session, invoice_id: str, for_update: bool = False
    ) -> Invoice | None:
        """Load an invoice, optionally locking its row until the transaction ends."""
        return session.get(Invoice, invoice_id, with_for_update=for_update or None)

    def list_invoices(self, session: Session, workspace_id: str) -> list[Invoice]:
        stmt = (
            select(Invoice)
            .where(Invoice.workspace_id == workspace_id)
            .order_by(Invoice.created_at)
        )
        return list(session.scalars(stmt))

    def find_by_merge_key(
        self, session: Session, merge_key: str, exclude_id: str | None = None
    ) -> Invoice | None:
        """Find another invoice holding the merge key."""
        stmt = select(Invoice).where(Invoice.merge_key == merge_key)
        if exclude_id:
            stmt = stmt.where(Invoice.id != exclude_id)
        return session.scalars(stmt.limit(1)).first()

    def apply_processed(
        self, session: Session, invoice: Invoice, data: ProcessedInvoiceData
    ) -> None:
        """Store processed data on the invoice and reset it to pending review.

        The merge key is not touched here; see claim_merge_key.
        """
        primary = data.primary_date
        invoice.vendor_name_en = data.vendor_name_en
        invoice.seller_pan = data.seller_pan_normalized or data.seller_pan
        invoice.invoice_number_en = data.invoice_number_en
        invoice.bs_date = primary.bs_date if primary else None
        invoice.ad_date = primary.ad_date if primary else None
        invoice.fiscal_year = data.fiscal_year
        invoice.taxable_amount = data.taxable_amount
        invoice.vat_amount = data.vat_amount
        invoice.grand_total = data.grand_total
        invoice.currency = data.currency
        invoice.line_items = [item.model_dump(mode="json") for item in data.line_items]
        invoice.other_charges = [charge.model_dump(mode="json") for charge in data.other_charges]
        invoice.processed_json = data.model_dump(mode="json")
        invoice.status = INVOICE_STATUS_PENDING
        session.flush()

    def claim_merge_key(self, session: Session, invoice: Invoice, merge_key: str | None) -> bool:
        """Set the invoice's merge key under the unique index.

        The write runs in a SAVEPOINT so a collision only rolls back the
        claim, not the caller's transaction.

        Returns:
            False if another invoice already holds the key
        """
        if invoice.merge_key == merge_key:
            return True

        try:
            with session.begin_nested():
                invoice.merge_key = merge_key
                session.flush()
        except IntegrityError:
            logger.warning(f"Merge key already claimed, invoice {invoice.id} lost the race")
            return False

        return True

    def set_status(self, session: Session, invoice_id: str, status: str) -> None:
        session.execute(update(Invoice).where(Invoice.id == invoice_id).values(status=status))

    def delete_invoice(self, session: Session, invoice_id: str) -> bool:
        """Delete an invoice with its pages, flags and extraction.

        Returns:
            True if the invoice existed
        """
        session.execute(delete(InvoiceFlag).where(InvoiceFlag.invoice_id == invoice_id))
        session.execute(delete(Extraction).where(Extraction.invoice_id == invoice_id))
        session.execute(delete(InvoicePage).where(InvoicePage.invoice_id == invoice_id))
        result = session.execute(delete(Invoice).where(Invoice.id == invoice_id))
        return bool(result.rowcount)

    # -------------------------------------------------------------------
    # Pages
    # -------------------------------------------------------------------

    def list_pages(self, session: Session, invoice_id: str) -> list[InvoicePage]:
        """Pages of an invoice ordered by page number."""
        stmt = (
            select(InvoicePage)
            .where(InvoicePage.invoice_id == invoice_id)
            .order_by(InvoicePage.page_no)
        )
        return list(session.scalars(stmt))

    def max_page_no(self, session: Session, invoice_id: str) -> int:
        stmt = select(func.coalesce(func.max(InvoicePage.page_no), 0)).where(
            InvoicePage.invoice_id == invoice_id
        )
        return int(session.scalar(stmt) or 0)

    def reassign_page(self, session: Session, page_id: str, invoice_id: str, page_no: int) -> None:
        """Move a page to another invoice under a new page number."""
        session.execute(
            update(InvoicePage)
            .where(InvoicePage.id == page_id)
            .values(invoice_id=invoice_id, page_no=page_no)
        )

    # -------------------------------------------------------------------
    # Extraction and flags
    # -------------------------------------------------------------------

    def save_extraction(self, session: Session, invoice_id: str, payload: dict[str, Any]) -> None:
        row = session.scalars(select(Extraction).where(Extraction.invoice_id == invoice_id)).first()
        if row is None:
            session.add(Extraction(invoice_id=invoice_id, extracted_json=payload))
        else:
            row.extracted_json = payload
        session.flush()

    def get_extraction(self, session: Session, invoice_id: str) -> dict[str, Any] | None:
        row = session.scalars(select(Extraction).where(Extraction.invoice_id == invoice_id)).first()
        return dict(row.extracted_json) if row else None

    def save_flags(self, session: Session, invoice_id: str, flags: InvoiceValidationFlags) -> None:
        """Replace the invoice's flag row."""
        values = {name: getattr(flags, name) for name in FLAG_FIELDS}
        row = session.scalars(_flags_of(invoice_id)).first()
        if row is None:
            session.add(InvoiceFlag(invoice_id=invoice_id, notes=list(flags.notes), **values))
        else:
            for name, value in values.items():
                setattr(row, name, value)
            row.notes = list(flags.notes)
        session.flush()

    def get_flags(self, session: Session, invoice_id: str) -> InvoiceValidationFlags | None:
        row = session.scalars(_flags_of(invoice_id)).first()
        return flags_from_row(row) if row else None
