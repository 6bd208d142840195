"""Invoice reconciliation pipeline.

Turns a raw extraction into one processed invoice record plus its flags:
1. Normalize both invoice dates into BS and AD
2. Pick the primary date (transaction date, else bill issuing date)
3. Canonicalize vendor, invoice number, PAN and amounts
4. Infer the VAT rate and build the merge key
5. Validate and compute the approval gate

ReconciliationPipeline is pure. ReconciliationService runs it against
persisted invoices: it stores the result, claims the merge key and folds
duplicate submissions into the invoice that already holds the key.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from services.calendar.service import (
    DEFAULT_BS_THRESHOLD,
    CalendarType,
    convert_from_ad,
    convert_from_bs,
    detect_calendar,
    fiscal_year_of,
    normalize_date_string,
)
from services.merge.service import (
    Deduplicator,
    InvoiceNotFoundError,
    MergeConflictError,
    MergeResult,
    generate_merge_key,
)
from services.normalization.service import (
    convert_nepali_digits,
    normalize_pan,
    normalize_string,
)
from services.pipeline import metrics
from services.shared.config import Settings
from services.shared.schema import (
    InvoiceProcessingResult,
    InvoiceValidationFlags,
    MergeCandidate,
    NormalizedDate,
    PrimaryDateSource,
    ProcessedInvoiceData,
    RawExtraction,
)
from services.storage.models import INVOICE_STATUS_APPROVED
from services.storage.repository import InvoiceRepository, is_lock_conflict
from services.validation.service import ValidationEngine, infer_vat_rate

logger = logging.getLogger(__name__)


@contextmanager
def _lock_conflicts_retryable(invoice_id: str) -> Iterator[None]:
    """Re-raise database lock errors as MergeConflictError."""
    try:
        yield
    except SQLAlchemyError as e:
        if not is_lock_conflict(e):
            raise
        logger.warning(f"Invoice {invoice_id} hit a lock conflict: {e}")
        raise MergeConflictError(f"Invoice {invoice_id} is locked by a concurrent run") from e


def normalize_date_field(
    raw_text: str | None,
    calendar: CalendarType | None = None,
    bs_threshold: int = DEFAULT_BS_THRESHOLD,
) -> NormalizedDate | None:
    """Normalize one invoice date into both calendars.

    The calendar hint from extraction wins; without one the calendar is
    detected from the date itself.

    Returns:
        None if no date was written, otherwise a NormalizedDate whose
        conversion_valid tells whether both calendars could be filled
    """
    if not raw_text or not raw_text.strip():
        return None

    text = normalize_date_string(raw_text)
    if text is None:
        return NormalizedDate(
            raw_text=raw_text,
            calendar_detected=calendar or "BS",
            bs_date="",
            ad_date="",
            conversion_valid=False,
        )

    detected = calendar or detect_calendar(text, bs_threshold) or "BS"
    converted = convert_from_bs(text) if detected == "BS" else convert_from_ad(text)
    if converted is None:
        logger.warning(f"Could not convert {detected} date: {raw_text!r}")
        return NormalizedDate(
            raw_text=raw_text,
            calendar_detected=detected,
            bs_date="",
            ad_date="",
            conversion_valid=False,
        )

    return NormalizedDate(
        raw_text=raw_text,
        calendar_detected=detected,
        bs_date=converted.bs_formatted,
        ad_date=converted.ad_formatted,
        conversion_valid=True,
    )


def determine_primary_date(
    transaction_date: NormalizedDate | None,
    bill_issuing_date: NormalizedDate | None,
) -> tuple[NormalizedDate | None, PrimaryDateSource | None]:
    """Pick the date used for ledger ordering and the merge key."""
    if transaction_date is not None and transaction_date.conversion_valid:
        return transaction_date, "transaction"
    if bill_issuing_date is not None and bill_issuing_date.conversion_valid:
        return bill_issuing_date, "bill_issuing"
    return None, None


class ReconciliationPipeline:
    """Pure extraction-to-record pipeline."""

    def __init__(self, settings: Settings) -> None:
        """Initialize pipeline.

        Args:
            settings: Application settings (tolerances, calendar heuristics)
        """
        self.settings = settings
        self.validation = ValidationEngine(settings)

    def process(self, extraction: RawExtraction, workspace_id: str) -> InvoiceProcessingResult:
        """Process one raw extraction into a validated invoice record.

        Args:
            extraction: Header fields from the vision collaborator
            workspace_id: Workspace the invoice belongs to

        Returns:
            Processed data, flags and the approval gate. merge_candidate is
            left empty; persistence-aware callers fill it in.
        """
        threshold = self.settings.bs_detection_threshold
        transaction_date = normalize_date_field(
            extraction.transaction_date_raw, extraction.transaction_date_calendar, threshold
        )
        bill_issuing_date = normalize_date_field(
            extraction.bill_issuing_date_raw, extraction.bill_issuing_date_calendar, threshold
        )
        for date in (transaction_date, bill_issuing_date):
            if date is not None:
                metrics.date_conversions_total.labels(
                    calendar=date.calendar_detected,
                    status="success" if date.conversion_valid else "failed",
                ).inc()

        primary_date, primary_source = determine_primary_date(transaction_date, bill_issuing_date)

        vendor_name_en = normalize_string(extraction.vendor_name_en) or normalize_string(
            extraction.vendor_name_raw
        )
        invoice_number_en = convert_nepali_digits(
            normalize_string(extraction.invoice_number_en)
            or normalize_string(extraction.invoice_number_raw)
        )
        pan = normalize_pan(extraction.seller_pan)

        vat_rate = infer_vat_rate(
            extraction.taxable_amount,
            extraction.vat_amount,
            extraction.vat_rate,
            self.settings.vat_rate_tolerance,
        )

        primary_bs_date = primary_date.bs_date if primary_date else None
        data = ProcessedInvoiceData(
            vendor_name_raw=extraction.vendor_name_raw,
            vendor_name_en=vendor_name_en,
            seller_pan=extraction.seller_pan,
            seller_pan_normalized=pan.normalized,
            pan_valid=pan.is_valid,
            invoice_number_raw=extraction.invoice_number_raw,
            invoice_number_en=invoice_number_en,
            transaction_date=transaction_date,
            bill_issuing_date=bill_issuing_date,
            primary_date=primary_date,
            primary_date_source=primary_source,
            fiscal_year=fiscal_year_of(primary_bs_date),
            taxable_amount=extraction.taxable_amount,
            vat_amount=extraction.vat_amount,
            vat_rate=vat_rate,
            grand_total=extraction.grand_total,
            currency=extraction.currency,
            line_items=extraction.line_items,
            other_charges=extraction.other_charges,
            is_vat_invoice=vat_rate > Decimal(0),
            merge_key=generate_merge_key(
                workspace_id, vendor_name_en, invoice_number_en, primary_bs_date
            ),
        )

        flags = self.validation.validate(data)
        for flag in flags.raised():
            metrics.validation_flags_total.labels(flag=flag).inc()

        return InvoiceProcessingResult(
            success=True,
            data=data,
            flags=flags,
            can_approve=self.validation.can_approve(flags),
        )


class ReconciliationOutcome(BaseModel):
    """Result of reconciling a persisted invoice.

    Attributes:
        result: Pipeline output, with duplicate flag and merge candidate
        invoice_id: Invoice that was reconciled
        surviving_invoice_id: Invoice that holds the pages afterwards
        merged: Whether the invoice was folded into an existing one
        merge_result: Merge details when a merge was attempted
    """

    result: InvoiceProcessingResult
    invoice_id: str
    surviving_invoice_id: str
    merged: bool = False
    merge_result: MergeResult | None = None


class ApprovalResult(BaseModel):
    """Result of an approval attempt."""

    success: bool
    invoice_id: str
    status: str | None = None
    blocking_flags: list[str] = Field(default_factory=list)
    error: str | None = None


class ReconciliationService:
    """Runs the pipeline against persisted invoices."""

    def __init__(self, settings: Settings, repository: InvoiceRepository) -> None:
        """Initialize reconciliation service.

        Args:
            settings: Application settings
            repository: Invoice persistence
        """
        self.settings = settings
        self.repository = repository
        self.pipeline = ReconciliationPipeline(settings)
        self.deduplicator = Deduplicator(repository)

    def reconcile(
        self, invoice_id: str, extraction: RawExtraction, workspace_id: str
    ) -> ReconciliationOutcome:
        """Process a fresh extraction for a registered invoice.

        If another invoice already holds the merge key, this invoice's
        pages are merged into it and this record is deleted.

        Raises:
            InvoiceNotFoundError: If the invoice is not registered
            MergeConflictError: If the invoice holding the key vanished mid-run
                or a concurrent run held the database lock
        """
        return self._run(invoice_id, extraction, workspace_id)

    def revalidate(self, invoice_id: str, corrections: dict[str, Any]) -> ReconciliationOutcome:
        """Apply a reviewer's corrected fields and re-run validation.

        Corrections are layered onto the stored raw extraction; nothing is
        re-extracted. Flags are recomputed from scratch.

        Raises:
            InvoiceNotFoundError: If the invoice or its extraction is unknown
            MergeConflictError: If the invoice holding the key vanished mid-run
        """
        with self.repository.transaction() as session:
            invoice = self.repository.get_invoice(session, invoice_id)
            stored = self.repository.get_extraction(session, invoice_id)
            if invoice is None or stored is None:
                raise InvoiceNotFoundError(f"No extraction stored for invoice {invoice_id}")
            workspace_id = invoice.workspace_id

        extraction = RawExtraction.model_validate({**stored, **corrections})
        logger.info(f"Revalidating invoice {invoice_id} with corrections: {sorted(corrections)}")

        return self._run(invoice_id, extraction, workspace_id)

    def approve(self, invoice_id: str) -> ApprovalResult:
        """Mark an invoice approved if its stored flags allow it.

        Raises:
            InvoiceNotFoundError: If the invoice is unknown
        """
        with self.repository.transaction() as session:
            invoice = self.repository.get_invoice(session, invoice_id)
            if invoice is None:
                raise InvoiceNotFoundError(f"Invoice {invoice_id} not found")

            flags = self.repository.get_flags(session, invoice_id)
            if flags is None:
                return ApprovalResult(
                    success=False,
                    invoice_id=invoice_id,
                    status=invoice.status,
                    error="Invoice has not been reconciled",
                )

            blocking = self._blocking_flags(flags)
            if blocking:
                logger.info(f"Approval of invoice {invoice_id} refused: {', '.join(blocking)}")
                return ApprovalResult(
                    success=False,
                    invoice_id=invoice_id,
                    status=invoice.status,
                    blocking_flags=blocking,
                    error="Invoice has blocking validation flags",
                )

            self.repository.set_status(session, invoice_id, INVOICE_STATUS_APPROVED)

        logger.info(f"Invoice {invoice_id} approved")
        return ApprovalResult(success=True, invoice_id=invoice_id, status=INVOICE_STATUS_APPROVED)

    def _run(
        self, invoice_id: str, extraction: RawExtraction, workspace_id: str
    ) -> ReconciliationOutcome:
        result = self.pipeline.process(extraction, workspace_id)
        try:
            outcome = self._persist(invoice_id, extraction.model_dump(mode="json"), result)
        except MergeConflictError:
            metrics.invoice_merges_total.labels(outcome="conflict").inc()
            raise
        self._record(outcome)
        return outcome

    def _blocking_flags(self, flags: InvoiceValidationFlags) -> list[str]:
        blocking = [
            name
            for name in ("missing_fields", "math_mismatch", "date_conversion_failed")
            if getattr(flags, name)
        ]
        if self.settings.vat_inconsistent_blocks_approval and flags.vat_inconsistent:
            blocking.append("vat_inconsistent")
        # A stored duplicate flag means the merge into the key holder failed.
        if flags.duplicate_invoice:
            blocking.append("duplicate_invoice")
        return blocking

    def _persist(
        self, invoice_id: str, extraction_json: dict[str, Any], result: InvoiceProcessingResult
    ) -> ReconciliationOutcome:
        with _lock_conflicts_retryable(invoice_id):
            candidate, result = self._save_and_claim(invoice_id, extraction_json, result)

        if candidate is None:
            logger.info(
                f"Invoice {invoice_id} reconciled "
                f"(flags: {', '.join(result.flags.raised()) or 'none'})"
            )
            return ReconciliationOutcome(
                result=result, invoice_id=invoice_id, surviving_invoice_id=invoice_id
            )

        merge_result = self.deduplicator.execute_merge(candidate.existing_record_id, invoice_id)
        if merge_result.success:
            return ReconciliationOutcome(
                result=result,
                invoice_id=invoice_id,
                surviving_invoice_id=candidate.existing_record_id,
                merged=True,
                merge_result=merge_result,
            )

        # Merge rolled back: keep the record, tell the reviewer why it is blocked.
        flags = result.flags.model_copy(
            update={"notes": [*result.flags.notes, f"Merge failed: {merge_result.error}"]}
        )
        result = result.model_copy(update={"flags": flags, "can_approve": False})
        with _lock_conflicts_retryable(invoice_id), self.repository.transaction() as session:
            self.repository.save_flags(session, invoice_id, flags)

        return ReconciliationOutcome(
            result=result,
            invoice_id=invoice_id,
            surviving_invoice_id=invoice_id,
            merge_result=merge_result,
        )

    def _save_and_claim(
        self, invoice_id: str, extraction_json: dict[str, Any], result: InvoiceProcessingResult
    ) -> tuple[MergeCandidate | None, InvoiceProcessingResult]:
        merge_key = result.data.merge_key
        candidate = self.deduplicator.find_merge_candidate(merge_key, exclude_id=invoice_id)

        with self.repository.transaction() as session:
            invoice = self.repository.get_invoice(session, invoice_id)
            if invoice is None:
                raise InvoiceNotFoundError(f"Invoice {invoice_id} not found")

            self.repository.save_extraction(session, invoice_id, extraction_json)
            self.repository.apply_processed(session, invoice, result.data)

            claimed = candidate is not None or self.repository.claim_merge_key(
                session, invoice, merge_key
            )
            if not claimed:
                winner = self.repository.find_by_merge_key(session, str(merge_key), invoice_id)
                if winner is None:
                    raise MergeConflictError(
                        f"Merge key of invoice {invoice_id} was claimed and released concurrently"
                    )
                candidate = MergeCandidate(existing_record_id=winner.id, merge_key=str(merge_key))

            if candidate is not None:
                result = self._mark_duplicate(result, candidate)
            self.repository.save_flags(session, invoice_id, result.flags)

        return candidate, result

    def _mark_duplicate(
        self, result: InvoiceProcessingResult, candidate: MergeCandidate
    ) -> InvoiceProcessingResult:
        flags = result.flags.model_copy(
            update={
                "duplicate_invoice": True,
                "notes": [
                    *result.flags.notes,
                    f"Duplicate of invoice {candidate.existing_record_id} "
                    f"(merge key: {candidate.merge_key})",
                ],
            }
        )
        return result.model_copy(update={"flags": flags, "merge_candidate": candidate})

    def _record(self, outcome: ReconciliationOutcome) -> None:
        if outcome.merged:
            status = "merged"
        elif outcome.merge_result is not None:
            status = "failed"
        elif outcome.result.can_approve:
            status = "approvable"
        else:
            status = "needs_review"
        metrics.invoices_reconciled_total.labels(status=status).inc()

        if outcome.merge_result is not None:
            if outcome.merge_result.already_merged:
                merge_outcome = "already_merged"
            elif outcome.merge_result.success:
                merge_outcome = "merged"
            else:
                merge_outcome = "failed"
            metrics.invoice_merges_total.labels(outcome=merge_outcome).inc()
