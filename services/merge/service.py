"""Merge-key generation and duplicate-invoice merging.

A merge key identifies one logical invoice inside a workspace:
    {workspace_id}|{vendor_normalized}|{invoice_number_normalized}|{bs_date}

Two uploads that produce the same key are pages of the same invoice. The
Deduplicator folds the later upload into the earlier one: pages move over
with renumbered page numbers, then the duplicate record is deleted.
"""

import logging

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from services.calendar.service import format_bs_date, parse_bs_date
from services.normalization.service import (
    convert_nepali_digits,
    normalize_invoice_number,
    normalize_string,
    normalize_vendor_name,
)
from services.shared.schema import MergeCandidate
from services.storage.repository import InvoiceRepository, is_lock_conflict

logger = logging.getLogger(__name__)

MERGE_KEY_SEPARATOR = "|"


def _key_component(value: str) -> str:
    """Percent-escape the separator so a component never splits the key."""
    return value.replace("%", "%25").replace(MERGE_KEY_SEPARATOR, "%7C")


class ReconciliationError(Exception):
    """Base error for reconciliation failures the caller must handle."""

    retryable = False


class InvoiceNotFoundError(ReconciliationError):
    """The referenced invoice does not exist."""


class MergeConflictError(ReconciliationError):
    """A concurrent run changed the records taking part in a merge.

    Safe to retry: the next attempt re-reads the current state.
    """

    retryable = True


class MergeResult(BaseModel):
    """Result of a merge operation.

    Attributes:
        success: Whether the merge completed (or had already completed)
        existing_id: Surviving invoice
        duplicate_id: Invoice folded into the survivor
        pages_moved: Number of pages reassigned
        already_merged: The duplicate was already gone, nothing to do
        error: Error message if the merge failed and was rolled back
    """

    success: bool
    existing_id: str
    duplicate_id: str
    pages_moved: int = 0
    already_merged: bool = False
    error: str | None = None


def generate_merge_key(
    workspace_id: str | None,
    vendor_name: str | None,
    invoice_number: str | None,
    primary_bs_date: str | None,
) -> str | None:
    """Build the canonical merge key.

    A "|" or "%" inside the workspace id or vendor name is percent-escaped,
    so every key has exactly four components.

    Returns:
        The key, or None unless all four components normalize to
        non-empty values and the date is a well-formed BS date
    """
    workspace = normalize_string(workspace_id)
    vendor = normalize_vendor_name(vendor_name)
    invoice = normalize_invoice_number(invoice_number)
    bs = parse_bs_date(convert_nepali_digits(primary_bs_date))

    if not workspace or not vendor or not invoice or bs is None:
        return None

    components = (_key_component(workspace), _key_component(vendor), invoice, format_bs_date(bs))
    return MERGE_KEY_SEPARATOR.join(components)


class Deduplicator:
    """Finds and merges invoices that share a merge key."""

    def __init__(self, repository: InvoiceRepository) -> None:
        """Initialize deduplicator.

        Args:
            repository: Invoice persistence
        """
        self.repository = repository

    def find_merge_candidate(
        self, merge_key: str | None, exclude_id: str | None = None
    ) -> MergeCandidate | None:
        """Look up another persisted invoice with exactly this merge key."""
        if not merge_key:
            return None

        with self.repository.transaction() as session:
            existing = self.repository.find_by_merge_key(session, merge_key, exclude_id)
            if existing is None:
                return None
            return MergeCandidate(existing_record_id=existing.id, merge_key=merge_key)

    def execute_merge(self, existing_id: str, duplicate_id: str) -> MergeResult:
        """Fold the duplicate invoice into the existing one.

        In one transaction: lock both invoice rows in id order, move the
        duplicate's pages to the existing invoice numbered after its last
        page in their original order, then delete the duplicate with its flags and
        extraction. The existing invoice's fields are left as they are.

        Raises:
            MergeConflictError: If the existing invoice disappeared, the
                duplicate vanished while its pages were being moved, or the
                database reported a lock conflict
        """
        if existing_id == duplicate_id:
            return MergeResult(
                success=False,
                existing_id=existing_id,
                duplicate_id=duplicate_id,
                error="Cannot merge an invoice into itself",
            )

        try:
            with self.repository.transaction() as session:
                locked = {
                    invoice_id: self.repository.get_invoice(session, invoice_id, for_update=True)
                    for invoice_id in sorted((existing_id, duplicate_id))
                }
                if locked[duplicate_id] is None:
                    logger.info(f"Invoice {duplicate_id} already merged, nothing to do")
                    return MergeResult(
                        success=True,
                        existing_id=existing_id,
                        duplicate_id=duplicate_id,
                        already_merged=True,
                    )

                if locked[existing_id] is None:
                    raise MergeConflictError(
                        f"Invoice {existing_id} disappeared before {duplicate_id} could be merged"
                    )

                next_page_no = self.repository.max_page_no(session, existing_id) + 1
                pages = self.repository.list_pages(session, duplicate_id)
                for offset, page in enumerate(pages):
                    self.repository.reassign_page(
                        session, page.id, existing_id, next_page_no + offset
                    )

                if not self.repository.delete_invoice(session, duplicate_id):
                    raise MergeConflictError(
                        f"Invoice {duplicate_id} was removed while its pages were being moved"
                    )

        except SQLAlchemyError as e:
            if is_lock_conflict(e):
                raise MergeConflictError(
                    f"Merge of {duplicate_id} into {existing_id} hit a locked row: {e}"
                ) from e
            logger.error(f"Merge of {duplicate_id} into {existing_id} rolled back: {e}")
            return MergeResult(
                success=False,
                existing_id=existing_id,
                duplicate_id=duplicate_id,
                error=str(e),
            )

        logger.info(f"Merged invoice {duplicate_id} into {existing_id}: {len(pages)} page(s) moved")
        return MergeResult(
            success=True,
            existing_id=existing_id,
            duplicate_id=duplicate_id,
            pages_moved=len(pages),
        )
