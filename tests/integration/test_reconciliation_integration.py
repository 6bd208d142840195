"""Integration tests for reconciliation across services.

The concurrency test uses a SQLite file unless APP_INTEGRATION_DATABASE_URL
points at another database (e.g. PostgreSQL).
Use pytest -v -m integration to run only integration tests.
"""

import os
from collections.abc import Generator
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from pathlib import Path

import pytest

from services.calendar.data import AD_EPOCH, BS_MONTH_DAYS
from services.calendar.service import ADDate, BSDate, ad_to_bs, bs_to_ad
from services.export.service import LedgerExportService
from services.pipeline.service import ReconciliationOutcome, ReconciliationService
from services.queue.tasks import reconcile_with_retry
from services.shared.config import Settings
from services.shared.schema import RawExtraction
from services.storage.models import Base
from services.storage.repository import InvoiceRepository, create_database_engine, init_schema

pytestmark = pytest.mark.integration


def _register(repository: InvoiceRepository, workspace_id: str, pages: list[str]) -> str:
    with repository.transaction() as session:
        return repository.create_invoice(session, workspace_id, pages).id


class TestCalendarRoundTrip:
    """Walk every day of the conversion table."""

    def test_every_bs_day_round_trips(self) -> None:
        expected = AD_EPOCH
        for year, months in BS_MONTH_DAYS.items():
            for month, days in enumerate(months, start=1):
                for day in range(1, days + 1):
                    bs = BSDate(year, month, day)
                    ad = bs_to_ad(bs)

                    assert ad == ADDate.from_date(expected), bs
                    assert ad_to_bs(ad) == bs
                    expected += timedelta(days=1)

    def test_every_ad_day_round_trips(self) -> None:
        total_days = sum(sum(months) for months in BS_MONTH_DAYS.values())
        for offset in range(total_days):
            ad = ADDate.from_date(AD_EPOCH + timedelta(days=offset))
            bs = ad_to_bs(ad)

            assert bs is not None, ad
            assert bs_to_ad(bs) == ad

        assert ad_to_bs(ADDate.from_date(AD_EPOCH + timedelta(days=total_days))) is None
        assert ad_to_bs(ADDate.from_date(AD_EPOCH - timedelta(days=1))) is None


class TestFileDatabase:
    """End-to-end reconciliation on a file-backed SQLite database."""

    @pytest.fixture
    def settings(self, tmp_path: Path) -> Settings:
        return Settings(database_url=f"sqlite:///{tmp_path / 'invoices.db'}")

    @pytest.fixture
    def repository(self, settings: Settings) -> Generator[InvoiceRepository, None, None]:
        engine = create_database_engine(settings)
        init_schema(engine)
        yield InvoiceRepository(engine)
        engine.dispose()

    def test_three_uploads_one_invoice(
        self, settings: Settings, repository: InvoiceRepository
    ) -> None:
        """Three photographs of one invoice, read differently each time, end as one record."""
        service = ReconciliationService(settings, repository)
        readings = [
            RawExtraction(
                vendor_name_en="Himal Traders Pvt. Ltd.",
                invoice_number_en="INV-0042",
                transaction_date_raw="2082/09/07",
                taxable_amount="1000",
                vat_amount="130",
                grand_total="1130",
            ),
            RawExtraction(
                vendor_name_en="HIMAL TRADERS PRIVATE LIMITED",
                invoice_number_raw="INV-००४२",
                transaction_date_raw="२०८२/९/७",
                grand_total="रु. १,१३०",
            ),
            RawExtraction(
                vendor_name_en="Himal Traders",
                invoice_number_en="Inv-0042",
                transaction_date_raw="2025-12-22",
                transaction_date_calendar="AD",
                grand_total="1130",
            ),
        ]
        invoice_ids = [
            _register(repository, "ws-1", [f"upload-{i}-a.jpg", f"upload-{i}-b.jpg"])
            for i in range(len(readings))
        ]

        outcomes = [
            service.reconcile(invoice_id, reading, "ws-1")
            for invoice_id, reading in zip(invoice_ids, readings)
        ]

        assert [outcome.merged for outcome in outcomes] == [False, True, True]
        assert {outcome.surviving_invoice_id for outcome in outcomes} == {invoice_ids[0]}
        with repository.transaction() as session:
            survivors = repository.list_invoices(session, "ws-1")
            assert [invoice.id for invoice in survivors] == [invoice_ids[0]]
            pages = repository.list_pages(session, invoice_ids[0])
            assert [page.page_no for page in pages] == [1, 2, 3, 4, 5, 6]
            assert [page.storage_path for page in pages[2:4]] == [
                "upload-1-a.jpg",
                "upload-1-b.jpg",
            ]

        approval = service.approve(invoice_ids[0])
        assert approval.success

        export = LedgerExportService(repository).export_workspace("ws-1")
        assert export.success
        assert export.csv is not None
        assert len(export.csv.splitlines()) == 2


class TestConcurrentReconciliation:
    """Simultaneous runs with one merge key leave exactly one invoice.

    Runs against APP_INTEGRATION_DATABASE_URL when set, else a SQLite file.
    """

    @pytest.fixture
    def settings(self, tmp_path: Path) -> Settings:
        url = os.getenv("APP_INTEGRATION_DATABASE_URL") or f"sqlite:///{tmp_path / 'race.db'}"
        return Settings(database_url=url, merge_conflict_retries=5)

    @pytest.fixture
    def repository(self, settings: Settings) -> Generator[InvoiceRepository, None, None]:
        engine = create_database_engine(settings)
        Base.metadata.drop_all(engine)
        init_schema(engine)
        yield InvoiceRepository(engine)
        Base.metadata.drop_all(engine)
        engine.dispose()

    def test_one_survivor(self, settings: Settings, repository: InvoiceRepository) -> None:
        service = ReconciliationService(settings, repository)
        extraction = RawExtraction(
            vendor_name_en="Himal Traders",
            invoice_number_en="INV-7",
            transaction_date_raw="2082/09/07",
            grand_total="1130",
        )
        invoice_ids = [_register(repository, "ws-race", [f"page-{i}.jpg"]) for i in range(6)]

        def run(invoice_id: str) -> ReconciliationOutcome:
            outcome, _ = reconcile_with_retry(service, settings, invoice_id, extraction, "ws-race")
            return outcome

        with ThreadPoolExecutor(max_workers=len(invoice_ids)) as executor:
            outcomes = list(executor.map(run, invoice_ids))

        survivors = {outcome.surviving_invoice_id for outcome in outcomes}
        assert len(survivors) == 1
        with repository.transaction() as session:
            remaining = repository.list_invoices(session, "ws-race")
            assert [invoice.id for invoice in remaining] == list(survivors)
            assert repository.max_page_no(session, remaining[0].id) == len(invoice_ids)
