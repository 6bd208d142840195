"""Unit tests for async queue functionality.

Tests task definitions, merge-conflict retries and queue configuration.
"""

import json
import warnings
from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from services.merge.service import InvoiceNotFoundError, MergeConflictError
from services.pipeline.service import ReconciliationOutcome, ReconciliationService
from services.queue.tasks import (
    JobResult,
    WorkerSettings,
    reconcile_invoice,
    reconcile_with_retry,
    shutdown,
    startup,
)
from services.queue.worker import configure_worker
from services.shared.config import Settings
from services.shared.schema import (
    InvoiceProcessingResult,
    InvoiceValidationFlags,
    ProcessedInvoiceData,
    RawExtraction,
)


@pytest.fixture
def settings() -> Settings:
    """Create test settings with queue enabled."""
    return Settings(
        queue_enabled=True,
        redis_url="redis://localhost:6379/0",
        queue_max_jobs=5,
        queue_job_timeout=60,
        merge_conflict_retries=3,
        database_url="sqlite:///:memory:",
    )


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Create mock Redis connection."""
    mock = AsyncMock()
    mock.set = AsyncMock()
    mock.get = AsyncMock()
    return mock


@pytest.fixture
def outcome() -> ReconciliationOutcome:
    """Reconciliation outcome with one soft flag."""
    flags = InvoiceValidationFlags(
        pan_invalid=True, notes=['Invalid PAN format: "123" (expected 9 digits, got 3)']
    )
    return ReconciliationOutcome(
        result=InvoiceProcessingResult(
            success=True, data=ProcessedInvoiceData(), flags=flags, can_approve=True
        ),
        invoice_id="inv-1",
        surviving_invoice_id="inv-1",
    )


@pytest.fixture
def extraction() -> dict[str, Any]:
    return {
        "vendor_name_en": "Himal Traders",
        "invoice_number_en": "INV-1",
        "transaction_date_raw": "2082/09/07",
        "grand_total": "1130",
    }


def _ctx(settings: Settings, redis: AsyncMock, service: MagicMock) -> dict[str, Any]:
    return {"redis": redis, "settings": settings, "reconciliation_service": service}


class TestJobResult:
    """Test JobResult model."""

    def test_job_result_pending(self) -> None:
        """Should create pending job result."""
        result = JobResult(
            job_id="job-123",
            status="pending",
            invoice_id="inv-456",
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        assert result.status == "pending"
        assert result.surviving_invoice_id is None
        assert result.attempts == 0

    def test_job_result_failed(self) -> None:
        """Should create failed job result."""
        result = JobResult(
            job_id="job-123",
            status="failed",
            invoice_id="inv-456",
            error="Invoice inv-456 not found",
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        assert result.status == "failed"
        assert "not found" in str(result.error)


class TestReconcileWithRetry:
    """Test merge-conflict retries."""

    def test_first_attempt_succeeds(
        self, settings: Settings, outcome: ReconciliationOutcome
    ) -> None:
        service = MagicMock()
        service.reconcile.return_value = outcome

        result, attempts = reconcile_with_retry(
            service, settings, "inv-1", RawExtraction(), "ws-1"
        )

        assert result is outcome
        assert attempts == 1

    def test_conflict_is_retried(self, settings: Settings, outcome: ReconciliationOutcome) -> None:
        service = MagicMock()
        service.reconcile.side_effect = [MergeConflictError("race"), outcome]

        result, attempts = reconcile_with_retry(
            service, settings, "inv-1", RawExtraction(), "ws-1"
        )

        assert result is outcome
        assert attempts == 2

    def test_retries_exhausted(self, settings: Settings) -> None:
        service = MagicMock()
        service.reconcile.side_effect = MergeConflictError("race")

        with pytest.raises(MergeConflictError):
            reconcile_with_retry(service, settings, "inv-1", RawExtraction(), "ws-1")

        assert service.reconcile.call_count == 3

    def test_not_found_is_not_retried(self, settings: Settings) -> None:
        service = MagicMock()
        service.reconcile.side_effect = InvoiceNotFoundError("Invoice inv-1 not found")

        with pytest.raises(InvoiceNotFoundError):
            reconcile_with_retry(service, settings, "inv-1", RawExtraction(), "ws-1")

        assert service.reconcile.call_count == 1

    def test_backoff_raises_no_deprecation_warnings(
        self, settings: Settings, outcome: ReconciliationOutcome
    ) -> None:
        service = MagicMock()
        service.reconcile.side_effect = [MergeConflictError("race"), outcome]

        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            _, attempts = reconcile_with_retry(
                service, settings, "inv-1", RawExtraction(), "ws-1"
            )

        assert attempts == 2


class TestReconcileInvoiceTask:
    """Test reconcile_invoice task."""

    @pytest.mark.asyncio
    async def test_reconcile_success(
        self,
        settings: Settings,
        mock_redis: AsyncMock,
        outcome: ReconciliationOutcome,
        extraction: dict[str, Any],
    ) -> None:
        """Should reconcile and store the completed job."""
        service = MagicMock()
        service.reconcile.return_value = outcome

        result = await reconcile_invoice(
            ctx=_ctx(settings, mock_redis, service),
            job_id="job-123",
            invoice_id="inv-1",
            workspace_id="ws-1",
            extraction=extraction,
        )

        assert result["status"] == "completed"
        assert result["attempts"] == 1
        assert result["surviving_invoice_id"] == "inv-1"
        assert result["can_approve"] is True
        assert result["flags"] == ["pan_invalid"]
        assert result["notes"][0].startswith("Invalid PAN format")

        raw = service.reconcile.call_args.args[1]
        assert isinstance(raw, RawExtraction)
        assert str(raw.grand_total) == "1130"

        assert mock_redis.set.call_count == 2
        key, payload = mock_redis.set.call_args.args
        assert key == "job:job-123"
        assert json.loads(payload)["status"] == "completed"
        assert mock_redis.set.call_args.kwargs["ex"] == 86400

    @pytest.mark.asyncio
    async def test_reconcile_marks_processing_first(
        self,
        settings: Settings,
        mock_redis: AsyncMock,
        outcome: ReconciliationOutcome,
        extraction: dict[str, Any],
    ) -> None:
        service = MagicMock()
        service.reconcile.return_value = outcome

        await reconcile_invoice(
            _ctx(settings, mock_redis, service), "job-123", "inv-1", "ws-1", extraction
        )

        first_payload = mock_redis.set.call_args_list[0].args[1]
        assert json.loads(first_payload)["status"] == "processing"

    @pytest.mark.asyncio
    async def test_reconcile_conflict_exhausted(
        self, settings: Settings, mock_redis: AsyncMock, extraction: dict[str, Any]
    ) -> None:
        """Should fail the job after all merge-conflict retries."""
        service = MagicMock()
        service.reconcile.side_effect = MergeConflictError("Merge key claimed concurrently")

        result = await reconcile_invoice(
            _ctx(settings, mock_redis, service), "job-123", "inv-1", "ws-1", extraction
        )

        assert result["status"] == "failed"
        assert "claimed concurrently" in str(result["error"])
        assert service.reconcile.call_count == 3

    @pytest.mark.asyncio
    async def test_reconcile_unexpected_error(
        self, settings: Settings, mock_redis: AsyncMock, extraction: dict[str, Any]
    ) -> None:
        """Should record unexpected errors as failed jobs."""
        service = MagicMock()
        service.reconcile.side_effect = RuntimeError("database is locked")

        result = await reconcile_invoice(
            _ctx(settings, mock_redis, service), "job-123", "inv-1", "ws-1", extraction
        )

        assert result["status"] == "failed"
        assert result["error"] == "database is locked"
        assert result["completed_at"] is not None


class TestWorkerLifecycle:
    """Test worker startup and shutdown hooks."""

    @pytest.mark.asyncio
    async def test_startup_and_shutdown(self, settings: Settings) -> None:
        ctx: dict[str, Any] = {}

        with patch("services.queue.tasks.get_settings", return_value=settings):
            await startup(ctx)

        assert isinstance(ctx["reconciliation_service"], ReconciliationService)
        assert ctx["settings"] is settings

        with patch.object(ctx["engine"], "dispose") as mock_dispose:
            await shutdown(ctx)
            mock_dispose.assert_called_once()


class TestWorkerSettings:
    """Test WorkerSettings configuration."""

    def test_worker_functions_registered(self) -> None:
        """Should have reconcile_invoice task registered."""
        assert reconcile_invoice in WorkerSettings.functions

    def test_get_redis_settings(self, settings: Settings) -> None:
        """Should parse Redis URL correctly."""
        with patch("services.queue.tasks.get_settings", return_value=settings):
            redis_settings = WorkerSettings.get_redis_settings()
            assert redis_settings.host == "localhost"
            assert redis_settings.port == 6379
            assert redis_settings.database == 0

    def test_configure_worker_applies_queue_limits(self, settings: Settings) -> None:
        with (
            patch.object(WorkerSettings, "redis_settings", None),
            patch.object(WorkerSettings, "max_jobs", 10),
            patch.object(WorkerSettings, "job_timeout", 300),
            patch("services.queue.tasks.get_settings", return_value=settings),
        ):
            configured = configure_worker(settings)

            assert configured is WorkerSettings
            assert configured.max_jobs == 5
            assert configured.job_timeout == 60
            assert configured.redis_settings.port == 6379


class TestQueueSettings:
    """Test queue configuration via Settings."""

    def test_default_queue_disabled(self) -> None:
        """Queue should be disabled by default."""
        settings = Settings(_env_file=None)
        assert settings.queue_enabled is False
        assert settings.merge_conflict_retries == 3

    def test_queue_settings_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Should read queue settings from environment."""
        monkeypatch.setenv("APP_QUEUE_ENABLED", "true")
        monkeypatch.setenv("APP_REDIS_URL", "redis://redis-server:6380/1")
        monkeypatch.setenv("APP_MERGE_CONFLICT_RETRIES", "5")

        settings = Settings(_env_file=None)
        assert settings.queue_enabled is True
        assert settings.redis_url == "redis://redis-server:6380/1"
        assert settings.merge_conflict_retries == 5
