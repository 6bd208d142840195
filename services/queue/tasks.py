"""Background reconciliation jobs for the arq worker.

The API stores a pending JobResult under ``job:{id}`` and enqueues
reconcile_invoice; the worker overwrites that record as the job moves to
processing and then to completed or failed. Merge-key races
(MergeConflictError) are retried with tenacity before the job fails.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from arq.connections import RedisSettings
from pydantic import BaseModel
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from services.merge.service import MergeConflictError, ReconciliationError
from services.pipeline.service import ReconciliationOutcome, ReconciliationService
from services.shared.config import Settings, get_settings
from services.shared.schema import RawExtraction
from services.storage.repository import InvoiceRepository, create_database_engine, init_schema

logger = logging.getLogger(__name__)

JOB_TTL_SECONDS = 86400  # 24h


class JobResult(BaseModel):
    """Stored state of one reconcile job.

    ``status`` moves pending -> processing -> completed | failed.
    ``surviving_invoice_id`` differs from ``invoice_id`` when the upload
    was folded into an existing invoice.
    """

    job_id: str
    status: str
    invoice_id: str
    surviving_invoice_id: str | None = None
    merged: bool = False
    can_approve: bool | None = None
    flags: list[str] = []
    notes: list[str] = []
    attempts: int = 0
    error: str | None = None
    created_at: str
    completed_at: str | None = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _store(redis: Any, job: JobResult) -> None:
    await redis.set(f"job:{job.job_id}", job.model_dump_json(), ex=JOB_TTL_SECONDS)


def reconcile_with_retry(
    service: ReconciliationService,
    settings: Settings,
    invoice_id: str,
    extraction: RawExtraction,
    workspace_id: str,
) -> tuple[ReconciliationOutcome, int]:
    """Run reconciliation, retrying merge-key races.

    Returns:
        Tuple of (outcome, attempts made)

    Raises:
        MergeConflictError: After all retry attempts are exhausted
    """
    retrying = Retrying(
        retry=retry_if_exception_type(MergeConflictError),
        wait=wait_exponential(multiplier=0.1, max=5) + wait_random(0, 0.1),
        stop=stop_after_attempt(settings.merge_conflict_retries),
        reraise=True,
    )
    attempts = 0

    def attempt() -> ReconciliationOutcome:
        nonlocal attempts
        attempts += 1
        return service.reconcile(invoice_id, extraction, workspace_id)

    return retrying(attempt), attempts


async def reconcile_invoice(
    ctx: dict[str, Any],
    job_id: str,
    invoice_id: str,
    workspace_id: str,
    extraction: dict[str, Any],
) -> dict[str, Any]:
    """arq task: reconcile ``extraction`` (RawExtraction fields) for ``invoice_id``."""
    settings: Settings = ctx.get("settings") or get_settings()
    service: ReconciliationService = ctx["reconciliation_service"]
    redis = ctx["redis"]

    result = JobResult(job_id=job_id, status="processing", invoice_id=invoice_id, created_at=_now())
    await _store(redis, result)
    logger.info(f"Reconcile job {job_id} started for invoice {invoice_id}")

    try:
        raw = RawExtraction.model_validate(extraction)
        outcome, attempts = reconcile_with_retry(service, settings, invoice_id, raw, workspace_id)

        result.status = "completed"
        result.attempts = attempts
        result.surviving_invoice_id = outcome.surviving_invoice_id
        result.merged = outcome.merged
        result.can_approve = outcome.result.can_approve
        result.flags = outcome.result.flags.raised()
        result.notes = outcome.result.flags.notes

    except Exception as e:
        if isinstance(e, ReconciliationError):
            logger.warning(f"Reconcile job {job_id} gave up on invoice {invoice_id}: {e}")
        else:
            logger.exception(f"Reconcile job {job_id} crashed on invoice {invoice_id}")
        result.status = "failed"
        result.error = str(e)

    result.completed_at = _now()
    await _store(redis, result)
    logger.info(f"Reconcile job {job_id} finished: {result.status}")

    return result.model_dump()


async def startup(ctx: dict[str, Any]) -> None:
    """Open the database once; every job shares the engine and service."""
    settings = get_settings()
    engine = create_database_engine(settings)
    init_schema(engine)

    ctx["settings"] = settings
    ctx["engine"] = engine
    ctx["reconciliation_service"] = ReconciliationService(settings, InvoiceRepository(engine))
    logger.info(f"Reconciliation worker ready (retries={settings.merge_conflict_retries})")


async def shutdown(ctx: dict[str, Any]) -> None:
    engine = ctx.get("engine")
    if engine is not None:
        engine.dispose()
        logger.info("Database engine disposed")


class WorkerSettings:
    """Worker class for ``arq services.queue.tasks.WorkerSettings``.

    Queue limits are filled in by services.queue.worker.configure_worker.
    """

    functions = [reconcile_invoice]
    on_startup = startup
    on_shutdown = shutdown

    redis_settings: RedisSettings | None = None
    max_jobs = 10
    job_timeout = 300

    @classmethod
    def get_redis_settings(cls) -> RedisSettings:
        return RedisSettings.from_dsn(get_settings().redis_url)
