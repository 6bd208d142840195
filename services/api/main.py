"""FastAPI application for invoice reconciliation.

Production-ready API with:
- Health and readiness checks for Kubernetes
- Invoice registration, reconciliation, revalidation and approval
- Duplicate-invoice merging
- BS/AD date conversion and ledger CSV export
- Optional background reconciliation via arq
- Prometheus metrics for monitoring

Based on FastAPI best practices:
https://fastapi.tiangolo.com/
"""

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings
from fastapi import FastAPI, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, Field
from sqlalchemy import text

from services.api import metrics
from services.calendar.service import (
    convert_from_ad,
    convert_from_bs,
    detect_calendar,
    format_bs_date_long,
    get_fiscal_year,
)
from services.export.service import LedgerExportService
from services.merge.service import (
    InvoiceNotFoundError,
    MergeConflictError,
    MergeResult,
)
from services.normalization.service import convert_nepali_digits
from services.pipeline import metrics as pipeline_metrics
from services.pipeline.service import (
    ApprovalResult,
    ReconciliationOutcome,
    ReconciliationPipeline,
    ReconciliationService,
)
from services.queue.tasks import JOB_TTL_SECONDS, JobResult
from services.shared.config import get_settings
from services.shared.schema import (
    InvoiceProcessingResult,
    InvoiceValidationFlags,
    LineItem,
    OtherCharge,
    RawExtraction,
)
from services.storage.repository import InvoiceRepository, create_database_engine, init_schema

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Invoice Reconciliation Engine",
    description="Bi-calendar (BS/AD) invoice reconciliation, deduplication and validation API",
    version=settings.service_version,
)

engine = create_database_engine(settings)
init_schema(engine)
repository = InvoiceRepository(engine)
reconciliation_service = ReconciliationService(settings, repository)
pipeline = ReconciliationPipeline(settings)
export_service = LedgerExportService(repository)

_arq_pool: ArqRedis | None = None


async def get_arq_pool() -> ArqRedis:
    """Get or create the arq Redis pool."""
    global _arq_pool
    if _arq_pool is None:
        _arq_pool = await create_pool(RedisSettings.from_dsn(settings.redis_url))
    return _arq_pool


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Record count and latency per route template."""
    if request.url.path == "/metrics":
        return await call_next(request)

    started = time.perf_counter()
    response = await call_next(request)
    route = getattr(request.scope.get("route"), "path", request.url.path)
    metrics.observe_request(
        request.method, route, response.status_code, time.perf_counter() - started
    )
    return response


# -------------------------------------------------------------------
# Request / response models
# -------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool


class PageRequest(BaseModel):
    storage_path: str
    mime_type: str | None = None


class CreateInvoiceRequest(BaseModel):
    """Register an invoice shell with its uploaded pages."""

    workspace_id: str = Field(min_length=1)
    pages: list[PageRequest] = Field(default_factory=list)


class PageResponse(BaseModel):
    id: str
    page_no: int
    storage_path: str


class InvoiceResponse(BaseModel):
    """Stored invoice with its flags and pages."""

    id: str
    workspace_id: str
    status: str
    merge_key: str | None = None
    vendor_name_en: str | None = None
    invoice_number_en: str | None = None
    bs_date: str | None = None
    ad_date: str | None = None
    fiscal_year: str | None = None
    grand_total: str | None = None
    line_items: list[LineItem] = Field(default_factory=list)
    other_charges: list[OtherCharge] = Field(default_factory=list)
    data: dict[str, Any] | None = None
    flags: InvoiceValidationFlags | None = None
    pages: list[PageResponse] = Field(default_factory=list)


class ReconcileRequest(BaseModel):
    workspace_id: str = Field(min_length=1)
    extraction: RawExtraction


class PreviewRequest(BaseModel):
    workspace_id: str = Field(min_length=1)
    extraction: RawExtraction


class MergeRequest(BaseModel):
    existing_id: str
    duplicate_id: str


class QueuedJobResponse(BaseModel):
    job_id: str
    invoice_id: str
    status: str


class DateConversionResponse(BaseModel):
    """A date in both calendars."""

    input: str
    calendar: Literal["BS", "AD"]
    bs_date: str
    ad_date: str
    bs_date_long: str
    fiscal_year: str


# -------------------------------------------------------------------
# Health and monitoring
# -------------------------------------------------------------------


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check() -> HealthResponse:
    """Health check endpoint for liveness checks.

    Returns:
        Health status information
    """
    return HealthResponse(
        status="healthy", version=settings.service_version, service=settings.service_name
    )


@app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
def readiness_check() -> ReadinessResponse:
    """Readiness check endpoint for Kubernetes readiness checks.

    Ready once the database answers a trivial query.
    """
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning(f"Readiness check failed: {e}")
        return ReadinessResponse(ready=False)
    return ReadinessResponse(ready=True)


@app.get("/metrics", tags=["Monitoring"])
def get_metrics() -> Response:
    """Prometheus metrics endpoint.

    Returns:
        Prometheus metrics in text format
    """
    metrics_data, content_type = metrics.get_metrics()
    return Response(content=metrics_data, media_type=content_type)


# -------------------------------------------------------------------
# Invoices
# -------------------------------------------------------------------


def _invoice_response(invoice_id: str) -> InvoiceResponse:
    with repository.transaction() as session:
        invoice = repository.get_invoice(session, invoice_id)
        if invoice is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")

        return InvoiceResponse(
            id=invoice.id,
            workspace_id=invoice.workspace_id,
            status=invoice.status,
            merge_key=invoice.merge_key,
            vendor_name_en=invoice.vendor_name_en,
            invoice_number_en=invoice.invoice_number_en,
            bs_date=invoice.bs_date,
            ad_date=invoice.ad_date,
            fiscal_year=invoice.fiscal_year,
            grand_total=str(invoice.grand_total) if invoice.grand_total is not None else None,
            line_items=[LineItem.model_validate(item) for item in invoice.line_items or []],
            other_charges=[
                OtherCharge.model_validate(charge) for charge in invoice.other_charges or []
            ],
            data=invoice.processed_json,
            flags=repository.get_flags(session, invoice_id),
            pages=[
                PageResponse(id=page.id, page_no=page.page_no, storage_path=page.storage_path)
                for page in repository.list_pages(session, invoice_id)
            ],
        )


@app.post(
    "/api/v1/invoices",
    response_model=InvoiceResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Invoices"],
)
def create_invoice(request: CreateInvoiceRequest) -> InvoiceResponse:
    """Register an invoice and its uploaded pages before extraction runs."""
    with repository.transaction() as session:
        invoice = repository.create_invoice(
            session, request.workspace_id, [page.storage_path for page in request.pages]
        )
        invoice_id = invoice.id
    return _invoice_response(invoice_id)


@app.get("/api/v1/invoices/{invoice_id}", response_model=InvoiceResponse, tags=["Invoices"])
def get_invoice(invoice_id: str) -> InvoiceResponse:
    return _invoice_response(invoice_id)


@app.post(
    "/api/v1/invoices/{invoice_id}/reconcile",
    response_model=ReconciliationOutcome | QueuedJobResponse,
    tags=["Invoices"],
)
async def reconcile_invoice(
    invoice_id: str,
    request: ReconcileRequest,
    background: bool = Query(False, description="Queue the reconciliation as an arq job"),
) -> ReconciliationOutcome | QueuedJobResponse:
    """Run the reconciliation pipeline on a fresh extraction.

    ## Behaviour

    - Dates are normalized into both calendars and the merge key is built
    - If another invoice already holds the merge key, this invoice's pages
      are merged into it and this record is deleted (`merged: true`)
    - Flags and notes are always returned

    ## Error Handling

    - Returns 404 if the invoice is not registered
    - Returns 409 on a merge-key race (safe to retry)
    - Returns 503 for `background=true` when the queue is disabled
    """
    if background:
        if not settings.queue_enabled:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Background processing is not enabled",
            )

        job_id = str(uuid.uuid4())
        pool = await get_arq_pool()
        pending = JobResult(
            job_id=job_id,
            status="pending",
            invoice_id=invoice_id,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        await pool.set(f"job:{job_id}", pending.model_dump_json(), ex=JOB_TTL_SECONDS)
        await pool.enqueue_job(
            "reconcile_invoice",
            job_id=job_id,
            invoice_id=invoice_id,
            workspace_id=request.workspace_id,
            extraction=request.extraction.model_dump(mode="json"),
        )
        metrics.reconcile_jobs_enqueued_total.inc()
        logger.info(f"Queued reconcile job {job_id} for invoice {invoice_id}")
        return QueuedJobResponse(job_id=job_id, invoice_id=invoice_id, status="pending")

    try:
        return reconciliation_service.reconcile(
            invoice_id, request.extraction, request.workspace_id
        )
    except InvoiceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except MergeConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e


@app.post(
    "/api/v1/invoices/{invoice_id}/revalidate",
    response_model=ReconciliationOutcome,
    tags=["Invoices"],
)
def revalidate_invoice(invoice_id: str, corrections: dict[str, Any]) -> ReconciliationOutcome:
    """Apply a reviewer's corrected fields and re-run validation (no re-extraction)."""
    unknown = sorted(set(corrections) - set(RawExtraction.model_fields))
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown fields: {', '.join(unknown)}",
        )

    try:
        return reconciliation_service.revalidate(invoice_id, corrections)
    except InvoiceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except MergeConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e


@app.post(
    "/api/v1/invoices/{invoice_id}/approve",
    response_model=ApprovalResult,
    tags=["Invoices"],
)
def approve_invoice(invoice_id: str) -> ApprovalResult:
    """Approve an invoice. Returns 409 with the blocking flags if approval is refused."""
    try:
        result = reconciliation_service.approve(invoice_id)
    except InvoiceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e

    if not result.success:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.model_dump())
    return result


@app.post("/api/v1/invoices/merge", response_model=MergeResult, tags=["Invoices"])
def merge_invoices(request: MergeRequest) -> MergeResult:
    """Fold one invoice's pages into another and delete it."""
    try:
        result = reconciliation_service.deduplicator.execute_merge(
            request.existing_id, request.duplicate_id
        )
    except MergeConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    if not result.success:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.error)
    return result


@app.post(
    "/api/v1/extractions/preview",
    response_model=InvoiceProcessingResult,
    tags=["Invoices"],
)
def preview_extraction(request: PreviewRequest) -> InvoiceProcessingResult:
    """Run the pipeline without touching stored invoices."""
    return pipeline.process(request.extraction, request.workspace_id)


# -------------------------------------------------------------------
# Jobs
# -------------------------------------------------------------------


@app.get("/api/v1/jobs/{job_id}", response_model=JobResult, tags=["Jobs"])
async def get_job_status(job_id: str) -> JobResult:
    """Status of a background reconciliation job."""
    if not settings.queue_enabled:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Background processing is not enabled",
        )

    pool = await get_arq_pool()
    raw = await pool.get(f"job:{job_id}")
    if raw is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return JobResult.model_validate_json(raw)


# -------------------------------------------------------------------
# Calendar and export
# -------------------------------------------------------------------


@app.get("/api/v1/calendar/convert", response_model=DateConversionResponse, tags=["Calendar"])
def convert_date(
    date: str = Query(..., description="Date as YYYY/MM/DD, YYYY-MM-DD or YYYY.MM.DD"),
    calendar: Literal["BS", "AD"] | None = Query(
        None, description="Calendar of the input; detected when omitted"
    ),
) -> DateConversionResponse:
    """Convert a date between Bikram Sambat and Gregorian."""
    value = convert_nepali_digits(date) or ""
    source = calendar or detect_calendar(value, settings.bs_detection_threshold)
    converted = None
    if source == "BS":
        converted = convert_from_bs(value)
    elif source == "AD":
        converted = convert_from_ad(value)

    pipeline_metrics.date_conversions_total.labels(
        calendar=source or "unknown",
        status="success" if converted else "failed",
    ).inc()

    if source is None or converted is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Cannot convert date: {date}",
        )

    return DateConversionResponse(
        input=date,
        calendar=source,
        bs_date=converted.bs_formatted,
        ad_date=converted.ad_formatted,
        bs_date_long=format_bs_date_long(converted.bs),
        fiscal_year=get_fiscal_year(converted.bs),
    )


@app.get("/api/v1/workspaces/{workspace_id}/export", tags=["Export"])
def export_workspace(
    workspace_id: str,
    force: bool = Query(False, description="Export even if flagged invoices are pending review"),
    fiscal_year: str | None = Query(None, description='Fiscal year, e.g. "2082/83"'),
) -> Response:
    """Ledger CSV of approved invoices, sorted by BS date.

    - Returns 409 if flagged invoices are pending review and force is not set
    - Returns 404 if there is nothing approved to export
    """
    result = export_service.export_workspace(workspace_id, force=force, fiscal_year=fiscal_year)
    if not result.success:
        if result.blocking_invoice_ids:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"error": result.error, "invoice_ids": result.blocking_invoice_ids},
            )
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.error)

    filename = f"ledger-{workspace_id}.csv"
    return Response(
        content=result.csv,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
