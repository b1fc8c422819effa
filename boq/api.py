"""FastAPI app: matching jobs, batch uploads, progress streams and downloads.

The HTTP layer is a thin adapter over ``BatchProcessor``. The processor is
built in the lifespan and kept on ``app.state``.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator

import httpx
from fastapi import APIRouter, Depends, FastAPI, File, Form, Query, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, Field

from .config import Settings, StorageBackend, get_settings
from .db import get_session_factory
from .errors import (
    JobNotFound,
    JobNotReady,
    MatchingError,
    NoReferenceData,
    PersistenceError,
    ProviderUnavailable,
    ValidationError,
)
from .export import ExportFormat
from .logging_config import setup_logging
from .parsers import load_price_list_file, parse_price_list
from .pipelines.batch import BatchProcessor
from .repository import InMemoryRepository, Repository, SqlRepository
from .schemas import BatchJob, JobStatus, MatchedItem, MatchingJob, ProgressEvent

logger = logging.getLogger(__name__)


# Pydantic response models
class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    running_jobs: int
    queued_jobs: int


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: str | None = None


class SubmitJobResponse(BaseModel):
    """Job accepted for processing."""
    job_id: str
    status: JobStatus
    item_count: int
    message: str


class JobSummaryDTO(BaseModel):
    """Job listing entry (no logs or results)."""
    id: str
    status: JobStatus
    model: str
    progress: int
    file_name: str | None = None
    project_id: str | None = None
    batch_id: str | None = None
    item_count: int
    error: str | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job: MatchingJob) -> "JobSummaryDTO":
        return cls(
            id=job.id,
            status=job.status,
            model=job.model.value,
            progress=job.progress,
            file_name=job.file_name,
            project_id=job.project_id,
            batch_id=job.batch_id,
            item_count=job.item_count,
            error=job.error,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class JobDetailDTO(JobSummaryDTO):
    """Full job state including logs and, once completed, results."""
    logs: list[str] = Field(default_factory=list)
    results: list[MatchedItem] | None = None
    average_confidence: float | None = None
    duration_seconds: float | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_job(cls, job: MatchingJob) -> "JobDetailDTO":
        summary = JobSummaryDTO.from_job(job).model_dump()
        return cls(
            **summary,
            logs=list(job.logs),
            results=list(job.results) if job.results is not None else None,
            average_confidence=job.average_confidence if job.results is not None else None,
            duration_seconds=job.duration_seconds,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


class SubmitBatchResponse(BaseModel):
    """Batch accepted for processing."""
    batch_id: str
    status: JobStatus
    file_count: int
    job_ids: list[str]
    message: str


class PriceListImportResponse(BaseModel):
    imported: int
    message: str


def build_repository(cfg: Settings) -> Repository:
    """Repository for the configured storage backend."""
    if cfg.storage.backend is StorageBackend.MEMORY:
        entries = load_price_list_file(cfg.storage.price_list_file) if cfg.storage.price_list_file else []
        logger.info(f"Using in-memory storage with {len(entries)} price items")
        return InMemoryRepository(entries)
    return SqlRepository(get_session_factory())


def create_app(processor: BatchProcessor | None = None, cfg: Settings | None = None) -> FastAPI:
    """Build the application.

    Args:
        processor: Pre-built processor (tests); built from settings when omitted
        cfg: Settings override
    """
    cfg = cfg or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup/shutdown logic."""
        # Startup
        setup_logging(cfg.logging)
        logger.info("Application starting up")
        http_client = None
        proc = processor
        if proc is None:
            http_client = httpx.AsyncClient(timeout=cfg.embeddings.request_timeout_seconds)
            proc = BatchProcessor.from_settings(build_repository(cfg), cfg, http_client=http_client)
        await proc.start()
        app.state.processor = proc

        yield

        # Shutdown
        logger.info("Application shutting down")
        await proc.shutdown()
        if http_client is not None:
            await http_client.aclose()

    app = FastAPI(
        title="BoQ Price Matching",
        version=cfg.version,
        description="AI price matching for construction bills of quantities",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:3001"],  # Frontend URLs
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for exc_class in ERROR_STATUS:
        app.add_exception_handler(exc_class, matching_error_handler)

    app.include_router(router)
    return app


# Most specific class first
ERROR_STATUS: dict[type[MatchingError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    JobNotFound: status.HTTP_404_NOT_FOUND,
    JobNotReady: status.HTTP_409_CONFLICT,
    NoReferenceData: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ProviderUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
    PersistenceError: status.HTTP_503_SERVICE_UNAVAILABLE,
    MatchingError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


async def matching_error_handler(request: Request, exc: MatchingError):
    """Map the error taxonomy to status codes with ``{error, detail}`` bodies."""
    code = next(
        (c for cls, c in ERROR_STATUS.items() if isinstance(exc, cls)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    if code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.classified}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.classified}")
    return JSONResponse(
        status_code=code,
        content=ErrorResponse(error=exc.code, detail=exc.message).model_dump(),
    )


def get_processor(request: Request) -> BatchProcessor:
    return request.app.state.processor


async def _sse(events: AsyncIterator[ProgressEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield f"event: progress\ndata: {event.model_dump_json()}\n\n"


def _attachment(content: bytes, filename: str, fmt: ExportFormat) -> Response:
    return Response(
        content=content,
        media_type=fmt.media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health(request: Request, processor: BatchProcessor = Depends(get_processor)) -> HealthResponse:
    """Health check endpoint."""
    stats = processor.stats()
    return HealthResponse(
        status="ok",
        version=request.app.version,
        running_jobs=stats["running"],
        queued_jobs=stats["queued"],
    )


@router.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "app": "BoQ Price Matching",
        "endpoints": {
            "health": "/health",
            "matching_jobs": "/matching/jobs",
            "matching_stream": "/matching/stream",
            "batch_jobs": "/batch/jobs",
            "stats": "/matching/stats",
            "price_list_import": "/price-list/import",
            "docs": "/docs",
        },
    }


@router.post(
    "/matching/jobs",
    response_model=SubmitJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def create_matching_job(
    file: UploadFile = File(..., description="BoQ spreadsheet (Excel or CSV)"),
    model: str | None = Form(default=None),
    project_id: str | None = Form(default=None),
    processor: BatchProcessor = Depends(get_processor),
) -> SubmitJobResponse:
    """Upload a BoQ and queue it for price matching.

    Returns immediately with the job id; poll ``/matching/jobs/{id}`` or
    follow ``/matching/jobs/{id}/events`` for progress.
    """
    if not file.filename:
        raise ValidationError("Filename is required")

    logger.info(f"Received BoQ upload: {file.filename}")
    try:
        content = await file.read()
    finally:
        await file.close()

    job_id = processor.submit_file(file.filename, content, model, project_id=project_id)
    job = processor.get(job_id)
    return SubmitJobResponse(
        job_id=job_id,
        status=job.status,
        item_count=job.item_count,
        message=f"Queued {job.item_count} items from {file.filename}",
    )


@router.get("/matching/jobs", response_model=list[JobSummaryDTO])
async def list_matching_jobs(processor: BatchProcessor = Depends(get_processor)):
    return [JobSummaryDTO.from_job(job) for job in processor.list_all()]


@router.get("/matching/stats")
async def matching_stats(processor: BatchProcessor = Depends(get_processor)) -> dict:
    """Counts by status, average confidence and duration of completed jobs."""
    return processor.stats()


@router.get("/matching/jobs/{job_id}", response_model=JobDetailDTO)
async def get_matching_job(job_id: str, processor: BatchProcessor = Depends(get_processor)):
    return JobDetailDTO.from_job(processor.get(job_id))


@router.post("/matching/jobs/{job_id}/cancel", response_model=JobDetailDTO)
async def cancel_matching_job(job_id: str, processor: BatchProcessor = Depends(get_processor)):
    return JobDetailDTO.from_job(processor.cancel(job_id))


@router.get("/matching/jobs/{job_id}/download")
async def download_matching_job(
    job_id: str,
    format: str = Query(default="xlsx", pattern="^(csv|xlsx)$"),
    processor: BatchProcessor = Depends(get_processor),
) -> Response:
    """Rate-filled results of a completed job as CSV or XLSX."""
    fmt = ExportFormat.parse(format)
    content = processor.export_results(job_id, fmt)
    job = processor.get(job_id)
    stem = Path(job.file_name).stem if job.file_name else job_id
    return _attachment(content, f"{stem}_matched.{fmt.value}", fmt)


@router.get("/matching/jobs/{job_id}/events")
async def matching_job_events(job_id: str, processor: BatchProcessor = Depends(get_processor)):
    """Server-sent progress events until the job is terminal."""
    events = processor.subscribe(job_id)
    return StreamingResponse(_sse(events), media_type="text/event-stream")


@router.post("/matching/stream")
async def stream_matching_job(
    file: UploadFile = File(...),
    model: str | None = Form(default=None),
    project_id: str | None = Form(default=None),
    processor: BatchProcessor = Depends(get_processor),
):
    """Submit a BoQ and stream its progress. Disconnecting cancels the job."""
    if not file.filename:
        raise ValidationError("Filename is required")
    try:
        content = await file.read()
    finally:
        await file.close()

    job_id = processor.submit_file(file.filename, content, model, project_id=project_id)
    events = processor.subscribe(job_id)

    async def stream() -> AsyncIterator[str]:
        try:
            async for chunk in _sse(events):
                yield chunk
        finally:
            if not processor.get(job_id).status.is_terminal:
                logger.info(f"Client disconnected from job {job_id} stream")
                processor.cancel(job_id, "Client disconnected")

    return StreamingResponse(
        stream(), media_type="text/event-stream", headers={"X-Job-Id": job_id}
    )


@router.post(
    "/batch/jobs",
    response_model=SubmitBatchResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def create_batch_job(
    files: list[UploadFile] = File(...),
    client_name: str = Form(...),
    project_name: str = Form(...),
    model: str | None = Form(default=None),
    processor: BatchProcessor = Depends(get_processor),
) -> SubmitBatchResponse:
    """Upload several BoQ files for one client project."""
    uploads = []
    for upload in files:
        try:
            uploads.append((upload.filename or "upload", await upload.read()))
        finally:
            await upload.close()

    batch_id = processor.submit_batch(
        uploads, model, client_name=client_name, project_name=project_name
    )
    batch = processor.get_batch(batch_id)
    return SubmitBatchResponse(
        batch_id=batch_id,
        status=batch.status,
        file_count=batch.file_count,
        job_ids=list(batch.job_ids),
        message=f"Queued {batch.file_count} files for {batch.client_name} / {batch.project_name}",
    )


@router.get("/batch/jobs", response_model=list[BatchJob])
async def list_batch_jobs(processor: BatchProcessor = Depends(get_processor)):
    return processor.list_batches()


@router.get("/batch/jobs/{batch_id}", response_model=BatchJob)
async def get_batch_job(batch_id: str, processor: BatchProcessor = Depends(get_processor)):
    return processor.get_batch(batch_id)


@router.post("/batch/jobs/{batch_id}/cancel", response_model=BatchJob)
async def cancel_batch_job(batch_id: str, processor: BatchProcessor = Depends(get_processor)):
    return processor.cancel_batch(batch_id)


@router.get("/batch/jobs/{batch_id}/download")
async def download_batch_job(batch_id: str, processor: BatchProcessor = Depends(get_processor)):
    """Summary sheet plus one sheet per matched file."""
    content = processor.export_batch_results(batch_id)
    batch = processor.get_batch(batch_id)
    name = f"{batch.client_name}_{batch.project_name}_results.xlsx".replace(" ", "_")
    return _attachment(content, name, ExportFormat.XLSX)


@router.post("/price-list/import", response_model=PriceListImportResponse)
async def import_price_list(
    file: UploadFile = File(..., description="Price list spreadsheet (Excel or CSV)"),
    processor: BatchProcessor = Depends(get_processor),
) -> PriceListImportResponse:
    """Replace the reference price list from a spreadsheet."""
    try:
        content = await file.read()
    finally:
        await file.close()
    entries = parse_price_list(file.filename or "price_list.xlsx", content)
    count = await processor.repository.replace_price_list(entries)
    return PriceListImportResponse(imported=count, message=f"Imported {count} price items")


app = create_app()
