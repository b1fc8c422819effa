"""Batch processor: bounded worker pool over the job registry.

``submit`` validates input, registers a pending job and returns at once. A
fixed number of worker tasks pull job ids from a FIFO queue; each worker runs
one job's pipeline (price list → match → results) to completion before taking
the next, so at most ``max_concurrency`` jobs are ever processing.
"""
from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable, Iterable, Sequence
from uuid import uuid4

import httpx

from boq.config import Settings, settings as default_settings
from boq.errors import (
    Cancelled,
    JobNotFound,
    JobNotReady,
    JobTimeout,
    MatchingError,
    NoReferenceData,
    ValidationError,
)
from boq.export import ExportFormat, export_batch, export_job
from boq.parsers import ParseError, parse_boq
from boq.pipelines.matching import MatchingStrategy, build_strategy
from boq.pipelines.registry import JobRegistry, ProgressSink
from boq.repository import Repository
from boq.schemas import (
    BatchJob,
    InquiryItem,
    JobStatus,
    MatchedItem,
    MatchingJob,
    MatchingModel,
    ProgressEvent,
)

logger = logging.getLogger(__name__)

StrategyFactory = Callable[[MatchingModel], MatchingStrategy]

# Share of the job's progress bar owned by the matching strategy
_MATCH_START, _MATCH_SPAN = 10, 85


class BatchProcessor:
    """Owns the job registry and the worker pool.

    Created once at process start (see the API lifespan) and shut down with
    the process. Nothing here is a module-level singleton.
    """

    def __init__(
        self,
        repository: Repository,
        strategy_factory: StrategyFactory,
        *,
        max_concurrency: int = 2,
        job_timeout: float | None = 1800.0,
        max_files: int = 20,
        default_model: MatchingModel | str = MatchingModel.COHERE,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.repository = repository
        self.registry = JobRegistry(repository)
        self.max_concurrency = max_concurrency
        self.job_timeout = job_timeout
        self.max_files = max_files
        self.default_model = MatchingModel.parse(default_model)
        self._strategy_factory = strategy_factory
        self._queue: asyncio.Queue[str] | None = None
        self._workers: list[asyncio.Task] = []
        self._inputs: dict[str, tuple[list[InquiryItem], MatchingStrategy]] = {}
        self._running: dict[str, asyncio.Task] = {}

    @classmethod
    def from_settings(
        cls,
        repository: Repository,
        cfg: Settings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> "BatchProcessor":
        cfg = cfg or default_settings
        return cls(
            repository,
            lambda model: build_strategy(model, cfg, http_client=http_client),
            max_concurrency=cfg.batch.max_concurrency,
            job_timeout=cfg.batch.job_timeout_seconds,
            max_files=cfg.batch.max_files,
            default_model=cfg.matching.default_model,
        )

    # ---- lifecycle -------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._queue is not None

    async def start(self) -> None:
        """Reload history and start the workers."""
        if self.running:
            return
        await self.registry.open()
        self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"matching-worker-{n}")
            for n in range(self.max_concurrency)
        ]
        logger.info(f"Batch processor started with {self.max_concurrency} workers")

    async def shutdown(self) -> None:
        """Cancel queued and running jobs, stop the workers, flush persistence."""
        if not self.running:
            return
        for job_id in list(self._inputs):
            self.cancel(job_id, "Service shutting down")
        running = list(self._running.values())
        for job_id in list(self._running):
            self.cancel(job_id, "Service shutting down")
        if running:
            await asyncio.wait(running)

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queue = None
        await self.registry.close()
        logger.info("Batch processor stopped")

    # ---- submission ------------------------------------------------------

    def submit(
        self,
        items: Iterable[InquiryItem],
        model: MatchingModel | str | None = None,
        *,
        file_name: str | None = None,
        project_id: str | None = None,
        on_progress: ProgressSink | None = None,
    ) -> str:
        """Validate and enqueue a matching job. Returns the new job id.

        Args:
            items: BoQ lines to price
            model: Matching model (enum value or legacy key); defaults to settings
            file_name: Source file name, kept for display and exports
            project_id: Optional owning project
            on_progress: Receives every (percent, message) event of the job

        Raises:
            ValidationError: Empty input, unknown model or missing credentials
        """
        self._require_running()
        items = list(items)
        if not items:
            raise ValidationError("No items to match")
        model = MatchingModel.parse(model) if model else self.default_model
        strategy = self._strategy_factory(model)

        job = MatchingJob(
            id=str(uuid4()),
            model=model,
            file_name=file_name,
            project_id=project_id,
            item_count=len(items),
        )
        self._inputs[job.id] = (items, strategy)
        self.registry.add(job, on_progress)
        self._queue.put_nowait(job.id)
        return job.id

    def submit_file(
        self,
        filename: str,
        content: bytes,
        model: MatchingModel | str | None = None,
        *,
        project_id: str | None = None,
        on_progress: ProgressSink | None = None,
    ) -> str:
        """Parse an uploaded BoQ and submit its unpriced rows."""
        items = parse_boq(filename, content)
        logger.info(f"Parsed {len(items)} items from {filename}")
        return self.submit(
            items, model, file_name=filename, project_id=project_id, on_progress=on_progress
        )

    def submit_batch(
        self,
        files: Sequence[tuple[str, bytes]],
        model: MatchingModel | str | None = None,
        *,
        client_name: str,
        project_name: str,
    ) -> str:
        """Submit several BoQ files as one batch. Returns the batch id.

        Each file becomes its own matching job. Files that cannot be parsed
        are recorded as failed children; the batch is rejected only when none
        of the files is usable.

        Raises:
            ValidationError: No files, too many files, missing names, bad model,
                or no file could be parsed
        """
        self._require_running()
        if not files:
            raise ValidationError("No files uploaded")
        if len(files) > self.max_files:
            raise ValidationError(f"At most {self.max_files} files per batch")
        if not client_name.strip() or not project_name.strip():
            raise ValidationError("Client name and project name are required")
        model = MatchingModel.parse(model) if model else self.default_model
        strategy = self._strategy_factory(model)

        parsed: list[tuple[str, list[InquiryItem] | ParseError]] = []
        for filename, content in files:
            try:
                parsed.append((filename, parse_boq(filename, content)))
            except ParseError as e:
                logger.warning(f"Batch file {filename} rejected: {e}")
                parsed.append((filename, e))
        if all(isinstance(outcome, ParseError) for _, outcome in parsed):
            raise ValidationError("None of the uploaded files contain BoQ items")

        batch_id = str(uuid4())
        children = [
            MatchingJob(
                id=str(uuid4()),
                model=model,
                file_name=filename,
                batch_id=batch_id,
                item_count=0 if isinstance(outcome, ParseError) else len(outcome),
            )
            for filename, outcome in parsed
        ]
        for job in children:
            self.registry.add(job)
        self.registry.add_batch(BatchJob(
            id=batch_id,
            client_name=client_name.strip(),
            project_name=project_name.strip(),
            model=model,
            file_count=len(files),
            job_ids=tuple(job.id for job in children),
        ))

        for job, (_, outcome) in zip(children, parsed):
            if isinstance(outcome, ParseError):
                self.registry.fail(job.id, outcome)
            else:
                self._inputs[job.id] = (outcome, strategy)
                self._queue.put_nowait(job.id)
        return batch_id

    # ---- queries ---------------------------------------------------------

    def get(self, job_id: str) -> MatchingJob:
        job = self.registry.get(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    def list_all(self) -> list[MatchingJob]:
        return self.registry.list_jobs()

    def get_batch(self, batch_id: str) -> BatchJob:
        batch = self.registry.get_batch(batch_id)
        if batch is None:
            raise JobNotFound(f"Batch {batch_id} not found")
        return batch

    def list_batches(self) -> list[BatchJob]:
        return self.registry.list_batches()

    def subscribe(self, job_id: str) -> AsyncIterator[ProgressEvent]:
        """Ordered progress events for a job, ending with its terminal event."""
        self.get(job_id)
        return self.registry.subscribe(job_id)

    async def wait(self, job_id: str, timeout: float | None = None) -> MatchingJob:
        """Block until the job is terminal and return its final snapshot."""
        async def until_terminal() -> None:
            async for _ in self.subscribe(job_id):
                pass

        await asyncio.wait_for(until_terminal(), timeout)
        return self.get(job_id)

    async def wait_batch(self, batch_id: str, timeout: float | None = None) -> BatchJob:
        batch = self.get_batch(batch_id)
        await asyncio.wait_for(
            asyncio.gather(*(self.wait(job_id) for job_id in batch.job_ids)), timeout
        )
        return self.get_batch(batch_id)

    def stats(self) -> dict:
        """Counts by status plus averages over completed jobs."""
        jobs = self.list_all()
        completed = [j for j in jobs if j.status is JobStatus.COMPLETED]
        durations = [j.duration_seconds for j in completed if j.duration_seconds is not None]
        return {
            "total": len(jobs),
            "by_status": {s.value: sum(1 for j in jobs if j.status is s) for s in JobStatus},
            "queued": len(self._inputs),
            "running": len(self._running),
            "average_confidence": (
                sum(j.average_confidence for j in completed) / len(completed) if completed else 0.0
            ),
            "average_duration_seconds": sum(durations) / len(durations) if durations else 0.0,
            "batches": len(self.list_batches()),
        }

    # ---- control ---------------------------------------------------------

    def cancel(self, job_id: str, reason: str = "Cancelled by client") -> MatchingJob:
        """Terminate a pending or running job. Terminal jobs are returned unchanged.

        The job is failed with ``cancelled`` first; a running pipeline is then
        cancelled, and whatever it reports afterwards is ignored.
        """
        job = self.get(job_id)
        if job.status.is_terminal:
            return job
        self._inputs.pop(job_id, None)
        self.registry.fail(job_id, Cancelled(reason))
        task = self._running.get(job_id)
        if task is not None:
            task.cancel()
        return self.get(job_id)

    def cancel_batch(self, batch_id: str, reason: str = "Cancelled by client") -> BatchJob:
        batch = self.get_batch(batch_id)
        for job_id in batch.job_ids:
            self.cancel(job_id, reason)
        return self.get_batch(batch_id)

    # ---- exports ---------------------------------------------------------

    def export_results(self, job_id: str, fmt: ExportFormat | str = ExportFormat.XLSX) -> bytes:
        """Rate-filled spreadsheet or CSV for a completed job.

        Raises:
            JobNotFound: Unknown job id
            JobNotReady: Job has not completed
        """
        job = self.get(job_id)
        if job.status is not JobStatus.COMPLETED:
            raise JobNotReady(f"Job {job_id} is {job.status.value}")
        return export_job(job, fmt)

    def export_batch_results(self, batch_id: str) -> bytes:
        batch = self.get_batch(batch_id)
        if not batch.status.is_terminal:
            raise JobNotReady(f"Batch {batch_id} is {batch.status.value}")
        jobs = {job_id: self.get(job_id) for job_id in batch.job_ids}
        return export_batch(batch, jobs)

    # ---- workers ---------------------------------------------------------

    def _require_running(self) -> None:
        if not self.running:
            raise RuntimeError("BatchProcessor is not started")

    async def _worker(self, n: int) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            job_id = await queue.get()
            try:
                await self._run(job_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                # One job must never take a worker down
                logger.exception(f"Worker {n} hit an unexpected error on job {job_id}")
            finally:
                queue.task_done()

    async def _run(self, job_id: str) -> None:
        job = self.registry.claim(job_id)
        payload = self._inputs.pop(job_id, None)
        if job is None or payload is None:
            # Cancelled while queued
            return
        items, strategy = payload

        task = asyncio.create_task(self._pipeline(job, items, strategy), name=f"job-{job_id}")
        self._running[job_id] = task
        try:
            done, _ = await asyncio.wait({task}, timeout=self.job_timeout)
            if not done:
                logger.warning(f"Job {job_id} exceeded {self.job_timeout}s", extra={"job_id": job_id})
                self.registry.fail(job_id, JobTimeout())
                task.cancel()
                await asyncio.wait({task})
                return
        except asyncio.CancelledError:
            task.cancel()
            self.registry.fail(job_id, Cancelled("Service shutting down"))
            raise
        finally:
            self._running.pop(job_id, None)

        if task.cancelled():
            # cancel() already recorded the terminal state
            return
        exc = task.exception()
        if exc is not None:
            if not isinstance(exc, MatchingError):
                logger.error(
                    f"Job {job_id} crashed: {exc!r}",
                    exc_info=(type(exc), exc, exc.__traceback__),
                    extra={"job_id": job_id},
                )
            self.registry.fail(job_id, exc)
            return
        results = task.result()
        self.registry.complete(job_id, results, f"Job completed: {len(results)} items matched")

    async def _pipeline(
        self,
        job: MatchingJob,
        items: list[InquiryItem],
        strategy: MatchingStrategy,
    ) -> list[MatchedItem]:
        """normalize → embed → match for one job."""
        job_id = job.id

        def report(percent: float, message: str) -> None:
            self.registry.progress(job_id, int(percent), message)

        report(2, "Loading price list...")
        catalog = await self.repository.load_price_list()
        if not catalog:
            raise NoReferenceData()
        report(_MATCH_START, f"Loaded {len(catalog)} price items")

        outcomes = await strategy.match(
            [item.description for item in items],
            catalog,
            lambda p, message: report(_MATCH_START + _MATCH_SPAN * p / 100, message),
        )

        results = [
            MatchedItem(
                source_description=item.description,
                matched_description=outcome.best_match,
                matched_rate=outcome.best_rate,
                confidence=outcome.confidence,
                unit=item.unit,
                quantity=item.quantity,
                matched_code=catalog[outcome.matched_index].code,
            )
            for item, outcome in zip(items, outcomes)
        ]
        average = sum(r.confidence for r in results) / len(results) if results else 0.0
        report(100, f"Matching completed. Average confidence: {average * 100:.1f}%")
        return results
