"""Job registry: lifecycle state machine, progress fan-out and write-through.

All mutations run under one lock and swap in a new frozen snapshot, so
readers can take ``get``/``list`` results without locking. Persistence goes
through a single writer task that saves snapshots in the order they were
produced.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from collections import defaultdict
from typing import AsyncIterator, Callable, Iterable

from boq.errors import Cancelled, MatchingError, PersistenceError, classify
from boq.repository import Repository
from boq.schemas import (
    BatchFileResult,
    BatchJob,
    JobStatus,
    MatchedItem,
    MatchingJob,
    ProgressEvent,
    utcnow,
)

logger = logging.getLogger(__name__)

ProgressSink = Callable[[int, str], None]

_STOP = object()


class JobRegistry:
    """Owns every MatchingJob and BatchJob known to the process."""

    def __init__(self, repository: Repository) -> None:
        self._repository = repository
        self._lock = threading.Lock()
        self._jobs: dict[str, MatchingJob] = {}
        self._batches: dict[str, BatchJob] = {}
        self._sinks: dict[str, ProgressSink] = {}
        self._subscribers: dict[str, list[asyncio.Queue]] = defaultdict(list)
        self._writes: asyncio.Queue | None = None
        self._writer: asyncio.Task | None = None

    # ---- lifecycle -------------------------------------------------------

    async def open(self) -> None:
        """Start the persistence writer and reload history from the repository."""
        self._writes = asyncio.Queue()
        self._writer = asyncio.create_task(self._write_loop(), name="job-registry-writer")

        try:
            jobs = await self._repository.get_all_jobs()
            batches = await self._repository.get_all_batch_jobs()
        except PersistenceError:
            logger.critical("Could not load job history; starting with an empty registry", exc_info=True)
            return

        interrupted = Cancelled("Interrupted by service restart")
        with self._lock:
            for batch in batches:
                self._batches[batch.id] = batch
            for job in jobs:
                self._jobs[job.id] = job
        for job in jobs:
            if not job.status.is_terminal:
                self.fail(job.id, interrupted)
        # Batches whose last child write landed without the batch write
        with self._lock:
            stale = [self._refresh_batch(b.id) for b in batches if not b.status.is_terminal]
        for batch in stale:
            if batch is not None:
                self._persist(batch)
        logger.info(f"Loaded {len(jobs)} jobs and {len(batches)} batches from storage")

    async def close(self) -> None:
        """Flush pending writes and stop the writer."""
        if self._writes is None or self._writer is None:
            return
        await self._writes.put(_STOP)
        await self._writer
        self._writer = None
        self._writes = None

    async def drain(self) -> None:
        """Wait until every queued snapshot has been handed to the repository."""
        if self._writes is not None:
            await self._writes.join()

    # ---- reads (lock-free snapshots) --------------------------------------

    def get(self, job_id: str) -> MatchingJob | None:
        return self._jobs.get(job_id)

    def list_jobs(self) -> list[MatchingJob]:
        return sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)

    def get_batch(self, batch_id: str) -> BatchJob | None:
        return self._batches.get(batch_id)

    def list_batches(self) -> list[BatchJob]:
        return sorted(self._batches.values(), key=lambda b: b.created_at, reverse=True)

    def count(self, status: JobStatus) -> int:
        return sum(1 for job in list(self._jobs.values()) if job.status is status)

    # ---- mutations -------------------------------------------------------

    def add(self, job: MatchingJob, sink: ProgressSink | None = None) -> MatchingJob:
        """Register a new pending job."""
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Duplicate job id {job.id}")
            job = job.model_copy(update={"logs": (*job.logs, "Job queued for processing")})
            self._jobs[job.id] = job
            if sink is not None:
                self._sinks[job.id] = sink
        logger.info(f"Job {job.id} created ({job.model.value}, {job.item_count} items)")
        self._persist(job)
        self._publish(job, "Job queued for processing")
        return job

    def add_batch(self, batch: BatchJob) -> BatchJob:
        with self._lock:
            self._batches[batch.id] = batch
        logger.info(f"Batch {batch.id} created with {batch.file_count} files")
        self._persist(batch)
        return batch

    def claim(self, job_id: str) -> MatchingJob | None:
        """pending → processing. Returns None if the job is not pending."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.PENDING:
                return None
            now = utcnow()
            job = job.model_copy(update={
                "status": JobStatus.PROCESSING,
                "started_at": now,
                "updated_at": now,
                "logs": (*job.logs, "Starting job processing..."),
            })
            self._jobs[job_id] = job
            batch = self._refresh_batch(job.batch_id)
        logger.info(f"Job {job_id} processing")
        self._persist(job)
        if batch is not None:
            self._persist(batch)
        self._publish(job, "Starting job processing...")
        return job

    def progress(self, job_id: str, percent: int, message: str) -> bool:
        """Record a progress event for a processing job.

        The stored percentage never decreases. Events for jobs that are not
        processing are dropped.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.PROCESSING:
                return False
            value = min(100, max(job.progress, int(percent)))
            advanced = value > job.progress
            if advanced:
                job = job.model_copy(update={
                    "progress": value,
                    "updated_at": utcnow(),
                    "logs": (*job.logs, message),
                })
                self._jobs[job_id] = job
                batch = self._refresh_batch(job.batch_id)
            else:
                batch = None
        if advanced:
            self._persist(job)
            if batch is not None:
                self._persist(batch)
        self._publish(job, message)
        return True

    def complete(self, job_id: str, results: Iterable[MatchedItem], message: str) -> bool:
        """processing → completed; results and status land in one swap."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.PROCESSING:
                logger.warning(f"Ignoring completion of job {job_id}: not processing")
                return False
            now = utcnow()
            job = job.model_copy(update={
                "status": JobStatus.COMPLETED,
                "results": tuple(results),
                "progress": 100,
                "updated_at": now,
                "completed_at": now,
                "logs": (*job.logs, message),
            })
            self._jobs[job_id] = job
            batch = self._refresh_batch(job.batch_id)
        logger.info(f"Job {job_id} completed in {job.duration_seconds:.2f}s")
        self._finish(job, batch, message)
        return True

    def fail(self, job_id: str, exc: BaseException) -> bool:
        """pending|processing → failed with a classified error."""
        error = classify(exc)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status.is_terminal:
                logger.warning(f"Ignoring failure of job {job_id}: already terminal or unknown")
                return False
            now = utcnow()
            job = job.model_copy(update={
                "status": JobStatus.FAILED,
                "error": error,
                "results": None,
                "updated_at": now,
                "completed_at": now,
                "logs": (*job.logs, f"Error: {error}"),
            })
            self._jobs[job_id] = job
            batch = self._refresh_batch(job.batch_id)
        if isinstance(exc, Cancelled):
            logger.info(f"Job {job_id} cancelled: {exc}")
        else:
            logger.error(f"Job {job_id} failed: {error}")
        self._finish(job, batch, f"Error: {error}")
        return True

    # ---- streaming -------------------------------------------------------

    async def subscribe(self, job_id: str) -> AsyncIterator[ProgressEvent]:
        """Yield this job's progress events until it reaches a terminal state."""
        queue: asyncio.Queue = asyncio.Queue()
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None and not job.status.is_terminal:
                self._subscribers[job_id].append(queue)
        if job is None:
            return
        message = job.logs[-1] if job.logs else job.status.value
        yield ProgressEvent(job_id=job.id, percent=job.progress, message=message, status=job.status)
        if job.status.is_terminal:
            return
        try:
            while True:
                event = await queue.get()
                yield event
                if event.status.is_terminal:
                    return
        finally:
            with self._lock:
                if queue in self._subscribers.get(job_id, []):
                    self._subscribers[job_id].remove(queue)

    # ---- internals -------------------------------------------------------

    def _finish(self, job: MatchingJob, batch: BatchJob | None, message: str) -> None:
        self._persist(job)
        if batch is not None:
            self._persist(batch)
        self._publish(job, message)
        with self._lock:
            self._sinks.pop(job.id, None)
            self._subscribers.pop(job.id, None)

    def _publish(self, job: MatchingJob, message: str) -> None:
        event = ProgressEvent(job_id=job.id, percent=job.progress, message=message, status=job.status)
        sink = self._sinks.get(job.id)
        if sink is not None:
            try:
                sink(event.percent, event.message)
            except Exception:
                logger.exception(f"Progress sink for job {job.id} raised")
        for queue in list(self._subscribers.get(job.id, [])):
            queue.put_nowait(event)

    def _refresh_batch(self, batch_id: str | None) -> BatchJob | None:
        """Recompute a batch from its children. Caller holds the lock."""
        if batch_id is None:
            return None
        batch = self._batches.get(batch_id)
        if batch is None or batch.status.is_terminal:
            return None
        children = [self._jobs[j] for j in batch.job_ids if j in self._jobs]
        if not children:
            return None

        statuses = [c.status for c in children]
        update: dict = {
            "progress": max(batch.progress, sum(c.progress for c in children) // len(children)),
            "results": tuple(_file_result(c) for c in children if c.status.is_terminal),
            "updated_at": utcnow(),
        }
        started = [c.started_at for c in children if c.started_at is not None]
        if batch.started_at is None and started:
            update["started_at"] = min(started)
            update["status"] = JobStatus.PROCESSING
        if len(children) == len(batch.job_ids) and all(s.is_terminal for s in statuses):
            update["completed_at"] = utcnow()
            if all(s is JobStatus.FAILED for s in statuses):
                update["status"] = JobStatus.FAILED
                update["error"] = _shared_error([c.error or "" for c in children])
            else:
                update["status"] = JobStatus.COMPLETED
                update["progress"] = 100
        batch = batch.model_copy(update=update)
        self._batches[batch_id] = batch
        if batch.status.is_terminal:
            logger.info(f"Batch {batch_id} {batch.status.value}")
        return batch

    def _persist(self, record: MatchingJob | BatchJob) -> None:
        if self._writes is not None:
            self._writes.put_nowait(record)

    async def _write_loop(self) -> None:
        assert self._writes is not None
        while True:
            record = await self._writes.get()
            try:
                if record is _STOP:
                    return
                await self._save(record)
            finally:
                self._writes.task_done()

    async def _save(self, record: MatchingJob | BatchJob) -> None:
        try:
            if isinstance(record, BatchJob):
                await self._repository.save_batch_job(record)
            else:
                await self._repository.save_matching_job(record)
        except MatchingError as e:
            terminal = record.status.is_terminal
            logger.critical(
                f"Could not persist {type(record).__name__} {record.id} "
                f"({record.status.value}{', terminal outcome lost' if terminal else ''}): {e}",
                exc_info=True,
            )


def _shared_error(errors: list[str]) -> str:
    """Batch error when every child failed: the children's classification if they agree."""
    if len(set(errors)) == 1 and errors[0]:
        return errors[0]
    codes = {error.split(":", 1)[0] for error in errors}
    if len(codes) == 1 and next(iter(codes)):
        return f"{next(iter(codes))}: All files failed"
    return "All files failed"


def _file_result(job: MatchingJob) -> BatchFileResult:
    return BatchFileResult(
        file_name=job.file_name or job.id,
        job_id=job.id,
        item_count=job.item_count,
        average_confidence=job.average_confidence,
        processing_seconds=job.duration_seconds or 0.0,
        error=job.error,
    )
