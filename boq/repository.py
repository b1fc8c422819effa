"""Repository collaborator: price list reads and job persistence.

The pipelines never issue storage queries themselves; they go through a
``Repository``. ``SqlRepository`` is the production backend,
``InMemoryRepository`` serves tests and the ``memory`` storage backend.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Iterable, Protocol, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import models
from .errors import PersistenceError
from .schemas import BatchFileResult, BatchJob, MatchedItem, MatchingJob, PriceListEntry

logger = logging.getLogger(__name__)


class Repository(Protocol):
    async def load_price_list(self) -> list[PriceListEntry]: ...

    async def replace_price_list(self, entries: Iterable[PriceListEntry]) -> int: ...

    async def save_matching_job(self, job: MatchingJob) -> None: ...

    async def get_matching_job(self, job_id: str) -> MatchingJob | None: ...

    async def get_all_jobs(self) -> list[MatchingJob]: ...

    async def save_batch_job(self, batch: BatchJob) -> None: ...

    async def get_all_batch_jobs(self) -> list[BatchJob]: ...


class InMemoryRepository:
    """Dict-backed repository. Price list is held as an immutable tuple."""

    def __init__(self, price_list: Sequence[PriceListEntry] = ()) -> None:
        self._price_list: tuple[PriceListEntry, ...] = tuple(price_list)
        self._jobs: dict[str, MatchingJob] = {}
        self._batches: dict[str, BatchJob] = {}

    async def load_price_list(self) -> list[PriceListEntry]:
        return list(self._price_list)

    async def replace_price_list(self, entries: Iterable[PriceListEntry]) -> int:
        self._price_list = tuple(entries)
        return len(self._price_list)

    async def save_matching_job(self, job: MatchingJob) -> None:
        self._jobs[job.id] = job

    async def get_matching_job(self, job_id: str) -> MatchingJob | None:
        return self._jobs.get(job_id)

    async def get_all_jobs(self) -> list[MatchingJob]:
        return sorted(self._jobs.values(), key=lambda j: j.created_at)

    async def save_batch_job(self, batch: BatchJob) -> None:
        self._batches[batch.id] = batch

    async def get_all_batch_jobs(self) -> list[BatchJob]:
        return sorted(self._batches.values(), key=lambda b: b.created_at)


class SqlRepository:
    """SQLAlchemy-backed repository. Storage failures raise PersistenceError."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._price_cache: tuple[PriceListEntry, ...] | None = None
        self._price_lock = asyncio.Lock()

    async def load_price_list(self) -> list[PriceListEntry]:
        """Snapshot of the price list, cached until it is replaced."""
        async with self._price_lock:
            if self._price_cache is None:
                try:
                    async with self._session_factory() as session:
                        rows = (await session.execute(
                            select(models.PriceItem).order_by(models.PriceItem.id)
                        )).scalars().all()
                except SQLAlchemyError as e:
                    logger.error(f"Failed to load price list: {e}", exc_info=True)
                    raise PersistenceError("Could not load the price list") from e
                self._price_cache = tuple(_price_entry(row) for row in rows)
                logger.info(f"Loaded {len(self._price_cache)} price items")
            return list(self._price_cache)

    async def replace_price_list(self, entries: Iterable[PriceListEntry]) -> int:
        rows = [
            models.PriceItem(
                code=e.code,
                description=e.description,
                category=e.category,
                unit=e.unit,
                rate=e.rate,
                keywords=list(e.keywords) or None,
            )
            for e in entries
        ]
        async with self._price_lock:
            try:
                async with self._session_factory() as session, session.begin():
                    await session.execute(delete(models.PriceItem))
                    session.add_all(rows)
            except SQLAlchemyError as e:
                logger.error(f"Failed to replace price list: {e}", exc_info=True)
                raise PersistenceError("Could not store the price list") from e
            self._price_cache = None
        logger.info(f"Price list replaced with {len(rows)} items")
        return len(rows)

    async def save_matching_job(self, job: MatchingJob) -> None:
        await self._merge(models.MatchingJobRecord(
            id=job.id,
            status=job.status.value,
            model=job.model.value,
            progress=job.progress,
            logs=list(job.logs),
            results=[r.model_dump() for r in job.results] if job.results is not None else None,
            error=job.error,
            file_name=job.file_name,
            project_id=job.project_id,
            batch_id=job.batch_id,
            item_count=job.item_count,
            created_at=job.created_at,
            updated_at=job.updated_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        ))

    async def get_matching_job(self, job_id: str) -> MatchingJob | None:
        try:
            async with self._session_factory() as session:
                record = await session.get(models.MatchingJobRecord, job_id)
        except SQLAlchemyError as e:
            raise PersistenceError("Could not read job") from e
        return _matching_job(record) if record is not None else None

    async def get_all_jobs(self) -> list[MatchingJob]:
        try:
            async with self._session_factory() as session:
                records = (await session.execute(
                    select(models.MatchingJobRecord).order_by(models.MatchingJobRecord.created_at)
                )).scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceError("Could not read jobs") from e
        return [_matching_job(r) for r in records]

    async def save_batch_job(self, batch: BatchJob) -> None:
        await self._merge(models.BatchJobRecord(
            id=batch.id,
            client_name=batch.client_name,
            project_name=batch.project_name,
            model=batch.model.value,
            status=batch.status.value,
            progress=batch.progress,
            file_count=batch.file_count,
            job_ids=list(batch.job_ids),
            results=[r.model_dump() for r in batch.results],
            error=batch.error,
            created_at=batch.created_at,
            updated_at=batch.updated_at,
            started_at=batch.started_at,
            completed_at=batch.completed_at,
        ))

    async def get_all_batch_jobs(self) -> list[BatchJob]:
        try:
            async with self._session_factory() as session:
                records = (await session.execute(
                    select(models.BatchJobRecord).order_by(models.BatchJobRecord.created_at)
                )).scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceError("Could not read batch jobs") from e
        return [_batch_job(r) for r in records]

    async def _merge(self, record: models.Base) -> None:
        try:
            async with self._session_factory() as session, session.begin():
                await session.merge(record)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not store {type(record).__name__} {record.id}") from e


def _aware(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on read; stored values are always UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _price_entry(row: models.PriceItem) -> PriceListEntry:
    return PriceListEntry(
        description=row.description,
        rate=row.rate,
        code=row.code,
        category=row.category,
        unit=row.unit,
        keywords=tuple(row.keywords or ()),
    )


def _matching_job(r: models.MatchingJobRecord) -> MatchingJob:
    return MatchingJob(
        id=r.id,
        status=r.status,
        model=r.model,
        progress=r.progress,
        logs=tuple(r.logs or ()),
        results=tuple(MatchedItem(**item) for item in r.results) if r.results is not None else None,
        error=r.error,
        file_name=r.file_name,
        project_id=r.project_id,
        batch_id=r.batch_id,
        item_count=r.item_count,
        created_at=_aware(r.created_at),
        updated_at=_aware(r.updated_at),
        started_at=_aware(r.started_at),
        completed_at=_aware(r.completed_at),
    )


def _batch_job(r: models.BatchJobRecord) -> BatchJob:
    return BatchJob(
        id=r.id,
        client_name=r.client_name,
        project_name=r.project_name,
        model=r.model,
        status=r.status,
        progress=r.progress,
        file_count=r.file_count,
        job_ids=tuple(r.job_ids or ()),
        results=tuple(BatchFileResult(**item) for item in (r.results or ())),
        error=r.error,
        created_at=_aware(r.created_at),
        updated_at=_aware(r.updated_at),
        started_at=_aware(r.started_at),
        completed_at=_aware(r.completed_at),
    )
