"""Tests for the SQL repository against a throwaway SQLite database."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import text

from boq.config import DatabaseSettings
from boq.db import create_engine, create_session_factory
from boq.errors import PersistenceError
from boq.models import Base
from boq.pipelines.registry import JobRegistry
from boq.repository import SqlRepository
from boq.schemas import (
    BatchFileResult,
    BatchJob,
    JobStatus,
    MatchedItem,
    MatchingJob,
    MatchingModel,
    PriceListEntry,
)
from tests.fakes import CATALOG

STARTED = datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)
FINISHED = datetime(2024, 5, 1, 9, 31, 15, tzinfo=timezone.utc)


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine(DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'boq.db'}"))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def repo(engine):
    return SqlRepository(create_session_factory(engine))


def finished_job(**overrides):
    fields = dict(
        id="job-1",
        model=MatchingModel.HYBRID,
        status=JobStatus.COMPLETED,
        progress=100,
        logs=("Job queued for processing", "Job completed: 1 items matched"),
        results=(
            MatchedItem(
                source_description="Excavation for foundations",
                matched_description="Bulk excavation in ordinary soil",
                matched_rate=25.5,
                confidence=0.91,
                unit="m3",
                quantity=120.0,
                matched_code="EW-01",
            ),
        ),
        file_name="bill.xlsx",
        project_id="p-7",
        item_count=1,
        created_at=STARTED,
        updated_at=FINISHED,
        started_at=STARTED,
        completed_at=FINISHED,
    )
    fields.update(overrides)
    return MatchingJob(**fields)


class TestPriceList:

    async def test_replace_and_load(self, repo):
        assert await repo.load_price_list() == []
        assert await repo.replace_price_list(CATALOG) == 3

        entries = await repo.load_price_list()
        assert [e.code for e in entries] == ["EW-01", "CN-07", "MS-03"]
        assert entries[1].rate == 180.0

    async def test_replace_drops_previous_items(self, repo):
        await repo.replace_price_list(CATALOG)
        await repo.replace_price_list(CATALOG[:1])
        assert [e.description for e in await repo.load_price_list()] == ["Bulk excavation in ordinary soil"]

    async def test_keywords_survive(self, repo):
        entry = PriceListEntry(description="Hardcore fill", rate=12.0, keywords=("fill", "hardcore"))
        await repo.replace_price_list([entry])
        [loaded] = await repo.load_price_list()
        assert loaded.keywords == ("fill", "hardcore")


class TestJobs:

    async def test_round_trip(self, repo):
        job = finished_job()
        await repo.save_matching_job(job)

        loaded = await repo.get_matching_job("job-1")
        assert loaded == job
        assert loaded.completed_at.tzinfo is not None
        assert loaded.duration_seconds == pytest.approx(75.0)

    async def test_save_overwrites(self, repo):
        await repo.save_matching_job(finished_job(status=JobStatus.PROCESSING, results=None, progress=40))
        await repo.save_matching_job(finished_job())

        [loaded] = await repo.get_all_jobs()
        assert loaded.status is JobStatus.COMPLETED
        assert len(loaded.results) == 1

    async def test_failed_job_has_no_results(self, repo):
        await repo.save_matching_job(
            finished_job(status=JobStatus.FAILED, results=None, error="timeout: Job exceeded its time limit")
        )
        loaded = await repo.get_matching_job("job-1")
        assert loaded.results is None
        assert loaded.error.startswith("timeout:")

    async def test_unknown_job(self, repo):
        assert await repo.get_matching_job("nope") is None

    async def test_batch_round_trip(self, repo):
        batch = BatchJob(
            id="batch-1",
            client_name="ACME",
            project_name="Tower",
            model=MatchingModel.COHERE,
            status=JobStatus.COMPLETED,
            progress=100,
            file_count=1,
            job_ids=("job-1",),
            results=(BatchFileResult(file_name="bill.xlsx", job_id="job-1", item_count=1, average_confidence=0.91),),
            created_at=STARTED,
            updated_at=FINISHED,
        )
        await repo.save_batch_job(batch)
        assert await repo.get_all_batch_jobs() == [batch]


class TestFailures:

    async def test_missing_tables_raise_persistence_error(self, tmp_path):
        engine = create_engine(DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}"))
        repo = SqlRepository(create_session_factory(engine))
        try:
            with pytest.raises(PersistenceError):
                await repo.save_matching_job(finished_job())
            with pytest.raises(PersistenceError):
                await repo.load_price_list()
        finally:
            await engine.dispose()


class TestRegistryOverSql:

    async def test_history_survives_restart(self, repo, engine):
        registry = JobRegistry(repo)
        await registry.open()
        await repo.save_matching_job(finished_job(id="done"))
        registry.add(finished_job(id="stuck", status=JobStatus.PENDING, results=None, progress=0,
                                  logs=(), started_at=None, completed_at=None))
        await registry.close()

        restarted = JobRegistry(repo)
        await restarted.open()
        await restarted.drain()
        await restarted.close()

        assert restarted.get("done").status is JobStatus.COMPLETED
        stuck = await repo.get_matching_job("stuck")
        assert stuck.status is JobStatus.FAILED
        assert stuck.error == "cancelled: Interrupted by service restart"

        async with engine.connect() as conn:
            count = (await conn.execute(text("select count(*) from matching_jobs"))).scalar_one()
        assert count == 2
