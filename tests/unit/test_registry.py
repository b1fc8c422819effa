"""Tests for the job registry state machine and write-through persistence."""

import pytest

from boq.errors import Cancelled, PersistenceError, ProviderUnavailable, ValidationError
from boq.pipelines.registry import JobRegistry
from boq.repository import InMemoryRepository
from boq.schemas import BatchJob, JobStatus, MatchedItem, MatchingJob, MatchingModel


def item(confidence: float = 0.9) -> MatchedItem:
    return MatchedItem(
        source_description="Excavation for foundations",
        matched_description="Bulk excavation in ordinary soil",
        matched_rate=25.5,
        confidence=confidence,
    )


@pytest.fixture
async def registry():
    reg = JobRegistry(InMemoryRepository())
    await reg.open()
    yield reg
    await reg.close()


def new_job(registry: JobRegistry, **kwargs) -> MatchingJob:
    return registry.add(MatchingJob(id=kwargs.pop("id", "job-1"), model=MatchingModel.COHERE, **kwargs))


class TestLifecycle:

    async def test_claim_only_once(self, registry):
        new_job(registry)
        assert registry.claim("job-1").status is JobStatus.PROCESSING
        assert registry.claim("job-1") is None

    async def test_claim_records_start(self, registry):
        new_job(registry)
        job = registry.claim("job-1")
        assert job.started_at is not None

    async def test_complete_sets_results_and_status_together(self, registry):
        new_job(registry)
        registry.claim("job-1")
        before = registry.get("job-1")

        assert registry.complete("job-1", [item()], "done")
        after = registry.get("job-1")

        assert before.status is JobStatus.PROCESSING and before.results is None
        assert after.status is JobStatus.COMPLETED
        assert after.results == (item(),)
        assert after.progress == 100
        assert after.completed_at is not None
        assert after.duration_seconds is not None

    async def test_fail_sets_classified_error(self, registry):
        new_job(registry)
        registry.claim("job-1")
        registry.fail("job-1", ProviderUnavailable())
        job = registry.get("job-1")
        assert job.status is JobStatus.FAILED
        assert job.error.startswith("provider_unavailable: ")
        assert job.results is None

    async def test_unknown_exceptions_are_internal_errors(self, registry):
        new_job(registry)
        registry.claim("job-1")
        registry.fail("job-1", KeyError("secret detail"))
        assert registry.get("job-1").error == "internal_error: Matching failed"

    async def test_pending_job_can_be_cancelled(self, registry):
        new_job(registry)
        assert registry.fail("job-1", Cancelled())
        assert registry.get("job-1").error == "cancelled: Job cancelled"
        assert registry.claim("job-1") is None


class TestTerminalImmutability:

    async def test_completed_job_ignores_late_updates(self, registry):
        new_job(registry)
        registry.claim("job-1")
        registry.complete("job-1", [item()], "done")
        snapshot = registry.get("job-1")

        assert not registry.fail("job-1", ProviderUnavailable())
        assert not registry.complete("job-1", [item(0.1)], "again")
        assert not registry.progress("job-1", 50, "late")
        assert registry.get("job-1") == snapshot

    async def test_failed_job_ignores_completion(self, registry):
        new_job(registry)
        registry.claim("job-1")
        registry.fail("job-1", Cancelled())
        assert not registry.complete("job-1", [item()], "done")
        job = registry.get("job-1")
        assert job.status is JobStatus.FAILED
        assert job.results is None


class TestProgress:

    async def test_progress_never_decreases(self, registry):
        new_job(registry)
        registry.claim("job-1")
        for percent in (10, 40, 30, 60):
            registry.progress("job-1", percent, f"at {percent}")
        job = registry.get("job-1")
        assert job.progress == 60
        assert "at 30" not in job.logs

    async def test_sink_receives_every_event(self, registry):
        seen = []
        registry.add(MatchingJob(id="job-1", model=MatchingModel.COHERE), lambda p, m: seen.append(p))
        registry.claim("job-1")
        registry.progress("job-1", 20, "a")
        registry.progress("job-1", 20, "b")
        registry.complete("job-1", [item()], "done")
        assert seen == [0, 0, 20, 20, 100]

    async def test_failing_sink_does_not_break_job(self, registry):
        def sink(percent, message):
            raise RuntimeError("consumer gone")

        registry.add(MatchingJob(id="job-1", model=MatchingModel.COHERE), sink)
        registry.claim("job-1")
        assert registry.progress("job-1", 50, "half")
        assert registry.get("job-1").progress == 50

    async def test_subscribe_streams_until_terminal(self, registry):
        new_job(registry)
        registry.claim("job-1")
        stream = registry.subscribe("job-1")

        first = await stream.__anext__()
        registry.progress("job-1", 40, "embedding")
        registry.complete("job-1", [item()], "done")
        rest = [event async for event in stream]

        assert first.status is JobStatus.PROCESSING
        assert [e.percent for e in rest] == [40, 100]
        assert rest[-1].status is JobStatus.COMPLETED


class TestPersistence:

    async def test_every_transition_is_written_through(self):
        repo = InMemoryRepository()
        registry = JobRegistry(repo)
        await registry.open()
        new_job(registry)
        registry.claim("job-1")
        registry.complete("job-1", [item()], "done")
        await registry.drain()

        stored = await repo.get_matching_job("job-1")
        assert stored == registry.get("job-1")
        await registry.close()

    async def test_history_survives_restart(self):
        repo = InMemoryRepository()
        first = JobRegistry(repo)
        await first.open()
        new_job(first, id="done")
        first.claim("done")
        first.complete("done", [item()], "ok")
        new_job(first, id="stuck")
        first.claim("stuck")
        await first.close()

        second = JobRegistry(repo)
        await second.open()
        assert second.get("done").status is JobStatus.COMPLETED
        stuck = second.get("stuck")
        assert stuck.status is JobStatus.FAILED
        assert stuck.error == "cancelled: Interrupted by service restart"
        await second.close()

    async def test_storage_failure_is_logged_not_raised(self, caplog):
        class FailingRepo(InMemoryRepository):
            async def save_matching_job(self, job):
                raise PersistenceError("disk full")

        registry = JobRegistry(FailingRepo())
        await registry.open()
        new_job(registry)
        await registry.drain()
        await registry.close()

        assert any(r.levelname == "CRITICAL" for r in caplog.records)
        assert registry.get("job-1").status is JobStatus.PENDING

    async def test_restart_finishes_batch_whose_children_are_done(self):
        repo = InMemoryRepository()
        first = JobRegistry(repo)
        await first.open()
        new_job(first, id="a", batch_id="b1", file_name="bill.xlsx")
        first.claim("a")
        first.complete("a", [item()], "done")
        await first.close()
        # Child outcome stored, batch still recorded as processing
        await repo.save_batch_job(BatchJob(
            id="b1", client_name="ACME", project_name="Tower", model=MatchingModel.COHERE,
            status=JobStatus.PROCESSING, file_count=1, job_ids=("a",),
        ))

        second = JobRegistry(repo)
        await second.open()
        await second.drain()
        await second.close()

        batch = second.get_batch("b1")
        assert batch.status is JobStatus.COMPLETED
        assert [r.file_name for r in batch.results] == ["bill.xlsx"]
        [stored] = await repo.get_all_batch_jobs()
        assert stored.status is JobStatus.COMPLETED


class TestBatchAggregation:

    async def test_batch_status_follows_children(self, registry):
        new_job(registry, id="a", batch_id="b1")
        new_job(registry, id="b", batch_id="b1")
        registry.add_batch(BatchJob(
            id="b1", client_name="ACME", project_name="Tower", model=MatchingModel.COHERE,
            file_count=2, job_ids=("a", "b"),
        ))

        registry.claim("a")
        assert registry.get_batch("b1").status is JobStatus.PROCESSING

        registry.complete("a", [item()], "done")
        registry.fail("b", Cancelled())
        batch = registry.get_batch("b1")
        assert batch.status is JobStatus.COMPLETED
        assert batch.progress == 100
        assert {r.job_id for r in batch.results} == {"a", "b"}
        assert next(r for r in batch.results if r.job_id == "b").error.startswith("cancelled")

    async def test_batch_fails_when_all_children_fail(self, registry):
        new_job(registry, id="a", batch_id="b1")
        registry.add_batch(BatchJob(
            id="b1", client_name="ACME", project_name="Tower", model=MatchingModel.COHERE,
            file_count=1, job_ids=("a",),
        ))
        registry.fail("a", ProviderUnavailable())
        batch = registry.get_batch("b1")
        assert batch.status is JobStatus.FAILED
        assert batch.error == ProviderUnavailable().classified

    async def test_cancelled_batch_carries_cancelled_error(self, registry):
        for job_id in ("a", "b"):
            new_job(registry, id=job_id, batch_id="b1")
        registry.add_batch(BatchJob(
            id="b1", client_name="ACME", project_name="Tower", model=MatchingModel.COHERE,
            file_count=2, job_ids=("a", "b"),
        ))
        registry.claim("a")
        registry.fail("a", Cancelled("Cancelled by client"))
        registry.fail("b", Cancelled("Cancelled by client"))

        batch = registry.get_batch("b1")
        assert batch.status is JobStatus.FAILED
        assert batch.error == "cancelled: Cancelled by client"

    async def test_mixed_failures_share_only_a_generic_error(self, registry):
        for job_id in ("a", "b"):
            new_job(registry, id=job_id, batch_id="b1")
        registry.add_batch(BatchJob(
            id="b1", client_name="ACME", project_name="Tower", model=MatchingModel.COHERE,
            file_count=2, job_ids=("a", "b"),
        ))
        registry.fail("a", Cancelled())
        registry.fail("b", ProviderUnavailable())
        assert registry.get_batch("b1").error == "All files failed"

    async def test_failed_child_alone_does_not_start_batch(self, registry):
        new_job(registry, id="good", batch_id="b1")
        new_job(registry, id="bad", batch_id="b1")
        registry.add_batch(BatchJob(
            id="b1", client_name="ACME", project_name="Tower", model=MatchingModel.COHERE,
            file_count=2, job_ids=("good", "bad"),
        ))
        registry.fail("bad", ValidationError("No valid BoQ data found in bad.csv"))

        batch = registry.get_batch("b1")
        assert batch.status is JobStatus.PENDING
        assert batch.started_at is None

        claimed = registry.claim("good")
        batch = registry.get_batch("b1")
        assert batch.status is JobStatus.PROCESSING
        assert batch.started_at == claimed.started_at
