"""HTTP surface tests through FastAPI's TestClient."""

import asyncio
import io
import time

import pandas as pd
import pytest
from fastapi import UploadFile
from fastapi.testclient import TestClient

from boq.api import create_app, stream_matching_job
from boq.config import LoggingSettings, Settings
from boq.pipelines.batch import BatchProcessor
from boq.repository import InMemoryRepository
from boq.schemas import JobStatus
from tests.fakes import CATALOG, ConceptProvider, boq_workbook, strategy_factory

XLSX = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def make_client(provider, repository=None):
    processor = BatchProcessor(
        repository or InMemoryRepository(CATALOG),
        strategy_factory(provider),
        max_concurrency=2,
        job_timeout=5,
    )
    cfg = Settings(logging=LoggingSettings(format="text", level="WARNING"))
    return TestClient(create_app(processor=processor, cfg=cfg))


@pytest.fixture
def client():
    with make_client(ConceptProvider()) as client:
        yield client


@pytest.fixture
def stalled_client():
    """Client whose embedding calls never return, so jobs stay unfinished."""
    with make_client(ConceptProvider(gate=asyncio.Event())) as client:
        yield client


def upload(client, content=None, name="bill.xlsx", **data):
    return client.post(
        "/matching/jobs",
        files={"file": (name, content if content is not None else boq_workbook(), XLSX)},
        data=data,
    )


def wait_for(client, path, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(path).json()
        if body["status"] in ("completed", "failed"):
            return body
        time.sleep(0.02)
    raise AssertionError(f"{path} did not finish within {timeout}s")


class TestService:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["running_jobs"] == 0
        assert body["version"] == Settings().version

    def test_root_lists_endpoints(self, client):
        assert "/matching/jobs" in client.get("/").json()["endpoints"].values()


class TestMatchingJobs:

    def test_upload_poll_and_download(self, client):
        response = upload(client, model="v0", project_id="p-1")
        assert response.status_code == 202
        submitted = response.json()
        assert submitted["item_count"] == 2
        assert submitted["status"] == "pending"

        job = wait_for(client, f"/matching/jobs/{submitted['job_id']}")
        assert job["status"] == "completed"
        assert job["model"] == "cohere"
        assert job["project_id"] == "p-1"
        assert [r["matched_code"] for r in job["results"]] == ["EW-01", "CN-07"]
        assert job["logs"][-1] == "Job completed: 2 items matched"

        download = client.get(f"/matching/jobs/{submitted['job_id']}/download", params={"format": "csv"})
        assert download.status_code == 200
        assert download.headers["content-type"].startswith("text/csv")
        assert 'filename="bill_matched.csv"' in download.headers["content-disposition"]
        df = pd.read_csv(io.BytesIO(download.content))
        assert df["Matched Rate"].tolist() == [25.5, 180.0]

    def test_xlsx_download(self, client):
        job_id = upload(client).json()["job_id"]
        wait_for(client, f"/matching/jobs/{job_id}")

        download = client.get(f"/matching/jobs/{job_id}/download")
        assert download.headers["content-type"] == XLSX
        assert len(pd.read_excel(io.BytesIO(download.content))) == 2

    def test_list_and_stats(self, client):
        job_id = upload(client).json()["job_id"]
        wait_for(client, f"/matching/jobs/{job_id}")

        [summary] = client.get("/matching/jobs").json()
        assert summary["id"] == job_id
        assert "results" not in summary
        assert client.get("/matching/stats").json()["by_status"]["completed"] == 1

    def test_unknown_job_is_404(self, client):
        response = client.get("/matching/jobs/nope")
        assert response.status_code == 404
        assert response.json() == {"error": "not_found", "detail": "Job nope not found"}

    def test_unknown_model_is_400(self, client):
        response = upload(client, model="gemini")
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_unreadable_file_is_400(self, client):
        response = upload(client, content=b"just text", name="notes.txt")
        assert response.status_code == 400
        assert client.get("/matching/jobs").json() == []

    def test_bad_download_format(self, client):
        job_id = upload(client).json()["job_id"]
        assert client.get(f"/matching/jobs/{job_id}/download", params={"format": "pdf"}).status_code == 422

    def test_events_after_completion(self, client):
        job_id = upload(client).json()["job_id"]
        wait_for(client, f"/matching/jobs/{job_id}")

        response = client.get(f"/matching/jobs/{job_id}/events")
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.text.startswith("event: progress\ndata: ")
        assert '"status":"completed"' in response.text

    def test_stream_runs_job_to_completion(self, client):
        response = client.post(
            "/matching/stream",
            files={"file": ("bill.xlsx", boq_workbook(), XLSX)},
        )
        job_id = response.headers["x-job-id"]
        assert response.text.rstrip().endswith("}")
        assert '"percent":100' in response.text
        assert client.get(f"/matching/jobs/{job_id}").json()["status"] == "completed"

    def test_empty_price_list_fails_job(self):
        with make_client(ConceptProvider(), InMemoryRepository()) as client:
            job_id = upload(client).json()["job_id"]
            job = wait_for(client, f"/matching/jobs/{job_id}")
        assert job["status"] == "failed"
        assert job["error"].startswith("no_reference_data:")
        assert job["results"] is None


class TestUnfinishedJobs:

    def test_download_before_completion_is_409(self, stalled_client):
        job_id = upload(stalled_client).json()["job_id"]
        response = stalled_client.get(f"/matching/jobs/{job_id}/download")
        assert response.status_code == 409
        assert response.json()["error"] == "job_not_ready"

    def test_cancel(self, stalled_client):
        job_id = upload(stalled_client).json()["job_id"]
        response = stalled_client.post(f"/matching/jobs/{job_id}/cancel")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "failed"
        assert body["error"] == "cancelled: Cancelled by client"
        assert body["results"] is None


class TestBatchJobs:

    def test_batch_upload_and_download(self, client):
        response = client.post(
            "/batch/jobs",
            files=[
                ("files", ("Bill 1.xlsx", boq_workbook(), XLSX)),
                ("files", ("Bill 2.xlsx", boq_workbook(), XLSX)),
            ],
            data={"client_name": "ACME Builders", "project_name": "River Tower"},
        )
        assert response.status_code == 202
        submitted = response.json()
        assert submitted["file_count"] == 2
        assert len(submitted["job_ids"]) == 2

        batch = wait_for(client, f"/batch/jobs/{submitted['batch_id']}")
        assert batch["status"] == "completed"
        assert {r["file_name"] for r in batch["results"]} == {"Bill 1.xlsx", "Bill 2.xlsx"}
        assert [b["id"] for b in client.get("/batch/jobs").json()] == [submitted["batch_id"]]

        download = client.get(f"/batch/jobs/{submitted['batch_id']}/download")
        assert 'filename="ACME_Builders_River_Tower_results.xlsx"' in download.headers["content-disposition"]
        sheets = pd.read_excel(io.BytesIO(download.content), sheet_name=None)
        assert list(sheets)[0] == "Summary"
        assert len(sheets) == 3

    def test_batch_without_usable_files_is_400(self, client):
        response = client.post(
            "/batch/jobs",
            files=[("files", ("empty.csv", b"a,b\n", "text/csv"))],
            data={"client_name": "ACME", "project_name": "Tower"},
        )
        assert response.status_code == 400
        assert client.get("/batch/jobs").json() == []

    def test_cancel_batch(self, stalled_client):
        batch_id = stalled_client.post(
            "/batch/jobs",
            files=[("files", ("Bill 1.xlsx", boq_workbook(), XLSX))],
            data={"client_name": "ACME", "project_name": "Tower"},
        ).json()["batch_id"]

        batch = stalled_client.post(f"/batch/jobs/{batch_id}/cancel").json()
        assert batch["status"] == "failed"
        assert batch["error"] == "cancelled: Cancelled by client"
        assert batch["results"][0]["error"].startswith("cancelled:")


class TestPriceListImport:

    def test_import_replaces_catalog(self):
        repository = InMemoryRepository()
        with make_client(ConceptProvider(), repository) as client:
            response = client.post(
                "/price-list/import",
                files={"file": ("prices.csv", b"Description,Rate\nBulk excavation,25.5\nConcrete mix,180\n", "text/csv")},
            )
            assert response.status_code == 200
            assert response.json()["imported"] == 2

            job = wait_for(client, f"/matching/jobs/{upload(client).json()['job_id']}")
        assert job["results"][0]["matched_description"] == "Bulk excavation"

    def test_import_without_rates_is_400(self, client):
        response = client.post(
            "/price-list/import",
            files={"file": ("prices.csv", b"Description,Rate\nBulk excavation,\n", "text/csv")},
        )
        assert response.status_code == 400


class TestStreamDisconnect:

    async def test_closing_the_stream_cancels_the_job(self):
        gate = asyncio.Event()
        processor = BatchProcessor(
            InMemoryRepository(CATALOG), strategy_factory(ConceptProvider(gate=gate)), max_concurrency=1
        )
        await processor.start()
        try:
            response = await stream_matching_job(
                file=UploadFile(file=io.BytesIO(boq_workbook()), filename="bill.xlsx"),
                model=None,
                project_id=None,
                processor=processor,
            )
            job_id = response.headers["x-job-id"]
            body = response.body_iterator

            first = await body.__anext__()
            assert first.startswith("event: progress")
            await body.aclose()

            job = processor.get(job_id)
            assert job.status is JobStatus.FAILED
            assert job.error == "cancelled: Client disconnected"
        finally:
            gate.set()
            await processor.shutdown()

    async def test_finished_stream_leaves_job_alone(self, processor):
        response = await stream_matching_job(
            file=UploadFile(file=io.BytesIO(boq_workbook()), filename="bill.xlsx"),
            model=None,
            project_id=None,
            processor=processor,
        )
        chunks = [chunk async for chunk in response.body_iterator]

        assert '"status":"completed"' in chunks[-1]
        assert processor.get(response.headers["x-job-id"]).status is JobStatus.COMPLETED
