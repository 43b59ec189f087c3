"""Tests for asynchronous ingestion jobs."""

import pytest

from grocery_inventory.document_store import DocumentEvent
from grocery_inventory.errors import JobNotFoundError
from grocery_inventory.ingestion_jobs import IngestionJobService, sanitize_metadata
from grocery_inventory.models import IngestionJobStatus, PipelineResult
from grocery_inventory.paths import ingestion_job_path, upload_path

USER = "user-1"


class StubPipeline:
    """Pipeline double recording its calls."""

    def __init__(self, result=None, error=None):
        self.result = result or PipelineResult(success=True, summary="ok", agent_response="ok")
        self.error = error
        self.calls = []

    def execute(self, user_id, text, metadata=None):
        self.calls.append((user_id, text, metadata))
        if self.error is not None:
            raise self.error
        return self.result


def event_for(job):
    return DocumentEvent(
        path=ingestion_job_path(USER, job.id), data=job.to_document(), params={"uid": USER}
    )


@pytest.fixture
def stub_pipeline():
    return StubPipeline()


@pytest.fixture
def jobs(memory_store, stub_pipeline):
    """Job service without triggers, so tests drive processing explicitly."""
    return IngestionJobService(memory_store, stub_pipeline, max_text_chars=50)


class TestCreateJob:
    """Tests for creating jobs."""

    def test_creates_pending_job(self, jobs):
        job = jobs.create_job(USER, text="  bought milk  ", metadata={"source": "cli"})
        assert job.status == IngestionJobStatus.PENDING
        assert job.text == "bought milk"
        assert job.metadata == {"source": "cli"}
        assert job.created_at is not None

    def test_requires_text_or_upload(self, jobs):
        with pytest.raises(ValueError, match="Either text or uploadId is required"):
            jobs.create_job(USER, text="   ")

    def test_text_length_cap(self, jobs):
        with pytest.raises(ValueError, match="Text must be 50 characters or fewer"):
            jobs.create_job(USER, text="x" * 51)

    def test_get_missing_job(self, jobs):
        with pytest.raises(JobNotFoundError):
            jobs.get_job(USER, "nope")


class TestProcessJob:
    """Tests for the processing trigger."""

    def test_completes(self, jobs, stub_pipeline):
        job = jobs.create_job(USER, text="bought milk", metadata={"source": "cli"})
        jobs.process_job(event_for(job))

        done = jobs.get_job(USER, job.id)
        assert done.status == IngestionJobStatus.COMPLETED
        assert done.result_summary == "ok"
        assert done.started_at is not None
        assert done.completed_at is not None
        assert stub_pipeline.calls == [(USER, "bought milk", {"source": "cli"})]

    def test_redelivery_is_skipped(self, jobs, stub_pipeline):
        job = jobs.create_job(USER, text="bought milk")
        jobs.process_job(event_for(job))
        jobs.process_job(event_for(job))
        assert len(stub_pipeline.calls) == 1

    def test_unsuccessful_pipeline_marks_failed(self, memory_store):
        pipeline = StubPipeline(PipelineResult(success=False, error="nothing to apply"))
        jobs = IngestionJobService(memory_store, pipeline)
        job = jobs.create_job(USER, text="hmm")
        jobs.process_job(event_for(job))

        failed = jobs.get_job(USER, job.id)
        assert failed.status == IngestionJobStatus.FAILED
        assert failed.last_error == "nothing to apply"

    def test_pipeline_exception_marks_failed(self, memory_store):
        jobs = IngestionJobService(memory_store, StubPipeline(error=RuntimeError("boom")))
        job = jobs.create_job(USER, text="bought milk")
        jobs.process_job(event_for(job))

        failed = jobs.get_job(USER, job.id)
        assert failed.status == IngestionJobStatus.FAILED
        assert failed.last_error == "boom"

    def test_upload_job_without_resolver_fails(self, jobs):
        job = jobs.create_job(USER, upload_id="upload-1")
        jobs.process_job(event_for(job))
        failed = jobs.get_job(USER, job.id)
        assert failed.status == IngestionJobStatus.FAILED
        assert failed.last_error == "Upload text resolution is not configured"

    def test_unreadable_job_still_ends_failed(self, jobs, memory_store, stub_pipeline):
        memory_store.set(upload_path(USER, "upload-1"), {"status": "processing"})
        path = ingestion_job_path(USER, "broken")
        memory_store.set(
            path,
            {"userId": USER, "status": "pending", "uploadId": "upload-1", "metadata": "not a map"},
        )
        jobs.process_job(
            DocumentEvent(path=path, data=memory_store.get(path).to_dict(), params={"uid": USER})
        )

        stored = memory_store.get(path)
        assert stored.get("status") == IngestionJobStatus.FAILED.value
        assert stored.get("lastError")
        assert stub_pipeline.calls == []

        upload = memory_store.get(upload_path(USER, "upload-1"))
        assert upload.get("status") == "failed"
        assert upload.get("lastError") == stored.get("lastError")


class TestWiredJobs:
    """Jobs processed by the registered creation trigger."""

    def test_job_runs_on_create(self, services):
        job = services.ingestion_jobs.create_job("user-1", text="bought 2 litres milk and 3 eggs")
        done = services.ingestion_jobs.get_job("user-1", job.id)

        assert done.status == IngestionJobStatus.COMPLETED
        assert done.fallback_applied
        assert done.result_summary == "Fallback parser applied 2/2 updates (0 failed)."
        assert done.fallback_details["summary"] == {"total": 2, "successful": 2, "failed": 0}
        assert services.engine.get_item("user-1", "eggs").quantity == 3

    def test_job_without_updates_fails(self, services):
        job = services.ingestion_jobs.create_job("user-1", text="!!!")
        failed = services.ingestion_jobs.get_job("user-1", job.id)
        assert failed.status == IngestionJobStatus.FAILED
        assert failed.last_error == "Fallback parser could not find any grocery updates"


class TestSanitizeMetadata:
    """Tests for metadata sanitization."""

    def test_non_dict(self):
        assert sanitize_metadata(["a"]) is None
        assert sanitize_metadata(None) is None

    def test_drops_non_json_values(self):
        cleaned = sanitize_metadata({"ok": 1, "bad": object(), "nan": float("nan"), "flag": True})
        assert cleaned == {"ok": 1, "flag": True}

    def test_caps_strings_and_entries(self):
        cleaned = sanitize_metadata({"note": "x" * 600, "items": list(range(80))})
        assert len(cleaned["note"]) == 500
        assert len(cleaned["items"]) == 50

    def test_caps_depth(self):
        nested = {"a": {"b": {"c": {"d": {"e": {"f": 1}}}}}}
        assert sanitize_metadata(nested) == {"a": {"b": {"c": {"d": {}}}}}

    def test_oversized_metadata_is_truncated(self):
        big = {f"k{n}": "y" * 500 for n in range(40)}
        assert sanitize_metadata(big) == {"truncated": True}
