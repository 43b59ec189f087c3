"""Asynchronous ingestion jobs.

A job is created ``pending``; its creation trigger moves it through
``processing`` to ``completed`` or ``failed``.
"""

import json
import logging
import math
from collections.abc import Callable
from typing import Any

from .document_store import SERVER_TIMESTAMP, BaseDocumentStore, DocumentEvent
from .errors import JobNotFoundError
from .models import ExtractionResult, IngestionJob, IngestionJobStatus, UploadStatus
from .paths import ingestion_job_path, ingestion_jobs_collection, upload_path
from .pipeline import IngestionPipeline

logger = logging.getLogger(__name__)

MAX_METADATA_DEPTH = 5
MAX_METADATA_ENTRIES = 50
MAX_METADATA_STRING = 500
MAX_METADATA_BYTES = 10 * 1024

_DROP = object()


def _sanitize_value(value: Any, depth: int) -> Any:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else _DROP
    if isinstance(value, str):
        return value[:MAX_METADATA_STRING]
    if depth >= MAX_METADATA_DEPTH:
        return _DROP
    if isinstance(value, dict):
        cleaned = {}
        for key, item in list(value.items())[:MAX_METADATA_ENTRIES]:
            sanitized = _sanitize_value(item, depth + 1)
            if sanitized is not _DROP:
                cleaned[str(key)] = sanitized
        return cleaned
    if isinstance(value, (list, tuple)):
        cleaned_items = []
        for item in list(value)[:MAX_METADATA_ENTRIES]:
            sanitized = _sanitize_value(item, depth + 1)
            if sanitized is not _DROP:
                cleaned_items.append(sanitized)
        return cleaned_items
    return _DROP


def sanitize_metadata(metadata: Any) -> dict[str, Any] | None:
    """Reduce caller metadata to a small JSON-compatible dict.

    Non-JSON values are dropped, nesting is capped at five levels, each
    level keeps at most fifty entries and strings are cut to 500
    characters. A result larger than 10 KB is replaced by
    ``{"truncated": True}``.
    """
    if not isinstance(metadata, dict):
        return None
    cleaned = _sanitize_value(metadata, 0)
    if len(json.dumps(cleaned).encode("utf-8")) > MAX_METADATA_BYTES:
        return {"truncated": True}
    return cleaned


class IngestionJobService:
    """Creates and processes ingestion jobs."""

    def __init__(
        self,
        store: BaseDocumentStore,
        pipeline: IngestionPipeline,
        max_text_chars: int = 6000,
        resolve_upload_text: Callable[[str, str], ExtractionResult] | None = None,
    ):
        self.store = store
        self.pipeline = pipeline
        self.max_text_chars = max_text_chars
        self.resolve_upload_text = resolve_upload_text

    def create_job(
        self,
        user_id: str,
        text: str | None = None,
        metadata: dict[str, Any] | None = None,
        upload_id: str | None = None,
    ) -> IngestionJob:
        """Create a pending ingestion job.

        Args:
            user_id: Owner of the job
            text: Grocery text to ingest
            metadata: Optional caller metadata (sanitized before storage)
            upload_id: Upload whose extracted text should be ingested instead

        Returns:
            The stored job

        Raises:
            ValueError: If neither text nor an upload is given, or text is too long
        """
        if text is not None:
            text = text.strip()
        if not text and not upload_id:
            raise ValueError("Either text or uploadId is required")
        if text and len(text) > self.max_text_chars:
            raise ValueError(f"Text must be {self.max_text_chars} characters or fewer")

        document = {
            "userId": user_id,
            "status": IngestionJobStatus.PENDING.value,
            "text": text or None,
            "uploadId": upload_id,
            "metadata": sanitize_metadata(metadata),
            "createdAt": SERVER_TIMESTAMP,
            "updatedAt": SERVER_TIMESTAMP,
        }
        job_id = self.store.add(ingestion_jobs_collection(user_id), document)
        logger.info("Created ingestion job %s for %s", job_id, user_id)
        return self.get_job(user_id, job_id)

    def get_job(self, user_id: str, job_id: str) -> IngestionJob:
        """Load a job.

        Raises:
            JobNotFoundError: If the job does not exist for this user
        """
        snapshot = self.store.get(ingestion_job_path(user_id, job_id))
        if not snapshot.exists:
            raise JobNotFoundError(job_id)
        return IngestionJob.model_validate({**snapshot.to_dict(), "id": job_id})

    def _claim(self, path: str) -> bool:
        with self.store.transaction() as txn:
            snapshot = txn.get(path)
            if not snapshot.exists or snapshot.get("status") != IngestionJobStatus.PENDING.value:
                return False
            txn.update(
                path,
                {
                    "status": IngestionJobStatus.PROCESSING.value,
                    "startedAt": SERVER_TIMESTAMP,
                    "updatedAt": SERVER_TIMESTAMP,
                },
            )
        return True

    def process_job(self, event: DocumentEvent) -> None:
        """Creation trigger for ``users/{uid}/ingestion_jobs`` documents.

        Only ``pending`` jobs are processed, so redelivered events are
        harmless. Every claimed job ends ``completed`` or ``failed``.
        """
        user_id = event.params.get("uid") or str(event.data.get("userId"))
        job_id = event.id
        path = ingestion_job_path(user_id, job_id)

        if not self._claim(path):
            logger.info("Skipping ingestion job %s: not pending", job_id)
            return

        upload_id = event.data.get("uploadId")
        try:
            job = self.get_job(user_id, job_id)
            upload_id = job.upload_id or (job.metadata or {}).get("uploadId")
            text = job.text
            metadata = dict(job.metadata or {})
            if not text and job.upload_id:
                if self.resolve_upload_text is None:
                    raise ValueError("Upload text resolution is not configured")
                extraction = self.resolve_upload_text(user_id, job.upload_id)
                text = extraction.text
                metadata.setdefault("source", "upload")
                metadata.setdefault("uploadId", job.upload_id)
                metadata.setdefault("extraction", extraction.metadata)
            if not text:
                raise ValueError("Ingestion job has no text to process")

            result = self.pipeline.execute(user_id, text, metadata)
            terminal = {
                "agentResponse": result.agent_response,
                "resultSummary": result.summary,
                "toolInvocations": [inv.to_document() for inv in result.tool_invocations],
                "fallbackApplied": result.used_fallback,
                "fallbackDetails": (
                    result.fallback_details.to_document() if result.fallback_details else None
                ),
                "latencyMs": result.latency_ms,
                "updatedAt": SERVER_TIMESTAMP,
            }
            if result.success:
                terminal.update(
                    {
                        "status": IngestionJobStatus.COMPLETED.value,
                        "lastError": None,
                        "completedAt": SERVER_TIMESTAMP,
                    }
                )
            else:
                terminal.update(
                    {
                        "status": IngestionJobStatus.FAILED.value,
                        "lastError": result.error or result.summary or "Ingestion failed",
                    }
                )
            self.store.set(path, terminal, merge=True)
        except Exception as e:
            logger.exception("Ingestion job %s failed for %s", job_id, user_id)
            self.store.set(
                path,
                {
                    "status": IngestionJobStatus.FAILED.value,
                    "lastError": str(e) or "Ingestion failed",
                    "updatedAt": SERVER_TIMESTAMP,
                },
                merge=True,
            )

        if upload_id:
            self._sync_parent_upload(user_id, job_id, str(upload_id))

    def _sync_parent_upload(self, user_id: str, job_id: str, upload_id: str) -> None:
        final = self.store.get(ingestion_job_path(user_id, job_id))
        status = (
            UploadStatus.COMPLETED
            if final.get("status") == IngestionJobStatus.COMPLETED.value
            else UploadStatus.FAILED
        )
        update: dict[str, Any] = {
            "status": status.value,
            "processingStage": f"ingestion_{status.value}",
            "ingestionJobId": job_id,
            "updatedAt": SERVER_TIMESTAMP,
        }
        if status == UploadStatus.COMPLETED:
            update["completedAt"] = SERVER_TIMESTAMP
            update["lastError"] = None
        else:
            update["lastError"] = final.get("lastError")
        try:
            if self.store.get(upload_path(user_id, upload_id)).exists:
                self.store.set(upload_path(user_id, upload_id), update, merge=True)
        except Exception as e:
            logger.error("Failed to update upload %s for job %s: %s", upload_id, job_id, e)
