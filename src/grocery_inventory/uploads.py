"""Upload lifecycle from reservation to ingestion job."""

import logging
import re
from collections.abc import Callable
from typing import Any
from uuid import uuid4

from .blob_storage import BlobEvent, LocalBlobStorage
from .document_store import SERVER_TIMESTAMP, BaseDocumentStore, DocumentEvent, Increment, new_document_id
from .errors import PreconditionError, UploadNotFoundError, UploadTooLargeError
from .grocery_parser import GroceryParser
from .ingestion_jobs import IngestionJobService
from .models import (
    ExtractionResult,
    UploadJob,
    UploadJobStatus,
    UploadRecord,
    UploadReservation,
    UploadSourceType,
    UploadStatus,
)
from .paths import upload_job_path, upload_path, upload_storage_path
from .text_extractor import extract_text_from_upload, infer_source_type

logger = logging.getLogger(__name__)

MAX_FILENAME_LENGTH = 120
_UNSAFE_FILENAME_CHARS = re.compile(r"[^\w.-]")
_TERMINAL_UPLOAD_STATUSES = {UploadStatus.COMPLETED.value, UploadStatus.FAILED.value}


def sanitize_upload_filename(filename: str | None) -> str:
    """Make a filename safe to use as the last storage path segment."""
    if not filename:
        return f"upload-{uuid4()}"
    trimmed = re.sub(r"[/\\]", "", filename.strip())
    if not trimmed:
        return f"upload-{uuid4()}"
    return _UNSAFE_FILENAME_CHARS.sub("_", trimmed)[:MAX_FILENAME_LENGTH]


class UploadService:
    """Manages upload records and upload jobs."""

    def __init__(
        self,
        store: BaseDocumentStore,
        blob_storage: LocalBlobStorage,
        ingestion_jobs: IngestionJobService,
        parser_factory: Callable[[], GroceryParser],
        max_bytes: int = 25 * 1024 * 1024,
        url_expiry_seconds: int = 900,
    ):
        self.store = store
        self.blob_storage = blob_storage
        self.ingestion_jobs = ingestion_jobs
        self.parser_factory = parser_factory
        self.max_bytes = max_bytes
        self.url_expiry_seconds = url_expiry_seconds

    def create_upload(
        self,
        user_id: str,
        filename: str,
        content_type: str,
        size_bytes: int | None = None,
        source_type: UploadSourceType | str | None = None,
    ) -> UploadReservation:
        """Reserve an upload and return a signed write URL.

        Args:
            user_id: Owner of the upload
            filename: Client filename (sanitized before use)
            content_type: Declared MIME type
            size_bytes: Declared size, checked against the cap
            source_type: Optional explicit source type; inferred otherwise

        Returns:
            Upload id, signed URL and storage location

        Raises:
            ValueError: If filename or content type is missing
            UploadTooLargeError: If the declared size exceeds the cap
        """
        if not filename or not content_type:
            raise ValueError("filename and contentType are required")
        if size_bytes is not None:
            if size_bytes < 0:
                raise ValueError("sizeBytes must be a non-negative integer")
            if size_bytes > self.max_bytes:
                raise UploadTooLargeError(size_bytes, self.max_bytes)

        resolved_type = (
            UploadSourceType(source_type) if source_type else infer_source_type(filename, content_type)
        )
        upload_id = new_document_id()
        safe_name = sanitize_upload_filename(filename)
        storage_path = upload_storage_path(user_id, upload_id, safe_name)

        self.store.set(
            upload_path(user_id, upload_id),
            {
                "userId": user_id,
                "filename": safe_name,
                "originalFilename": filename,
                "contentType": content_type,
                "sizeBytes": size_bytes,
                "sourceType": resolved_type.value,
                "bucket": self.blob_storage.bucket,
                "storagePath": storage_path,
                "status": UploadStatus.AWAITING_UPLOAD.value,
                "lastError": None,
                "processingJobId": None,
                "createdAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
            },
        )
        signed = self.blob_storage.signed_upload_url(storage_path, self.url_expiry_seconds)
        logger.info("Reserved upload %s for %s (%s)", upload_id, user_id, resolved_type.value)

        return UploadReservation(
            upload_id=upload_id,
            upload_url=signed.url,
            upload_url_expires_at=signed.expires_at,
            storage_path=storage_path,
            bucket=self.blob_storage.bucket,
        )

    def get_upload(self, user_id: str, upload_id: str) -> UploadRecord:
        """Load an upload record.

        Raises:
            UploadNotFoundError: If the upload does not exist for this user
        """
        snapshot = self.store.get(upload_path(user_id, upload_id))
        if not snapshot.exists:
            raise UploadNotFoundError(upload_id)
        return UploadRecord.model_validate({**snapshot.to_dict(), "id": upload_id})

    def queue_upload(self, user_id: str, upload_id: str) -> UploadJob:
        """Queue an upload for processing.

        Returns:
            The queued upload job

        Raises:
            UploadNotFoundError: If the upload does not exist
            PreconditionError: If the upload is already queued, processing or done
        """
        path = upload_path(user_id, upload_id)
        job_id = new_document_id()

        with self.store.transaction() as txn:
            snapshot = txn.get(path)
            if not snapshot.exists:
                raise UploadNotFoundError(upload_id)
            status = snapshot.get("status")
            if status in (UploadStatus.PROCESSING.value, UploadStatus.COMPLETED.value) or (
                status == UploadStatus.QUEUED.value and snapshot.get("processingJobId")
            ):
                raise PreconditionError("Upload is already being processed")

            job_document = {
                "uploadId": upload_id,
                "userId": user_id,
                "storagePath": snapshot.get("storagePath"),
                "bucket": snapshot.get("bucket"),
                "contentType": snapshot.get("contentType"),
                "sourceType": snapshot.get("sourceType") or UploadSourceType.UNKNOWN.value,
                "status": UploadJobStatus.QUEUED.value,
                "attempts": 0,
                "lastError": None,
                "createdAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
            }
            txn.create(upload_job_path(user_id, job_id), job_document)
            txn.update(
                path,
                {
                    "status": UploadStatus.QUEUED.value,
                    "processingJobId": job_id,
                    "lastError": None,
                    "queuedAt": SERVER_TIMESTAMP,
                    "updatedAt": SERVER_TIMESTAMP,
                },
            )
            queued = UploadJob.model_validate(
                {**txn.get(upload_job_path(user_id, job_id)).to_dict(), "id": job_id}
            )

        logger.info("Queued upload %s as job %s", upload_id, job_id)
        return queued

    def handle_storage_finalized(self, event: BlobEvent) -> None:
        """Storage trigger for ``uploads/{uid}/{uploadId}/{filename}``."""
        user_id = event.params.get("uid")
        upload_id = event.params.get("uploadId")
        if not user_id or not upload_id:
            return

        snapshot = self.store.get(upload_path(user_id, upload_id))
        if not snapshot.exists:
            logger.warning("Blob %s has no upload record", event.storage_path)
            return
        if snapshot.get("status") != UploadStatus.AWAITING_UPLOAD.value:
            logger.info("Upload %s already %s; not queueing", upload_id, snapshot.get("status"))
            return

        self.store.update(
            upload_path(user_id, upload_id),
            {"sizeBytes": event.size, "updatedAt": SERVER_TIMESTAMP},
        )
        try:
            self.queue_upload(user_id, upload_id)
        except PreconditionError:
            logger.info("Upload %s was queued concurrently", upload_id)

    def _claim_job(self, path: str) -> bool:
        with self.store.transaction() as txn:
            snapshot = txn.get(path)
            if not snapshot.exists or snapshot.get("status") != UploadJobStatus.QUEUED.value:
                return False
            txn.update(
                path,
                {
                    "status": UploadJobStatus.PROCESSING.value,
                    "attempts": Increment(1),
                    "startedAt": SERVER_TIMESTAMP,
                    "updatedAt": SERVER_TIMESTAMP,
                },
            )
        return True

    def extract_upload_text(self, user_id: str, upload_id: str) -> ExtractionResult:
        """Read an upload's blob and extract its text."""
        upload = self.get_upload(user_id, upload_id)
        data = self.blob_storage.read(upload.storage_path)
        return extract_text_from_upload(
            data,
            upload.content_type,
            upload.source_type,
            filename=upload.original_filename or upload.filename,
            parser=self.parser_factory(),
        )

    def process_upload_job(self, event: DocumentEvent) -> None:
        """Creation trigger for ``users/{uid}/upload_jobs`` documents.

        Extracts the upload's text and spawns exactly one ingestion job.
        Only ``queued`` jobs are processed.
        """
        user_id = event.params.get("uid") or str(event.data.get("userId"))
        job_id = event.id
        job_path = upload_job_path(user_id, job_id)

        if not self._claim_job(job_path):
            logger.info("Skipping upload job %s: not queued", job_id)
            return

        upload_id = event.data.get("uploadId")
        try:
            job = UploadJob.model_validate({**self.store.get(job_path).to_dict(), "id": job_id})
            upload_id = job.upload_id
            record_path = upload_path(user_id, job.upload_id)
            self.store.set(
                record_path,
                {
                    "status": UploadStatus.PROCESSING.value,
                    "processingStage": "extracting_text",
                    "updatedAt": SERVER_TIMESTAMP,
                },
                merge=True,
            )
            extraction = self.extract_upload_text(user_id, job.upload_id)
            metadata: dict[str, Any] = {
                "source": "upload",
                "uploadId": job.upload_id,
                "storagePath": job.storage_path,
                "contentType": job.content_type,
                "extraction": extraction.metadata,
            }
            fits = len(extraction.text) <= self.ingestion_jobs.max_text_chars
            ingestion_job = self.ingestion_jobs.create_job(
                user_id,
                text=extraction.text if fits else None,
                metadata=metadata,
                upload_id=job.upload_id,
            )

            with self.store.transaction() as txn:
                current = txn.get(record_path)
                record_update: dict[str, Any] = {
                    "textPreview": extraction.preview,
                    "ingestionJobId": ingestion_job.id,
                    "updatedAt": SERVER_TIMESTAMP,
                }
                if current.get("status") not in _TERMINAL_UPLOAD_STATUSES:
                    record_update["status"] = UploadStatus.PROCESSING.value
                    record_update["processingStage"] = "ingestion_job_created"
                txn.set(record_path, record_update, merge=True)

            self.store.set(
                job_path,
                {
                    "status": UploadJobStatus.COMPLETED.value,
                    "ingestionJobId": ingestion_job.id,
                    "completedAt": SERVER_TIMESTAMP,
                    "updatedAt": SERVER_TIMESTAMP,
                },
                merge=True,
            )
            logger.info("Upload %s spawned ingestion job %s", job.upload_id, ingestion_job.id)
        except Exception as e:
            logger.exception("Upload job %s failed for %s", job_id, user_id)
            message = str(e) or "Upload processing failed"
            self.store.set(
                job_path,
                {
                    "status": UploadJobStatus.FAILED.value,
                    "lastError": message,
                    "updatedAt": SERVER_TIMESTAMP,
                },
                merge=True,
            )
            if isinstance(upload_id, str) and upload_id:
                self.store.set(
                    upload_path(user_id, upload_id),
                    {
                        "status": UploadStatus.FAILED.value,
                        "lastError": message,
                        "processingStage": "failed",
                        "updatedAt": SERVER_TIMESTAMP,
                    },
                    merge=True,
                )
