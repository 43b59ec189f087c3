"""Exception types raised across Grocery Inventory."""


class UpdateValidationError(ValueError):
    """Raised when a proposed inventory update fails field validation."""

    def __init__(self, message: str, name: str | None = None):
        self.name = name
        super().__init__(message)


class ConfigurationError(Exception):
    """Raised when a required external credential is not configured."""


class ExtractionError(Exception):
    """Raised when an uploaded artifact cannot be turned into text."""


class PreconditionError(Exception):
    """Raised when a state transition is requested from the wrong state."""


class DocumentNotFoundError(Exception):
    """Raised when a document does not exist in the store."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Document not found: {path}")


class BlobNotFoundError(Exception):
    """Raised when a stored blob does not exist."""

    def __init__(self, storage_path: str):
        self.storage_path = storage_path
        super().__init__(f"Blob not found: {storage_path}")


class JobNotFoundError(Exception):
    """Raised when an ingestion job is not found."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Ingestion job '{job_id}' not found")


class UploadNotFoundError(Exception):
    """Raised when an upload record is not found."""

    def __init__(self, upload_id: str):
        self.upload_id = upload_id
        super().__init__(f"Upload '{upload_id}' not found")


class UploadTooLargeError(ValueError):
    """Raised when a declared upload exceeds the size cap."""

    def __init__(self, size_bytes: int, max_bytes: int):
        self.size_bytes = size_bytes
        self.max_bytes = max_bytes
        super().__init__(
            f"Upload exceeds maximum size of {max_bytes // (1024 * 1024)} MB "
            f"({size_bytes} bytes requested)"
        )
