"""Local blob storage with signed upload URLs and finalize triggers."""

import hashlib
import hmac
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from urllib.parse import quote

from .document_store import match_path_pattern
from .errors import BlobNotFoundError
from .item_normalizer import format_timestamp, utc_now

logger = logging.getLogger(__name__)


@dataclass
class SignedUrl:
    """A time-limited write URL."""

    url: str
    expires_at: str
    expires: int


@dataclass
class BlobEvent:
    """Delivered to finalize handlers once a blob is fully written."""

    storage_path: str
    bucket: str
    content_type: str | None
    size: int
    params: dict[str, str] = field(default_factory=dict)


FinalizeHandler = Callable[[BlobEvent], None]


class LocalBlobStorage:
    """Stores blobs as files beneath ``root/bucket``."""

    def __init__(
        self,
        root: Path,
        bucket: str,
        signing_key: str,
        base_url: str = "http://127.0.0.1:8000",
        clock: Callable[[], datetime] | None = None,
    ):
        self.root = root
        self.bucket = bucket
        self._signing_key = signing_key.encode("utf-8")
        self.base_url = base_url.rstrip("/")
        self._clock = clock or utc_now
        self._finalize_handlers: list[tuple[str, FinalizeHandler]] = []

    def _blob_path(self, storage_path: str) -> Path:
        segments = storage_path.strip("/").split("/")
        if not storage_path.strip("/") or any(s in ("", ".", "..") for s in segments):
            raise ValueError(f"Invalid storage path: {storage_path}")
        return self.root / self.bucket / Path(*segments)

    def _signature(self, storage_path: str, expires: int) -> str:
        message = f"{self.bucket}:{storage_path}:{expires}".encode("utf-8")
        return hmac.new(self._signing_key, message, hashlib.sha256).hexdigest()

    def signed_upload_url(self, storage_path: str, expires_in: int = 900) -> SignedUrl:
        """Create a signed PUT URL for a storage path.

        Args:
            storage_path: Destination path inside the bucket
            expires_in: Lifetime of the URL in seconds

        Returns:
            The URL and its expiry
        """
        expiry = self._clock() + timedelta(seconds=expires_in)
        expires = int(expiry.timestamp())
        url = (
            f"{self.base_url}/storage/{quote(storage_path)}"
            f"?expires={expires}&signature={self._signature(storage_path, expires)}"
        )
        return SignedUrl(url=url, expires_at=format_timestamp(expiry), expires=expires)

    def verify_signature(self, storage_path: str, expires: int, signature: str) -> bool:
        """Check a signed URL's signature and expiry."""
        if expires < int(self._clock().timestamp()):
            return False
        return hmac.compare_digest(self._signature(storage_path, expires), signature)

    def on_finalize(self, path_pattern: str, handler: FinalizeHandler) -> None:
        """Register a handler for blobs written under a matching path.

        Args:
            path_pattern: Path with ``{param}`` segments, e.g.
                ``uploads/{uid}/{uploadId}/{filename}``
            handler: Called with a BlobEvent after the write completes
        """
        self._finalize_handlers.append((path_pattern, handler))

    def write(self, storage_path: str, data: bytes, content_type: str | None = None) -> BlobEvent:
        """Write a blob and run finalize handlers."""
        target = self._blob_path(storage_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.debug("Stored blob %s (%d bytes)", storage_path, len(data))

        event = BlobEvent(
            storage_path=storage_path,
            bucket=self.bucket,
            content_type=content_type,
            size=len(data),
        )
        for pattern, handler in self._finalize_handlers:
            params = match_path_pattern(pattern, storage_path)
            if params is None:
                continue
            event.params = params
            try:
                handler(event)
            except Exception:
                logger.exception("Finalize handler failed for %s", storage_path)
        return event

    def read(self, storage_path: str) -> bytes:
        """Read a blob.

        Raises:
            BlobNotFoundError: If nothing is stored at the path
        """
        target = self._blob_path(storage_path)
        if not target.exists():
            raise BlobNotFoundError(storage_path)
        return target.read_bytes()

    def exists(self, storage_path: str) -> bool:
        return self._blob_path(storage_path).exists()
