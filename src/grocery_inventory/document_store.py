"""Document persistence for Grocery Inventory.

Documents live at slash-separated paths (``collection/docId`` with any number
of nested ``collection/docId`` pairs) and hold JSON-compatible dicts. Two
backends share one implementation of the write semantics:

- ``MemoryDocumentStore`` keeps documents in a dict guarded by a re-entrant lock.
- ``SQLiteDocumentStore`` (in ``sqlite_store``) persists them in SQLite.

Use create_document_store() to get the appropriate backend based on configuration.
"""

import copy
import logging
import re
import threading
from collections.abc import Callable, Iterator
from concurrent.futures import Executor, Future, wait
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from .errors import DocumentNotFoundError
from .item_normalizer import format_timestamp, utc_now

logger = logging.getLogger(__name__)

_PATTERN_PARAM = re.compile(r"^\{(\w+)\}$")


class BackendType(str, Enum):
    """Document store backend types."""

    MEMORY = "memory"
    SQLITE = "sqlite"


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass(frozen=True)
class Increment:
    """Write sentinel that adds ``amount`` to the stored numeric value."""

    amount: float = 1


def new_document_id() -> str:
    return uuid4().hex[:20]


def split_path(path: str) -> tuple[str, str]:
    """Split a document path into its collection path and document id.

    Raises:
        ValueError: If the path does not name a document
    """
    segments = [segment for segment in path.strip("/").split("/") if segment]
    if not segments or len(segments) % 2 != 0:
        raise ValueError(f"Invalid document path: {path}")
    return "/".join(segments[:-1]), segments[-1]


def match_path_pattern(pattern: str, path: str) -> dict[str, str] | None:
    """Match a path against a pattern such as ``users/{uid}/inventory``.

    Returns:
        Captured parameters, or None when the path does not match
    """
    pattern_segments = pattern.strip("/").split("/")
    path_segments = path.strip("/").split("/")
    if len(pattern_segments) != len(path_segments):
        return None

    params: dict[str, str] = {}
    for expected, actual in zip(pattern_segments, path_segments):
        param = _PATTERN_PARAM.match(expected)
        if param:
            params[param.group(1)] = actual
        elif expected != actual:
            return None
    return params


@dataclass
class DocumentSnapshot:
    """A document read from the store."""

    path: str
    data: dict[str, Any] | None

    @property
    def id(self) -> str:
        return split_path(self.path)[1]

    @property
    def exists(self) -> bool:
        return self.data is not None

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self.data) if self.data is not None else {}

    def get(self, key: str, default: Any = None) -> Any:
        if self.data is None:
            return default
        return self.data.get(key, default)


@dataclass
class DocumentEvent:
    """Delivered to creation triggers after the creating write commits."""

    path: str
    data: dict[str, Any]
    params: dict[str, str] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return split_path(self.path)[1]


TriggerHandler = Callable[[DocumentEvent], None]


class StoreSession:
    """Backend primitives used inside a single locked unit of work."""

    def __init__(self) -> None:
        self.created: list[str] = []

    def read(self, path: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def write(self, path: str, data: dict[str, Any]) -> None:
        raise NotImplementedError

    def remove(self, path: str) -> None:
        raise NotImplementedError

    def scan(self, collection: str) -> list[tuple[str, dict[str, Any]]]:
        raise NotImplementedError


class Transaction:
    """Reads and writes that commit together.

    Obtained from ``store.transaction()``. All reads see the writes made
    earlier in the same transaction.
    """

    def __init__(self, store: "BaseDocumentStore", session: StoreSession):
        self._store = store
        self._session = session

    def get(self, path: str) -> DocumentSnapshot:
        return DocumentSnapshot(path, self._session.read(path))

    def set(self, path: str, data: dict[str, Any], merge: bool = False) -> None:
        self._store._set_in(self._session, path, data, merge)

    def create(self, path: str, data: dict[str, Any]) -> None:
        self._store._set_in(self._session, path, data, merge=False)

    def update(self, path: str, data: dict[str, Any]) -> None:
        self._store._update_in(self._session, path, data)

    def delete(self, path: str) -> None:
        self._session.remove(path)


class BaseDocumentStore:
    """Write semantics and creation triggers shared by all backends.

    Subclasses implement ``_begin()``, a context manager that yields a
    ``StoreSession`` holding the backend lock, committing on success and
    rolling back when the body raises.

    Creation triggers run on the writing thread unless an executor is set
    with ``use_executor()``, in which case the write returns as soon as it
    commits and handlers run on the executor's workers.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None):
        self._clock = clock or utc_now
        self._local = threading.local()
        self._triggers: list[tuple[str, TriggerHandler]] = []
        self._executor: Executor | None = None
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()

    def _begin(self) -> AbstractContextManager[StoreSession]:
        raise NotImplementedError

    @contextmanager
    def _session(self) -> Iterator[StoreSession]:
        active = getattr(self._local, "session", None)
        if active is not None:
            yield active
            return

        with self._begin() as session:
            self._local.session = session
            try:
                yield session
            finally:
                self._local.session = None

        self._dispatch(session)

    # Triggers

    def on_create(self, collection_pattern: str, handler: TriggerHandler) -> None:
        """Register a handler for documents created in matching collections.

        Args:
            collection_pattern: Collection path with ``{param}`` segments,
                e.g. ``users/{uid}/ingestion_jobs``
            handler: Called with a DocumentEvent after the write commits
        """
        self._triggers.append((collection_pattern, handler))

    def use_executor(self, executor: Executor | None) -> None:
        """Run creation triggers on ``executor``; None restores inline dispatch."""
        self._executor = executor

    def wait_for_triggers(self, timeout: float | None = None) -> None:
        """Block until submitted triggers, and any they submit in turn, finish."""
        while True:
            with self._pending_lock:
                pending = set(self._pending)
            if not pending:
                return
            _, not_done = wait(pending, timeout=timeout)
            if not_done:
                raise TimeoutError(f"{len(not_done)} triggers still running")

    def _dispatch(self, session: StoreSession) -> None:
        for path in session.created:
            collection, _ = split_path(path)
            for pattern, handler in self._triggers:
                params = match_path_pattern(pattern, collection)
                if params is None:
                    continue
                data = self.get(path).data
                if data is None:
                    continue
                event = DocumentEvent(path=path, data=data, params=params)
                if self._executor is None:
                    self._run_trigger(handler, event, pattern)
                else:
                    self._submit_trigger(handler, event, pattern)

    def _submit_trigger(self, handler: TriggerHandler, event: DocumentEvent, pattern: str) -> None:
        with self._pending_lock:
            future = self._executor.submit(self._run_trigger, handler, event, pattern)
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _run_trigger(self, handler: TriggerHandler, event: DocumentEvent, pattern: str) -> None:
        try:
            handler(event)
        except Exception:
            logger.exception("Trigger handler failed for %s (%s)", event.path, pattern)

    # Write semantics

    def now(self) -> str:
        """Current server timestamp as an ISO string."""
        return format_timestamp(self._clock())

    def _resolve(self, value: Any, current: Any) -> Any:
        if value is SERVER_TIMESTAMP:
            return self.now()
        if isinstance(value, Increment):
            base = current if isinstance(current, (int, float)) and not isinstance(current, bool) else 0
            return base + value.amount
        if isinstance(value, dict):
            nested_current = current if isinstance(current, dict) else {}
            return {key: self._resolve(item, nested_current.get(key)) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._resolve(item, None) for item in value]
        return copy.deepcopy(value)

    def _merge(self, target: dict[str, Any], data: dict[str, Any]) -> None:
        for key, value in data.items():
            if isinstance(value, dict) and isinstance(target.get(key), dict):
                self._merge(target[key], value)
            else:
                target[key] = self._resolve(value, target.get(key))

    def _set_in(
        self, session: StoreSession, path: str, data: dict[str, Any], merge: bool
    ) -> None:
        split_path(path)
        existing = session.read(path)
        if merge and existing is not None:
            result = copy.deepcopy(existing)
            self._merge(result, data)
        else:
            result = self._resolve(data, None)
        session.write(path, result)
        if existing is None and path not in session.created:
            session.created.append(path)

    def _update_in(self, session: StoreSession, path: str, data: dict[str, Any]) -> None:
        existing = session.read(path)
        if existing is None:
            raise DocumentNotFoundError(path)
        result = copy.deepcopy(existing)
        for key, value in data.items():
            parts = key.split(".")
            target = result
            for part in parts[:-1]:
                if not isinstance(target.get(part), dict):
                    target[part] = {}
                target = target[part]
            target[parts[-1]] = self._resolve(value, target.get(parts[-1]))
        session.write(path, result)

    # Public API

    def get(self, path: str) -> DocumentSnapshot:
        """Read a document; missing documents have ``exists == False``."""
        with self._session() as session:
            return DocumentSnapshot(path, session.read(path))

    def set(self, path: str, data: dict[str, Any], merge: bool = False) -> None:
        """Write a document, replacing it unless ``merge`` is set."""
        with self._session() as session:
            self._set_in(session, path, data, merge)

    def update(self, path: str, data: dict[str, Any]) -> None:
        """Update fields of an existing document.

        Keys may be dotted paths into nested maps.

        Raises:
            DocumentNotFoundError: If the document does not exist
        """
        with self._session() as session:
            self._update_in(session, path, data)

    def add(self, collection: str, data: dict[str, Any]) -> str:
        """Create a document with a generated id and return the id."""
        doc_id = new_document_id()
        self.set(f"{collection}/{doc_id}", data)
        return doc_id

    def delete(self, path: str) -> None:
        with self._session() as session:
            session.remove(path)

    def list_documents(self, collection: str) -> list[DocumentSnapshot]:
        """All documents directly inside a collection."""
        with self._session() as session:
            return [DocumentSnapshot(path, data) for path, data in session.scan(collection)]

    def query(
        self,
        collection: str,
        where: Callable[[dict[str, Any]], bool] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[DocumentSnapshot]:
        """Query a collection.

        Args:
            collection: Collection path
            where: Optional predicate over document data
            order_by: Optional field to sort by; documents missing it sort last
            descending: Reverse the sort order
            limit: Maximum number of documents returned

        Returns:
            Matching document snapshots
        """
        snapshots = self.list_documents(collection)
        if where is not None:
            snapshots = [snap for snap in snapshots if where(snap.data or {})]
        if order_by is not None:
            present = [snap for snap in snapshots if snap.get(order_by) is not None]
            missing = [snap for snap in snapshots if snap.get(order_by) is None]
            present.sort(key=lambda snap: snap.get(order_by), reverse=descending)
            snapshots = present + missing
        if limit is not None:
            snapshots = snapshots[:limit]
        return snapshots

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """Run reads and writes atomically.

        Writes are rolled back if the body raises; creation triggers run
        after commit.
        """
        with self._session() as session:
            yield Transaction(self, session)


class _MemorySession(StoreSession):
    def __init__(self, documents: dict[str, dict[str, Any]]):
        super().__init__()
        self._documents = documents
        self._journal: dict[str, dict[str, Any] | None] = {}

    def read(self, path: str) -> dict[str, Any] | None:
        data = self._documents.get(path)
        return copy.deepcopy(data) if data is not None else None

    def _remember(self, path: str) -> None:
        if path not in self._journal:
            self._journal[path] = self._documents.get(path)

    def write(self, path: str, data: dict[str, Any]) -> None:
        self._remember(path)
        self._documents[path] = copy.deepcopy(data)

    def remove(self, path: str) -> None:
        self._remember(path)
        self._documents.pop(path, None)

    def scan(self, collection: str) -> list[tuple[str, dict[str, Any]]]:
        prefix = collection.strip("/") + "/"
        return [
            (path, copy.deepcopy(data))
            for path, data in self._documents.items()
            if path.startswith(prefix) and "/" not in path[len(prefix) :]
        ]

    def rollback(self) -> None:
        for path, previous in self._journal.items():
            if previous is None:
                self._documents.pop(path, None)
            else:
                self._documents[path] = previous
        self.created.clear()


class MemoryDocumentStore(BaseDocumentStore):
    """Process-local document store."""

    def __init__(self, clock: Callable[[], datetime] | None = None):
        super().__init__(clock)
        self._documents: dict[str, dict[str, Any]] = {}
        self._lock = threading.RLock()

    @contextmanager
    def _begin(self) -> Iterator[StoreSession]:
        with self._lock:
            session = _MemorySession(self._documents)
            try:
                yield session
            except Exception:
                session.rollback()
                raise


def create_document_store(
    backend: BackendType = BackendType.MEMORY,
    data_dir: Path | None = None,
    db_path: Path | None = None,
    clock: Callable[[], datetime] | None = None,
) -> BaseDocumentStore:
    """Create a document store with the specified backend.

    Args:
        backend: Which backend to use (memory or sqlite)
        data_dir: Base directory for the SQLite database if db_path not specified
        db_path: Path to SQLite database file (only used by SQLite backend)
        clock: Optional clock used for server timestamps

    Returns:
        A MemoryDocumentStore or SQLiteDocumentStore instance
    """
    if backend == BackendType.SQLITE:
        from .sqlite_store import SQLiteDocumentStore

        if db_path is None and data_dir is not None:
            db_path = data_dir / "grocery_inventory.db"

        return SQLiteDocumentStore(db_path=db_path, clock=clock)
    else:
        return MemoryDocumentStore(clock=clock)
