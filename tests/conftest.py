"""Shared test fixtures for Grocery Inventory."""

import json
from types import SimpleNamespace
from typing import Any

import pytest

from grocery_inventory.blob_storage import LocalBlobStorage
from grocery_inventory.config import ConfigManager
from grocery_inventory.document_store import MemoryDocumentStore
from grocery_inventory.grocery_parser import GroceryParser
from grocery_inventory.inventory_engine import InventoryUpdateEngine
from grocery_inventory.services import build_services
from grocery_inventory.sqlite_store import SQLiteDocumentStore

TEST_TOKEN = "test-token"
TEST_USER = "user-1"


class FakeCompletions:
    """Scripted stand-in for ``client.chat.completions``."""

    def __init__(self, responses: list[Any]):
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if not self.responses:
            raise RuntimeError("No scripted completion left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeOpenAI:
    """Minimal OpenAI-compatible client for tests."""

    def __init__(self, responses: list[Any] | None = None):
        self.chat = SimpleNamespace(completions=FakeCompletions(responses or []))

    @property
    def calls(self) -> list[dict[str, Any]]:
        return self.chat.completions.calls


def completion(content: str | None = None, tool_calls: list[Any] | None = None) -> Any:
    """Build a chat completion response object."""
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def tool_call(name: str, arguments: dict[str, Any], call_id: str = "call-1") -> Any:
    """Build a tool call entry for a completion message."""
    return SimpleNamespace(
        id=call_id,
        type="function",
        function=SimpleNamespace(name=name, arguments=json.dumps(arguments)),
    )


@pytest.fixture(autouse=True)
def no_openai_key(monkeypatch):
    """Keep tests off the real API regardless of the environment."""
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("UPLOAD_SIGNING_KEY", raising=False)


@pytest.fixture
def temp_data_dir(tmp_path):
    """Create a temporary data directory."""
    data_dir = tmp_path / "test_data"
    data_dir.mkdir()
    return data_dir


@pytest.fixture
def config_file(tmp_path, temp_data_dir):
    """Write a config.toml pointing at the temporary data directory."""
    path = tmp_path / "config.toml"
    path.write_text(
        f"""
[data]
storage_dir = "{temp_data_dir.as_posix()}"
backend = "memory"

[ingestion]
background_triggers = false

[uploads]
base_url = "http://testserver"
signing_key = "test-signing-key"

[auth.tokens]
"{TEST_TOKEN}" = "{TEST_USER}"
""",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def config(config_file):
    """ConfigManager loaded from the temporary config file."""
    return ConfigManager(config_file)


@pytest.fixture
def memory_store():
    """Create an in-memory document store."""
    return MemoryDocumentStore()


@pytest.fixture
def sqlite_store(temp_data_dir):
    """Create a SQLite document store in the temporary directory."""
    return SQLiteDocumentStore(db_path=temp_data_dir / "test.db")


@pytest.fixture
def engine(memory_store):
    """Create an InventoryUpdateEngine over the memory store."""
    return InventoryUpdateEngine(memory_store)


@pytest.fixture
def blob_storage(temp_data_dir):
    """Create blob storage under the temporary directory."""
    return LocalBlobStorage(
        root=temp_data_dir / "blobs",
        bucket="test-bucket",
        signing_key="test-signing-key",
        base_url="http://testserver",
    )


@pytest.fixture
def heuristic_parser():
    """A parser without an API key, so only the heuristic runs."""
    return GroceryParser()


@pytest.fixture
def services(config, memory_store, blob_storage):
    """Fully wired services without a language model."""
    return build_services(config, store=memory_store, blob_storage=blob_storage)
