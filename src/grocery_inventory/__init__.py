"""Grocery Inventory - turn grocery text and uploaded files into inventory updates."""

__version__ = "0.1.0"

from .config import ConfigManager
from .document_store import BackendType, BaseDocumentStore, MemoryDocumentStore, create_document_store
from .errors import (
    ConfigurationError,
    ExtractionError,
    JobNotFoundError,
    PreconditionError,
    UpdateValidationError,
    UploadNotFoundError,
    UploadTooLargeError,
)
from .grocery_parser import GroceryParser
from .ingestion_jobs import IngestionJobService
from .inventory_engine import InventoryUpdateEngine
from .metrics import MetricsAggregator, MetricsRecorder
from .models import (
    AgentMetrics,
    ApplyResult,
    IngestionJob,
    InventoryItem,
    PipelineResult,
    ProposedUpdate,
    UpdateAction,
    UploadRecord,
)
from .output_formatter import OutputFormatter
from .pipeline import IngestionPipeline
from .services import Services, build_services
from .sqlite_store import SQLiteDocumentStore
from .uploads import UploadService

__all__ = [
    "AgentMetrics",
    "ApplyResult",
    "BackendType",
    "BaseDocumentStore",
    "build_services",
    "ConfigManager",
    "ConfigurationError",
    "create_document_store",
    "ExtractionError",
    "GroceryParser",
    "IngestionJob",
    "IngestionJobService",
    "IngestionPipeline",
    "InventoryItem",
    "InventoryUpdateEngine",
    "JobNotFoundError",
    "MemoryDocumentStore",
    "MetricsAggregator",
    "MetricsRecorder",
    "OutputFormatter",
    "PipelineResult",
    "PreconditionError",
    "ProposedUpdate",
    "Services",
    "SQLiteDocumentStore",
    "UpdateAction",
    "UpdateValidationError",
    "UploadNotFoundError",
    "UploadRecord",
    "UploadService",
    "UploadTooLargeError",
]
