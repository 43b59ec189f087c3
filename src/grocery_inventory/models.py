"""Core data models for Grocery Inventory.

Every persisted record is a pydantic model whose document form uses camelCase
keys. Python attributes stay snake_case; ``to_document`` dumps by alias.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class DocumentModel(BaseModel):
    """Base for models stored in the document store."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self, exclude_none: bool = False) -> dict[str, Any]:
        """Dump to a JSON-compatible dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=exclude_none)


class UpdateAction(str, Enum):
    """Inventory update actions."""

    ADD = "add"
    SUBTRACT = "subtract"
    SET = "set"


class ResultAction(str, Enum):
    """What the engine did with an update."""

    CREATED = "created"
    UPDATED = "updated"


class InventoryActionType(str, Enum):
    """Audit action types for inventory batches."""

    UPDATE = "inventory_update"
    APPLY = "inventory_apply"
    AGENT = "inventory_agent"


class IngestionJobStatus(str, Enum):
    """Ingestion job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class UploadStatus(str, Enum):
    """Upload record lifecycle states."""

    AWAITING_UPLOAD = "awaiting_upload"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class UploadJobStatus(str, Enum):
    """Upload job lifecycle states."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class UploadSourceType(str, Enum):
    """Kinds of uploaded artifacts."""

    TEXT = "text"
    PDF = "pdf"
    IMAGE_RECEIPT = "image_receipt"
    IMAGE_LIST = "image_list"
    SPREADSHEET = "spreadsheet"
    UNKNOWN = "unknown"


class ConfidenceLevel(str, Enum):
    """Coarse parse confidence levels."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class InventoryItem(DocumentModel):
    """An item in a user's inventory."""

    id: str | None = None
    name: str
    quantity: float = 0
    unit: str | None = "unit"
    category: str | None = "uncategorized"
    location: str | None = None
    low_stock_threshold: float = 1
    notes: str | None = None
    brand: str | None = None
    size: str | None = None
    expiration_date: str | None = None
    search_keywords: list[str] = Field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None
    last_updated: str | None = None

    @property
    def is_low_stock(self) -> bool:
        """Check if item is at or below low stock threshold."""
        return self.quantity <= self.low_stock_threshold


class ProposedUpdate(DocumentModel):
    """A validated inventory mutation.

    Only fields passed to the constructor appear in ``model_fields_set``;
    the engine merges exactly those into an existing item.
    """

    name: str
    quantity: float
    action: UpdateAction
    unit: str | None = None
    category: str | None = None
    location: str | None = None
    notes: str | None = None
    brand: str | None = None
    size: str | None = None
    expiration_date: str | None = None
    low_stock_threshold: float | None = None
    confidence: float | None = None
    needs_review: bool | None = None

    def supplied(self, field_name: str) -> bool:
        """Whether a field was explicitly supplied."""
        return field_name in self.model_fields_set


class UpdateResult(DocumentModel):
    """Outcome of a single inventory update."""

    success: bool
    name: str
    id: str | None = None
    action: ResultAction | None = None
    quantity: float | None = None
    expiration_date: str | None = None
    message: str | None = None
    error: str | None = None


class BatchSummary(DocumentModel):
    """Counts for a batch of updates."""

    total: int = 0
    successful: int = 0
    failed: int = 0


class ApplyResult(DocumentModel):
    """Result of applying a batch of updates."""

    results: list[UpdateResult] = Field(default_factory=list)
    summary: BatchSummary = Field(default_factory=BatchSummary)
    validation_errors: list[str] = Field(default_factory=list)


class ParseResult(DocumentModel):
    """Output of the grocery parser."""

    items: list[dict[str, Any]] = Field(default_factory=list)
    confidence: float = 0.0
    needs_review: bool = True
    original_text: str = ""
    error: str | None = None
    used_fallback: bool = False
    rejected: list[str] = Field(default_factory=list)


class ExtractionResult(DocumentModel):
    """Text extracted from an uploaded artifact."""

    text: str
    preview: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class ToolInvocation(DocumentModel):
    """A single tool call made by the agent."""

    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    error: str | None = None


class AgentRunResult(DocumentModel):
    """Result of one agent run."""

    success: bool
    response: str = ""
    error: str | None = None
    tool_invocations: list[ToolInvocation] = Field(default_factory=list)
    latency_ms: float | None = None


class PipelineResult(DocumentModel):
    """Result of the ingestion pipeline."""

    success: bool
    agent_response: str = ""
    summary: str = ""
    error: str | None = None
    tool_invocations: list[ToolInvocation] = Field(default_factory=list)
    used_fallback: bool = False
    fallback_details: ApplyResult | None = None
    latency_ms: float = 0.0


class IngestionJob(DocumentModel):
    """An asynchronous text ingestion job."""

    id: str | None = None
    user_id: str
    status: IngestionJobStatus = IngestionJobStatus.PENDING
    text: str | None = None
    upload_id: str | None = None
    metadata: dict[str, Any] | None = None
    agent_response: str | None = None
    result_summary: str | None = None
    last_error: str | None = None
    tool_invocations: list[dict[str, Any]] = Field(default_factory=list)
    fallback_applied: bool = False
    fallback_details: dict[str, Any] | None = None
    latency_ms: float | None = None
    created_at: str | None = None
    updated_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None


class UploadRecord(DocumentModel):
    """A user upload awaiting or undergoing processing."""

    id: str | None = None
    user_id: str
    filename: str
    original_filename: str | None = None
    content_type: str
    size_bytes: int | None = None
    source_type: UploadSourceType = UploadSourceType.UNKNOWN
    bucket: str
    storage_path: str
    status: UploadStatus = UploadStatus.AWAITING_UPLOAD
    last_error: str | None = None
    processing_job_id: str | None = None
    ingestion_job_id: str | None = None
    processing_stage: str | None = None
    text_preview: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    queued_at: str | None = None
    completed_at: str | None = None


class UploadJob(DocumentModel):
    """A queued unit of upload processing."""

    id: str | None = None
    upload_id: str
    user_id: str
    storage_path: str
    bucket: str
    content_type: str
    source_type: UploadSourceType = UploadSourceType.UNKNOWN
    status: UploadJobStatus = UploadJobStatus.QUEUED
    attempts: int = 0
    last_error: str | None = None
    ingestion_job_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None


class UploadReservation(DocumentModel):
    """Returned when an upload is created."""

    upload_id: str
    upload_url: str
    upload_url_expires_at: str
    storage_path: str
    bucket: str
    status: UploadStatus = UploadStatus.AWAITING_UPLOAD


class AgentInteractionLog(DocumentModel):
    """A single recorded agent interaction."""

    user_id: str
    input: str
    agent: str
    success: bool
    used_fallback: bool = False
    latency_ms: float | None = None
    confidence: float | None = None
    metadata: dict[str, Any] | None = None
    error: str | None = None
    created_at: str | None = None


class AgentMetrics(DocumentModel):
    """Read model over an aggregated metrics document."""

    total_count: int = 0
    success_count: int = 0
    fallback_count: int = 0
    sum_latency_ms: float = 0.0
    latency_samples: int = 0
    latency_buckets: dict[str, int] = Field(default_factory=dict)
    sum_confidence: float = 0.0
    confidence_samples: int = 0
    confidence_buckets: dict[str, int] = Field(default_factory=dict)
    per_agent: dict[str, dict[str, int]] = Field(default_factory=dict)
    updated_at: str | None = None

    @property
    def success_rate(self) -> float:
        """Fraction of interactions that succeeded."""
        return self.success_count / self.total_count if self.total_count else 0.0

    @property
    def fallback_rate(self) -> float:
        """Fraction of interactions that used the fallback parser."""
        return self.fallback_count / self.total_count if self.total_count else 0.0

    @property
    def average_latency_ms(self) -> float | None:
        """Mean latency over interactions that reported one."""
        if not self.latency_samples:
            return None
        return self.sum_latency_ms / self.latency_samples

    @property
    def average_confidence(self) -> float | None:
        """Mean confidence over interactions that reported one."""
        if not self.confidence_samples:
            return None
        return self.sum_confidence / self.confidence_samples

    def summary(self) -> dict[str, Any]:
        """Document form plus derived rates."""
        data = self.to_document()
        data.update(
            {
                "successRate": self.success_rate,
                "fallbackRate": self.fallback_rate,
                "averageLatencyMs": self.average_latency_ms,
                "averageConfidence": self.average_confidence,
            }
        )
        return data
