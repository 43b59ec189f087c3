"""Agent interaction logging and aggregated metrics."""

import logging
import math
from datetime import date, datetime, timezone
from typing import Any

from .document_store import SERVER_TIMESTAMP, BaseDocumentStore, DocumentEvent, Increment
from .item_normalizer import coerce_timestamp
from .models import AgentMetrics
from .paths import (
    AGENT_INTERACTIONS,
    AGENT_METRICS_DAILY,
    AGENT_METRICS_EVENTS,
    AGENT_METRICS_GLOBAL,
)

logger = logging.getLogger(__name__)

MAX_INPUT_CHARS = 2000


def _finite(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if math.isfinite(value) else None


def latency_bucket(latency_ms: float) -> str:
    if latency_ms < 2000:
        return "lt_2s"
    if latency_ms < 5000:
        return "2s_5s"
    return "gt_5s"


def confidence_bucket(confidence: float) -> str:
    if confidence <= 0.5:
        return "low"
    if confidence <= 0.8:
        return "medium"
    return "high"


class MetricsRecorder:
    """Writes agent interaction logs."""

    def __init__(self, store: BaseDocumentStore):
        self.store = store

    def record_agent_interaction(
        self,
        user_id: str,
        input_text: str,
        agent: str,
        success: bool,
        used_fallback: bool = False,
        latency_ms: float | None = None,
        confidence: float | None = None,
        metadata: Any = None,
        error: str | None = None,
    ) -> str | None:
        """Record one agent interaction.

        Never raises; a failed write is logged and None is returned.

        Args:
            user_id: Owner the interaction ran for
            input_text: User text, truncated to 2000 characters
            agent: Agent name
            success: Whether the interaction succeeded
            used_fallback: Whether the fallback parser ran
            latency_ms: Latency, clamped to be non-negative
            confidence: Confidence, clamped to 0..1
            metadata: Stored only when it is a dict
            error: Error message, if any

        Returns:
            The interaction document id, or None if the write failed
        """
        latency = _finite(latency_ms)
        confidence_value = _finite(confidence)
        try:
            return self.store.add(
                AGENT_INTERACTIONS,
                {
                    "userId": user_id,
                    "input": (input_text or "")[:MAX_INPUT_CHARS],
                    "agent": agent,
                    "success": bool(success),
                    "usedFallback": bool(used_fallback),
                    "latencyMs": max(0.0, latency) if latency is not None else None,
                    "confidence": (
                        min(1.0, max(0.0, confidence_value)) if confidence_value is not None else None
                    ),
                    "metadata": metadata if isinstance(metadata, dict) else None,
                    "error": error,
                    "createdAt": SERVER_TIMESTAMP,
                },
            )
        except Exception as e:
            logger.error("Failed to record agent interaction for %s (%s): %s", user_id, agent, e)
            return None


class MetricsAggregator:
    """Folds interaction logs into global and daily metrics documents."""

    def __init__(self, store: BaseDocumentStore):
        self.store = store

    def on_interaction_created(self, event: DocumentEvent) -> None:
        """Creation trigger for ``agent_interactions`` documents."""
        applied = self.apply_interaction(event.id, event.data)
        if not applied:
            logger.info("Skipping already aggregated interaction %s", event.id)

    def apply_interaction(self, interaction_id: str, data: dict[str, Any]) -> bool:
        """Aggregate one interaction exactly once.

        Args:
            interaction_id: Interaction document id, used as the dedupe key
            data: Interaction document data

        Returns:
            False if the interaction had already been aggregated
        """
        increments = self._increments(data)
        day = self._day_key(data.get("createdAt"))

        with self.store.transaction() as txn:
            marker_path = f"{AGENT_METRICS_EVENTS}/{interaction_id}"
            if txn.get(marker_path).exists:
                return False
            txn.set(AGENT_METRICS_GLOBAL, increments, merge=True)
            txn.set(f"{AGENT_METRICS_DAILY}/{day}", {**increments, "day": day}, merge=True)
            txn.set(marker_path, {"interactionId": interaction_id, "processedAt": SERVER_TIMESTAMP})
        return True

    def _day_key(self, created_at: Any) -> str:
        timestamp = coerce_timestamp(created_at) or self.store.now()
        return timestamp[:10]

    @staticmethod
    def _increments(data: dict[str, Any]) -> dict[str, Any]:
        success = bool(data.get("success"))
        used_fallback = bool(data.get("usedFallback"))
        agent = str(data.get("agent") or "unknown")

        increments: dict[str, Any] = {
            "totalCount": Increment(1),
            "successCount": Increment(1 if success else 0),
            "fallbackCount": Increment(1 if used_fallback else 0),
            "updatedAt": SERVER_TIMESTAMP,
            "perAgent": {
                agent: {
                    "count": Increment(1),
                    "success": Increment(1 if success else 0),
                    "fallback": Increment(1 if used_fallback else 0),
                }
            },
        }

        latency = _finite(data.get("latencyMs"))
        if latency is not None:
            increments["sumLatencyMs"] = Increment(latency)
            increments["latencySamples"] = Increment(1)
            increments["latencyBuckets"] = {latency_bucket(latency): Increment(1)}

        confidence = _finite(data.get("confidence"))
        if confidence is not None:
            increments["sumConfidence"] = Increment(confidence)
            increments["confidenceSamples"] = Increment(1)
            increments["confidenceBuckets"] = {confidence_bucket(confidence): Increment(1)}

        return increments

    def get_global_metrics(self) -> AgentMetrics:
        """Aggregated metrics across all interactions."""
        return AgentMetrics.model_validate(self.store.get(AGENT_METRICS_GLOBAL).to_dict())

    def get_daily_metrics(self, day: date | datetime | str) -> AgentMetrics:
        """Aggregated metrics for one UTC day (``YYYY-MM-DD``)."""
        if isinstance(day, datetime):
            day = day.astimezone(timezone.utc).date()
        key = day.isoformat() if isinstance(day, date) else str(day)
        return AgentMetrics.model_validate(self.store.get(f"{AGENT_METRICS_DAILY}/{key}").to_dict())
