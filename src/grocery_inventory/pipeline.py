"""Ingestion pipeline: agent first, fallback parser when the agent did not act."""

import logging
import time
from collections.abc import Callable
from typing import Any

from .agent import AGENT_NAME, AgentRunner
from .grocery_parser import GroceryParser
from .inventory_engine import InventoryUpdateEngine
from .metrics import MetricsRecorder
from .models import AgentRunResult, ApplyResult, InventoryActionType, PipelineResult

logger = logging.getLogger(__name__)

APPLY_TOOL_NAME = "apply_inventory_updates"


class IngestionPipeline:
    """Runs grocery text through the agent, the fallback parser and metrics."""

    def __init__(
        self,
        agent_runner: AgentRunner,
        parser_factory: Callable[[], GroceryParser],
        engine: InventoryUpdateEngine,
        metrics_recorder: MetricsRecorder,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.agent_runner = agent_runner
        self.parser_factory = parser_factory
        self.engine = engine
        self.metrics_recorder = metrics_recorder
        self._clock = clock

    def execute(
        self, user_id: str, text: str, metadata: dict[str, Any] | None = None
    ) -> PipelineResult:
        """Ingest a piece of grocery text for a user.

        The fallback parser runs when the agent fails or finishes without
        calling ``apply_inventory_updates``. Exactly one agent interaction is
        recorded per call.

        Args:
            user_id: Owner of the inventory
            text: Grocery text
            metadata: Optional caller metadata stored with the interaction

        Returns:
            Combined agent and fallback outcome
        """
        started = self._clock()
        agent_result = self._run_agent(user_id, text, metadata)
        latency_ms = (
            agent_result.latency_ms
            if agent_result.latency_ms is not None
            else (self._clock() - started) * 1000
        )

        applied_by_agent = any(
            invocation.name == APPLY_TOOL_NAME for invocation in agent_result.tool_invocations
        )
        needs_fallback = not agent_result.success or not applied_by_agent

        success = agent_result.success
        summary = agent_result.response
        error = agent_result.error
        fallback_details: ApplyResult | None = None

        if needs_fallback:
            fallback_started = self._clock()
            try:
                fallback_details = self._run_fallback(user_id, text)
                success = True
                error = None
                fallback_summary = (
                    f"Fallback parser applied {fallback_details.summary.successful}/"
                    f"{fallback_details.summary.total} updates "
                    f"({fallback_details.summary.failed} failed)."
                )
                summary = "\n\n".join(part for part in (agent_result.response, fallback_summary) if part)
            except Exception as e:
                logger.warning("Fallback ingestion failed for %s: %s", user_id, e)
                success = False
                error = str(e) or "Fallback ingestion failed"
                summary = error
            finally:
                latency_ms += (self._clock() - fallback_started) * 1000

        self.metrics_recorder.record_agent_interaction(
            user_id=user_id,
            input_text=text,
            agent=AGENT_NAME,
            success=success,
            used_fallback=needs_fallback,
            latency_ms=latency_ms,
            metadata={"metadata": metadata or {}, "toolInvocations": len(agent_result.tool_invocations)},
            error=error,
        )

        return PipelineResult(
            success=success,
            agent_response=agent_result.response,
            summary=summary,
            error=error,
            tool_invocations=agent_result.tool_invocations,
            used_fallback=needs_fallback,
            fallback_details=fallback_details,
            latency_ms=latency_ms,
        )

    def _run_agent(
        self, user_id: str, text: str, metadata: dict[str, Any] | None
    ) -> AgentRunResult:
        try:
            return self.agent_runner.run(user_id, text, metadata)
        except Exception as e:
            logger.error("Agent runner raised for %s: %s", user_id, e)
            return AgentRunResult(success=False, error=str(e) or "Agent run failed")

    def _run_fallback(self, user_id: str, text: str) -> ApplyResult:
        parser = self.parser_factory()
        parsed = parser.parse_grocery_text(text)
        updates = parser.validate_items(parsed.items)
        if not updates:
            raise ValueError(parsed.error or "Fallback parser could not find any grocery updates")
        return self.engine.apply_inventory_updates_for_user(
            user_id, updates, InventoryActionType.AGENT
        )
