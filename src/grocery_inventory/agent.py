"""Grocery ingestion agent.

The pipeline talks to an ``AgentRunner``. ``OpenAIIngestAgent`` drives a
tool-calling loop over chat completions with three tools: reading the
user's inventory, parsing grocery text and applying inventory updates.
"""

import json
import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

from openai import OpenAI

from .grocery_parser import GroceryParser
from .inventory_engine import InventoryUpdateEngine
from .models import AgentRunResult, InventoryActionType, ToolInvocation

logger = logging.getLogger(__name__)

AGENT_NAME = "grocery_ingest"
DEFAULT_AGENT_MODEL = "gpt-4o-mini"
DEFAULT_MAX_TURNS = 12
CONTEXT_INVENTORY_LIMIT = 200
EMPTY_TEXT_ERROR = "Text payload is required for ingestion."

AGENT_INSTRUCTIONS = """You help users ingest grocery receipts, PDFs, or free-form text.
When a user provides new information:
1. Fetch their current inventory context if needed.
2. Parse the provided text into structured updates.
3. Confirm that updates look reasonable for the existing inventory.
4. Call apply_inventory_updates only after summarizing the changes."""

_UPDATE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "quantity": {"type": "number"},
        "unit": {"type": "string"},
        "action": {"type": "string", "enum": ["add", "subtract", "set"]},
        "category": {"type": "string"},
        "location": {"type": ["string", "null"]},
        "notes": {"type": ["string", "null"]},
        "expirationDate": {"type": ["string", "null"]},
        "brand": {"type": ["string", "null"]},
        "lowStockThreshold": {"type": "number"},
    },
    "required": ["name", "quantity", "action"],
}

AGENT_TOOLS: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "fetch_user_context",
            "description": "Fetch formatted inventory context for the user",
            "parameters": {"type": "object", "properties": {}},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "parse_grocery_text",
            "description": "Parse grocery-related natural language into structured updates",
            "parameters": {
                "type": "object",
                "properties": {
                    "text": {
                        "type": "string",
                        "description": "Natural language grocery description",
                    }
                },
                "required": ["text"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "apply_inventory_updates",
            "description": "Apply structured inventory updates using existing validation logic",
            "parameters": {
                "type": "object",
                "properties": {
                    "updates": {"type": "array", "items": _UPDATE_SCHEMA, "minItems": 1},
                    "actionType": {
                        "type": "string",
                        "enum": [t.value for t in InventoryActionType],
                        "description": "Audit log action type",
                    },
                },
                "required": ["updates"],
            },
        },
    },
]


class AgentRunner(Protocol):
    """Runs the ingestion agent for one piece of user text."""

    def run(self, user_id: str, text: str, metadata: dict[str, Any] | None = None) -> AgentRunResult: ...


class UnavailableAgentRunner:
    """Used when no language model is configured."""

    def __init__(self, reason: str = "OpenAI API key not configured"):
        self.reason = reason

    def run(self, user_id: str, text: str, metadata: dict[str, Any] | None = None) -> AgentRunResult:
        if not text or not text.strip():
            return AgentRunResult(success=False, error=EMPTY_TEXT_ERROR)
        return AgentRunResult(success=False, error=self.reason, latency_ms=0)


class OpenAIIngestAgent:
    """Tool-calling ingestion agent backed by OpenAI chat completions."""

    def __init__(
        self,
        engine: InventoryUpdateEngine,
        parser_factory: Callable[[], GroceryParser],
        api_key: str | None = None,
        client: Any = None,
        model: str = DEFAULT_AGENT_MODEL,
        max_turns: int = DEFAULT_MAX_TURNS,
    ):
        """Initialize the agent.

        Args:
            engine: Engine used by the apply_inventory_updates tool
            parser_factory: Builds the parser used by parse_grocery_text
            api_key: OpenAI API key, used when no client is given
            client: Optional pre-built OpenAI-compatible client
            model: Chat model driving the agent
            max_turns: Maximum number of model turns per run
        """
        self.engine = engine
        self.parser_factory = parser_factory
        self.client = client if client is not None else OpenAI(api_key=api_key)
        self.model = model
        self.max_turns = max_turns

    def run(self, user_id: str, text: str, metadata: dict[str, Any] | None = None) -> AgentRunResult:
        """Run the agent over a piece of grocery text.

        Never raises; failures are reported in the result.
        """
        if not text or not text.strip():
            return AgentRunResult(success=False, error=EMPTY_TEXT_ERROR)

        started = time.monotonic()
        invocations: list[ToolInvocation] = []
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": AGENT_INSTRUCTIONS},
            {
                "role": "user",
                "content": (
                    f'User provided new grocery information:\n"""{text.strip()}"""\n\n'
                    "Use tools to parse the text, inspect context, and apply updates if confident."
                    + (f"\n\nContext metadata: {json.dumps(metadata, default=str)}" if metadata else "")
                ),
            },
        ]

        try:
            for _ in range(self.max_turns):
                completion = self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    tools=AGENT_TOOLS,
                )
                message = completion.choices[0].message
                if not message.tool_calls:
                    return AgentRunResult(
                        success=True,
                        response=message.content or "",
                        tool_invocations=invocations,
                        latency_ms=(time.monotonic() - started) * 1000,
                    )

                messages.append(
                    {
                        "role": "assistant",
                        "content": message.content,
                        "tool_calls": [
                            {
                                "id": call.id,
                                "type": "function",
                                "function": {
                                    "name": call.function.name,
                                    "arguments": call.function.arguments,
                                },
                            }
                            for call in message.tool_calls
                        ],
                    }
                )
                for call in message.tool_calls:
                    invocation = self._invoke_tool(user_id, call.function.name, call.function.arguments)
                    invocations.append(invocation)
                    payload = invocation.output if invocation.error is None else {"error": invocation.error}
                    messages.append(
                        {
                            "role": "tool",
                            "tool_call_id": call.id,
                            "content": json.dumps(payload, default=str),
                        }
                    )

            raise RuntimeError(f"Agent exceeded maximum turns ({self.max_turns})")
        except Exception as e:
            logger.error("Ingestion agent failed for %s: %s", user_id, e)
            return AgentRunResult(
                success=False,
                error=str(e) or "Unknown error",
                tool_invocations=invocations,
                latency_ms=(time.monotonic() - started) * 1000,
            )

    def _invoke_tool(self, user_id: str, name: str, raw_arguments: str | None) -> ToolInvocation:
        try:
            arguments = json.loads(raw_arguments or "{}")
        except json.JSONDecodeError as e:
            return ToolInvocation(name=name, error=f"Invalid tool arguments: {e}")
        if not isinstance(arguments, dict):
            return ToolInvocation(name=name, error="Tool arguments must be an object")

        handlers = {
            "fetch_user_context": self._fetch_user_context,
            "parse_grocery_text": self._parse_grocery_text,
            "apply_inventory_updates": self._apply_inventory_updates,
        }
        handler = handlers.get(name)
        if handler is None:
            return ToolInvocation(name=name, arguments=arguments, error=f"Unknown tool: {name}")

        try:
            output = handler(user_id, arguments)
        except Exception as e:
            logger.error("%s tool failed for %s: %s", name, user_id, e)
            return ToolInvocation(name=name, arguments=arguments, error=str(e) or f"{name} failed")
        return ToolInvocation(name=name, arguments=arguments, output=output)

    def _fetch_user_context(self, user_id: str, arguments: dict[str, Any]) -> dict[str, Any]:
        inventory = self.engine.list_inventory(user_id)[:CONTEXT_INVENTORY_LIMIT]
        return {
            "inventory": [item.to_document() for item in inventory],
            "lowStock": [item.to_document() for item in inventory if item.is_low_stock],
        }

    def _parse_grocery_text(self, user_id: str, arguments: dict[str, Any]) -> dict[str, Any]:
        text = arguments.get("text")
        if not isinstance(text, str) or not text.strip():
            raise ValueError("text is required")
        parser = self.parser_factory()
        result = parser.parse_grocery_text(text)
        items = parser.validate_items(result.items)
        return {
            "items": [item.to_document() for item in items],
            "confidence": result.confidence,
            "needsReview": result.needs_review,
            "originalText": result.original_text,
            "warnings": result.error,
        }

    def _apply_inventory_updates(self, user_id: str, arguments: dict[str, Any]) -> dict[str, Any]:
        updates = arguments.get("updates")
        if not isinstance(updates, list) or not updates:
            raise ValueError("updates must be a non-empty array")
        action_type = arguments.get("actionType") or InventoryActionType.AGENT
        result = self.engine.apply_inventory_updates_for_user(user_id, updates, action_type)
        return result.to_document()
