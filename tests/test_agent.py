"""Tests for the ingestion agent."""

import json

from conftest import FakeOpenAI, completion, tool_call

from grocery_inventory.agent import (
    EMPTY_TEXT_ERROR,
    OpenAIIngestAgent,
    UnavailableAgentRunner,
)
from grocery_inventory.grocery_parser import GroceryParser
from grocery_inventory.paths import audit_log_collection

USER = "agent-user"


def make_agent(engine, responses, max_turns=12):
    client = FakeOpenAI(responses)
    agent = OpenAIIngestAgent(engine, GroceryParser, client=client, max_turns=max_turns)
    return agent, client


class TestUnavailableAgent:
    """Tests for the placeholder runner."""

    def test_reports_reason(self):
        result = UnavailableAgentRunner().run(USER, "bought milk")
        assert not result.success
        assert result.error == "OpenAI API key not configured"

    def test_empty_text(self):
        assert UnavailableAgentRunner().run(USER, "  ").error == EMPTY_TEXT_ERROR


class TestToolLoop:
    """Tests for the tool-calling loop."""

    def test_direct_answer(self, engine):
        agent, client = make_agent(engine, [completion(content="Nothing to do.")])
        result = agent.run(USER, "hello")
        assert result.success
        assert result.response == "Nothing to do."
        assert result.tool_invocations == []
        assert len(client.calls) == 1

    def test_parse_then_apply(self, engine):
        updates = [{"name": "Milk", "quantity": 2, "unit": "liter", "action": "add"}]
        agent, client = make_agent(
            engine,
            [
                completion(
                    tool_calls=[
                        tool_call("fetch_user_context", {}, "call-1"),
                        tool_call("parse_grocery_text", {"text": "bought 2 litres milk"}, "call-2"),
                    ]
                ),
                completion(tool_calls=[tool_call("apply_inventory_updates", {"updates": updates}, "call-3")]),
                completion(content="Added 2 liters of milk."),
            ],
        )
        result = agent.run(USER, "bought 2 litres milk", metadata={"source": "test"})

        assert result.success
        assert result.response == "Added 2 liters of milk."
        assert [i.name for i in result.tool_invocations] == [
            "fetch_user_context",
            "parse_grocery_text",
            "apply_inventory_updates",
        ]
        parsed = result.tool_invocations[1].output
        assert parsed["items"][0]["name"] == "Milk"
        assert parsed["items"][0]["unit"] == "liter"
        applied = result.tool_invocations[2].output
        assert applied["summary"] == {"total": 1, "successful": 1, "failed": 0}

        assert engine.get_item(USER, "milk").quantity == 2
        audit = engine.store.list_documents(audit_log_collection(USER))[0]
        assert audit.get("action") == "inventory_agent"

        messages = client.calls[-1]["messages"]
        assert "Context metadata" in messages[1]["content"]
        tool_messages = [m for m in messages if m["role"] == "tool"]
        assert [m["tool_call_id"] for m in tool_messages] == ["call-1", "call-2", "call-3"]

    def test_tool_errors_are_returned_to_model(self, engine):
        agent, client = make_agent(
            engine,
            [
                completion(tool_calls=[tool_call("delete_everything", {})]),
                completion(content="I can't do that."),
            ],
        )
        result = agent.run(USER, "bought milk")

        assert result.success
        assert result.tool_invocations[0].error == "Unknown tool: delete_everything"
        tool_message = client.calls[-1]["messages"][-1]
        assert json.loads(tool_message["content"]) == {"error": "Unknown tool: delete_everything"}

    def test_apply_requires_updates(self, engine):
        agent, _ = make_agent(
            engine,
            [
                completion(tool_calls=[tool_call("apply_inventory_updates", {"updates": []})]),
                completion(content="done"),
            ],
        )
        result = agent.run(USER, "bought milk")
        assert result.tool_invocations[0].error == "updates must be a non-empty array"

    def test_max_turns(self, engine):
        responses = [completion(tool_calls=[tool_call("fetch_user_context", {})]) for _ in range(2)]
        agent, _ = make_agent(engine, responses, max_turns=2)
        result = agent.run(USER, "bought milk")
        assert not result.success
        assert result.error == "Agent exceeded maximum turns (2)"
        assert len(result.tool_invocations) == 2

    def test_model_failure(self, engine):
        agent, _ = make_agent(engine, [RuntimeError("service unavailable")])
        result = agent.run(USER, "bought milk")
        assert not result.success
        assert result.error == "service unavailable"
        assert result.latency_ms is not None

    def test_empty_text_skips_model(self, engine):
        agent, client = make_agent(engine, [])
        result = agent.run(USER, "")
        assert result.error == EMPTY_TEXT_ERROR
        assert client.calls == []
