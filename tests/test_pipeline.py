"""Tests for the ingestion pipeline."""

import pytest

from grocery_inventory.grocery_parser import GroceryParser
from grocery_inventory.metrics import MetricsRecorder
from grocery_inventory.models import AgentRunResult, ToolInvocation
from grocery_inventory.paths import AGENT_INTERACTIONS
from grocery_inventory.pipeline import IngestionPipeline

USER = "pipeline-user"


class StubRunner:
    """Agent runner returning a fixed result."""

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    def run(self, user_id, text, metadata=None):
        self.calls.append((user_id, text, metadata))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def make_pipeline(engine, memory_store):
    def factory(runner):
        return IngestionPipeline(runner, GroceryParser, engine, MetricsRecorder(memory_store))

    return factory


def interactions(store):
    return [snap.to_dict() for snap in store.list_documents(AGENT_INTERACTIONS)]


class TestAgentPath:
    """Tests for runs where the agent applied updates itself."""

    def test_no_fallback_when_agent_applied(self, make_pipeline, memory_store):
        runner = StubRunner(
            AgentRunResult(
                success=True,
                response="Added milk.",
                tool_invocations=[ToolInvocation(name="apply_inventory_updates")],
                latency_ms=120,
            )
        )
        result = make_pipeline(runner).execute(USER, "bought milk", {"source": "test"})

        assert result.success
        assert not result.used_fallback
        assert result.summary == "Added milk."
        assert result.fallback_details is None
        assert result.latency_ms == 120
        assert runner.calls == [(USER, "bought milk", {"source": "test"})]

        logged = interactions(memory_store)
        assert len(logged) == 1
        assert logged[0]["usedFallback"] is False
        assert logged[0]["agent"] == "grocery_ingest"
        assert logged[0]["metadata"] == {"metadata": {"source": "test"}, "toolInvocations": 1}


class TestFallbackPath:
    """Tests for runs that fall back to the parser."""

    def test_agent_without_apply_triggers_fallback(self, make_pipeline, engine):
        runner = StubRunner(AgentRunResult(success=True, response="Looked at it."))
        result = make_pipeline(runner).execute(USER, "bought 3 eggs")

        assert result.success
        assert result.used_fallback
        assert result.summary == "Looked at it.\n\nFallback parser applied 1/1 updates (0 failed)."
        assert engine.get_item(USER, "eggs").quantity == 3

    def test_failed_agent_falls_back(self, make_pipeline, engine, memory_store):
        runner = StubRunner(AgentRunResult(success=False, error="OpenAI API key not configured"))
        result = make_pipeline(runner).execute(USER, "bought 2 litres milk and 3 eggs")

        assert result.success
        assert result.error is None
        assert result.summary == "Fallback parser applied 2/2 updates (0 failed)."
        assert result.fallback_details.summary.model_dump() == {
            "total": 2,
            "successful": 2,
            "failed": 0,
        }
        milk = engine.get_item(USER, "milk")
        assert milk.quantity == 2
        assert milk.unit == "liter"

        logged = interactions(memory_store)
        assert len(logged) == 1
        assert logged[0]["success"] is True
        assert logged[0]["usedFallback"] is True

    def test_runner_exception_is_contained(self, make_pipeline):
        runner = StubRunner(error=RuntimeError("agent crashed"))
        result = make_pipeline(runner).execute(USER, "bought bread")
        assert result.success
        assert result.used_fallback

    def test_fallback_without_updates_fails(self, make_pipeline, memory_store):
        runner = StubRunner(AgentRunResult(success=False, error="no key"))
        result = make_pipeline(runner).execute(USER, "!!!")

        assert not result.success
        assert result.error == "Fallback parser could not find any grocery updates"
        assert result.summary == result.error

        logged = interactions(memory_store)
        assert len(logged) == 1
        assert logged[0]["success"] is False
        assert logged[0]["error"] == result.error

class SteppingClock:
    """Monotonic clock returning scripted readings in seconds."""

    def __init__(self, *readings):
        self.readings = list(readings)

    def __call__(self):
        return self.readings.pop(0)


class TestLatency:
    """Fallback time counts toward the reported latency."""

    def make(self, engine, memory_store, runner, clock):
        return IngestionPipeline(
            runner, GroceryParser, engine, MetricsRecorder(memory_store), clock=clock
        )

    def test_successful_fallback_adds_its_time(self, engine, memory_store):
        runner = StubRunner(AgentRunResult(success=True, response="", latency_ms=100))
        pipeline = self.make(engine, memory_store, runner, SteppingClock(0.0, 10.0, 10.25))

        result = pipeline.execute(USER, "bought 3 eggs")

        assert result.success
        assert result.latency_ms == pytest.approx(350)
        assert interactions(memory_store)[0]["latencyMs"] == pytest.approx(350)

    def test_failed_fallback_adds_its_time(self, engine, memory_store):
        runner = StubRunner(AgentRunResult(success=False, error="no key"))
        pipeline = self.make(engine, memory_store, runner, SteppingClock(0.0, 0.5, 0.5, 0.75))

        result = pipeline.execute(USER, "!!!")

        assert not result.success
        assert result.latency_ms == pytest.approx(750)
        assert interactions(memory_store)[0]["latencyMs"] == pytest.approx(750)

    def test_agent_only_run_uses_agent_latency(self, engine, memory_store):
        runner = StubRunner(
            AgentRunResult(
                success=True,
                response="Done.",
                tool_invocations=[ToolInvocation(name="apply_inventory_updates")],
            )
        )
        pipeline = self.make(engine, memory_store, runner, SteppingClock(1.0, 1.2))

        assert pipeline.execute(USER, "bought milk").latency_ms == pytest.approx(200)



class TestWiredPipeline:
    """End-to-end through the service container."""

    def test_metrics_are_aggregated(self, services):
        result = services.pipeline.execute("user-1", "bought 2 litres milk and 3 eggs")
        assert result.success

        metrics = services.metrics_aggregator.get_global_metrics()
        assert metrics.total_count == 1
        assert metrics.success_count == 1
        assert metrics.fallback_count == 1
        assert metrics.per_agent["grocery_ingest"]["count"] == 1
