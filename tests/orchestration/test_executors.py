"""Tests for executor resolution, function adaptation, and the executor registry."""

from __future__ import annotations

import functools

import pytest

from conductor.core.errors import ConfigError
from conductor.orchestration.cancellation import CancelSignal
from conductor.orchestration.executors import (
    ExecutorRegistry,
    UnitOfWorkExecutor,
    adapt_function,
    is_async_callable,
    resolve_execute,
)
from conductor.orchestration.failure_policy import FailurePolicy
from conductor.orchestration.graph import Graph
from conductor.orchestration.models import Edge, EdgeType, Node
from conductor.orchestration.scheduler import ExecutionPolicy, Orchestrator, RunStatus
from conductor.orchestration.trace import NodeStatus


async def _async_fn(node_id, inputs, cancel):
    return {}


def _sync_fn(node_id, inputs, cancel):
    return {}


class _AsyncCallable:
    async def __call__(self, node_id, inputs, cancel):
        return {}


class TestResolution:
    def test_is_async_callable(self):
        assert is_async_callable(_async_fn)
        assert is_async_callable(functools.partial(_async_fn, "n"))
        assert is_async_callable(_AsyncCallable())
        assert not is_async_callable(_sync_fn)

    def test_resolve_prefers_execute_method(self):
        class Agent:
            def execute(self, node_id, inputs, cancel):
                return {}

        agent = Agent()
        assert isinstance(agent, UnitOfWorkExecutor)
        assert resolve_execute(agent) == agent.execute
        assert resolve_execute(_sync_fn) is _sync_fn

    def test_resolve_rejects_non_callables(self):
        with pytest.raises(ConfigError):
            resolve_execute(42)  # type: ignore[arg-type]


class TestAdaptFunction:
    def test_passes_only_accepted_inputs(self):
        def word_count(document: str) -> int:
            return len(document.split())

        handler = adapt_function(word_count)
        assert handler({"document": "a b c", "style": "brief"}, CancelSignal()) == {"result": 3}

    def test_var_kwargs_receive_everything(self):
        handler = adapt_function(lambda **kw: dict(kw))
        assert handler({"a": 1, "b": 2}, CancelSignal()) == {"a": 1, "b": 2}

    def test_cancel_signal_injected_on_request(self):
        seen = []

        def tool(cancel_signal):
            seen.append(cancel_signal)

        signal = CancelSignal()
        assert adapt_function(tool)({}, signal) == {}
        assert seen == [signal]

    @pytest.mark.asyncio
    async def test_async_function(self):
        async def summarise(document):
            return {"summary": document[:5]}

        handler = adapt_function(summarise)
        assert is_async_callable(handler)
        assert await handler({"document": "long document"}, CancelSignal()) == {"summary": "long "}


class TestExecutorRegistry:
    def test_register_direct_and_decorator(self):
        registry = ExecutorRegistry()
        registry.register("a", lambda inputs, cancel: {})

        @registry.register("b")
        def b(inputs, cancel):
            return {}

        assert registry.refs() == ["a", "b"]
        assert "b" in registry
        assert len(registry) == 2
        assert registry.get("b") is b

    def test_unknown_ref(self):
        with pytest.raises(ConfigError, match="No executor registered for 'ghost'"):
            ExecutorRegistry().get("ghost")

    def test_empty_ref(self):
        with pytest.raises(ConfigError):
            ExecutorRegistry().register("", lambda i, c: {})

    def test_missing_refs_and_strict_binding(self):
        graph = Graph.build([Node("fetch", executor_ref="tools.fetch"), Node("summarise")])
        registry = ExecutorRegistry()
        registry.register("tools.fetch", lambda i, c: {})

        assert registry.missing_refs(graph) == ["summarise"]
        with pytest.raises(ConfigError, match="summarise"):
            registry.executor_for(graph)
        registry.executor_for(graph, strict=False)

    @pytest.mark.asyncio
    async def test_end_to_end_run(self):
        registry = ExecutorRegistry()

        @registry.register("tools.fetch")
        def fetch(inputs, cancel):
            return {"document": f"report on {inputs['topic']}"}

        registry.register("llm.summarise", adapt_function(lambda document: document.upper()))

        graph = Graph.build(
            [
                Node("fetch", executor_ref="tools.fetch", inputs=("topic",), outputs=("document",)),
                Node("summarise", executor_ref="llm.summarise", inputs=("document",)),
            ],
            [Edge("fetch", "summarise", EdgeType.DATA_FLOW)],
        )
        result = await Orchestrator(registry.executor_for(graph), policy=ExecutionPolicy()).run(
            graph, initial_context={"topic": "evals"}
        )

        assert result.status is RunStatus.COMPLETED
        assert result.final_context["result"] == "REPORT ON EVALS"

    @pytest.mark.asyncio
    async def test_unregistered_ref_fails_node_when_not_strict(self):
        graph = Graph.build([Node("orphan")])
        executor = ExecutorRegistry().executor_for(graph, strict=False)
        policy = ExecutionPolicy(default_failure_policy=FailurePolicy(max_attempts=3, backoff_base=0.0))
        result = await Orchestrator(executor, policy=policy).run(graph)

        assert result.node_statuses["orphan"] is NodeStatus.FAILED
        assert result.trace.attempts("orphan") == 1
        assert result.trace[-1].error_type == "ExecutorError"
