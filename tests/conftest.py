"""
Shared pytest fixtures and configuration for conductor tests.

This module provides:
- Settings cache / template registry cleanup for test isolation
- Sample graphs (linear chain, diamond, fan-out)
- A scripted async executor that records every call
"""

import asyncio
import os
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

# Ensure conductor package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from conductor.core.settings import get_settings
from conductor.orchestration import Edge, EdgeType, Graph, Node
from conductor.orchestration.cancellation import CancelSignal
from conductor.orchestration.templates import clear_templates


# =============================================================================
# Scripted executor
# =============================================================================


class ScriptedExecutor:
    """Async executor whose per-node behaviour is scripted by the test.

    A behaviour is one of:
    - a mapping: returned as the node's outputs
    - an exception instance: raised
    - a list: consumed one item per attempt (last item repeats)
    - a callable ``(inputs, cancel_signal)``: called, awaited if async
    Nodes without a behaviour return ``{}``.
    """

    def __init__(self, behaviours: dict[str, Any] | None = None, *, delay: float | dict[str, float] = 0.0):
        self.behaviours = dict(behaviours or {})
        self.delay = delay
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.active = 0
        self.max_active = 0

    def called(self) -> list[str]:
        return [node_id for node_id, _ in self.calls]

    def _delay_for(self, node_id: str) -> float:
        if isinstance(self.delay, dict):
            return self.delay.get(node_id, 0.0)
        return self.delay

    def _next_behaviour(self, node_id: str) -> Any:
        behaviour = self.behaviours.get(node_id)
        if isinstance(behaviour, list):
            return behaviour.pop(0) if len(behaviour) > 1 else behaviour[0]
        return behaviour

    async def execute(self, node_id: str, inputs: dict[str, Any], cancel_signal: CancelSignal) -> Any:
        self.calls.append((node_id, dict(inputs)))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            delay = self._delay_for(node_id)
            if delay:
                await asyncio.sleep(delay)
            behaviour = self._next_behaviour(node_id)
            if behaviour is None:
                return {}
            if isinstance(behaviour, BaseException):
                raise behaviour
            if callable(behaviour):
                result = behaviour(inputs, cancel_signal)
                if asyncio.iscoroutine(result):
                    result = await result
                return result
            return behaviour
        finally:
            self.active -= 1


@pytest.fixture
def scripted() -> Callable[..., ScriptedExecutor]:
    """Factory for ScriptedExecutor instances."""
    return ScriptedExecutor


# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch: pytest.MonkeyPatch):
    """Drop CONDUCTOR_* env vars and the cached settings around each test."""
    for key in list(os.environ):
        if key.startswith("CONDUCTOR_"):
            monkeypatch.delenv(key, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _clean_templates():
    clear_templates()
    yield
    clear_templates()


# =============================================================================
# Sample graphs
# =============================================================================


@pytest.fixture
def linear_graph() -> Graph:
    """A → B → C."""
    return Graph.build(
        nodes=[Node("A"), Node("B"), Node("C")],
        edges=[Edge("A", "B"), Edge("B", "C")],
    )


@pytest.fixture
def diamond_graph() -> Graph:
    """A → {B, C} → D, passing values through the context."""
    return Graph.build(
        nodes=[
            Node("A", outputs=("a",)),
            Node("B", inputs=("a",), outputs=("b",)),
            Node("C", inputs=("a",), outputs=("c",)),
            Node("D", inputs=("b", "c"), outputs=("d",)),
        ],
        edges=[
            Edge("A", "B", EdgeType.DATA_FLOW),
            Edge("A", "C", EdgeType.DATA_FLOW),
            Edge("B", "D", EdgeType.DATA_FLOW),
            Edge("C", "D", EdgeType.DATA_FLOW),
        ],
    )


@pytest.fixture
def diamond_outputs() -> dict[str, dict[str, Any]]:
    return {
        "A": {"a": 1},
        "B": lambda inputs, _: {"b": inputs["a"] + 1},
        "C": lambda inputs, _: {"c": inputs["a"] * 10},
        "D": lambda inputs, _: {"d": inputs["b"] + inputs["c"]},
    }


@pytest.fixture
def fan_out_graph() -> Graph:
    """Six independent nodes."""
    return Graph.build(nodes=[Node(f"n{i}") for i in range(6)])
