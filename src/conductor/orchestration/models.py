"""Graph data model — nodes, edges, and their declared inputs.

A ``Node`` is one schedulable unit of work: an id, an opaque reference to the
unit of work it runs (resolved by the host), the context keys it reads and
writes, and its failure policy.  An ``Edge`` is a typed directed relation
between two node ids.

Edge types::

    DEPENDENCY  ── source must finish before target           (ordering)
    DATA_FLOW   ── source produces a value consumed by target (ordering)
    TRIGGER     ── source's success may activate target       (event-driven only)

Both types are frozen dataclasses; lists passed in are normalised to tuples
so a built graph can be shared across concurrently running nodes.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from conductor.orchestration.exceptions import InvalidDefinitionError
from conductor.orchestration.failure_policy import FailurePolicy


class _Missing:
    """Sentinel for "no default declared"."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()

TriggerCondition = Callable[[Mapping[str, Any]], bool]


class EdgeType(str, Enum):
    """Type of a graph edge."""

    DEPENDENCY = "dependency"
    DATA_FLOW = "data_flow"
    TRIGGER = "trigger"

    @property
    def implies_ordering(self) -> bool:
        """Dependency and data-flow edges constrain execution order."""
        return self is not EdgeType.TRIGGER


@dataclass(frozen=True)
class InputSpec:
    """A context key a node reads at dispatch time.

    Attributes:
        key: Context key name
        required: Whether dispatch fails when the key is absent
        default: Value used when the key is absent (makes the input satisfiable)
    """

    key: str
    required: bool = True
    default: Any = MISSING

    @property
    def has_default(self) -> bool:
        return self.default is not MISSING

    @classmethod
    def parse(cls, value: str | InputSpec) -> InputSpec:
        """Accept a bare key name or an existing spec."""
        if isinstance(value, InputSpec):
            return value
        if isinstance(value, str) and value:
            return cls(key=value)
        raise InvalidDefinitionError(f"Invalid input declaration: {value!r}", field="inputs")


@dataclass(frozen=True)
class Node:
    """
    One unit of work in an orchestration graph.

    Attributes:
        id: Unique id within the graph
        executor_ref: Opaque handle the host resolves to a unit of work
            (defaults to the node id)
        inputs: Context keys read at dispatch
        outputs: Context keys the node may write on success
            (empty = accept whatever the unit of work returns)
        failure_policy: Retry/timeout policy (None = run default)
        description: Human-readable description
    """

    id: str
    executor_ref: str | None = None
    inputs: tuple[InputSpec, ...] = ()
    outputs: tuple[str, ...] = ()
    failure_policy: FailurePolicy | None = None
    description: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id:
            raise InvalidDefinitionError(f"Node id must be a non-empty string, got {self.id!r}", field="id")
        object.__setattr__(self, "inputs", tuple(InputSpec.parse(i) for i in self.inputs))
        object.__setattr__(self, "outputs", tuple(self.outputs))
        if self.executor_ref is None:
            object.__setattr__(self, "executor_ref", self.id)

    @property
    def input_keys(self) -> tuple[str, ...]:
        return tuple(i.key for i in self.inputs)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging/storage (policy callables omitted)."""
        result: dict[str, Any] = {"id": self.id, "executor_ref": self.executor_ref}
        if self.inputs:
            result["inputs"] = [
                {"key": i.key, "required": i.required, **({"default": i.default} if i.has_default else {})}
                for i in self.inputs
            ]
        if self.outputs:
            result["outputs"] = list(self.outputs)
        if self.failure_policy is not None:
            fp = self.failure_policy
            result["failure_policy"] = {
                "max_attempts": fp.max_attempts,
                "backoff_base": fp.backoff_base,
                "backoff_multiplier": fp.backoff_multiplier,
                "max_backoff": fp.max_backoff,
                "timeout": fp.timeout,
            }
        if self.description:
            result["description"] = self.description
        return result


@dataclass(frozen=True)
class Edge:
    """
    Directed relation between two node ids.

    Attributes:
        source: Upstream node id
        target: Downstream node id
        type: Edge type (see ``EdgeType``)
        best_effort: Target still runs if source fails; source outputs are
            simply absent from context
        condition: Trigger predicate over the context snapshot (trigger edges only)
    """

    source: str
    target: str
    type: EdgeType = EdgeType.DEPENDENCY
    best_effort: bool = False
    condition: TriggerCondition | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.type, EdgeType):
            try:
                object.__setattr__(self, "type", EdgeType(self.type))
            except ValueError as exc:
                raise InvalidDefinitionError(f"Unknown edge type: {self.type!r}", field="type") from exc
        if self.condition is not None and self.type is not EdgeType.TRIGGER:
            raise InvalidDefinitionError(
                f"Edge {self.source} -> {self.target}: only trigger edges may carry a condition",
                field="condition",
            )

    @property
    def implies_ordering(self) -> bool:
        return self.type.implies_ordering

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"from": self.source, "to": self.target, "type": self.type.value}
        if self.best_effort:
            result["best_effort"] = True
        return result
