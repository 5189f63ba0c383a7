"""Node Templates — reusable partial node definitions and common graph shapes.

Manifesto:
Many nodes in a workflow differ only in their id and one or two fields: the
same summariser agent run over three documents, the same tool with a longer
timeout.  A template captures the shared part once; instantiating it is a
pure merge of template fields and per-node overrides.  Nothing is inherited
at run time, so a built graph never depends on a template again.

ARCHITECTURE
────────────
::

    NodeTemplate(executor_ref, inputs, outputs, failure_policy, description)
      └── instantiate(node_id, **overrides)   → Node   (overrides win)

    Template registry:
      register_template(name, template)   → add template
      get_template(name)                  → retrieve template
      list_templates()                    → available names

    Shape builders (return a validated Graph):
      chain(node_ids, template=...)                     → a → b → c
      fan_out_fan_in(source, workers, sink, ...)        → scatter / gather

Example::

    summarise = NodeTemplate(executor_ref="llm.summarise", outputs=("summary",),
                             failure_policy=FailurePolicy(max_attempts=3))
    register_template("summarise", summarise)

    node = get_template("summarise").instantiate("summarise_q3", inputs=("q3_report",))
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, fields, replace
from typing import Any

from conductor.orchestration.exceptions import InvalidDefinitionError
from conductor.orchestration.failure_policy import FailurePolicy
from conductor.orchestration.graph import Graph
from conductor.orchestration.models import Edge, EdgeType, InputSpec, Node

_NODE_FIELDS = ("executor_ref", "inputs", "outputs", "failure_policy", "description")


@dataclass(frozen=True)
class NodeTemplate:
    """Partial node definition; unset fields fall back to Node defaults."""

    executor_ref: str | None = None
    inputs: tuple[str | InputSpec, ...] | None = None
    outputs: tuple[str, ...] | None = None
    failure_policy: FailurePolicy | None = None
    description: str | None = None

    def fields_dict(self) -> dict[str, Any]:
        """Explicitly set fields only."""
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}

    def instantiate(self, node_id: str, **overrides: Any) -> Node:
        """Build a Node from this template; ``overrides`` replace template fields."""
        return Node(id=node_id, **merge_fields(self.fields_dict(), overrides))

    def extend(self, **overrides: Any) -> NodeTemplate:
        """Derive a new template with some fields replaced."""
        unknown = set(overrides) - set(_NODE_FIELDS)
        if unknown:
            raise InvalidDefinitionError(f"Unknown template fields: {sorted(unknown)}", field="template")
        return replace(self, **overrides)


def merge_fields(base: Mapping[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    """Pure merge of node fields: keys in ``overrides`` replace keys in ``base``.

    Neither argument is modified.  ``None`` in ``overrides`` means "not set"
    and keeps the base value.
    """
    unknown = (set(base) | set(overrides)) - set(_NODE_FIELDS)
    if unknown:
        raise InvalidDefinitionError(f"Unknown node fields: {sorted(unknown)}", field="template")
    merged = dict(base)
    merged.update({k: v for k, v in overrides.items() if v is not None})
    return merged


# ---------------------------------------------------------------------------
# Template registry
# ---------------------------------------------------------------------------

_TEMPLATES: dict[str, NodeTemplate] = {}


def register_template(name: str, template: NodeTemplate) -> None:
    """Register a named node template (replaces any previous one)."""
    _TEMPLATES[name] = template


def get_template(name: str) -> NodeTemplate:
    """Get a registered template by name.

    Raises
    ------
    KeyError
        If the template is not registered.
    """
    if name not in _TEMPLATES:
        raise KeyError(f"Unknown template: {name!r}. Available: {sorted(_TEMPLATES)}")
    return _TEMPLATES[name]


def list_templates() -> list[str]:
    """List all registered template names."""
    return sorted(_TEMPLATES)


def clear_templates() -> None:
    """Remove every registered template (test isolation)."""
    _TEMPLATES.clear()


# ---------------------------------------------------------------------------
# Shape builders
# ---------------------------------------------------------------------------


def chain(
    node_ids: Iterable[str],
    *,
    template: NodeTemplate | None = None,
    edge_type: EdgeType = EdgeType.DEPENDENCY,
) -> Graph:
    """Linear pipeline ``a → b → c``."""
    tmpl = template or NodeTemplate()
    ids = list(node_ids)
    nodes = [tmpl.instantiate(node_id) for node_id in ids]
    edges = [Edge(a, b, edge_type) for a, b in zip(ids, ids[1:])]
    return Graph.build(nodes, edges)


def fan_out_fan_in(
    source: str,
    workers: Iterable[str],
    sink: str,
    *,
    worker_template: NodeTemplate | None = None,
    best_effort: bool = False,
) -> Graph:
    """Scatter from ``source`` to every worker, gather into ``sink``.

    With ``best_effort`` the sink runs even when some workers fail.

    Parameters
    ----------
    source
        Node that runs first.
    workers
        Independent nodes run after ``source``.
    sink
        Node that runs after every worker.
    worker_template
        Template each worker is instantiated from.
    """
    tmpl = worker_template or NodeTemplate()
    worker_ids = list(workers)
    nodes = [Node(source), *(tmpl.instantiate(w) for w in worker_ids), Node(sink)]
    edges = [Edge(source, w) for w in worker_ids]
    edges += [Edge(w, sink, EdgeType.DATA_FLOW, best_effort=best_effort) for w in worker_ids]
    return Graph.build(nodes, edges)
