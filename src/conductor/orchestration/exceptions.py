"""Graph construction errors.

All graph errors inherit from ``conductor.core.errors.GraphError`` so that
callers can catch the whole family with a single ``except`` clause.

Hierarchy::

    GraphError  (from conductor.core.errors)
      ├── DuplicateNodeError    ── two nodes share an id
      ├── UnknownNodeError      ── edge endpoint references an undeclared node
      ├── CycleDetectedError    ── ordering edges form a cycle
      └── InvalidDefinitionError ── definition/template shape is invalid
"""

from conductor.core.errors import GraphError


class DuplicateNodeError(GraphError):
    """Raised when two nodes are declared with the same id."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Duplicate node id: {node_id}")


class UnknownNodeError(GraphError):
    """Raised when an edge references a node that was never declared."""

    def __init__(self, source: str, target: str, missing: list[str]):
        self.source = source
        self.target = target
        self.missing = missing
        super().__init__(
            f"Edge {source} -> {target} references unknown nodes: {', '.join(missing)}"
        )


class CycleDetectedError(GraphError):
    """Raised when the ordering sub-graph contains a cycle."""

    def __init__(self, path: list[str]):
        self.path = path
        super().__init__(f"Cycle detected in ordering edges: {' -> '.join(path)}")


class InvalidDefinitionError(GraphError):
    """Raised when a workflow definition or template cannot be turned into a graph."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)
