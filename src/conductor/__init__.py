"""
Conductor - execution engine for agent workflow graphs.

- conductor.core: errors, structured logging, settings
- conductor.orchestration: graph model, context store, scheduler, trace
- conductor.cli: developer CLI (validate and plan definitions)
"""

__version__ = "0.1.0"

from conductor.orchestration import (  # noqa: E402
    Edge,
    EdgeType,
    ExecutionPolicy,
    FailurePolicy,
    Graph,
    Node,
    Orchestrator,
    RunResult,
    RunStatus,
    Strategy,
    load_graph,
)

__all__ = [
    "Edge",
    "EdgeType",
    "ExecutionPolicy",
    "FailurePolicy",
    "Graph",
    "Node",
    "Orchestrator",
    "RunResult",
    "RunStatus",
    "Strategy",
    "__version__",
    "load_graph",
]
