"""
Conductor Orchestration — graph-based execution engine for agent workflows.

WHY
───
One agent call is a unit of work.  Orchestration composes many of them into
a directed graph with shared, versioned context, per-node retry and timeout
policies, several dispatch strategies, and a replayable trace of every state
transition.

ARCHITECTURE
────────────
::

    Graph (validated, immutable)
      ├── Node(id, executor_ref, inputs, outputs, failure_policy)
      └── Edge(source, target, type = dependency | data_flow | trigger)

    Orchestrator            ─ runs a Graph with an injected executor
      ├── Strategy          ─ sequential | parallel | dag | event_driven
      ├── ContextStore      ─ versioned key-value state, one per run
      ├── FailurePolicy     ─ attempts, backoff, timeout, retry classifier
      └── RunTrace          ─ append-only NodeExecution records

    Supporting:
      definition.py         ─ pydantic models for dict / YAML definitions
      templates.py          ─ node templates + common graph shapes
      executors.py          ─ executor protocol + ref → handler registry
      cancellation.py       ─ CancelSignal, RunCancellation
      replay.py             ─ rebuild context from a trace

MODULE MAP (recommended reading order)
──────────────────────────────────────
1. exceptions.py      ─ graph construction errors
2. failure_policy.py  ─ retry / timeout policy and outcome kinds
3. models.py          ─ Node, Edge, InputSpec
4. graph.py           ─ validation, topological order, waves, critical path
5. context_store.py   ─ versioned context with optimistic merges
6. trace.py           ─ NodeExecution, RunTrace, TraceRecorder
7. cancellation.py    ─ cooperative cancellation
8. executors.py       ─ unit-of-work executor contract
9. scheduler.py       ─ Orchestrator and the four strategies
10. definition.py     ─ declarative definitions
11. templates.py      ─ node templates
12. replay.py         ─ trace replay

Example:
    from conductor.orchestration import Edge, Graph, Node, Orchestrator

    graph = Graph.build(
        nodes=[Node("fetch", outputs=("doc",)), Node("summarise", inputs=("doc",))],
        edges=[Edge("fetch", "summarise", "data_flow")],
    )
    result = Orchestrator(my_executor).run_sync(graph)
"""

from conductor.orchestration.cancellation import CancelSignal, RunCancellation
from conductor.orchestration.context_store import ContextEntry, ContextStore, ScopedKey
from conductor.orchestration.definition import (
    EdgeSpecModel,
    FailurePolicySpec,
    NodeSpecModel,
    TriggerConditionSpec,
    WorkflowSpec,
    load_graph,
)
from conductor.orchestration.exceptions import (
    CycleDetectedError,
    DuplicateNodeError,
    InvalidDefinitionError,
    UnknownNodeError,
)
from conductor.orchestration.executors import (
    ExecutorRegistry,
    RegistryExecutor,
    UnitOfWorkExecutor,
    adapt_function,
)
from conductor.orchestration.failure_policy import (
    DEFAULT_POLICY,
    FailurePolicy,
    OutcomeKind,
    retry_on_categories,
)
from conductor.orchestration.graph import (
    Graph,
    build_graph,
    critical_path,
    parallel_batches,
    topological_order,
)
from conductor.orchestration.models import MISSING, Edge, EdgeType, InputSpec, Node
from conductor.orchestration.replay import replay_context, replay_versions, verify_replay
from conductor.orchestration.scheduler import (
    ExecutionPolicy,
    Orchestrator,
    RunResult,
    RunState,
    RunStatus,
    Strategy,
    WorkerPool,
)
from conductor.orchestration.templates import (
    NodeTemplate,
    chain,
    fan_out_fan_in,
    get_template,
    list_templates,
    register_template,
)
from conductor.orchestration.trace import (
    NodeExecution,
    NodeStatus,
    RunTrace,
    TraceRecorder,
    TraceStore,
    observed_durations,
)

__all__ = [
    # Graph model
    "Edge",
    "EdgeType",
    "Graph",
    "InputSpec",
    "MISSING",
    "Node",
    "build_graph",
    "critical_path",
    "parallel_batches",
    "topological_order",
    # Errors
    "CycleDetectedError",
    "DuplicateNodeError",
    "InvalidDefinitionError",
    "UnknownNodeError",
    # Context
    "ContextEntry",
    "ContextStore",
    "ScopedKey",
    # Failure policy
    "DEFAULT_POLICY",
    "FailurePolicy",
    "OutcomeKind",
    "retry_on_categories",
    # Scheduler
    "ExecutionPolicy",
    "Orchestrator",
    "RunResult",
    "RunState",
    "RunStatus",
    "Strategy",
    "WorkerPool",
    # Executors & cancellation
    "CancelSignal",
    "ExecutorRegistry",
    "RegistryExecutor",
    "RunCancellation",
    "UnitOfWorkExecutor",
    "adapt_function",
    # Trace
    "NodeExecution",
    "NodeStatus",
    "RunTrace",
    "TraceRecorder",
    "TraceStore",
    "observed_durations",
    "replay_context",
    "replay_versions",
    "verify_replay",
    # Definitions & templates
    "EdgeSpecModel",
    "FailurePolicySpec",
    "NodeSpecModel",
    "NodeTemplate",
    "TriggerConditionSpec",
    "WorkflowSpec",
    "chain",
    "fan_out_fan_in",
    "get_template",
    "list_templates",
    "load_graph",
    "register_template",
]
