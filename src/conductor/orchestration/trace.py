"""Run Trace — append-only record of every node state transition.

The trace is the single source of truth for "what happened" in a run.  The
scheduler appends exactly one :class:`NodeExecution` per node state
transition; successful records carry the context delta that was committed,
so replaying the trace reproduces the run's context mutations in order.

Architecture::

    TraceRecorder(run_id, sink)
    ├── record(node_id, attempt, status, ...)   → NodeExecution (seq assigned)
    │   └── sink(execution)                     → host streaming callback
    └── trace → RunTrace (append-only)
        ├── for_node(id) / attempts(id) / final_status(id)
        ├── handoff()        → freeze; ownership moves to the host
        └── to_dict()

    NodeExecution (frozen)
    ├── sequence, run_id, node_id, attempt, status
    ├── started_at, ended_at
    ├── outcome (OutcomeKind), error, error_type
    └── context_delta, context_versions
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Protocol

from conductor.core.errors import ConductorError
from conductor.core.logging import get_logger
from conductor.orchestration.failure_policy import OutcomeKind

logger = get_logger(__name__)


class NodeStatus(str, Enum):
    """Lifecycle state of a node within one run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRYING = "retrying"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            NodeStatus.SUCCEEDED,
            NodeStatus.FAILED,
            NodeStatus.SKIPPED,
            NodeStatus.CANCELLED,
        )


def _empty_mapping() -> Mapping[str, Any]:
    return MappingProxyType({})


@dataclass(frozen=True)
class NodeExecution:
    """One node state transition.

    Attributes:
        sequence: Position in the run trace (0-based, gap-free)
        run_id: Orchestration run the record belongs to
        node_id: Node that transitioned
        attempt: Attempt number (0 for nodes never attempted)
        status: State entered by this transition
        started_at: When the attempt started (None if never attempted)
        ended_at: When the attempt ended (None for RUNNING records)
        outcome: Classification of the attempt, for attempt-ending records
        error: Error message, for failure records
        error_type: Exception class name, for failure records
        context_delta: Values committed to the context store (SUCCEEDED only)
        context_versions: Versions assigned to ``context_delta`` keys
        detail: Free-form reason (skip cause, cancellation note)
    """

    sequence: int
    run_id: str
    node_id: str
    attempt: int
    status: NodeStatus
    started_at: datetime | None = None
    ended_at: datetime | None = None
    outcome: OutcomeKind | None = None
    error: str | None = None
    error_type: str | None = None
    context_delta: Mapping[str, Any] = field(default_factory=_empty_mapping)
    context_versions: Mapping[str, int] = field(default_factory=_empty_mapping)
    detail: str | None = None
    recorded_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def duration_seconds(self) -> float | None:
        """Attempt duration, when both timestamps are set."""
        if self.started_at and self.ended_at:
            return (self.ended_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging/storage."""
        return {
            "sequence": self.sequence,
            "run_id": self.run_id,
            "node_id": self.node_id,
            "attempt": self.attempt,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": self.duration_seconds,
            "outcome": self.outcome.value if self.outcome else None,
            "error": self.error,
            "error_type": self.error_type,
            "context_delta": dict(self.context_delta),
            "context_versions": dict(self.context_versions),
            "detail": self.detail,
        }


TraceSink = Callable[[NodeExecution], Any]


class TraceStore(Protocol):
    """Host-side receiver the finished trace is handed to."""

    def save_trace(self, trace: RunTrace) -> Any:
        ...


class TraceClosedError(ConductorError):
    """Append attempted after the trace was handed off."""


class RunTrace:
    """Ordered, append-only sequence of NodeExecution records for one run."""

    def __init__(self, run_id: str) -> None:
        self._run_id = run_id
        self._records: list[NodeExecution] = []
        self._closed = False

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def records(self) -> tuple[NodeExecution, ...]:
        return tuple(self._records)

    def _append(self, record: NodeExecution) -> None:
        if self._closed:
            raise TraceClosedError(f"Trace for run {self._run_id} was already handed off")
        self._records.append(record)

    def handoff(self) -> RunTrace:
        """Close the trace for appends; the caller now owns it."""
        self._closed = True
        return self

    # ── Queries ──────────────────────────────────────────────────────

    def for_node(self, node_id: str) -> list[NodeExecution]:
        return [r for r in self._records if r.node_id == node_id]

    def attempts(self, node_id: str) -> int:
        """Number of attempts the node started."""
        return sum(1 for r in self._records if r.node_id == node_id and r.status is NodeStatus.RUNNING)

    def final_status(self, node_id: str) -> NodeStatus:
        """Latest status recorded for the node (PENDING if none)."""
        for record in reversed(self._records):
            if record.node_id == node_id:
                return record.status
        return NodeStatus.PENDING

    def statuses(self) -> dict[str, NodeStatus]:
        """Latest status of every node that appears in the trace."""
        result: dict[str, NodeStatus] = {}
        for record in self._records:
            result[record.node_id] = record.status
        return result

    def node_ids_in_start_order(self) -> list[str]:
        """Node ids ordered by their first RUNNING record."""
        seen: list[str] = []
        for record in self._records:
            if record.status is NodeStatus.RUNNING and record.node_id not in seen:
                seen.append(record.node_id)
        return seen

    def __iter__(self) -> Iterator[NodeExecution]:
        return iter(tuple(self._records))

    def __len__(self) -> int:
        return len(self._records)

    def __getitem__(self, index: int) -> NodeExecution:
        return self._records[index]

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self._run_id,
            "records": [r.to_dict() for r in self._records],
        }

    def __repr__(self) -> str:
        return f"RunTrace(run_id={self._run_id!r}, records={len(self._records)})"


class TraceRecorder:
    """Appends NodeExecution records to a run's trace and notifies the sink."""

    def __init__(self, run_id: str, sink: TraceSink | None = None) -> None:
        self._trace = RunTrace(run_id)
        self._sink = sink
        self._lock = threading.Lock()

    @property
    def trace(self) -> RunTrace:
        return self._trace

    def record(
        self,
        node_id: str,
        attempt: int,
        status: NodeStatus,
        *,
        started_at: datetime | None = None,
        ended_at: datetime | None = None,
        outcome: OutcomeKind | None = None,
        error: BaseException | None = None,
        context_delta: Mapping[str, Any] | None = None,
        context_versions: Mapping[str, int] | None = None,
        detail: str | None = None,
    ) -> NodeExecution:
        """Append one transition and stream it to the sink."""
        with self._lock:
            execution = NodeExecution(
                sequence=len(self._trace),
                run_id=self._trace.run_id,
                node_id=node_id,
                attempt=attempt,
                status=status,
                started_at=started_at,
                ended_at=ended_at,
                outcome=outcome,
                error=str(error) if error is not None else None,
                error_type=type(error).__name__ if error is not None else None,
                context_delta=MappingProxyType(dict(context_delta or {})),
                context_versions=MappingProxyType(dict(context_versions or {})),
                detail=detail,
            )
            self._trace._append(execution)

        logger.debug(
            "trace.record",
            sequence=execution.sequence,
            node_id=node_id,
            attempt=attempt,
            status=status.value,
        )

        if self._sink is not None:
            try:
                self._sink(execution)
            except Exception:
                # A broken sink must not change the run's outcome
                logger.exception("trace.sink_failed", node_id=node_id, sequence=execution.sequence)

        return execution


def observed_durations(trace: RunTrace) -> dict[str, float]:
    """Per-node duration of the last finished attempt, for critical-path weights."""
    durations: dict[str, float] = {}
    for record in trace:
        if record.duration_seconds is not None:
            durations[record.node_id] = record.duration_seconds
    return durations
