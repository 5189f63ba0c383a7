"""Scheduler / Executor — drives a validated graph to completion.

Manifesto:
    The scheduler owns every run-time decision: which node is ready, when
it may take a worker slot, what an attempt's outcome means, when to retry,
skip, or abort.  It never runs agents itself; each attempt is handed to the
injected unit-of-work executor together with the node's inputs and a
cancellation signal.  Whatever happens to individual nodes, the caller gets
back a run status and the full trace, never a bare exception.

ARCHITECTURE
────────────
::

    Orchestrator(executor, policy, trace_sink, trace_store)
      └── run(graph) ──► _RunSession (one per run)
            ├── ContextStore(run_id, initial_context)
            ├── TraceRecorder(run_id, sink)
            ├── WorkerPool(max_concurrency)         FIFO slot admission
            ├── strategy loop
            │     SEQUENTIAL    topological order, stop on first failure
            │     PARALLEL      eager dispatch as predecessors resolve
            │     DAG           waves from parallel_batches(), barrier between
            │     EVENT_DRIVEN  eager dispatch gated by trigger edges
            └── _run_node(id)   attempt loop:
                  read inputs → execute → classify → merge | retry | fail

    Run states:  BUILDING → VALIDATED → RUNNING → COMPLETED
                                                 | PARTIALLY_FAILED
                                                 | ABORTED

Abort (caller cancellation or run timeout):
    - no new nodes are dispatched
    - every running attempt's CancelSignal is set; the scheduler waits up to
      ``cancel_grace_seconds`` for it to return, then records it CANCELLED
      (results returned after the abort are discarded)
    - nodes that never started are recorded SKIPPED

Example::

    async def execute(node_id, inputs, cancel):
        return await agents[node_id].run(inputs)

    orchestrator = Orchestrator(execute, policy=ExecutionPolicy(strategy="dag", max_concurrency=2))
    result = await orchestrator.run(graph, initial_context={"topic": "llm evals"})
    result.status            # RunStatus.COMPLETED
    result.final_context     # {"topic": ..., "summary": ...}
    result.trace             # RunTrace with one record per transition
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable, Mapping
from contextlib import suppress
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any

from conductor.core.errors import (
    CancellationError,
    ConfigError,
    ConflictError,
    ExecutorError,
    InputMissingError,
    NodeTimeoutError,
)
from conductor.core.logging import LogContext, get_logger
from conductor.core.settings import EngineSettings, get_settings
from conductor.orchestration.cancellation import CancelSignal, RunCancellation
from conductor.orchestration.context_store import ContextStore
from conductor.orchestration.executors import (
    ExecutorFn,
    UnitOfWorkExecutor,
    is_async_callable,
    resolve_execute,
)
from conductor.orchestration.failure_policy import FailurePolicy, OutcomeKind
from conductor.orchestration.graph import Graph
from conductor.orchestration.models import Node
from conductor.orchestration.trace import (
    NodeStatus,
    RunTrace,
    TraceRecorder,
    TraceSink,
    TraceStore,
)

logger = get_logger(__name__)


class Strategy(str, Enum):
    """How ready nodes are dispatched."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    DAG = "dag"
    EVENT_DRIVEN = "event_driven"


class RunState(str, Enum):
    """Lifecycle state of a run."""

    BUILDING = "building"
    VALIDATED = "validated"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    ABORTED = "aborted"


class RunStatus(str, Enum):
    """Terminal outcome of a run."""

    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class ExecutionPolicy:
    """
    Run-level scheduling configuration.

    Attributes:
        strategy: Dispatch strategy
        max_concurrency: Worker pool size (concurrently running attempts)
        cancel_grace_seconds: How long aborted attempts may take to return
        run_timeout_seconds: Whole-run deadline (None = unbounded)
        default_failure_policy: Policy for nodes that declare none
    """

    strategy: Strategy = Strategy.DAG
    max_concurrency: int = 4
    cancel_grace_seconds: float = 5.0
    run_timeout_seconds: float | None = None
    default_failure_policy: FailurePolicy = field(default_factory=FailurePolicy)

    def __post_init__(self) -> None:
        if not isinstance(self.strategy, Strategy):
            try:
                object.__setattr__(self, "strategy", Strategy(self.strategy))
            except ValueError as exc:
                raise ConfigError(f"Unknown strategy: {self.strategy!r}") from exc
        if self.max_concurrency < 1:
            raise ConfigError(f"max_concurrency must be >= 1, got {self.max_concurrency}")
        if self.cancel_grace_seconds < 0:
            raise ConfigError(f"cancel_grace_seconds must be >= 0, got {self.cancel_grace_seconds}")
        if self.run_timeout_seconds is not None and self.run_timeout_seconds <= 0:
            raise ConfigError(f"run_timeout_seconds must be > 0, got {self.run_timeout_seconds}")

    @classmethod
    def from_settings(cls, settings: EngineSettings | None = None, **overrides: Any) -> ExecutionPolicy:
        """Policy from engine settings, with explicit overrides on top."""
        settings = settings or get_settings()
        values: dict[str, Any] = {
            "strategy": settings.default_strategy,
            "max_concurrency": settings.max_concurrency,
            "cancel_grace_seconds": settings.cancel_grace_seconds,
            "run_timeout_seconds": settings.run_timeout_seconds,
            "default_failure_policy": FailurePolicy.from_settings(settings),
        }
        values.update(overrides)
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "max_concurrency": self.max_concurrency,
            "cancel_grace_seconds": self.cancel_grace_seconds,
            "run_timeout_seconds": self.run_timeout_seconds,
        }


class WorkerPool:
    """Fixed number of slots handed out in request order.

    ``acquire()`` returns False once the pool is closed (run aborting); a
    closed pool wakes every waiter immediately.
    """

    def __init__(self, size: int) -> None:
        if size < 1:
            raise ConfigError(f"Worker pool size must be >= 1, got {size}")
        self._size = size
        self._free = size
        self._waiters: deque[asyncio.Future[bool]] = deque()
        self._closed = False

    @property
    def size(self) -> int:
        return self._size

    @property
    def in_use(self) -> int:
        return self._size - self._free

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    @property
    def closed(self) -> bool:
        return self._closed

    async def acquire(self) -> bool:
        if self._closed:
            return False
        if self._free > 0 and not self._waiters:
            self._free -= 1
            return True

        waiter: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled() and waiter.result():
                # Slot was handed over just before cancellation
                self.release()
            else:
                with suppress(ValueError):
                    self._waiters.remove(waiter)
            raise

    def release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(True)
                return
        self._free = min(self._free + 1, self._size)

    def close(self) -> None:
        self._closed = True
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(False)


@dataclass
class RunResult:
    """Everything the caller gets back from one run."""

    run_id: str
    status: RunStatus
    final_context: Mapping[str, Any]
    trace: RunTrace
    node_statuses: dict[str, NodeStatus]
    strategy: Strategy
    started_at: datetime
    completed_at: datetime
    initial_context: Mapping[str, Any] = field(default_factory=dict)
    abort_reason: str | None = None

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def completed(self) -> bool:
        return self.status is RunStatus.COMPLETED

    def nodes_with(self, status: NodeStatus) -> list[str]:
        return [node_id for node_id, s in self.node_statuses.items() if s is status]

    @property
    def failed_nodes(self) -> list[str]:
        return self.nodes_with(NodeStatus.FAILED)

    @property
    def skipped_nodes(self) -> list[str]:
        return self.nodes_with(NodeStatus.SKIPPED)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging/storage."""
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "strategy": self.strategy.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "abort_reason": self.abort_reason,
            "node_statuses": {k: v.value for k, v in self.node_statuses.items()},
            "initial_context": dict(self.initial_context),
            "final_context": dict(self.final_context),
            "trace": self.trace.to_dict(),
        }


class _Readiness(str, Enum):
    READY = "ready"
    WAITING = "waiting"
    BLOCKED = "blocked"


@dataclass
class _AttemptResult:
    kind: OutcomeKind
    error: BaseException | None = None
    delta: Mapping[str, Any] = field(default_factory=dict)
    versions: Mapping[str, int] = field(default_factory=dict)
    detail: str | None = None


def _now() -> datetime:
    return datetime.now(UTC)


def _consume_result(future: asyncio.Future[Any]) -> None:
    """Retrieve an abandoned attempt's outcome so asyncio doesn't warn about it."""
    if not future.cancelled():
        exc = future.exception()
        if exc is not None:
            logger.debug("node.abandoned_attempt_failed", error=str(exc))


class Orchestrator:
    """
    Executes workflow graphs against an injected unit-of-work executor.

    One Orchestrator may run many graphs, concurrently or not; all per-run
    state lives in the run session.

    Args:
        executor: Object with ``execute(node_id, inputs, cancel_signal)`` or
            a callable with that signature, sync or async
        policy: Run-level policy (default: from ``EngineSettings``)
        trace_sink: Called once per appended trace record
        trace_store: Receives the finished trace via ``save_trace(trace)``
    """

    def __init__(
        self,
        executor: UnitOfWorkExecutor | ExecutorFn,
        *,
        policy: ExecutionPolicy | None = None,
        trace_sink: TraceSink | None = None,
        trace_store: TraceStore | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        self._execute = resolve_execute(executor)
        self._policy = policy or ExecutionPolicy.from_settings(settings)
        self._trace_sink = trace_sink
        self._trace_store = trace_store

    @property
    def policy(self) -> ExecutionPolicy:
        return self._policy

    async def run(
        self,
        workflow: Graph | Mapping[str, Any],
        *,
        initial_context: Mapping[str, Any] | None = None,
        strategy: Strategy | str | None = None,
        cancellation: RunCancellation | None = None,
        run_id: str | None = None,
    ) -> RunResult:
        """Execute ``workflow`` to a terminal run status.

        Args:
            workflow: A built Graph, or a definition dict (validated first; its
                ``policy`` section is layered over this orchestrator's policy)
            initial_context: Values seeded into the context store at version 1
            strategy: Overrides the strategy for this run (wins over the definition)
            cancellation: Handle the caller may use to abort the run
            run_id: Explicit run id (default: random uuid)

        Raises:
            GraphError: The definition is invalid; nothing was executed
            ConfigError: The strategy or policy overrides are invalid
        """
        state = RunState.BUILDING
        policy = self._policy
        if isinstance(workflow, Graph):
            graph = workflow
        else:
            from conductor.orchestration.definition import WorkflowSpec

            spec = WorkflowSpec.from_dict(workflow)
            graph = spec.to_graph()
            # The definition's policy section overrides the orchestrator's
            overrides = spec.policy.overrides()
            if overrides:
                policy = replace(policy, **overrides)
        state = RunState.VALIDATED

        if strategy is not None:
            policy = replace(policy, strategy=strategy)

        session = _RunSession(
            graph=graph,
            execute=self._execute,
            policy=policy,
            run_id=run_id or str(uuid.uuid4()),
            initial_context=initial_context or {},
            trace_sink=self._trace_sink,
            state=state,
        )
        result = await session.execute(cancellation)

        if self._trace_store is not None:
            try:
                self._trace_store.save_trace(result.trace)
            except Exception:
                logger.exception("run.trace_store_failed", run_id=result.run_id)
        return result

    def run_sync(self, workflow: Graph | Mapping[str, Any], **kwargs: Any) -> RunResult:
        """Blocking wrapper around :meth:`run` for callers without an event loop."""
        return asyncio.run(self.run(workflow, **kwargs))


class _RunSession:
    """All mutable state of one run."""

    def __init__(
        self,
        *,
        graph: Graph,
        execute: ExecutorFn,
        policy: ExecutionPolicy,
        run_id: str,
        initial_context: Mapping[str, Any],
        trace_sink: TraceSink | None,
        state: RunState,
    ) -> None:
        self.graph = graph
        self.policy = policy
        self.run_id = run_id
        self.state = state
        self._execute = execute
        self._initial = MappingProxyType(copy.deepcopy(dict(initial_context)))
        self.store = ContextStore(run_id=run_id, initial=initial_context)
        self.recorder = TraceRecorder(run_id, trace_sink)
        self.pool = WorkerPool(policy.max_concurrency)
        self.status: dict[str, NodeStatus] = {node_id: NodeStatus.PENDING for node_id in graph}
        self._dispatched: set[str] = set()
        self._triggered: set[str] = set()
        self._abort_event = asyncio.Event()
        self.abort_reason: str | None = None

    # =========================================================================
    # Run lifecycle
    # =========================================================================

    @property
    def aborted(self) -> bool:
        return self._abort_event.is_set()

    def abort(self, reason: str) -> None:
        if self._abort_event.is_set():
            return
        self.abort_reason = reason
        logger.warning("run.abort", reason=reason)
        self.pool.close()
        self._abort_event.set()

    async def _watchdog(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
        self.abort(f"run exceeded timeout of {seconds}s")

    async def execute(self, cancellation: RunCancellation | None) -> RunResult:
        started_at = _now()
        started = time.monotonic()
        strategy = self.policy.strategy

        async with LogContext(run_id=self.run_id):
            logger.info(
                "run.start",
                strategy=strategy.value,
                nodes=len(self.graph),
                max_concurrency=self.policy.max_concurrency,
            )
            self.state = RunState.RUNNING

            if cancellation is not None:
                if cancellation.cancelled:
                    self.abort(cancellation.reason or "cancelled by caller")
                cancellation.bind(asyncio.get_running_loop(), self.abort)
            watchdog = None
            if self.policy.run_timeout_seconds is not None:
                watchdog = asyncio.create_task(self._watchdog(self.policy.run_timeout_seconds))

            try:
                if strategy is Strategy.SEQUENTIAL:
                    await self._run_sequential()
                elif strategy is Strategy.DAG:
                    await self._run_waves()
                else:
                    await self._run_eager(use_triggers=strategy is Strategy.EVENT_DRIVEN)
            finally:
                if watchdog is not None:
                    watchdog.cancel()
                    with suppress(asyncio.CancelledError):
                        await watchdog
                if cancellation is not None:
                    cancellation.unbind()

            self._settle_unfinished()
            status = self._final_status()
            self.state = RunState(status.value)
            final_context = self.store.freeze()
            trace = self.recorder.trace.handoff()

            logger.info(
                "run.complete",
                status=status.value,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
                succeeded=sum(1 for s in self.status.values() if s is NodeStatus.SUCCEEDED),
                failed=sum(1 for s in self.status.values() if s is NodeStatus.FAILED),
                skipped=sum(1 for s in self.status.values() if s is NodeStatus.SKIPPED),
                cancelled=sum(1 for s in self.status.values() if s is NodeStatus.CANCELLED),
            )

        return RunResult(
            run_id=self.run_id,
            status=status,
            final_context=final_context,
            trace=trace,
            node_statuses=dict(self.status),
            strategy=strategy,
            started_at=started_at,
            completed_at=_now(),
            initial_context=self._initial,
            abort_reason=self.abort_reason,
        )

    def _final_status(self) -> RunStatus:
        if self.aborted:
            return RunStatus.ABORTED
        # Untriggered skips are a normal outcome; only failures degrade the run
        if any(s in (NodeStatus.FAILED, NodeStatus.CANCELLED) for s in self.status.values()):
            return RunStatus.PARTIALLY_FAILED
        return RunStatus.COMPLETED

    def _settle_unfinished(self) -> None:
        """Record every node that never started as SKIPPED."""
        for node_id in self.graph.topological_order():
            if self.status[node_id] is NodeStatus.PENDING:
                if self.aborted:
                    reason = f"run aborted: {self.abort_reason}"
                elif self.graph.incoming_triggers(node_id) and self.policy.strategy is Strategy.EVENT_DRIVEN:
                    reason = "not triggered"
                else:
                    reason = "never became ready"
                self._skip(node_id, reason)

    # =========================================================================
    # Strategies
    # =========================================================================

    async def _run_sequential(self) -> None:
        stopped_by: str | None = None
        for node_id in self.graph.topological_order():
            if self.aborted:
                return
            if stopped_by is not None:
                self._skip(node_id, f"run stopped after '{stopped_by}' did not succeed")
                continue
            readiness, reason = self._readiness(node_id, use_triggers=False)
            if readiness is _Readiness.BLOCKED:
                self._skip(node_id, reason)
                continue
            self._dispatched.add(node_id)
            outcome = await self._run_node(node_id)
            if outcome is not NodeStatus.SUCCEEDED and not self.aborted:
                stopped_by = node_id

    async def _run_waves(self) -> None:
        for index, wave in enumerate(self.graph.parallel_batches()):
            if self.aborted:
                return
            tasks = []
            for node_id in sorted(wave):
                readiness, reason = self._readiness(node_id, use_triggers=False)
                if readiness is _Readiness.BLOCKED:
                    self._skip(node_id, reason)
                    continue
                self._dispatched.add(node_id)
                tasks.append(asyncio.create_task(self._run_node(node_id), name=f"node:{node_id}"))
            logger.debug("wave.start", wave=index, nodes=len(tasks))
            if tasks:
                await asyncio.gather(*tasks)

    async def _run_eager(self, *, use_triggers: bool) -> None:
        running: dict[asyncio.Task[NodeStatus], str] = {}

        while not self.aborted:
            self._skip_blocked(use_triggers)
            ready = sorted(
                node_id
                for node_id in self.graph
                if node_id not in self._dispatched
                and self._readiness(node_id, use_triggers)[0] is _Readiness.READY
            )
            for node_id in ready:
                self._dispatched.add(node_id)
                task = asyncio.create_task(self._run_node(node_id), name=f"node:{node_id}")
                running[task] = node_id

            if not running:
                break

            done = await self._wait_any(set(running))
            for task in done:
                running.pop(task)
                task.result()

        if running:
            await asyncio.gather(*running)

    def _skip_blocked(self, use_triggers: bool) -> None:
        """Skip every undispatched node that can no longer become ready."""
        changed = True
        while changed:
            changed = False
            for node_id in self.graph.topological_order():
                if node_id in self._dispatched or self.status[node_id] is not NodeStatus.PENDING:
                    continue
                readiness, reason = self._readiness(node_id, use_triggers)
                if readiness is _Readiness.BLOCKED:
                    self._skip(node_id, reason)
                    changed = True

    async def _wait_any(self, tasks: set[asyncio.Task[NodeStatus]]) -> set[asyncio.Task[NodeStatus]]:
        abort_waiter = asyncio.ensure_future(self._abort_event.wait())
        try:
            done, _ = await asyncio.wait({*tasks, abort_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            abort_waiter.cancel()
        return {t for t in done if t is not abort_waiter}

    # =========================================================================
    # Readiness
    # =========================================================================

    def _readiness(self, node_id: str, use_triggers: bool) -> tuple[_Readiness, str]:
        for edge in self.graph.incoming_ordering_edges(node_id):
            upstream = self.status[edge.source]
            if upstream is NodeStatus.SUCCEEDED:
                continue
            if upstream.is_terminal:
                if edge.best_effort:
                    continue
                return _Readiness.BLOCKED, f"upstream '{edge.source}' {upstream.value}"
            return _Readiness.WAITING, ""

        if use_triggers:
            triggers = self.graph.incoming_triggers(node_id)
            if triggers and node_id not in self._triggered:
                if all(self.status[e.source].is_terminal for e in triggers):
                    return _Readiness.BLOCKED, "not triggered"
                return _Readiness.WAITING, ""

        return _Readiness.READY, ""

    def _fire_triggers(self, node_id: str) -> None:
        """Evaluate outgoing trigger edges of a node that just succeeded."""
        snapshot = self.store.snapshot()
        for edge in self.graph.outgoing_triggers(node_id):
            if edge.target in self._triggered or self.status[edge.target].is_terminal:
                continue
            if edge.condition is not None:
                try:
                    fired = bool(edge.condition(snapshot))
                except Exception as exc:
                    logger.warning(
                        "trigger.condition_failed",
                        source=node_id,
                        target=edge.target,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                    fired = False
            else:
                fired = True
            logger.debug("trigger.evaluated", source=node_id, target=edge.target, fired=fired)
            if fired:
                self._triggered.add(edge.target)

    # =========================================================================
    # Node lifecycle
    # =========================================================================

    def _skip(self, node_id: str, reason: str) -> None:
        self.status[node_id] = NodeStatus.SKIPPED
        self.recorder.record(node_id, 0, NodeStatus.SKIPPED, detail=reason)
        logger.info("node.skipped", node_id=node_id, reason=reason)

    async def _run_node(self, node_id: str) -> NodeStatus:
        """Drive one node through its attempts to a terminal status."""
        node = self.graph.node(node_id)
        policy = node.failure_policy or self.policy.default_failure_policy
        attempt = 0

        while True:
            attempt += 1
            if not await self.pool.acquire():
                if attempt == 1:
                    self._skip(node_id, f"run aborted before dispatch: {self.abort_reason}")
                    return NodeStatus.SKIPPED
                return self._cancelled(node_id, attempt - 1, None, "run aborted while waiting to retry")

            started_at = _now()
            try:
                self.status[node_id] = NodeStatus.RUNNING
                self.recorder.record(node_id, attempt, NodeStatus.RUNNING, started_at=started_at)
                logger.info("node.dispatch", node_id=node_id, attempt=attempt)
                result = await self._attempt(node, attempt, policy)
            finally:
                self.pool.release()
            ended_at = _now()

            if result.kind is OutcomeKind.SUCCESS:
                self.status[node_id] = NodeStatus.SUCCEEDED
                self.recorder.record(
                    node_id,
                    attempt,
                    NodeStatus.SUCCEEDED,
                    started_at=started_at,
                    ended_at=ended_at,
                    outcome=result.kind,
                    context_delta=result.delta,
                    context_versions=result.versions,
                )
                logger.info(
                    "node.succeeded",
                    node_id=node_id,
                    attempt=attempt,
                    keys=sorted(result.delta),
                    duration_ms=round((ended_at - started_at).total_seconds() * 1000, 2),
                )
                if self.policy.strategy is Strategy.EVENT_DRIVEN:
                    self._fire_triggers(node_id)
                return NodeStatus.SUCCEEDED

            if result.kind is OutcomeKind.CANCELLED:
                return self._cancelled(node_id, attempt, started_at, result.detail, result.error)

            if policy.should_retry(result.kind, attempt):
                delay = policy.next_delay(attempt)
                self.status[node_id] = NodeStatus.RETRYING
                self.recorder.record(
                    node_id,
                    attempt,
                    NodeStatus.RETRYING,
                    started_at=started_at,
                    ended_at=ended_at,
                    outcome=result.kind,
                    error=result.error,
                    detail=f"retrying in {delay:.3f}s",
                )
                logger.warning(
                    "node.retry",
                    node_id=node_id,
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    delay=delay,
                    outcome=result.kind.value,
                    error=str(result.error),
                )
                if not await self._backoff(delay):
                    return self._cancelled(node_id, attempt, None, "run aborted during retry backoff")
                continue

            self.status[node_id] = NodeStatus.FAILED
            self.recorder.record(
                node_id,
                attempt,
                NodeStatus.FAILED,
                started_at=started_at,
                ended_at=ended_at,
                outcome=result.kind,
                error=result.error,
            )
            logger.error(
                "node.failed",
                node_id=node_id,
                attempt=attempt,
                outcome=result.kind.value,
                error=str(result.error),
                error_type=type(result.error).__name__,
            )
            return NodeStatus.FAILED

    def _cancelled(
        self,
        node_id: str,
        attempt: int,
        started_at: datetime | None,
        detail: str | None,
        error: BaseException | None = None,
    ) -> NodeStatus:
        self.status[node_id] = NodeStatus.CANCELLED
        self.recorder.record(
            node_id,
            attempt,
            NodeStatus.CANCELLED,
            started_at=started_at,
            ended_at=_now(),
            outcome=OutcomeKind.CANCELLED,
            error=error,
            detail=detail,
        )
        logger.warning("node.cancelled", node_id=node_id, attempt=attempt, detail=detail)
        return NodeStatus.CANCELLED

    async def _backoff(self, delay: float) -> bool:
        """Sleep ``delay`` seconds; False if the run aborted meanwhile."""
        if self.aborted:
            return False
        if delay <= 0:
            return True
        abort_waiter = asyncio.ensure_future(self._abort_event.wait())
        try:
            done, _ = await asyncio.wait({abort_waiter}, timeout=delay)
        finally:
            abort_waiter.cancel()
        return abort_waiter not in done

    # =========================================================================
    # One attempt
    # =========================================================================

    def _read_inputs(self, node: Node) -> tuple[dict[str, Any], list[str]]:
        inputs: dict[str, Any] = {}
        missing: list[str] = []
        for spec in node.inputs:
            if spec.key in self.store:
                inputs[spec.key] = copy.deepcopy(self.store.read(spec.key))
            elif spec.has_default:
                inputs[spec.key] = copy.deepcopy(spec.default)
            elif spec.required:
                missing.append(spec.key)
        return inputs, missing

    def _select_outputs(self, node: Node, raw: Any) -> dict[str, Any]:
        if raw is None:
            return {}
        if not isinstance(raw, Mapping):
            raise ExecutorError(
                f"Node '{node.id}' returned {type(raw).__name__}, expected a mapping of outputs",
                retryable=False,
            )
        if not node.outputs:
            return dict(raw)
        undeclared = sorted(set(raw) - set(node.outputs))
        if undeclared:
            logger.debug("node.undeclared_outputs", node_id=node.id, keys=undeclared)
        return {key: raw[key] for key in node.outputs if key in raw}

    async def _attempt(self, node: Node, attempt: int, policy: FailurePolicy) -> _AttemptResult:
        inputs, missing = self._read_inputs(node)
        if missing:
            error = InputMissingError(node.id, missing).with_context(run_id=self.run_id, attempt=attempt)
            return _AttemptResult(OutcomeKind.FATAL_FAILURE, error)

        # Versions seen at dispatch; outputs are merged against these
        seen_versions = {key: self.store.version(key) for key in self.store.keys()}
        signal = CancelSignal()
        call = asyncio.ensure_future(self._invoke(node.id, inputs, signal))

        abort_waiter = asyncio.ensure_future(self._abort_event.wait())
        try:
            done, _ = await asyncio.wait(
                {call, abort_waiter},
                timeout=policy.timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            abort_waiter.cancel()

        if self.aborted:
            return await self._abandon_on_abort(node, call, signal)

        if call not in done:
            signal.cancel("timeout")
            call.add_done_callback(_consume_result)
            call.cancel()
            error = NodeTimeoutError(node.id, policy.timeout or 0.0, attempt)
            return _AttemptResult(policy.classify(error, timed_out=True), error)

        if call.cancelled():
            error = ExecutorError(f"Unit of work for '{node.id}' was cancelled", retryable=False)
            return _AttemptResult(OutcomeKind.FATAL_FAILURE, error)
        exc = call.exception()
        if exc is not None:
            return _AttemptResult(policy.classify(exc), exc)

        try:
            delta = self._select_outputs(node, call.result())
            expected = {key: seen_versions.get(key, 0) for key in delta}
            applied = self.store.merge(delta, expected, writer=node.id)
        except ConflictError as exc:
            logger.info("node.conflict", node_id=node.id, key=exc.key, attempt=attempt)
            return _AttemptResult(policy.classify(exc), exc)
        except ExecutorError as exc:
            return _AttemptResult(policy.classify(exc), exc)
        except Exception as exc:
            error = ExecutorError(f"Could not commit outputs of '{node.id}': {exc}", retryable=False, cause=exc)
            return _AttemptResult(OutcomeKind.FATAL_FAILURE, error)

        versions = {key: self.store.version(key) for key in applied}
        return _AttemptResult(OutcomeKind.SUCCESS, delta=delta, versions=versions)

    async def _abandon_on_abort(
        self,
        node: Node,
        call: asyncio.Future[Any],
        signal: CancelSignal,
    ) -> _AttemptResult:
        reason = self.abort_reason or "run aborted"
        signal.cancel(reason)
        if not call.done():
            await asyncio.wait({call}, timeout=self.policy.cancel_grace_seconds)
        if call.done():
            _consume_result(call)
            detail = "observed cancellation"
        else:
            call.add_done_callback(_consume_result)
            call.cancel()
            detail = f"did not return within {self.policy.cancel_grace_seconds}s grace period"
            logger.warning("node.cancel_grace_expired", node_id=node.id)
        return _AttemptResult(OutcomeKind.CANCELLED, CancellationError(reason), detail=detail)

    async def _invoke(self, node_id: str, inputs: dict[str, Any], signal: CancelSignal) -> Any:
        if is_async_callable(self._execute):
            result = await self._execute(node_id, inputs, signal)
        else:
            result = await _run_in_thread(self._execute, node_id, inputs, signal)
        if inspect.isawaitable(result):
            result = await result
        return result


async def _run_in_thread(fn: Callable[..., Any], *args: Any) -> Any:
    """Run a blocking callable on a daemon thread and await its result.

    The thread is never joined, so an abandoned attempt cannot hold up the
    end of a run.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[Any] = loop.create_future()

    def _deliver(setter: Callable[[Any], None], value: Any) -> None:
        if not future.done():
            setter(value)

    def _target() -> None:
        try:
            result = fn(*args)
        except BaseException as exc:
            outcome, value = future.set_exception, exc
        else:
            outcome, value = future.set_result, result
        with suppress(RuntimeError):  # loop already closed
            loop.call_soon_threadsafe(_deliver, outcome, value)

    threading.Thread(target=_target, name=f"conductor-node-{args[0] if args else ''}", daemon=True).start()
    return await future
