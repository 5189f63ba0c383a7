"""Unit-of-work executor contract and the registry-backed implementation.

The engine never runs agents itself.  The host injects an executor — any
object with an ``execute(node_id, inputs, cancel_signal)`` method, or a plain
callable with the same signature — returning the node's outputs as a mapping
or raising on failure.  Both sync and ``async def`` executors are accepted;
sync ones run on a worker thread so they never block the scheduler.

For hosts that keep agent/skill/tool definitions in a record store, the
:class:`ExecutorRegistry` maps each node's ``executor_ref`` to a handler::

    registry = ExecutorRegistry()

    @registry.register("llm.summarise")
    async def summarise(inputs, cancel):
        return {"summary": await call_model(inputs["document"])}

    registry.register("tools.word_count", adapt_function(count_words))

    executor = registry.executor_for(graph)      # validates every ref up front
    result = await Orchestrator(executor).run(graph)
"""

from __future__ import annotations

import asyncio
import functools
import inspect
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol, runtime_checkable

from conductor.core.errors import ConfigError, ExecutorError
from conductor.core.logging import get_logger
from conductor.orchestration.cancellation import CancelSignal
from conductor.orchestration.graph import Graph

logger = get_logger(__name__)

NodeOutputs = Mapping[str, Any]
Handler = Callable[[dict[str, Any], CancelSignal], "NodeOutputs | Awaitable[NodeOutputs] | None"]


@runtime_checkable
class UnitOfWorkExecutor(Protocol):
    """Protocol for injected unit-of-work executors."""

    def execute(
        self,
        node_id: str,
        inputs: dict[str, Any],
        cancel_signal: CancelSignal,
    ) -> NodeOutputs | Awaitable[NodeOutputs]:
        """Run one attempt of ``node_id`` and return its outputs."""
        ...


ExecutorFn = Callable[[str, dict[str, Any], CancelSignal], Any]


def is_async_callable(fn: Any) -> bool:
    """True for ``async def`` functions, bound methods, and partials of them."""
    while isinstance(fn, functools.partial):
        fn = fn.func
    if inspect.iscoroutinefunction(fn):
        return True
    call = getattr(fn, "__call__", None)
    return call is not None and inspect.iscoroutinefunction(call)


def resolve_execute(executor: UnitOfWorkExecutor | ExecutorFn) -> ExecutorFn:
    """Return the callable the scheduler should invoke for each attempt."""
    execute = getattr(executor, "execute", None)
    if execute is not None and callable(execute):
        return execute
    if callable(executor):
        return executor
    raise ConfigError(f"Executor {executor!r} is neither callable nor has an execute() method")


def adapt_function(fn: Callable[..., Any]) -> Handler:
    """Adapt a plain function taking input keys as keyword arguments.

    The adapter passes only the inputs the function's signature accepts
    (plus ``cancel_signal`` if it asks for it) and coerces the return value:
    a mapping is used as-is, ``None`` becomes ``{}``, anything else is
    wrapped as ``{"result": value}``.
    """
    sig = inspect.signature(fn)
    accepts_var_kw = any(p.kind is inspect.Parameter.VAR_KEYWORD for p in sig.parameters.values())
    names = set(sig.parameters)

    def _kwargs(inputs: dict[str, Any], cancel_signal: CancelSignal) -> dict[str, Any]:
        kwargs = dict(inputs) if accepts_var_kw else {k: v for k, v in inputs.items() if k in names}
        if "cancel_signal" in names:
            kwargs["cancel_signal"] = cancel_signal
        return kwargs

    def _coerce(value: Any) -> NodeOutputs:
        if value is None:
            return {}
        if isinstance(value, Mapping):
            return value
        return {"result": value}

    if is_async_callable(fn):

        @functools.wraps(fn)
        async def async_handler(inputs: dict[str, Any], cancel_signal: CancelSignal) -> NodeOutputs:
            return _coerce(await fn(**_kwargs(inputs, cancel_signal)))

        return async_handler

    @functools.wraps(fn)
    def handler(inputs: dict[str, Any], cancel_signal: CancelSignal) -> NodeOutputs:
        return _coerce(fn(**_kwargs(inputs, cancel_signal)))

    return handler


class ExecutorRegistry:
    """Maps executor references to handlers ``(inputs, cancel_signal) -> outputs``."""

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}

    def register(self, ref: str, handler: Handler | None = None) -> Any:
        """Register ``handler`` under ``ref``; usable as a decorator."""
        if not ref:
            raise ConfigError("Executor reference must not be empty")

        def decorator(fn: Handler) -> Handler:
            if ref in self._handlers:
                logger.warning("executor_registry.overwrite", ref=ref)
            self._handlers[ref] = fn
            return fn

        if handler is not None:
            return decorator(handler)
        return decorator

    def get(self, ref: str) -> Handler:
        try:
            return self._handlers[ref]
        except KeyError:
            available = ", ".join(sorted(self._handlers)) or "(none)"
            raise ConfigError(f"No executor registered for '{ref}'. Available: {available}") from None

    def refs(self) -> list[str]:
        return sorted(self._handlers)

    def missing_refs(self, graph: Graph) -> list[str]:
        """Executor refs used by ``graph`` that have no handler."""
        return sorted({n.executor_ref for n in graph.nodes.values() if n.executor_ref not in self._handlers})

    def executor_for(self, graph: Graph, *, strict: bool = True) -> RegistryExecutor:
        """Bind the registry to ``graph``.

        Raises:
            ConfigError: ``strict`` and some node's executor_ref is unregistered
        """
        if strict:
            missing = self.missing_refs(graph)
            if missing:
                raise ConfigError(f"Unregistered executor refs: {', '.join(missing)}")
        return RegistryExecutor(self, graph)

    def __contains__(self, ref: object) -> bool:
        return ref in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


class RegistryExecutor:
    """Executor that resolves each node's ``executor_ref`` through a registry."""

    def __init__(self, registry: ExecutorRegistry, graph: Graph) -> None:
        self._registry = registry
        self._graph = graph

    async def execute(
        self,
        node_id: str,
        inputs: dict[str, Any],
        cancel_signal: CancelSignal,
    ) -> NodeOutputs:
        ref = self._graph.node(node_id).executor_ref
        try:
            handler = self._registry.get(ref)
        except ConfigError as exc:
            raise ExecutorError(str(exc), retryable=False, cause=exc).with_context(node_id=node_id) from exc

        if is_async_callable(handler):
            result = await handler(inputs, cancel_signal)
        else:
            result = await asyncio.to_thread(handler, inputs, cancel_signal)
            if inspect.isawaitable(result):
                result = await result
        return result
