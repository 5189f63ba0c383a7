"""
Structured error types for the conductor engine.

Every failure the engine can observe is expressed as a ``ConductorError``
subclass carrying a category, an explicit retry flag, structured context
(run, node, attempt) and an optional chained cause.  The scheduler uses the
retry flag to classify unit-of-work outcomes; hosts use ``to_dict()`` to log
or persist errors without parsing messages.

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       ConductorError                             │
        │  (category, retryable, context, cause)                          │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  GraphError          ExecutorError       ContextError            │
        │  (GRAPH)             (EXECUTOR)          (CONTEXT)               │
        │      │                   │                   │                   │
        │  CycleDetected       TransientError      ConflictError           │
        │  DuplicateNode       InputMissingError   ContextKeyNotFound      │
        │  UnknownNode                             ContextFrozenError      │
        │                                                                  │
        │  NodeTimeoutError    CancellationError   ConfigError             │
        │  (TIMEOUT, retry)    (CANCELLED)         (CONFIG)                │
        └─────────────────────────────────────────────────────────────────┘

Examples:
    >>> error = TransientError("model endpoint busy")
    >>> error.retryable
    True
    >>> error.with_context(node_id="summarise", attempt=2).to_dict()["context"]
    {'node_id': 'summarise', 'attempt': 2}

Tags:
    error-handling, exception-hierarchy, retry-logic, conductor
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories used for classification and retry decisions."""

    GRAPH = "GRAPH"  # Malformed workflow definition
    EXECUTOR = "EXECUTOR"  # Failure raised by a unit of work
    INPUT = "INPUT"  # Required context input absent at dispatch
    CONTEXT = "CONTEXT"  # Context store version conflicts, frozen store
    TIMEOUT = "TIMEOUT"  # Node exceeded its configured duration
    CANCELLED = "CANCELLED"  # Run-level abort
    CONFIG = "CONFIG"  # Invalid settings or definitions
    INTERNAL = "INTERNAL"  # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"  # Uncategorized errors


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Attributes:
        run_id: Orchestration run identifier
        node_id: Node the error belongs to
        attempt: Attempt number (1-based) when the error was raised
        key: Context key involved, for context-store errors
        metadata: Additional key-value pairs
    """

    run_id: str | None = None
    node_id: str | None = None
    attempt: int | None = None
    key: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for name in ["run_id", "node_id", "attempt", "key"]:
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class ConductorError(Exception):
    """Base exception for all conductor errors.

    Subclasses set ``default_category`` and ``default_retryable``; callers can
    override either per instance.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ConductorError:
        """Add context to this error (fluent API)."""
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# GRAPH ERRORS (construction time, never retryable)
# =============================================================================


class GraphError(ConductorError):
    """Malformed workflow definition. Nothing executes."""

    default_category = ErrorCategory.GRAPH
    default_retryable = False


# =============================================================================
# UNIT-OF-WORK ERRORS
# =============================================================================


class ExecutorError(ConductorError):
    """Error raised by (or on behalf of) an injected unit of work.

    Fatal by default; pass ``retryable=True`` or raise ``TransientError``
    for failures worth another attempt.
    """

    default_category = ErrorCategory.EXECUTOR
    default_retryable = False


class TransientError(ExecutorError):
    """Temporary unit-of-work failure that may succeed on retry."""

    default_retryable = True


class InputMissingError(ConductorError):
    """A node's required input key was absent at dispatch time."""

    default_category = ErrorCategory.INPUT
    default_retryable = False

    def __init__(self, node_id: str, missing: list[str]):
        self.node_id = node_id
        self.missing = missing
        super().__init__(
            f"Node '{node_id}' is missing required inputs: {', '.join(missing)}",
            context=ErrorContext(node_id=node_id),
        )


class NodeTimeoutError(ConductorError, TimeoutError):
    """Node exceeded its configured duration.

    Inherits from built-in TimeoutError for broad exception handling.
    """

    default_category = ErrorCategory.TIMEOUT
    default_retryable = True

    def __init__(self, node_id: str, timeout: float, attempt: int | None = None):
        self.node_id = node_id
        self.timeout = timeout
        super().__init__(
            f"Node '{node_id}' timed out after {timeout}s",
            context=ErrorContext(node_id=node_id, attempt=attempt),
        )


class CancellationError(ConductorError):
    """Run-level abort was requested."""

    default_category = ErrorCategory.CANCELLED
    default_retryable = False


# =============================================================================
# CONTEXT STORE ERRORS
# =============================================================================


class ContextError(ConductorError):
    """Base for context store errors."""

    default_category = ErrorCategory.CONTEXT
    default_retryable = False


class ConflictError(ContextError):
    """Optimistic-concurrency version mismatch on write or merge."""

    def __init__(self, key: str, expected_version: int, actual_version: int):
        self.key = key
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on '{key}': expected {expected_version}, found {actual_version}",
            context=ErrorContext(key=key),
        )


class ContextKeyNotFoundError(ContextError, KeyError):
    """Requested key has never been written in this run."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Context key not found: {key}", context=ErrorContext(key=key))

    def __str__(self) -> str:
        return self.message


class ContextFrozenError(ContextError):
    """Write attempted after the run's context was frozen."""


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(ConductorError):
    """Invalid configuration. Never retryable."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, ConductorError):
        return error.retryable
    # Common Python exceptions that are usually transient
    retryable_types = (
        ConnectionError,
        TimeoutError,
        OSError,
    )
    return isinstance(error, retryable_types)


def categorize_error(error: BaseException) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, ConductorError):
        return error.category
    if isinstance(error, TimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorCategory.EXECUTOR
    if isinstance(error, (KeyError, AttributeError, ValueError, TypeError)):
        return ErrorCategory.INTERNAL
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "ConductorError",
    "GraphError",
    "ExecutorError",
    "TransientError",
    "InputMissingError",
    "NodeTimeoutError",
    "CancellationError",
    "ContextError",
    "ConflictError",
    "ContextKeyNotFoundError",
    "ContextFrozenError",
    "ConfigError",
    "is_retryable",
    "categorize_error",
]
