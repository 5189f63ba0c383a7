"""
Conductor core — errors, structured logging, and settings shared by the engine.
"""

from conductor.core.errors import (
    CancellationError,
    ConductorError,
    ConfigError,
    ConflictError,
    ContextError,
    ContextFrozenError,
    ContextKeyNotFoundError,
    ErrorCategory,
    ErrorContext,
    ExecutorError,
    GraphError,
    InputMissingError,
    NodeTimeoutError,
    TransientError,
    categorize_error,
    is_retryable,
)
from conductor.core.logging import LogContext, configure_logging, get_logger
from conductor.core.settings import EngineSettings, get_settings

__all__ = [
    "CancellationError",
    "ConductorError",
    "ConfigError",
    "ConflictError",
    "ContextError",
    "ContextFrozenError",
    "ContextKeyNotFoundError",
    "ErrorCategory",
    "ErrorContext",
    "ExecutorError",
    "GraphError",
    "InputMissingError",
    "NodeTimeoutError",
    "TransientError",
    "categorize_error",
    "is_retryable",
    "LogContext",
    "configure_logging",
    "get_logger",
    "EngineSettings",
    "get_settings",
]
