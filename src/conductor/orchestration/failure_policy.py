"""Failure Policy — per-node retry, backoff, and timeout configuration.

Every node carries a ``FailurePolicy``.  After each attempt the scheduler
asks the policy two questions: *what kind of outcome was this?*
(:meth:`FailurePolicy.classify`) and *may the node try again?*
(:meth:`FailurePolicy.should_retry`).

ARCHITECTURE
────────────
::

    attempt result ──► classify() ──► OutcomeKind
                                        ├── SUCCESS            → merge outputs
                                        ├── RETRYABLE_FAILURE  → retry while attempts remain
                                        ├── TIMED_OUT          → retry while attempts remain
                                        ├── FATAL_FAILURE      → node failed now
                                        └── CANCELLED          → run is aborting

    next_delay(attempt) = min(backoff_base * backoff_multiplier ** (attempt - 1), max_backoff)

Example::

    policy = FailurePolicy(max_attempts=3, backoff_base=0.5, timeout=30.0)
    policy.next_delay(1)   # 0.5
    policy.next_delay(2)   # 1.0
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from conductor.core.errors import (
    ConfigError,
    ConflictError,
    ErrorCategory,
    InputMissingError,
    categorize_error,
    is_retryable,
)

if TYPE_CHECKING:
    from conductor.core.settings import EngineSettings

RetryableClassifier = Callable[[BaseException], bool]


class OutcomeKind(str, Enum):
    """Classification of a single node attempt."""

    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    FATAL_FAILURE = "fatal_failure"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class FailurePolicy:
    """
    Retry configuration for a node.

    Attributes:
        max_attempts: Total attempts allowed, including the first (>= 1)
        backoff_base: Delay in seconds before the first retry
        backoff_multiplier: Growth factor applied per further retry
        max_backoff: Upper bound on any single delay (None = unbounded)
        timeout: Per-attempt time limit in seconds (None = no limit)
        retryable: Classifier deciding whether an exception is worth retrying
    """

    max_attempts: int = 1
    backoff_base: float = 1.0
    backoff_multiplier: float = 2.0
    max_backoff: float | None = 60.0
    timeout: float | None = None
    retryable: RetryableClassifier = is_retryable

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.backoff_base < 0:
            raise ConfigError(f"backoff_base must be >= 0, got {self.backoff_base}")
        if self.backoff_multiplier < 1:
            raise ConfigError(f"backoff_multiplier must be >= 1, got {self.backoff_multiplier}")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigError(f"timeout must be > 0, got {self.timeout}")

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> FailurePolicy:
        """Default policy for nodes that do not declare their own."""
        return cls(
            max_attempts=settings.default_max_attempts,
            timeout=settings.default_timeout_seconds,
        )

    def next_delay(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""
        delay = self.backoff_base * (self.backoff_multiplier ** (attempt - 1))
        if self.max_backoff is not None:
            delay = min(delay, self.max_backoff)
        return delay

    def classify(
        self,
        error: BaseException | None,
        *,
        timed_out: bool = False,
        cancelled: bool = False,
    ) -> OutcomeKind:
        """Classify one attempt's result."""
        if cancelled:
            return OutcomeKind.CANCELLED
        if timed_out:
            return OutcomeKind.TIMED_OUT
        if error is None:
            return OutcomeKind.SUCCESS
        if isinstance(error, InputMissingError):
            return OutcomeKind.FATAL_FAILURE
        # A merge conflict is always worth re-reading and retrying
        if isinstance(error, ConflictError):
            return OutcomeKind.RETRYABLE_FAILURE
        if self.retryable(error):
            return OutcomeKind.RETRYABLE_FAILURE
        return OutcomeKind.FATAL_FAILURE

    def should_retry(self, kind: OutcomeKind, attempt: int) -> bool:
        """True if ``kind`` at ``attempt`` earns another attempt."""
        if kind not in (OutcomeKind.RETRYABLE_FAILURE, OutcomeKind.TIMED_OUT):
            return False
        return attempt < self.max_attempts


def retry_on_categories(categories: Iterable[str | ErrorCategory]) -> RetryableClassifier:
    """Build a classifier that retries errors whose category is listed.

    Used by declarative definitions (``retry_on: [EXECUTOR, TIMEOUT]``).
    """
    allowed = frozenset(
        c if isinstance(c, ErrorCategory) else ErrorCategory(c.upper()) for c in categories
    )

    def classifier(error: BaseException) -> bool:
        return categorize_error(error) in allowed

    return classifier


DEFAULT_POLICY = FailurePolicy()
