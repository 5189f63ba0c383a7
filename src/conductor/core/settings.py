"""Engine settings loaded from the environment.

``EngineSettings`` holds the documented defaults for every run: worker pool
size, cancellation grace period, run timeout, and the failure-policy
defaults applied to nodes that do not declare their own.

Fields are read from ``CONDUCTOR_*`` environment variables and an optional
``.env`` file::

    CONDUCTOR_MAX_CONCURRENCY=8
    CONDUCTOR_CANCEL_GRACE_SECONDS=2.5
    CONDUCTOR_LOG_LEVEL=DEBUG

Examples:
    >>> from conductor.core.settings import EngineSettings
    >>> EngineSettings(max_concurrency=2).max_concurrency
    2
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_MAX_CONCURRENCY = 4
DEFAULT_CANCEL_GRACE_SECONDS = 5.0


class EngineSettings(BaseSettings):
    """Defaults shared by every orchestration run.

    Fields
    ──────
    max_concurrency          : Worker pool size per run
    cancel_grace_seconds     : How long aborted nodes may take to observe cancellation
    run_timeout_seconds      : Whole-run deadline; exceeding it aborts the run
    default_strategy         : Strategy used when a run does not name one
    default_max_attempts     : Attempts for nodes without an explicit failure policy
    default_timeout_seconds  : Per-attempt timeout for nodes without one
    log_level / log_json     : Structlog configuration
    """

    model_config = SettingsConfigDict(
        env_prefix="CONDUCTOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Scheduling ───────────────────────────────────────────────
    max_concurrency: int = Field(default=DEFAULT_MAX_CONCURRENCY, ge=1)
    cancel_grace_seconds: float = Field(default=DEFAULT_CANCEL_GRACE_SECONDS, ge=0)
    run_timeout_seconds: float | None = Field(default=None, gt=0)
    default_strategy: Literal["sequential", "parallel", "dag", "event_driven"] = "dag"

    # ── Failure policy defaults ──────────────────────────────────
    default_max_attempts: int = Field(default=1, ge=1)
    default_timeout_seconds: float | None = Field(default=None, gt=0)

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """Return the process-wide settings instance."""
    return EngineSettings()
