"""
Context Store — versioned key-value state shared by one orchestration run.

Every node of a run reads its declared inputs from the store at dispatch and
writes its declared outputs back when it succeeds.  Each key carries a
monotonically increasing version; writers state the version they last saw
and the store refuses the write when somebody else got there first.

Design Principles:
- Optimistic concurrency: ``write`` / ``merge`` take expected versions and
  raise ``ConflictError`` on mismatch, so updates are never silently lost.
- All-or-nothing merge: a node's outputs land together or not at all.
- Per-key writer sections: merges lock only the keys they touch (in sorted
  order), never the whole store.
- Run-scoped: entries are keyed by ``(run_id, key)``; a store is created per
  run and frozen when the run ends.

Example:
    store = ContextStore(run_id="run-1")
    v = store.write("topic", "rust", expected_version=0)      # → 1
    store.merge({"topic": "go", "lang": "en"}, {"topic": v})   # → ["lang", "topic"]
    store.read("topic")                                        # → "go"
"""

from __future__ import annotations

import copy
import threading
import uuid
from collections.abc import Mapping
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any, NamedTuple

from conductor.core.errors import (
    ConflictError,
    ContextFrozenError,
    ContextKeyNotFoundError,
)
from conductor.core.logging import get_logger

logger = get_logger(__name__)


class ScopedKey(NamedTuple):
    """A context key qualified by the run it belongs to."""

    run_id: str
    key: str


@dataclass(frozen=True)
class ContextEntry:
    """Committed value of one key."""

    value: Any
    version: int
    writer: str | None = None
    written_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class ContextStore:
    """Versioned, mergeable key-value store for one orchestration run."""

    def __init__(
        self,
        run_id: str | None = None,
        initial: Mapping[str, Any] | None = None,
    ) -> None:
        self._run_id = run_id or str(uuid.uuid4())
        self._entries: dict[ScopedKey, ContextEntry] = {}
        self._key_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._frozen = False

        for key, value in (initial or {}).items():
            self._entries[self._scoped(key)] = ContextEntry(
                value=copy.deepcopy(value), version=1, writer=None
            )

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def frozen(self) -> bool:
        return self._frozen

    def _scoped(self, key: str) -> ScopedKey:
        return ScopedKey(self._run_id, key)

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    # =========================================================================
    # Reads
    # =========================================================================

    def read(self, key: str) -> Any:
        """Latest committed value of ``key``.

        Raises:
            ContextKeyNotFoundError: The key has never been written
        """
        entry = self._entries.get(self._scoped(key))
        if entry is None:
            raise ContextKeyNotFoundError(key)
        return entry.value

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(self._scoped(key))
        return default if entry is None else entry.value

    def read_versioned(self, key: str) -> tuple[Any, int]:
        """Value and version of ``key`` read together."""
        entry = self._entries.get(self._scoped(key))
        if entry is None:
            raise ContextKeyNotFoundError(key)
        return entry.value, entry.version

    def version(self, key: str) -> int:
        """Current version of ``key`` (0 if never written)."""
        entry = self._entries.get(self._scoped(key))
        return 0 if entry is None else entry.version

    def versions(self, keys: list[str] | tuple[str, ...]) -> dict[str, int]:
        return {key: self.version(key) for key in keys}

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self._scoped(key) in self._entries

    def keys(self) -> list[str]:
        return sorted(sk.key for sk in self._entries)

    def entries(self) -> dict[ScopedKey, ContextEntry]:
        """Copy of every committed entry, keyed by scoped key."""
        return dict(self._entries)

    def snapshot(self) -> Mapping[str, Any]:
        """Read-only point-in-time view of every committed value."""
        return MappingProxyType({sk.key: e.value for sk, e in self._entries.items()})

    # =========================================================================
    # Writes
    # =========================================================================

    def write(self, key: str, value: Any, expected_version: int, *, writer: str | None = None) -> int:
        """Optimistic single-key write.

        Args:
            key: Context key
            value: New value
            expected_version: Version the caller last observed (0 = absent)

        Returns:
            The key's new version

        Raises:
            ConflictError: ``expected_version`` is stale
            ContextFrozenError: The run has ended
        """
        self.merge({key: value}, {key: expected_version}, writer=writer)
        return self.version(key)

    def merge(
        self,
        delta: Mapping[str, Any],
        expected_versions: Mapping[str, int] | None = None,
        *,
        writer: str | None = None,
    ) -> list[str]:
        """Atomically apply every key of ``delta``.

        Keys listed in ``expected_versions`` are version-checked; a mismatch
        on any of them rejects the whole delta.  Keys not listed are written
        unconditionally.

        Returns:
            Sorted list of applied keys

        Raises:
            ConflictError: A version check failed (nothing was applied)
            ContextFrozenError: The run has ended
        """
        if self._frozen:
            raise ContextFrozenError(f"Context for run {self._run_id} is frozen")

        expected = expected_versions or {}
        keys = sorted(delta)

        with ExitStack() as stack:
            for key in keys:
                stack.enter_context(self._lock_for(key))

            if self._frozen:
                raise ContextFrozenError(f"Context for run {self._run_id} is frozen")

            for key in keys:
                if key in expected:
                    current = self.version(key)
                    if current != expected[key]:
                        logger.debug(
                            "context.conflict",
                            key=key,
                            writer=writer,
                            expected=expected[key],
                            actual=current,
                        )
                        raise ConflictError(key, expected[key], current)

            # Stage every copy first; a value that cannot be copied leaves the store untouched
            staged = {
                self._scoped(key): ContextEntry(
                    value=copy.deepcopy(delta[key]),
                    version=self.version(key) + 1,
                    writer=writer,
                )
                for key in keys
            }
            self._entries.update(staged)

        return keys

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def freeze(self) -> Mapping[str, Any]:
        """Stop accepting writes and return the final snapshot."""
        with self._locks_guard:
            self._frozen = True
        return self.snapshot()

    def to_dict(self) -> dict[str, Any]:
        """Serialize values and versions."""
        return {
            "run_id": self._run_id,
            "frozen": self._frozen,
            "entries": {
                sk.key: {"value": e.value, "version": e.version, "writer": e.writer}
                for sk, e in sorted(self._entries.items())
            },
        }

    def __repr__(self) -> str:
        return f"ContextStore(run_id={self._run_id!r}, keys={self.keys()})"
