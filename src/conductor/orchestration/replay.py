"""Rebuild a run's context from its trace.

Successful NodeExecution records carry the delta committed to the context
store, in commit order.  Applying them to the initial context reproduces the
final context without running anything.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from conductor.orchestration.trace import NodeStatus, RunTrace

if TYPE_CHECKING:
    from conductor.orchestration.scheduler import RunResult


def replay_context(trace: RunTrace, initial: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Apply every SUCCEEDED delta of ``trace`` to ``initial``, in sequence order."""
    context = copy.deepcopy(dict(initial or {}))
    for record in sorted(trace, key=lambda r: r.sequence):
        if record.status is NodeStatus.SUCCEEDED:
            context.update(copy.deepcopy(dict(record.context_delta)))
    return context


def replay_versions(trace: RunTrace, initial: Mapping[str, Any] | None = None) -> dict[str, int]:
    """Key versions implied by the trace (initial keys start at version 1)."""
    versions = {key: 1 for key in initial or {}}
    for record in sorted(trace, key=lambda r: r.sequence):
        if record.status is NodeStatus.SUCCEEDED:
            versions.update(record.context_versions)
    return versions


def verify_replay(result: RunResult) -> bool:
    """True if replaying the result's trace reproduces its final context."""
    return replay_context(result.trace, result.initial_context) == dict(result.final_context)
