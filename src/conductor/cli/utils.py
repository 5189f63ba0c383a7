"""
CLI utility helpers — definition loading and output formatting.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from conductor.core.errors import ConductorError
from conductor.orchestration.definition import WorkflowSpec
from conductor.orchestration.graph import Graph

console = Console()
err_console = Console(stderr=True)


# ── Definition loading ───────────────────────────────────────────────────


def load_definition(path: Path) -> tuple[WorkflowSpec, Graph]:
    """Parse a YAML/JSON definition and build its graph, exiting 1 on error."""
    if not path.exists():
        fail(f"File not found: {path}")
    try:
        spec = WorkflowSpec.from_yaml_file(path)
        graph = spec.to_graph()
    except ConductorError as exc:
        fail(f"{type(exc).__name__}: {exc}", code=exc.category.value)
    return spec, graph


def parse_weights(values: list[str] | None) -> dict[str, float]:
    """Parse ``id=seconds`` pairs given with ``--weight``."""
    weights: dict[str, float] = {}
    for item in values or []:
        node_id, sep, raw = item.partition("=")
        if not sep or not node_id:
            raise typer.BadParameter(f"expected id=seconds, got {item!r}", param_hint="--weight")
        try:
            weights[node_id] = float(raw)
        except ValueError:
            raise typer.BadParameter(f"not a number: {raw!r}", param_hint="--weight") from None
    return weights


# ── Output helpers ───────────────────────────────────────────────────────


def fail(message: str, *, code: str = "ERROR") -> None:
    err_console.print(f"[bold red]Error[/bold red] ({code}): {message}")
    raise typer.Exit(code=1)


def print_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, default=str))


def print_table(rows: list[dict[str, Any]], *, title: str = "") -> None:
    """Render a list of dicts as a rich table."""
    if not rows:
        console.print("[dim]No items.[/dim]")
        return
    table = Table(title=title or None, show_lines=False)
    cols = list(rows[0].keys())
    for col in cols:
        table.add_column(col, overflow="fold")
    for row in rows:
        table.add_row(*(str(row.get(c, "")) for c in cols))
    console.print(table)
