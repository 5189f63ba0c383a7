"""
Root Typer application for the conductor CLI.

The CLI only inspects definitions; running a workflow needs a host-supplied
executor, so there is no ``run`` command.
"""

from __future__ import annotations

from pathlib import Path

import typer
from typer import Typer

from conductor.cli.utils import console, fail, load_definition, parse_weights, print_json, print_table

app = Typer(
    name="conductor",
    help="conductor — validate and plan agent workflow graphs.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from conductor import __version__

        typer.echo(f"conductor {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """conductor CLI — inspect workflow definitions."""


# ── Commands ─────────────────────────────────────────────────────────────


@app.command("validate")
def validate(
    path: Path = typer.Argument(..., help="Workflow definition (YAML or JSON)"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Validate a definition and report its shape."""
    spec, graph = load_definition(path)
    summary = {
        "name": spec.name,
        "valid": True,
        "nodes": len(graph),
        "edges": len(graph.edges),
        "triggers": sum(1 for e in graph.edges if not e.implies_ordering),
        "sources": graph.sources(),
        "sinks": graph.sinks(),
    }
    if json_out:
        print_json(summary)
        return
    label = spec.name or path.name
    console.print(
        f"[bold green]✓[/bold green] {label}: {summary['nodes']} nodes, "
        f"{summary['edges']} edges ({summary['triggers']} trigger)"
    )


@app.command("plan")
def plan(
    path: Path = typer.Argument(..., help="Workflow definition (YAML or JSON)"),
    weight: list[str] | None = typer.Option(
        None,
        "--weight",
        "-w",
        help="Node duration estimate as id=seconds (repeatable) for the critical path.",
    ),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show topological order, dispatch waves, and the critical path."""
    _, graph = load_definition(path)
    weights = parse_weights(weight)
    unknown = sorted(set(weights) - set(graph.node_ids()))
    if unknown:
        fail(f"--weight names unknown nodes: {', '.join(unknown)}", code="CONFIG")

    order = graph.topological_order()
    waves = [sorted(w) for w in graph.parallel_batches()]
    # Unweighted nodes count 1 so the path is meaningful without estimates
    path_nodes = graph.critical_path(lambda node_id: weights.get(node_id, 1.0))
    total = sum(weights.get(n, 1.0) for n in path_nodes)

    if json_out:
        print_json(
            {
                "topological_order": order,
                "waves": waves,
                "critical_path": path_nodes,
                "critical_path_weight": total,
            }
        )
        return

    console.print(f"[bold]Topological order:[/bold] {' → '.join(order)}")
    print_table(
        [{"wave": i, "nodes": ", ".join(w)} for i, w in enumerate(waves)],
        title="Dispatch waves",
    )
    console.print(f"[bold]Critical path[/bold] ({total:g}): {' → '.join(path_nodes)}")
