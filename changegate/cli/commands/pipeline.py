"""CLI — Build graph inspection commands."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from changegate.config import Settings
from changegate.exceptions import ConfigurationError
from changegate.orchestration.graph import BuildGraph

app = typer.Typer(help="Inspect the configured build graph.")
console = Console()


def _load_graph(config: Path | None) -> BuildGraph:
    try:
        settings = Settings.load(config_file=config)
        return BuildGraph(settings.pipeline.build_nodes())
    except (ConfigurationError, ValueError) as exc:
        console.print(f"[red]Invalid pipeline: {escape(str(exc))}[/red]")
        raise typer.Exit(1)


@app.command("show")
def show(
    config: Annotated[
        Path | None, typer.Option("--config", "-c", help="Path to config.yaml.")
    ] = None,
) -> None:
    """Print the build graph in dependency order."""
    graph = _load_graph(config)
    if not len(graph):
        console.print("[yellow]No build nodes configured.[/yellow]")
        return

    table = Table(title="Build graph")
    table.add_column("Wave", justify="right")
    table.add_column("Node", style="cyan")
    table.add_column("Repository")
    table.add_column("Job")
    table.add_column("Depends on")

    for index, wave in enumerate(graph.waves()):
        for name in wave:
            node = graph.node(name)
            table.add_row(
                str(index),
                name,
                node.repository,
                node.job,
                ", ".join(graph.predecessors(name)),
            )
    console.print(table)


@app.command("validate")
def validate(
    config: Annotated[
        Path | None, typer.Option("--config", "-c", help="Path to config.yaml.")
    ] = None,
) -> None:
    """Check the build graph for unknown dependencies and cycles."""
    graph = _load_graph(config)
    console.print(
        f"[green]Pipeline OK[/green] — {len(graph)} nodes across "
        f"{len(graph.repositories())} repositories"
    )
