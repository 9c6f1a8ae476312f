"""genflow command line: serve the API, validate and run recipes, seed a store."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from genflow import config
from genflow.errors import GenflowError, ValidationError
from genflow.models import Execution, NodeStatus
from genflow.orchestrator import Orchestrator
from genflow.seed import load_seed_file, seed_store
from genflow.store import MemoryDocumentStore, create_store
from genflow.validator import RecipeValidator, parse_recipe

app = typer.Typer(name="genflow", help="Generation pipeline orchestration engine")
console = Console()

STATUS_STYLES = {
    "pending": "dim",
    "running": "blue",
    "completed": "green",
    "failed": "red",
    "skipped": "yellow",
    "cancelled": "magenta",
}


def _load_json(path: Path) -> dict:
    try:
        with open(path) as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Error:[/red] cannot read {path}: {e}")
        raise typer.Exit(code=2)


def _parse_input(raw: str | None) -> dict:
    """Inline JSON, or @path to a JSON file."""
    if not raw:
        return {}
    if raw.startswith("@"):
        return _load_json(Path(raw[1:]))
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        console.print(f"[red]Error:[/red] --input is not valid JSON: {e}")
        raise typer.Exit(code=2)


def print_execution(execution: Execution):
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Node", style="cyan")
    table.add_column("Output key", style="green")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Time", style="yellow", justify="right")
    table.add_column("Adaptor", style="blue")
    table.add_column("Error", style="red")

    for result in execution.node_results.values():
        style = STATUS_STYLES.get(result.status.value, "white")
        error = (result.error or {}).get("message", "-")
        table.add_row(
            result.node_id,
            result.output_key,
            f"[{style}]{result.status.value}[/{style}]",
            str(result.attempts),
            f"{result.duration_ms}ms",
            f"{result.adaptor_id}/{result.model_id}" if result.adaptor_id else "-",
            error[:60] + "..." if len(error) > 60 else error,
        )
    console.print(table)

    for result in execution.node_results.values():
        if result.status == NodeStatus.COMPLETED:
            body = result.output if isinstance(result.output, str) else json.dumps(result.output, indent=2)
            console.print(Panel(body, title=f"[bold]{result.output_key}[/bold]", border_style="green"))

    summary = execution.summary()
    style = STATUS_STYLES.get(execution.status.value, "white")
    console.print(
        f"\nExecution [bold]{execution.id}[/bold]: [{style}]{execution.status.value}[/{style}]"
        f"  cost ${summary['usage']['estimatedCost']:.4f}"
    )
    if execution.error:
        console.print(f"[red]{execution.error['message']}[/red]")


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port"),
    seed: Optional[Path] = typer.Option(None, "--seed", help="Seed file loaded before serving"),
):
    """Start the HTTP API."""
    from genflow.server import main as serve_main

    serve_main(host=host, port=port, seed_file=str(seed) if seed else None)


@app.command()
def validate(recipe_file: Path = typer.Argument(..., help="Recipe JSON file")):
    """Validate a recipe file and print its execution order."""
    validator = RecipeValidator()
    try:
        recipe = parse_recipe(_load_json(recipe_file))
        order = validator.validate(recipe)
    except ValidationError as e:
        console.print(f"[red]Invalid recipe ({e.violation}):[/red] {e.message}")
        if e.nodes:
            console.print(f"  nodes: {', '.join(e.nodes)}")
        raise typer.Exit(code=1)

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("#", justify="right")
    table.add_column("Node", style="cyan")
    table.add_column("Kind", style="green")
    table.add_column("Output key", style="yellow")
    table.add_column("Depends on", style="blue")
    deps = validator.dependencies_of(recipe)
    nodes = recipe.node_map()
    for i, node_id in enumerate(order, 1):
        node = nodes[node_id]
        table.add_row(str(i), node_id, node.kind.value, node.output_key, ", ".join(deps[node_id]) or "none")
    console.print(f"[green]Recipe {recipe.id} is valid.[/green]")
    console.print(table)

    ranks = validator.execution_ranks(recipe, order)
    console.print("\n[bold cyan]Parallel ranks:[/bold cyan]")
    for i, rank in enumerate(ranks):
        console.print(f"  {i}: {', '.join(rank)}")


@app.command()
def run(
    recipe_file: Path = typer.Argument(..., help="Recipe JSON file"),
    input: Optional[str] = typer.Option(None, "--input", "-i", help="External input as JSON, or @file.json"),
    project: Optional[str] = typer.Option(None, "--project", help="Project id for adaptor/prompt resolution"),
    seed: Optional[Path] = typer.Option(None, "--seed", help="Seed file with prompt templates and adaptor configs"),
):
    """Run a recipe once against an in-memory store and print the results."""
    store = MemoryDocumentStore()
    if seed:
        seed_store(store, load_seed_file(seed))
    orchestrator = Orchestrator(store)

    try:
        recipe = orchestrator.recipes.create(_load_json(recipe_file), created_by="cli")
        execution = asyncio.run(orchestrator.execute_recipe(recipe.id, _parse_input(input), project, "cli"))
    except GenflowError as e:
        console.print(f"[red]Error ({e.kind}):[/red] {e.message}")
        raise typer.Exit(code=1)

    print_execution(execution)
    if execution.status.value != "completed":
        raise typer.Exit(code=1)


@app.command("seed")
def seed_command(
    seed_file: Path = typer.Argument(..., help="Seed JSON file"),
    overwrite: bool = typer.Option(False, "--overwrite", help="Replace documents that already exist"),
):
    """Load recipes, prompt templates and adaptor configs into the configured store."""
    store = create_store(config.STORE_BACKEND, config.DATA_DIR)
    try:
        counts = seed_store(store, load_seed_file(seed_file), overwrite=overwrite)
    except (GenflowError, ValueError) as e:
        console.print(f"[red]Seeding failed:[/red] {e}")
        raise typer.Exit(code=1)
    for collection, count in counts.items():
        console.print(f"  {collection}: [green]{count}[/green]")


@app.command()
def adaptors():
    """List registered adaptors, their models and health."""
    orchestrator = Orchestrator(MemoryDocumentStore())
    rows = asyncio.run(orchestrator.adaptors.list_available_adaptors())
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Adaptor", style="cyan")
    table.add_column("Status")
    table.add_column("Models", style="yellow")
    for row in rows:
        style = "green" if row["status"] == "ok" else "red"
        table.add_row(row["id"], f"[{style}]{row['status']}[/{style}]", ", ".join(row["models"]))
    console.print(table)


def main():
    logging.basicConfig(level=logging.WARNING, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
    app()


if __name__ == "__main__":
    main()
