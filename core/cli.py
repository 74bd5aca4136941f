"""flowgraph CLI — Main entry point."""
import asyncio
import json
import logging
import os

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from core.errors import ConfigurationError, FlowGraphError

app = typer.Typer(name="flowgraph", help="Workflow graph execution engine")
console = Console()

LOG_LEVEL = os.environ.get("FLOWGRAPH_LOG_LEVEL", "WARNING")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """flowgraph — run graphs of fetch and iterate tasks."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else LOG_LEVEL.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    if ctx.invoked_subcommand is None:
        console.print(Panel(
            "[bold green]flowgraph v0.1.0[/]\n\n"
            "Commands:\n"
            "  [cyan]flowgraph run[/]        — Validate and execute a graph file\n"
            "  [cyan]flowgraph validate[/]   — Check a graph file without running it\n"
            "  [cyan]flowgraph show[/]       — List a graph's tasks and connections\n"
            "  [cyan]flowgraph traces[/]     — Show recent run traces\n",
            title="Welcome",
            border_style="green"
        ))


def _load(path: str):
    from workflows.serialization import load_graph

    try:
        return load_graph(path)
    except ConfigurationError as e:
        console.print(f"[bold red]✗ {e}[/]")
        raise typer.Exit(1)


def _preview(value, limit: int = 80) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return text if len(text) <= limit else text[:limit - 1] + "…"


@app.command()
def run(
    path: str = typer.Argument(..., help="Graph document (.json, .yaml, .yml)"),
    output: str = typer.Option(None, "--output", "-o", help="Write results as JSON to this file"),
):
    """Validate and execute a graph."""
    from workflows.executor import WorkflowRunner

    graph = _load(path)
    runner = WorkflowRunner()

    try:
        workflow_run = asyncio.run(runner.run(graph))
    except ConfigurationError as e:
        console.print(f"[bold red]✗ Configuration error:[/] {e}")
        raise typer.Exit(1)
    except FlowGraphError as e:
        console.print(f"[bold red]✗ {e}[/]")
        raise typer.Exit(1)

    table = Table(title=f"Run {workflow_run.id}")
    table.add_column("Task", style="cyan")
    table.add_column("Kind")
    table.add_column("Iteration", justify="right")
    table.add_column("Status")
    table.add_column("Result")

    for result in workflow_run.results:
        iteration = "" if result.iteration is None else f"{result.parent_id}[{result.iteration}]"
        if result.ok:
            status, detail = "[green]completed[/]", _preview(result.value)
        else:
            code = result.error_code.value if result.error_code else "error"
            status, detail = "[red]failed[/]", f"[{code}] {result.error}"
        table.add_row(result.task_id, result.kind, iteration, status, detail)

    console.print(table)
    colour = "green" if workflow_run.status == "completed" else "yellow"
    console.print(f"[bold {colour}]{workflow_run.status}[/] — {len(workflow_run.results)} results")

    if output:
        with open(output, "w", encoding="utf-8") as f:
            json.dump([r.to_dict() for r in workflow_run.results], f, indent=2, default=str)
        console.print(f"Results written to [cyan]{output}[/]")


@app.command()
def validate(path: str = typer.Argument(..., help="Graph document (.json, .yaml, .yml)")):
    """Check a graph for structural problems."""
    from workflows.validator import find_entry_task, validate_graph

    graph = _load(path)
    problems = validate_graph(graph)
    if problems:
        console.print(f"[bold red]✗ {len(problems)} problem(s):[/]")
        for problem in problems:
            console.print(f"  • {problem}")
        raise typer.Exit(1)

    try:
        entry = find_entry_task(graph)
    except ConfigurationError as e:
        console.print(f"[bold red]✗ {e}[/]")
        raise typer.Exit(1)

    console.print(f"[green]✓ Graph is valid[/] (entry task: [cyan]{entry}[/])")


@app.command()
def show(path: str = typer.Argument(..., help="Graph document (.json, .yaml, .yml)")):
    """List a graph's tasks and connections."""
    graph = _load(path)

    tasks = Table(title="Tasks")
    tasks.add_column("ID", style="cyan")
    tasks.add_column("Kind")
    tasks.add_column("Config")
    for task in graph.tasks:
        tasks.add_row(task.id, task.kind, _preview(task.config))

    connections = Table(title="Connections")
    connections.add_column("Source", style="cyan")
    connections.add_column("Port")
    connections.add_column("Target", style="cyan")
    connections.add_column("Port")
    for conn in graph.connections:
        connections.add_row(conn.source, conn.source_port or "", conn.target, conn.target_port or "")

    console.print(tasks)
    console.print(connections)


@app.command()
def kinds():
    """List the registered task kinds and their ports."""
    from tasks.registry import TaskKindRegistry

    table = Table(title="Task kinds")
    table.add_column("Kind", style="cyan")
    table.add_column("Inputs")
    table.add_column("Outputs")
    table.add_column("Description")
    for kind in TaskKindRegistry.instance().list_kinds():
        table.add_row(
            kind.name,
            ", ".join(p or "(default)" for p in kind.input_ports),
            ", ".join(p or "(default)" for p in kind.output_ports),
            kind.description,
        )
    console.print(table)


@app.command()
def traces(
    limit: int = typer.Option(10, help="Number of recent runs to list"),
    trace_id: str = typer.Option(None, "--trace", help="Show every span of one run"),
):
    """Show recent run traces."""
    from tracing.store import TraceStore

    store = TraceStore()

    if trace_id:
        spans = store.get_trace(trace_id)
        if not spans:
            console.print(f"[yellow]No spans for trace {trace_id}[/]")
            raise typer.Exit(1)
        table = Table(title=f"Trace {trace_id}")
        table.add_column("Type")
        table.add_column("Name", style="cyan")
        table.add_column("Iteration", justify="right")
        table.add_column("Status")
        table.add_column("ms", justify="right")
        for span in spans:
            iteration = "" if span["iteration"] is None else str(span["iteration"])
            table.add_row(span["span_type"], span["name"], iteration, span["status"], f"{span['duration_ms']:.1f}")
        console.print(table)
        return

    rows = store.get_recent_traces(limit)
    if not rows:
        console.print("[yellow]No traces recorded yet[/]")
        return

    table = Table(title="Recent runs")
    table.add_column("Trace", style="cyan")
    table.add_column("Started")
    table.add_column("Spans", justify="right")
    table.add_column("Tasks", justify="right")
    table.add_column("Errors", justify="right")
    for row in rows:
        table.add_row(
            row["trace_id"], row["started_at"] or "",
            str(row["span_count"]), str(row["task_count"]), str(row["error_count"]),
        )
    console.print(table)


if __name__ == "__main__":
    app()
