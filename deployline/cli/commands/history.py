"""``deployline history`` and ``deployline show``: read executions back from the log."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from deployline.config import Settings
from deployline.core.execution_log import ExecutionLog
from deployline.core.state_machine import UnknownExecutionError
from deployline.monitor.projection import ExecutionProjection
from deployline.monitor.renderer import ExecutionRenderer

console = Console()


def _open_log(log_db: Path | None) -> ExecutionLog:
    db_path = Path(log_db or Settings().execution_log_path)
    if not db_path.exists():
        console.print(f"[bold red]Execution log not found:[/bold red] {db_path}")
        console.print("[dim]Run a pipeline first with: deployline demo[/dim]")
        raise typer.Exit(code=1)
    return ExecutionLog(db_path)


def history_cmd(
    pipeline_id: str = typer.Argument(
        None, help="Pipeline to list. Lists known pipelines when omitted."
    ),
    log_db: Path = typer.Option(
        None, "--log", help="Execution log database (default: settings)."
    ),
) -> None:
    """List executions of a pipeline, newest first."""
    projection = ExecutionProjection(_open_log(log_db))
    if not pipeline_id:
        pipelines = projection.pipeline_ids()
        if not pipelines:
            console.print("[dim]No pipelines recorded.[/dim]")
            return
        console.print("[bold]Pipelines:[/bold]")
        for pid in pipelines:
            console.print(f"  [cyan]{pid}[/cyan]")
        return
    ExecutionRenderer(console=console).print_history(
        pipeline_id, projection.history(pipeline_id)
    )


def show_cmd(
    execution_id: str = typer.Argument(..., help="Execution to show."),
    log_db: Path = typer.Option(
        None, "--log", help="Execution log database (default: settings)."
    ),
) -> None:
    """Show the stages, status and diagnostics of one execution."""
    projection = ExecutionProjection(_open_log(log_db))
    try:
        view = projection.snapshot(execution_id)
    except UnknownExecutionError:
        console.print(f"[bold red]Execution not found:[/bold red] {execution_id}")
        raise typer.Exit(code=1)
    ExecutionRenderer(console=console).print_execution(view)
