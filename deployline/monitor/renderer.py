"""Rich terminal renderer for execution views.

Color scheme
------------
- green     : SUCCEEDED
- red       : FAILED
- yellow    : RUNNING
- dim       : PENDING, SKIPPED
- magenta   : CANCELLED
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from deployline.models.execution import ExecutionState
from deployline.models.stages import StageState

if TYPE_CHECKING:
    from deployline.monitor.projection import ExecutionView


# ---------------------------------------------------------------------------
# State -> Rich markup
# ---------------------------------------------------------------------------

_STAGE_LABELS: dict[StageState, str] = {
    StageState.SUCCEEDED: "[green]SUCCEEDED[/green]",
    StageState.FAILED: "[bold red]FAILED[/bold red]",
    StageState.RUNNING: "[yellow]RUNNING[/yellow]",
    StageState.PENDING: "[dim]PENDING[/dim]",
    StageState.SKIPPED: "[dim]SKIPPED[/dim]",
}

_EXECUTION_LABELS: dict[ExecutionState, str] = {
    ExecutionState.SUCCEEDED: "[bold green]SUCCEEDED[/bold green]",
    ExecutionState.FAILED: "[bold red]FAILED[/bold red]",
    ExecutionState.RUNNING: "[bold yellow]RUNNING[/bold yellow]",
    ExecutionState.PENDING: "[dim]PENDING[/dim]",
    ExecutionState.CANCELLED: "[magenta]CANCELLED[/magenta]",
}

_BORDERS: dict[ExecutionState, str] = {
    ExecutionState.SUCCEEDED: "green",
    ExecutionState.FAILED: "red",
    ExecutionState.CANCELLED: "magenta",
}


class ExecutionRenderer:
    """Renders ``ExecutionView`` objects as Rich terminal output.

    Parameters
    ----------
    console:
        Rich Console instance. A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def render_execution(self, view: ExecutionView) -> Panel:
        """Render one execution as a Panel holding its stage table."""
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("#", style="dim", width=3, justify="right")
        table.add_column("Stage", min_width=16)
        table.add_column("State", min_width=11, justify="center")
        table.add_column("Duration", justify="right", width=10)
        table.add_column("Artifacts")

        for i, stage in enumerate(view.stages):
            duration = stage.duration_seconds
            table.add_row(
                str(i),
                stage.name,
                _STAGE_LABELS.get(stage.state, stage.state.value),
                f"{duration:.1f}s" if duration is not None else "[dim]-[/dim]",
                ", ".join(stage.artifacts) if stage.artifacts else "[dim]-[/dim]",
            )

        summary_parts = [
            f"[bold]Status:[/bold] {_EXECUTION_LABELS.get(view.state, view.state.value)}",
            f"[bold]Trigger:[/bold] {view.cause.value}",
            f"[bold]Commit:[/bold] {view.commit_id or '-'}",
            f"[bold]Progress:[/bold] {view.completed_count}/{view.total_stages}",
            f"[bold]Artifacts:[/bold] {view.artifact_count}",
        ]
        chain_status = (
            "[green]valid[/green]" if view.chain_valid else "[bold red]BROKEN[/bold red]"
        )
        summary_parts.append(f"[bold]Chain:[/bold] {chain_status}")

        parts: list = [table, Text(""), Text.from_markup("  |  ".join(summary_parts))]
        if view.state == ExecutionState.FAILED:
            parts.append(Text(""))
            parts.append(
                Text.from_markup(
                    f"[bold red]Failed stage:[/bold red] {view.failed_stage}  "
                    f"[bold red]Action:[/bold red] {view.failed_action}"
                )
            )
            if view.diagnostics:
                parts.append(Text(view.diagnostics, style="red"))

        return Panel(
            Group(*parts),
            title=f"[bold]{view.pipeline_id}[/bold] / {view.execution_id}",
            subtitle=f"Last updated: {view.last_updated.strftime('%Y-%m-%d %H:%M:%S UTC')}",
            border_style=_BORDERS.get(view.state, "blue"),
            padding=(1, 2),
        )

    def render_history(self, pipeline_id: str, views: list[ExecutionView]) -> Table:
        """Render the execution history of a pipeline, newest first."""
        table = Table(title=f"Executions of {pipeline_id}", header_style="bold cyan")
        table.add_column("Execution", style="cyan")
        table.add_column("Status", justify="center")
        table.add_column("Trigger")
        table.add_column("Commit")
        table.add_column("Created")
        table.add_column("Failed stage")

        for view in reversed(views):
            table.add_row(
                view.execution_id,
                _EXECUTION_LABELS.get(view.state, view.state.value),
                view.cause.value,
                view.commit_id or "-",
                view.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                view.failed_stage or "[dim]-[/dim]",
            )
        return table

    # ------------------------------------------------------------------
    # Standalone print
    # ------------------------------------------------------------------

    def print_execution(self, view: ExecutionView) -> None:
        self.console.print(self.render_execution(view))

    def print_history(self, pipeline_id: str, views: list[ExecutionView]) -> None:
        if not views:
            self.console.print(f"[dim]No executions recorded for {pipeline_id}.[/dim]")
            return
        self.console.print(self.render_history(pipeline_id, views))

    def print_chain_verification(self, pipeline_id: str, valid: bool) -> None:
        if valid:
            self.console.print(
                f"[green]Hash chain for pipeline {pipeline_id} is valid.[/green]"
            )
        else:
            self.console.print(
                f"[bold red]Hash chain for pipeline {pipeline_id} is BROKEN![/bold red]"
            )
