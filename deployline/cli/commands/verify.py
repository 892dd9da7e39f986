"""``deployline verify PIPELINE_ID``: check the execution log hash chain."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from deployline.cli.commands.history import _open_log
from deployline.core.execution_log import LogIntegrityError
from deployline.monitor.renderer import ExecutionRenderer

console = Console()


def verify_cmd(
    pipeline_id: str = typer.Argument(..., help="Pipeline whose chain to verify."),
    log_db: Path = typer.Option(
        None, "--log", help="Execution log database (default: settings)."
    ),
) -> None:
    """Verify the hash chain of every log entry of a pipeline."""
    log = _open_log(log_db)
    renderer = ExecutionRenderer(console=console)
    try:
        valid = log.verify_chain(pipeline_id)
    except LogIntegrityError as exc:
        console.print(f"[bold red]Chain verification failed:[/bold red] {exc}")
        renderer.print_chain_verification(pipeline_id, False)
        raise typer.Exit(code=1)
    renderer.print_chain_verification(pipeline_id, valid)
