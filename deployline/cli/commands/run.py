"""``deployline run DEFINITION``: run a pipeline described in TOML or JSON.

Only collaborators that exist outside this process are wired here: the
secret store reads ``DEPLOYLINE_SECRET_*`` environment variables. A
definition that needs a source, registry, provisioner or orchestrator
backend is rejected before anything runs.
"""

from __future__ import annotations

from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console

from deployline.actions import Collaborators
from deployline.collaborators.memory import EnvSecretStore
from deployline.config import Settings
from deployline.core.action_runner import ActionRunner
from deployline.core.artifact_store import ArtifactStore
from deployline.core.engine import PipelineEngine
from deployline.core.execution_log import ExecutionLog
from deployline.definition import load_definition
from deployline.models.execution import ExecutionState
from deployline.models.pipeline import PipelineWiringError
from deployline.monitor.projection import ExecutionProjection
from deployline.monitor.renderer import ExecutionRenderer

console = Console()


def run_cmd(
    definition: Path = typer.Argument(
        ..., exists=True, dir_okay=False, help="Pipeline definition (.toml or .json)."
    ),
    commit_id: str = typer.Option(None, "--commit", help="Commit id to record on the trigger."),
    log_db: Path = typer.Option(
        None, "--log", help="Execution log database (default: settings)."
    ),
    artifact_dir: Path = typer.Option(
        None, "--artifacts", help="Artifact store directory (default: settings)."
    ),
) -> None:
    """Run a pipeline definition once and show the outcome."""
    settings = Settings()
    secrets = EnvSecretStore(settings.secret_env_prefix)
    try:
        pipeline = load_definition(definition).to_pipeline(Collaborators(secrets=secrets))
    except (ValueError, KeyError, PipelineWiringError) as exc:
        # ValidationError is a ValueError subclass.
        label = "Invalid definition" if isinstance(exc, ValidationError) else "Cannot build pipeline"
        console.print(f"[bold red]{label}:[/bold red] {exc}")
        raise typer.Exit(code=2)

    log = ExecutionLog(log_db or settings.execution_log_path)
    engine = PipelineEngine(
        pipeline,
        store=ArtifactStore(artifact_dir or settings.artifact_store_path),
        log=log,
        runner=ActionRunner(
            secrets, default_timeout_seconds=settings.default_action_timeout_seconds
        ),
        settings=settings,
    )
    console.print(
        f"[cyan]>>> Running[/cyan] [bold]{pipeline.pipeline_id}[/bold] "
        f"({' -> '.join(pipeline.stage_names)})"
    )
    execution = engine.run(commit_id=commit_id)

    ExecutionRenderer(console=console).print_execution(
        ExecutionProjection(log).snapshot(execution.execution_id)
    )
    if execution.state != ExecutionState.SUCCEEDED:
        raise typer.Exit(code=1)
