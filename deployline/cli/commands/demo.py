"""``deployline demo``: run the reference delivery pipeline end to end.

Everything runs in-process: the source repositories, secret store, image
registry, provisioner and container orchestrator are in-memory
implementations. ``--fail-tests`` and ``--unhealthy`` show the two
failure paths (a failing Test stage, a rollout that never converges).
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel

from deployline.actions import Collaborators
from deployline.collaborators.memory import (
    InMemoryImageRegistry,
    InMemoryProvisioner,
    InMemorySecretStore,
    InMemorySourceProvider,
    SimulatedOrchestrator,
)
from deployline.config import Settings
from deployline.core.action_runner import ActionRunner
from deployline.core.artifact_store import ArtifactStore
from deployline.core.engine import PipelineEngine
from deployline.core.execution_log import ExecutionLog
from deployline.core.rollout import RolloutConfig, RolloutController
from deployline.models.execution import ExecutionState, TriggerCause
from deployline.models.service import HealthStatus
from deployline.monitor.projection import ExecutionProjection
from deployline.monitor.renderer import ExecutionRenderer
from deployline.topology import (
    DatabaseSpec,
    ServiceSpec,
    SourceSpec,
    Topology,
    build_delivery_pipeline,
)

console = Console()


def demo_topology(*, fail_tests: bool = False) -> Topology:
    """A web application backed by a managed MySQL database."""
    return Topology(
        name="webapp",
        database=DatabaseSpec(name="webappdb", credentials_secret="webapp-db-credentials"),
        service=ServiceSpec(
            name="webapp-service",
            desired_count=2,
            min_healthy_percent=50,
            max_healthy_percent=200,
        ),
        infra_source=SourceSpec(repo="example/webapp-infra"),
        app_source=SourceSpec(repo="example/webapp"),
        test_commands=(
            ["echo Running tests...", "echo 'AssertionError: 1 != 2' >&2", "exit 1"]
            if fail_tests
            else ["echo Running tests...", "echo Tests passed!"]
        ),
        source_token_secret="github-token",
    )


def demo_cmd(
    fail_tests: bool = typer.Option(
        False, "--fail-tests", help="Make the Test stage fail."
    ),
    unhealthy: bool = typer.Option(
        False, "--unhealthy", help="Make every new image fail its health checks."
    ),
    log_db: Path = typer.Option(
        None, "--log", help="Execution log database (default: settings)."
    ),
    artifact_dir: Path = typer.Option(
        None, "--artifacts", help="Artifact store directory (default: settings)."
    ),
) -> None:
    """Run the reference delivery pipeline against in-memory backends."""
    settings = Settings()
    log = ExecutionLog(log_db or settings.execution_log_path)
    store = ArtifactStore(artifact_dir or settings.artifact_store_path)

    topology = demo_topology(fail_tests=fail_tests)
    source = InMemorySourceProvider()
    source.commit(topology.infra_source.repo, "main", b"network: 2 azs\ndatabase: mysql 8.0\n")
    commit_id = source.commit(
        topology.app_source.repo, "main", b"FROM php:8-apache\nCOPY . /var/www/html\n"
    )
    secrets = InMemorySecretStore(
        {"github-token": "demo-token", "webapp-db-credentials": "demo-password"}
    )
    orchestrator = SimulatedOrchestrator(
        health_of=(lambda image_ref: HealthStatus.UNHEALTHY) if unhealthy else None
    )
    orchestrator.register_service(topology.service_target())
    controller = RolloutController(
        orchestrator,
        config=RolloutConfig(
            deployment_timeout_seconds=5.0,
            poll_interval_seconds=0.05,
            max_failed_launches=3,
        ),
    )
    registry = InMemoryImageRegistry()
    collaborators = Collaborators(
        source=source,
        secrets=secrets,
        registry=registry,
        orchestrator=orchestrator,
        provisioner=InMemoryProvisioner(),
        controller=controller,
    )

    pipeline = build_delivery_pipeline(topology, collaborators)
    engine = PipelineEngine(
        pipeline,
        store=store,
        log=log,
        runner=ActionRunner(
            secrets, default_timeout_seconds=settings.default_action_timeout_seconds
        ),
        settings=settings,
    )

    console.print()
    console.print(
        Panel(
            f"[bold]Deployline demo[/bold]\n\n"
            f"Pipeline: {pipeline.pipeline_id}\n"
            f"Stages:   {' -> '.join(pipeline.stage_names)}",
            border_style="cyan",
            padding=(1, 2),
        )
    )

    execution = engine.run(TriggerCause.SOURCE_CHANGE, commit_id=commit_id)

    projection = ExecutionProjection(log)
    renderer = ExecutionRenderer(console=console)
    renderer.print_execution(projection.snapshot(execution.execution_id))

    for instance in orchestrator.list_instances(topology.service.name):
        console.print(f"  [cyan]{instance.instance_id}[/cyan] {instance.image_ref}")

    if execution.state != ExecutionState.SUCCEEDED:
        raise typer.Exit(code=1)
