"""Shared test fixtures for Deployline."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from deployline.actions import CallableAction
from deployline.collaborators.memory import InMemorySecretStore
from deployline.config import Settings
from deployline.core.action_runner import ActionContext, ActionRunner
from deployline.core.artifact_store import ArtifactStore
from deployline.core.execution_log import ExecutionLog
from deployline.models.actions import Action, ActionEnvironment


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def execution_log(tmp_dir: Path) -> ExecutionLog:
    """Provide a fresh ExecutionLog backed by a temp SQLite database."""
    return ExecutionLog(tmp_dir / "executions.db")


@pytest.fixture
def artifact_store(tmp_dir: Path) -> ArtifactStore:
    """Provide a fresh ArtifactStore in a temp directory."""
    return ArtifactStore(tmp_dir / "artifacts")


@pytest.fixture
def secret_store() -> InMemorySecretStore:
    return InMemorySecretStore({"api-token": "s3cr3t-value", "github-token": "gh-token"})


@pytest.fixture
def runner(secret_store: InMemorySecretStore) -> ActionRunner:
    return ActionRunner(secret_store, default_timeout_seconds=10.0)


@pytest.fixture
def settings(tmp_dir: Path) -> Settings:
    """Settings pointing at temp paths, independent of the environment."""
    return Settings(
        execution_log_path=tmp_dir / "executions.db",
        artifact_store_path=tmp_dir / "artifacts",
        retain_artifacts=False,
        default_action_timeout_seconds=10.0,
        max_parallel_actions=4,
    )


class FakeClock:
    """Deterministic clock: ``sleep`` advances time instantly."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Action factories shared across test modules
# ---------------------------------------------------------------------------


@pytest.fixture
def make_action() -> Callable[..., Action]:
    """Factory fixture: build an Action around a plain callable."""

    def _factory(
        name: str,
        fn: Callable[[ActionContext], dict[str, bytes]] | None = None,
        *,
        inputs: tuple[str, ...] = (),
        outputs: tuple[str, ...] = (),
        variables: dict[str, str] | None = None,
        secrets: dict[str, str] | None = None,
        timeout_seconds: float | None = None,
    ) -> Action:
        if fn is None:
            def fn(ctx: ActionContext) -> dict[str, bytes]:
                return {out: f"{name}:{out}".encode() for out in ctx.action.outputs}

        return Action(
            name=name,
            inputs=inputs,
            outputs=outputs,
            environment=ActionEnvironment(
                variables=variables or {}, secrets=secrets or {}
            ),
            timeout_seconds=timeout_seconds,
            body=CallableAction(fn),
        )

    return _factory
