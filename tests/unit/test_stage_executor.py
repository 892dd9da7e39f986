"""Tests for StageExecutor: input resolution, concurrency barrier, failure aggregation."""

from __future__ import annotations

import threading
from collections.abc import Callable

import pytest

from deployline.core.action_runner import ActionBodyError, ActionContext, ActionRunner, MissingInputError
from deployline.core.artifact_store import ArtifactStore
from deployline.core.stage_executor import StageExecutor, StageFailedError
from deployline.models.actions import Action
from deployline.models.stages import Stage


@pytest.fixture
def executor(artifact_store: ArtifactStore, runner: ActionRunner) -> StageExecutor:
    return StageExecutor(artifact_store, runner, max_parallel_actions=4)


class TestStageExecutor:
    def test_outputs_written_to_store(
        self, executor: StageExecutor, artifact_store: ArtifactStore, make_action: Callable[..., Action]
    ):
        stage = Stage(
            name="Source",
            actions=(
                make_action("Infra_Source", outputs=("infra_source",)),
                make_action("App_Source", outputs=("app_source",)),
            ),
        )
        refs = executor.run("ex-1", stage, {})
        assert {r.name for r in refs} == {"infra_source", "app_source"}
        assert all(r.stage_name == "Source" for r in refs)
        by_name = {r.name: r for r in refs}
        assert artifact_store.get(by_name["app_source"]) == b"App_Source:app_source"
        assert by_name["infra_source"].action_name == "Infra_Source"

    def test_actions_run_concurrently(self, executor: StageExecutor, make_action: Callable[..., Action]):
        # Each action waits for the other; sequential execution would time out.
        barrier = threading.Barrier(2, timeout=5)

        def body(ctx: ActionContext) -> dict[str, bytes]:
            barrier.wait()
            return {}

        stage = Stage(name="Test", actions=(make_action("unit", body), make_action("lint", body)))
        assert executor.run("ex-1", stage, {}) == []

    def test_inputs_resolved_from_earlier_stage(
        self, executor: StageExecutor, make_action: Callable[..., Action]
    ):
        seen: dict[str, bytes] = {}

        def body(ctx: ActionContext) -> dict[str, bytes]:
            seen.update(ctx.inputs)
            return {"imagedefinitions": b"[]"}

        source = Stage(name="Source", actions=(make_action("App_Source", outputs=("app_source",)),))
        available = {r.name: r for r in executor.run("ex-1", source, {})}
        build = Stage(
            name="Build",
            actions=(make_action("Docker_Build", body, inputs=("app_source",), outputs=("imagedefinitions",)),),
        )
        executor.run("ex-1", build, available)
        assert seen == {"app_source": b"App_Source:app_source"}

    def test_missing_input_fails_before_dispatch(
        self, executor: StageExecutor, make_action: Callable[..., Action]
    ):
        calls: list[str] = []

        def body(ctx: ActionContext) -> dict[str, bytes]:
            calls.append(ctx.action.name)
            return {}

        stage = Stage(
            name="Test",
            actions=(make_action("lint", body), make_action("unit", body, inputs=("app_source",))),
        )
        with pytest.raises(MissingInputError) as exc_info:
            executor.run("ex-1", stage, {})
        assert exc_info.value.action_name == "unit"
        assert calls == []

    def test_ref_from_another_execution_is_not_visible(
        self, executor: StageExecutor, make_action: Callable[..., Action]
    ):
        source = Stage(name="Source", actions=(make_action("App_Source", outputs=("app_source",)),))
        other = {r.name: r for r in executor.run("ex-other", source, {})}
        stage = Stage(name="Test", actions=(make_action("unit", inputs=("app_source",)),))
        with pytest.raises(MissingInputError):
            executor.run("ex-1", stage, other)

    def test_failure_waits_for_siblings_and_writes_nothing(
        self, executor: StageExecutor, artifact_store: ArtifactStore, make_action: Callable[..., Action]
    ):
        finished: list[str] = []
        release = threading.Event()

        def failing(ctx: ActionContext) -> dict[str, bytes]:
            release.set()
            raise ActionBodyError(2, "lint errors")

        def slow(ctx: ActionContext) -> dict[str, bytes]:
            release.wait(5)
            finished.append(ctx.action.name)
            return {"report": b"ok"}

        stage = Stage(
            name="Test",
            actions=(make_action("unit", slow, outputs=("report",)), make_action("lint", failing)),
        )
        with pytest.raises(StageFailedError) as exc_info:
            executor.run("ex-1", stage, {})
        assert finished == ["unit"]
        assert exc_info.value.failed_action == "lint"
        assert "[lint] lint errors" in exc_info.value.diagnostics
        assert artifact_store.list_refs("ex-1") == []

    def test_all_failures_reported_in_declaration_order(
        self, executor: StageExecutor, make_action: Callable[..., Action]
    ):
        def failing(ctx: ActionContext) -> dict[str, bytes]:
            raise ActionBodyError(1, f"{ctx.action.name} broke")

        stage = Stage(name="Test", actions=(make_action("a", failing), make_action("b", failing)))
        with pytest.raises(StageFailedError) as exc_info:
            executor.run("ex-1", stage, {})
        failures = exc_info.value.to_failures()
        assert [f.action_name for f in failures] == ["a", "b"]
        assert all(f.exit_code == 1 for f in failures)
