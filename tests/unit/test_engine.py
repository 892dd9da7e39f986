"""Tests for PipelineEngine: ordering, failure propagation, serialization, cancellation."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

import pytest

from deployline.config import Settings
from deployline.core.action_runner import ActionBodyError, ActionContext, ActionRunner
from deployline.core.artifact_store import ArtifactStore
from deployline.core.builder import PipelineBuilder
from deployline.core.engine import PipelineEngine
from deployline.core.execution_log import ExecutionLog
from deployline.core.state_machine import UnknownExecutionError
from deployline.models.execution import ExecutionState, TriggerCause
from deployline.models.pipeline import Pipeline
from deployline.models.stages import StageState

WAIT = 10.0


def _emit(ctx: ActionContext) -> dict[str, bytes]:
    return {name: f"{ctx.action.name}:{name}".encode() for name in ctx.action.outputs}


def _pipeline(
    test_body: Callable[[ActionContext], dict[str, bytes]] = _emit,
    source_body: Callable[[ActionContext], dict[str, bytes]] = _emit,
    calls: list[str] | None = None,
) -> Pipeline:
    def tracked(body):
        def run(ctx: ActionContext) -> dict[str, bytes]:
            if calls is not None:
                calls.append(ctx.action.name)
            return body(ctx)
        return run

    return (
        PipelineBuilder("web")
        .stage("Source")
        .action("App_Source", tracked(source_body), outputs=["app_source"])
        .stage("Test")
        .action("unit", tracked(test_body), inputs=["app_source"])
        .stage("Build")
        .action("Docker_Build", tracked(_emit), inputs=["app_source"], outputs=["imagedefinitions"])
        .build()
    )


@pytest.fixture
def make_engine(
    artifact_store: ArtifactStore,
    execution_log: ExecutionLog,
    runner: ActionRunner,
    settings: Settings,
) -> Callable[..., PipelineEngine]:
    def _factory(pipeline: Pipeline, **overrides) -> PipelineEngine:
        return PipelineEngine(
            pipeline,
            store=artifact_store,
            log=execution_log,
            runner=runner,
            settings=settings.model_copy(update=overrides) if overrides else settings,
        )

    return _factory


class TestRun:
    def test_successful_execution(self, make_engine: Callable[..., PipelineEngine]):
        engine = make_engine(_pipeline())
        execution = engine.run(TriggerCause.SOURCE_CHANGE, commit_id="c0ffee", timeout=WAIT)
        assert execution.status == ExecutionState.SUCCEEDED
        assert execution.trigger.commit_id == "c0ffee"
        assert [s.state for s in execution.stages] == [StageState.SUCCEEDED] * 3
        assert {a.name for a in execution.artifacts} == {"app_source", "imagedefinitions"}
        assert execution.started_at is not None and execution.finished_at is not None

    def test_stages_run_in_order(self, make_engine: Callable[..., PipelineEngine]):
        calls: list[str] = []
        engine = make_engine(_pipeline(calls=calls))
        engine.run(timeout=WAIT)
        assert calls == ["App_Source", "unit", "Docker_Build"]

    def test_engine_env_passed_to_actions(self, make_engine: Callable[..., PipelineEngine]):
        seen: dict[str, str] = {}

        def source(ctx: ActionContext) -> dict[str, bytes]:
            seen.update(ctx.env)
            return _emit(ctx)

        engine = make_engine(_pipeline(source_body=source))
        execution = engine.run(commit_id="c0ffee", timeout=WAIT)
        assert seen["PIPELINE_ID"] == "web"
        assert seen["EXECUTION_ID"] == execution.execution_id
        assert seen["COMMIT_ID"] == "c0ffee"

    def test_artifacts_evicted_after_completion(
        self, make_engine: Callable[..., PipelineEngine], artifact_store: ArtifactStore
    ):
        execution = make_engine(_pipeline()).run(timeout=WAIT)
        assert artifact_store.list_refs(execution.execution_id) == []

    def test_artifacts_retained_when_configured(
        self, make_engine: Callable[..., PipelineEngine], artifact_store: ArtifactStore
    ):
        execution = make_engine(_pipeline(), retain_artifacts=True).run(timeout=WAIT)
        names = {r.name for r in artifact_store.list_refs(execution.execution_id)}
        assert names == {"app_source", "imagedefinitions"}


class TestFailure:
    def test_failed_stage_stops_pipeline(self, make_engine: Callable[..., PipelineEngine]):
        calls: list[str] = []

        def failing(ctx: ActionContext) -> dict[str, bytes]:
            raise ActionBodyError(1, "AssertionError: expected 200, got 500")

        engine = make_engine(_pipeline(test_body=failing, calls=calls))
        execution = engine.run(timeout=WAIT)

        assert execution.status == ExecutionState.FAILED
        assert execution.failed_stage == "Test"
        assert execution.failed_action == "unit"
        assert "expected 200, got 500" in execution.diagnostics
        assert "Docker_Build" not in calls
        assert execution.stage("Test").state == StageState.FAILED
        assert execution.stage("Build").state == StageState.SKIPPED
        assert "imagedefinitions" not in {a.name for a in execution.artifacts}

    def test_failure_diagnostics_in_history(
        self, make_engine: Callable[..., PipelineEngine], execution_log: ExecutionLog
    ):
        def failing(ctx: ActionContext) -> dict[str, bytes]:
            raise ActionBodyError(2, "lint: 3 errors")

        execution = make_engine(_pipeline(test_body=failing)).run(timeout=WAIT)
        reloaded = ExecutionLog(execution_log.path).load_execution(execution.execution_id)
        assert reloaded.state == ExecutionState.FAILED
        assert reloaded.failed_stage == "Test"
        assert reloaded.stage("Test").failures[0].exit_code == 2
        assert "lint: 3 errors" in reloaded.stage("Test").diagnostics

    def test_retry_starts_fresh_execution(self, make_engine: Callable[..., PipelineEngine]):
        attempts: list[int] = []

        def flaky(ctx: ActionContext) -> dict[str, bytes]:
            attempts.append(1)
            if len(attempts) == 1:
                raise ActionBodyError(1, "flaky")
            return {}

        engine = make_engine(_pipeline(test_body=flaky))
        first = engine.run(commit_id="abc", timeout=WAIT)
        assert first.status == ExecutionState.FAILED
        retried = engine.retry(first.execution_id)
        second = engine.wait(retried.execution_id, timeout=WAIT)
        assert second.execution_id != first.execution_id
        assert second.status == ExecutionState.SUCCEEDED
        assert second.trigger.commit_id == "abc"
        assert engine.get_execution(first.execution_id).status == ExecutionState.FAILED


class TestSerialization:
    def test_second_trigger_waits_for_first(self, make_engine: Callable[..., PipelineEngine]):
        started = threading.Event()
        release = threading.Event()

        def blocking(ctx: ActionContext) -> dict[str, bytes]:
            started.set()
            release.wait(WAIT)
            return _emit(ctx)

        engine = make_engine(_pipeline(source_body=blocking))
        first = engine.trigger()
        assert started.wait(WAIT)
        second = engine.on_source_change("def456")

        assert second.status == ExecutionState.PENDING
        assert engine.current_execution_id == first.execution_id
        assert engine.pending_execution_ids == [second.execution_id]
        assert engine.get_execution(second.execution_id).status == ExecutionState.PENDING

        release.set()
        done_first = engine.wait(first.execution_id, timeout=WAIT)
        done_second = engine.wait(second.execution_id, timeout=WAIT)
        assert done_first.status == ExecutionState.SUCCEEDED
        assert done_second.status == ExecutionState.SUCCEEDED
        assert done_second.started_at >= done_first.finished_at
        assert engine.wait_idle(WAIT)

    def test_timed_out_body_finishes_before_next_execution_starts(
        self, make_engine: Callable[..., PipelineEngine]
    ):
        lock = threading.Lock()
        events: list[tuple[str, str]] = []

        def stubborn(ctx: ActionContext) -> dict[str, bytes]:
            with lock:
                events.append(("start", ctx.execution_id))
            time.sleep(0.6)  # ignores ctx.cancelled
            with lock:
                events.append(("end", ctx.execution_id))
            return {}

        pipeline = (
            PipelineBuilder("deploy-only")
            .stage("Deploy")
            .action("DeployService", stubborn, timeout_seconds=0.1)
            .build()
        )
        engine = make_engine(pipeline)
        first = engine.trigger()
        second = engine.trigger()
        assert engine.wait_idle(WAIT)

        assert events == [
            ("start", first.execution_id),
            ("end", first.execution_id),
            ("start", second.execution_id),
            ("end", second.execution_id),
        ]
        done_first = engine.get_execution(first.execution_id)
        assert done_first.status == ExecutionState.FAILED
        assert done_first.stage("Deploy").failures[0].timed_out is True

    def test_wait_releases_completion_tracking(self, make_engine: Callable[..., PipelineEngine]):
        engine = make_engine(_pipeline())
        done = engine.run(timeout=WAIT)
        assert done.status == ExecutionState.SUCCEEDED
        assert engine._done == {}
        assert engine.wait(done.execution_id).status == ExecutionState.SUCCEEDED

    def test_history_lists_all_executions(self, make_engine: Callable[..., PipelineEngine]):
        engine = make_engine(_pipeline())
        a = engine.run(timeout=WAIT)
        b = engine.run(timeout=WAIT)
        assert [e.execution_id for e in engine.history()] == [a.execution_id, b.execution_id]


class TestCancellation:
    def test_cancel_pending(self, make_engine: Callable[..., PipelineEngine]):
        started = threading.Event()
        release = threading.Event()

        def blocking(ctx: ActionContext) -> dict[str, bytes]:
            started.set()
            release.wait(WAIT)
            return _emit(ctx)

        engine = make_engine(_pipeline(source_body=blocking))
        engine.trigger()
        assert started.wait(WAIT)
        queued = engine.trigger()
        cancelled = engine.cancel(queued.execution_id)
        release.set()

        assert cancelled.status == ExecutionState.CANCELLED
        assert all(s.state == StageState.SKIPPED for s in cancelled.stages)
        assert engine.wait(queued.execution_id, timeout=WAIT).status == ExecutionState.CANCELLED
        assert engine.wait_idle(WAIT)

    def test_cancel_running_stops_at_stage_boundary(self, make_engine: Callable[..., PipelineEngine]):
        started = threading.Event()
        release = threading.Event()

        def blocking(ctx: ActionContext) -> dict[str, bytes]:
            started.set()
            release.wait(WAIT)
            return _emit(ctx)

        engine = make_engine(_pipeline(source_body=blocking))
        execution = engine.trigger()
        assert started.wait(WAIT)
        engine.cancel(execution.execution_id)
        release.set()

        done = engine.wait(execution.execution_id, timeout=WAIT)
        assert done.status == ExecutionState.CANCELLED
        assert done.stage("Source").state == StageState.SUCCEEDED
        assert done.stage("Test").state == StageState.SKIPPED
        assert done.stage("Build").state == StageState.SKIPPED

    def test_cancel_terminal_is_noop(self, make_engine: Callable[..., PipelineEngine]):
        engine = make_engine(_pipeline())
        done = engine.run(timeout=WAIT)
        assert engine.cancel(done.execution_id).status == ExecutionState.SUCCEEDED

    def test_unknown_execution(self, make_engine: Callable[..., PipelineEngine]):
        with pytest.raises(UnknownExecutionError):
            make_engine(_pipeline()).get_execution("ex-missing")
