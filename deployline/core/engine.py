"""Pipeline engine: drives executions of one pipeline.

Executions of the same pipeline are serialized: a single worker thread
drains a FIFO queue, so a newly triggered execution stays PENDING until
the one in flight reaches a terminal state. This is what keeps two
rollouts from racing on the same service.

Within an execution, stages run strictly in order. A stage starts only
after the previous one SUCCEEDED. The first stage failure ends the
execution as FAILED and the remaining stages are SKIPPED. Nothing is
retried automatically; ``retry()`` triggers a fresh execution.
Cancellation is cooperative and takes effect at the next stage boundary.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable

from deployline.config import Settings
from deployline.core.action_runner import ActionRunner, MissingInputError
from deployline.core.artifact_store import ArtifactStore
from deployline.core.execution_log import ExecutionLog
from deployline.core.stage_executor import StageExecutor, StageFailedError
from deployline.core.state_machine import ExecutionStateMachine
from deployline.models.actions import ActionFailure
from deployline.models.artifacts import ArtifactRef
from deployline.models.execution import (
    Execution,
    ExecutionState,
    Trigger,
    TriggerCause,
)
from deployline.models.pipeline import Pipeline
from deployline.models.stages import StageState

logger = logging.getLogger(__name__)


class PipelineEngine:
    """Owns a pipeline's stages and its execution queue.

    Parameters
    ----------
    pipeline:
        The validated pipeline topology.
    store:
        Artifact store for stage hand-offs.
    log:
        Persistent execution history.
    runner:
        Action runner. Built from *settings* when not provided.
    settings:
        Runtime settings. Defaults are used if not provided.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        *,
        store: ArtifactStore,
        log: ExecutionLog,
        runner: ActionRunner | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.settings = settings or Settings()
        self.store = store
        self.log = log
        self.runner = runner or ActionRunner(
            default_timeout_seconds=self.settings.default_action_timeout_seconds
        )
        self._machine = ExecutionStateMachine(log)
        self._stage_executor = StageExecutor(
            store,
            self.runner,
            max_parallel_actions=self.settings.max_parallel_actions,
        )

        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._worker: threading.Thread | None = None
        self._current: str | None = None
        self._cancel_requested: set[str] = set()
        self._done: dict[str, threading.Event] = {}
        self._listeners: list[Callable[[Execution], None]] = []

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def trigger(
        self,
        cause: TriggerCause = TriggerCause.MANUAL,
        *,
        commit_id: str | None = None,
        requested_by: str = "",
    ) -> Execution:
        """Queue a new execution and return its PENDING snapshot."""
        trigger = Trigger(cause=cause, commit_id=commit_id, requested_by=requested_by)
        execution = self._machine.create(self.pipeline, trigger)
        with self._cond:
            self._done[execution.execution_id] = threading.Event()
            self._queue.append(execution.execution_id)
            queued_behind = len(self._queue) - 1 + (1 if self._current else 0)
            self._ensure_worker()
            self._cond.notify_all()

        logger.info(
            "Execution %s of pipeline %s queued (cause=%s, commit=%s, ahead=%d)",
            execution.execution_id,
            self.pipeline.pipeline_id,
            cause.value,
            commit_id,
            queued_behind,
        )
        self._notify(execution)
        return execution

    def on_source_change(self, commit_id: str) -> Execution:
        """Handle a "source changed" notification from the source collaborator."""
        return self.trigger(TriggerCause.SOURCE_CHANGE, commit_id=commit_id)

    def retry(self, execution_id: str) -> Execution:
        """Start a fresh execution with the trigger of a previous one."""
        previous = self.get_execution(execution_id)
        return self.trigger(
            TriggerCause.MANUAL,
            commit_id=previous.trigger.commit_id,
            requested_by=f"retry:{execution_id}",
        )

    def run(
        self,
        cause: TriggerCause = TriggerCause.MANUAL,
        *,
        commit_id: str | None = None,
        timeout: float | None = None,
    ) -> Execution:
        """Trigger an execution and block until it is terminal."""
        execution = self.trigger(cause, commit_id=commit_id)
        return self.wait(execution.execution_id, timeout=timeout)

    # ------------------------------------------------------------------
    # Control and queries
    # ------------------------------------------------------------------

    def wait(self, execution_id: str, timeout: float | None = None) -> Execution:
        """Block until *execution_id* is terminal (or *timeout* expires).

        Executions that are no longer tracked are terminal; their snapshot
        comes from the log.
        """
        event = self._done.get(execution_id)
        if event is not None:
            event.wait(timeout)
        return self.get_execution(execution_id)

    def cancel(self, execution_id: str) -> Execution:
        """Request cancellation.

        A PENDING execution is cancelled immediately. A RUNNING one stops at
        the next stage boundary; in-flight actions are not interrupted.
        Terminal executions are returned unchanged.
        """
        with self._cond:
            execution = self._machine.get(execution_id)
            if execution.is_terminal:
                return execution
            if execution_id in self._queue:
                self._queue.remove(execution_id)
                cancelled = self._finish_cancelled(execution_id)
                logger.info("Execution %s cancelled before start", execution_id)
                return cancelled
            self._cancel_requested.add(execution_id)
        logger.info("Cancellation requested for running execution %s", execution_id)
        return self._machine.get(execution_id)

    def get_execution(self, execution_id: str) -> Execution:
        return self._machine.get(execution_id)

    def history(self) -> list[Execution]:
        """Every execution of this pipeline, oldest first (from the log)."""
        return self.log.history(self.pipeline.pipeline_id)

    def add_listener(self, listener: Callable[[Execution], None]) -> None:
        """Register a callback invoked with each new execution snapshot."""
        self._listeners.append(listener)

    @property
    def current_execution_id(self) -> str | None:
        return self._current

    @property
    def pending_execution_ids(self) -> list[str]:
        with self._cond:
            return list(self._queue)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until the queue is drained. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(
                lambda: not self._queue and self._current is None, timeout
            )

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _ensure_worker(self) -> None:
        # Caller holds self._cond.
        if self._worker is None or not self._worker.is_alive():
            self._worker = threading.Thread(
                target=self._drain,
                name=f"pipeline-{self.pipeline.pipeline_id}",
                daemon=True,
            )
            self._worker.start()

    def _drain(self) -> None:
        while True:
            with self._cond:
                if not self._queue:
                    self._worker = None
                    self._cond.notify_all()
                    return
                execution_id = self._queue.popleft()
                self._current = execution_id
            try:
                self._execute(execution_id)
            except Exception as exc:
                logger.exception("Execution %s crashed in the engine", execution_id)
                self._fail_unexpected(execution_id, exc)
            finally:
                with self._cond:
                    self._current = None
                    self._cancel_requested.discard(execution_id)
                    self._cond.notify_all()
                self._release(execution_id)

    def _execute(self, execution_id: str) -> None:
        execution = self._machine.transition(execution_id, ExecutionState.RUNNING)
        self._notify(execution)
        if self.settings.retain_artifacts:
            self.store.retain(execution_id)

        env = {
            "PIPELINE_ID": self.pipeline.pipeline_id,
            "EXECUTION_ID": execution_id,
            "COMMIT_ID": execution.trigger.commit_id or "",
        }
        available: dict[str, ArtifactRef] = {}
        produced: list[ArtifactRef] = []

        try:
            for index, stage in enumerate(self.pipeline.stages):
                if execution_id in self._cancel_requested:
                    self._skip_from(execution_id, index)
                    execution = self._machine.transition(
                        execution_id,
                        ExecutionState.CANCELLED,
                        artifacts=produced,
                        diagnostics=f"Cancelled before stage {stage.name!r}",
                    )
                    logger.info("Execution %s cancelled before stage %s", execution_id, stage.name)
                    self._notify(execution)
                    return

                self._notify(
                    self._machine.stage_transition(execution_id, stage.name, StageState.RUNNING)
                )
                try:
                    refs = self._stage_executor.run(execution_id, stage, available, env)
                except MissingInputError as exc:
                    failure = ActionFailure(
                        action_name=exc.action_name,
                        exit_code=1,
                        diagnostics=str(exc),
                        missing_inputs=exc.missing,
                    )
                    self._fail(execution_id, index, [failure], produced)
                    return
                except StageFailedError as exc:
                    self._fail(execution_id, index, exc.to_failures(), produced)
                    return

                for ref in refs:
                    available[ref.name] = ref
                produced.extend(refs)
                self._notify(
                    self._machine.stage_transition(
                        execution_id,
                        stage.name,
                        StageState.SUCCEEDED,
                        artifacts=[ref.name for ref in refs],
                    )
                )

            execution = self._machine.transition(
                execution_id, ExecutionState.SUCCEEDED, artifacts=produced
            )
            logger.info(
                "Execution %s succeeded with %d artifact(s)", execution_id, len(produced)
            )
            self._notify(execution)
        finally:
            self.store.evict(execution_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _fail(
        self,
        execution_id: str,
        stage_index: int,
        failures: list[ActionFailure],
        produced: list[ArtifactRef],
    ) -> None:
        stage = self.pipeline.stages[stage_index]
        self._machine.stage_transition(
            execution_id, stage.name, StageState.FAILED, failures=failures
        )
        self._skip_from(execution_id, stage_index + 1)
        diagnostics = "\n".join(f"[{f.action_name}] {f.diagnostics}" for f in failures)
        execution = self._machine.transition(
            execution_id,
            ExecutionState.FAILED,
            failed_stage=stage.name,
            failed_action=failures[0].action_name if failures else None,
            diagnostics=diagnostics,
            artifacts=produced,
        )
        logger.error(
            "Execution %s failed at stage %s (action %s)",
            execution_id, stage.name, execution.failed_action,
        )
        self._notify(execution)

    def _skip_from(self, execution_id: str, start: int) -> None:
        for stage in self.pipeline.stages[start:]:
            self._machine.stage_transition(execution_id, stage.name, StageState.SKIPPED)

    def _finish_cancelled(self, execution_id: str) -> Execution:
        self._skip_from(execution_id, 0)
        execution = self._machine.transition(
            execution_id, ExecutionState.CANCELLED, diagnostics="Cancelled while pending"
        )
        self._release(execution_id)
        self._notify(execution)
        return execution

    def _fail_unexpected(self, execution_id: str, exc: Exception) -> None:
        execution = self._machine.get(execution_id)
        if execution.is_terminal:
            return
        if execution.state == ExecutionState.PENDING:
            self._machine.transition(execution_id, ExecutionState.RUNNING)
        self._machine.transition(
            execution_id,
            ExecutionState.FAILED,
            diagnostics=f"{type(exc).__name__}: {exc}",
        )

    def _release(self, execution_id: str) -> None:
        """Wake waiters of a terminal execution and stop tracking it."""
        event = self._done.pop(execution_id, None)
        if event is not None:
            event.set()

    def _notify(self, execution: Execution) -> None:
        for listener in self._listeners:
            listener(execution)
