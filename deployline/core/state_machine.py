"""Execution and stage state machine.

Enforces:
- Valid execution transitions only (VALID_TRANSITIONS table)
- Valid stage transitions only (STAGE_TRANSITIONS table)
- Every transition recorded in the execution log
- Timestamps set on entry into RUNNING and into terminal states
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any

from deployline.core.execution_log import ExecutionLog
from deployline.models.execution import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    Execution,
    ExecutionState,
    Trigger,
)
from deployline.models.log import EntryScope, LogEntry
from deployline.models.pipeline import Pipeline
from deployline.models.stages import STAGE_TRANSITIONS, StageOutcome, StageState


class InvalidTransitionError(RuntimeError):
    """Raised when a requested state transition is not valid."""


class UnknownExecutionError(KeyError):
    """Raised when an execution id is neither in memory nor in the log."""


class ExecutionStateMachine:
    """Holds the current snapshot of every in-flight execution.

    Terminal executions are dropped from memory and rebuilt from the log
    on demand.

    Parameters
    ----------
    log:
        The execution log to record transitions into.
    """

    def __init__(self, log: ExecutionLog) -> None:
        self._log = log
        self._lock = threading.RLock()
        # execution_id -> latest snapshot
        self._executions: dict[str, Execution] = {}

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    def create(self, pipeline: Pipeline, trigger: Trigger) -> Execution:
        """Register a new PENDING execution with every stage PENDING."""
        execution = Execution(
            pipeline_id=pipeline.pipeline_id,
            trigger=trigger,
            stages=[StageOutcome(stage_name=name) for name in pipeline.stage_names],
        )
        with self._lock:
            self._executions[execution.execution_id] = execution
            self._log.record_execution(execution, f"->{ExecutionState.PENDING.value}")
        return execution

    def get(self, execution_id: str) -> Execution:
        """Return the current snapshot, rebuilding it from the log if needed."""
        with self._lock:
            current = self._executions.get(execution_id)
            if current is not None:
                return current
            rebuilt = self._log.load_execution(execution_id)
            if rebuilt is None:
                raise UnknownExecutionError(execution_id)
            if not rebuilt.is_terminal:
                self._executions[execution_id] = rebuilt
            return rebuilt

    def active(self) -> list[Execution]:
        """Executions held in memory, i.e. not yet terminal, oldest first."""
        with self._lock:
            return sorted(self._executions.values(), key=lambda e: e.created_at)

    # ------------------------------------------------------------------
    # Transition logic
    # ------------------------------------------------------------------

    def transition(
        self,
        execution_id: str,
        target: ExecutionState,
        **updates: Any,
    ) -> Execution:
        """Move an execution to *target*, recording the transition.

        Extra keyword arguments update snapshot fields (``failed_stage``,
        ``diagnostics`` ...).
        """
        with self._lock:
            current = self.get(execution_id)
            allowed = VALID_TRANSITIONS.get(current.state, set())
            if target not in allowed:
                raise InvalidTransitionError(
                    f"Cannot transition execution {execution_id} from "
                    f"{current.state.value} to {target.value}. "
                    f"Allowed: {sorted(s.value for s in allowed)}"
                )

            now = datetime.now(timezone.utc)
            changes: dict[str, Any] = {"state": target, **updates}
            if target == ExecutionState.RUNNING:
                changes["started_at"] = now
            if target in TERMINAL_STATES:
                changes["finished_at"] = now

            updated = current.model_copy(update=changes)
            if target in TERMINAL_STATES:
                # Terminal snapshots are served from the log from here on.
                self._executions.pop(execution_id, None)
            else:
                self._executions[execution_id] = updated
            self._log.record_execution(
                updated, f"{current.state.value}->{target.value}"
            )
            return updated

    def stage_transition(
        self,
        execution_id: str,
        stage_name: str,
        target: StageState,
        **updates: Any,
    ) -> Execution:
        """Move one stage of an execution to *target*, recording it."""
        with self._lock:
            current = self.get(execution_id)
            outcome = current.stage(stage_name)
            if outcome is None:
                raise KeyError(f"Execution {execution_id} has no stage {stage_name!r}")

            allowed = STAGE_TRANSITIONS.get(outcome.state, set())
            if target not in allowed:
                raise InvalidTransitionError(
                    f"Cannot transition stage {stage_name} from "
                    f"{outcome.state.value} to {target.value}. "
                    f"Allowed: {sorted(s.value for s in allowed)}"
                )

            now = datetime.now(timezone.utc)
            changes: dict[str, Any] = {"state": target, **updates}
            if target == StageState.RUNNING:
                changes["started_at"] = now
            elif target in (StageState.SUCCEEDED, StageState.FAILED):
                changes["finished_at"] = now

            new_outcome = outcome.model_copy(update=changes)
            stages = [
                new_outcome if s.stage_name == stage_name else s
                for s in current.stages
            ]
            updated = current.model_copy(update={"stages": stages})
            self._executions[execution_id] = updated

            self._log.append(
                LogEntry(
                    pipeline_id=current.pipeline_id,
                    execution_id=execution_id,
                    scope=EntryScope.STAGE,
                    subject=stage_name,
                    transition=f"{outcome.state.value}->{target.value}",
                    details={"outcome": new_outcome.model_dump(mode="json")},
                )
            )
            return updated
