"""Execution models: one run of a pipeline from trigger to terminal state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from deployline.models.artifacts import ArtifactRef
from deployline.models.stages import StageOutcome


class ExecutionState(str, Enum):
    """Lifecycle of one execution."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Terminal states have no outgoing transitions. A Pending execution may be
# cancelled before it ever runs.
VALID_TRANSITIONS: dict[ExecutionState, set[ExecutionState]] = {
    ExecutionState.PENDING: {ExecutionState.RUNNING, ExecutionState.CANCELLED},
    ExecutionState.RUNNING: {
        ExecutionState.SUCCEEDED,
        ExecutionState.FAILED,
        ExecutionState.CANCELLED,
    },
    ExecutionState.SUCCEEDED: set(),
    ExecutionState.FAILED: set(),
    ExecutionState.CANCELLED: set(),
}

TERMINAL_STATES: frozenset[ExecutionState] = frozenset(
    {ExecutionState.SUCCEEDED, ExecutionState.FAILED, ExecutionState.CANCELLED}
)


class TriggerCause(str, Enum):
    MANUAL = "manual"
    SOURCE_CHANGE = "source_change"


class Trigger(BaseModel):
    """Why an execution was started."""

    model_config = ConfigDict(frozen=True)

    cause: TriggerCause = TriggerCause.MANUAL
    commit_id: str | None = None
    requested_by: str = ""


def new_execution_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"ex-{ts}-{uuid.uuid4().hex[:6]}"


class Execution(BaseModel):
    """Snapshot of one execution.

    The engine replaces the snapshot on every transition; callers always
    see a consistent, immutable view.
    """

    model_config = ConfigDict(frozen=True)

    execution_id: str = Field(default_factory=new_execution_id)
    pipeline_id: str
    trigger: Trigger = Trigger()
    state: ExecutionState = ExecutionState.PENDING
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    started_at: datetime | None = None
    finished_at: datetime | None = None
    stages: list[StageOutcome] = []
    failed_stage: str | None = None
    failed_action: str | None = None
    diagnostics: str = ""
    artifacts: list[ArtifactRef] = []

    @property
    def status(self) -> ExecutionState:
        return self.state

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def stage(self, name: str) -> StageOutcome | None:
        """Return the outcome for stage *name*, or None."""
        for outcome in self.stages:
            if outcome.stage_name == name:
                return outcome
        return None
