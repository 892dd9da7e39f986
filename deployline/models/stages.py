"""Stage models: barrier-synchronized groups of concurrent actions."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict

from deployline.models.actions import Action, ActionFailure


class StageState(str, Enum):
    """Per-execution state of one stage."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


# Stages after a failed or cancelled one are SKIPPED, never started.
STAGE_TRANSITIONS: dict[StageState, set[StageState]] = {
    StageState.PENDING: {StageState.RUNNING, StageState.SKIPPED},
    StageState.RUNNING: {StageState.SUCCEEDED, StageState.FAILED},
    StageState.SUCCEEDED: set(),
    StageState.FAILED: set(),
    StageState.SKIPPED: set(),
}


class Stage(BaseModel):
    """An ordered position in the pipeline holding independent actions."""

    model_config = ConfigDict(frozen=True)

    name: str
    actions: tuple[Action, ...]

    @property
    def produced(self) -> set[str]:
        """Artifact names promised by this stage's actions."""
        return {name for action in self.actions for name in action.outputs}


class StageOutcome(BaseModel):
    """What happened to one stage during one execution."""

    model_config = ConfigDict(frozen=True)

    stage_name: str
    state: StageState = StageState.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    failures: list[ActionFailure] = []
    artifacts: list[str] = []  # artifact names written by this stage

    @property
    def diagnostics(self) -> str:
        return "\n".join(
            f"[{f.action_name}] {f.diagnostics}" for f in self.failures
        )
