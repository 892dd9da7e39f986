"""ExecutionProjection: read-only view over the ExecutionLog.

Status and diagnostics shown to operators are derived from log entries
alone, so a process that never ran the engine can still answer "what
happened to execution X".
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from deployline.core.execution_log import ExecutionLog, LogIntegrityError
from deployline.core.state_machine import UnknownExecutionError
from deployline.models.execution import Execution, ExecutionState, TriggerCause
from deployline.models.stages import StageState


class StageView(BaseModel):
    """Point-in-time status of one stage of an execution."""

    model_config = ConfigDict(frozen=True)

    name: str
    state: StageState = StageState.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    artifacts: list[str] = []
    diagnostics: str = ""

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


class ExecutionView(BaseModel):
    """A frozen snapshot of one execution, computed fresh on every call."""

    model_config = ConfigDict(frozen=True)

    execution_id: str
    pipeline_id: str
    state: ExecutionState
    cause: TriggerCause = TriggerCause.MANUAL
    commit_id: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    stages: list[StageView] = []
    failed_stage: str | None = None
    failed_action: str | None = None
    diagnostics: str = ""
    artifact_count: int = 0
    entry_count: int = 0
    chain_valid: bool = True
    last_updated: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def completed_count(self) -> int:
        return sum(1 for s in self.stages if s.state == StageState.SUCCEEDED)

    @property
    def total_stages(self) -> int:
        return len(self.stages)


class ExecutionProjection:
    """Pure read-only projection over the ExecutionLog.

    Parameters
    ----------
    log:
        The ExecutionLog to project from.
    """

    def __init__(self, log: ExecutionLog) -> None:
        self._log = log

    def snapshot(self, execution_id: str) -> ExecutionView:
        """Rebuild the view of *execution_id* from the log.

        Raises ``UnknownExecutionError`` if the log has no such execution.
        """
        execution = self._log.load_execution(execution_id)
        if execution is None:
            raise UnknownExecutionError(execution_id)
        entries = self._log.entries(execution_id)
        return self._to_view(
            execution,
            entry_count=len(entries),
            chain_valid=self._check_chain_valid(execution.pipeline_id),
            last_updated=entries[-1].timestamp_utc if entries else execution.created_at,
        )

    def history(self, pipeline_id: str) -> list[ExecutionView]:
        """Views of every execution of *pipeline_id*, oldest first."""
        chain_valid = self._check_chain_valid(pipeline_id)
        return [
            self._to_view(
                execution,
                chain_valid=chain_valid,
                last_updated=execution.finished_at
                or execution.started_at
                or execution.created_at,
            )
            for execution in self._log.history(pipeline_id)
        ]

    def pipeline_ids(self) -> list[str]:
        return self._log.pipeline_ids()

    def _to_view(
        self,
        execution: Execution,
        *,
        entry_count: int = 0,
        chain_valid: bool,
        last_updated: datetime,
    ) -> ExecutionView:
        stages = [
            StageView(
                name=outcome.stage_name,
                state=outcome.state,
                started_at=outcome.started_at,
                finished_at=outcome.finished_at,
                artifacts=list(outcome.artifacts),
                diagnostics=outcome.diagnostics,
            )
            for outcome in execution.stages
        ]
        return ExecutionView(
            execution_id=execution.execution_id,
            pipeline_id=execution.pipeline_id,
            state=execution.state,
            cause=execution.trigger.cause,
            commit_id=execution.trigger.commit_id,
            created_at=execution.created_at,
            started_at=execution.started_at,
            finished_at=execution.finished_at,
            stages=stages,
            failed_stage=execution.failed_stage,
            failed_action=execution.failed_action,
            diagnostics=execution.diagnostics,
            artifact_count=sum(len(s.artifacts) for s in stages),
            entry_count=entry_count,
            chain_valid=chain_valid,
            last_updated=last_updated,
        )

    def _check_chain_valid(self, pipeline_id: str) -> bool:
        """Check hash chain integrity without raising."""
        try:
            return self._log.verify_chain(pipeline_id)
        except LogIntegrityError:
            return False
