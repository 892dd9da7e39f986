"""Deployline data models: all Pydantic v2, all frozen (immutable)."""

from deployline.models.actions import Action, ActionEnvironment, ActionFailure
from deployline.models.artifacts import ArtifactRef
from deployline.models.execution import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    Execution,
    ExecutionState,
    Trigger,
    TriggerCause,
)
from deployline.models.log import EntryScope, LogEntry
from deployline.models.pipeline import Pipeline, PipelineWiringError
from deployline.models.service import (
    HealthStatus,
    Instance,
    RolloutResult,
    RolloutState,
    ServiceTarget,
)
from deployline.models.stages import STAGE_TRANSITIONS, Stage, StageOutcome, StageState

__all__ = [
    # actions
    "Action",
    "ActionEnvironment",
    "ActionFailure",
    # artifacts
    "ArtifactRef",
    # stages
    "Stage",
    "StageOutcome",
    "StageState",
    "STAGE_TRANSITIONS",
    # pipeline
    "Pipeline",
    "PipelineWiringError",
    # execution
    "Execution",
    "ExecutionState",
    "Trigger",
    "TriggerCause",
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    # service
    "ServiceTarget",
    "Instance",
    "HealthStatus",
    "RolloutResult",
    "RolloutState",
    # log
    "LogEntry",
    "EntryScope",
]
