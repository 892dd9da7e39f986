"""Execution log entry model (append-only, hash-chained).

One entry per execution or stage transition, scoped to a pipeline id and
an execution id. Execution status and diagnostics can be rebuilt from
these entries alone.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EntryScope(str, Enum):
    EXECUTION = "execution"
    STAGE = "stage"
    ARTIFACT = "artifact"


class LogEntry(BaseModel):
    """A single entry in the execution log."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    pipeline_id: str
    execution_id: str
    scope: EntryScope
    subject: str = ""  # stage name for stage entries, artifact name for artifacts
    transition: str = ""  # "from->to", e.g. "pending->running"
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    details: dict[str, Any] = {}
    previous_entry_hash: str = ""
    entry_hash: str = ""  # computed on append, seals this entry

    @property
    def to_state(self) -> str:
        return self.transition.split("->", 1)[-1]
