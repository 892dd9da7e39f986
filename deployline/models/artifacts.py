"""Artifact reference models: immutable hand-off records between stages."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class ArtifactRef(BaseModel):
    """A reference to one artifact produced during one execution.

    Identity is ``(execution_id, stage_name, name)``; the bytes live in the
    artifact store under ``content_address``.
    """

    model_config = ConfigDict(frozen=True)

    execution_id: str
    stage_name: str
    action_name: str
    name: str
    content_address: str  # "sha256:<hex>"
    size_bytes: int = 0
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.execution_id, self.stage_name, self.name)
