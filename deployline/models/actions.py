"""Action models: one unit of work with declared inputs and outputs."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ActionEnvironment(BaseModel):
    """Key-value configuration for an action.

    ``secrets`` maps an environment variable name to a secret *name*.
    Secret values are resolved by the runner just before execution and
    are never stored on the model.
    """

    model_config = ConfigDict(frozen=True)

    variables: dict[str, str] = {}
    secrets: dict[str, str] = {}  # env var -> secret name


class Action(BaseModel):
    """A declared unit of work.

    ``body`` is any object satisfying the ``ActionBody`` protocol from
    ``deployline.core.action_runner``. It is excluded from serialization.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    inputs: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()
    kind: str = "custom"
    environment: ActionEnvironment = ActionEnvironment()
    timeout_seconds: float | None = None
    body: Any = Field(default=None, exclude=True)

    @field_validator("inputs", "outputs")
    @classmethod
    def _no_duplicates(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if len(set(value)) != len(value):
            raise ValueError(f"duplicate artifact names in {list(value)}")
        return value


class ActionFailure(BaseModel):
    """Captured failure of one action: exit signal plus verbatim diagnostics."""

    model_config = ConfigDict(frozen=True)

    action_name: str
    exit_code: int
    diagnostics: str = ""
    timed_out: bool = False
    missing_inputs: list[str] = []
