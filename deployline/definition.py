"""Pipeline definitions as data.

A ``PipelineDefinition`` declares stages and actions by *kind*; it can be
loaded from TOML or JSON and turned into a runnable ``Pipeline`` against a
set of collaborators::

    [[stages]]
    name = "Test"

    [[stages.actions]]
    name = "unit"
    kind = "command"
    inputs = ["app_source"]
    params = { commands = ["pytest -q"] }
"""

from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict

from deployline.actions import ACTION_REGISTRY, ActionFactory, Collaborators
from deployline.models.actions import Action, ActionEnvironment
from deployline.models.pipeline import Pipeline
from deployline.models.stages import Stage


class ActionDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    kind: str
    inputs: list[str] = []
    outputs: list[str] = []
    variables: dict[str, str] = {}
    secrets: dict[str, str] = {}  # env var -> secret name
    timeout_seconds: float | None = None
    params: dict[str, Any] = {}


class StageDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    actions: list[ActionDefinition]


class PipelineDefinition(BaseModel):
    """Declarative pipeline topology."""

    model_config = ConfigDict(frozen=True)

    pipeline_id: str
    name: str = ""
    stages: list[StageDefinition]

    def to_pipeline(
        self,
        collaborators: Collaborators,
        registry: dict[str, ActionFactory] | None = None,
    ) -> Pipeline:
        """Instantiate every action body and validate the wiring."""
        registry = registry if registry is not None else ACTION_REGISTRY
        stages: list[Stage] = []
        for stage_def in self.stages:
            actions: list[Action] = []
            for action_def in stage_def.actions:
                try:
                    factory = registry[action_def.kind]
                except KeyError:
                    raise KeyError(
                        f"Action {action_def.name!r} has unknown kind {action_def.kind!r}. "
                        f"Registered kinds: {sorted(registry)}"
                    ) from None
                actions.append(
                    Action(
                        name=action_def.name,
                        kind=action_def.kind,
                        inputs=tuple(action_def.inputs),
                        outputs=tuple(action_def.outputs),
                        environment=ActionEnvironment(
                            variables=action_def.variables,
                            secrets=action_def.secrets,
                        ),
                        timeout_seconds=action_def.timeout_seconds,
                        body=factory(dict(action_def.params), collaborators),
                    )
                )
            stages.append(Stage(name=stage_def.name, actions=tuple(actions)))
        return Pipeline(
            pipeline_id=self.pipeline_id,
            name=self.name or self.pipeline_id,
            stages=tuple(stages),
        )


def load_definition(path: Path) -> PipelineDefinition:
    """Load a definition from a ``.toml`` or ``.json`` file."""
    path = Path(path)
    if path.suffix == ".toml":
        with path.open("rb") as fh:
            data = tomllib.load(fh)
    elif path.suffix == ".json":
        data = json.loads(path.read_text(encoding="utf-8"))
    else:
        raise ValueError(f"Unsupported definition format: {path.suffix or path.name}")
    return PipelineDefinition.model_validate(data)
