"""Fluent builder for pipelines; wiring is validated on ``build()``.

Usage::

    pipeline = (
        PipelineBuilder("web", name="Web delivery")
        .stage("Source")
            .action("fetch", fetch_body, outputs=["source"])
        .stage("Test")
            .action("unit", test_body, inputs=["source"])
        .build()
    )
"""

from __future__ import annotations

from typing import Any

from deployline.actions.callable import CallableAction
from deployline.core.action_runner import ActionBody
from deployline.models.actions import Action, ActionEnvironment
from deployline.models.pipeline import Pipeline, PipelineWiringError
from deployline.models.stages import Stage


class StageBuilder:
    """Collects the actions of one stage."""

    def __init__(self, parent: PipelineBuilder, name: str) -> None:
        self._parent = parent
        self.name = name
        self._actions: list[Action] = []

    def action(
        self,
        name: str,
        body: Any,
        *,
        inputs: list[str] | tuple[str, ...] = (),
        outputs: list[str] | tuple[str, ...] = (),
        kind: str = "custom",
        variables: dict[str, str] | None = None,
        secrets: dict[str, str] | None = None,
        timeout_seconds: float | None = None,
    ) -> StageBuilder:
        if not isinstance(body, ActionBody) and callable(body):
            body = CallableAction(body)
        self._actions.append(
            Action(
                name=name,
                body=body,
                inputs=tuple(inputs),
                outputs=tuple(outputs),
                kind=kind,
                environment=ActionEnvironment(
                    variables=variables or {}, secrets=secrets or {}
                ),
                timeout_seconds=timeout_seconds,
            )
        )
        return self

    def add(self, action: Action) -> StageBuilder:
        self._actions.append(action)
        return self

    def stage(self, name: str) -> StageBuilder:
        return self._parent.stage(name)

    def build(self) -> Pipeline:
        return self._parent.build()

    def to_stage(self) -> Stage:
        return Stage(name=self.name, actions=tuple(self._actions))


class PipelineBuilder:
    """Builds an immutable, wiring-validated ``Pipeline``."""

    def __init__(self, pipeline_id: str, *, name: str = "") -> None:
        self.pipeline_id = pipeline_id
        self.name = name or pipeline_id
        self._stages: list[StageBuilder] = []

    def stage(self, name: str) -> StageBuilder:
        if any(s.name == name for s in self._stages):
            raise PipelineWiringError(f"Duplicate stage name {name!r}.")
        builder = StageBuilder(self, name)
        self._stages.append(builder)
        return builder

    def build(self) -> Pipeline:
        """Validate wiring and return the pipeline.

        Raises ``PipelineWiringError`` on any wiring violation.
        """
        return Pipeline(
            pipeline_id=self.pipeline_id,
            name=self.name,
            stages=tuple(s.to_stage() for s in self._stages),
        )
