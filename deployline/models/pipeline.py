"""Pipeline model: an ordered, wiring-validated sequence of stages."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, model_validator

from deployline.models.stages import Stage


class PipelineWiringError(RuntimeError):
    """Raised when a pipeline's artifact wiring is invalid.

    Detected when the pipeline is built, never at run time.
    """


def validate_wiring(stages: tuple[Stage, ...] | list[Stage]) -> None:
    """Check stage and artifact wiring.

    - stage names unique; action names unique within the pipeline
    - every artifact produced exactly once
    - every input produced by an *earlier* stage (which also rules out
      intra-stage data dependencies)
    """
    if not stages:
        raise PipelineWiringError("A pipeline needs at least one stage.")

    stage_names: set[str] = set()
    action_names: set[str] = set()
    produced: dict[str, str] = {}  # artifact -> producing stage

    for stage in stages:
        if stage.name in stage_names:
            raise PipelineWiringError(f"Duplicate stage name {stage.name!r}.")
        stage_names.add(stage.name)
        if not stage.actions:
            raise PipelineWiringError(f"Stage {stage.name!r} has no actions.")

        for action in stage.actions:
            if action.name in action_names:
                raise PipelineWiringError(
                    f"Duplicate action name {action.name!r} in stage {stage.name!r}."
                )
            action_names.add(action.name)
            for name in action.inputs:
                if name in produced:
                    continue
                if name in stage.produced:
                    raise PipelineWiringError(
                        f"Action {action.name!r} consumes {name!r}, produced in its "
                        f"own stage {stage.name!r}; actions in a stage must be independent."
                    )
                raise PipelineWiringError(
                    f"Action {action.name!r} in stage {stage.name!r} declares input "
                    f"{name!r} that no earlier stage produces."
                )

        for action in stage.actions:
            for name in action.outputs:
                if name in produced:
                    raise PipelineWiringError(
                        f"Artifact {name!r} is produced by both stage "
                        f"{produced[name]!r} and stage {stage.name!r}."
                    )
                produced[name] = stage.name


class Pipeline(BaseModel):
    """Immutable pipeline topology. Construction validates the wiring."""

    model_config = ConfigDict(frozen=True)

    pipeline_id: str
    name: str = ""
    stages: tuple[Stage, ...]

    @model_validator(mode="after")
    def _check_wiring(self) -> Pipeline:
        validate_wiring(self.stages)
        return self

    @property
    def stage_names(self) -> list[str]:
        return [s.name for s in self.stages]

    def get_stage(self, name: str) -> Stage:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    def producer_of(self, artifact_name: str) -> str:
        """Return the name of the stage that produces *artifact_name*."""
        for stage in self.stages:
            if artifact_name in stage.produced:
                return stage.name
        raise KeyError(artifact_name)
