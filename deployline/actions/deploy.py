"""App-Deploy stage action: hands the built image to the rollout controller.

The image comes from the image definitions produced by the build stage
of the same execution, never from a source artifact.
"""

from __future__ import annotations

import json
import logging

from deployline.core.action_runner import ActionBodyError, ActionContext
from deployline.core.artifact_store import decode_manifest, encode_manifest
from deployline.core.rollout import RolloutController, RolloutError

logger = logging.getLogger(__name__)


class ServiceUpdateAction:
    """Roll a service onto the image named in *image_input*.

    ``environment_from`` maps a service environment variable to a key of
    the *config_input* manifest (for example the database endpoint
    produced by the infra stage).
    """

    def __init__(
        self,
        controller: RolloutController,
        service_name: str,
        *,
        image_input: str = "imagedefinitions",
        container_name: str = "app",
        config_input: str | None = None,
        environment_from: dict[str, str] | None = None,
        output: str = "rollout_report",
    ) -> None:
        self.controller = controller
        self.service_name = service_name
        self.image_input = image_input
        self.container_name = container_name
        self.config_input = config_input
        self.environment_from = dict(environment_from or {})
        self.output = output

    def execute(self, context: ActionContext) -> dict[str, bytes]:
        image_ref = self._image_ref(context.inputs[self.image_input])
        environment = self._environment(context)
        try:
            result = self.controller.rollout(
                self.service_name, image_ref, environment=environment
            )
        except RolloutError as exc:
            report = json.dumps(exc.result.model_dump(mode="json"), indent=2, sort_keys=True)
            raise ActionBodyError(1, f"{exc}\n{report}") from exc
        return {self.output: encode_manifest(result.model_dump(mode="json"))}

    def _image_ref(self, blob: bytes) -> str:
        definitions = decode_manifest(blob)
        for definition in definitions:
            if definition.get("name") == self.container_name:
                return definition["imageUri"]
        raise ActionBodyError(
            1,
            f"No image definition for container {self.container_name!r} "
            f"in {self.image_input!r}",
        )

    def _environment(self, context: ActionContext) -> dict[str, str]:
        if not self.config_input or not self.environment_from:
            return {}
        outputs = decode_manifest(context.inputs[self.config_input])
        environment: dict[str, str] = {}
        for env_var, key in self.environment_from.items():
            if key not in outputs:
                raise ActionBodyError(
                    1, f"{self.config_input!r} has no output {key!r} for {env_var}"
                )
            environment[env_var] = str(outputs[key])
        return environment
