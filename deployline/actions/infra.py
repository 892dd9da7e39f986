"""Infra-Deploy stage action: applies the declared topology."""

from __future__ import annotations

import logging
from typing import Any

from deployline.collaborators.protocols import Provisioner
from deployline.core.action_runner import ActionBodyError, ActionContext
from deployline.core.artifact_store import encode_manifest

logger = logging.getLogger(__name__)


class InfraApplyAction:
    """Apply *topology* through the provisioner; emit its output map."""

    def __init__(
        self,
        provisioner: Provisioner,
        topology: dict[str, Any],
        *,
        source_input: str = "infra_source",
        output: str = "infra_outputs",
    ) -> None:
        self.provisioner = provisioner
        self.topology = topology
        self.source_input = source_input
        self.output = output

    def execute(self, context: ActionContext) -> dict[str, bytes]:
        result = self.provisioner.apply(self.topology, context.inputs[self.source_input])
        if not result.succeeded:
            raise ActionBodyError(1, result.message or "provisioning failed")
        logger.info("Topology applied with outputs %s", sorted(result.outputs))
        return {self.output: encode_manifest(result.outputs)}
