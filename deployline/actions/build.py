"""Build stage action: produces and pushes a container image.

The image is derived from the source artifact only, so the same source
yields the same image reference. The output is an image definitions
manifest naming the image for each container::

    [{"name": "app", "imageUri": "registry.local/my-app:3f2a...@sha256:..."}]
"""

from __future__ import annotations

import logging

from deployline.collaborators.protocols import ImageRegistry
from deployline.core.action_runner import ActionContext
from deployline.core.artifact_store import encode_manifest
from deployline.core.hasher import sha256_hex

logger = logging.getLogger(__name__)


class BuildImageAction:
    """Build an image from *source_input* and push it to *repository*."""

    def __init__(
        self,
        registry: ImageRegistry,
        repository: str,
        *,
        source_input: str = "app_source",
        output: str = "imagedefinitions",
        container_name: str = "app",
    ) -> None:
        self.registry = registry
        self.repository = repository
        self.source_input = source_input
        self.output = output
        self.container_name = container_name

    def execute(self, context: ActionContext) -> dict[str, bytes]:
        source = context.inputs[self.source_input]
        source_digest = sha256_hex(source)
        image = encode_manifest(
            {
                "repository": self.repository,
                "source_digest": source_digest,
                "layers": [source_digest],
            }
        )
        tag = f"{self.repository}:{source_digest[:12]}"
        image_ref = self.registry.push(tag, image)
        logger.info("Built and pushed %s", image_ref)
        definitions = [{"name": self.container_name, "imageUri": image_ref}]
        return {self.output: encode_manifest(definitions)}
