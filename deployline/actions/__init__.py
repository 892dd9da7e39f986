"""Built-in action bodies and the registry mapping action kinds to them.

Usage::

    from deployline.actions import build_action_body

    body = build_action_body("command", {"commands": ["pytest -q"]}, collaborators)
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict

from deployline.actions.build import BuildImageAction
from deployline.actions.callable import CallableAction
from deployline.actions.command import CommandAction
from deployline.actions.deploy import ServiceUpdateAction
from deployline.actions.infra import InfraApplyAction
from deployline.actions.source import SourceFetchAction
from deployline.core.action_runner import ActionBody


class Collaborators(BaseModel):
    """The external backends action bodies are built against."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    source: Any = None  # SourceProvider
    secrets: Any = None  # SecretStore
    registry: Any = None  # ImageRegistry
    orchestrator: Any = None  # ContainerOrchestrator
    provisioner: Any = None  # Provisioner
    controller: Any = None  # RolloutController

    def require(self, name: str) -> Any:
        value = getattr(self, name)
        if value is None:
            raise ValueError(f"Collaborator {name!r} is required but not configured")
        return value


ActionFactory = Callable[[dict[str, Any], Collaborators], ActionBody]


def _source(params: dict[str, Any], c: Collaborators) -> ActionBody:
    return SourceFetchAction(
        c.require("source"),
        params["repo"],
        params.get("branch", "main"),
        output=params.get("output", "source"),
    )


def _command(params: dict[str, Any], c: Collaborators) -> ActionBody:
    return CommandAction(
        list(params["commands"]), inherit_env=params.get("inherit_env", True)
    )


def _build_image(params: dict[str, Any], c: Collaborators) -> ActionBody:
    return BuildImageAction(
        c.require("registry"),
        params["repository"],
        source_input=params.get("source_input", "app_source"),
        output=params.get("output", "imagedefinitions"),
        container_name=params.get("container_name", "app"),
    )


def _infra_apply(params: dict[str, Any], c: Collaborators) -> ActionBody:
    return InfraApplyAction(
        c.require("provisioner"),
        dict(params.get("topology", {})),
        source_input=params.get("source_input", "infra_source"),
        output=params.get("output", "infra_outputs"),
    )


def _service_update(params: dict[str, Any], c: Collaborators) -> ActionBody:
    return ServiceUpdateAction(
        c.require("controller"),
        params["service"],
        image_input=params.get("image_input", "imagedefinitions"),
        container_name=params.get("container_name", "app"),
        config_input=params.get("config_input"),
        environment_from=params.get("environment_from"),
        output=params.get("output", "rollout_report"),
    )


# ---------------------------------------------------------------------------
# Action registry: kind -> factory
# ---------------------------------------------------------------------------

ACTION_REGISTRY: dict[str, ActionFactory] = {
    "source": _source,
    "command": _command,
    "build_image": _build_image,
    "infra_apply": _infra_apply,
    "service_update": _service_update,
}


def build_action_body(
    kind: str, params: dict[str, Any], collaborators: Collaborators
) -> ActionBody:
    """Instantiate the body for an action *kind*.

    Raises ``KeyError`` if the kind is not registered.
    """
    try:
        factory = ACTION_REGISTRY[kind]
    except KeyError:
        raise KeyError(
            f"Unknown action kind {kind!r}. "
            f"Registered kinds: {sorted(ACTION_REGISTRY)}"
        ) from None
    return factory(params, collaborators)


__all__ = [
    "ACTION_REGISTRY",
    "ActionFactory",
    "BuildImageAction",
    "CallableAction",
    "Collaborators",
    "CommandAction",
    "InfraApplyAction",
    "ServiceUpdateAction",
    "SourceFetchAction",
    "build_action_body",
]
