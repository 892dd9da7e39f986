"""Protocols for the collaborators outside the pipeline core.

Any object with the right methods satisfies a protocol; no inheritance
is required.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from deployline.models.service import HealthStatus, Instance, ServiceTarget


class SecretNotFoundError(KeyError):
    """Raised when a secret name cannot be resolved."""


class SourceRevision(BaseModel):
    """A fetched source snapshot."""

    model_config = ConfigDict(frozen=True)

    repo: str
    branch: str
    commit_id: str
    archive: bytes


class ProvisioningResult(BaseModel):
    """Outcome of applying a declared topology."""

    model_config = ConfigDict(frozen=True)

    succeeded: bool
    outputs: dict[str, Any] = {}
    message: str = ""


@runtime_checkable
class SourceProvider(Protocol):
    def fetch(self, repo: str, branch: str) -> SourceRevision:
        """Return the head of *branch* in *repo*."""
        ...


@runtime_checkable
class SecretStore(Protocol):
    def resolve(self, secret_name: str) -> str:
        """Return the secret value. Raise ``SecretNotFoundError`` if unknown."""
        ...


@runtime_checkable
class ImageRegistry(Protocol):
    def push(self, tag: str, blob: bytes) -> str:
        """Store an image and return its immutable reference."""
        ...

    def pull(self, image_ref: str) -> bytes:
        ...


@runtime_checkable
class ContainerOrchestrator(Protocol):
    """Service mutation and health queries driven by the rollout controller."""

    def describe_service(self, service_name: str) -> ServiceTarget:
        ...

    def update_service(self, target: ServiceTarget) -> None:
        ...

    def list_instances(self, service_name: str) -> list[Instance]:
        ...

    def start_instance(self, service_name: str, image_ref: str) -> Instance:
        ...

    def stop_instance(self, service_name: str, instance_id: str) -> None:
        ...

    def check_health(self, service_name: str, instance_id: str) -> HealthStatus:
        ...


@runtime_checkable
class Provisioner(Protocol):
    def apply(self, topology: dict[str, Any], source: bytes) -> ProvisioningResult:
        """Apply a declared topology; long-running and opaque to the engine."""
        ...
