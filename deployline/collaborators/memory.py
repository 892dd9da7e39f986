"""In-process collaborator implementations.

Suitable for development, the demo pipeline and tests. Production wires
real source control, secret, registry, orchestrator and provisioning
backends through the same protocols.
"""

from __future__ import annotations

import itertools
import logging
import os
import threading
from collections.abc import Callable
from typing import Any

from deployline.collaborators.protocols import (
    ProvisioningResult,
    SecretNotFoundError,
    SourceRevision,
)
from deployline.core.hasher import sha256_hex
from deployline.models.service import HealthStatus, Instance, ServiceTarget

logger = logging.getLogger(__name__)


class InMemorySourceProvider:
    """Source provider over a dict of ``(repo, branch) -> archive bytes``."""

    def __init__(self, repos: dict[tuple[str, str], bytes] | None = None) -> None:
        self._repos: dict[tuple[str, str], bytes] = dict(repos or {})

    def commit(self, repo: str, branch: str, archive: bytes) -> str:
        """Replace the head of *branch*; returns the new commit id."""
        self._repos[(repo, branch)] = archive
        return sha256_hex(archive)[:12]

    def fetch(self, repo: str, branch: str) -> SourceRevision:
        try:
            archive = self._repos[(repo, branch)]
        except KeyError:
            raise KeyError(f"Unknown repository or branch: {repo}@{branch}") from None
        return SourceRevision(
            repo=repo,
            branch=branch,
            commit_id=sha256_hex(archive)[:12],
            archive=archive,
        )


class InMemorySecretStore:
    """Secret store over a plain dict."""

    def __init__(self, secrets: dict[str, str] | None = None) -> None:
        self._secrets = dict(secrets or {})

    def resolve(self, secret_name: str) -> str:
        try:
            return self._secrets[secret_name]
        except KeyError:
            raise SecretNotFoundError(secret_name) from None


class EnvSecretStore:
    """Secret store reading ``{prefix}{NAME}`` environment variables.

    Secret names are upper-cased and ``-`` becomes ``_``, so
    ``github-token`` is read from ``DEPLOYLINE_SECRET_GITHUB_TOKEN``.
    """

    def __init__(self, prefix: str = "DEPLOYLINE_SECRET_") -> None:
        self._prefix = prefix

    def env_var_for(self, secret_name: str) -> str:
        return self._prefix + secret_name.upper().replace("-", "_")

    def resolve(self, secret_name: str) -> str:
        value = os.environ.get(self.env_var_for(secret_name))
        if value is None:
            raise SecretNotFoundError(secret_name)
        return value


class InMemoryImageRegistry:
    """Registry keeping images in a dict; references are digest-pinned."""

    def __init__(self, host: str = "registry.local") -> None:
        self.host = host
        self._images: dict[str, bytes] = {}
        self._tags: dict[str, str] = {}

    def push(self, tag: str, blob: bytes) -> str:
        image_ref = f"{self.host}/{tag}@sha256:{sha256_hex(blob)}"
        self._images[image_ref] = blob
        self._tags[tag] = image_ref
        logger.debug("Pushed %s", image_ref)
        return image_ref

    def pull(self, image_ref: str) -> bytes:
        if image_ref in self._tags:
            image_ref = self._tags[image_ref]
        try:
            return self._images[image_ref]
        except KeyError:
            raise KeyError(f"Image not found: {image_ref}") from None

    def resolve_tag(self, tag: str) -> str | None:
        return self._tags.get(tag)

    def tags(self) -> list[str]:
        return sorted(self._tags)


class SimulatedOrchestrator:
    """Container orchestrator simulation.

    Health is decided by ``health_of(image_ref)``; by default every image
    is healthy. Use ``unhealthy_images`` to mark images whose instances
    never pass health checks.
    """

    def __init__(
        self,
        health_of: Callable[[str], HealthStatus] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._services: dict[str, ServiceTarget] = {}
        self._instances: dict[str, dict[str, Instance]] = {}
        self._ids = itertools.count(1)
        self.unhealthy_images: set[str] = set()
        self._health_of = health_of
        self.events: list[tuple[str, str, str]] = []  # (event, instance_id, image_ref)

    def register_service(self, target: ServiceTarget, *, start: bool = True) -> None:
        """Create a service, optionally starting ``desired_count`` instances."""
        with self._lock:
            self._services[target.service_name] = target
            self._instances.setdefault(target.service_name, {})
        if start and target.image_ref:
            for _ in range(target.desired_count):
                self.start_instance(target.service_name, target.image_ref)

    def describe_service(self, service_name: str) -> ServiceTarget:
        with self._lock:
            try:
                return self._services[service_name]
            except KeyError:
                raise KeyError(f"Unknown service: {service_name}") from None

    def update_service(self, target: ServiceTarget) -> None:
        with self._lock:
            self._services[target.service_name] = target

    def list_instances(self, service_name: str) -> list[Instance]:
        with self._lock:
            return list(self._instances.get(service_name, {}).values())

    def start_instance(self, service_name: str, image_ref: str) -> Instance:
        with self._lock:
            instance = Instance(
                instance_id=f"{service_name}-{next(self._ids)}",
                service_name=service_name,
                image_ref=image_ref,
            )
            self._instances.setdefault(service_name, {})[instance.instance_id] = instance
            self.events.append(("start", instance.instance_id, image_ref))
        return instance

    def stop_instance(self, service_name: str, instance_id: str) -> None:
        with self._lock:
            instance = self._instances.get(service_name, {}).pop(instance_id, None)
            if instance is not None:
                self.events.append(("stop", instance_id, instance.image_ref))

    def check_health(self, service_name: str, instance_id: str) -> HealthStatus:
        with self._lock:
            instance = self._instances.get(service_name, {}).get(instance_id)
        if instance is None:
            return HealthStatus.UNKNOWN
        if self._health_of is not None:
            return self._health_of(instance.image_ref)
        if instance.image_ref in self.unhealthy_images:
            return HealthStatus.UNHEALTHY
        return HealthStatus.HEALTHY


class InMemoryProvisioner:
    """Provisioner that records applied topologies and fabricates outputs."""

    def __init__(self, *, fail_with: str | None = None) -> None:
        self.applied: list[dict[str, Any]] = []
        self.fail_with = fail_with

    def apply(self, topology: dict[str, Any], source: bytes) -> ProvisioningResult:
        if self.fail_with:
            return ProvisioningResult(succeeded=False, message=self.fail_with)
        self.applied.append(topology)
        name = topology.get("name", "stack")
        outputs: dict[str, Any] = {
            "network_id": f"net-{sha256_hex(name.encode())[:8]}",
            "availability_zones": topology.get("network", {}).get("max_azs", 2),
            "cluster_name": topology.get("cluster", {}).get("name", f"{name}-cluster"),
            "repository_uri": (
                f"registry.local/{topology.get('registry', {}).get('repository', name)}"
            ),
        }
        database = topology.get("database")
        if database:
            outputs["database_endpoint"] = f"{database.get('name', 'db')}.{name}.internal"
            outputs["database_port"] = database.get("port", 3306)
        service = topology.get("service")
        if service and service.get("public", True):
            outputs["load_balancer_dns"] = f"{name}-lb.local"
        return ProvisioningResult(succeeded=True, outputs=outputs, message="applied")
