"""Declarative deployment topology and the reference delivery pipeline.

One ``Topology`` value describes the network, cluster, image repository,
optional managed database and the service. ``delivery_definition``
turns it into the standard five-stage pipeline:

    Source (infra + app, in parallel) -> Test -> Infra-Deploy -> Build -> Deploy

The Deploy stage consumes the image definitions produced by Build in the
same execution, plus the infra outputs (e.g. the database endpoint).
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict

from deployline.actions import Collaborators
from deployline.definition import ActionDefinition, PipelineDefinition, StageDefinition
from deployline.models.pipeline import Pipeline
from deployline.models.service import ServiceTarget


class NetworkSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_azs: int = 2


class ClusterSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = "app-cluster"


class RegistrySpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    repository: str = "app"


class DatabaseSpec(BaseModel):
    """Managed relational database; credentials live in the secret store."""

    model_config = ConfigDict(frozen=True)

    engine: str = "mysql"
    version: str = "8.0.34"
    instance_class: str = "t3.micro"
    allocated_storage_gib: int = 20
    max_allocated_storage_gib: int = 100
    name: str = "appdb"
    username: str = "admin"
    port: int = 3306
    credentials_secret: str = "db-credentials"
    publicly_accessible: bool = False


class ServiceSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = "app-service"
    container_name: str = "app"
    container_port: int = 80
    cpu: int = 512
    memory_mib: int = 1024
    desired_count: int = 1
    public: bool = True
    min_healthy_percent: int = 100
    max_healthy_percent: int = 200
    health_check_grace_seconds: float = 0.0
    environment: dict[str, str] = {}
    secrets: dict[str, str] = {}  # env var -> secret name


class SourceSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    repo: str
    branch: str = "main"


class Topology(BaseModel):
    """Everything one deployment variant declares."""

    model_config = ConfigDict(frozen=True)

    name: str
    network: NetworkSpec = NetworkSpec()
    cluster: ClusterSpec = ClusterSpec()
    registry: RegistrySpec = RegistrySpec()
    database: DatabaseSpec | None = None
    service: ServiceSpec = ServiceSpec()
    infra_source: SourceSpec
    app_source: SourceSpec
    test_commands: list[str] = ["echo Running tests...", "echo Tests passed!"]
    source_token_secret: str | None = None

    def service_target(self, image_ref: str = "") -> ServiceTarget:
        """The service as the rollout controller sees it."""
        svc = self.service
        secrets = dict(svc.secrets)
        environment = dict(svc.environment)
        if self.database is not None:
            secrets.setdefault("DB_PASSWORD", self.database.credentials_secret)
            environment.setdefault("DB_USER", self.database.username)
            environment.setdefault("DB_NAME", self.database.name)
        return ServiceTarget(
            service_name=svc.name,
            cluster=self.cluster.name,
            container_name=svc.container_name,
            image_ref=image_ref,
            desired_count=svc.desired_count,
            min_healthy_percent=svc.min_healthy_percent,
            max_healthy_percent=svc.max_healthy_percent,
            health_check_grace_seconds=svc.health_check_grace_seconds,
            container_port=svc.container_port,
            cpu=svc.cpu,
            memory_mib=svc.memory_mib,
            environment=environment,
            secrets=secrets,
        )

    def to_manifest(self) -> dict[str, Any]:
        """The topology handed to the provisioning collaborator."""
        manifest = self.model_dump(
            mode="json",
            include={"name", "network", "cluster", "registry", "database", "service"},
        )
        if manifest.get("database") is None:
            manifest.pop("database", None)
        return manifest


def delivery_definition(topology: Topology, *, pipeline_id: str | None = None) -> PipelineDefinition:
    """The reference Source -> Test -> Infra-Deploy -> Build -> Deploy pipeline."""
    source_secrets = (
        {"SOURCE_TOKEN": topology.source_token_secret}
        if topology.source_token_secret
        else {}
    )
    deploy_params: dict[str, Any] = {
        "service": topology.service.name,
        "image_input": "imagedefinitions",
        "container_name": topology.service.container_name,
        "config_input": "infra_outputs",
    }
    if topology.database is not None:
        deploy_params["environment_from"] = {"DB_HOST": "database_endpoint"}

    stages = [
        StageDefinition(
            name="Source",
            actions=[
                ActionDefinition(
                    name="Infra_Source",
                    kind="source",
                    outputs=["infra_source"],
                    secrets=source_secrets,
                    params={
                        "repo": topology.infra_source.repo,
                        "branch": topology.infra_source.branch,
                        "output": "infra_source",
                    },
                ),
                ActionDefinition(
                    name="App_Source",
                    kind="source",
                    outputs=["app_source"],
                    secrets=source_secrets,
                    params={
                        "repo": topology.app_source.repo,
                        "branch": topology.app_source.branch,
                        "output": "app_source",
                    },
                ),
            ],
        ),
        StageDefinition(
            name="Test",
            actions=[
                ActionDefinition(
                    name="Test",
                    kind="command",
                    inputs=["app_source"],
                    params={"commands": list(topology.test_commands)},
                )
            ],
        ),
        StageDefinition(
            name="Infra-Deploy",
            actions=[
                ActionDefinition(
                    name="InfraDeploy",
                    kind="infra_apply",
                    inputs=["infra_source"],
                    outputs=["infra_outputs"],
                    params={
                        "topology": topology.to_manifest(),
                        "source_input": "infra_source",
                        "output": "infra_outputs",
                    },
                )
            ],
        ),
        StageDefinition(
            name="Build",
            actions=[
                ActionDefinition(
                    name="Docker_Build",
                    kind="build_image",
                    inputs=["app_source"],
                    outputs=["imagedefinitions"],
                    params={
                        "repository": topology.registry.repository,
                        "source_input": "app_source",
                        "container_name": topology.service.container_name,
                    },
                )
            ],
        ),
        StageDefinition(
            name="Deploy",
            actions=[
                ActionDefinition(
                    name="DeployService",
                    kind="service_update",
                    inputs=["imagedefinitions", "infra_outputs"],
                    outputs=["rollout_report"],
                    params=deploy_params,
                )
            ],
        ),
    ]
    return PipelineDefinition(
        pipeline_id=pipeline_id or f"{topology.name}-delivery",
        name=f"{topology.name} delivery",
        stages=stages,
    )


def build_delivery_pipeline(
    topology: Topology,
    collaborators: Collaborators,
    *,
    pipeline_id: str | None = None,
) -> Pipeline:
    """Shortcut for ``delivery_definition(topology).to_pipeline(collaborators)``."""
    return delivery_definition(topology, pipeline_id=pipeline_id).to_pipeline(collaborators)
