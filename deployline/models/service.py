"""Service and rollout models: the live deployable unit and rollout results."""

from __future__ import annotations

import math
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ServiceTarget(BaseModel):
    """The deployable unit the rollout controller mutates.

    ``min_healthy_percent`` / ``max_healthy_percent`` bound the number of
    healthy and running instances while a rollout is in progress.
    """

    model_config = ConfigDict(frozen=True)

    service_name: str
    cluster: str = "default"
    container_name: str = "app"
    image_ref: str = ""
    desired_count: int = Field(default=1, ge=0)
    min_healthy_percent: int = Field(default=100, ge=0)
    max_healthy_percent: int = Field(default=200, ge=100)
    health_check_grace_seconds: float = Field(default=0.0, ge=0)
    container_port: int = 80
    cpu: int = 256
    memory_mib: int = 512
    environment: dict[str, str] = {}
    secrets: dict[str, str] = {}  # env var -> secret name, never a value

    @model_validator(mode="after")
    def _check_bounds(self) -> ServiceTarget:
        if self.desired_count and self.max_instances <= self.min_healthy_instances:
            raise ValueError(
                f"max_healthy_percent={self.max_healthy_percent} leaves no room to "
                f"replace instances above min_healthy_percent={self.min_healthy_percent} "
                f"for desired_count={self.desired_count}"
            )
        return self

    @property
    def min_healthy_instances(self) -> int:
        """Floor on healthy instances during a rollout."""
        return math.ceil(self.desired_count * self.min_healthy_percent / 100)

    @property
    def max_instances(self) -> int:
        """Ceiling on running instances during a rollout."""
        return math.floor(self.desired_count * self.max_healthy_percent / 100)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class Instance(BaseModel):
    """One running copy of a service."""

    model_config = ConfigDict(frozen=True)

    instance_id: str
    service_name: str
    image_ref: str


class RolloutState(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class RolloutResult(BaseModel):
    """Report of one rolling update."""

    model_config = ConfigDict(frozen=True)

    service_name: str
    image_ref: str
    previous_image_ref: str = ""
    state: RolloutState
    reason: str = ""
    healthy_history: list[int] = []  # healthy count sampled each poll
    instances_started: int = 0
    failed_launches: int = 0
    duration_seconds: float = 0.0

    @property
    def min_healthy_observed(self) -> int:
        return min(self.healthy_history) if self.healthy_history else 0
