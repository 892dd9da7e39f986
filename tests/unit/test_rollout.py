"""Tests for RolloutController: capacity bounds, grace period, failure and rollback."""

from __future__ import annotations

import pytest

from deployline.collaborators.memory import SimulatedOrchestrator
from deployline.core.rollout import (
    NoRollbackCandidateError,
    RolloutConfig,
    RolloutController,
    RolloutFailedError,
    RolloutTimeoutError,
)
from deployline.models.service import HealthStatus, RolloutState, ServiceTarget

OLD = "registry.local/app:old"
NEW = "registry.local/app:new"


def _service(**overrides) -> ServiceTarget:
    fields = {"service_name": "web", "image_ref": OLD, "desired_count": 2}
    fields.update(overrides)
    return ServiceTarget(**fields)


def _controller(orchestrator, clock, **config) -> RolloutController:
    defaults = {"deployment_timeout_seconds": 600.0, "poll_interval_seconds": 5.0}
    defaults.update(config)
    return RolloutController(orchestrator, config=RolloutConfig(**defaults), clock=clock)


def _only_old_healthy(image_ref: str) -> HealthStatus:
    return HealthStatus.HEALTHY if image_ref == OLD else HealthStatus.UNHEALTHY


class FirstNewInstanceHealthy(SimulatedOrchestrator):
    """Only the first new-image instance ever passes its health check."""

    def __init__(self) -> None:
        super().__init__()
        self.good: str | None = None

    def check_health(self, service_name: str, instance_id: str) -> HealthStatus:
        status = super().check_health(service_name, instance_id)
        instance = next(
            (i for i in self.list_instances(service_name) if i.instance_id == instance_id), None
        )
        if instance is None or instance.image_ref == OLD:
            return status
        if self.good is None:
            self.good = instance_id
        return HealthStatus.HEALTHY if instance_id == self.good else HealthStatus.UNHEALTHY


class TestServiceTarget:
    def test_capacity_bounds(self):
        target = _service(desired_count=2, min_healthy_percent=50, max_healthy_percent=200)
        assert target.min_healthy_instances == 1
        assert target.max_instances == 4

    def test_bounds_without_room_rejected(self):
        with pytest.raises(ValueError, match="leaves no room"):
            _service(desired_count=1, min_healthy_percent=100, max_healthy_percent=100)


class TestConvergence:
    def test_rolling_update_with_grace_period(self, fake_clock):
        orchestrator = SimulatedOrchestrator()
        orchestrator.register_service(
            _service(min_healthy_percent=50, max_healthy_percent=200, health_check_grace_seconds=30)
        )
        result = _controller(orchestrator, fake_clock).rollout("web", NEW)

        assert result.state == RolloutState.SUCCEEDED
        assert result.previous_image_ref == OLD
        assert result.min_healthy_observed >= 1
        instances = orchestrator.list_instances("web")
        assert len(instances) == 2
        assert {i.image_ref for i in instances} == {NEW}
        # New instances were not trusted before the grace period ended.
        assert fake_clock.now >= 30
        assert orchestrator.describe_service("web").image_ref == NEW

    def test_running_never_exceeds_ceiling(self, fake_clock):
        orchestrator = SimulatedOrchestrator()
        orchestrator.register_service(
            _service(desired_count=4, min_healthy_percent=50, max_healthy_percent=150)
        )
        peak = 0
        original_start = orchestrator.start_instance

        def start(service_name: str, image_ref: str):
            nonlocal peak
            instance = original_start(service_name, image_ref)
            peak = max(peak, len(orchestrator.list_instances(service_name)))
            return instance

        orchestrator.start_instance = start
        result = _controller(orchestrator, fake_clock).rollout("web", NEW)
        assert result.state == RolloutState.SUCCEEDED
        assert peak <= 6
        assert result.min_healthy_observed >= 2

    def test_one_at_a_time_replacement_keeps_full_capacity(self, fake_clock):
        orchestrator = SimulatedOrchestrator()
        orchestrator.register_service(
            _service(desired_count=1, min_healthy_percent=100, max_healthy_percent=200)
        )
        result = _controller(orchestrator, fake_clock).rollout("web", NEW)
        assert result.state == RolloutState.SUCCEEDED
        assert result.min_healthy_observed >= 1
        assert result.instances_started == 1

    def test_unhealthy_old_instances_replaced_below_floor(self, fake_clock):
        orchestrator = SimulatedOrchestrator()
        orchestrator.unhealthy_images.add(OLD)
        orchestrator.register_service(
            _service(desired_count=2, min_healthy_percent=100, max_healthy_percent=150)
        )
        controller = _controller(orchestrator, fake_clock, deployment_timeout_seconds=120)

        result = controller.rollout("web", NEW)

        assert result.state == RolloutState.SUCCEEDED
        assert [i.image_ref for i in orchestrator.list_instances("web")] == [NEW, NEW]
        assert fake_clock.now < 120

    def test_surplus_new_instances_scaled_back(self, fake_clock):
        orchestrator = SimulatedOrchestrator()
        orchestrator.register_service(_service(image_ref=NEW, desired_count=3))
        orchestrator.update_service(_service(image_ref=NEW, desired_count=2))

        result = _controller(orchestrator, fake_clock).rollout("web", NEW)

        assert result.state == RolloutState.SUCCEEDED
        assert [i.image_ref for i in orchestrator.list_instances("web")] == [NEW, NEW]

    def test_first_rollout_of_empty_service(self, fake_clock):
        orchestrator = SimulatedOrchestrator()
        orchestrator.register_service(_service(image_ref="", desired_count=1))
        controller = _controller(orchestrator, fake_clock)
        result = controller.rollout("web", NEW)
        assert result.state == RolloutState.SUCCEEDED
        assert result.previous_image_ref == ""
        assert controller.rollback_candidate("web") is None

    def test_environment_merged_into_service(self, fake_clock):
        orchestrator = SimulatedOrchestrator()
        orchestrator.register_service(_service(environment={"DB_USER": "admin"}))
        _controller(orchestrator, fake_clock).rollout("web", NEW, environment={"DB_HOST": "db.internal"})
        assert orchestrator.describe_service("web").environment == {
            "DB_USER": "admin",
            "DB_HOST": "db.internal",
        }


class TestFailure:
    def test_never_healthy_fails_and_keeps_old_instances(self, fake_clock):
        orchestrator = SimulatedOrchestrator(health_of=_only_old_healthy)
        orchestrator.register_service(_service(min_healthy_percent=50, max_healthy_percent=200))
        controller = _controller(orchestrator, fake_clock, deployment_timeout_seconds=60)

        with pytest.raises(RolloutFailedError) as exc_info:
            controller.rollout("web", NEW)

        result = exc_info.value.result
        assert result.state == RolloutState.FAILED
        assert result.failed_launches > 0
        assert result.min_healthy_observed >= 1
        instances = orchestrator.list_instances("web")
        assert len(instances) == 2
        assert {i.image_ref for i in instances} == {OLD}

    def test_failed_launch_limit_stops_early(self, fake_clock):
        orchestrator = SimulatedOrchestrator(health_of=_only_old_healthy)
        orchestrator.register_service(_service(min_healthy_percent=50, max_healthy_percent=200))
        controller = _controller(orchestrator, fake_clock, max_failed_launches=2)

        with pytest.raises(RolloutFailedError) as exc_info:
            controller.rollout("web", NEW)
        assert exc_info.value.result.failed_launches == 2
        assert fake_clock.now < 600

    def test_partial_convergence_times_out(self, fake_clock):
        orchestrator = FirstNewInstanceHealthy()
        orchestrator.register_service(_service(min_healthy_percent=50, max_healthy_percent=200))
        controller = _controller(orchestrator, fake_clock, deployment_timeout_seconds=60)

        with pytest.raises(RolloutTimeoutError) as exc_info:
            controller.rollout("web", NEW)
        result = exc_info.value.result
        assert result.state == RolloutState.TIMED_OUT
        assert result.min_healthy_observed >= 1
        assert fake_clock.now >= 60


class TestRollback:
    def test_rollback_redeploys_prior_image(self, fake_clock):
        orchestrator = SimulatedOrchestrator()
        orchestrator.register_service(_service())
        controller = _controller(orchestrator, fake_clock)
        controller.rollout("web", NEW)
        assert controller.rollback_candidate("web") == OLD

        result = controller.rollback("web")
        assert result.state == RolloutState.SUCCEEDED
        assert result.image_ref == OLD
        assert result.previous_image_ref == NEW
        assert {i.image_ref for i in orchestrator.list_instances("web")} == {OLD}
        assert controller.rollback_candidate("web") is None

    def test_rollback_after_failed_rollout(self, fake_clock):
        orchestrator = SimulatedOrchestrator(health_of=_only_old_healthy)
        orchestrator.register_service(_service())
        controller = _controller(orchestrator, fake_clock, max_failed_launches=1)
        with pytest.raises(RolloutFailedError):
            controller.rollout("web", NEW)
        assert orchestrator.describe_service("web").image_ref == NEW

        result = controller.rollback("web")
        assert result.state == RolloutState.SUCCEEDED
        assert orchestrator.describe_service("web").image_ref == OLD

    def test_no_candidate(self, fake_clock):
        orchestrator = SimulatedOrchestrator()
        orchestrator.register_service(_service())
        with pytest.raises(NoRollbackCandidateError):
            _controller(orchestrator, fake_clock).rollback("web")
