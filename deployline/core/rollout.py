"""Rollout controller: health-gated rolling update of a running service.

Given an image reference produced by the build stage:

1. Record the service's current image as the rollback candidate.
2. Point the service at the new image.
3. Replace instances incrementally. Healthy instances never drop below
   ``ceil(desired * min_healthy_percent / 100)`` and running instances
   never exceed ``floor(desired * max_healthy_percent / 100)``.
4. A new instance's health is ignored until its grace period has passed.
   A new instance that is unhealthy after the grace period is stopped and
   not counted.
5. Succeed once ``desired_count`` new-image instances are healthy and no
   old instance remains, within the deployment timeout. Otherwise fail.
   Failure never rolls back automatically; ``rollback()`` is a separate,
   explicit operation that redeploys the recorded prior image through the
   same algorithm.

Writes to a service are not locked here. Pipeline executions are
serialized by the engine, which makes it the single writer.
"""

from __future__ import annotations

import logging
import time
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field

from deployline.collaborators.protocols import ContainerOrchestrator
from deployline.models.service import (
    HealthStatus,
    Instance,
    RolloutResult,
    RolloutState,
    ServiceTarget,
)

logger = logging.getLogger(__name__)


class RolloutError(RuntimeError):
    """Base for rollout failures; carries the rollout report."""

    def __init__(self, message: str, result: RolloutResult) -> None:
        self.result = result
        super().__init__(message)


class RolloutFailedError(RolloutError):
    """Health checks of the new image never converged."""


class RolloutTimeoutError(RolloutError):
    """Some new instances became healthy, but not all within the timeout."""


class NoRollbackCandidateError(RuntimeError):
    """Raised when rollback is requested for a service with no prior image."""


class Clock(Protocol):
    def monotonic(self) -> float:
        ...

    def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Wall-clock time."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


class RolloutConfig(BaseModel):
    """Controller-level rollout settings.

    ``max_failed_launches`` stops a rollout early once that many new
    instances failed their health checks. ``None`` waits for the timeout.
    """

    model_config = ConfigDict(frozen=True)

    deployment_timeout_seconds: float = Field(default=600.0, gt=0)
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    max_failed_launches: int | None = Field(default=None, ge=1)


class RolloutController:
    """Drives rolling updates through a container orchestrator.

    Parameters
    ----------
    orchestrator:
        The container orchestrator collaborator.
    config:
        Timeout and polling settings. Defaults are used if not provided.
    clock:
        Time source. Tests inject a fake clock.
    """

    def __init__(
        self,
        orchestrator: ContainerOrchestrator,
        *,
        config: RolloutConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self.config = config or RolloutConfig()
        self._clock = clock or SystemClock()
        # service_name -> images that were live before each rollout, oldest first
        self._prior_images: dict[str, list[str]] = {}

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def rollout(
        self,
        service_name: str,
        image_ref: str,
        *,
        environment: dict[str, str] | None = None,
    ) -> RolloutResult:
        """Roll *service_name* onto *image_ref*.

        *environment* entries are merged into the service environment as
        part of the same update.

        Raises
        ------
        RolloutFailedError
            No new-image instance ever passed its health check, or the
            failed-launch limit was reached.
        RolloutTimeoutError
            The service did not fully converge within the timeout.
        """
        target = self._orchestrator.describe_service(service_name)
        previous = target.image_ref
        if previous and previous != image_ref:
            self._prior_images.setdefault(service_name, []).append(previous)

        changes: dict[str, object] = {"image_ref": image_ref}
        if environment:
            changes["environment"] = {**target.environment, **environment}
        updated = target.model_copy(update=changes)
        self._orchestrator.update_service(updated)
        logger.info(
            "Rollout of %s started: %s -> %s (desired=%d, min_healthy=%d, max_running=%d)",
            service_name,
            previous or "<none>",
            image_ref,
            updated.desired_count,
            updated.min_healthy_instances,
            updated.max_instances,
        )
        return self._converge(updated, previous)

    def rollback(self, service_name: str) -> RolloutResult:
        """Redeploy the image that was live before the last rollout."""
        candidates = self._prior_images.get(service_name)
        if not candidates:
            raise NoRollbackCandidateError(
                f"No prior image recorded for service {service_name!r}"
            )
        image_ref = candidates.pop()
        depth = len(candidates)
        logger.info("Rolling back %s to %s", service_name, image_ref)
        try:
            return self.rollout(service_name, image_ref)
        finally:
            # The image rolled back from is not itself a rollback candidate.
            del candidates[depth:]

    def rollback_candidate(self, service_name: str) -> str | None:
        candidates = self._prior_images.get(service_name)
        return candidates[-1] if candidates else None

    # ------------------------------------------------------------------
    # Convergence loop
    # ------------------------------------------------------------------

    def _converge(self, target: ServiceTarget, previous: str) -> RolloutResult:
        name = target.service_name
        image_ref = target.image_ref
        desired = target.desired_count
        floor = target.min_healthy_instances
        ceiling = target.max_instances
        grace = target.health_check_grace_seconds

        started = self._clock.monotonic()
        deadline = started + self.config.deployment_timeout_seconds
        launched_at: dict[str, float] = {}  # new instances started by this rollout
        healthy_new: set[str] = set()
        ever_healthy = False
        failed_launches = 0
        instances_started = 0
        history: list[int] = []

        while True:
            now = self._clock.monotonic()
            instances = self._orchestrator.list_instances(name)
            old = [i for i in instances if i.image_ref != image_ref]
            new = [i for i in instances if i.image_ref == image_ref]

            healthy_old = {
                i.instance_id for i in old
                if self._orchestrator.check_health(name, i.instance_id) == HealthStatus.HEALTHY
            }

            new_alive: list[Instance] = []
            for inst in new:
                t0 = launched_at.get(inst.instance_id)
                if t0 is not None and now - t0 < grace:
                    new_alive.append(inst)
                    continue
                status = self._orchestrator.check_health(name, inst.instance_id)
                if status == HealthStatus.HEALTHY:
                    healthy_new.add(inst.instance_id)
                    ever_healthy = True
                    new_alive.append(inst)
                elif status == HealthStatus.UNHEALTHY:
                    logger.warning(
                        "Instance %s of %s failed health checks on %s; stopping it",
                        inst.instance_id, name, image_ref,
                    )
                    self._orchestrator.stop_instance(name, inst.instance_id)
                    healthy_new.discard(inst.instance_id)
                    launched_at.pop(inst.instance_id, None)
                    failed_launches += 1
                else:
                    healthy_new.discard(inst.instance_id)
                    new_alive.append(inst)

            healthy_total = len(healthy_old) + len(healthy_new)
            history.append(healthy_total)

            if len(healthy_new) >= desired and not old:
                self._trim_surplus(name, new_alive, healthy_new, desired)
                return self._result(
                    target, previous, RolloutState.SUCCEEDED, history,
                    instances_started, failed_launches, started,
                    reason=f"{desired}/{desired} instances healthy on {image_ref}",
                )

            limit = self.config.max_failed_launches
            if limit is not None and failed_launches >= limit:
                self._stop_unproven(name, new_alive, healthy_new)
                result = self._result(
                    target, previous, RolloutState.FAILED, history,
                    instances_started, failed_launches, started,
                    reason=f"{failed_launches} new instance(s) failed health checks",
                )
                raise RolloutFailedError(
                    f"Rollout of {name} to {image_ref} failed: {result.reason}", result
                )

            if now >= deadline:
                self._stop_unproven(name, new_alive, healthy_new)
                timeout = self.config.deployment_timeout_seconds
                if ever_healthy:
                    result = self._result(
                        target, previous, RolloutState.TIMED_OUT, history,
                        instances_started, failed_launches, started,
                        reason=(
                            f"{len(healthy_new)}/{desired} instances healthy on "
                            f"{image_ref} after {timeout}s"
                        ),
                    )
                    raise RolloutTimeoutError(
                        f"Rollout of {name} to {image_ref} timed out: {result.reason}",
                        result,
                    )
                result = self._result(
                    target, previous, RolloutState.FAILED, history,
                    instances_started, failed_launches, started,
                    reason=f"no instance on {image_ref} passed health checks within {timeout}s",
                )
                raise RolloutFailedError(
                    f"Rollout of {name} to {image_ref} failed: {result.reason}", result
                )

            # Scale down old instances, unhealthy ones first.
            running = len(old) + len(new_alive)
            for inst in sorted(old, key=lambda i: i.instance_id in healthy_old):
                is_healthy = inst.instance_id in healthy_old
                after = healthy_total - 1 if is_healthy else healthy_total
                # Only healthy instances count towards the floor.
                if is_healthy and after < floor:
                    continue
                surplus = healthy_total > desired or len(healthy_new) >= desired
                need_room = len(new_alive) < desired and running >= ceiling
                if not (surplus or need_room):
                    continue
                self._orchestrator.stop_instance(name, inst.instance_id)
                logger.debug("Stopped old instance %s (%s)", inst.instance_id, inst.image_ref)
                healthy_total = after
                running -= 1
                history.append(healthy_total)

            # Scale up new instances within the running ceiling.
            while len(new_alive) < desired and running < ceiling:
                inst = self._orchestrator.start_instance(name, image_ref)
                launched_at[inst.instance_id] = self._clock.monotonic()
                new_alive.append(inst)
                running += 1
                instances_started += 1
                logger.debug("Started instance %s on %s", inst.instance_id, image_ref)

            remaining = deadline - self._clock.monotonic()
            self._clock.sleep(max(0.0, min(self.config.poll_interval_seconds, remaining)))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _stop_unproven(
        self, service_name: str, new_alive: list[Instance], healthy_new: set[str]
    ) -> None:
        """Stop new instances that never passed a health check."""
        for inst in new_alive:
            if inst.instance_id not in healthy_new:
                self._orchestrator.stop_instance(service_name, inst.instance_id)

    def _trim_surplus(
        self,
        service_name: str,
        new_alive: list[Instance],
        healthy_new: set[str],
        desired: int,
    ) -> None:
        """Scale the new image back to ``desired`` healthy instances."""
        unproven = [i for i in new_alive if i.instance_id not in healthy_new]
        proven = [i for i in new_alive if i.instance_id in healthy_new]
        for inst in unproven + proven[desired:]:
            self._orchestrator.stop_instance(service_name, inst.instance_id)
            logger.debug("Stopped surplus instance %s of %s", inst.instance_id, service_name)

    def _result(
        self,
        target: ServiceTarget,
        previous: str,
        state: RolloutState,
        history: list[int],
        instances_started: int,
        failed_launches: int,
        started: float,
        *,
        reason: str,
    ) -> RolloutResult:
        result = RolloutResult(
            service_name=target.service_name,
            image_ref=target.image_ref,
            previous_image_ref=previous,
            state=state,
            reason=reason,
            healthy_history=history,
            instances_started=instances_started,
            failed_launches=failed_launches,
            duration_seconds=round(self._clock.monotonic() - started, 3),
        )
        log = logger.info if state == RolloutState.SUCCEEDED else logger.error
        log("Rollout of %s %s: %s", target.service_name, state.value, reason)
        return result
