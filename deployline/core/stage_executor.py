"""Stage execution: concurrent actions behind a synchronization barrier.

On stage entry every action's inputs are resolved from the artifact
store. Any unresolved input fails the stage before a single action is
dispatched. All actions then run concurrently; the stage waits for every
one of them to finish, successfully or not, before it reports. Sibling
actions are never force-cancelled, so their diagnostics are captured.

Outputs are written to the store only when the whole stage succeeds, so
a failed stage leaves no partial artifacts behind.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor, wait

from deployline.core.action_runner import (
    ActionFailedError,
    ActionResult,
    ActionRunner,
    MissingInputError,
)
from deployline.core.artifact_store import ArtifactNotFoundError, ArtifactStore
from deployline.models.actions import ActionFailure
from deployline.models.artifacts import ArtifactRef
from deployline.models.stages import Stage

logger = logging.getLogger(__name__)


class StageFailedError(RuntimeError):
    """Aggregate of one or more action failures within a stage."""

    def __init__(self, stage_name: str, failures: list[ActionFailedError]) -> None:
        self.stage_name = stage_name
        self.failures = list(failures)
        names = ", ".join(f.action_name for f in self.failures)
        super().__init__(f"Stage {stage_name!r} failed: {names}")

    @property
    def failed_action(self) -> str:
        return self.failures[0].action_name if self.failures else ""

    @property
    def diagnostics(self) -> str:
        return "\n".join(
            f"[{f.action_name}] {f.diagnostics}" for f in self.failures
        )

    def to_failures(self) -> list[ActionFailure]:
        return [f.to_failure() for f in self.failures]


class StageExecutor:
    """Runs one stage of one execution.

    Parameters
    ----------
    store:
        Artifact store shared by all stages.
    runner:
        Action runner used for every action.
    max_parallel_actions:
        Upper bound on concurrently running actions within a stage.
    """

    def __init__(
        self,
        store: ArtifactStore,
        runner: ActionRunner,
        *,
        max_parallel_actions: int = 8,
    ) -> None:
        self._store = store
        self._runner = runner
        self._max_parallel = max(1, max_parallel_actions)

    def run(
        self,
        execution_id: str,
        stage: Stage,
        available: Mapping[str, ArtifactRef],
        env: Mapping[str, str] | None = None,
    ) -> list[ArtifactRef]:
        """Execute *stage* and return refs to the artifacts it produced.

        *available* maps artifact names produced by earlier stages of this
        execution to their refs.

        Raises
        ------
        MissingInputError
            An input could not be resolved; no action was started.
        StageFailedError
            One or more actions failed.
        """
        inputs = self._resolve_inputs(execution_id, stage, available)

        logger.info(
            "Stage %s [%s] dispatching %d action(s)",
            stage.name, execution_id, len(stage.actions),
        )
        results: dict[str, ActionResult] = {}
        failures: list[ActionFailedError] = []

        workers = min(self._max_parallel, len(stage.actions))
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix=f"stage-{stage.name}"
        ) as pool:
            futures = {
                pool.submit(
                    self._runner.run,
                    action,
                    inputs[action.name],
                    env,
                    execution_id=execution_id,
                    stage_name=stage.name,
                ): action
                for action in stage.actions
            }
            # Barrier: every sibling reaches a terminal state.
            wait(futures)

        for future, action in futures.items():
            exc = future.exception()
            if exc is None:
                results[action.name] = future.result()
            elif isinstance(exc, ActionFailedError):
                failures.append(exc)
            else:
                failures.append(
                    ActionFailedError(action.name, 1, f"{type(exc).__name__}: {exc}")
                )

        if failures:
            # Keep declaration order for a stable report.
            order = {a.name: i for i, a in enumerate(stage.actions)}
            failures.sort(key=lambda f: order.get(f.action_name, len(order)))
            logger.error(
                "Stage %s [%s] failed: %s",
                stage.name, execution_id, ", ".join(f.action_name for f in failures),
            )
            raise StageFailedError(stage.name, failures)

        refs: list[ArtifactRef] = []
        for action in stage.actions:
            for name, blob in results[action.name].outputs.items():
                refs.append(
                    self._store.put(
                        execution_id, stage.name, name, blob, action_name=action.name
                    )
                )
        logger.info(
            "Stage %s [%s] succeeded with %d artifact(s)",
            stage.name, execution_id, len(refs),
        )
        return refs

    def _resolve_inputs(
        self,
        execution_id: str,
        stage: Stage,
        available: Mapping[str, ArtifactRef],
    ) -> dict[str, dict[str, bytes]]:
        resolved: dict[str, dict[str, bytes]] = {}
        for action in stage.actions:
            blobs: dict[str, bytes] = {}
            missing: list[str] = []
            for name in action.inputs:
                ref = available.get(name)
                if ref is None or ref.execution_id != execution_id:
                    missing.append(name)
                    continue
                try:
                    blobs[name] = self._store.get(ref)
                except ArtifactNotFoundError:
                    missing.append(name)
            if missing:
                logger.error(
                    "Stage %s [%s] cannot resolve inputs %s for action %s",
                    stage.name, execution_id, missing, action.name,
                )
                raise MissingInputError(action.name, missing)
            resolved[action.name] = blobs
        return resolved
