"""Action runner: executes one unit of work against declared inputs.

The runner owns the contract around an action body, not its content:

    check inputs -> resolve secrets -> execute (with timeout)
        -> check declared outputs -> result

Action bodies are opaque. The runner only observes success or failure
and the outputs a body returns.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FuturesTimeoutError
from types import MappingProxyType
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

from deployline.collaborators.protocols import SecretNotFoundError, SecretStore
from deployline.core.hasher import compute_inputs_hash
from deployline.models.actions import Action, ActionFailure

logger = logging.getLogger(__name__)

# Exit code reported for an action that exceeded its timeout.
TIMEOUT_EXIT_CODE = 124

REDACTED = "***"


class MissingInputError(RuntimeError):
    """Raised before execution when a declared input cannot be resolved.

    Indicates a pipeline wiring bug, not a transient condition.
    """

    def __init__(self, action_name: str, missing: list[str]) -> None:
        self.action_name = action_name
        self.missing = list(missing)
        super().__init__(
            f"Action {action_name!r} is missing declared inputs: {', '.join(missing)}"
        )


class ActionBodyError(RuntimeError):
    """Raised by an action body to report a non-zero exit with its output."""

    def __init__(self, exit_code: int, output: str = "") -> None:
        self.exit_code = exit_code
        self.output = output
        super().__init__(f"exit code {exit_code}")


class ActionFailedError(RuntimeError):
    """Non-zero exit or timeout of one action, diagnostics captured verbatim."""

    def __init__(
        self,
        action_name: str,
        exit_code: int,
        diagnostics: str = "",
        *,
        timed_out: bool = False,
    ) -> None:
        self.action_name = action_name
        self.exit_code = exit_code
        self.diagnostics = diagnostics
        self.timed_out = timed_out
        reason = "timed out" if timed_out else f"failed with exit code {exit_code}"
        super().__init__(f"Action {action_name!r} {reason}")

    def to_failure(self) -> ActionFailure:
        return ActionFailure(
            action_name=self.action_name,
            exit_code=self.exit_code,
            diagnostics=self.diagnostics,
            timed_out=self.timed_out,
        )


class ActionContext:
    """What an action body sees while it runs.

    ``inputs`` is a read-only mapping of exactly the declared inputs.
    ``env`` holds plain variables and resolved secrets.
    ``timeout_seconds`` is the effective timeout of this run (``None`` for
    none). Once it expires the runner sets ``cancelled``; bodies that start
    child processes or loop should stop at the next opportunity.
    """

    __slots__ = (
        "action", "inputs", "env", "execution_id", "stage_name",
        "timeout_seconds", "deadline", "cancelled",
    )

    def __init__(
        self,
        action: Action,
        inputs: Mapping[str, bytes],
        env: Mapping[str, str],
        *,
        execution_id: str = "",
        stage_name: str = "",
        timeout_seconds: float | None = None,
    ) -> None:
        self.action = action
        self.inputs = MappingProxyType(dict(inputs))
        self.env = MappingProxyType(dict(env))
        self.execution_id = execution_id
        self.stage_name = stage_name
        self.timeout_seconds = timeout_seconds
        self.deadline = (
            time.monotonic() + timeout_seconds if timeout_seconds is not None else None
        )
        self.cancelled = threading.Event()

    def remaining_seconds(self) -> float | None:
        """Seconds left before the timeout, or ``None`` without a timeout."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())


@runtime_checkable
class ActionBody(Protocol):
    """Protocol for action bodies.

    Any object with an ``execute(context) -> dict[str, bytes]`` method
    satisfies this protocol. The returned dict maps output names to blobs.
    """

    def execute(self, context: ActionContext) -> dict[str, bytes]:
        ...


class ActionResult(BaseModel):
    """Outputs of one successful action run."""

    model_config = ConfigDict(frozen=True)

    action_name: str
    outputs: dict[str, bytes]
    exit_code: int = 0
    inputs_hash: str = ""
    duration_ms: int = 0


class ActionRunner:
    """Runs actions one at a time; safe to share across threads.

    Parameters
    ----------
    secret_store:
        Resolves secret names in action environments. Required only for
        actions that declare secrets.
    default_timeout_seconds:
        Applied to actions that declare no timeout of their own. ``None``
        disables the default.
    """

    def __init__(
        self,
        secret_store: SecretStore | None = None,
        *,
        default_timeout_seconds: float | None = None,
    ) -> None:
        self._secret_store = secret_store
        self._default_timeout = default_timeout_seconds

    def run(
        self,
        action: Action,
        inputs: Mapping[str, bytes],
        env: Mapping[str, str] | None = None,
        *,
        execution_id: str = "",
        stage_name: str = "",
    ) -> ActionResult:
        """Execute *action* and return its declared outputs.

        Raises
        ------
        MissingInputError
            A declared input is absent from *inputs*; the body never runs.
        ActionFailedError
            The body failed, timed out, or did not produce exactly its
            declared outputs.
        """
        missing = [name for name in action.inputs if name not in inputs]
        if missing:
            raise MissingInputError(action.name, missing)

        declared_inputs = {name: inputs[name] for name in action.inputs}
        inputs_hash = compute_inputs_hash(action.name, declared_inputs)

        resolved_env = dict(action.environment.variables)
        resolved_env.update(env or {})
        secret_values = self._resolve_secrets(action, resolved_env)

        body = action.body
        if body is None or not isinstance(body, ActionBody):
            raise ActionFailedError(
                action.name, 1, f"Action {action.name!r} has no executable body"
            )

        timeout = action.timeout_seconds or self._default_timeout
        context = ActionContext(
            action,
            declared_inputs,
            resolved_env,
            execution_id=execution_id,
            stage_name=stage_name,
            timeout_seconds=timeout,
        )

        logger.info("Action %s started (inputs_hash=%s)", action.name, inputs_hash[:12])
        started = time.monotonic()
        try:
            outputs = self._execute(body, context)
        except FuturesTimeoutError:
            logger.error("Action %s timed out after %s seconds", action.name, timeout)
            raise ActionFailedError(
                action.name,
                TIMEOUT_EXIT_CODE,
                f"Action timed out after {timeout} seconds",
                timed_out=True,
            ) from None
        except ActionBodyError as exc:
            diagnostics = _redact(exc.output, secret_values)
            logger.error("Action %s exited with code %d", action.name, exc.exit_code)
            raise ActionFailedError(action.name, exc.exit_code, diagnostics) from exc
        except Exception as exc:
            diagnostics = _redact(f"{type(exc).__name__}: {exc}", secret_values)
            logger.error("Action %s raised %s", action.name, type(exc).__name__)
            raise ActionFailedError(action.name, 1, diagnostics) from exc

        duration_ms = int((time.monotonic() - started) * 1000)
        self._check_outputs(action, outputs)
        logger.info("Action %s succeeded in %d ms", action.name, duration_ms)
        return ActionResult(
            action_name=action.name,
            outputs={name: outputs[name] for name in action.outputs},
            inputs_hash=inputs_hash,
            duration_ms=duration_ms,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _resolve_secrets(self, action: Action, env: dict[str, str]) -> list[str]:
        """Resolve secret references into *env*; return the values for redaction."""
        values: list[str] = []
        for env_var, secret_name in action.environment.secrets.items():
            if self._secret_store is None:
                raise ActionFailedError(
                    action.name, 1,
                    f"Secret {secret_name!r} requested but no secret store is configured",
                )
            try:
                value = self._secret_store.resolve(secret_name)
            except SecretNotFoundError:
                raise ActionFailedError(
                    action.name, 1, f"Secret {secret_name!r} could not be resolved"
                ) from None
            env[env_var] = value
            values.append(value)
        return values

    @staticmethod
    def _execute(body: ActionBody, context: ActionContext) -> dict[str, bytes]:
        """Run *body*, raising ``FuturesTimeoutError`` once it overruns.

        A timed-out body is signalled through ``context.cancelled`` and then
        joined: the action is only reported once its body has returned, so
        nothing it started outlives the stage barrier.
        """
        timeout = context.timeout_seconds
        if timeout is None:
            return body.execute(context)
        with ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"action-{context.action.name}"
        ) as executor:
            future = executor.submit(body.execute, context)
            try:
                return future.result(timeout=timeout)
            except FuturesTimeoutError:
                if not future.done():
                    context.cancelled.set()
                    logger.warning(
                        "Action %s exceeded %s seconds; waiting for its body to stop",
                        context.action.name, timeout,
                    )
                    wait([future])
                raise

    @staticmethod
    def _check_outputs(action: Action, outputs: Any) -> None:
        if not isinstance(outputs, dict):
            raise ActionFailedError(
                action.name, 1,
                f"Action body returned {type(outputs).__name__}, expected a dict of outputs",
            )
        missing = sorted(set(action.outputs) - set(outputs))
        extra = sorted(set(outputs) - set(action.outputs))
        problems: list[str] = []
        if missing:
            problems.append(f"missing declared outputs: {', '.join(missing)}")
        if extra:
            problems.append(f"undeclared outputs: {', '.join(extra)}")
        bad = sorted(k for k, v in outputs.items() if not isinstance(v, bytes))
        if bad:
            problems.append(f"non-bytes outputs: {', '.join(bad)}")
        if problems:
            raise ActionFailedError(action.name, 1, "; ".join(problems))


def _redact(text: str, secrets: list[str]) -> str:
    for value in secrets:
        if value:
            text = text.replace(value, REDACTED)
    return text
