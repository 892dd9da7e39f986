"""Shell command action: the opaque body of test and build steps.

Each declared input is written to ``$INPUT_DIR/<name>``. Commands run in
order through the shell with ``$OUTPUT_DIR`` set; each declared output is
read back from ``$OUTPUT_DIR/<name>``. The first non-zero exit stops the
action and its combined output becomes the diagnostics. A command still
running when the action times out is killed along with its process group.
"""

from __future__ import annotations

import contextlib
import logging
import os
import signal
import subprocess
import tempfile
from pathlib import Path

from deployline.core.action_runner import TIMEOUT_EXIT_CODE, ActionBodyError, ActionContext

logger = logging.getLogger(__name__)


class CommandAction:
    """Run shell commands in a scratch directory.

    Parameters
    ----------
    commands:
        Shell commands, run in order.
    inherit_env:
        Pass the parent process environment through to the commands.
    """

    def __init__(self, commands: list[str], *, inherit_env: bool = True) -> None:
        if not commands:
            raise ValueError("CommandAction needs at least one command")
        self.commands = list(commands)
        self.inherit_env = inherit_env

    def execute(self, context: ActionContext) -> dict[str, bytes]:
        with tempfile.TemporaryDirectory(prefix=f"deployline-{context.action.name}-") as tmp:
            workdir = Path(tmp)
            input_dir = workdir / "in"
            output_dir = workdir / "out"
            input_dir.mkdir()
            output_dir.mkdir()
            for name, blob in context.inputs.items():
                (input_dir / name).write_bytes(blob)

            env = dict(os.environ) if self.inherit_env else {}
            env.update(context.env)
            env["INPUT_DIR"] = str(input_dir)
            env["OUTPUT_DIR"] = str(output_dir)

            transcript: list[str] = []
            for command in self.commands:
                transcript.append(f"$ {command}")
                if context.cancelled.is_set() or context.remaining_seconds() == 0:
                    transcript.append("action timed out before the command started")
                    raise ActionBodyError(TIMEOUT_EXIT_CODE, "\n".join(transcript))
                returncode, output = self._run_command(command, workdir, env, context)
                if output:
                    transcript.append(output.rstrip("\n"))
                if returncode is None:
                    transcript.append(
                        f"command timed out after {context.timeout_seconds} seconds"
                    )
                    raise ActionBodyError(TIMEOUT_EXIT_CODE, "\n".join(transcript))
                if returncode != 0:
                    logger.debug(
                        "Command %r in action %s exited %d",
                        command, context.action.name, returncode,
                    )
                    raise ActionBodyError(returncode, "\n".join(transcript))

            outputs: dict[str, bytes] = {}
            for name in context.action.outputs:
                path = output_dir / name
                if path.is_file():
                    outputs[name] = path.read_bytes()
            return outputs

    @staticmethod
    def _run_command(
        command: str, workdir: Path, env: dict[str, str], context: ActionContext
    ) -> tuple[int | None, str]:
        """Run one command; returns ``(None, output)`` if it was killed on timeout.

        The command runs in its own process group so that the whole group,
        including anything the shell spawned, is killed on expiry.
        """
        process = subprocess.Popen(
            command,
            shell=True,
            cwd=workdir,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            start_new_session=True,
        )
        try:
            output, _ = process.communicate(timeout=context.remaining_seconds())
        except subprocess.TimeoutExpired:
            with contextlib.suppress(ProcessLookupError):
                os.killpg(process.pid, signal.SIGKILL)
            output, _ = process.communicate()
            logger.warning(
                "Command %r in action %s killed after %s seconds",
                command, context.action.name, context.timeout_seconds,
            )
            return None, output or ""
        return process.returncode, output or ""
