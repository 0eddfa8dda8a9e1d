"""Run external tools with combined output capture and context-bound cancellation.

Every component that drives docker, git, or the devcontainer CLI goes through
:func:`run_command`, so tests can replace a single seam.
"""

from __future__ import annotations

import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from wsagent.context import CancelContext
from wsagent.errors import Cancelled
from wsagent.log import get_logger

logger = get_logger("runner")

_POLL_INTERVAL = 0.2
COMMAND_WAIT_INTERVAL = 5.0
COMMAND_WAIT_LOG_EVERY = 30.0


@dataclass
class CommandResult:
    """Exit status and interleaved stdout/stderr of one command."""

    argv: tuple[str, ...]
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def text(self) -> str:
        return self.output.strip()


def run_command(
    ctx: CancelContext,
    name: str,
    args: Sequence[str],
    *,
    input: str | bytes | None = None,
    cwd: Path | str | None = None,
) -> CommandResult:
    """Run *name* with *args*, returning its combined output and exit status.

    A missing executable is reported as exit status 127 rather than raised,
    the same way a shell would. Cancellation kills the child and raises
    :class:`~wsagent.errors.Cancelled`.
    """
    ctx.check()
    argv = (name, *args)
    logger.debug("exec: %s", " ".join(argv))
    data = input.encode() if isinstance(input, str) else input
    try:
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.PIPE if data is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            cwd=cwd,
        )
    except FileNotFoundError as exc:
        return CommandResult(argv, 127, f"{name}: command not found ({exc})")
    except OSError as exc:
        return CommandResult(argv, 126, f"{name}: {exc}")

    pending = data
    while True:
        try:
            out, _ = proc.communicate(pending, timeout=_POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            # Input is fully handed over on the first call.
            pending = None
            if ctx.cancelled():
                proc.kill()
                proc.communicate()
                raise Cancelled(f"{name} interrupted: {ctx.reason}")
    return CommandResult(argv, proc.returncode, (out or b"").decode("utf-8", errors="replace"))


def wait_for_command(
    ctx: CancelContext,
    name: str,
    *,
    interval: float = COMMAND_WAIT_INTERVAL,
    log_every: float = COMMAND_WAIT_LOG_EVERY,
) -> None:
    """Block until *name* is on PATH; cloud-init may still be installing it."""
    if shutil.which(name):
        return
    logger.info("Waiting for %r to be installed (cloud-init may still be running)...", name)
    logged = time.monotonic()
    while True:
        try:
            ctx.sleep(interval)
        except Cancelled as exc:
            raise Cancelled(f"context cancelled while waiting for {name!r}: {exc}") from exc
        if shutil.which(name):
            logger.info("Command %r is now available", name)
            return
        if time.monotonic() - logged >= log_every:
            logger.info("Still waiting for %r to be installed...", name)
            logged = time.monotonic()
