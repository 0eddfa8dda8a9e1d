"""ContainerEngine: the docker CLI operations the bootstrap pipeline needs."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Sequence

from wsagent import runner
from wsagent.context import CancelContext
from wsagent.errors import CommandError, ContainerError
from wsagent.log import get_logger
from wsagent.runner import CommandResult

logger = get_logger("container")

METADATA_LABEL = "devcontainer.metadata"


def _failure(what: str, result: CommandResult) -> str:
    return f"{what}: exit status {result.returncode}: {result.text}"


class ContainerEngine:
    """Wrapper around the docker CLI.

    Every call takes the governing context so cancellation reaches the
    child process.
    """

    def __init__(self, command: str = "docker") -> None:
        self.cmd = command

    def _run(
        self, ctx: CancelContext, args: Sequence[str], *, input: str | bytes | None = None,
    ) -> CommandResult:
        return runner.run_command(ctx, self.cmd, args, input=input)

    def _check(
        self, ctx: CancelContext, what: str, args: Sequence[str], *, input: str | bytes | None = None,
    ) -> CommandResult:
        result = self._run(ctx, args, input=input)
        if not result.ok:
            raise CommandError(
                _failure(what, result),
                argv=result.argv, returncode=result.returncode, output=result.output,
            )
        return result

    # ------------------------------------------------------------------
    # Volumes
    # ------------------------------------------------------------------

    def volume_create(self, ctx: CancelContext, name: str) -> None:
        """Create *name*; docker treats an existing volume as success."""
        self._check(ctx, f"failed to create volume {name}", ["volume", "create", name])

    def volume_remove(self, ctx: CancelContext, name: str) -> None:
        """Force-remove *name*; a missing volume is not an error."""
        result = self._run(ctx, ["volume", "rm", "-f", name])
        if not result.ok and "no such volume" not in result.output.lower():
            raise CommandError(
                _failure(f"failed to remove volume {name}", result),
                argv=result.argv, returncode=result.returncode, output=result.output,
            )

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def list_ids(
        self, ctx: CancelContext, label_key: str, label_value: str, *, include_stopped: bool = False,
    ) -> list[str]:
        flags = "-aq" if include_stopped else "-q"
        result = self._run(ctx, ["ps", flags, "--filter", f"label={label_key}={label_value}"])
        if not result.ok:
            raise ContainerError(_failure("docker ps failed", result))
        return result.output.split()

    def find_container(self, ctx: CancelContext, label_key: str, label_value: str) -> str:
        """Return the one running container labelled *label_key*=*label_value*."""
        ids = self.list_ids(ctx, label_key, label_value)
        if not ids:
            raise ContainerError(
                f"no running devcontainer found for label {label_key}={label_value}"
            )
        if len(ids) > 1:
            raise ContainerError(
                f"multiple running devcontainers found for label {label_key}={label_value}: "
                + ", ".join(ids)
            )
        return ids[0]

    def remove_stale(self, ctx: CancelContext, label_key: str, label_value: str) -> list[str]:
        """Force-remove every container, running or not, with the workspace label."""
        try:
            ids = self.list_ids(ctx, label_key, label_value, include_stopped=True)
        except ContainerError as exc:
            logger.warning("Stale container lookup failed: %s", exc)
            return []
        removed: list[str] = []
        for cid in ids:
            result = self._run(ctx, ["rm", "-f", cid])
            if result.ok:
                removed.append(cid)
            else:
                logger.warning("Failed to remove stale container %s: %s", cid, result.text)
        if removed:
            logger.info("Removed stale devcontainer(s): %s", ", ".join(removed))
        return removed

    def metadata_label(self, ctx: CancelContext, container_id: str) -> object:
        """Decoded ``devcontainer.metadata`` label, or None when absent."""
        fmt = "{{json (index .Config.Labels \"%s\")}}" % METADATA_LABEL
        result = self._check(
            ctx, f"failed to inspect container {container_id}",
            ["inspect", "--format", fmt, container_id],
        )
        raw = json.loads(result.text or "null")
        if isinstance(raw, str):
            raw = json.loads(raw) if raw.strip() else None
        return raw

    # ------------------------------------------------------------------
    # Exec / copy / helper containers
    # ------------------------------------------------------------------

    def exec(
        self,
        ctx: CancelContext,
        container_id: str,
        args: Sequence[str],
        *,
        user: str | None = None,
        input: str | bytes | None = None,
    ) -> CommandResult:
        cmd = ["exec"]
        if input is not None:
            cmd.append("-i")
        if user:
            cmd += ["-u", user]
        cmd.append(container_id)
        cmd.extend(args)
        return self._run(ctx, cmd, input=input)

    def exec_checked(
        self,
        ctx: CancelContext,
        container_id: str,
        args: Sequence[str],
        what: str,
        *,
        user: str | None = None,
        input: str | bytes | None = None,
    ) -> str:
        result = self.exec(ctx, container_id, args, user=user, input=input)
        if not result.ok:
            raise CommandError(
                _failure(what, result),
                argv=result.argv, returncode=result.returncode, output=result.output,
            )
        return result.text

    def copy_into(self, ctx: CancelContext, src: Path, container_id: str, dest: str) -> None:
        self._check(
            ctx, f"failed to copy {src.name} into devcontainer",
            ["cp", str(src), f"{container_id}:{dest}"],
        )

    def run_helper(
        self,
        ctx: CancelContext,
        image: str,
        script: str,
        *,
        mounts: Sequence[str] = (),
        input: str | bytes | None = None,
    ) -> CommandResult:
        """Run *script* under ``sh -c`` in a disposable container."""
        cmd = ["run", "--rm"]
        if input is not None:
            cmd.append("-i")
        for mount in mounts:
            cmd += ["-v", mount]
        cmd += [image, "sh", "-c", script]
        return self._run(ctx, cmd, input=input)
