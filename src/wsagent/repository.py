"""Clone the workspace repository on the host and mirror it into the volume."""

from __future__ import annotations

import shlex
import shutil
from pathlib import Path

from wsagent import runner
from wsagent.config import AgentConfig
from wsagent.container import ContainerEngine
from wsagent.context import CancelContext
from wsagent.errors import RepositoryError
from wsagent.git import normalize_repo_url, with_github_token
from wsagent.log import get_logger
from wsagent.state import BootstrapState
from wsagent.utils import redact_secret
from wsagent.volumes import VOLUME_MOUNT_TARGET

logger = get_logger("repository")

_HELPER_SOURCE = "/src"


def _clone_staging_dir(workspace: Path) -> Path:
    return workspace.parent / f".{workspace.name}.clone-tmp"


def _remove_tree(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path)


def ensure_repository_ready(
    ctx: CancelContext,
    cfg: AgentConfig,
    state: BootstrapState | None,
    *,
    engine: ContainerEngine | None = None,
    volume: str = "",
) -> bool:
    """Clone ``cfg.repository`` into ``cfg.workspace_dir`` unless already cloned.

    The clone lands in a sibling staging directory and is renamed into
    place only once complete, so an interrupted clone is never mistaken for
    a finished one.  When *volume* is given the host tree is mirrored into
    it as well.  Returns True when a clone was performed.
    """
    if not cfg.repository:
        logger.info("Repository is empty, skipping clone step")
        return False

    workspace = Path(cfg.workspace_dir)
    cloned = False
    if (workspace / ".git").exists():
        logger.info("Repository already present at %s, skipping clone", workspace)
    else:
        _clone(ctx, cfg, workspace, state.github_token if state else "")
        cloned = True

    if volume:
        if engine is None:
            raise RepositoryError("a container engine is required to populate the workspace volume")
        populate_volume(ctx, engine, cfg, volume)
    return cloned


def _clone(ctx: CancelContext, cfg: AgentConfig, workspace: Path, token: str) -> None:
    staging = _clone_staging_dir(workspace)
    try:
        workspace.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
        _remove_tree(workspace)
        _remove_tree(staging)
    except OSError as exc:
        raise RepositoryError(f"failed to prepare workspace directory {workspace}: {exc}") from exc

    repo_url = normalize_repo_url(cfg.repository)
    clone_url = with_github_token(repo_url, token)
    branch = cfg.branch or "main"

    logger.info("Cloning repository %s (branch: %s) into %s", cfg.repository, branch, workspace)
    result = runner.run_command(
        ctx, "git", ["clone", "--branch", branch, "--single-branch", clone_url, str(staging)],
    )
    if not result.ok:
        _remove_tree(staging)
        raise RepositoryError(
            f"git clone failed: exit status {result.returncode}: "
            + redact_secret(result.text, token)
        )

    # Persist origin without embedded credentials.
    result = runner.run_command(ctx, "git", ["-C", str(staging), "remote", "set-url", "origin", repo_url])
    if not result.ok:
        _remove_tree(staging)
        raise RepositoryError(
            f"failed to sanitize repository origin URL: {redact_secret(result.text, token)}"
        )

    try:
        staging.rename(workspace)
    except OSError as exc:
        raise RepositoryError(f"failed to move clone into {workspace}: {exc}") from exc


def populate_volume(ctx: CancelContext, engine: ContainerEngine, cfg: AgentConfig, volume: str) -> None:
    """Copy the host clone into *volume* unless the volume already holds one."""
    target = cfg.container_work_dir
    mounts = [f"{volume}:{VOLUME_MOUNT_TARGET}"]

    probe = engine.run_helper(ctx, cfg.helper_image, f"test -d {shlex.quote(target + '/.git')}", mounts=mounts)
    if probe.ok:
        logger.info("Volume %s already contains the repository, skipping copy", volume)
        return

    quoted = shlex.quote(target)
    # Any container uid must be able to write the tree.
    script = f"mkdir -p {quoted} && cp -a {_HELPER_SOURCE}/. {quoted}/ && chmod -R a+rwX {quoted}"
    result = engine.run_helper(
        ctx, cfg.helper_image, script,
        mounts=mounts + [f"{cfg.workspace_dir}:{_HELPER_SOURCE}:ro"],
    )
    if not result.ok:
        raise RepositoryError(
            f"failed to copy repository into volume {volume}: exit status {result.returncode}: {result.text}"
        )
    logger.info("Copied repository into volume %s at %s", volume, target)


def prime_workspace_permissions(ctx: CancelContext, cfg: AgentConfig) -> bool:
    """Open the host checkout to every uid before the devcontainer starts.

    Lifecycle hooks may run as a non-root user against the bind mount.
    Returns False when there is nothing to do.
    """
    if not cfg.workspace_dir or not cfg.container_mode:
        return False
    workspace = Path(cfg.workspace_dir)
    try:
        workspace.stat()
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise RepositoryError(f"failed to stat workspace dir {workspace}: {exc}") from exc

    result = runner.run_command(ctx, "chmod", ["-R", "a+rwX", str(workspace)])
    if not result.ok:
        raise RepositoryError(
            f"failed to normalize workspace permissions before devcontainer up: {result.text}"
        )
    return True
