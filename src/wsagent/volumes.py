"""Named per-workspace volumes that replace the host bind mount."""

from __future__ import annotations

from wsagent.container import ContainerEngine
from wsagent.context import CancelContext
from wsagent.errors import CommandError, ContainerError
from wsagent.log import get_logger

logger = get_logger("volumes")

VOLUME_PREFIX = "sam-ws-"
VOLUME_MOUNT_TARGET = "/workspaces"


def volume_name_for_workspace(workspace_id: str) -> str:
    """Deterministic volume name; deletion workflows compute it the same way."""
    return f"{VOLUME_PREFIX}{workspace_id}"


def ensure_volume_ready(ctx: CancelContext, engine: ContainerEngine, workspace_id: str) -> str:
    """Create the workspace volume if needed and return its name."""
    name = volume_name_for_workspace(workspace_id)
    try:
        engine.volume_create(ctx, name)
    except CommandError as exc:
        raise ContainerError(str(exc)) from exc
    logger.info("Workspace volume %s ready", name)
    return name


def remove_volume(ctx: CancelContext, engine: ContainerEngine, workspace_id: str) -> str:
    """Force-remove the workspace volume; absent volumes are fine."""
    name = volume_name_for_workspace(workspace_id)
    try:
        engine.volume_remove(ctx, name)
    except CommandError as exc:
        raise ContainerError(str(exc)) from exc
    logger.info("Workspace volume %s removed", name)
    return name


def volume_mount_spec(volume: str) -> str:
    """``workspaceMount`` value binding *volume* at the container workspaces root."""
    return f"source={volume},target={VOLUME_MOUNT_TARGET},type=volume"
