"""Report workspace readiness and decide between running and recovery."""

from __future__ import annotations

from wsagent import httpclient
from wsagent.config import AgentConfig
from wsagent.context import CancelContext
from wsagent.devcontainer import build_error_marker_exists
from wsagent.errors import ReadyError, TransportError
from wsagent.log import get_logger

logger = get_logger("ready")

STATUS_RUNNING = "running"
STATUS_RECOVERY = "recovery"


def marker_present(workspace_dir: str) -> bool:
    """Marker check that treats inspection errors as "not in recovery"."""
    try:
        return build_error_marker_exists(workspace_dir)
    except OSError as exc:
        logger.warning("Unable to inspect devcontainer build error log in %s: %s", workspace_dir, exc)
        return False


def resolve_ready_status(used_fallback: bool, *marker_checks: bool) -> str:
    """``recovery`` when the build fell back or any marker check fired."""
    if used_fallback or any(marker_checks):
        return STATUS_RECOVERY
    return STATUS_RUNNING


def mark_workspace_ready(ctx: CancelContext, cfg: AgentConfig, status: str = STATUS_RUNNING) -> None:
    """POST the ready status; any non-2xx answer is an error."""
    status = status or STATUS_RUNNING
    url = f"{cfg.control_plane_url}/api/workspaces/{cfg.workspace_id}/ready"
    try:
        res = httpclient.request(ctx, "POST", url, payload={"status": status}, token=cfg.callback_token)
    except TransportError as exc:
        raise ReadyError(f"failed to call ready endpoint: {exc}") from exc
    if not res.ok:
        detail = f": {res.text}" if res.text else ""
        raise ReadyError(f"ready endpoint returned HTTP {res.status}{detail}")
    logger.info("Workspace %s marked ready (status=%s)", cfg.workspace_id, status)
