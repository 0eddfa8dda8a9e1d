"""Boot-log reporter: streams pipeline progress to the control plane."""

from __future__ import annotations

from datetime import datetime, timezone

from wsagent import httpclient
from wsagent.errors import TransportError
from wsagent.log import get_logger

logger = get_logger("bootlog")

STARTED = "started"
COMPLETED = "completed"
FAILED = "failed"


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class BootLogReporter:
    """POSTs ``{step, status, message, detail?, timestamp}`` entries.

    Nothing is sent until :meth:`set_token` provides the callback token, and
    nothing is sent after :meth:`close`.  Delivery failures are logged and
    never interrupt the pipeline.
    """

    def __init__(self, control_plane_url: str, workspace_id: str, *, timeout: float = 10.0) -> None:
        self.control_plane_url = control_plane_url.rstrip("/")
        self.workspace_id = workspace_id
        self.timeout = timeout
        self._token = ""
        self._closed = False

    @property
    def endpoint(self) -> str:
        return f"{self.control_plane_url}/api/workspaces/{self.workspace_id}/boot-log"

    def set_token(self, token: str) -> None:
        self._token = token

    def log(self, step: str, status: str, message: str, detail: str = "") -> None:
        logger.debug("boot-log %s %s: %s", step, status, message)
        if self._closed or not self._token:
            return
        entry = {"step": step, "status": status, "message": message, "timestamp": _timestamp()}
        if detail:
            entry["detail"] = detail
        try:
            res = httpclient.request(None, "POST", self.endpoint, payload=entry, token=self._token, timeout=self.timeout)
        except TransportError as exc:
            logger.warning("bootlog: failed to send log entry (step=%s): %s", step, exc)
            return
        if not res.ok:
            logger.warning("bootlog: control plane returned HTTP %d for step=%s", res.status, step)

    def close(self) -> None:
        self._closed = True
