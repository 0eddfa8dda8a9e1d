"""Minimal control-plane HTTP client over urllib, bound to a CancelContext."""

from __future__ import annotations

import json
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass

from wsagent import __version__
from wsagent.context import CancelContext
from wsagent.errors import Cancelled, TransportError

DEFAULT_TIMEOUT = 30.0
_MAX_BODY = 8 * 1024
_USER_AGENT = f"wsagent/{__version__}"


@dataclass
class HttpResponse:
    status: int
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace").strip()

    def json(self) -> object:
        return json.loads(self.body)


def _perform(req: urllib.request.Request, timeout: float) -> HttpResponse:
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return HttpResponse(resp.status, resp.read(_MAX_BODY))
    except urllib.error.HTTPError as exc:
        with exc:
            return HttpResponse(exc.code, exc.read(_MAX_BODY))
    except (urllib.error.URLError, OSError) as exc:
        reason = getattr(exc, "reason", exc)
        raise TransportError(f"{req.get_method()} {req.full_url} failed: {reason}") from exc


def request(
    ctx: CancelContext | None,
    method: str,
    url: str,
    *,
    payload: object | None = None,
    token: str = "",
    timeout: float = DEFAULT_TIMEOUT,
) -> HttpResponse:
    """Send one request; non-2xx statuses are returned, not raised.

    Transport failures raise TransportError. With a context, the call
    returns as soon as the context is cancelled; the abandoned socket is
    left to its own timeout.
    """
    headers = {"User-Agent": _USER_AGENT}
    data = None
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
        headers["Content-Type"] = "application/json"
    if token:
        headers["Authorization"] = f"Bearer {token}"
    req = urllib.request.Request(url, data=data, headers=headers, method=method)

    if ctx is None:
        return _perform(req, timeout)

    ctx.check()
    remaining = ctx.remaining()
    if remaining is not None:
        timeout = max(0.1, min(timeout, remaining))

    outcome: dict[str, object] = {}
    done = threading.Event()

    def worker() -> None:
        try:
            outcome["response"] = _perform(req, timeout)
        except TransportError as exc:
            outcome["error"] = exc
        finally:
            done.set()

    threading.Thread(target=worker, daemon=True, name="wsagent-http").start()
    while not done.wait(0.1):
        if ctx.cancelled():
            raise Cancelled(f"{method} {url} interrupted: {ctx.reason}")
    if "error" in outcome:
        raise outcome["error"]  # type: ignore[misc]
    return outcome["response"]  # type: ignore[return-value]
