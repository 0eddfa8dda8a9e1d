"""Shared fixtures for wsagent tests."""

from __future__ import annotations

import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from types import SimpleNamespace

import pytest

from wsagent.config import AgentConfig
from wsagent.context import CancelContext
from wsagent.devcontainer import build_error_marker_path
from wsagent.runner import CommandResult


class FakeCLI:
    """Stand-in for ``wsagent.runner.run_command``.

    Records every argv and answers from registered handlers, matched by
    argv prefix; the most recently registered match wins.  Unmatched
    commands succeed with no output.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, ...]] = []
        self.inputs: list[object] = []
        self._handlers: list[tuple[tuple[str, ...], object]] = []

    def on(self, *prefix: str, returncode: int = 0, output: str = "", handler=None) -> None:
        self._handlers.append((prefix, handler or (returncode, output)))

    def __call__(self, ctx, name, args, *, input=None, cwd=None) -> CommandResult:
        argv = (name, *args)
        self.calls.append(argv)
        self.inputs.append(input)
        for prefix, responder in reversed(self._handlers):
            if argv[: len(prefix)] != prefix:
                continue
            if callable(responder):
                answer = responder(argv, input)
            else:
                answer = responder
            if isinstance(answer, CommandResult):
                return answer
            returncode, output = answer
            return CommandResult(argv, returncode, output)
        return CommandResult(argv, 0, "")

    def find(self, *prefix: str) -> list[tuple[str, ...]]:
        return [argv for argv in self.calls if argv[: len(prefix)] == prefix]

    def index(self, *prefix: str) -> int:
        for i, argv in enumerate(self.calls):
            if argv[: len(prefix)] == prefix:
                return i
        raise AssertionError(f"no call starting with {prefix!r}; calls: {self.calls!r}")


@pytest.fixture
def fake_cli(monkeypatch):
    """Replace every external command with a recording FakeCLI."""
    cli = FakeCLI()
    monkeypatch.setattr("wsagent.runner.run_command", cli)
    monkeypatch.setattr("wsagent.runner.shutil.which", lambda name: f"/usr/bin/{name}")
    return cli


@pytest.fixture
def ctx():
    return CancelContext.background()


@pytest.fixture
def agent_config(tmp_path) -> AgentConfig:
    """A resolved config rooted in tmp_path, without volumes."""
    return AgentConfig(
        control_plane_url="https://api.example.com",
        workspace_id="ws-123",
        node_id="node-456",
        callback_token="cb-token",
        repository="octo/repo",
        branch="main",
        workspace_base_dir=str(tmp_path / "workspace"),
        bootstrap_state_path=str(tmp_path / "state" / "bootstrap-state.json"),
        default_devcontainer_config_path=str(tmp_path / "etc" / "default-devcontainer.json"),
        use_volume=False,
    ).resolved()


class _ControlPlaneHandler(BaseHTTPRequestHandler):
    plane: ControlPlane

    def do_POST(self) -> None:
        length = int(self.headers.get("Content-Length") or 0)
        raw = self.rfile.read(length) if length else b""
        try:
            body = json.loads(raw) if raw else None
        except ValueError:
            body = raw.decode("utf-8", errors="replace")
        status, payload = self.plane.record(
            SimpleNamespace(method="POST", path=self.path, headers=dict(self.headers), body=body)
        )
        data = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def log_message(self, format, *args) -> None:
        pass


class ControlPlane:
    """In-process HTTP server answering control-plane calls."""

    def __init__(self) -> None:
        self.requests: list[SimpleNamespace] = []
        self._queued: dict[str, list[tuple[int, object]]] = {}
        self._defaults: dict[str, tuple[int, object]] = {}
        self._lock = threading.Lock()
        handler = type("Handler", (_ControlPlaneHandler,), {"plane": self})
        self.server = ThreadingHTTPServer(("127.0.0.1", 0), handler)
        self.url = f"http://127.0.0.1:{self.server.server_address[1]}"
        self._thread = threading.Thread(target=self.server.serve_forever, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self.server.shutdown()
        self.server.server_close()

    def respond(self, path: str, status: int = 200, body: object = None, *, times: int | None = None) -> None:
        """Answer *path* with *status*; ``times`` queues one-shot answers."""
        answer = (status, {} if body is None else body)
        with self._lock:
            if times is None:
                self._defaults[path] = answer
            else:
                self._queued.setdefault(path, []).extend([answer] * times)

    def record(self, request: SimpleNamespace) -> tuple[int, object]:
        with self._lock:
            self.requests.append(request)
            queue = self._queued.get(request.path)
            if queue:
                return queue.pop(0)
            return self._defaults.get(request.path, (200, {}))

    def calls(self, path: str) -> list[SimpleNamespace]:
        with self._lock:
            return [r for r in self.requests if r.path == path]


@pytest.fixture
def control_plane():
    plane = ControlPlane()
    plane.start()
    yield plane
    plane.stop()


@pytest.fixture
def repo_with_config(agent_config) -> Path:
    """A cloned-looking workspace with its own devcontainer.json."""
    workspace = Path(agent_config.workspace_dir)
    (workspace / ".git").mkdir(parents=True)
    (workspace / ".devcontainer").mkdir()
    (workspace / ".devcontainer" / "devcontainer.json").write_text('{"image": "node:20"}')
    return workspace


class DevcontainerWorld:
    """Scripted docker/devcontainer CLI around one workspace container ``cid-1``.

    ``up`` with the repository config exits *repo_rc*; ``up`` with the
    default config exits *fallback_rc*.  The container shows up in
    ``docker ps`` once an ``up`` has succeeded (or from the start with
    *running*).  Ownership checks report uid/gid 1000 and a root-owned tree.
    """

    def __init__(self, cli: FakeCLI, cfg: AgentConfig, *, repo_rc=0, fallback_rc=0, running=False):
        self.cfg = cfg
        self.repo_rc = repo_rc
        self.fallback_rc = fallback_rc
        self.up_done = running
        self.marker_at_fallback: bool | None = None
        self.override_configs: list[dict] = []
        self.override_paths: list[str] = []
        cli.on("docker", "ps", "-q", handler=self._ps)
        cli.on("docker", "ps", "-aq", output="stale-1\n")
        cli.on("devcontainer", "up", handler=self._up)
        cli.on("docker", "exec", "-u", "root", "cid-1", "id", output="1000\n")
        cli.on("docker", "exec", "-u", "root", "cid-1", "stat", output="0:0\n")

    def _ps(self, argv, input):
        return 0, "cid-1\n" if self.up_done else ""

    def _up(self, argv, input):
        is_fallback = self.cfg.default_devcontainer_config_path in argv
        if "--override-config" in argv:
            path = argv[argv.index("--override-config") + 1]
            self.override_paths.append(path)
            self.override_configs.append(json.loads(Path(path).read_text()))
        if is_fallback:
            self.marker_at_fallback = build_error_marker_path(self.cfg.workspace_dir).exists()
            rc = self.fallback_rc
        else:
            rc = self.repo_rc
        if rc:
            return rc, "step 3/7 RUN apt-get install\nfatal: repo image broken\n"
        self.up_done = True
        return 0, '{"outcome":"success","containerId":"cid-1"}'


@pytest.fixture
def devcontainer_world(fake_cli):
    def make(cfg: AgentConfig, **kwargs) -> DevcontainerWorld:
        return DevcontainerWorld(fake_cli, cfg, **kwargs)

    return make
