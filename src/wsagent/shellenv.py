"""Platform and project environment written into the devcontainer."""

from __future__ import annotations

import posixpath
import re
import shlex
from dataclasses import dataclass
from typing import Iterable
from urllib.parse import urlparse

from wsagent.config import AgentConfig
from wsagent.container import ContainerEngine
from wsagent.context import CancelContext
from wsagent.errors import CommandError, ContainerError, ProjectRuntimeError
from wsagent.log import get_logger
from wsagent.state import ProjectEnvVar, ProjectFile

logger = get_logger("shellenv")

_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

PLATFORM_PROFILE_PATH = "/etc/profile.d/sam-env.sh"
PLATFORM_ENV_FILE_PATH = "/etc/sam/env"
PROJECT_PROFILE_PATH = "/etc/profile.d/sam-project-env.sh"
PROJECT_ENV_FILE_PATH = "/etc/sam/project-env"

PLATFORM_HEADER = "# SAM workspace environment"
PROJECT_HEADER = "# SAM project runtime environment"

# Shell-start recovery of a token from the installed credential helper.
_TOKEN_RECOVERY = """\
if [ -z "${GITHUB_TOKEN:-}" ] && command -v git >/dev/null 2>&1; then
  _sam_token="$(printf 'protocol=https\\nhost=github.com\\n\\n' | git credential fill 2>/dev/null | sed -n 's/^password=//p' | head -n 1)"
  if [ -n "$_sam_token" ]; then
    export GITHUB_TOKEN="$_sam_token"
    export GH_TOKEN="$_sam_token"
  fi
  unset _sam_token
fi
"""


def _has_line_break(value: str) -> bool:
    return "\n" in value or "\r" in value


def _dq(value: str) -> str:
    """Double-quote *value* for POSIX sh, escaping the characters that stay live."""
    escaped = re.sub(r'([\\"$`])', r"\\\1", value)
    return f'"{escaped}"'


def workspace_url(control_plane_url: str, workspace_id: str) -> str:
    """``https://ws-<id>.<base domain>``, where the API host is ``api.<base domain>``."""
    host = urlparse(control_plane_url).hostname or ""
    if not host or not workspace_id:
        return ""
    if host.startswith("api."):
        host = host[len("api."):]
    return f"https://ws-{workspace_id}.{host}"


def platform_env(cfg: AgentConfig, github_token: str = "") -> dict[str, str]:
    """Platform variables in export order.

    Empty values are left out, as are values with line breaks (logged).
    """
    env = {
        "SAM_API_URL": cfg.control_plane_url,
        "SAM_BRANCH": cfg.branch if cfg.repository else "",
        "SAM_NODE_ID": cfg.node_id,
        "SAM_REPOSITORY": cfg.repository,
        "SAM_WORKSPACE_ID": cfg.workspace_id,
        "SAM_WORKSPACE_URL": workspace_url(cfg.control_plane_url, cfg.workspace_id),
        "GITHUB_TOKEN": github_token.strip(),
        "GH_TOKEN": github_token.strip(),
    }
    result = {}
    for key, value in env.items():
        value = (value or "").strip()
        if not value:
            continue
        if _has_line_break(value):
            logger.warning("Omitting %s from the platform environment: value contains a line break", key)
            continue
        result[key] = value
    return result


def build_export_lines(env: dict[str, str]) -> list[str]:
    return [f"export {key}={_dq(value)}" for key, value in env.items()]


def build_platform_profile(cfg: AgentConfig, github_token: str = "") -> str:
    lines = [PLATFORM_HEADER, *build_export_lines(platform_env(cfg, github_token))]
    return "\n".join(lines) + "\n" + _TOKEN_RECOVERY


def format_env_file(env: dict[str, str]) -> str:
    """Plain ``KEY=value`` lines for consumers that do not source shell."""
    lines = [f"{key}={value}" for key, value in env.items()]
    return "\n".join(lines) + "\n" if lines else ""


def validate_env_vars(env_vars: Iterable[ProjectEnvVar]) -> dict[str, str]:
    """Return the variables as a dict; one invalid entry rejects the whole batch.

    Values may not contain line breaks, which the ``KEY=value`` env file
    cannot represent.
    """
    env: dict[str, str] = {}
    for var in env_vars:
        key = var.key.strip()
        if not _KEY_RE.match(key):
            raise ProjectRuntimeError(f"invalid project environment variable name: {var.key!r}")
        if _has_line_break(var.value):
            raise ProjectRuntimeError(f"project environment variable {key} contains a line break")
        env[key] = var.value
    return env


def build_project_profile(env_vars: Iterable[ProjectEnvVar]) -> str:
    env = validate_env_vars(env_vars)
    return "\n".join([PROJECT_HEADER, *build_export_lines(env)]) + "\n"


def normalize_project_file_path(raw: str, work_dir: str) -> str:
    """Resolve a caller-supplied file path inside the container.

    Absolute and ``~/`` paths are kept; anything else is relative to
    *work_dir*.  Blank paths and ``..`` components are rejected.
    """
    path = raw.strip()
    if not path:
        raise ProjectRuntimeError("project file path must not be empty")
    if ".." in path.split("/"):
        raise ProjectRuntimeError(f"project file path must not contain '..': {raw!r}")
    if path.startswith("/"):
        return posixpath.normpath(path)
    if path.startswith("~/"):
        rest = posixpath.normpath(path[2:])
        if rest in (".", ""):
            raise ProjectRuntimeError(f"project file path names a directory: {raw!r}")
        return "~/" + rest
    if path == "~":
        raise ProjectRuntimeError(f"project file path names a directory: {raw!r}")
    return posixpath.normpath(posixpath.join(work_dir, path))


def shell_path(path: str) -> str:
    """Single-quote *path* for sh, keeping a leading ``~/`` expandable."""
    if path.startswith("~/"):
        return '"$HOME"/' + shlex.quote(path[2:])
    return shlex.quote(path)


def write_container_file(
    ctx: CancelContext,
    engine: ContainerEngine,
    container_id: str,
    path: str,
    content: str,
    *,
    user: str | None = None,
) -> None:
    """Create *path* (and its directory) in the container with *content*."""
    directory = posixpath.dirname(path) or "."
    directory_expr = '"$HOME"' if directory == "~" else shell_path(directory)
    script = f"mkdir -p {directory_expr} && cat > {shell_path(path)}"
    try:
        engine.exec_checked(
            ctx, container_id, ["sh", "-c", script],
            f"failed to write {path} in devcontainer", user=user, input=content,
        )
    except CommandError as exc:
        raise ContainerError(str(exc)) from exc


def ensure_platform_env(
    ctx: CancelContext,
    engine: ContainerEngine,
    cfg: AgentConfig,
    container_id: str,
    github_token: str = "",
) -> None:
    write_container_file(
        ctx, engine, container_id, PLATFORM_PROFILE_PATH,
        build_platform_profile(cfg, github_token), user="root",
    )
    write_container_file(
        ctx, engine, container_id, PLATFORM_ENV_FILE_PATH,
        format_env_file(platform_env(cfg, github_token)), user="root",
    )
    logger.info("Injected platform environment into devcontainer %s", container_id)


@dataclass
class _PendingFile:
    path: str
    content: str


def ensure_project_runtime(
    ctx: CancelContext,
    engine: ContainerEngine,
    cfg: AgentConfig,
    container_id: str,
    env_vars: list[ProjectEnvVar],
    files: list[ProjectFile],
    *,
    user: str = "",
) -> None:
    """Write caller-supplied variables and files; everything is validated first."""
    if not env_vars and not files:
        return
    profile = build_project_profile(env_vars) if env_vars else ""
    env = validate_env_vars(env_vars)
    pending = [
        _PendingFile(normalize_project_file_path(f.path, cfg.container_work_dir), f.content)
        for f in files
    ]

    try:
        if env_vars:
            write_container_file(ctx, engine, container_id, PROJECT_PROFILE_PATH, profile, user="root")
            write_container_file(ctx, engine, container_id, PROJECT_ENV_FILE_PATH, format_env_file(env), user="root")
        for item in pending:
            write_container_file(ctx, engine, container_id, item.path, item.content, user=user or None)
    except ContainerError as exc:
        raise ProjectRuntimeError(str(exc)) from exc
    logger.info(
        "Injected %d project variable(s) and %d project file(s) into devcontainer %s",
        len(env), len(pending), container_id,
    )
