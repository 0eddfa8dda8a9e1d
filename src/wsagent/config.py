"""Agent configuration: hardcoded defaults < wsagent.toml < environment."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Mapping
from urllib.parse import urlparse

# Python 3.11+ stdlib
import tomllib

from wsagent.errors import ConfigError

DEFAULT_CONFIG_PATH = Path("/etc/wsagent/wsagent.toml")
DEFAULT_STATE_PATH = "/var/lib/vm-agent/bootstrap-state.json"
DEFAULT_DEVCONTAINER_IMAGE = "mcr.microsoft.com/devcontainers/base:ubuntu"
DEFAULT_DEVCONTAINER_CONFIG_PATH = "/etc/wsagent/default-devcontainer.json"
DEFAULT_LABEL_KEY = "devcontainer.local_folder"
DEFAULT_WORKSPACE_BASE_DIR = "/workspace"
CONTAINER_WORKSPACES_ROOT = "/workspaces"

# Environment variable -> config field.
_ENV_FIELDS: dict[str, str] = {
    "CONTROL_PLANE_URL": "control_plane_url",
    "WORKSPACE_ID": "workspace_id",
    "NODE_ID": "node_id",
    "BOOTSTRAP_TOKEN": "bootstrap_token",
    "CALLBACK_TOKEN": "callback_token",
    "REPOSITORY": "repository",
    "BRANCH": "branch",
    "WORKSPACE_DIR": "workspace_dir",
    "WORKSPACE_BASE_DIR": "workspace_base_dir",
    "BOOTSTRAP_STATE_PATH": "bootstrap_state_path",
    "BOOTSTRAP_MAX_WAIT": "bootstrap_max_wait",
    "BOOTSTRAP_TIMEOUT": "bootstrap_timeout",
    "VM_AGENT_PORT": "port",
    "CONTAINER_MODE": "container_mode",
    "CONTAINER_USER": "container_user",
    "CONTAINER_WORK_DIR": "container_work_dir",
    "CONTAINER_LABEL_KEY": "container_label_key",
    "CONTAINER_LABEL_VALUE": "container_label_value",
    "DEFAULT_DEVCONTAINER_IMAGE": "default_devcontainer_image",
    "DEFAULT_DEVCONTAINER_CONFIG_PATH": "default_devcontainer_config_path",
    "DEFAULT_DEVCONTAINER_REMOTE_USER": "default_devcontainer_remote_user",
    "ADDITIONAL_FEATURES": "additional_features",
    "USE_VOLUME": "use_volume",
    "HELPER_IMAGE": "helper_image",
    "DOCKER_CMD": "docker_cmd",
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass
class AgentConfig:
    """Every tunable the bootstrap pipeline reads.

    Derived fields (``workspace_dir``, ``container_work_dir``,
    ``container_label_value``) are filled in by :meth:`resolved` when left
    empty.
    """

    control_plane_url: str = ""
    workspace_id: str = ""
    node_id: str = ""
    bootstrap_token: str = ""
    callback_token: str = ""
    repository: str = ""
    branch: str = "main"
    workspace_dir: str = ""
    workspace_base_dir: str = DEFAULT_WORKSPACE_BASE_DIR
    bootstrap_state_path: str = DEFAULT_STATE_PATH
    bootstrap_max_wait: float = 300.0
    bootstrap_timeout: float = 0.0
    port: int = 8080
    container_mode: bool = True
    container_user: str = ""
    container_work_dir: str = ""
    container_label_key: str = DEFAULT_LABEL_KEY
    container_label_value: str = ""
    default_devcontainer_image: str = DEFAULT_DEVCONTAINER_IMAGE
    default_devcontainer_config_path: str = DEFAULT_DEVCONTAINER_CONFIG_PATH
    default_devcontainer_remote_user: str = ""
    additional_features: str = ""
    use_volume: bool = True
    helper_image: str = "busybox:latest"
    docker_cmd: str = "docker"

    def resolved(self) -> AgentConfig:
        """Return a copy with derived paths and labels filled in."""
        cfg = replace(self)
        cfg.control_plane_url = cfg.control_plane_url.strip().rstrip("/")
        cfg.repository = cfg.repository.strip()
        cfg.branch = cfg.branch.strip() or "main"
        if not cfg.workspace_dir:
            cfg.workspace_dir = derive_workspace_dir(cfg.workspace_base_dir, cfg.repository)
        if not cfg.container_work_dir:
            cfg.container_work_dir = derive_container_work_dir(cfg.workspace_dir)
        if not cfg.container_label_value:
            cfg.container_label_value = cfg.workspace_dir
        return cfg

    def validate_for_boot(self) -> None:
        if not self.control_plane_url:
            raise ConfigError("CONTROL_PLANE_URL is required")
        if not self.workspace_id:
            raise ConfigError("WORKSPACE_ID is required")
        if self.port <= 0:
            raise ConfigError(f"invalid VM agent port: {self.port}")


def derive_repo_dir_name(repository: str) -> str:
    """Filesystem-safe directory name for *repository* (``octo/My Repo.git`` -> ``My-Repo``)."""
    repo = repository.strip()
    if not repo:
        return ""
    if "://" in repo:
        repo = urlparse(repo).path
    repo = repo.strip("/")
    if not repo:
        return ""
    name = repo.split("/")[-1].strip()
    if name.endswith(".git"):
        name = name[: -len(".git")]
    name = re.sub(r"[^A-Za-z0-9._-]", "-", name.strip())
    return name.strip("-")


def derive_workspace_dir(base_dir: str, repository: str) -> str:
    base = base_dir.strip() or DEFAULT_WORKSPACE_BASE_DIR
    name = derive_repo_dir_name(repository)
    if not name:
        return base
    return str(Path(base) / name)


def derive_container_work_dir(workspace_dir: str) -> str:
    base = Path(workspace_dir.strip()).name if workspace_dir.strip() else ""
    if not base:
        return CONTAINER_WORKSPACES_ROOT
    return f"{CONTAINER_WORKSPACES_ROOT}/{base}"


def _flatten_toml(data: dict, prefix: str = "") -> dict[str, object]:
    """Flatten nested TOML tables into underscore-joined keys.

    ``{"container": {"user": "node"}}`` -> ``{"container_user": "node"}``
    """
    out: dict[str, object] = {}
    for k, v in data.items():
        key = f"{prefix}_{k}" if prefix else k
        if isinstance(v, dict):
            out.update(_flatten_toml(v, key))
        else:
            out[key] = v
    return out


def _coerce(name: str, raw: object, template: object) -> object:
    """Convert *raw* to the type of the field default *template*."""
    if isinstance(template, bool):
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ConfigError(f"{name}: expected a boolean, got {raw!r}")
    if isinstance(template, int):
        try:
            return int(str(raw).strip())
        except ValueError as exc:
            raise ConfigError(f"{name}: expected an integer, got {raw!r}") from exc
    if isinstance(template, float):
        return parse_duration(name, raw)
    return str(raw)


_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*([smh]?)$")
_DURATION_UNITS = {"": 1.0, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(name: str, raw: object) -> float:
    """Seconds from ``90``, ``90s``, ``5m`` or ``1h``."""
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return float(raw)
    m = _DURATION_RE.match(str(raw).strip().lower())
    if not m:
        raise ConfigError(f"{name}: expected a duration such as 300, 90s or 5m, got {raw!r}")
    return float(m.group(1)) * _DURATION_UNITS[m.group(2)]


def load_config(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> AgentConfig:
    """Read *path* (if it exists), overlay environment variables, derive paths."""
    cfg = AgentConfig()
    defaults = {fld.name: getattr(cfg, fld.name) for fld in fields(cfg)}

    if path is not None and path.exists():
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as exc:
            raise ConfigError(f"Cannot read {path}: {exc}") from exc
        for k, v in _flatten_toml(data).items():
            if k in defaults:
                setattr(cfg, k, _coerce(k, v, defaults[k]))

    env = os.environ if environ is None else environ
    for var, field_name in _ENV_FIELDS.items():
        if var in env:
            setattr(cfg, field_name, _coerce(var, env[var], defaults[field_name]))

    return cfg.resolved()
