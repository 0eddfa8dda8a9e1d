"""Persisted bootstrap state and the caller-supplied provisioning state."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path

from wsagent.errors import StateError
from wsagent.log import get_logger
from wsagent.utils import atomic_write_text

logger = get_logger("state")


@dataclass
class BootstrapState:
    """Credentials redeemed for this VM's workspace; survives reboots."""

    workspace_id: str
    callback_token: str
    github_token: str = ""
    git_user_name: str = ""
    git_user_email: str = ""

    def is_valid(self) -> bool:
        return bool(self.workspace_id.strip() and self.callback_token.strip())

    def to_json(self) -> dict[str, str]:
        data = {
            "workspaceId": self.workspace_id,
            "callbackToken": self.callback_token,
            "githubToken": self.github_token,
            "gitUserName": self.git_user_name,
            "gitUserEmail": self.git_user_email,
        }
        return {k: v for k, v in data.items() if v}

    @classmethod
    def from_json(cls, data: dict) -> BootstrapState:
        def s(key: str) -> str:
            value = data.get(key)
            return value.strip() if isinstance(value, str) else ""

        return cls(
            workspace_id=s("workspaceId"),
            callback_token=s("callbackToken"),
            github_token=s("githubToken"),
            git_user_name=s("gitUserName"),
            git_user_email=s("gitUserEmail"),
        )


@dataclass
class ProjectEnvVar:
    key: str
    value: str


@dataclass
class ProjectFile:
    path: str
    content: str


@dataclass
class ProvisionState:
    """Per-request inputs for on-demand provisioning. Never persisted."""

    github_token: str = ""
    git_user_name: str = ""
    git_user_email: str = ""
    project_env_vars: list[ProjectEnvVar] = field(default_factory=list)
    project_files: list[ProjectFile] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: dict) -> ProvisionState:
        """Build from the control plane's camelCase payload."""
        if not isinstance(data, dict):
            raise StateError("provision state must be a JSON object")
        env_vars = [
            ProjectEnvVar(key=str(item.get("key", "")), value=str(item.get("value", "")))
            for item in data.get("projectEnvVars") or []
            if isinstance(item, dict)
        ]
        files = [
            ProjectFile(path=str(item.get("path", "")), content=str(item.get("content", "")))
            for item in data.get("projectFiles") or []
            if isinstance(item, dict)
        ]
        return cls(
            github_token=str(data.get("githubToken") or "").strip(),
            git_user_name=str(data.get("gitUserName") or "").strip(),
            git_user_email=str(data.get("gitUserEmail") or "").strip(),
            project_env_vars=env_vars,
            project_files=files,
        )

    def as_bootstrap_state(self, workspace_id: str, callback_token: str) -> BootstrapState:
        return BootstrapState(
            workspace_id=workspace_id,
            callback_token=callback_token,
            github_token=self.github_token.strip(),
            git_user_name=self.git_user_name.strip(),
            git_user_email=self.git_user_email.strip(),
        )


def load_state(path: Path) -> BootstrapState | None:
    """Return the persisted state, or None when absent or unusable.

    A file that cannot be parsed, or that lacks the workspace ID or callback
    token, is treated as absent so the caller redeems again.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise StateError(f"failed to read bootstrap state {path}: {exc}") from exc

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("Ignoring unreadable bootstrap state %s: %s", path, exc)
        return None
    if not isinstance(data, dict):
        logger.warning("Ignoring bootstrap state %s: not a JSON object", path)
        return None

    state = BootstrapState.from_json(data)
    if not state.is_valid():
        logger.warning("Ignoring bootstrap state %s: missing workspaceId or callbackToken", path)
        return None
    return state


def save_state(path: Path, state: BootstrapState) -> None:
    """Persist *state* atomically, readable only by the owning user."""
    try:
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        atomic_write_text(path, json.dumps(state.to_json()) + "\n", mode=0o600)
    except OSError as exc:
        raise StateError(f"failed to persist bootstrap state to {path}: {exc}") from exc
