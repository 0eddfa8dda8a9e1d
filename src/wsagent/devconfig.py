"""The devcontainer configuration document and ``read-configuration`` parsing.

The merged configuration comes from an external tool and may carry any
keys; :class:`DevcontainerConfig` keeps them all, in order, and only offers
typed access to the few this agent inspects or rewrites.
"""

from __future__ import annotations

import json
import shlex
from pathlib import Path
from typing import Iterator, MutableMapping

from wsagent import runner
from wsagent.context import CancelContext
from wsagent.errors import DevcontainerError

DEVCONTAINER_CLI = "devcontainer"

CONFIG_CANDIDATES = (
    Path(".devcontainer") / "devcontainer.json",
    Path(".devcontainer.json"),
)

# Plural keys reported by read-configuration -> the key `up` accepts.
LIFECYCLE_HOOKS = {
    "onCreateCommands": "onCreateCommand",
    "updateContentCommands": "updateContentCommand",
    "postCreateCommands": "postCreateCommand",
    "postStartCommands": "postStartCommand",
    "postAttachCommands": "postAttachCommand",
}

RUNTIME_SOURCE_KEYS = ("image", "dockerFile", "dockerComposeFile")


class DevcontainerConfig(MutableMapping):
    """Ordered, lossless view over a devcontainer.json document."""

    def __init__(self, data: dict | None = None) -> None:
        self._data: dict = dict(data or {})

    def __getitem__(self, key: str) -> object:
        return self._data[key]

    def __setitem__(self, key: str, value: object) -> None:
        self._data[key] = value

    def __delitem__(self, key: str) -> None:
        del self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"DevcontainerConfig({self._data!r})"

    def _str(self, key: str) -> str:
        value = self._data.get(key)
        return value.strip() if isinstance(value, str) else ""

    @property
    def remote_user(self) -> str:
        return self._str("remoteUser")

    @property
    def container_user(self) -> str:
        return self._str("containerUser")

    def has_runtime_source(self) -> bool:
        for key in RUNTIME_SOURCE_KEYS:
            value = self._data.get(key)
            if isinstance(value, str) and value.strip():
                return True
            if isinstance(value, list) and any(isinstance(v, str) and v.strip() for v in value):
                return True
        build = self._data.get("build")
        if isinstance(build, dict):
            dockerfile = build.get("dockerfile") or build.get("dockerFile")
            return isinstance(dockerfile, str) and bool(dockerfile.strip())
        return False

    def set_workspace_mount(self, mount: str, folder: str) -> None:
        self._data["workspaceMount"] = mount
        self._data["workspaceFolder"] = folder

    def normalize_lifecycle_hooks(self) -> None:
        """Rewrite plural hook arrays to the singular shell-string form.

        A singular key that is already present is never overwritten; the
        plural key is dropped either way.
        """
        for plural, singular in LIFECYCLE_HOOKS.items():
            if plural not in self._data:
                continue
            value = self._data.pop(plural)
            if singular in self._data:
                continue
            normalized = normalize_hook_value(value)
            if normalized is not None:
                self._data[singular] = normalized

    def to_json(self) -> str:
        return json.dumps(self._data, indent=2) + "\n"


def _hook_entry(entry: object) -> str:
    if isinstance(entry, str):
        return entry.strip()
    if isinstance(entry, list):
        return shlex.join(str(part) for part in entry)
    if isinstance(entry, dict):
        # Named commands run in parallel under `up`; here they run in order.
        parts = [p for p in (_hook_entry(v) for v in entry.values()) if p]
        if len(parts) > 1:
            return "(" + "; ".join(parts) + ")"
        return parts[0] if parts else ""
    return ""


def normalize_hook_value(value: object) -> object:
    """Collapse one lifecycle hook value into a single shell command string.

    ``["a", "b"]`` -> ``"a && b"``; ``["a"]`` -> ``"a"``.  Values that are
    already singular pass through unchanged.
    """
    if isinstance(value, list):
        parts = [p for p in (_hook_entry(v) for v in value) if p]
        if not parts:
            return None
        return parts[0] if len(parts) == 1 else " && ".join(parts)
    return value


def has_devcontainer_config(workspace_dir: Path | str) -> bool:
    """True when the repository ships its own devcontainer configuration."""
    root = Path(workspace_dir)
    return any((root / candidate).is_file() for candidate in CONFIG_CANDIDATES)


def parse_read_configuration_output(output: str) -> DevcontainerConfig:
    """Extract ``mergedConfiguration`` from ``read-configuration`` output.

    The CLI interleaves log lines and unrelated JSON objects with the result,
    and the result itself may span several lines.  The last object with
    ``"outcome": "success"`` and a merged configuration wins.
    """
    decoder = json.JSONDecoder()
    merged: dict | None = None
    pos = output.find("{")
    while pos != -1:
        try:
            obj, end = decoder.raw_decode(output, pos)
        except json.JSONDecodeError:
            pos = output.find("{", pos + 1)
            continue
        if (
            isinstance(obj, dict)
            and obj.get("outcome") == "success"
            and isinstance(obj.get("mergedConfiguration"), dict)
        ):
            merged = obj["mergedConfiguration"]
        pos = output.find("{", end)
    if merged is None:
        raise DevcontainerError("read-configuration output contained no successful merged configuration")
    return DevcontainerConfig(merged)


def read_merged_configuration(ctx: CancelContext, workspace_dir: str) -> DevcontainerConfig:
    """Run ``devcontainer read-configuration`` for *workspace_dir*."""
    result = runner.run_command(
        ctx,
        DEVCONTAINER_CLI,
        ["read-configuration", "--workspace-folder", workspace_dir, "--include-merged-configuration"],
    )
    if not result.ok:
        raise DevcontainerError(
            f"devcontainer read-configuration failed: exit status {result.returncode}: {result.text}"
        )
    return parse_read_configuration_output(result.output)
