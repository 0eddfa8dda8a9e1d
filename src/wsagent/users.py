"""Which user owns the workspace inside the devcontainer, and making it so."""

from __future__ import annotations

from typing import Callable

from wsagent.config import AgentConfig
from wsagent.container import ContainerEngine
from wsagent.context import CancelContext
from wsagent.devconfig import read_merged_configuration
from wsagent.errors import Cancelled, CommandError, ContainerError, WsAgentError
from wsagent.log import get_logger

logger = get_logger("users")


def _user_from_entry(entry: object) -> str:
    if not isinstance(entry, dict):
        return ""
    for key in ("remoteUser", "containerUser"):
        value = entry.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def user_from_metadata(metadata: object) -> str:
    """User named by a ``devcontainer.metadata`` label; later entries win."""
    if isinstance(metadata, list):
        for entry in reversed(metadata):
            user = _user_from_entry(entry)
            if user:
                return user
        return ""
    return _user_from_entry(metadata)


class ContainerUserResolver:
    """Ordered cascade of user lookups; the first non-empty answer wins.

    1. operator override (``container_user``)
    2. ``remoteUser``/``containerUser`` from the merged configuration
    3. the running container's ``devcontainer.metadata`` label
    4. ``id -un`` inside the container

    With ``default_config`` the container was built from the generated
    default configuration, so step 2 reads ``default_devcontainer_remote_user``
    instead of the repository's configuration.
    """

    def __init__(self, engine: ContainerEngine, cfg: AgentConfig, *, default_config: bool = False) -> None:
        self.engine = engine
        self.cfg = cfg
        self.default_config = default_config

    def lookups(self, container_id: str) -> list[tuple[str, Callable[[CancelContext], str]]]:
        return [
            ("override", lambda ctx: self.cfg.container_user.strip()),
            ("merged configuration", self._from_merged_config),
            ("metadata label", lambda ctx: self._from_metadata(ctx, container_id)),
            ("id -un", lambda ctx: self._from_exec(ctx, container_id)),
        ]

    def _from_merged_config(self, ctx: CancelContext) -> str:
        if self.default_config:
            return self.cfg.default_devcontainer_remote_user.strip()
        merged = read_merged_configuration(ctx, self.cfg.workspace_dir)
        return merged.remote_user or merged.container_user

    def _from_metadata(self, ctx: CancelContext, container_id: str) -> str:
        return user_from_metadata(self.engine.metadata_label(ctx, container_id))

    def _from_exec(self, ctx: CancelContext, container_id: str) -> str:
        result = self.engine.exec(ctx, container_id, ["id", "-un"])
        if not result.ok:
            raise ContainerError(f"id -un failed: {result.text}")
        return result.text

    def resolve(self, ctx: CancelContext, container_id: str) -> str:
        for source, lookup in self.lookups(container_id):
            try:
                user = lookup(ctx)
            except Cancelled:
                raise
            except (WsAgentError, ValueError) as exc:
                logger.debug("Container user lookup via %s failed: %s", source, exc)
                continue
            if not user:
                continue
            if user == "root":
                logger.warning("Devcontainer user resolved to root via %s; workspace files will be root-owned", source)
            else:
                logger.info("Resolved devcontainer user %r via %s", user, source)
            return user
        logger.warning("Unable to detect devcontainer user; using the container's default user")
        return ""


def _numeric_id(text: str, what: str, user: str) -> int:
    try:
        return int(text.strip())
    except ValueError as exc:
        raise ContainerError(f"invalid {what} output for {user} in devcontainer: {text.strip()!r}") from exc


def reconcile_ownership(
    ctx: CancelContext,
    engine: ContainerEngine,
    container_id: str,
    user: str,
    path: str,
) -> bool:
    """Make *path* in the container owned by *user*, recursively.

    Runs as root throughout.  Returns True when a chown was issued; the
    recursive chown is skipped when the owner already matches.
    """
    if not user or user == "root":
        return False

    def as_root(args: list[str], what: str) -> str:
        try:
            return engine.exec_checked(ctx, container_id, args, what, user="root")
        except CommandError as exc:
            raise ContainerError(str(exc)) from exc

    uid = _numeric_id(as_root(["id", "-u", user], f"failed to get uid for {user}"), "uid", user)
    gid = _numeric_id(as_root(["id", "-g", user], f"failed to get gid for {user}"), "gid", user)
    owner = f"{uid}:{gid}"

    current = as_root(["stat", "-c", "%u:%g", path], f"failed to stat {path}")
    if current == owner:
        logger.debug("%s already owned by %s (%s)", path, user, owner)
        return False

    logger.info("Changing ownership of %s from %s to %s (%s)", path, current, owner, user)
    as_root(["chown", "-R", owner, path], f"failed to chown {path}")
    return True
