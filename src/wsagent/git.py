"""Repository URL helpers and system-level git identity inside the devcontainer."""

from __future__ import annotations

from urllib.parse import quote, urlsplit, urlunsplit

from wsagent.config import AgentConfig
from wsagent.container import ContainerEngine
from wsagent.context import CancelContext
from wsagent.errors import CommandError, ContainerError
from wsagent.log import get_logger
from wsagent.state import BootstrapState

logger = get_logger("git")

GITHUB_HOST = "github.com"
PLACEHOLDER_USER_NAME = "workspace-user"


def normalize_repo_url(repo: str) -> str:
    """Turn ``owner/name`` shorthand into a clone URL ending in ``.git``.

    >>> normalize_repo_url("octo/repo")
    'https://github.com/octo/repo.git'
    """
    repo = repo.strip()
    if repo.startswith(("http://", "https://")):
        return repo if repo.endswith(".git") else repo + ".git"

    for prefix in ("github.com/", "https://github.com/", "http://github.com/"):
        if repo.startswith(prefix):
            repo = repo[len(prefix):]
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    return f"https://{GITHUB_HOST}/{repo}.git"


def with_github_token(repo_url: str, token: str) -> str:
    """Embed *token* as ``x-access-token`` credentials for https github.com URLs only."""
    if not token:
        return repo_url
    parts = urlsplit(repo_url)
    if parts.scheme != "https" or (parts.hostname or "").lower() != GITHUB_HOST:
        return repo_url
    netloc = f"x-access-token:{quote(token, safe='')}@{parts.hostname}"
    if parts.port:
        netloc += f":{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def is_github_repo(repo: str) -> bool:
    if not repo.strip():
        return False
    host = urlsplit(normalize_repo_url(repo)).hostname or ""
    return host.lower() == GITHUB_HOST


def resolve_git_identity(state: BootstrapState | None) -> tuple[str, str] | None:
    """Return ``(name, email)``, or None when no usable email is known."""
    if state is None:
        return None
    email = state.git_user_email.strip()
    if not email:
        return None
    name = state.git_user_name.strip()
    if name:
        return name, email
    at = email.find("@")
    if at > 0:
        return email[:at], email
    return PLACEHOLDER_USER_NAME, email


def ensure_git_identity(
    ctx: CancelContext,
    engine: ContainerEngine,
    cfg: AgentConfig,
    state: BootstrapState | None,
) -> bool:
    """Set system ``user.name``/``user.email`` in the devcontainer.

    Returns False (after a warning) when no usable email is available.
    """
    identity = resolve_git_identity(state)
    if identity is None:
        logger.warning("No git user email available, skipping git identity setup")
        return False
    name, email = identity

    try:
        container_id = engine.find_container(ctx, cfg.container_label_key, cfg.container_label_value)
    except ContainerError as exc:
        raise ContainerError(f"failed to locate devcontainer for git identity setup: {exc}") from exc

    for key, value in (("user.email", email), ("user.name", name)):
        try:
            engine.exec_checked(
                ctx, container_id, ["git", "config", "--system", key, value],
                f"failed to configure git {key} in devcontainer",
                user="root",
            )
        except CommandError as exc:
            raise ContainerError(str(exc)) from exc

    logger.info("Configured git identity in devcontainer %s", container_id)
    return True
