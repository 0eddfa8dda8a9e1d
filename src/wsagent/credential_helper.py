"""Install the git credential helper that asks this agent for GitHub tokens."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from urllib.parse import quote_plus

from wsagent.config import AgentConfig
from wsagent.container import ContainerEngine
from wsagent.context import CancelContext
from wsagent.errors import CommandError, ContainerError, CredentialHelperError
from wsagent.git import is_github_repo
from wsagent.log import get_logger

logger = get_logger("credential_helper")

HELPER_INSTALL_PATH = "/usr/local/bin/git-credential-sam"

_SCRIPT_TEMPLATE = """\
#!/bin/sh
set -eu

action="${{1:-get}}"
if [ "$action" != "get" ]; then
  exit 0
fi

requested_host=""
while IFS= read -r line; do
  [ -z "$line" ] && break
  case "$line" in
    host=*) requested_host="${{line#host=}}" ;;
  esac
done

if [ -n "$requested_host" ] && [ "$requested_host" != "github.com" ] && [ "$requested_host" != "api.github.com" ]; then
  exit 0
fi

resolve_gateway() {{
  ip route 2>/dev/null | awk '/default/ {{print $3; exit}}'
}}

request_credentials() {{
  target="$1"
  curl -fsS --max-time 5 \\
    -H "Authorization: Bearer {token}" \\
    "http://${{target}}:{port}/git-credential{query}"
}}

gateway="$(resolve_gateway || true)"
for target in host.docker.internal "$gateway" 172.17.0.1; do
  [ -n "$target" ] || continue
  if request_credentials "$target" 2>/dev/null; then
    exit 0
  fi
done

exit 0
"""


def render_helper_script(cfg: AgentConfig) -> str:
    """Render the POSIX ``git-credential-sam`` script.

    Only github.com and api.github.com are served; other hosts get an empty
    answer.  The script always exits 0 so git falls back gracefully.
    """
    if not cfg.callback_token:
        raise CredentialHelperError("callback token is empty")
    if cfg.port <= 0:
        raise CredentialHelperError(f"invalid VM agent port: {cfg.port}")
    workspace_id = cfg.workspace_id.strip()
    query = f"?workspaceId={quote_plus(workspace_id)}" if workspace_id else ""
    return _SCRIPT_TEMPLATE.format(token=cfg.callback_token, port=cfg.port, query=query)


def ensure_git_credential_helper(ctx: CancelContext, engine: ContainerEngine, cfg: AgentConfig) -> bool:
    """Copy the helper into the devcontainer and register it system-wide.

    Returns False when skipped (no repository, or not hosted on GitHub).
    """
    if not cfg.repository:
        return False
    if not is_github_repo(cfg.repository):
        logger.info("Repository %s is not a GitHub repository, skipping git credential helper setup", cfg.repository)
        return False
    if not cfg.callback_token:
        raise CredentialHelperError("callback token is required for git credential helper setup")

    try:
        container_id = engine.find_container(ctx, cfg.container_label_key, cfg.container_label_value)
    except ContainerError as exc:
        raise CredentialHelperError(f"failed to locate devcontainer for credential helper setup: {exc}") from exc

    script = render_helper_script(cfg)
    fd, name = tempfile.mkstemp(prefix="git-credential-sam-")
    tmp = Path(name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(script)
        tmp.chmod(0o755)
        engine.copy_into(ctx, tmp, container_id, HELPER_INSTALL_PATH)
        # /usr/local/bin and /etc/gitconfig need root.
        engine.exec_checked(
            ctx, container_id, ["chmod", "0755", HELPER_INSTALL_PATH],
            "failed to chmod credential helper in devcontainer", user="root",
        )
        engine.exec_checked(
            ctx, container_id, ["git", "config", "--system", "credential.helper", HELPER_INSTALL_PATH],
            "failed to configure git credential helper in devcontainer", user="root",
        )
    except OSError as exc:
        raise CredentialHelperError(f"failed to write temporary credential helper script: {exc}") from exc
    except CommandError as exc:
        raise CredentialHelperError(str(exc)) from exc
    finally:
        tmp.unlink(missing_ok=True)

    logger.info("Configured git credential helper in devcontainer %s", container_id)
    return True
