"""wsagent prepare: provision an on-demand workspace in node mode."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from wsagent.bootlog import BootLogReporter
from wsagent.config import DEFAULT_CONFIG_PATH, load_config
from wsagent.errors import ConfigError
from wsagent.orchestrator import Orchestrator
from wsagent.ready import STATUS_RECOVERY, STATUS_RUNNING
from wsagent.state import ProvisionState


def add_parser(subparsers: argparse._SubParsersAction) -> None:
    p = subparsers.add_parser(
        "prepare",
        help="Provision a workspace on demand",
        description=(
            "Clone, build and configure one workspace using the callback token from "
            "the environment and a provisioning payload (JSON) from FILE or stdin."
        ),
    )
    p.add_argument(
        "-c", "--config", default=None, metavar="PATH",
        help=f"Settings file (default: {DEFAULT_CONFIG_PATH})",
    )
    p.add_argument(
        "--state", default="-", metavar="FILE",
        help="Provisioning payload with githubToken, gitUserName, gitUserEmail, "
             "projectEnvVars and projectFiles ('-' reads stdin, the default)",
    )
    p.add_argument(
        "--no-state", action="store_true",
        help="Provision without a payload",
    )
    p.set_defaults(func=run)


def _read_provision_state(source: str) -> ProvisionState:
    try:
        raw = sys.stdin.read() if source == "-" else Path(source).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read provisioning payload {source}: {exc}") from exc
    if not raw.strip():
        return ProvisionState()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid provisioning payload: {exc}") from exc
    return ProvisionState.from_json(data)


def run(args: argparse.Namespace) -> int:
    cfg = load_config(Path(args.config) if args.config else DEFAULT_CONFIG_PATH)
    provision = ProvisionState() if args.no_state else _read_provision_state(args.state)

    reporter = BootLogReporter(cfg.control_plane_url, cfg.workspace_id)
    try:
        recovery = Orchestrator(cfg, reporter=reporter).prepare_workspace(args.ctx, provision)
    finally:
        reporter.close()

    print(STATUS_RECOVERY if recovery else STATUS_RUNNING)
    return 0
