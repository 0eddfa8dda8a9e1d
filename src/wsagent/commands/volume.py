"""wsagent volume: create or remove a workspace's named volume."""

from __future__ import annotations

import argparse
from pathlib import Path

from wsagent.config import DEFAULT_CONFIG_PATH, load_config
from wsagent.container import ContainerEngine
from wsagent.errors import ConfigError
from wsagent.volumes import ensure_volume_ready, remove_volume, volume_name_for_workspace


def add_parser(subparsers: argparse._SubParsersAction) -> None:
    p = subparsers.add_parser(
        "volume",
        help="Manage workspace volumes",
        description="Create, remove or name the per-workspace volume (sam-ws-<workspace id>).",
    )
    p.add_argument(
        "action", choices=["create", "remove", "name"],
        help="What to do with the volume",
    )
    p.add_argument(
        "-w", "--workspace-id", default=None,
        help="Workspace ID (default: WORKSPACE_ID from the settings)",
    )
    p.add_argument(
        "-c", "--config", default=None, metavar="PATH",
        help=f"Settings file (default: {DEFAULT_CONFIG_PATH})",
    )
    p.set_defaults(func=run)


def run(args: argparse.Namespace) -> int:
    cfg = load_config(Path(args.config) if args.config else DEFAULT_CONFIG_PATH)
    workspace_id = (args.workspace_id or cfg.workspace_id).strip()
    if not workspace_id:
        raise ConfigError("a workspace ID is required (--workspace-id or WORKSPACE_ID)")

    if args.action == "name":
        print(volume_name_for_workspace(workspace_id))
        return 0

    engine = ContainerEngine(cfg.docker_cmd)
    if args.action == "create":
        name = ensure_volume_ready(args.ctx, engine, workspace_id)
        print(f"Created {name}")
    else:
        name = remove_volume(args.ctx, engine, workspace_id)
        print(f"Removed {name}")
    return 0
