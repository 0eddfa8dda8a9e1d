"""wsagent status: show whether the workspace is running or in recovery."""

from __future__ import annotations

import argparse
from pathlib import Path

from wsagent.config import DEFAULT_CONFIG_PATH, load_config
from wsagent.devcontainer import build_error_marker_path
from wsagent.ready import marker_present, resolve_ready_status
from wsagent.state import load_state
from wsagent.volumes import volume_name_for_workspace


def add_parser(subparsers: argparse._SubParsersAction) -> None:
    p = subparsers.add_parser(
        "status",
        help="Show workspace status",
        description="Report running/recovery from the build-error marker, plus workspace paths.",
    )
    p.add_argument(
        "-c", "--config", default=None, metavar="PATH",
        help=f"Settings file (default: {DEFAULT_CONFIG_PATH})",
    )
    p.add_argument(
        "-q", "--quiet", action="store_true",
        help="Print only the status word",
    )
    p.set_defaults(func=run)


def run(args: argparse.Namespace) -> int:
    cfg = load_config(Path(args.config) if args.config else DEFAULT_CONFIG_PATH)
    status = resolve_ready_status(False, marker_present(cfg.workspace_dir))
    if args.quiet:
        print(status)
        return 0

    state = load_state(Path(cfg.bootstrap_state_path))
    volume = volume_name_for_workspace(cfg.workspace_id) if cfg.container_mode and cfg.use_volume else "(none)"
    print(f"  Status:       {status}")
    print(f"  Workspace:    {cfg.workspace_id or '(unset)'}")
    print(f"  Repository:   {cfg.repository or '(none)'}")
    print(f"  Host dir:     {cfg.workspace_dir}")
    print(f"  Volume:       {volume}")
    print(f"  Build log:    {build_error_marker_path(cfg.workspace_dir)}")
    print(f"  Credentials:  {'redeemed' if state is not None else 'not redeemed'} ({cfg.bootstrap_state_path})")
    return 0
