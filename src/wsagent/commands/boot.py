"""wsagent boot: run the whole-VM bootstrap pipeline."""

from __future__ import annotations

import argparse
from pathlib import Path

from wsagent.bootlog import BootLogReporter
from wsagent.config import DEFAULT_CONFIG_PATH, load_config, parse_duration
from wsagent.orchestrator import Orchestrator


def add_parser(subparsers: argparse._SubParsersAction) -> None:
    p = subparsers.add_parser(
        "boot",
        help="Bootstrap this VM's workspace",
        description=(
            "Redeem the bootstrap token, clone the repository, build the devcontainer "
            "and report readiness to the control plane. Safe to re-run after a reboot."
        ),
    )
    p.add_argument(
        "-c", "--config", default=None, metavar="PATH",
        help=f"Settings file (default: {DEFAULT_CONFIG_PATH})",
    )
    p.add_argument(
        "--timeout", default=None, metavar="DURATION",
        help="Abort the whole bootstrap after DURATION (e.g. 900, 15m)",
    )
    p.set_defaults(func=run)


def run(args: argparse.Namespace) -> int:
    cfg = load_config(Path(args.config) if args.config else DEFAULT_CONFIG_PATH)
    timeout = parse_duration("--timeout", args.timeout) if args.timeout else cfg.bootstrap_timeout
    ctx = args.ctx.with_timeout(timeout) if timeout > 0 else args.ctx

    reporter = BootLogReporter(cfg.control_plane_url, cfg.workspace_id)
    try:
        status = Orchestrator(cfg, reporter=reporter).run(ctx)
    finally:
        reporter.close()

    if status is None:
        print("skipped (no bootstrap token configured)")
    else:
        print(status)
    return 0
