"""Full argparse tree with subparsers, dispatcher, and main() entry point."""

from __future__ import annotations

import argparse
import signal
import sys

from wsagent import __version__
from wsagent.context import CancelContext
from wsagent.errors import WsAgentError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wsagent",
        description="Bootstrap a git-backed devcontainer workspace on this VM.",
        epilog=(
            "common switches:\n"
            "  -v, --verbose       show debug output (external commands, HTTP)\n"
            "  -c, --config PATH   read settings from PATH (default: /etc/wsagent/wsagent.toml)\n"
            "\n"
            "run 'wsagent COMMAND --help' for subcommand-specific options"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    from wsagent.commands.boot import add_parser as add_boot_parser
    from wsagent.commands.prepare import add_parser as add_prepare_parser
    from wsagent.commands.status import add_parser as add_status_parser
    from wsagent.commands.volume import add_parser as add_volume_parser

    add_boot_parser(subparsers)
    add_prepare_parser(subparsers)
    add_status_parser(subparsers)
    add_volume_parser(subparsers)

    return parser


def _install_signal_handlers(ctx: CancelContext) -> None:
    def handler(signum: int, frame: object) -> None:
        ctx.cancel(f"received {signal.Signals(signum).name}")

    signal.signal(signal.SIGTERM, handler)


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()

    import argcomplete
    argcomplete.autocomplete(parser)

    effective = list(argv if argv is not None else sys.argv[1:])

    # Extract -v/--verbose before subcommand dispatch.
    verbose = "-v" in effective or "--verbose" in effective
    effective = [a for a in effective if a not in ("-v", "--verbose")]

    from wsagent.log import setup_logging, shutdown_logging
    setup_logging(verbose=verbose)

    if effective and effective[0] in ("-h", "--help"):
        parser.print_help()
        sys.exit(0)
    if effective and effective[0] == "--version":
        print(f"wsagent {__version__}")
        sys.exit(0)

    args = parser.parse_args(effective)
    func = getattr(args, "func", None)
    if func is None:
        parser.print_help()
        sys.exit(0)

    args.ctx = CancelContext.background()
    _install_signal_handlers(args.ctx)

    try:
        rc = func(args)
    except WsAgentError as e:
        print(f"Error: {e}", file=sys.stderr)
        rc = 1
    except KeyboardInterrupt:
        args.ctx.cancel("interrupted")
        print()
        rc = 130
    finally:
        shutdown_logging()

    sys.exit(rc)
