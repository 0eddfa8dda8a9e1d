"""Process logging: one handler on the ``wsagent`` logger, set up by the CLI."""

from __future__ import annotations

import logging
import sys
from typing import TextIO

_ROOT = "wsagent"
_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(verbose: bool = False, stream: TextIO | None = None) -> logging.Logger:
    """Attach a stderr handler to the package logger.

    Safe to call more than once; the previous handler is replaced so that
    repeated CLI invocations in one process do not duplicate output.
    """
    root = logging.getLogger(_ROOT)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(_FORMAT))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    return root


def shutdown_logging() -> None:
    """Flush and detach the package handlers."""
    root = logging.getLogger(_ROOT)
    for handler in list(root.handlers):
        handler.flush()
        root.removeHandler(handler)
        handler.close()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{_ROOT}.{name}")
