"""Small filesystem and text helpers."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path


def atomic_write_bytes(path: Path, data: bytes, mode: int = 0o644) -> None:
    """Write *data* to *path* via a same-directory temp file and rename.

    The file never exists with partial content or looser permissions than
    *mode*. Parent directories must already exist.
    """
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.tmp-", dir=str(path.parent))
    try:
        os.fchmod(fd, mode)
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        Path(tmp_name).replace(path)
    finally:
        Path(tmp_name).unlink(missing_ok=True)


def atomic_write_text(path: Path, content: str, mode: int = 0o644) -> None:
    atomic_write_bytes(path, content.encode("utf-8"), mode)


def redact_secret(text: str, secret: str) -> str:
    """Replace every occurrence of *secret* in *text* with ``***``."""
    if not secret:
        return text
    return text.replace(secret, "***")


def first_non_empty(*values: str | None) -> str:
    for value in values:
        if value and value.strip():
            return value.strip()
    return ""
