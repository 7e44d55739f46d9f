"""File system helpers shared by the workspace, artifact and state stores.

All writes go through a temporary file in the target directory followed by
``os.replace``, so readers see either the old file or the new one.
"""

from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

TEMP_PREFIX = "."
TEMP_SUFFIX = ".tmp"


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string with a ``Z`` suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def mtime_iso(path: Path) -> str:
    """Modification time of ``path`` as an ISO-8601 UTC string."""
    stamp = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write ``data`` to ``path`` atomically.

    The parent directory must already exist. It is never created here, so a
    write into a deleted workspace fails instead of recreating it.
    """
    path = Path(path)
    fd, temp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f"{TEMP_PREFIX}{path.name}.",
        suffix=TEMP_SUFFIX,
    )
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def atomic_write_text(path: Path, content: str) -> None:
    """Write text atomically, preserving the exact characters given."""
    atomic_write_bytes(path, content.encode("utf-8"))


def atomic_write_json(path: Path, data: Any) -> None:
    atomic_write_text(path, json.dumps(data, indent=2) + "\n")


def read_json(path: Path) -> Any:
    """Read and parse a JSON file.

    Raises ``OSError`` if the file cannot be read and ``ValueError`` (via
    ``json.JSONDecodeError`` or ``UnicodeDecodeError``) if it cannot be parsed.
    """
    return json.loads(Path(path).read_text(encoding="utf-8"))


def is_hidden(path: Path) -> bool:
    return path.name.startswith(".")
