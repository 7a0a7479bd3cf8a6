"""Hashing helpers and crash-safe JSON writes for taskloop documents."""

from __future__ import annotations

import contextlib
import hashlib
import json
import os
import tempfile
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pathlib import Path


def pretty_dumps(obj: Any) -> str:
    """Serialize with two-space indentation and a trailing newline."""
    return json.dumps(obj, indent=2, ensure_ascii=False) + "\n"


def sha256_text(text: str) -> str:
    """Compute SHA-256 for UTF-8 text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def short_id(text: str, length: int = 10) -> str:
    """Deterministic short identifier: leading hex chars of the SHA-1 digest."""
    return hashlib.sha1(text.encode("utf-8")).hexdigest()[:length]


def atomic_write_text(path: Path, text: str) -> None:
    """Write text through a sibling temp file and an atomic rename.

    A failure at any point before the rename leaves the original file untouched
    and removes the temp file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        suffix=".tmp",
        prefix=f"{path.stem}_",
        dir=path.parent,
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise


def write_json_atomic(path: Path, obj: Any) -> None:
    """Write indented JSON atomically."""
    atomic_write_text(path, pretty_dumps(obj))
