"""Crash-safe JSON snapshots for the relay's state files.

``sessions.json`` and ``projects.json`` are rewritten in full on every
change. Each rewrite goes to a sibling temp file that is fsynced and
renamed over the target, so a reader never sees a torn snapshot.
"""
from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any


def _sync_parent(path: Path) -> None:
    flags = os.O_RDONLY | getattr(os, "O_DIRECTORY", 0)
    try:
        fd = os.open(path.parent, flags)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        # Directory fsync is unsupported on some filesystems.
        pass
    finally:
        os.close(fd)


def atomic_write_json(path: Path, data: Any) -> None:
    """Serialize ``data`` (indented, UTF-8) and swap it in place of ``path``.

    Serialization happens before anything touches the disk, so a
    TypeError leaves the previous snapshot untouched.
    """
    encoded = json.dumps(data, indent=2, ensure_ascii=False).encode("utf-8")
    path.parent.mkdir(parents=True, exist_ok=True)

    with tempfile.NamedTemporaryFile(
        mode="wb", dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False,
    ) as tmp:
        tmp_path = Path(tmp.name)
        try:
            tmp.write(encoded)
            tmp.flush()
            os.fsync(tmp.fileno())
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
    try:
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise
    _sync_parent(path)


def read_json(path: Path, default: Any) -> Any:
    """Load JSON from ``path``; ``default`` when the file does not exist."""
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        return default
    return json.loads(raw.decode("utf-8"))
