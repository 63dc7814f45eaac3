"""
Atomic file writing with fsync, so a crash never leaves a truncated
certificate or PFX behind.

Pattern:
  1. Write to a temporary file in the same directory (same filesystem)
  2. Apply the requested permission bits while the file is still private
  3. fsync, then rename over the destination (atomic on POSIX)
"""
from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Optional


def atomic_write_bytes(path: Path, content: bytes, mode: Optional[int] = None) -> None:
    """
    Atomically write *content* to *path*.

    *mode* (e.g. 0o600 for key material) is set on the temp file before the
    rename, so the destination never exists with looser permissions.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))

    try:
        with os.fdopen(fd, "wb") as f:
            if mode is not None:
                os.fchmod(f.fileno(), mode)
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def atomic_write_text(path: Path, content: str, encoding: str = "utf-8", mode: Optional[int] = None) -> None:
    atomic_write_bytes(path, content.encode(encoding), mode=mode)
