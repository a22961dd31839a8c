"""Atomic file writes.

Every filesystem mutation in Waypoint goes through atomic_write():

1. create a uniquely named temp file in the destination directory,
2. write + flush + fsync the data,
3. os.replace() it over the target,
4. fsync the directory so the rename itself survives a crash.

A reader therefore sees either the old file, no file, or the complete new
file, never a prefix of it.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path

__all__ = ["atomic_write", "fsync_directory"]


def atomic_write(path: Path, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """Atomically write data to path.

    The parent directory must already exist.

    Raises:
        NotADirectoryError: If the parent is not a directory
        OSError: If the write or rename fails (the temp file is removed)
    """
    target_parent = path.parent.resolve(strict=True)
    if not target_parent.is_dir():
        raise NotADirectoryError(f"{target_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(target_parent))
    temp_path = Path(temp_name)

    try:
        payload = data.encode(encoding) if isinstance(data, str) else data
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
            os.fsync(file_handle.fileno())

        os.replace(temp_path, target_parent / path.name)
        fsync_directory(target_parent)
    except BaseException:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def fsync_directory(path: Path) -> None:
    """Best-effort directory fsync for metadata durability after os.replace().

    Some platforms/filesystems do not support fsync on directories.
    """
    if os.name == "nt":
        return

    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY

    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return

    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)
