"""
Atomic file writes and small time helpers shared by the stores.
"""

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from certops.core.exceptions import StorageError

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def fsync_directory(directory: str) -> None:
    """Flush a directory entry so a completed rename survives a crash."""
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        # Some filesystems refuse fsync on directories
        pass
    finally:
        os.close(fd)


def atomic_write(path: str, data: bytes, mode: Optional[int] = None) -> None:
    """
    Write data to path atomically.

    The data is written to a temporary file in the same directory, fsynced,
    then renamed over the target. A crash at any point leaves either the old
    or the new content in place.

    Args:
        path: Target file path
        data: Bytes to write
        mode: Optional permission bits for the new file

    Raises:
        StorageError: If any step fails
    """
    directory = os.path.dirname(os.path.abspath(path)) or "."
    tmp_path = None
    try:
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{os.path.basename(path)}.", suffix=".tmp", dir=directory
        )
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp_path, mode)
        elif os.path.exists(path):
            os.chmod(tmp_path, os.stat(path).st_mode & 0o777)
        else:
            os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, path)
        tmp_path = None
        fsync_directory(directory)
    except OSError as e:
        raise StorageError(f"Failed to write {path}: {e}") from e
    finally:
        if tmp_path and os.path.exists(tmp_path):
            try:
                os.unlink(tmp_path)
            except OSError:
                pass


def atomic_write_json(path: str, payload: Any, mode: Optional[int] = None) -> None:
    """Serialize payload as indented JSON and write it atomically."""
    data = json.dumps(payload, indent=2, default=str).encode("utf-8")
    atomic_write(path, data, mode=mode)
