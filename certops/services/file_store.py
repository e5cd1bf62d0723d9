"""
Writes certificate material under the certificate directory.

Every write first asks the file watcher to ignore the affected paths, then
optionally backs up the old file and replaces it atomically.
"""

import asyncio
import os
import re
import shutil
from typing import Callable, Iterable, List, Optional

import structlog

from certops.core.exceptions import ConflictError, StorageError
from certops.core.storage import Clock, atomic_write, utc_now

logger = structlog.get_logger()

IgnoreCallback = Callable[[Iterable[str], Optional[int]], None]

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def safe_filename(name: str) -> str:
    """File stem derived from a display name or CN."""
    stem = _UNSAFE.sub("_", name.strip()).strip("._")
    return stem or "certificate"


class CertificateFileStore:
    """Atomic, watcher-aware writes of certificate files."""

    def __init__(self, certs_dir: str, clock: Optional[Clock] = None, ignore: Optional[IgnoreCallback] = None):
        self.certs_dir = os.path.abspath(certs_dir)
        self.clock = clock or utc_now
        self._ignore = ignore

    def set_ignore_callback(self, ignore: Optional[IgnoreCallback]) -> None:
        self._ignore = ignore

    def ignore(self, paths: Iterable[str], duration_ms: Optional[int] = None) -> None:
        if self._ignore is not None:
            self._ignore([p for p in paths if p], duration_ms)

    def path_for(self, name: str, extension: str) -> str:
        return os.path.join(self.certs_dir, f"{safe_filename(name)}{extension}")

    def new_paths(self, name: str, *extensions: str) -> List[str]:
        """
        Paths for a new certificate's files.

        Raises:
            ConflictError: If any of them already exists
        """
        paths = [self.path_for(name, ext) for ext in extensions]
        for path in paths:
            if os.path.exists(path):
                raise ConflictError(f"File already exists: {path}")
        return paths

    def backup_path(self, path: str) -> str:
        """Unused backup name; writes within the same second get a .N suffix."""
        base = f"{path}.bak.{self.clock().strftime('%Y%m%d%H%M%S')}"
        candidate, n = base, 0
        while os.path.exists(candidate):
            n += 1
            candidate = f"{base}.{n}"
        return candidate

    def _write(self, path: str, data: bytes, mode: Optional[int], backup: bool) -> Optional[str]:
        backup_file = None
        if backup and os.path.exists(path):
            backup_file = self.backup_path(path)
            try:
                shutil.copy2(path, backup_file)
            except OSError as e:
                raise StorageError(f"Failed to back up {path}: {e}") from e
        atomic_write(path, data, mode=mode)
        return backup_file

    async def write(self, path: str, data: bytes, mode: Optional[int] = None, backup: bool = False) -> Optional[str]:
        """
        Atomically write data to path.

        Returns:
            The backup file path when a backup was taken
        """
        path = os.path.abspath(path)
        self.ignore([path])
        backup_file = await asyncio.to_thread(self._write, path, data, mode, backup)
        logger.info("Wrote certificate file", path=path, backup=backup_file)
        return backup_file

    async def read(self, path: str) -> bytes:
        try:
            return await asyncio.to_thread(_read_bytes, path)
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}") from e

    async def delete(self, paths: Iterable[str]) -> List[str]:
        """Remove files, tolerating ones that are already gone."""
        paths = [os.path.abspath(p) for p in paths if p]
        self.ignore(paths)
        removed = await asyncio.to_thread(_remove_files, paths)
        if removed:
            logger.info("Deleted certificate files", paths=removed)
        return removed


def _read_bytes(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def _remove_files(paths: List[str]) -> List[str]:
    removed = []
    for path in paths:
        try:
            os.remove(path)
            removed.append(path)
        except FileNotFoundError:
            continue
        except OSError as e:
            raise StorageError(f"Failed to delete {path}: {e}") from e
    return removed
