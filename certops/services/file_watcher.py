"""
File Watcher - observes the certificate directory and feeds a single serial
channel of path events to the registry.

watchdog delivers events on its observer thread; they are marshalled onto the
asyncio loop with call_soon_threadsafe and drained by one consumer task which
debounces per path and consults the ignore map before dispatch.
"""

import asyncio
import os
import threading
import time
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, Optional, Tuple

import structlog
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from certops.core.exceptions import CertOpsError
from certops.services.discovery import is_certificate_candidate

logger = structlog.get_logger()


class WatchEventKind(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


WatchHandler = Callable[[str, WatchEventKind], Awaitable[None]]


class CertificateEventHandler(FileSystemEventHandler):
    """Translates watchdog events into (path, kind) submissions."""

    def __init__(self, watcher: "FileWatcher"):
        self.watcher = watcher

    def on_created(self, event: FileSystemEvent):
        if not event.is_directory:
            self.watcher.submit_threadsafe(event.src_path, WatchEventKind.CREATED)

    def on_modified(self, event: FileSystemEvent):
        if not event.is_directory:
            self.watcher.submit_threadsafe(event.src_path, WatchEventKind.MODIFIED)

    def on_deleted(self, event: FileSystemEvent):
        if not event.is_directory:
            self.watcher.submit_threadsafe(event.src_path, WatchEventKind.DELETED)

    def on_moved(self, event: FileSystemEvent):
        if event.is_directory:
            return
        self.watcher.submit_threadsafe(event.src_path, WatchEventKind.DELETED)
        self.watcher.submit_threadsafe(event.dest_path, WatchEventKind.CREATED)


class FileWatcher:
    """Recursive, debounced watch on the certificate directory."""

    def __init__(
        self,
        root: str,
        handler: WatchHandler,
        debounce_ms: int = 100,
        ignore_window_ms: int = 5000,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.root = os.path.abspath(root)
        self.handler = handler
        self.debounce = debounce_ms / 1000.0
        self.ignore_window_ms = ignore_window_ms
        self.monotonic = monotonic

        self._queue: "asyncio.Queue[Tuple[str, WatchEventKind]]" = asyncio.Queue()
        self._pending: Dict[str, Tuple[WatchEventKind, float]] = {}
        self._ignored: Dict[str, float] = {}
        self._ignore_lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._observer: Optional[Observer] = None
        self._consumer: Optional[asyncio.Task] = None

    # Ignore windows

    def ignore_file_paths(self, paths: Iterable[str], duration_ms: Optional[int] = None) -> None:
        """Suppress events for paths for duration_ms (default: the ignore window)."""
        duration = (duration_ms if duration_ms is not None else self.ignore_window_ms) / 1000.0
        expiry = self.monotonic() + duration
        with self._ignore_lock:
            for path in paths:
                if path:
                    key = os.path.abspath(path)
                    self._ignored[key] = max(expiry, self._ignored.get(key, 0.0))

    def is_ignored(self, path: str) -> bool:
        now = self.monotonic()
        with self._ignore_lock:
            for key in [k for k, expiry in self._ignored.items() if expiry <= now]:
                del self._ignored[key]
            return os.path.abspath(path) in self._ignored

    # Event channel

    def submit(self, path: str, kind: WatchEventKind) -> None:
        """Queue an event; must be called on the event loop."""
        if not is_certificate_candidate(path):
            return
        self._queue.put_nowait((os.path.abspath(path), kind))

    def submit_threadsafe(self, path: str, kind: WatchEventKind) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self.submit, path, kind)

    def _accept(self, path: str, kind: WatchEventKind) -> None:
        self._pending[path] = (kind, self.monotonic() + self.debounce)

    async def _dispatch(self, path: str, kind: WatchEventKind) -> None:
        if self.is_ignored(path):
            logger.debug("Ignoring self-induced file event", path=path, kind=kind.value)
            return
        logger.debug("File event", path=path, kind=kind.value)
        try:
            await self.handler(path, kind)
        except (CertOpsError, OSError) as e:
            logger.warning("Failed to process file event", path=path, kind=kind.value, error=str(e))

    async def _dispatch_due(self, force: bool = False) -> None:
        now = self.monotonic()
        due = [p for p, (_, deadline) in self._pending.items() if force or deadline <= now]
        for path in sorted(due):
            kind, _ = self._pending.pop(path)
            await self._dispatch(path, kind)

    async def flush(self) -> None:
        """Drain queued events and dispatch everything pending immediately."""
        while not self._queue.empty():
            self._accept(*self._queue.get_nowait())
        await self._dispatch_due(force=True)

    async def _run(self) -> None:
        while True:
            timeout = None
            if self._pending:
                next_deadline = min(deadline for _, deadline in self._pending.values())
                timeout = max(0.0, next_deadline - self.monotonic())
            try:
                path, kind = await asyncio.wait_for(self._queue.get(), timeout)
                self._accept(path, kind)
            except asyncio.TimeoutError:
                pass
            await self._dispatch_due()

    # Lifecycle

    async def start(self) -> None:
        if self._observer is not None:
            return
        self._loop = asyncio.get_running_loop()
        os.makedirs(self.root, exist_ok=True)
        observer = Observer()
        observer.schedule(CertificateEventHandler(self), self.root, recursive=True)
        observer.start()
        self._observer = observer
        self._consumer = asyncio.create_task(self._run(), name="certops-file-watcher")
        logger.info("Watching certificate directory", path=self.root)

    async def stop(self) -> None:
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            await asyncio.to_thread(observer.join, 5)
        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass
        self._loop = None
        logger.info("File watcher stopped", path=self.root)

    @property
    def running(self) -> bool:
        return self._observer is not None
