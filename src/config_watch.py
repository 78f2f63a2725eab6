from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers.polling import PollingObserver

LOG = logging.getLogger(__name__)


class _ConfigChangeHandler(FileSystemEventHandler):
    def __init__(self, watcher: "ConfigWatcher") -> None:
        super().__init__()
        self.watcher = watcher

    def _maybe_notify(self, raw_path: str) -> None:
        if Path(raw_path).resolve() == self.watcher.config_path:
            self.watcher.notify()

    def on_created(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._maybe_notify(str(event.src_path))

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._maybe_notify(str(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._maybe_notify(str(event.dest_path))


class ConfigWatcher:
    """Calls ``on_change`` (debounced) whenever the config file is written."""

    def __init__(self, config_path: Path, on_change: Callable[[], None], debounce_seconds: float = 0.5) -> None:
        self.config_path = config_path.resolve()
        self.on_change = on_change
        self.debounce_seconds = debounce_seconds
        self._lock = threading.Lock()
        self._pending: threading.Timer | None = None
        self._observer: PollingObserver | None = None

    def notify(self) -> None:
        with self._lock:
            if self._pending is not None:
                self._pending.cancel()
            self._pending = threading.Timer(self.debounce_seconds, self._fire)
            self._pending.daemon = True
            self._pending.start()

    def _fire(self) -> None:
        with self._lock:
            self._pending = None
        LOG.info("Config changed: %s", self.config_path)
        self.on_change()

    def start(self) -> None:
        if self._observer is not None:
            return
        directory = self.config_path.parent
        if not directory.is_dir():
            LOG.warning("Config directory %s does not exist; not watching for changes", directory)
            return
        observer = PollingObserver(timeout=2)
        observer.schedule(_ConfigChangeHandler(self), str(directory), recursive=False)
        try:
            observer.start()
        except OSError as exc:
            LOG.warning("Config watcher failed to start for %s (%s)", directory, exc)
            return
        self._observer = observer

    def stop(self) -> None:
        with self._lock:
            if self._pending is not None:
                self._pending.cancel()
                self._pending = None
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=2)
        self._observer = None
