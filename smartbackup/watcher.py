from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from smartbackup.config import BackupConfig
from smartbackup.filters import PathFilter, build_path_filter


logger = logging.getLogger(__name__)


class RunGuard:
    """Admits one run at a time; a trigger arriving mid-run is dropped, not queued."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def run(self, func: Callable[[], None]) -> bool:
        if not self._lock.acquire(blocking=False):
            logger.info("Previous run still in flight; trigger dropped.")
            return False
        try:
            func()
        finally:
            self._lock.release()
        return True


class Debouncer:
    def __init__(self, delay_seconds: float, callback: Callable[[], None]) -> None:
        self.delay_seconds = delay_seconds
        self.callback = callback
        self._timer: threading.Timer | None = None
        self._lock = threading.Lock()

    def schedule(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.delay_seconds, self.callback)
            self._timer.daemon = True
            self._timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


class _SourceEventHandler(FileSystemEventHandler):
    def __init__(self, root: Path, path_filter: PathFilter, on_change: Callable[[], None]) -> None:
        super().__init__()
        self.root = root
        self.path_filter = path_filter
        self.on_change = on_change

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in {"opened", "closed", "closed_no_write"}:
            return
        paths = [event.src_path, getattr(event, "dest_path", "") or ""]
        if any(self._relevant(str(path)) for path in paths if path):
            self.on_change()

    def _relevant(self, path: str) -> bool:
        try:
            inner = Path(path).resolve().relative_to(self.root).as_posix()
        except ValueError:
            return False
        return self.path_filter.matches(inner, f"{self.root.name}/{inner}")


class SourceWatcher:
    def __init__(self, config: BackupConfig, run_once: Callable[[], None]) -> None:
        self.config = config
        self.guard = RunGuard()
        self.debouncer = Debouncer(config.debounce_seconds, self._fire)
        self._run_once = run_once
        self._observer: BaseObserver | None = None

    def _fire(self) -> None:
        try:
            self.guard.run(self._run_once)
        except Exception:
            logger.exception("Backup run triggered by file changes failed.")

    def start(self) -> None:
        path_filter = build_path_filter(self.config.ignore)
        observer = Observer()
        for source in self.config.sources:
            root = source.resolve()
            if not root.is_dir():
                logger.warning("Source does not exist, not watching: %s", root)
                continue
            handler = _SourceEventHandler(root, path_filter, self.debouncer.schedule)
            observer.schedule(handler, str(root), recursive=True)
        observer.start()
        self._observer = observer
        logger.info(
            "Watching %s (debounce %ss)",
            ", ".join(str(source) for source in self.config.sources),
            self.config.debounce_seconds,
        )

    def stop(self) -> None:
        self.debouncer.cancel()
        if not self._observer:
            return
        try:
            self._observer.stop()
            self._observer.join(timeout=5)
        finally:
            self._observer = None

    def wait(self) -> None:
        observer = self._observer
        while observer is not None and observer.is_alive():
            observer.join(timeout=1.0)
