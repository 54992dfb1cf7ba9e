import fnmatch
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from loguru import logger
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .backup_manager import BackupOrchestrator
from .models import BackupOptions, BackupResult


@dataclass
class WatchConfig:
    change_threshold: int = 50  # Back up after N changed paths
    backup_interval: timedelta = field(
        default_factory=lambda: timedelta(hours=1)
    )  # Max time between auto backups
    debounce_seconds: float = 30.0  # Quiet period after the last change
    ignore_patterns: set[str] = field(
        default_factory=lambda: {"*.tmp", "*.swp", "*.lock", ".DS_Store", "__pycache__"}
    )


class _ChangeHandler(FileSystemEventHandler):
    def __init__(self, watcher: "BackupWatcher"):
        self.watcher = watcher

    def on_any_event(self, event: FileSystemEvent):
        if event.is_directory:
            return

        file_path = Path(str(event.src_path))

        for pattern in self.watcher.config.ignore_patterns:
            if any(fnmatch.fnmatch(part, pattern) for part in file_path.parts):
                logger.debug(f"Ignoring {event.event_type} event for {file_path} (matches {pattern})")
                return

        self.watcher.record_change(file_path, event.event_type)


class BackupWatcher:
    """Re-run backups of a directory once filesystem changes settle."""

    def __init__(
        self,
        orchestrator: BackupOrchestrator,
        source_path: str | Path,
        options: BackupOptions | None = None,
        config: WatchConfig | None = None,
    ):
        self.orchestrator = orchestrator
        self.source_path = Path(source_path)
        self.options = options
        self.config = config or WatchConfig()

        self.observer = Observer()
        self.handler = _ChangeHandler(self)
        self._changes: dict[str, dict[str, Any]] = {}
        self._last_change_time: datetime | None = None
        self._last_backup_time: datetime | None = None
        self._change_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

        self.last_result: BackupResult | None = None
        self.on_backup: Callable[[BackupResult], None] | None = None
        self.on_change: Callable[[Path, str], None] | None = None

    @property
    def pending_changes(self) -> int:
        with self._change_lock:
            return len(self._changes)

    def start(self):
        if not self.source_path.is_dir():
            raise FileNotFoundError(f"Source path does not exist: {self.source_path}")

        self.observer.schedule(self.handler, str(self.source_path), recursive=True)
        self.observer.start()

        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()
        logger.info(f"Watching '{self.source_path}' for changes")

    def stop(self):
        logger.info("Stopping watcher...")
        self._stop_event.set()

        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)

        self.observer.stop()
        self.observer.join()
        logger.info("Watcher stopped")

    def record_change(self, file_path: Path, event_type: str):
        with self._change_lock:
            now = datetime.now()
            self._changes[str(file_path)] = {"event_type": event_type, "timestamp": now}
            self._last_change_time = now

        logger.debug(f"File {event_type}: {file_path}")
        if self.on_change:
            try:
                self.on_change(file_path, event_type)
            except Exception as e:
                logger.error(f"Error in change callback: {e}")

    def _loop(self):
        while not self._stop_event.is_set():
            try:
                self.check()
            except Exception as e:
                logger.error(f"Error in watch loop: {e}")
            time.sleep(1.0)

    def check(self, now: datetime | None = None) -> BackupResult | None:
        """Back up if the debounce window has passed and a trigger applies."""
        now = now or datetime.now()

        with self._change_lock:
            if not self._changes or not self._last_change_time:
                return None

            if now - self._last_change_time < timedelta(seconds=self.config.debounce_seconds):
                return None

            change_count = len(self._changes)
            if change_count >= self.config.change_threshold:
                reason = f"change threshold ({change_count} changes)"
            elif self._last_backup_time is None:
                reason = "initial auto backup"
            elif now - self._last_backup_time >= self.config.backup_interval:
                reason = f"time interval ({now - self._last_backup_time})"
            else:
                return None

        return self._run_backup(reason, change_count, now)

    def _run_backup(self, reason: str, change_count: int, now: datetime) -> BackupResult:
        logger.info(f"Creating auto backup of '{self.source_path}': {reason}")
        started = datetime.now()

        result = self.orchestrator.backup(self.source_path, self.options, use_cache=False)

        # Changes seen while the backup ran stay pending
        with self._change_lock:
            self._changes = {
                path: change
                for path, change in self._changes.items()
                if change["timestamp"] > started
            }
        self._last_backup_time = now
        self.last_result = result
        logger.info(f"Auto backup {result.hash} created ({change_count} changes)")

        if self.on_backup:
            try:
                self.on_backup(result)
            except Exception as e:
                logger.error(f"Error in backup callback: {e}")

        return result
