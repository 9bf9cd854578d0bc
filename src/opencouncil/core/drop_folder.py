"""Drop folder: stage files copied into a watched directory for review."""

import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence

import psycopg
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .errors import IngestError
from .logging_config import get_audit_logger

logger = get_audit_logger("drop_folder")


class DropFolderHandler(FileSystemEventHandler):
    """Hands new eligible files to `stage` once their size stops changing."""

    def __init__(
        self,
        stage: Callable[[Path], Any],
        extensions: Sequence[str] = (".pdf",),
        debounce_time: float = 2.0,
        settle_time: float = 0.5
    ):
        self.stage = stage
        self.extensions = tuple(ext.lower() for ext in extensions)
        self.debounce_time = debounce_time
        self.settle_time = settle_time

        self.stats = {
            'start_time': datetime.now(),
            'files_detected': 0,
            'files_staged': 0,
            'files_failed': 0,
        }
        self.pending: Dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    def on_created(self, event):
        if not event.is_directory:
            self._schedule(Path(event.src_path))

    def on_moved(self, event):
        if not event.is_directory:
            self._schedule(Path(event.dest_path))

    def _eligible(self, file_path: Path) -> bool:
        return file_path.suffix.lower() in self.extensions and not file_path.name.startswith(".")

    def _schedule(self, file_path: Path) -> None:
        if not self._eligible(file_path):
            return

        key = str(file_path)
        with self._lock:
            # Debounce: a burst of events for one file restarts its timer.
            existing = self.pending.pop(key, None)
            if existing is not None:
                existing.cancel()
            else:
                self.stats['files_detected'] += 1
            timer = threading.Timer(self.debounce_time, self._process, args=(file_path,))
            timer.daemon = True
            self.pending[key] = timer
        logger.info("drop_folder_file_detected", path=key)
        timer.start()

    def is_file_ready(self, file_path: Path) -> bool:
        """True when the file exists and its size is stable across the settle time."""
        try:
            initial_size = file_path.stat().st_size
            time.sleep(self.settle_time)
            return file_path.stat().st_size == initial_size
        except FileNotFoundError:
            return False

    def _process(self, file_path: Path) -> None:
        with self._lock:
            self.pending.pop(str(file_path), None)

        if not file_path.exists():
            logger.warning("drop_folder_file_vanished", path=str(file_path))
            return
        if not self.is_file_ready(file_path):
            # Still being written; look again later.
            self._schedule(file_path)
            return

        try:
            job = self.stage(file_path)
        except (IngestError, OSError, psycopg.Error) as e:
            self.stats['files_failed'] += 1
            logger.error("drop_folder_stage_failed", path=str(file_path), error=str(e))
            return

        self.stats['files_staged'] += 1
        logger.info("drop_folder_file_staged", path=str(file_path), job_id=getattr(job, "id", None))

    def get_stats(self) -> Dict[str, Any]:
        uptime = (datetime.now() - self.stats['start_time']).total_seconds()
        return {
            'uptime_seconds': uptime,
            'files_detected': self.stats['files_detected'],
            'files_staged': self.stats['files_staged'],
            'files_failed': self.stats['files_failed'],
            'pending_files': len(self.pending),
        }


class DropFolderWatcher:
    """Runs a watchdog observer over one directory."""

    def __init__(self, watch_dir: Path, handler: DropFolderHandler, recursive: bool = True):
        self.watch_dir = Path(watch_dir)
        self.handler = handler
        self.recursive = recursive
        self.observer: Optional[Observer] = None

    def start(self) -> None:
        self.watch_dir.mkdir(parents=True, exist_ok=True)
        self.observer = Observer()
        self.observer.schedule(self.handler, str(self.watch_dir), recursive=self.recursive)
        self.observer.start()
        logger.info("drop_folder_started", watch_dir=str(self.watch_dir))

    def stop(self) -> None:
        if self.observer is None:
            return
        self.observer.stop()
        self.observer.join()
        self.observer = None
        logger.info("drop_folder_stopped", watch_dir=str(self.watch_dir), **self.handler.get_stats())

    def run_forever(self, poll_interval: float = 1.0) -> None:
        self.start()
        try:
            while True:
                time.sleep(poll_interval)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()
