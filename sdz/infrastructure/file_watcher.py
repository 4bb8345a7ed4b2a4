"""Recursive directory watcher that reports slides only once they stop changing.

watchdog delivers raw create/modify/move/delete notifications; every candidate
is then re-evaluated by a periodic poll until its size and mtime have been
unchanged for the whole stability window. Large slides arrive through slow
copies that take minutes, and a half-written file must never reach the
conversion stage.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from sdz.infrastructure.file_scanner import FileScanner

logger = logging.getLogger(__name__)


@dataclass
class _Observation:
    size: Optional[int] = None
    mtime_ns: Optional[int] = None
    stable_since: float = 0.0


class _SlideEventHandler(FileSystemEventHandler):
    """Forwards watchdog notifications to the owning DirectoryWatcher."""

    def __init__(self, watcher: "DirectoryWatcher") -> None:
        super().__init__()
        self._watcher = watcher

    def on_created(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            self._watcher.track_tree(Path(event.src_path))
        else:
            self._watcher.track(Path(event.src_path))

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher.track(Path(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            self._watcher.forget_tree(Path(event.src_path))
            self._watcher.track_tree(Path(event.dest_path))
        else:
            self._watcher.forget(Path(event.src_path))
            self._watcher.track(Path(event.dest_path))

    def on_deleted(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            self._watcher.forget_tree(Path(event.src_path))
        else:
            self._watcher.forget(Path(event.src_path))


class DirectoryWatcher:
    """Watches a root directory recursively and emits debounced slide events.

    ``on_appeared(path)`` fires once a file has been stable for
    ``stability_window_s``; ``on_removed(path)`` fires when a tracked or
    reported file is deleted or moved away. Pre-existing files are treated as
    created at startup. Errors never propagate out of the watcher threads:
    transient ones are logged, a missing root is reported through
    ``on_error(message, fatal, path)``.
    """

    def __init__(
        self,
        root: Path,
        scanner: FileScanner,
        on_appeared: Callable[[Path], None],
        on_removed: Callable[[Path], None],
        stability_window_s: float = 5.0,
        poll_interval_s: float = 1.0,
        scan_existing: bool = True,
        on_error: Callable[[str, bool, Optional[Path]], None] | None = None,
        on_ready: Callable[[int], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.root = Path(root)
        self.scanner = scanner
        self._on_appeared = on_appeared
        self._on_removed = on_removed
        self._on_error = on_error
        self._on_ready = on_ready
        self.stability_window_s = stability_window_s
        self.poll_interval_s = poll_interval_s
        self.scan_existing = scan_existing
        self._clock = clock
        self._lock = threading.Lock()
        self._pending: Dict[Path, _Observation] = {}
        self._reported: Set[Path] = set()
        self._observer: Observer | None = None
        self._poll_thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._root_missing = False

    @property
    def pending_paths(self) -> Set[Path]:
        with self._lock:
            return set(self._pending)

    @property
    def root_missing(self) -> bool:
        return self._root_missing

    @property
    def running(self) -> bool:
        return self._poll_thread is not None and self._poll_thread.is_alive()

    def start(self) -> bool:
        """Begin watching; returns False when the root cannot be watched."""
        if self._observer is not None:
            return True
        if not self.root.is_dir():
            self._report_root_missing()
            return False
        try:
            self._start_observer()
        except OSError as e:
            self._report_error(f"Cannot watch {self.root}: {e}", fatal=True, path=self.root)
            return False
        self._stop.clear()

        existing = 0
        if self.scan_existing:
            for path in self.scanner.scan(self.root):
                self.track(path)
                existing += 1

        self._poll_thread = threading.Thread(target=self._poll_loop, name="sdz-watcher-poll", daemon=True)
        self._poll_thread.start()
        logger.info(f"Watching {self.root} (stability={self.stability_window_s}s, existing={existing})")
        if self._on_ready is not None:
            self._on_ready(existing)
        return True

    def stop(self) -> None:
        """Stop watching and clean up."""
        self._stop.set()
        # The poll thread may replace the observer, so it goes first
        if self._poll_thread is not None:
            self._poll_thread.join(timeout=5)
            self._poll_thread = None
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        logger.info(f"Stopped watching {self.root}")

    def _start_observer(self) -> None:
        """Schedules a fresh watchdog observer on the root, replacing the old one."""
        old = self._observer
        self._observer = None
        if old is not None:
            old.stop()
            old.join(timeout=5)
        observer = Observer()
        observer.schedule(_SlideEventHandler(self), str(self.root), recursive=True)
        observer.start()
        self._observer = observer

    def track(self, path: Path) -> None:
        """Starts (or restarts) the stability countdown for a candidate file."""
        if not self.scanner.accepts(path, self.root):
            return
        with self._lock:
            self._pending[path] = _Observation(stable_since=self._clock())
            self._reported.discard(path)

    def track_tree(self, directory: Path) -> None:
        try:
            for path in self.scanner.scan(directory):
                self.track(path)
        except OSError as e:
            logger.warning(f"Cannot scan {directory}: {e}")

    def forget(self, path: Path) -> None:
        if not self.scanner.accepts(path, self.root):
            return
        with self._lock:
            self._pending.pop(path, None)
            self._reported.discard(path)
        self._emit(self._on_removed, path)

    def forget_tree(self, directory: Path) -> None:
        with self._lock:
            known = [p for p in set(self._pending) | self._reported if _is_within(p, directory)]
        for path in known:
            self.forget(path)

    def check_pending(self) -> List[Path]:
        """Re-evaluates every pending file; returns (and reports) the stable ones."""
        now = self._clock()
        ready: List[Path] = []
        with self._lock:
            candidates: List[Tuple[Path, _Observation]] = list(self._pending.items())
        for path, entry in candidates:
            try:
                st = path.stat()
            except FileNotFoundError:
                # Deleted mid-copy; the delete notification handles the rest
                with self._lock:
                    self._pending.pop(path, None)
                continue
            except OSError as e:
                logger.warning(f"Transient stat failure for {path}: {e}")
                continue

            if entry.size != st.st_size or entry.mtime_ns != st.st_mtime_ns:
                entry.size = st.st_size
                entry.mtime_ns = st.st_mtime_ns
                entry.stable_since = now
                # A zero window still needs one confirming observation
                if self.stability_window_s > 0:
                    continue
            if now - entry.stable_since >= self.stability_window_s:
                with self._lock:
                    if self._pending.get(path) is entry:
                        del self._pending[path]
                        self._reported.add(path)
                        ready.append(path)

        for path in ready:
            logger.debug(f"WATCH_STABLE: {path}")
            self._emit(self._on_appeared, path)
        return ready

    def poll_once(self) -> None:
        """One poll step: root health, re-watch after the root returns, stability check."""
        if not self.root.is_dir():
            self._report_root_missing()
            return
        if self._root_missing:
            # The old emitter died with the root directory
            try:
                self._start_observer()
            except OSError as e:
                logger.warning(f"Cannot watch {self.root} again yet: {e}")
                return
            self._root_missing = False
            logger.info(f"Watch root is back: {self.root}, watching again")
            self.track_tree(self.root)
        self.check_pending()

    def _poll_loop(self) -> None:
        while not self._stop.wait(self.poll_interval_s):
            try:
                self.poll_once()
            except Exception:
                logger.exception("Watcher poll failed; continuing")

    def _report_root_missing(self) -> None:
        if self._root_missing:
            return
        self._root_missing = True
        self._report_error(f"Watch root does not exist: {self.root}", fatal=True, path=self.root)

    def _report_error(self, message: str, fatal: bool, path: Optional[Path] = None) -> None:
        if fatal:
            logger.error(message)
        else:
            logger.warning(message)
        if self._on_error is not None:
            try:
                self._on_error(message, fatal, path)
            except Exception:
                logger.exception("Watcher error callback failed")

    def _emit(self, callback: Callable[[Path], None], path: Path) -> None:
        try:
            callback(path)
        except Exception:
            logger.exception(f"Watcher callback failed for {path}")


def _is_within(path: Path, directory: Path) -> bool:
    try:
        path.relative_to(directory)
        return True
    except ValueError:
        return False
