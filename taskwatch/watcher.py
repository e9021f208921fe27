"""File system watcher implementation using watchdog.

Responsibility:
    This module is solely responsible for turning OS-level notifications into
    a stream of :class:`~taskwatch.models.ChangeEvent`. It knows nothing about
    targets, batches or tasks.

Design:
    - **Event-Driven**: Uses ``watchdog`` observers (inotify, FSEvents, ...)
      instead of polling, unless a ``poll_interval`` is configured for file
      systems without native notifications.
    - **Normalization**: created/modified/deleted map to added/changed/deleted;
      a move becomes a deletion of the source and an addition of the
      destination. Directory events are ignored.
    - **Coalescing**: editors and atomic writes produce several notifications
      for one save. Repeats for the same path within ``coalesce_window`` are
      emitted once.
    - **Recursive roots**: roots are watched recursively, so files created
      after startup are seen without restarting. A missing root is replaced by
      its nearest existing ancestor.

Key Invariants:
    - The watcher never modifies watched files (read-only).
    - A root that cannot be watched produces a warning, never an exception;
      the remaining roots keep working.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver, ObservedWatch
from watchdog.observers.polling import PollingObserver

from taskwatch.models import ChangeEvent, ChangeKind

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

DEFAULT_COALESCE_WINDOW = 0.05


def _existing_ancestor(path: Path) -> Optional[Path]:
    """Return ``path`` or its closest ancestor that exists as a directory."""
    for candidate in [path] + list(path.parents):
        try:
            if candidate.is_dir():
                return candidate
        except OSError:
            continue
    return None


class ChangeEventHandler(FileSystemEventHandler):
    """Translate watchdog events into coalesced ChangeEvents.

    Attributes:
        callback (Callable[[ChangeEvent], None]): Receives every emitted event.
        coalesce_window (float): Seconds within which repeats are dropped.
        events_detected (int): Raw file notifications seen.
        events_coalesced (int): Notifications dropped as duplicates.
    """

    def __init__(
        self,
        callback: Callable[[ChangeEvent], None],
        coalesce_window: float = DEFAULT_COALESCE_WINDOW,
    ) -> None:
        super().__init__()
        self.callback = callback
        self.coalesce_window = coalesce_window
        self._lock = threading.Lock()
        self._last: Dict[Path, Tuple[ChangeKind, float]] = {}
        self._stopped = False
        self.events_detected = 0
        self.events_coalesced = 0

    def stop(self) -> None:
        self._stopped = True

    def _is_duplicate(self, path: Path, kind: ChangeKind, now: float) -> bool:
        with self._lock:
            previous = self._last.get(path)
            self._last[path] = (kind, now)
            if len(self._last) > 1024:
                cutoff = now - self.coalesce_window
                self._last = {p: v for p, v in self._last.items() if v[1] >= cutoff}
            if previous is None or now - previous[1] > self.coalesce_window:
                return False
            prev_kind = previous[0]
            if prev_kind is kind or (prev_kind is ChangeKind.ADDED and kind is ChangeKind.CHANGED):
                if prev_kind is ChangeKind.ADDED:
                    # Keep reporting the pair as an addition.
                    self._last[path] = (prev_kind, now)
                return True
            return False

    def _emit(self, raw_path: str, kind: ChangeKind) -> None:
        if self._stopped:
            return
        path = Path(os.path.abspath(os.fsdecode(raw_path)))
        now = time.monotonic()
        self.events_detected += 1
        if self._is_duplicate(path, kind, now):
            self.events_coalesced += 1
            return
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Processing event: {kind.value} on {path}")
        try:
            self.callback(ChangeEvent(path=path, kind=kind))
        except Exception:
            logger.error(f"Error delivering change event for {path}", exc_info=True)

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(event.src_path, ChangeKind.ADDED)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(event.src_path, ChangeKind.CHANGED)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit(event.src_path, ChangeKind.DELETED)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._emit(event.src_path, ChangeKind.DELETED)
        self._emit(event.dest_path, ChangeKind.ADDED)

    def __repr__(self) -> str:
        return f"<ChangeEventHandler window={self.coalesce_window}>"


class PathWatcher:
    """Own the watchdog observer and the set of watched roots.

    Example:
        >>> watcher = PathWatcher()
        >>> for event in watcher.observe([Path("src")]):  # doctest: +SKIP
        ...     print(event.kind.value, event.path)
    """

    def __init__(
        self,
        coalesce_window: float = DEFAULT_COALESCE_WINDOW,
        poll_interval: float = 0.0,
    ) -> None:
        self.coalesce_window = coalesce_window
        self.poll_interval = poll_interval
        self.handler: Optional[ChangeEventHandler] = None
        self._observer: Optional[BaseObserver] = None
        self._watches: Dict[Path, ObservedWatch] = {}
        self._lock = threading.RLock()
        self._started = False
        self._stopping = False
        self._last_restart_attempt = 0.0

    def _new_observer(self) -> BaseObserver:
        if self.poll_interval > 0:
            return PollingObserver(timeout=self.poll_interval)
        return Observer()

    def start(self, paths: Iterable[Path], callback: Callable[[ChangeEvent], None]) -> None:
        """Start watching ``paths``, delivering events to ``callback``.

        Raises:
            RuntimeError: If the watcher was already started or stopped, or
                the observer thread fails to start.
        """
        with self._lock:
            if self._started:
                raise RuntimeError("PathWatcher cannot be started twice")
            self._started = True
            self.handler = ChangeEventHandler(callback, self.coalesce_window)
            self._observer = self._new_observer()
            self._observer.start()
            if not self._observer.is_alive():
                raise RuntimeError("Failed to start watchdog observer")
            logger.info(f"Observer started ({type(self._observer).__name__})")
        for path in paths:
            self.add_path(path)

    def observe(self, paths: Iterable[Path]) -> Iterator[ChangeEvent]:
        """Yield change events for ``paths`` until :meth:`stop` is called.

        The sequence is lazy and infinite; it cannot be restarted.
        """
        events: "queue.Queue[ChangeEvent]" = queue.Queue()
        self.start(paths, events.put)
        try:
            while not self._stopping:
                try:
                    yield events.get(timeout=0.1)
                except queue.Empty:
                    continue
        finally:
            self.stop()

    def add_path(self, path: Path) -> bool:
        """Start watching a directory tree at runtime.

        Args:
            path (Path): Directory to watch. If it does not exist yet, its
                nearest existing ancestor is watched instead.

        Returns:
            bool: True if a new watch was scheduled.
        """
        path = Path(os.path.abspath(path))
        root = _existing_ancestor(path)
        if root is None:
            logger.warning(f"Cannot watch {path}: no existing parent directory")
            return False
        if root != path:
            logger.info(f"{path} does not exist yet; watching {root}")
        with self._lock:
            if self._observer is None or self.handler is None:
                raise RuntimeError("PathWatcher is not started")
            if root in self._watches:
                return False
            try:
                watch = self._observer.schedule(self.handler, str(root), recursive=True)
            except OSError as e:
                logger.warning(f"Cannot watch {root}: {e} (Check permissions or inotify limits?)")
                return False
            self._watches[root] = watch
            logger.debug(f"Watching {root}")
            return True

    def remove_path(self, path: Path) -> bool:
        """Stop watching a directory tree. Returns False if it was not watched."""
        path = Path(os.path.abspath(path))
        with self._lock:
            watch = self._watches.pop(path, None)
            if watch is None or self._observer is None:
                return False
            try:
                self._observer.unschedule(watch)
            except (KeyError, OSError) as e:
                logger.debug(f"Error unscheduling {path}: {e}")
            return True

    @property
    def watched_paths(self) -> List[Path]:
        with self._lock:
            return sorted(self._watches)

    @property
    def is_alive(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def check_health(self) -> bool:
        """Restart the observer if its thread died. Returns True if healthy."""
        if not self._started or self._stopping:
            return True
        if self.is_alive:
            return True
        now = time.monotonic()
        if now - self._last_restart_attempt < 10.0:
            return False
        self._last_restart_attempt = now
        logger.critical("Watchdog observer found dead. Attempting to restart observer...")
        with self._lock:
            roots = list(self._watches)
            self._watches.clear()
            try:
                self._observer = self._new_observer()
                self._observer.start()
            except (OSError, RuntimeError) as e:
                logger.error(f"Failed to restart observer: {e}")
                return False
        for root in roots:
            self.add_path(root)
        return self.is_alive

    def stop(self) -> None:
        """Stop the observer thread. Safe to call more than once."""
        with self._lock:
            if self._stopping:
                return
            self._stopping = True
            if self.handler is not None:
                self.handler.stop()
            observer = self._observer
        if observer is not None:
            try:
                if observer.is_alive():
                    observer.stop()
                    observer.join(timeout=5.0)
                    if observer.is_alive():
                        logger.warning("Observer thread did not terminate within timeout.")
            except Exception as e:
                logger.error(f"Error stopping observer: {e}")
        logger.debug("Watcher stopped.")

    def __repr__(self) -> str:
        return f"<PathWatcher roots={len(self._watches)} alive={self.is_alive}>"
