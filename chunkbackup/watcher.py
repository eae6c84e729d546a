"""
Change detection for a watched directory tree.

The ChangeCoordinator turns raw per-path notifications into a debounced
stream of ChangeEvents and periodically emits SCAN events for every file it
watches. Raw notifications come from a notifier object. WatchdogNotifier is
the default one and relays the platform's native file system events;
PollingNotifier re-lists watched directories instead, for file systems that
deliver no native events (network mounts, some containers).
"""

import os
import queue
import logging
import threading
from dataclasses import dataclass
from enum import Flag, auto
from typing import Dict, List, Optional, Set, Tuple

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer
from watchdog.observers.api import ObservedWatch

from .models import ChangeEvent, ChangeKind


logger = logging.getLogger('chunkbackup')

DEBOUNCE_DELAY = 0.5
DEFAULT_SCAN_INTERVAL = 300.0
POLL_INTERVAL = 1.0
QUEUE_TIMEOUT = 0.1


class NotifyOp(Flag):
    """Operation flags carried by a raw notification."""
    CREATE = auto()
    WRITE = auto()
    REMOVE = auto()
    RENAME = auto()
    CHMOD = auto()


@dataclass(frozen=True)
class RawNotification:
    path: str
    ops: NotifyOp


class WatchdogNotifier(FileSystemEventHandler):
    """
    Notification source backed by watchdog's native observer.

    Every watched directory is scheduled non-recursively, one watch per
    directory, the same way the coordinator tracks them. A move is reported
    as RENAME of the old path followed by CREATE of the new one. Modifications
    of directories themselves carry no content and are dropped.
    """

    def __init__(self):
        self.events: "queue.Queue[RawNotification]" = queue.Queue()
        self.errors: "queue.Queue[Exception]" = queue.Queue()
        self._watches: Dict[str, ObservedWatch] = {}
        self._lock = threading.Lock()
        self._observer = Observer()
        self._observer.daemon = True
        self._observer.start()

    def add(self, path: str) -> None:
        """
        Start watching a directory.

        Raises:
            OSError: If the directory cannot be listed or the watch cannot be armed
        """
        with os.scandir(path):
            pass
        with self._lock:
            if path not in self._watches:
                self._watches[path] = self._observer.schedule(self, path, recursive=False)

    def remove(self, path: str) -> None:
        with self._lock:
            watch = self._watches.pop(path, None)
        if watch is None:
            return
        try:
            self._observer.unschedule(watch)
        except KeyError:
            logger.debug(f"Watch on '{path}' was already released")

    def close(self) -> None:
        self._observer.stop()
        if self._observer.is_alive():
            self._observer.join()

    def on_any_event(self, event: FileSystemEvent) -> None:
        src_path = os.fsdecode(event.src_path)
        if event.event_type == EVENT_TYPE_CREATED:
            self.events.put(RawNotification(src_path, NotifyOp.CREATE))
        elif event.event_type == EVENT_TYPE_MODIFIED:
            if not event.is_directory:
                self.events.put(RawNotification(src_path, NotifyOp.WRITE))
        elif event.event_type == EVENT_TYPE_DELETED:
            self.events.put(RawNotification(src_path, NotifyOp.REMOVE))
        elif event.event_type == EVENT_TYPE_MOVED:
            self.events.put(RawNotification(src_path, NotifyOp.RENAME))
            self.events.put(RawNotification(os.fsdecode(event.dest_path), NotifyOp.CREATE))


class PollingNotifier:
    """
    Notification source that polls watched directories.

    Use it where native events are unavailable; changes surface up to
    ``poll_interval`` seconds late. Each poll lists the direct children of every watched directory and compares
    them with the previous listing, reporting CREATE, WRITE and REMOVE for the
    entries that appeared, changed or disappeared.
    """

    def __init__(self, poll_interval: float = POLL_INTERVAL):
        self.poll_interval = poll_interval
        self.events: "queue.Queue[RawNotification]" = queue.Queue()
        self.errors: "queue.Queue[Exception]" = queue.Queue()
        self._listings: Dict[str, Dict[str, Tuple[bool, int, int]]] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="chunkbackup-poller", daemon=True)
        self._thread.start()

    def add(self, path: str) -> None:
        """
        Start watching a directory.

        Raises:
            OSError: If the directory cannot be listed
        """
        listing = _list_directory(path)
        with self._lock:
            self._listings[path] = listing

    def remove(self, path: str) -> None:
        with self._lock:
            self._listings.pop(path, None)

    def close(self) -> None:
        self._stop.set()
        if self._thread is not threading.current_thread():
            self._thread.join()

    def poll(self) -> None:
        """Compare every watched directory with its previous listing."""
        with self._lock:
            watched = list(self._listings.items())

        for directory, previous in watched:
            try:
                current = _list_directory(directory)
            except FileNotFoundError:
                self.remove(directory)
                continue
            except OSError as e:
                self.errors.put(e)
                continue

            for name, entry in current.items():
                old = previous.get(name)
                path = os.path.join(directory, name)
                if old is None:
                    self.events.put(RawNotification(path, NotifyOp.CREATE))
                elif old[0] != entry[0]:
                    # Replaced by an entry of the other type
                    self.events.put(RawNotification(path, NotifyOp.REMOVE))
                    self.events.put(RawNotification(path, NotifyOp.CREATE))
                elif old != entry and not entry[0]:
                    self.events.put(RawNotification(path, NotifyOp.WRITE))
            for name in previous.keys() - current.keys():
                self.events.put(RawNotification(os.path.join(directory, name), NotifyOp.REMOVE))

            with self._lock:
                if directory in self._listings:
                    self._listings[directory] = current

    def _run(self) -> None:
        while not self._stop.wait(self.poll_interval):
            self.poll()


def _list_directory(path: str) -> Dict[str, Tuple[bool, int, int]]:
    listing = {}
    with os.scandir(path) as entries:
        for entry in entries:
            try:
                st = entry.stat(follow_symlinks=False)
            except OSError:
                continue
            is_dir = entry.is_dir(follow_symlinks=False)
            listing[entry.name] = (is_dir, 0 if is_dir else st.st_size, 0 if is_dir else st.st_mtime_ns)
    return listing


class ChangeCoordinator:
    """Debounces raw notifications into ChangeEvents and runs periodic scans."""

    def __init__(self, notifier=None, debounce_delay: float = DEBOUNCE_DELAY,
                 scan_interval: float = DEFAULT_SCAN_INTERVAL, queue_size: int = 100,
                 exclude: Optional[str] = None):
        """
        Initialize the coordinator.

        Args:
            notifier: Source of raw notifications exposing ``add``, ``remove``,
                ``close`` and the ``events``/``errors`` queues. Defaults to a
                WatchdogNotifier.
            debounce_delay (float, optional): Quiet period per path before an event is emitted
            scan_interval (float, optional): Seconds between full scans of watched directories
            queue_size (int, optional): Capacity of the outbound change queue
            exclude (Optional[str]): Directory that is never watched, scanned or
                reported, e.g. a backup directory nested inside the tree
        """
        self.notifier = notifier if notifier is not None else WatchdogNotifier()
        self.debounce_delay = debounce_delay
        self.scan_interval = scan_interval
        self.exclude = os.path.abspath(exclude) if exclude else None
        self.changes: "queue.Queue[ChangeEvent]" = queue.Queue(maxsize=queue_size)
        self.errors: "queue.Queue[Exception]" = queue.Queue(maxsize=10)

        self._stopped = threading.Event()
        self._timers: Dict[str, Tuple[threading.Timer, ChangeKind]] = {}
        self._timers_lock = threading.Lock()
        self._watched_dirs: Set[str] = set()
        self._dirs_lock = threading.RLock()
        self._threads: List[threading.Thread] = []

    def add_watch(self, path: str) -> None:
        """
        Watch a directory and every directory below it.

        Raises:
            OSError: If ``path`` itself cannot be watched
        """
        root = os.path.abspath(path)
        if self.is_excluded(root):
            logger.debug(f"Not watching excluded directory: {root}")
            return
        with self._dirs_lock:
            self.notifier.add(root)
            self._watched_dirs.add(root)
            logger.info(f"Watching directory: {root}")
            for dirpath, dirnames, _ in os.walk(root, onerror=self._log_walk_error):
                dirnames[:] = [d for d in dirnames if not self.is_excluded(os.path.join(dirpath, d))]
                for name in dirnames:
                    subdir = os.path.join(dirpath, name)
                    try:
                        self.notifier.add(subdir)
                    except OSError as e:
                        logger.warning(f"Could not watch directory '{subdir}': {str(e)}")
                        continue
                    self._watched_dirs.add(subdir)
                    logger.debug(f"Watching directory: {subdir}")

    def is_excluded(self, path: str) -> bool:
        if self.exclude is None:
            return False
        return path == self.exclude or path.startswith(self.exclude + os.sep)

    def watched_directories(self) -> List[str]:
        with self._dirs_lock:
            return sorted(self._watched_dirs)

    def start(self) -> None:
        for target, name in ((self._distribute, "chunkbackup-events"),
                             (self._scan_loop, "chunkbackup-scan")):
            thread = threading.Thread(target=target, name=name, daemon=True)
            thread.start()
            self._threads.append(thread)

    def close(self) -> None:
        """Stop all loops, abandon pending debounce timers and close the notifier."""
        self._stopped.set()
        with self._timers_lock:
            for timer, _ in self._timers.values():
                timer.cancel()
            self._timers.clear()
        for thread in self._threads:
            thread.join()
        self._threads = []
        self.notifier.close()

    def __enter__(self) -> 'ChangeCoordinator':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def handle_notification(self, notification: RawNotification) -> None:
        """Translate one raw notification, debouncing creates and writes."""
        ops = notification.ops
        path = notification.path
        if self.is_excluded(os.path.abspath(path)):
            return

        if ops & (NotifyOp.REMOVE | NotifyOp.RENAME):
            self._cancel_timer(path)
            self._forget_directory(path)
            self._emit(ChangeEvent(path=path, kind=ChangeKind.DELETE))
        elif ops & NotifyOp.CREATE:
            if os.path.isdir(path):
                self._watch_new_directory(path)
            else:
                self._debounce(path, ChangeKind.CREATE)
        elif ops & NotifyOp.WRITE:
            self._debounce(path, ChangeKind.MODIFY)

    def perform_full_scan(self) -> int:
        """Emit a SCAN event for every file in every watched directory."""
        emitted = 0
        for directory in self.watched_directories():
            try:
                with os.scandir(directory) as entries:
                    files = [entry.path for entry in entries if entry.is_file(follow_symlinks=False)]
            except OSError as e:
                logger.warning(f"Skipping scan of '{directory}': {str(e)}")
                continue
            for file_path in sorted(files):
                if not self._emit(ChangeEvent(path=file_path, kind=ChangeKind.SCAN)):
                    return emitted
                emitted += 1
        logger.debug(f"Full scan emitted {emitted} events")
        return emitted

    def _debounce(self, path: str, kind: ChangeKind) -> None:
        with self._timers_lock:
            if self._stopped.is_set():
                return
            pending = self._timers.get(path)
            if pending is not None:
                pending[0].cancel()
            timer = threading.Timer(self.debounce_delay, self._fire, args=(path,))
            timer.daemon = True
            self._timers[path] = (timer, kind)
            timer.start()

    def _fire(self, path: str) -> None:
        with self._timers_lock:
            pending = self._timers.get(path)
            if pending is None or pending[0] is not threading.current_thread():
                return
            del self._timers[path]
        if self._stopped.is_set():
            return
        self._emit(ChangeEvent(path=path, kind=pending[1]))

    def _cancel_timer(self, path: str) -> None:
        with self._timers_lock:
            pending = self._timers.pop(path, None)
            if pending is not None:
                pending[0].cancel()

    def _emit(self, event: ChangeEvent) -> bool:
        while not self._stopped.is_set():
            try:
                self.changes.put(event, timeout=QUEUE_TIMEOUT)
                return True
            except queue.Full:
                continue
        return False

    def _report_error(self, error: Exception) -> None:
        try:
            self.errors.put_nowait(error)
        except queue.Full:
            logger.error(f"Dropping watcher error, error queue full: {str(error)}")

    def _watch_new_directory(self, path: str) -> None:
        try:
            self.add_watch(path)
        except OSError as e:
            logger.warning(f"Could not watch new directory '{path}': {str(e)}")
            return
        # Files written before the watch was armed produce no notification of their own
        for dirpath, _, filenames in os.walk(path, onerror=self._log_walk_error):
            for name in filenames:
                self._debounce(os.path.join(dirpath, name), ChangeKind.CREATE)

    def _forget_directory(self, path: str) -> None:
        with self._dirs_lock:
            prefix = path.rstrip(os.sep) + os.sep
            gone = [d for d in self._watched_dirs if d == path or d.startswith(prefix)]
            for directory in gone:
                self._watched_dirs.discard(directory)
                self.notifier.remove(directory)

    def _distribute(self) -> None:
        while not self._stopped.is_set():
            while True:
                try:
                    self._report_error(self.notifier.errors.get_nowait())
                except queue.Empty:
                    break
            try:
                notification = self.notifier.events.get(timeout=QUEUE_TIMEOUT)
            except queue.Empty:
                continue
            self.handle_notification(notification)

    def _scan_loop(self) -> None:
        while not self._stopped.wait(self.scan_interval):
            self.perform_full_scan()

    def _log_walk_error(self, error: OSError) -> None:
        logger.warning(f"Skipping unreadable directory '{error.filename}': {str(error)}")
