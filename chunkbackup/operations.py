import os
import re
import time
import queue
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .catalog import BackupCatalog
from .chunker import DEFAULT_CHUNK_SIZE, ChunkPacker, PackedChunk
from .compression import compress
from .errors import BackupError, EngineShutdownError
from .models import ChangeEvent, ChangeKind, ChunkPlacement, ChunkRecord, FileRecord, chunk_filename


# Get logger instance (configuration is handled in cli.py)
logger = logging.getLogger('chunkbackup')

DEFAULT_REFRESH_INTERVAL = 300.0
QUEUE_TIMEOUT = 0.1
MAX_EVENTS_PER_BATCH = 500

_CHUNK_FILE_RE = re.compile(r'^chunk_(\d+)\.gz$')


@dataclass
class BatchResult:
    """Outcome of one processed batch of changes."""
    chunk_ids: List[int] = field(default_factory=list)
    files_backed_up: List[str] = field(default_factory=list)
    files_deleted: List[str] = field(default_factory=list)


class BackupEngine:
    """Turns change events into chunk files and catalog updates."""

    def __init__(self, watch_path: str, backup_path: str,
                 chunk_size: int = DEFAULT_CHUNK_SIZE, queue_size: int = 10):
        """
        Initialize the engine for one watched tree and one backup destination.

        Args:
            watch_path (str): Root of the tree being backed up
            backup_path (str): Directory holding the catalog and chunk files
            chunk_size (int, optional): Upper bound for a chunk's raw size in bytes
            queue_size (int, optional): Number of pending batches accepted before
                ``submit`` blocks
        """
        self.watch_path = Path(os.path.abspath(watch_path))
        self.backup_path = Path(os.path.abspath(backup_path))
        self.catalog = BackupCatalog(str(self.backup_path))
        self.packer = ChunkPacker(chunk_size=chunk_size)
        self._queue: "queue.Queue[List[ChangeEvent]]" = queue.Queue(maxsize=queue_size)
        self._shutdown = threading.Event()
        self._lock = threading.Lock()
        self._worker: Optional[threading.Thread] = None
        logger.debug(f"Initialized BackupEngine for '{self.watch_path}' -> '{self.backup_path}'")

    def initialize(self) -> None:
        """
        Create the backup directory, load the catalog and seed chunk numbering.

        Chunk IDs continue past both the catalog's highest chunk and any chunk
        file left on disk by a batch that failed before it was cataloged.

        Raises:
            ValueError: If the watch path is not an existing directory
            CatalogError: If an existing catalog cannot be read
            OSError: If the backup directory cannot be created
        """
        if not self.watch_path.is_dir():
            raise ValueError(f"Watch path '{self.watch_path}' is not a directory")
        os.makedirs(self.backup_path, exist_ok=True)
        self.catalog.load()

        highest = self.catalog.highest_chunk_id()
        for name in os.listdir(self.backup_path):
            match = _CHUNK_FILE_RE.match(name)
            if match:
                highest = max(highest, int(match.group(1)))
        self.packer.seed(highest)
        logger.info(f"Backup engine initialized, next chunk ID is {self.packer.next_id}")

    def start(self) -> None:
        """Start the background thread that processes submitted batches."""
        self._worker = threading.Thread(target=self._process_loop, name="chunkbackup-engine", daemon=True)
        self._worker.start()

    def submit(self, changes: List[ChangeEvent]) -> None:
        """
        Queue a batch for the background thread, blocking while the queue is full.

        Raises:
            EngineShutdownError: If the engine is shutting down
        """
        while not self._shutdown.is_set():
            try:
                self._queue.put(list(changes), timeout=QUEUE_TIMEOUT)
                return
            except queue.Full:
                continue
        raise EngineShutdownError("Backup engine is shutting down")

    def shutdown(self) -> None:
        """Stop accepting work and wait for the in-flight batch to finish."""
        self._shutdown.set()
        if self._worker is not None:
            self._worker.join()
            self._worker = None
        dropped = self._queue.qsize()
        if dropped:
            logger.info(f"Discarded {dropped} queued batches at shutdown")

    def _process_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                changes = self._queue.get(timeout=QUEUE_TIMEOUT)
            except queue.Empty:
                continue
            try:
                self.handle_changes(changes)
            except Exception as e:
                logger.error(f"Error processing changes: {str(e)}")

    def handle_changes(self, changes: List[ChangeEvent]) -> BatchResult:
        """
        Process one batch of changes.

        Events are collapsed per path (the last one wins) and SCAN events are
        resolved against the catalog. Created and modified files are packed into
        chunks, every chunk is compressed and written, and only then are the
        chunks and file placements cataloged and the catalog saved. Deleted
        paths are tombstoned; chunk files are never removed. A batch that
        resolves to nothing leaves the catalog file untouched.

        Args:
            changes (List[ChangeEvent]): Events with tree-relative or absolute paths

        Returns:
            BatchResult: Chunks written and paths backed up or tombstoned

        Raises:
            BackupError: If a chunk file cannot be written; the catalog is unchanged
            CatalogError: If the catalog cannot be saved; the previous catalog stays authoritative
        """
        with self._lock:
            to_backup, to_delete = self._group(changes)
            result = BatchResult()

            absolute = {str(self.watch_path / rel): rel for rel in to_backup}
            chunks = self.packer.pack(list(absolute))

            written: List[Tuple[PackedChunk, ChunkRecord]] = []
            for chunk in chunks:
                written.append((chunk, self._persist_chunk(chunk)))

            tombstones: List[str] = []
            for rel in to_delete:
                record = self.catalog.get_file(rel)
                if record is None:
                    tombstones.extend(self.catalog.live_paths_under(rel))
                elif not record.deleted:
                    tombstones.append(rel)

            # Saving an unchanged catalog would still rewrite metadata.json
            if not written and not tombstones:
                return result

            with self.catalog.batch() as catalog:
                for chunk, chunk_record in written:
                    catalog.append_chunk(chunk_record)
                    result.chunk_ids.append(chunk.id)
                    for file_range in chunk.files:
                        rel = absolute[file_range.path]
                        record = FileRecord(
                            path=rel,
                            size=file_range.length,
                            mtime_ns=file_range.mtime_ns,
                            content_hash=file_range.content_hash,
                            placements=[ChunkPlacement(
                                chunk_id=chunk.id,
                                offset=file_range.offset,
                                length=file_range.length,
                                content_hash=file_range.content_hash,
                            )],
                        )
                        catalog.check_placements(record)
                        catalog.upsert_file(record)
                        result.files_backed_up.append(rel)
                for rel in tombstones:
                    if catalog.tombstone_file(rel):
                        result.files_deleted.append(rel)

            if result.chunk_ids or result.files_deleted:
                logger.info(
                    f"Batch complete: {len(result.chunk_ids)} chunks, "
                    f"{len(result.files_backed_up)} files backed up, "
                    f"{len(result.files_deleted)} files deleted"
                )
            return result

    def perform_full_backup(self) -> BatchResult:
        """Reconcile the whole tree against the catalog and back up the differences."""
        changes = self.catalog.reconcile(str(self.watch_path), exclude=str(self.backup_path))
        logger.info(f"Detected {len(changes)} changes for full backup")
        return self.handle_changes(changes)

    def watch(self, coordinator, refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
              stop_event: Optional[threading.Event] = None) -> None:
        """
        Forward coordinator events to the engine until ``stop_event`` is set.

        Coordinator errors are logged. Every ``refresh_interval`` seconds a full
        backup runs to pick up anything the live stream missed.

        Args:
            coordinator (ChangeCoordinator): Started coordinator watching ``watch_path``
            refresh_interval (float, optional): Seconds between full backups
            stop_event (Optional[threading.Event]): Set to return from the loop
        """
        stop_event = stop_event or self._shutdown
        next_refresh = time.monotonic() + refresh_interval

        while not stop_event.is_set():
            while True:
                try:
                    error = coordinator.errors.get_nowait()
                except queue.Empty:
                    break
                logger.error(f"Watcher error: {str(error)}")

            batch = self._drain(coordinator.changes)
            if batch:
                try:
                    self.submit(batch)
                except EngineShutdownError:
                    break

            if time.monotonic() >= next_refresh:
                logger.info("Performing periodic full backup")
                try:
                    self.perform_full_backup()
                except BackupError as e:
                    logger.error(f"Periodic backup failed: {str(e)}")
                next_refresh = time.monotonic() + refresh_interval

    def _drain(self, changes: "queue.Queue[ChangeEvent]") -> List[ChangeEvent]:
        try:
            batch = [changes.get(timeout=QUEUE_TIMEOUT)]
        except queue.Empty:
            return []
        while len(batch) < MAX_EVENTS_PER_BATCH:
            try:
                batch.append(changes.get_nowait())
            except queue.Empty:
                break
        return batch

    def _group(self, changes: List[ChangeEvent]) -> Tuple[List[str], List[str]]:
        latest: Dict[str, ChangeKind] = {}
        for change in changes:
            rel = self._relative_path(change.path)
            if rel is None:
                continue
            kind = change.kind
            if kind == ChangeKind.SCAN:
                resolved = self.catalog.classify(str(self.watch_path), rel)
                if resolved is None:
                    continue
                kind = resolved.kind
            latest.pop(rel, None)
            latest[rel] = kind

        to_backup = [rel for rel, kind in latest.items() if kind in (ChangeKind.CREATE, ChangeKind.MODIFY)]
        to_delete = [rel for rel, kind in latest.items() if kind == ChangeKind.DELETE]
        return to_backup, to_delete

    def _relative_path(self, path: str) -> Optional[str]:
        candidate = Path(path)
        if not candidate.is_absolute():
            return candidate.as_posix()
        candidate = Path(os.path.abspath(path))
        if candidate == self.backup_path or self.backup_path in candidate.parents:
            return None
        try:
            rel = candidate.relative_to(self.watch_path).as_posix()
        except ValueError:
            logger.debug(f"Ignoring change outside watched tree: '{path}'")
            return None
        return rel if rel != '.' else None

    def _persist_chunk(self, chunk: PackedChunk) -> ChunkRecord:
        compressed = compress(chunk.data)
        filename = chunk_filename(chunk.id)
        chunk_path = self.backup_path / filename
        tmp_path = self.backup_path / (filename + ".tmp")
        try:
            with open(tmp_path, 'wb') as f:
                f.write(compressed)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, chunk_path)
        except OSError as e:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise BackupError(f"Failed to write chunk file '{filename}': {str(e)}") from e

        logger.info(f"Created chunk {filename} with {len(chunk.files)} files")
        return ChunkRecord(
            id=chunk.id,
            filename=filename,
            raw_size=len(chunk.data),
            compressed_size=len(compressed),
            content_hash=chunk.content_hash,
        )

    def close(self) -> None:
        self.shutdown()

    def __enter__(self) -> 'BackupEngine':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
