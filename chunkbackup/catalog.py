import os
import json
import copy
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from .errors import CatalogError
from .hashing import hash_file_content
from .models import ChangeEvent, ChangeKind, ChunkRecord, FileRecord


logger = logging.getLogger('chunkbackup')

FORMAT_VERSION = "1.0"
METADATA_FILENAME = "metadata.json"


class ReadWriteLock:
    """Many concurrent readers or a single writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class BackupCatalog:
    """Durable record of tracked files and the chunks holding their bytes."""

    def __init__(self, backup_path: str):
        """Initialize an empty in-memory catalog stored under ``backup_path``."""
        self.backup_path = Path(backup_path)
        self.metadata_path = self.backup_path / METADATA_FILENAME
        self.lock = ReadWriteLock()
        self.format_version = FORMAT_VERSION
        self.created_at = datetime.now().isoformat()
        self.updated_at = self.created_at
        self._files: Dict[str, FileRecord] = {}
        self._chunks: List[ChunkRecord] = []
        self._chunk_index: Dict[int, ChunkRecord] = {}

    def load(self) -> bool:
        """
        Load persisted state if present.

        Returns:
            bool: True if a catalog file was read, False for a fresh catalog

        Raises:
            CatalogError: If the catalog file exists but cannot be parsed
        """
        with self.lock.write():
            try:
                with open(self.metadata_path, 'r', encoding='utf-8') as f:
                    document = json.load(f)
            except FileNotFoundError:
                logger.info(f"No catalog at '{self.metadata_path}', starting fresh")
                return False
            except (OSError, ValueError) as e:
                raise CatalogError(f"Failed to read catalog '{self.metadata_path}': {str(e)}") from e

            try:
                self._restore_state(document)
            except (KeyError, TypeError, ValueError) as e:
                raise CatalogError(f"Malformed catalog '{self.metadata_path}': {str(e)}") from e

            logger.info(
                f"Loaded catalog with {len(self._files)} files and {len(self._chunks)} chunks"
            )
            return True

    def save(self) -> None:
        """
        Write the catalog to a temporary file and atomically rename it into place.

        Raises:
            CatalogError: If the catalog cannot be written; the previous file is left intact
        """
        with self.lock.write():
            self._save_locked()

    def _save_locked(self) -> None:
        tmp_path = self.metadata_path.with_name(METADATA_FILENAME + ".tmp")
        try:
            os.makedirs(self.backup_path, exist_ok=True)
            self.updated_at = datetime.now().isoformat()
            data = json.dumps(self._to_document(), indent=2)
            with open(tmp_path, 'w', encoding='utf-8') as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.metadata_path)
        except OSError as e:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise CatalogError(f"Failed to save catalog '{self.metadata_path}': {str(e)}") from e
        logger.debug(f"Saved catalog to '{self.metadata_path}'")

    @contextmanager
    def batch(self):
        """
        Apply a group of mutations and persist them as one unit.

        Holds the write lock for the whole block. If the block raises or the
        save fails, in-memory state is rolled back to what it was on entry, so
        memory never runs ahead of the durable catalog.
        """
        with self.lock.write():
            saved = (copy.deepcopy(self._files), list(self._chunks), self.updated_at)
            try:
                yield self
                self._save_locked()
            except BaseException:
                self._files, self._chunks, self.updated_at = saved
                self._chunk_index = {c.id: c for c in self._chunks}
                raise

    def upsert_file(self, record: FileRecord) -> None:
        """Insert or replace the record for ``record.path``. Call inside ``batch()``."""
        self._files[record.path] = record

    def tombstone_file(self, path: str) -> bool:
        """Mark a live record deleted. Returns False if there was nothing to tombstone."""
        record = self._files.get(path)
        if record is None or record.deleted:
            return False
        record.deleted = True
        return True

    def append_chunk(self, chunk: ChunkRecord) -> None:
        """
        Add a sealed chunk to the inventory.

        Raises:
            ValueError: If the chunk ID does not increase on the last one
        """
        _check_chunk_order(self._chunks[-1] if self._chunks else None, chunk)
        self._chunks.append(chunk)
        self._chunk_index[chunk.id] = chunk

    def check_placements(self, record: FileRecord) -> None:
        """Raise ValueError unless every placement of ``record`` fits a known chunk."""
        _check_placements(self._chunk_index, record)

    def get_file(self, path: str) -> Optional[FileRecord]:
        with self.lock.read():
            record = self._files.get(path)
            return copy.deepcopy(record) if record else None

    def get_chunk(self, chunk_id: int) -> Optional[ChunkRecord]:
        with self.lock.read():
            return self._chunk_index.get(chunk_id)

    def files(self, include_deleted: bool = True) -> List[FileRecord]:
        """Copies of the file records, sorted by path."""
        with self.lock.read():
            return [
                copy.deepcopy(self._files[path])
                for path in sorted(self._files)
                if include_deleted or not self._files[path].deleted
            ]

    def chunks(self) -> List[ChunkRecord]:
        with self.lock.read():
            return list(self._chunks)

    def highest_chunk_id(self) -> int:
        with self.lock.read():
            return self._chunks[-1].id if self._chunks else 0

    def live_paths_under(self, directory: str) -> List[str]:
        """Live tracked paths below a tree-relative directory."""
        prefix = directory.rstrip('/') + '/'
        with self.lock.read():
            return sorted(
                path for path, record in self._files.items()
                if not record.deleted and path.startswith(prefix)
            )

    def reconcile(self, tree_root: str, exclude: Optional[str] = None) -> List[ChangeEvent]:
        """
        Compare the tree against the catalog and derive the changes between them.

        Every file under ``tree_root`` is hashed. A path unknown to the catalog
        or tombstoned yields CREATE; a live path whose hash or modification time
        differs yields MODIFY; a live path no longer on disk yields DELETE.
        Running it twice without filesystem changes in between (and without
        backing up the first result) yields the same list; once the changes are
        backed up it yields an empty list.

        Args:
            tree_root (str): Root of the watched tree
            exclude (Optional[str]): Directory to leave out, e.g. a backup
                directory nested inside the tree

        Returns:
            List[ChangeEvent]: Changes sorted by path
        """
        root = Path(os.path.abspath(tree_root))
        excluded = Path(os.path.abspath(exclude)) if exclude else None
        current: Dict[str, ChangeKind] = {}
        seen = set()

        for dirpath, dirnames, filenames in os.walk(root, onerror=_log_walk_error):
            if excluded is not None:
                dirnames[:] = [d for d in dirnames if Path(dirpath, d) != excluded]
            for name in filenames:
                file_path = Path(dirpath) / name
                relative_path = file_path.relative_to(root).as_posix()
                seen.add(relative_path)
                kind = self._classify_path(file_path, relative_path)
                if kind is not None:
                    current[relative_path] = kind

        with self.lock.read():
            for path, record in self._files.items():
                if not record.deleted and path not in seen:
                    current[path] = ChangeKind.DELETE

        changes = [ChangeEvent(path=path, kind=current[path]) for path in sorted(current)]
        logger.info(f"Reconciliation of '{tree_root}' found {len(changes)} changes")
        return changes

    def classify(self, tree_root: str, relative_path: str) -> Optional[ChangeEvent]:
        """Reconcile a single tree-relative path. Returns None when it is up to date."""
        file_path = Path(tree_root) / relative_path
        if not file_path.is_file():
            with self.lock.read():
                record = self._files.get(relative_path)
                if record is not None and not record.deleted:
                    return ChangeEvent(path=relative_path, kind=ChangeKind.DELETE)
            return None
        kind = self._classify_path(file_path, relative_path)
        return ChangeEvent(path=relative_path, kind=kind) if kind else None

    def _classify_path(self, file_path: Path, relative_path: str) -> Optional[ChangeKind]:
        try:
            mtime_ns = file_path.stat().st_mtime_ns
            content_hash = hash_file_content(str(file_path))
        except OSError as e:
            logger.warning(f"Could not inspect file '{file_path}': {str(e)}")
            return None

        with self.lock.read():
            record = self._files.get(relative_path)
            if record is None or record.deleted:
                return ChangeKind.CREATE
            if record.content_hash != content_hash or record.mtime_ns != mtime_ns:
                return ChangeKind.MODIFY
        return None

    def _to_document(self) -> Dict:
        return {
            "version": self.format_version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "files": {path: record.to_dict() for path, record in sorted(self._files.items())},
            "chunks": [chunk.to_dict() for chunk in self._chunks],
        }

    def _restore_state(self, document: Dict) -> None:
        files = {path: FileRecord.from_dict(data) for path, data in document.get("files", {}).items()}
        chunks = [ChunkRecord.from_dict(data) for data in document.get("chunks", [])]

        # Hold a loaded document to the same rules as live mutations
        for previous, chunk in zip([None] + chunks, chunks):
            _check_chunk_order(previous, chunk)
        chunk_index = {c.id: c for c in chunks}
        for record in files.values():
            _check_placements(chunk_index, record)

        self.format_version = document.get("version", FORMAT_VERSION)
        self.created_at = document.get("created_at", self.created_at)
        self.updated_at = document.get("updated_at", self.created_at)
        self._files = files
        self._chunks = chunks
        self._chunk_index = chunk_index


def _check_chunk_order(previous: Optional[ChunkRecord], chunk: ChunkRecord) -> None:
    if previous is not None and chunk.id <= previous.id:
        raise ValueError(f"Chunk ID {chunk.id} is not greater than last chunk ID {previous.id}")


def _check_placements(chunk_index: Dict[int, ChunkRecord], record: FileRecord) -> None:
    for placement in record.placements:
        chunk = chunk_index.get(placement.chunk_id)
        if chunk is None:
            raise ValueError(f"'{record.path}' references unknown chunk {placement.chunk_id}")
        if placement.offset < 0 or placement.offset + placement.length > chunk.raw_size:
            raise ValueError(
                f"'{record.path}' placement exceeds chunk {chunk.id} ({chunk.raw_size} bytes)"
            )


def _log_walk_error(error: OSError) -> None:
    logger.warning(f"Skipping unreadable directory '{error.filename}': {str(error)}")
