import os
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from .catalog import BackupCatalog
from .chunker import FileRange, extract
from .compression import decompress
from .errors import BackupError, BackupValidationError, IntegrityError
from .hashing import hash_bytes
from .models import ChunkRecord, FileRecord


logger = logging.getLogger('chunkbackup')


@dataclass
class RestoreResult:
    """Outcome of a restore run. Failures are keyed by tree-relative path."""
    restored: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    missing_chunks: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class RestoreEngine:
    """Rebuilds files from the catalog and chunk files of a backup directory."""

    def __init__(self, backup_path: str, target_path: Optional[str] = None):
        """
        Initialize the restore engine.

        Args:
            backup_path (str): Directory holding the catalog and chunk files
            target_path (Optional[str]): Directory to restore into. Not needed for
                listing or verifying.
        """
        self.backup_path = Path(backup_path)
        self.target_path = Path(target_path) if target_path else None
        self.catalog = BackupCatalog(str(self.backup_path))

    def initialize(self) -> None:
        """
        Load the catalog and create the target directory if one was given.

        Raises:
            FileNotFoundError: If the backup directory does not exist
            CatalogError: If the catalog cannot be read
        """
        if not self.backup_path.is_dir():
            raise FileNotFoundError(f"Backup path '{self.backup_path}' does not exist")
        self.catalog.load()
        if self.target_path is not None:
            os.makedirs(self.target_path, exist_ok=True)

    def find_missing_chunks(self) -> List[str]:
        """Filenames of every cataloged chunk whose file is missing."""
        missing = []
        for chunk in self.catalog.chunks():
            if not (self.backup_path / chunk.filename).is_file():
                logger.error(f"Chunk file missing: {chunk.filename}")
                missing.append(chunk.filename)
        return missing

    def validate(self) -> int:
        """
        Check that every cataloged chunk has its backing file.

        All missing chunks are collected before failing so they can be reported
        together.

        Returns:
            int: Number of chunks verified

        Raises:
            BackupValidationError: If any chunk file is missing
        """
        missing = self.find_missing_chunks()
        if missing:
            raise BackupValidationError(missing)
        count = len(self.catalog.chunks())
        logger.info(f"Backup validation completed: {count} chunks verified")
        return count

    def verify(self) -> Tuple[bool, str]:
        """Validate the backup and describe the result in a few lines of text."""
        chunks = self.catalog.chunks()
        live = self.catalog.files(include_deleted=False)
        lines = [
            f"Catalog updated: {self.catalog.updated_at}",
            f"Chunks: {len(chunks)}, live files: {len(live)}",
        ]
        try:
            self.validate()
        except BackupValidationError as e:
            affected = self._files_using(e.missing)
            lines.append(f"Missing chunk files ({len(e.missing)}):")
            lines.extend(f"  - {name}" for name in e.missing)
            lines.append(f"Files affected: {len(affected)}")
            lines.extend(f"  - {path}" for path in affected)
            return False, "\n".join(lines)
        lines.append("All chunk files present.")
        return True, "\n".join(lines)

    def list_files(self, include_deleted: bool = True) -> List[FileRecord]:
        """Tracked files sorted by path, tombstones included unless asked otherwise."""
        return self.catalog.files(include_deleted=include_deleted)

    def restore_all(self) -> RestoreResult:
        """
        Restore every live file into the target directory.

        Missing chunks are reported but do not stop the run; each file is
        restored independently and a failure is logged and recorded in the
        result before moving on. Chunks are read and decompressed at most once
        per run and are released as soon as no remaining file needs them.

        Returns:
            RestoreResult: Restored paths, failures and missing chunk files

        Raises:
            ValueError: If the engine was created without a target path
        """
        if self.target_path is None:
            raise ValueError("Restore requires a target path")

        result = RestoreResult(missing_chunks=self.find_missing_chunks())
        if result.missing_chunks:
            logger.warning(
                f"{len(result.missing_chunks)} chunk files missing, files depending on them will fail"
            )

        cache: Dict[int, Union[bytes, Exception]] = {}
        records = self.catalog.files(include_deleted=False)
        logger.info(f"Found {len(records)} files to restore")

        # A chunk leaves the cache once no remaining file needs it
        pending = Counter(p.chunk_id for record in records for p in record.placements)

        for record in records:
            try:
                self._restore_record(record, cache)
            except (BackupError, OSError) as e:
                logger.warning(f"Failed to restore file '{record.path}': {str(e)}")
                result.failed[record.path] = str(e)
            else:
                result.restored.append(record.path)
                logger.debug(f"Restored file: {record.path}")
            finally:
                for placement in record.placements:
                    pending[placement.chunk_id] -= 1
                    if pending[placement.chunk_id] <= 0:
                        cache.pop(placement.chunk_id, None)

        logger.info(
            f"Restored {len(result.restored)}/{len(records)} files to '{self.target_path}'"
        )
        return result

    def restore_file(self, path: str) -> Path:
        """
        Restore a single tracked file.

        Raises:
            ValueError: If no target path was given
            KeyError: If the path is not tracked or has been deleted
            BackupError: If the file's chunks are missing or fail verification
            OSError: If the file cannot be written
        """
        if self.target_path is None:
            raise ValueError("Restore requires a target path")
        record = self.catalog.get_file(path)
        if record is None or record.deleted:
            raise KeyError(path)
        return self._restore_record(record, {})

    def _restore_record(self, record: FileRecord, cache: Dict[int, Union[bytes, Exception]]) -> Path:
        parts = []
        for placement in record.placements:
            chunk_data = self._chunk_data(placement.chunk_id, cache)
            parts.append(extract(chunk_data, FileRange(
                path=record.path,
                offset=placement.offset,
                length=placement.length,
                content_hash=placement.content_hash,
            )))
        data = b''.join(parts)
        if hash_bytes(data) != record.content_hash:
            raise IntegrityError(f"Hash mismatch for restored file '{record.path}'")

        target = self.target_path / record.path
        root = os.path.abspath(self.target_path)
        if os.path.commonpath([root, os.path.abspath(target)]) != root:
            raise BackupError(f"Refusing to restore '{record.path}' outside the target directory")
        os.makedirs(target.parent, exist_ok=True)
        with open(target, 'wb') as f:
            f.write(data)
        try:
            os.utime(target, ns=(record.mtime_ns, record.mtime_ns))
        except OSError as e:
            logger.warning(f"Failed to restore timestamp for '{record.path}': {str(e)}")
        return target

    def _chunk_data(self, chunk_id: int, cache: Dict[int, Union[bytes, Exception]]) -> bytes:
        cached = cache.get(chunk_id)
        if cached is None:
            try:
                cached = self._read_chunk(chunk_id)
            except (BackupError, OSError) as e:
                cached = e
            cache[chunk_id] = cached
        if isinstance(cached, Exception):
            raise cached
        return cached

    def _read_chunk(self, chunk_id: int) -> bytes:
        chunk: Optional[ChunkRecord] = self.catalog.get_chunk(chunk_id)
        if chunk is None:
            raise BackupError(f"Chunk {chunk_id} not found in catalog")
        with open(self.backup_path / chunk.filename, 'rb') as f:
            data = decompress(f.read())
        if hash_bytes(data) != chunk.content_hash:
            raise IntegrityError(f"Chunk {chunk_id} hash verification failed")
        return data

    def _files_using(self, filenames: List[str]) -> List[str]:
        ids = {c.id for c in self.catalog.chunks() if c.filename in filenames}
        return [
            record.path for record in self.catalog.files(include_deleted=False)
            if any(p.chunk_id in ids for p in record.placements)
        ]
