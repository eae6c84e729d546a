import os
import stat
import logging
from dataclasses import dataclass, field
from typing import Iterable, List

from .errors import ChunkBoundaryError, IntegrityError
from .hashing import hash_bytes


logger = logging.getLogger('chunkbackup')

DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024


@dataclass(frozen=True)
class FileRange:
    """Bytes of one file inside a packed chunk."""
    path: str
    offset: int
    length: int
    content_hash: str
    mtime_ns: int = 0


@dataclass
class PackedChunk:
    """Raw, uncompressed chunk produced by the packer."""
    id: int
    data: bytes
    files: List[FileRange] = field(default_factory=list)
    content_hash: str = ""


class ChunkPacker:
    """Groups file contents into chunks bounded by ``chunk_size`` bytes."""

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE, start_id: int = 1):
        """
        Initialize the packer.

        Args:
            chunk_size (int, optional): Upper bound for a chunk's raw size. A single
                file larger than this still becomes a chunk of its own.
            start_id (int, optional): First chunk ID handed out.

        Raises:
            ValueError: If chunk_size or start_id is not positive
        """
        if chunk_size <= 0:
            raise ValueError(f"Invalid chunk size: {chunk_size}")
        if start_id <= 0:
            raise ValueError(f"Invalid starting chunk ID: {start_id}")
        self.chunk_size = chunk_size
        self.next_id = start_id

    def seed(self, highest_id: int) -> None:
        """Make sure IDs handed out from now on are above ``highest_id``."""
        self.next_id = max(self.next_id, highest_id + 1)

    def pack(self, paths: Iterable[str]) -> List[PackedChunk]:
        """
        Pack the given files, in order, into sealed chunks.

        Files that cannot be stat'd or read are logged and skipped; directories
        are ignored. A chunk is sealed when adding the next file would push it
        over the size bound.

        Args:
            paths (Iterable[str]): Paths of the files to pack

        Returns:
            List[PackedChunk]: Sealed chunks in ID order
        """
        chunks: List[PackedChunk] = []
        ranges: List[FileRange] = []
        buffer = bytearray()

        for path in paths:
            try:
                st = os.stat(path)
            except OSError as e:
                logger.warning(f"Skipping file that cannot be stat'd: '{path}': {str(e)}")
                continue
            if stat.S_ISDIR(st.st_mode):
                continue

            if ranges and len(buffer) + st.st_size > self.chunk_size:
                chunks.append(self._seal(buffer, ranges))
                buffer = bytearray()
                ranges = []

            try:
                with open(path, 'rb') as f:
                    data = f.read()
            except OSError as e:
                logger.warning(f"Skipping unreadable file '{path}': {str(e)}")
                continue

            # Size may have changed between stat and read; the range follows what was read
            ranges.append(FileRange(
                path=path,
                offset=len(buffer),
                length=len(data),
                content_hash=hash_bytes(data),
                mtime_ns=st.st_mtime_ns,
            ))
            buffer.extend(data)

        if ranges:
            chunks.append(self._seal(buffer, ranges))

        return chunks

    def _seal(self, buffer: bytearray, ranges: List[FileRange]) -> PackedChunk:
        data = bytes(buffer)
        chunk = PackedChunk(
            id=self.next_id,
            data=data,
            files=list(ranges),
            content_hash=hash_bytes(data),
        )
        self.next_id += 1
        logger.debug(f"Sealed chunk {chunk.id}: {len(chunk.files)} files, {len(data)} bytes")
        return chunk


def extract(chunk_data: bytes, file_range: FileRange) -> bytes:
    """
    Extract one file's bytes from raw chunk data.

    Args:
        chunk_data (bytes): Decompressed chunk payload
        file_range (FileRange): Offset, length and expected hash of the file

    Returns:
        bytes: The file's bytes

    Raises:
        ChunkBoundaryError: If the range extends beyond the chunk
        IntegrityError: If the extracted bytes do not hash to the recorded value
    """
    end = file_range.offset + file_range.length
    if file_range.offset < 0 or end > len(chunk_data):
        raise ChunkBoundaryError(
            f"Range {file_range.offset}+{file_range.length} of '{file_range.path}' "
            f"extends beyond chunk boundary ({len(chunk_data)} bytes)"
        )

    data = chunk_data[file_range.offset:end]
    if hash_bytes(data) != file_range.content_hash:
        raise IntegrityError(f"Hash mismatch for '{file_range.path}'")

    return data
