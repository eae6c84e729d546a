"""
Exception types raised by chunkbackup.

Transient I/O problems surface as plain ``OSError`` and are handled per item
by the callers; the classes below cover integrity, persistence and lifecycle
failures that callers need to tell apart.
"""

from typing import List


class BackupError(Exception):
    """Base class for all chunkbackup errors."""


class ChunkBoundaryError(BackupError):
    """A file range points past the end of its chunk."""


class IntegrityError(BackupError):
    """Recomputed content hash does not match the recorded one."""


class CorruptChunkError(IntegrityError):
    """Compressed chunk data is malformed or truncated."""


class CatalogError(BackupError):
    """The catalog could not be read or made durable."""


class EngineShutdownError(BackupError):
    """Work was submitted to an engine that is shutting down."""


class BackupValidationError(BackupError):
    """One or more chunk files referenced by the catalog are missing."""

    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__(
            f"{len(self.missing)} chunk file(s) missing: {', '.join(self.missing)}"
        )
