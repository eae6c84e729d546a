"""
Chunkbackup - continuous incremental directory backup.

This package watches a directory tree, packs changed files into size-bounded
compressed chunks, keeps a JSON catalog of where every file's bytes live and
restores files from that catalog.
"""

__version__ = "0.1.0"

# Export public API
from .catalog import BackupCatalog
from .chunker import ChunkPacker
from .operations import BackupEngine
from .restore import RestoreEngine
from .watcher import ChangeCoordinator

__all__ = ["BackupCatalog", "ChunkPacker", "BackupEngine", "RestoreEngine", "ChangeCoordinator"]
