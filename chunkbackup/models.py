"""
Records kept in the backup catalog and events passed between components.

FileRecord and ChunkRecord are persisted in ``metadata.json`` through their
``to_dict``/``from_dict`` helpers. ChangeEvent is transient.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List


class ChangeKind(str, Enum):
    """Kind of change observed for a path."""
    CREATE = "CREATE"
    MODIFY = "MODIFY"
    DELETE = "DELETE"
    SCAN = "SCAN"


@dataclass(frozen=True)
class ChangeEvent:
    """A single change for a path. SCAN only requests reconciliation."""
    path: str
    kind: ChangeKind
    observed_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ChunkPlacement:
    """Location of a run of a file's bytes inside a chunk."""
    chunk_id: int
    offset: int
    length: int
    content_hash: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "offset": self.offset,
            "length": self.length,
            "hash": self.content_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChunkPlacement":
        return cls(
            chunk_id=int(data["chunk_id"]),
            offset=int(data["offset"]),
            length=int(data["length"]),
            content_hash=data["hash"],
        )


@dataclass
class FileRecord:
    """Catalog state of one tracked path."""
    path: str
    size: int
    mtime_ns: int
    content_hash: str
    placements: List[ChunkPlacement] = field(default_factory=list)
    deleted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "size": self.size,
            "mtime_ns": self.mtime_ns,
            "hash": self.content_hash,
            "placements": [p.to_dict() for p in self.placements],
            "is_deleted": self.deleted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileRecord":
        return cls(
            path=data["path"],
            size=int(data["size"]),
            mtime_ns=int(data["mtime_ns"]),
            content_hash=data["hash"],
            placements=[ChunkPlacement.from_dict(p) for p in data.get("placements", [])],
            deleted=bool(data.get("is_deleted", False)),
        )


@dataclass(frozen=True)
class ChunkRecord:
    """A sealed chunk file. Never rewritten once cataloged."""
    id: int
    filename: str
    raw_size: int
    compressed_size: int
    content_hash: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "size": self.raw_size,
            "compressed_size": self.compressed_size,
            "hash": self.content_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChunkRecord":
        return cls(
            id=int(data["id"]),
            filename=data["filename"],
            raw_size=int(data["size"]),
            compressed_size=int(data["compressed_size"]),
            content_hash=data["hash"],
        )


def chunk_filename(chunk_id: int) -> str:
    """Name of the file holding the compressed bytes of a chunk."""
    return f"chunk_{chunk_id:06d}.gz"
