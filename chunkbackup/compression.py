import gzip
import zlib

from .errors import CorruptChunkError


def compress(data: bytes) -> bytes:
    """Compress raw chunk bytes with gzip."""
    return gzip.compress(data)


def decompress(data: bytes) -> bytes:
    """
    Decompress gzip-encoded chunk bytes.

    Raises:
        CorruptChunkError: If the stream is malformed or truncated
    """
    try:
        return gzip.decompress(data)
    except (gzip.BadGzipFile, EOFError, zlib.error) as e:
        raise CorruptChunkError(f"Corrupt chunk data: {str(e)}") from e
