import hashlib


def hash_bytes(data: bytes) -> str:
    """Generate a SHA-256 hash for a byte sequence."""
    return hashlib.sha256(data).hexdigest()


def hash_file_content(file_path: str) -> str:
    """Generate a SHA-256 hash for a file's content."""
    sha256 = hashlib.sha256()
    with open(file_path, 'rb') as f:
        for block in iter(lambda: f.read(65536), b''):
            sha256.update(block)
    return sha256.hexdigest()
