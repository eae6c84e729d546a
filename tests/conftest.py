import os
import queue
import pytest
import tempfile
import time
from pathlib import Path

from chunkbackup.operations import BackupEngine


MIB = 1024 * 1024


# ---- Individual fixtures for flexible test composition ----

@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def source_dir(temp_dir):
    """Create a source directory with test files."""
    source_dir = temp_dir / "source"
    os.makedirs(source_dir)
    create_test_files(source_dir)
    return source_dir


@pytest.fixture
def backup_dir(temp_dir):
    """Path of a backup directory (not created)."""
    return temp_dir / "backup"


@pytest.fixture
def restore_dir(temp_dir):
    """Create a restore directory for testing."""
    restore_dir = temp_dir / "restore"
    os.makedirs(restore_dir)
    return restore_dir


@pytest.fixture
def fake_notifier():
    return FakeNotifier()


# ---- Base test class for inheritance-based testing ----

class TestBase:
    """Base class for backup tests providing an isolated tree and an initialized engine."""

    chunk_size = 5 * MIB

    def setUp(self):
        """
        Set up the test environment.

        This method:
        1. Creates a temporary directory
        2. Sets up source, backup and restore directories
        3. Creates test files
        4. Initializes the backup engine
        """
        self.temp_dir = tempfile.TemporaryDirectory()
        self.working_dir = Path(self.temp_dir.name)

        self.source_dir = self.working_dir / "source"
        self.backup_dir = self.working_dir / "backup"
        self.restore_dir = self.working_dir / "restore"
        os.makedirs(self.source_dir)

        self._create_test_files()

        self.engine = BackupEngine(str(self.source_dir), str(self.backup_dir), chunk_size=self.chunk_size)
        self.engine.initialize()

    def tearDown(self):
        """Shut the engine down and remove the temporary directory."""
        try:
            self.engine.shutdown()
        finally:
            try:
                self.temp_dir.cleanup()
            except (PermissionError, OSError) as e:
                print(f"Warning: Could not clean up temporary directory: {e}")

    @pytest.fixture(autouse=True)
    def _setup_teardown_fixture(self):
        """
        Pytest fixture to automatically call setUp and tearDown.

        This fixture is automatically used by all test methods in classes
        that inherit from TestBase.
        """
        self.setUp()
        yield
        self.tearDown()

    def _create_test_files(self):
        create_test_files(self.source_dir)

    def reopen_engine(self) -> BackupEngine:
        """Replace the engine with a fresh one loaded from disk."""
        self.engine.shutdown()
        self.engine = BackupEngine(str(self.source_dir), str(self.backup_dir), chunk_size=self.chunk_size)
        self.engine.initialize()
        return self.engine


# ---- Helper functions for both approaches ----

def create_test_files(directory, count=5):
    """Create text files, a nested file and a binary file in the specified directory."""
    for i in range(1, count):
        with open(directory / f"file_{i}.txt", "w") as f:
            f.write(f"Content of file {i}")

    nested = directory / "nested" / "deeper"
    os.makedirs(nested, exist_ok=True)
    with open(nested / "inner.txt", "w") as f:
        f.write("Nested content")

    with open(directory / "binary.bin", "wb") as f:
        f.write(os.urandom(1024))  # 1KB of random data


def write_file(path, data, mtime_ns=None):
    """Write bytes to a file, creating parents, optionally pinning its mtime."""
    path = Path(path)
    os.makedirs(path.parent, exist_ok=True)
    path.write_bytes(data)
    if mtime_ns is not None:
        os.utime(path, ns=(mtime_ns, mtime_ns))
    return path


def tree_files(root):
    """Map of tree-relative posix path to bytes for every file under root."""
    root = Path(root)
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in root.rglob("*") if p.is_file()
    }


def wait_for(predicate, timeout=5.0, interval=0.05):
    """Poll until predicate() is truthy or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


def drain(q, timeout=0.0):
    """Collect everything currently in a queue."""
    items = []
    while True:
        try:
            items.append(q.get(timeout=timeout) if timeout else q.get_nowait())
        except queue.Empty:
            return items


class FakeNotifier:
    """In-memory notification source recording watch registrations."""

    def __init__(self):
        self.events = queue.Queue()
        self.errors = queue.Queue()
        self.watched = []
        self.closed = False

    def add(self, path):
        self.watched.append(path)

    def remove(self, path):
        if path in self.watched:
            self.watched.remove(path)

    def close(self):
        self.closed = True
