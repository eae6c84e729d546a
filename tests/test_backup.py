import os
import json
import time
import threading
import pytest

from chunkbackup.errors import BackupError, EngineShutdownError
from chunkbackup.models import ChangeEvent, ChangeKind
from chunkbackup.operations import BackupEngine, BatchResult
from chunkbackup.watcher import ChangeCoordinator, NotifyOp, PollingNotifier, RawNotification
from tests.conftest import MIB, FakeNotifier, TestBase, wait_for, write_file


class TestFullBackup(TestBase):
    """Reconciliation-driven backups through the batch pipeline."""

    def test_first_backup_catalogs_every_file(self):
        result = self.engine.perform_full_backup()

        assert result.chunk_ids == [1]
        assert sorted(result.files_backed_up) == [
            "binary.bin", "file_1.txt", "file_2.txt", "file_3.txt", "file_4.txt",
            "nested/deeper/inner.txt",
        ]
        assert (self.backup_dir / "chunk_000001.gz").is_file()

        document = json.loads((self.backup_dir / "metadata.json").read_text())
        assert len(document["chunks"]) == 1
        record = self.engine.catalog.get_file("file_1.txt")
        assert record.size == len("Content of file 1")
        assert [p.chunk_id for p in record.placements] == [1]

    def test_second_backup_without_changes_is_empty(self):
        self.engine.perform_full_backup()

        result = self.engine.perform_full_backup()

        assert result.chunk_ids == []
        assert result.files_backed_up == []
        assert self.engine.catalog.reconcile(str(self.source_dir)) == []

    def test_only_changed_files_are_packed_again(self):
        self.engine.perform_full_backup()
        write_file(self.source_dir / "file_2.txt", b"changed")
        write_file(self.source_dir / "added.txt", b"added")

        changes = self.engine.catalog.reconcile(str(self.source_dir))
        assert {(c.path, c.kind) for c in changes} == {
            ("file_2.txt", ChangeKind.MODIFY),
            ("added.txt", ChangeKind.CREATE),
        }

        result = self.engine.handle_changes(changes)
        assert result.chunk_ids == [2]
        assert sorted(result.files_backed_up) == ["added.txt", "file_2.txt"]
        assert self.engine.catalog.get_file("file_2.txt").placements[0].chunk_id == 2
        assert self.engine.catalog.get_file("file_1.txt").placements[0].chunk_id == 1

    def test_delete_tombstones_without_touching_chunks(self):
        self.engine.perform_full_backup()
        os.unlink(self.source_dir / "file_1.txt")

        changes = self.engine.catalog.reconcile(str(self.source_dir))
        assert [(c.path, c.kind) for c in changes] == [("file_1.txt", ChangeKind.DELETE)]

        result = self.engine.handle_changes(changes)
        assert result.files_deleted == ["file_1.txt"]
        assert result.chunk_ids == []
        assert self.engine.catalog.get_file("file_1.txt").deleted is True
        assert (self.backup_dir / "chunk_000001.gz").is_file()

    def test_deleted_directory_tombstones_files_below(self):
        self.engine.perform_full_backup()

        result = self.engine.handle_changes([
            ChangeEvent(path=str(self.source_dir / "nested"), kind=ChangeKind.DELETE),
        ])

        assert result.files_deleted == ["nested/deeper/inner.txt"]

    def test_backup_dir_inside_tree_is_ignored(self):
        engine = BackupEngine(str(self.source_dir), str(self.source_dir / ".backup"))
        engine.initialize()
        engine.perform_full_backup()

        assert engine.catalog.reconcile(str(self.source_dir), exclude=str(self.source_dir / ".backup")) == []
        assert all(not r.path.startswith(".backup") for r in engine.catalog.files())
        result = engine.perform_full_backup()
        assert result.files_backed_up == []


class TestBatchGrouping(TestBase):
    """Collapsing and resolving events inside one batch."""

    def test_last_event_per_path_wins(self):
        self.engine.perform_full_backup()
        os.unlink(self.source_dir / "file_3.txt")

        result = self.engine.handle_changes([
            ChangeEvent(path="file_3.txt", kind=ChangeKind.MODIFY),
            ChangeEvent(path="file_3.txt", kind=ChangeKind.DELETE),
        ])

        assert result.files_backed_up == []
        assert result.files_deleted == ["file_3.txt"]

    def test_scan_events_are_resolved_against_catalog(self):
        self.engine.perform_full_backup()
        write_file(self.source_dir / "file_4.txt", b"scan found me")

        result = self.engine.handle_changes([
            ChangeEvent(path=str(self.source_dir / "file_1.txt"), kind=ChangeKind.SCAN),
            ChangeEvent(path=str(self.source_dir / "file_4.txt"), kind=ChangeKind.SCAN),
        ])

        assert result.files_backed_up == ["file_4.txt"]

    def test_events_outside_tree_are_ignored(self):
        outside = write_file(self.working_dir / "elsewhere.txt", b"nope")

        result = self.engine.handle_changes([ChangeEvent(path=str(outside), kind=ChangeKind.CREATE)])

        assert result.files_backed_up == []
        assert self.engine.catalog.files() == []

    def test_batch_resolving_to_nothing_does_not_save(self):
        self.engine.perform_full_backup()
        os.unlink(self.source_dir / "file_3.txt")
        self.engine.handle_changes([ChangeEvent(path="file_3.txt", kind=ChangeKind.DELETE)])
        metadata = self.backup_dir / "metadata.json"
        saved_at = self.engine.catalog.updated_at
        saved_mtime = metadata.stat().st_mtime_ns

        result = self.engine.handle_changes([
            ChangeEvent(path=str(self.source_dir / "file_1.txt"), kind=ChangeKind.SCAN),
            ChangeEvent(path="file_3.txt", kind=ChangeKind.DELETE),
            ChangeEvent(path="ghost.txt", kind=ChangeKind.DELETE),
            ChangeEvent(path="never_written.txt", kind=ChangeKind.CREATE),
        ])

        assert result == BatchResult()
        assert self.engine.catalog.updated_at == saved_at
        assert metadata.stat().st_mtime_ns == saved_mtime
        assert json.loads(metadata.read_text())["updated_at"] == saved_at

    def test_vanished_file_is_skipped(self):
        result = self.engine.handle_changes([ChangeEvent(path="ghost.txt", kind=ChangeKind.CREATE)])

        assert result.files_backed_up == []
        assert self.engine.catalog.get_file("ghost.txt") is None


class TestChunkBoundaries(TestBase):
    """Chunk sealing with real multi-megabyte files."""

    def _create_test_files(self):
        write_file(self.source_dir / "a.txt", os.urandom(2 * MIB))
        write_file(self.source_dir / "b.txt", os.urandom(4 * MIB))

    def test_two_files_exceeding_bound_make_two_chunks(self):
        result = self.engine.perform_full_backup()

        assert result.chunk_ids == [1, 2]
        chunks = self.engine.catalog.chunks()
        assert [c.raw_size for c in chunks] == [2 * MIB, 4 * MIB]
        assert self.engine.catalog.get_file("a.txt").placements[0].chunk_id == 1
        assert self.engine.catalog.get_file("b.txt").placements[0].chunk_id == 2
        assert self.engine.catalog.get_file("b.txt").placements[0].offset == 0


class TestFailureHandling(TestBase):
    """Mid-batch failures leave the catalog at its last durable state."""

    chunk_size = 64

    def test_chunk_write_failure_keeps_catalog(self, monkeypatch):
        self.engine.perform_full_backup()
        before = (self.backup_dir / "metadata.json").read_text()

        write_file(self.source_dir / "file_1.txt", b"1" * 60)
        write_file(self.source_dir / "file_2.txt", b"2" * 60)

        original = BackupEngine._persist_chunk
        calls = []

        def flaky_persist(engine, chunk):
            calls.append(chunk.id)
            if len(calls) == 2:
                raise BackupError("simulated write failure")
            return original(engine, chunk)

        monkeypatch.setattr(BackupEngine, "_persist_chunk", flaky_persist)
        with pytest.raises(BackupError):
            self.engine.perform_full_backup()

        # The first chunk of the failed batch is on disk but not cataloged
        assert (self.backup_dir / f"chunk_{calls[0]:06d}.gz").is_file()
        assert (self.backup_dir / "metadata.json").read_text() == before
        assert calls[0] not in {c.id for c in self.engine.catalog.chunks()}

        # A restarted engine never reuses the orphaned chunk's ID
        monkeypatch.undo()
        engine = self.reopen_engine()
        assert engine.packer.next_id > calls[0]
        result = engine.perform_full_backup()
        assert sorted(result.files_backed_up) == ["file_1.txt", "file_2.txt"]
        assert min(result.chunk_ids) > calls[0]


class TestBackgroundProcessing(TestBase):
    """The worker thread, submission and shutdown."""

    def test_submitted_batches_are_processed(self):
        self.engine.start()
        self.engine.submit([ChangeEvent(path="file_1.txt", kind=ChangeKind.CREATE)])

        assert wait_for(lambda: self.engine.catalog.get_file("file_1.txt") is not None)

    def test_submit_after_shutdown_raises(self):
        self.engine.start()
        self.engine.shutdown()

        with pytest.raises(EngineShutdownError):
            self.engine.submit([ChangeEvent(path="file_1.txt", kind=ChangeKind.CREATE)])

    def test_submit_blocks_while_queue_is_full(self):
        engine = BackupEngine(str(self.source_dir), str(self.backup_dir), queue_size=1)
        engine.submit([ChangeEvent(path="file_1.txt", kind=ChangeKind.CREATE)])
        outcome = []

        def submit_again():
            try:
                engine.submit([ChangeEvent(path="file_2.txt", kind=ChangeKind.CREATE)])
                outcome.append("accepted")
            except EngineShutdownError:
                outcome.append("rejected")

        # No worker is running, so the queue never drains
        blocked = threading.Thread(target=submit_again)
        blocked.start()
        time.sleep(0.3)
        assert blocked.is_alive()
        assert outcome == []

        engine.shutdown()
        blocked.join(timeout=2)

        assert not blocked.is_alive()
        assert outcome == ["rejected"]

    def test_shutdown_waits_for_in_flight_batch(self, monkeypatch):
        original = BackupEngine.handle_changes
        finished = []

        def slow_handle(engine, changes):
            time.sleep(0.3)
            result = original(engine, changes)
            finished.append(result)
            return result

        monkeypatch.setattr(BackupEngine, "handle_changes", slow_handle)
        self.engine.start()
        self.engine.submit([ChangeEvent(path="file_1.txt", kind=ChangeKind.CREATE)])
        assert wait_for(lambda: self.engine._queue.empty())

        self.engine.shutdown()

        assert len(finished) == 1
        assert self.engine.catalog.get_file("file_1.txt") is not None

    def test_watch_loop_backs_up_live_changes(self):
        self.engine.perform_full_backup()
        notifier = FakeNotifier()
        coordinator = ChangeCoordinator(notifier=notifier, scan_interval=3600)
        coordinator.add_watch(str(self.source_dir))
        self.engine.start()
        coordinator.start()

        stop = threading.Event()
        loop = threading.Thread(target=self.engine.watch, args=(coordinator, 3600, stop))
        loop.start()
        try:
            new_file = write_file(self.source_dir / "live.txt", b"written while watching")
            notifier.events.put(RawNotification(str(new_file), NotifyOp.CREATE))
            os.unlink(self.source_dir / "file_2.txt")
            notifier.events.put(RawNotification(str(self.source_dir / "file_2.txt"), NotifyOp.REMOVE))

            assert wait_for(lambda: self.engine.catalog.get_file("live.txt") is not None)
            assert wait_for(lambda: self.engine.catalog.get_file("file_2.txt").deleted)
        finally:
            stop.set()
            loop.join()
            coordinator.close()

    def test_watch_loop_runs_periodic_full_backup(self):
        coordinator = ChangeCoordinator(notifier=FakeNotifier(), scan_interval=3600)
        stop = threading.Event()
        loop = threading.Thread(target=self.engine.watch, args=(coordinator, 0.2, stop))
        loop.start()
        try:
            assert wait_for(lambda: self.engine.catalog.get_file("binary.bin") is not None)
        finally:
            stop.set()
            loop.join()
            coordinator.close()

    def test_idle_tree_with_nested_backup_keeps_catalog_still(self):
        backup = self.source_dir / ".backup"
        metadata = backup / "metadata.json"
        engine = BackupEngine(str(self.source_dir), str(backup))
        engine.initialize()
        engine.perform_full_backup()

        # Watch the whole tree, backup directory included
        coordinator = ChangeCoordinator(notifier=PollingNotifier(poll_interval=0.1), scan_interval=3600)
        coordinator.add_watch(str(self.source_dir))
        engine.start()
        coordinator.start()
        stop = threading.Event()
        loop = threading.Thread(target=engine.watch, args=(coordinator, 3600, stop))
        loop.start()
        try:
            write_file(self.source_dir / "kick.txt", b"one real change")
            assert wait_for(lambda: engine.catalog.get_file("kick.txt") is not None)
            time.sleep(1.5)

            settled = json.loads(metadata.read_text())["updated_at"]
            saves = set()
            deadline = time.monotonic() + 2.0
            while time.monotonic() < deadline:
                saves.add(json.loads(metadata.read_text())["updated_at"])
                time.sleep(0.1)

            assert saves == {settled}
        finally:
            stop.set()
            loop.join()
            coordinator.close()
            engine.shutdown()
