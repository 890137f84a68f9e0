"""Tests for the checkpoint, lease, status and session files"""

import json
import os

import pytest

from site_export.checkpoint import CheckpointStore
from site_export.errors import CheckpointCorruptedError, LeaseHeldError, SessionNotFoundError
from site_export.lease import Lease
from site_export.session import SessionStore
from site_export.status import StatusStore, error_message, error_token, is_error, is_terminal
from site_export.types import ExportPhase, ExportStatus, SessionCheckpoint


class FakeClock:
    """Settable wall clock"""

    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestCheckpointStore:
    """Test checkpoint persistence"""

    def test_save_and_load(self, tmp_path):
        """Test a saved checkpoint loads with the same cursors"""
        store = CheckpointStore(tmp_path)
        checkpoint = SessionCheckpoint(
            session_id="s1", phase=ExportPhase.ARCHIVE, csv_cursor=120, archive_cursor=8760, files_processed=2
        )
        store.save(checkpoint)

        loaded = store.load("s1")

        assert loaded.phase == ExportPhase.ARCHIVE
        assert loaded.csv_cursor == 120
        assert loaded.archive_cursor == 8760
        assert loaded.last_update_time is not None

    def test_load_missing(self, tmp_path):
        """Test no checkpoint file means no checkpoint"""
        assert CheckpointStore(tmp_path).load() is None

    def test_other_session_ignored(self, tmp_path):
        """Test a checkpoint of another session is not returned"""
        store = CheckpointStore(tmp_path)
        store.save(SessionCheckpoint(session_id="old"))
        assert store.load("new") is None

    def test_corrupted_checkpoint(self, tmp_path):
        """Test an unparseable checkpoint raises"""
        (tmp_path / "checkpoint.json").write_text("{not json")
        with pytest.raises(CheckpointCorruptedError):
            CheckpointStore(tmp_path).load()

    def test_unknown_keys_ignored(self, tmp_path):
        """Test checkpoints written by a newer version still load"""
        (tmp_path / "checkpoint.json").write_text(json.dumps({"session_id": "s1", "phase": "database", "extra": 1}))
        assert CheckpointStore(tmp_path).load().phase == ExportPhase.DATABASE

    def test_save_leaves_no_temp_files(self, tmp_path):
        """Test atomic replace cleans up after itself"""
        store = CheckpointStore(tmp_path)
        store.save(SessionCheckpoint(session_id="s1"))
        store.save(SessionCheckpoint(session_id="s1", csv_cursor=5))
        assert sorted(os.listdir(tmp_path)) == ["checkpoint.json"]

    def test_delete(self, tmp_path):
        """Test delete removes the file once"""
        store = CheckpointStore(tmp_path)
        store.save(SessionCheckpoint(session_id="s1"))
        assert store.delete() is True
        assert store.delete() is False
        assert not store.exists()


class TestLease:
    """Test lease acquisition and expiry"""

    def test_acquire_and_release(self, tmp_path):
        """Test a free lease is acquired and released"""
        lease = Lease(tmp_path / "export.lock", stale_after=1200)
        record = lease.acquire("s1")

        assert record.session_id == "s1"
        assert lease.read().session_id == "s1"
        assert lease.release("s1") is True
        assert lease.read() is None

    def test_second_owner_refused(self, tmp_path):
        """Test a fresh lease cannot be taken by another owner"""
        clock = FakeClock()
        lease = Lease(tmp_path / "export.lock", stale_after=1200, clock=clock)
        lease.acquire("s1")
        clock.advance(600)

        with pytest.raises(LeaseHeldError) as exc_info:
            lease.acquire("s2")
        assert exc_info.value.owner == "s1"

    def test_reentry_renews(self, tmp_path):
        """Test the owner re-acquiring renews the lease"""
        clock = FakeClock()
        lease = Lease(tmp_path / "export.lock", stale_after=1200, clock=clock)
        lease.acquire("s1")
        clock.advance(1000)

        record = lease.acquire("s1")

        assert record.renewed_at == clock.now
        clock.advance(1000)
        assert not lease.is_expired()

    def test_stale_lease_reclaimed(self, tmp_path):
        """Test a lease past its staleness window is taken over"""
        clock = FakeClock()
        lease = Lease(tmp_path / "export.lock", stale_after=1200, clock=clock)
        lease.acquire("s1")
        clock.advance(1201)

        assert lease.is_expired()
        assert lease.acquire("s2").session_id == "s2"

    def test_renew_by_other_owner_refused(self, tmp_path):
        """Test renewing someone else's lease fails"""
        lease = Lease(tmp_path / "export.lock", stale_after=1200)
        lease.acquire("s1")
        with pytest.raises(LeaseHeldError):
            lease.renew("s2")

    def test_release_by_other_owner_ignored(self, tmp_path):
        """Test a non-owner cannot release the lease"""
        lease = Lease(tmp_path / "export.lock", stale_after=1200)
        lease.acquire("s1")
        assert lease.release("s2") is False
        assert lease.read().session_id == "s1"

    def test_unreadable_recent_lease_is_held(self, tmp_path):
        """Test a half-written lease is not reclaimed while recent"""
        path = tmp_path / "export.lock"
        path.write_text("")
        lease = Lease(path, stale_after=1200)
        with pytest.raises(LeaseHeldError):
            lease.acquire("s1")


class TestStatusStore:
    """Test the status token file"""

    def test_write_and_read(self, tmp_path):
        """Test tokens are stored on a single line"""
        store = StatusStore(tmp_path)
        store.write(ExportStatus.ARCHIVING)
        assert store.read() == "archiving"

        store.write(error_token("disk\nfull"))
        assert store.read() == "error: disk full"
        assert (tmp_path / "status.txt").read_text().count("\n") == 1

    def test_rewrite_advances_heartbeat(self, tmp_path):
        """Test writing the same token again refreshes the heartbeat"""
        store = StatusStore(tmp_path)
        store.write(ExportStatus.ARCHIVING)
        os.utime(tmp_path / "status.txt", (1, 1))

        store.write(ExportStatus.ARCHIVING)

        assert store.last_heartbeat() > 1
        assert store.read() == "archiving"

    def test_read_missing(self, tmp_path):
        """Test a missing status file reads as None"""
        store = StatusStore(tmp_path)
        assert store.read() is None
        assert store.heartbeat_age() is None

    def test_heartbeat_age(self, tmp_path):
        """Test the heartbeat is the status file's modification time"""
        clock = FakeClock()
        store = StatusStore(tmp_path, clock=clock)
        store.write(ExportStatus.PAUSED)
        os.utime(tmp_path / "status.txt", (clock.now - 45, clock.now - 45))

        assert store.heartbeat_age() == pytest.approx(45)

    def test_token_helpers(self):
        """Test error and terminal token classification"""
        token = error_token("aborted")
        assert is_error(token)
        assert error_message(token) == "aborted"
        assert is_terminal("done")
        assert is_terminal(token)
        assert not is_terminal("paused")
        assert not is_error(None)


class TestSessionStore:
    """Test the session record"""

    def test_save_and_get(self, export_config):
        """Test a saved session is found by its id"""
        store = SessionStore(export_config.export_dir)
        session = store.new(export_config)
        store.save(session)

        loaded = store.get(session.session_id)

        assert loaded.config == export_config
        assert loaded.artifacts.archive.startswith("content_")
        assert loaded.artifacts.archive.endswith(".archive")

    def test_get_other_session(self, export_config):
        store = SessionStore(export_config.export_dir)
        store.save(store.new(export_config))
        with pytest.raises(SessionNotFoundError):
            store.get("someone-else")

    def test_unique_artifact_names(self, export_config):
        store = SessionStore(export_config.export_dir)
        assert store.new(export_config).artifacts.sql != store.new(export_config).artifacts.sql

    def test_cleanup_previous(self, export_config, export_dir):
        """Test artifacts of earlier sessions are removed and the current ones kept"""
        store = SessionStore(export_config.export_dir)
        old = store.new(export_config)
        current = store.new(export_config)
        store.save(current)
        for name in (old.artifacts.archive, old.artifacts.sql + ".gz", current.artifacts.archive, "notes.txt"):
            (export_dir / name).write_text("x")

        removed = store.cleanup_previous(keep=current)

        assert sorted(removed) == sorted([old.artifacts.archive, old.artifacts.sql + ".gz"])
        assert (export_dir / current.artifacts.archive).exists()
        assert (export_dir / "notes.txt").exists()
