"""Tests for caremigrate.services.backup."""

import json
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

from caremigrate.errors import BackupError, BackupNotFoundError, RollbackConflictError, RollbackFailedError
from caremigrate.models.pipeline import BackupPolicy
from caremigrate.services.backup import BackupCipher, BackupManager, Compressor
from caremigrate.storage import BACKUPS
from caremigrate.targets.memory import InMemoryTarget
from caremigrate.timeutil import utcnow

TEST_ITERATIONS = 1000


# ---------------------------------------------------------------------------
# Helpers / Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def seeded_target(target):
    target.write_row("residents", {"resident_id": "PCS001", "last_name": "Smith"})
    target.write_row("residents", {"resident_id": "PCS002", "last_name": "Jones"})
    target.write_row("medications", {"id": "M1", "name": "Donepezil"})
    return target


@pytest.fixture
def manager(store, seeded_target, tmp_path):
    return BackupManager(
        store,
        seeded_target,
        str(tmp_path / "backups"),
        encryption_key="correct horse battery staple",
        pbkdf2_iterations=TEST_ITERATIONS,
    )


class ExplodingTarget(InMemoryTarget):
    """Fails every revert as a lost database connection would."""

    def revert_rows(self, snapshot, written):
        raise RuntimeError("db connection lost")


def _policy(**overrides):
    values = {"compression": True, "encryption": True, "retention_days": 7}
    values.update(overrides)
    return BackupPolicy(**values)


# ---------------------------------------------------------------------------
# Codecs
# ---------------------------------------------------------------------------
class TestCodecs:

    def test_compression_round_trip(self):
        compressor = Compressor(level=9)
        payload = b"resident " * 100
        packed = compressor.compress(payload)
        assert len(packed) < len(payload)
        assert compressor.decompress(packed) == payload

    def test_bad_gzip(self):
        with pytest.raises(BackupError):
            Compressor().decompress(b"definitely not gzip")

    def test_encryption_uses_fresh_salt(self):
        cipher = BackupCipher("secret", iterations=TEST_ITERATIONS)
        first = cipher.encrypt(b"payload")
        second = cipher.encrypt(b"payload")
        assert first != second
        assert cipher.decrypt(first) == b"payload"

    def test_wrong_key(self):
        blob = BackupCipher("secret", iterations=TEST_ITERATIONS).encrypt(b"payload")
        with pytest.raises(BackupError, match="wrong key"):
            BackupCipher("other", iterations=TEST_ITERATIONS).decrypt(blob)

    def test_empty_key_rejected(self):
        with pytest.raises(BackupError):
            BackupCipher("")


# ---------------------------------------------------------------------------
# Backups
# ---------------------------------------------------------------------------
class TestCreateBackup:

    def test_verified_backup_written(self, manager, store):
        record = manager.create_backup("pipe-1", _policy(location="migrations"))

        assert record.verified
        assert record.compressed and record.encrypted
        assert record.record_count == 3
        assert record.entity_count == 2
        assert len(record.checksum_sha256) == 64
        path = Path(record.location)
        assert path.exists()
        assert path.parent.name == "pipe-1"
        assert path.stat().st_size == record.size_bytes
        assert store.get(BACKUPS, record.backup_id)["verified"] is True

    def test_file_is_not_plaintext(self, manager):
        record = manager.create_backup("pipe-1", _policy(compression=False))
        assert b"Smith" not in Path(record.location).read_bytes()

    def test_plain_backup(self, manager):
        record = manager.create_backup("pipe-1", _policy(compression=False, encryption=False))
        assert b"Smith" in Path(record.location).read_bytes()
        assert record.verified

    def test_encryption_without_key(self, store, seeded_target, tmp_path):
        manager = BackupManager(store, seeded_target, str(tmp_path))
        with pytest.raises(BackupError, match="no backup encryption key"):
            manager.create_backup("pipe-1", _policy())

    def test_unverified_backup_not_used(self, manager):
        manager.create_backup("pipe-1", _policy(verification=False))
        assert manager.latest_verified("pipe-1") is None

    def test_list_newest_first(self, manager):
        first = manager.create_backup("pipe-1", _policy())
        second = manager.create_backup("pipe-1", _policy())
        manager.create_backup("pipe-2", _policy())

        listed = manager.list_backups("pipe-1")
        assert [r.backup_id for r in listed] == [second.backup_id, first.backup_id]
        assert len(manager.list_backups()) == 3


# ---------------------------------------------------------------------------
# Restore
# ---------------------------------------------------------------------------
class TestRestore:

    def test_restore_reverts_written_rows(self, manager, seeded_target):
        record = manager.create_backup("pipe-1", _policy())
        seeded_target.write_row("residents", {"resident_id": "PCS003", "last_name": "Taylor"})
        seeded_target.write_row("residents", {"resident_id": "PCS001", "last_name": "Smyth"})
        manager.record_writes(record.backup_id, "residents", ["PCS003", "PCS001"])
        assert seeded_target.count("residents") == 3

        restored = manager.restore_from_backup("pipe-1")

        assert restored == 2
        assert seeded_target.count("residents") == 2
        assert seeded_target.get("residents", "PCS003") is None
        assert seeded_target.get("residents", "PCS001")["last_name"] == "Smith"
        assert seeded_target.count("medications") == 1

    def test_unwritten_rows_are_kept(self, manager, seeded_target):
        manager.create_backup("pipe-1", _policy())
        seeded_target.write_row("residents", {"resident_id": "PCS009", "last_name": "Added elsewhere"})

        assert manager.restore_from_backup("pipe-1") == 0
        assert seeded_target.get("residents", "PCS009") is not None

    def test_second_restore_reverts_nothing(self, manager, seeded_target):
        record = manager.create_backup("pipe-1", _policy())
        seeded_target.write_row("residents", {"resident_id": "PCS003"})
        manager.record_writes(record.backup_id, "residents", ["PCS003"])
        assert manager.restore_from_backup("pipe-1") == 1

        seeded_target.write_row("residents", {"resident_id": "PCS003", "last_name": "Rewritten"})
        assert manager.restore_from_backup("pipe-1") == 0
        assert seeded_target.get("residents", "PCS003")["last_name"] == "Rewritten"

    def test_target_failure_becomes_rollback_failure(self, store, tmp_path):
        target = ExplodingTarget()
        target.write_row("residents", {"resident_id": "PCS001"})
        manager = BackupManager(store, target, str(tmp_path / "backups"))
        record = manager.create_backup("pipe-1", _policy(encryption=False))
        manager.record_writes(record.backup_id, "residents", ["PCS001"])

        with pytest.raises(RollbackFailedError, match="db connection lost") as excinfo:
            manager.restore_from_backup("pipe-1")
        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert manager.list_backups("pipe-1")[0].written == {"residents": ["PCS001"]}

    def test_no_backup(self, manager):
        with pytest.raises(BackupNotFoundError):
            manager.restore_from_backup("pipe-unknown")

    def test_tampered_file(self, manager, seeded_target):
        record = manager.create_backup("pipe-1", _policy())
        Path(record.location).write_bytes(b"tampered")
        seeded_target.write_row("residents", {"resident_id": "PCS003"})

        with pytest.raises(RollbackFailedError):
            manager.restore_from_backup("pipe-1")
        # Target left untouched
        assert seeded_target.count("residents") == 3

    def test_missing_file(self, manager):
        record = manager.create_backup("pipe-1", _policy())
        Path(record.location).unlink()
        with pytest.raises(RollbackFailedError):
            manager.restore_from_backup("pipe-1")

    def test_backup_of_another_pipeline_rejected(self, manager, store):
        record = manager.create_backup("pipe-1", _policy())
        hijacked = store.get(BACKUPS, record.backup_id)
        hijacked["pipeline_id"] = "pipe-2"
        hijacked["backup_id"] = "backup_hijacked"
        store.put(BACKUPS, "backup_hijacked", hijacked)

        with pytest.raises(RollbackFailedError, match="another pipeline"):
            manager.restore_from_backup("pipe-2")


# ---------------------------------------------------------------------------
# Rollback scope across pipelines
# ---------------------------------------------------------------------------
class TestRollbackScope:

    def _run(self, manager, target, pipeline_id, rows):
        record = manager.create_backup(pipeline_id, _policy())
        for row in rows:
            target.write_row("residents", row)
        return manager.record_writes(record.backup_id, "residents", [r["resident_id"] for r in rows])

    def test_other_pipeline_rows_survive(self, manager, seeded_target):
        self._run(manager, seeded_target, "pipe-a", [{"resident_id": "A1"}, {"resident_id": "A2"}])
        self._run(manager, seeded_target, "pipe-b", [{"resident_id": "OTH1", "last_name": "Other"}])

        assert manager.restore_from_backup("pipe-a") == 2

        assert seeded_target.get("residents", "A1") is None
        assert seeded_target.get("residents", "OTH1")["last_name"] == "Other"
        assert seeded_target.get("residents", "PCS001") is not None

    def test_overlapping_later_writes_refuse_rollback(self, manager, seeded_target):
        self._run(manager, seeded_target, "pipe-a", [{"resident_id": "PCS001", "last_name": "From A"}])
        self._run(manager, seeded_target, "pipe-b", [{"resident_id": "PCS001", "last_name": "From B"}])

        with pytest.raises(RollbackConflictError, match="pipe-b") as excinfo:
            manager.restore_from_backup("pipe-a")

        assert excinfo.value.rows == {"residents": ["PCS001"]}
        assert seeded_target.get("residents", "PCS001")["last_name"] == "From B"

    def test_earlier_writes_of_another_pipeline_are_restored(self, manager, seeded_target):
        self._run(manager, seeded_target, "pipe-b", [{"resident_id": "PCS001", "last_name": "From B"}])
        self._run(manager, seeded_target, "pipe-a", [{"resident_id": "PCS001", "last_name": "From A"}])

        assert manager.restore_from_backup("pipe-a") == 1
        assert seeded_target.get("residents", "PCS001")["last_name"] == "From B"


# ---------------------------------------------------------------------------
# Incremental backups
# ---------------------------------------------------------------------------
class TestIncremental:

    def test_first_incremental_is_full(self, manager):
        record = manager.create_backup("pipe-1", _policy(incremental=True))
        assert not record.incremental
        assert record.base_backup_id is None

    def test_stores_changed_entities_only(self, manager, seeded_target):
        full = manager.create_backup("pipe-1", _policy(compression=False, encryption=False))
        seeded_target.write_row("medications", {"id": "M2", "name": "Sertraline"})

        record = manager.create_backup("pipe-1", _policy(compression=False, encryption=False, incremental=True))

        assert record.incremental
        assert record.verified
        assert record.base_backup_id == full.backup_id
        assert record.record_count == 4
        payload = json.loads(Path(record.location).read_bytes())
        assert list(payload["state"]) == ["medications"]
        assert b"Smith" not in Path(record.location).read_bytes()
        assert manager.load_state(record) == seeded_target.export_state()

    def test_rollback_through_incremental_chain(self, manager, seeded_target):
        manager.create_backup("pipe-1", _policy())
        seeded_target.write_row("medications", {"id": "M2", "name": "Sertraline"})
        record = manager.create_backup("pipe-1", _policy(incremental=True))
        seeded_target.write_row("residents", {"resident_id": "PCS001", "last_name": "Smyth"})
        seeded_target.write_row("medications", {"id": "M3", "name": "Aspirin"})
        manager.record_writes(record.backup_id, "residents", ["PCS001"])
        manager.record_writes(record.backup_id, "medications", ["M3"])

        assert manager.restore_from_backup("pipe-1") == 2

        assert seeded_target.get("residents", "PCS001")["last_name"] == "Smith"
        assert seeded_target.get("medications", "M2") is not None
        assert seeded_target.get("medications", "M3") is None

    def test_missing_base_fails_verification(self, manager, seeded_target):
        full = manager.create_backup("pipe-1", _policy())
        seeded_target.write_row("medications", {"id": "M2"})
        record = manager.create_backup("pipe-1", _policy(incremental=True))
        Path(full.location).unlink()

        with pytest.raises(BackupError):
            manager.load_state(record)


# ---------------------------------------------------------------------------
# Restore drills
# ---------------------------------------------------------------------------
class TestRestoreDrill:

    def test_drill_succeeds_without_applying(self, manager, seeded_target):
        record = manager.create_backup("pipe-1", _policy())
        seeded_target.write_row("residents", {"resident_id": "PCS003"})

        report = manager.test_restore("pipe-1")

        assert report["backup_id"] == record.backup_id
        assert report["success"] is True
        assert report["checksum_match"] is True
        assert report["decoded"] is True
        assert report["records"] == 3
        assert report["error"] is None
        assert report["duration_seconds"] >= 0
        assert seeded_target.count("residents") == 3

    def test_drill_reports_tampered_backup(self, manager):
        record = manager.create_backup("pipe-1", _policy())
        Path(record.location).write_bytes(b"tampered")

        report = manager.test_restore("pipe-1")

        assert report["success"] is False
        assert report["checksum_match"] is False
        assert report["decoded"] is False
        assert "Checksum mismatch" in report["error"]

    def test_drill_without_backup(self, manager):
        with pytest.raises(BackupNotFoundError):
            manager.test_restore("pipe-unknown")


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------
class TestValueTypes:

    def test_dates_survive_restore(self, manager, seeded_target):
        admitted = datetime(2025, 6, 1, 9, 30, tzinfo=timezone.utc)
        seeded_target.write_row("residents", {
            "resident_id": "PCS004",
            "date_of_birth": date(1940, 3, 15),
            "admitted_at": admitted,
        })
        record = manager.create_backup("pipe-1", _policy())
        seeded_target.write_row("residents", {"resident_id": "PCS004", "date_of_birth": "unknown"})
        manager.record_writes(record.backup_id, "residents", ["PCS004"])

        manager.restore_from_backup("pipe-1")

        row = seeded_target.get("residents", "PCS004")
        assert row["date_of_birth"] == date(1940, 3, 15)
        assert type(row["date_of_birth"]) is date
        assert row["admitted_at"] == admitted


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------
class TestCleanup:

    def test_expired_backups_removed(self, manager):
        short = manager.create_backup("pipe-1", _policy(retention_days=1))
        kept = manager.create_backup("pipe-1", _policy(retention_days=30))

        removed = manager.cleanup_expired(now=utcnow() + timedelta(days=2))

        assert removed == 1
        assert not Path(short.location).exists()
        assert [r.backup_id for r in manager.list_backups("pipe-1")] == [kept.backup_id]

    def test_base_of_live_incremental_is_kept(self, manager, seeded_target):
        full = manager.create_backup("pipe-1", _policy(retention_days=1))
        seeded_target.write_row("medications", {"id": "M2"})
        incremental = manager.create_backup("pipe-1", _policy(retention_days=30, incremental=True))

        removed = manager.cleanup_expired(now=utcnow() + timedelta(days=2))

        assert removed == 0
        assert Path(full.location).exists()
        assert manager.load_state(incremental) == seeded_target.export_state()

        assert manager.cleanup_expired(now=utcnow() + timedelta(days=31)) == 2
