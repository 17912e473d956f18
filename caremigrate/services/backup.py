"""
Backup and rollback of target-side state.

A backup is the target sink's exported state serialised to JSON, optionally
gzip-compressed, optionally encrypted with AES-256-GCM under a key derived
with PBKDF2-SHA256, and checksummed with SHA-256. A backup is only marked
verified after the written file has been read back and fully decoded.

Dates and datetimes are tagged in the JSON (``{"$date": ...}`` and
``{"$datetime": ...}``) and come back as the same types on restore. Other
values JSON cannot hold are stored as strings.

Encrypted file layout: 16-byte salt + 12-byte nonce + ciphertext (with tag).
"""

import gzip
import hashlib
import json
import logging
import os
import time
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..errors import BackupError, BackupNotFoundError, RollbackConflictError, RollbackFailedError
from ..models.backup import BackupRecord
from ..models.pipeline import BackupPolicy
from ..storage import BACKUPS, KeyValueStore
from ..targets.base import TargetSink
from ..timeutil import utcnow

logger = logging.getLogger(__name__)

SALT_BYTES = 16
NONCE_BYTES = 12
KEY_BYTES = 32


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return {"$datetime": value.isoformat()}
    if isinstance(value, date):
        return {"$date": value.isoformat()}
    return str(value)


def _json_object_hook(obj: Dict[str, Any]) -> Any:
    if len(obj) == 1:
        if "$datetime" in obj:
            return datetime.fromisoformat(obj["$datetime"])
        if "$date" in obj:
            return date.fromisoformat(obj["$date"])
    return obj


def compute_sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class Compressor:
    """gzip compression of snapshot payloads."""

    def __init__(self, level: int = 6):
        self.level = level

    def compress(self, data: bytes) -> bytes:
        return gzip.compress(data, compresslevel=self.level)

    def decompress(self, data: bytes) -> bytes:
        try:
            return gzip.decompress(data)
        except (OSError, EOFError) as e:
            raise BackupError(f"Backup payload is not valid gzip data: {e}") from e


class BackupCipher:
    """
    AES-256-GCM encryption with a PBKDF2-SHA256 derived key.

    A fresh salt and nonce are generated for every payload.
    """

    def __init__(self, passphrase: str, iterations: int = 200_000):
        if not passphrase:
            raise BackupError("Backup encryption requires a non-empty key")
        self._passphrase = passphrase.encode("utf-8")
        self.iterations = iterations

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_BYTES,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(self._passphrase)

    def encrypt(self, data: bytes) -> bytes:
        salt = os.urandom(SALT_BYTES)
        nonce = os.urandom(NONCE_BYTES)
        ciphertext = AESGCM(self._derive_key(salt)).encrypt(nonce, data, None)
        return salt + nonce + ciphertext

    def decrypt(self, data: bytes) -> bytes:
        if len(data) < SALT_BYTES + NONCE_BYTES:
            raise BackupError("Encrypted backup payload is truncated")
        salt = data[:SALT_BYTES]
        nonce = data[SALT_BYTES:SALT_BYTES + NONCE_BYTES]
        try:
            return AESGCM(self._derive_key(salt)).decrypt(nonce, data[SALT_BYTES + NONCE_BYTES:], None)
        except InvalidTag as e:
            raise BackupError("Backup decryption failed: wrong key or corrupted payload") from e


class BackupManager:
    """
    Creates verified snapshots of the target and restores them.

    Supports:
    - Compression and encryption per backup policy
    - Incremental backups on top of the pipeline's last verified backup
    - Write-then-read-back verification
    - Scoped rollback of the rows a pipeline wrote after its backup
    - Restore drills that decode a backup without applying it
    - Retention-based cleanup
    """

    def __init__(
        self,
        store: KeyValueStore,
        target: TargetSink,
        backup_dir: str,
        encryption_key: Optional[str] = None,
        pbkdf2_iterations: int = 200_000,
        compression_level: int = 6,
    ):
        """
        Initialize the backup manager.

        Args:
            store: Store holding the backup index
            target: Target sink whose state is snapshotted
            backup_dir: Root directory for backup files
            encryption_key: Passphrase for encrypted backups
            pbkdf2_iterations: Key derivation iterations
            compression_level: gzip level 1-9
        """
        self.store = store
        self.target = target
        self.backup_dir = Path(backup_dir)
        self.compressor = Compressor(compression_level)
        self.cipher = BackupCipher(encryption_key, pbkdf2_iterations) if encryption_key else None

    def _encode(self, payload: Dict[str, Any], policy: BackupPolicy, pipeline_id: str) -> bytes:
        blob = json.dumps(payload, default=_json_default).encode("utf-8")
        if policy.compression:
            blob = self.compressor.compress(blob)
        if policy.encryption:
            if self.cipher is None:
                raise BackupError(
                    "Backup policy requires encryption but no backup encryption key is configured",
                    pipeline_id=pipeline_id,
                )
            blob = self.cipher.encrypt(blob)
        return blob

    def _decode(self, blob: bytes, record: BackupRecord) -> Dict[str, Any]:
        if record.encrypted:
            if self.cipher is None:
                raise BackupError("Backup is encrypted but no backup encryption key is configured")
            blob = self.cipher.decrypt(blob)
        if record.compressed:
            blob = self.compressor.decompress(blob)
        try:
            payload = json.loads(blob.decode("utf-8"), object_hook=_json_object_hook)
        except (UnicodeDecodeError, ValueError) as e:
            raise BackupError(f"Backup payload is not valid JSON: {e}") from e
        if payload.get("pipeline_id") != record.pipeline_id:
            raise BackupError(f"Backup {record.backup_id} belongs to another pipeline")
        return payload

    def _get_record(self, backup_id: str) -> BackupRecord:
        data = self.store.get(BACKUPS, backup_id)
        if data is None:
            raise BackupError(f"Backup {backup_id} is not in the backup index")
        return BackupRecord.from_dict(data)

    def load_state(self, record: BackupRecord, _seen: Optional[Set[str]] = None) -> Dict[str, List[Dict[str, Any]]]:
        """
        Read, check and decode a backup into the full target state it captured.

        Incremental backups are resolved against their base chain.

        Raises:
            BackupError: If any file in the chain is missing, altered or undecodable
        """
        seen = _seen if _seen is not None else set()
        if record.backup_id in seen:
            raise BackupError(f"Backup chain of {record.backup_id} is circular")
        seen.add(record.backup_id)

        try:
            blob = Path(record.location).read_bytes()
        except OSError as e:
            raise BackupError(f"Cannot read backup {record.location}: {e}") from e
        if compute_sha256(blob) != record.checksum_sha256:
            raise BackupError(f"Checksum mismatch for backup {record.backup_id}")

        payload = self._decode(blob, record)
        if not record.incremental:
            return payload["state"]

        state = dict(self.load_state(self._get_record(record.base_backup_id), seen))
        for entity in payload.get("removed_entities", []):
            state.pop(entity, None)
        state.update(payload["state"])
        return state

    def create_backup(self, pipeline_id: str, policy: Optional[BackupPolicy] = None) -> BackupRecord:
        """
        Snapshot the target state for a pipeline.

        With ``policy.incremental`` and an earlier verified backup of the same
        pipeline, only the entities that changed since that backup are stored.

        Args:
            pipeline_id: Pipeline the backup belongs to
            policy: Backup policy (compression, encryption, retention)

        Returns:
            The stored BackupRecord (verified unless verification is disabled)

        Raises:
            BackupError: If the snapshot cannot be written or verified
        """
        policy = policy or BackupPolicy()
        state = self.target.export_state()
        record_count = sum(len(rows) for rows in state.values())

        record = BackupRecord(
            pipeline_id=pipeline_id,
            location="",
            retention_days=policy.retention_days,
            compressed=policy.compression,
            encrypted=policy.encryption,
            record_count=record_count,
            entity_count=len(state),
        )

        payload = {"pipeline_id": pipeline_id, "created_at": record.created_at.isoformat(), "state": state}
        base = self.latest_verified(pipeline_id) if policy.incremental else None
        if base is not None:
            try:
                base_state = self.load_state(base)
            except BackupError as e:
                logger.warning(f"Base backup {base.backup_id} unusable, taking a full backup instead: {e}")
            else:
                payload["state"] = {e: rows for e, rows in state.items() if base_state.get(e) != rows}
                payload["removed_entities"] = [e for e in base_state if e not in state]
                payload["base_backup_id"] = base.backup_id
                record.incremental = True
                record.base_backup_id = base.backup_id

        blob = self._encode(payload, policy, pipeline_id)
        record.checksum_sha256 = compute_sha256(blob)
        record.size_bytes = len(blob)

        path = self.backup_dir / policy.location / pipeline_id / f"{record.backup_id}.bak"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_bytes(blob)
            os.replace(tmp_path, path)
        except OSError as e:
            raise BackupError(f"Failed to write backup {path}: {e}", pipeline_id=pipeline_id) from e
        record.location = str(path)

        if policy.verification:
            self._verify(record)
            record.verified = True
        else:
            logger.warning(f"Backup {record.backup_id} not verified; it cannot be used for rollback")

        self.store.put(BACKUPS, record.backup_id, record.to_dict())
        logger.info(
            f"Created {'incremental' if record.incremental else 'full'} backup {record.backup_id} "
            f"for pipeline {pipeline_id}: {record_count} records, {record.size_bytes} bytes, "
            f"compressed={record.compressed}, encrypted={record.encrypted}"
        )
        return record

    def _verify(self, record: BackupRecord) -> None:
        """Read the file back and decode it completely."""
        try:
            state = self.load_state(record)
        except BackupError as e:
            raise BackupError(f"Backup verification failed: {e}", pipeline_id=record.pipeline_id) from e

        restored_count = sum(len(rows) for rows in state.values())
        if restored_count != record.record_count:
            raise BackupError(
                f"Backup verification failed: expected {record.record_count} records, read {restored_count}"
            )

    def record_writes(self, backup_id: str, entity: str, row_ids: List[str]) -> BackupRecord:
        """
        Record the rows a run wrote to an entity after taking a backup.

        Rollback reverts exactly these rows.
        """
        record = self._get_record(backup_id)
        record.written[entity] = list(dict.fromkeys(record.written.get(entity, []) + list(row_ids)))
        record.last_write_at = utcnow()
        self.store.put(BACKUPS, backup_id, record.to_dict())
        return record

    def list_backups(self, pipeline_id: Optional[str] = None) -> List[BackupRecord]:
        """List backups, newest first."""
        filters = {"pipeline_id": pipeline_id} if pipeline_id else {}
        records = [BackupRecord.from_dict(d) for d in self.store.list(BACKUPS, **filters)]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def latest_verified(self, pipeline_id: str) -> Optional[BackupRecord]:
        for record in self.list_backups(pipeline_id):
            if record.verified:
                return record
        return None

    def rollback_candidate(self, pipeline_id: str) -> BackupRecord:
        """
        Find the backup a rollback of the pipeline would use.

        Raises:
            BackupNotFoundError: If no verified backup exists
            RollbackConflictError: If another pipeline wrote any of the same
                rows after this backup was taken
        """
        record = self.latest_verified(pipeline_id)
        if record is None:
            raise BackupNotFoundError(pipeline_id)

        for other in self.list_backups():
            if other.pipeline_id == pipeline_id or other.last_write_at is None:
                continue
            if other.last_write_at <= record.created_at:
                continue
            shared = record.overlaps(other)
            if shared:
                raise RollbackConflictError(pipeline_id, other.pipeline_id, shared)
        return record

    def restore_from_backup(self, pipeline_id: str) -> int:
        """
        Revert the rows the pipeline wrote since its most recent verified backup.

        Rows are put back as the backup captured them, or deleted when the
        backup predates them. Rows written by other pipelines are untouched.

        Args:
            pipeline_id: Pipeline to roll back

        Returns:
            Number of rows reverted

        Raises:
            BackupNotFoundError: If no verified backup exists
            RollbackConflictError: If another pipeline has since written the same rows
            RollbackFailedError: If the backup cannot be read, verified or applied
        """
        record = self.rollback_candidate(pipeline_id)

        logger.info(
            f"Rolling back pipeline {pipeline_id} from backup {record.backup_id} "
            f"({record.written_count} rows written since)"
        )
        try:
            state = self.load_state(record)
            reverted = self.target.revert_rows(state, record.written)
        except Exception as e:
            raise RollbackFailedError(
                f"Restore from backup {record.backup_id} failed: {e}", pipeline_id=pipeline_id
            ) from e

        record.written = {}
        self.store.put(BACKUPS, record.backup_id, record.to_dict())
        logger.info(f"Reverted {reverted} records for pipeline {pipeline_id}")
        return reverted

    def test_restore(self, pipeline_id: str) -> Dict[str, Any]:
        """
        Run a restore drill: decode the latest verified backup without applying it.

        Returns:
            Drill report with checksum and decode outcome, record count and duration

        Raises:
            BackupNotFoundError: If no verified backup exists
        """
        record = self.latest_verified(pipeline_id)
        if record is None:
            raise BackupNotFoundError(pipeline_id)

        report: Dict[str, Any] = {
            "backup_id": record.backup_id,
            "pipeline_id": pipeline_id,
            "checksum_match": False,
            "decoded": False,
            "records": 0,
            "expected_records": record.record_count,
            "success": False,
            "error": None,
        }
        started = time.monotonic()
        try:
            blob = Path(record.location).read_bytes()
            report["checksum_match"] = compute_sha256(blob) == record.checksum_sha256
            state = self.load_state(record)
            report["decoded"] = True
            report["records"] = sum(len(rows) for rows in state.values())
            report["success"] = report["records"] == record.record_count
        except (OSError, BackupError) as e:
            report["error"] = str(e)
            logger.warning(f"Restore drill failed for backup {record.backup_id}: {e}")
        report["duration_seconds"] = time.monotonic() - started

        logger.info(
            f"Restore drill for pipeline {pipeline_id} backup {record.backup_id}: "
            f"success={report['success']}, {report['records']} records"
        )
        return report

    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """
        Delete backups past their retention window.

        Expired backups that an unexpired incremental backup is built on
        are kept.

        Returns:
            Number of backups removed
        """
        now = now or utcnow()
        records = self.list_backups()
        by_id = {r.backup_id: r for r in records}

        needed: Set[str] = set()
        for record in records:
            if record.is_expired(now):
                continue
            base_id = record.base_backup_id
            while base_id and base_id not in needed:
                needed.add(base_id)
                base = by_id.get(base_id)
                base_id = base.base_backup_id if base else None

        removed = 0
        for record in records:
            if not record.is_expired(now):
                continue
            if record.backup_id in needed:
                logger.info(f"Keeping expired backup {record.backup_id}: incremental backups depend on it")
                continue
            try:
                Path(record.location).unlink()
            except FileNotFoundError:
                logger.warning(f"Backup file already missing: {record.location}")
            self.store.delete(BACKUPS, record.backup_id)
            removed += 1
            logger.info(f"Removed expired backup {record.backup_id} (pipeline {record.pipeline_id})")
        return removed
