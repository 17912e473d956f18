"""Backup index models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from datetime import datetime, timedelta
import uuid

from ..timeutil import from_iso, utcnow


@dataclass
class BackupRecord:
    """An entry in the backup index.

    Only records with ``verified=True`` may be used for a rollback.
    ``written`` lists, per entity, the row ids the pipeline wrote after the
    backup was taken; a rollback only reverts those rows. An incremental
    backup stores the entities that changed since ``base_backup_id``.
    """
    pipeline_id: str
    location: str
    retention_days: int = 7
    compressed: bool = False
    encrypted: bool = False
    verified: bool = False
    checksum_sha256: str = ""
    size_bytes: int = 0
    record_count: int = 0
    entity_count: int = 0
    incremental: bool = False
    base_backup_id: Optional[str] = None
    written: Dict[str, List[str]] = field(default_factory=dict)
    last_write_at: Optional[datetime] = None
    backup_id: str = field(default_factory=lambda: f"backup_{uuid.uuid4().hex}")
    created_at: datetime = field(default_factory=utcnow)

    @property
    def expires_at(self) -> datetime:
        return self.created_at + timedelta(days=self.retention_days)

    @property
    def written_count(self) -> int:
        return sum(len(ids) for ids in self.written.values())

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check if the retention window has passed."""
        return (now or utcnow()) >= self.expires_at

    def overlaps(self, other: "BackupRecord") -> Dict[str, List[str]]:
        """Row ids written under both records, per entity."""
        shared = {}
        for entity, ids in self.written.items():
            common = sorted(set(ids) & set(other.written.get(entity, [])))
            if common:
                shared[entity] = common
        return shared

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "backup_id": self.backup_id,
            "pipeline_id": self.pipeline_id,
            "created_at": self.created_at.isoformat(),
            "location": self.location,
            "retention_days": self.retention_days,
            "compressed": self.compressed,
            "encrypted": self.encrypted,
            "verified": self.verified,
            "checksum_sha256": self.checksum_sha256,
            "size_bytes": self.size_bytes,
            "record_count": self.record_count,
            "entity_count": self.entity_count,
            "incremental": self.incremental,
            "base_backup_id": self.base_backup_id,
            "written": self.written,
            "last_write_at": self.last_write_at.isoformat() if self.last_write_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupRecord":
        """Create from dictionary representation."""
        return cls(
            backup_id=data["backup_id"],
            pipeline_id=data["pipeline_id"],
            created_at=from_iso(data["created_at"]),
            location=data["location"],
            retention_days=data.get("retention_days", 7),
            compressed=data.get("compressed", False),
            encrypted=data.get("encrypted", False),
            verified=data.get("verified", False),
            checksum_sha256=data.get("checksum_sha256", ""),
            size_bytes=data.get("size_bytes", 0),
            record_count=data.get("record_count", 0),
            entity_count=data.get("entity_count", 0),
            incremental=data.get("incremental", False),
            base_backup_id=data.get("base_backup_id"),
            written={k: list(v) for k, v in (data.get("written") or {}).items()},
            last_write_at=from_iso(data["last_write_at"]) if data.get("last_write_at") else None,
        )
