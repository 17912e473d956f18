"""Base interface for the platform-side target of a migration."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from datetime import datetime
import logging

from ..timeutil import utcnow

logger = logging.getLogger(__name__)


@dataclass
class LoadResult:
    """Result of a write operation."""
    entity: str
    total_attempted: int = 0
    total_succeeded: int = 0
    total_failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_ids: List[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def success_rate(self) -> float:
        if self.total_attempted == 0:
            return 0.0
        return self.total_succeeded / self.total_attempted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity,
            "total_attempted": self.total_attempted,
            "total_succeeded": self.total_succeeded,
            "total_failed": self.total_failed,
            "success_rate": self.success_rate,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "created_ids": self.created_ids,
            "errors": self.errors,
        }


class TargetSink(ABC):
    """
    Base class for migration targets.

    A sink stores rows per entity. It exports its entire state for backups
    and reverts individual rows from such a snapshot on rollback.
    """

    def __init__(self, name: str = "care_platform"):
        self.name = name

    @abstractmethod
    def write_row(self, entity: str, row: Dict[str, Any]) -> str:
        """
        Write a single row.

        Args:
            entity: Target entity (e.g. residents)
            row: Transformed row

        Returns:
            The id the row was stored under
        """
        pass

    def write_rows(self, entity: str, rows: List[Dict[str, Any]]) -> LoadResult:
        """
        Write a batch of rows.

        Args:
            entity: Target entity
            rows: Transformed rows

        Returns:
            LoadResult with batch statistics
        """
        result = LoadResult(entity=entity)
        result.started_at = utcnow()

        for index, row in enumerate(rows):
            result.total_attempted += 1
            try:
                result.created_ids.append(self.write_row(entity, row))
                result.total_succeeded += 1
            except Exception as e:
                result.total_failed += 1
                result.errors.append({"index": index, "error": str(e)})
                logger.error(f"Failed to write {entity} row {index}: {e}")

        result.completed_at = utcnow()
        return result

    @abstractmethod
    def read_rows(self, entity: str) -> List[Dict[str, Any]]:
        """Read every stored row of an entity."""
        pass

    @abstractmethod
    def export_state(self) -> Dict[str, List[Dict[str, Any]]]:
        """Export all stored rows as entity -> rows."""
        pass

    @abstractmethod
    def revert_rows(
        self,
        snapshot: Dict[str, List[Dict[str, Any]]],
        written: Dict[str, List[str]],
    ) -> int:
        """
        Put the listed rows back to how they were in a snapshot.

        Rows present in the snapshot are restored; rows absent from it are
        deleted. Rows not listed in ``written`` are left alone.

        Args:
            snapshot: Exported state taken before the writes
            written: Entity -> ids of the rows to revert

        Returns:
            Number of rows reverted
        """
        pass

    def count(self, entity: str) -> int:
        return len(self.read_rows(entity))

    def health_check(self) -> bool:
        """Validate the connection to the target."""
        return True
