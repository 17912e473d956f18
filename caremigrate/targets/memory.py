"""In-process target sink."""

from typing import Any, Dict, List, Optional, Sequence
import copy
import logging
import threading
import uuid

from .base import TargetSink

logger = logging.getLogger(__name__)

DEFAULT_ID_FIELDS = ("resident_id", "patient_id", "client_id", "id")


class InMemoryTarget(TargetSink):
    """Stores rows per entity keyed by their identifier.

    Rows with an existing identifier replace the stored row (upsert).
    """

    def __init__(self, name: str = "care_platform", id_fields: Sequence[str] = DEFAULT_ID_FIELDS):
        super().__init__(name)
        self.id_fields = tuple(id_fields)
        self._rows: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _row_id(self, row: Dict[str, Any]) -> str:
        for field_name in self.id_fields:
            value = row.get(field_name)
            if value not in (None, ""):
                return str(value)
        return str(uuid.uuid4())

    def write_row(self, entity: str, row: Dict[str, Any]) -> str:
        row_id = self._row_id(row)
        with self._lock:
            self._rows.setdefault(entity, {})[row_id] = copy.deepcopy(row)
        return row_id

    def read_rows(self, entity: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._rows.get(entity, {}).values()]

    def get(self, entity: str, row_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._rows.get(entity, {}).get(row_id)
            return copy.deepcopy(row) if row is not None else None

    def export_state(self) -> Dict[str, List[Dict[str, Any]]]:
        with self._lock:
            return {
                entity: [copy.deepcopy(r) for r in rows.values()]
                for entity, rows in self._rows.items()
            }

    def revert_rows(
        self,
        snapshot: Dict[str, List[Dict[str, Any]]],
        written: Dict[str, List[str]],
    ) -> int:
        before = {
            entity: {self._row_id(row): row for row in rows}
            for entity, rows in snapshot.items()
        }
        reverted = 0
        with self._lock:
            for entity, ids in written.items():
                bucket = self._rows.setdefault(entity, {})
                previous = before.get(entity, {})
                for row_id in dict.fromkeys(ids):
                    if row_id in previous:
                        bucket[row_id] = copy.deepcopy(previous[row_id])
                    elif bucket.pop(row_id, None) is None:
                        continue
                    reverted += 1
                if not bucket:
                    del self._rows[entity]
        logger.info(f"Reverted {reverted} rows across {len(written)} entities in {self.name}")
        return reverted
