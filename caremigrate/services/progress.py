"""Progress tracking for pipeline executions."""

import logging
import threading
from typing import Any, Dict, List, Optional

from ..errors import MigrationError, PipelineNotFoundError
from ..events import EventBus, EventType
from ..models.progress import MigrationProgress, Phase, ProgressStatus, TOTAL_PHASES
from ..storage import PROGRESS, KeyValueStore
from ..timeutil import utcnow

logger = logging.getLogger(__name__)


class ProgressTracker:
    """
    Owns one MigrationProgress record per pipeline.

    Every update recomputes the percentage from the phase index, bumps the
    timestamp, appends a log line, writes the record through to the store
    and publishes ``progress_updated``. Within a run the phase index only
    moves forward.
    """

    def __init__(self, store: KeyValueStore, events: Optional[EventBus] = None):
        self.store = store
        self.events = events or EventBus()
        self._cache: Dict[str, MigrationProgress] = {}
        self._lock = threading.RLock()

    def _persist(self, progress: MigrationProgress) -> None:
        self.store.put(PROGRESS, progress.pipeline_id, progress.to_dict())

    def initialize(self, pipeline_id: str, estimated_minutes: int = 0) -> MigrationProgress:
        """Create the progress record for a new pipeline."""
        progress = MigrationProgress(
            pipeline_id=pipeline_id,
            current_step="Pipeline created",
            total_steps=TOTAL_PHASES,
            current_step_index=0,
            estimated_time_remaining=estimated_minutes,
            status=ProgressStatus.PREPARING,
        )
        progress.log("Pipeline created successfully")
        with self._lock:
            self._cache[pipeline_id] = progress
            self._persist(progress)
        return progress

    def get(self, pipeline_id: str) -> Optional[MigrationProgress]:
        with self._lock:
            progress = self._cache.get(pipeline_id)
            if progress is None:
                data = self.store.get(PROGRESS, pipeline_id)
                if data is None:
                    return None
                progress = MigrationProgress.from_dict(data)
                self._cache[pipeline_id] = progress
            return progress

    def require(self, pipeline_id: str) -> MigrationProgress:
        progress = self.get(pipeline_id)
        if progress is None:
            raise PipelineNotFoundError(pipeline_id)
        return progress

    def load_all(self, status: Optional[Any] = None) -> List[MigrationProgress]:
        """Load persisted records, optionally filtered by status value(s)."""
        filters: Dict[str, Any] = {}
        if status is not None:
            if isinstance(status, (list, tuple, set)):
                filters["status"] = [ProgressStatus(s).value for s in status]
            else:
                filters["status"] = ProgressStatus(status).value
        records = []
        with self._lock:
            for data in self.store.list(PROGRESS, **filters):
                progress = MigrationProgress.from_dict(data)
                self._cache[progress.pipeline_id] = progress
                records.append(progress)
        return records

    def update(self, pipeline_id: str, message: Optional[str] = None, **changes: Any) -> MigrationProgress:
        """
        Apply changes to a progress record and publish it.

        Args:
            pipeline_id: Pipeline to update
            message: Log line to append
            **changes: MigrationProgress attributes to set

        Returns:
            The updated record
        """
        with self._lock:
            progress = self.require(pipeline_id)
            for name, value in changes.items():
                if not hasattr(progress, name):
                    raise AttributeError(f"MigrationProgress has no attribute '{name}'")
                setattr(progress, name, value)
            progress.recalculate()
            progress.last_update_time = utcnow()
            if message:
                progress.log(message)
            self._persist(progress)
            snapshot = progress.to_dict()

        self.events.emit(
            EventType.PROGRESS_UPDATED,
            pipeline_id,
            status=snapshot["status"],
            current_step=snapshot["current_step"],
            current_step_index=snapshot["current_step_index"],
            percent_complete=snapshot["percent_complete"],
            records_processed=snapshot["records_processed"],
        )
        return progress

    def start_run(self, pipeline_id: str, run_id: str, correlation_id: str) -> MigrationProgress:
        """Reset phase and counters for a new execution."""
        now = utcnow()
        return self.update(
            pipeline_id,
            message=f"Migration started (run {run_id}, correlation {correlation_id})",
            status=ProgressStatus.RUNNING,
            current_step="Starting migration",
            current_step_index=0,
            records_processed=0,
            total_records=0,
            errors_encountered=0,
            warnings_encountered=0,
            run_id=run_id,
            correlation_id=correlation_id,
            started_at=now,
            completed_at=None,
        )

    def advance_phase(self, pipeline_id: str, phase: Phase, message: Optional[str] = None) -> MigrationProgress:
        """
        Move the record to a phase.

        Raises:
            MigrationError: If the phase index would decrease
        """
        with self._lock:
            progress = self.require(pipeline_id)
            if phase.index < progress.current_step_index:
                raise MigrationError(
                    f"Progress for pipeline {pipeline_id} cannot move back from step "
                    f"{progress.current_step_index} to {phase.index}",
                    pipeline_id=pipeline_id,
                )
            return self.update(
                pipeline_id,
                message=message or f"Completed: {phase.label}",
                current_step=phase.label,
                current_step_index=phase.index,
            )

    def set_status(
        self,
        pipeline_id: str,
        status: ProgressStatus,
        step: Optional[str] = None,
        message: Optional[str] = None,
    ) -> MigrationProgress:
        changes: Dict[str, Any] = {"status": status}
        if step is not None:
            changes["current_step"] = step
        if status in (ProgressStatus.COMPLETED, ProgressStatus.FAILED, ProgressStatus.ROLLED_BACK):
            changes["completed_at"] = utcnow()
        return self.update(pipeline_id, message=message, **changes)

    def record_phase_metrics(self, pipeline_id: str, phase: Phase, seconds: float) -> None:
        """Record a phase duration and refresh throughput counters."""
        with self._lock:
            progress = self.require(pipeline_id)
            metrics = progress.performance
            metrics.phase_durations[phase.value] = round(seconds, 4)
            if progress.started_at:
                metrics.elapsed_seconds = round((utcnow() - progress.started_at).total_seconds(), 4)
            if metrics.elapsed_seconds > 0:
                metrics.records_per_second = round(progress.records_processed / metrics.elapsed_seconds, 2)
            self._persist(progress)

    def flush(self) -> int:
        """Re-persist every cached record; returns the number written."""
        with self._lock:
            for progress in self._cache.values():
                self._persist(progress)
            count = len(self._cache)
        logger.info(f"Flushed {count} progress record(s)")
        return count
