"""Migration progress models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime
import math

from ..timeutil import from_iso, utcnow


class ProgressStatus(str, Enum):
    """Status of a pipeline's progress record."""
    PREPARING = "preparing"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class Phase(str, Enum):
    """The five fixed execution phases, in order."""
    BACKUP = "backup"
    VALIDATE_SOURCE = "validate_source"
    TRANSFORM = "transform"
    VALIDATE_TARGET = "validate_target"
    FINALIZE = "finalize"

    @property
    def index(self) -> int:
        """1-based position of the phase."""
        return list(Phase).index(self) + 1

    @property
    def label(self) -> str:
        return PHASE_LABELS[self]


PHASE_LABELS = {
    Phase.BACKUP: "Creating backup",
    Phase.VALIDATE_SOURCE: "Validating source data",
    Phase.TRANSFORM: "Transforming data",
    Phase.VALIDATE_TARGET: "Validating migrated data",
    Phase.FINALIZE: "Finalizing migration",
}

TOTAL_PHASES = len(Phase)

TERMINAL_STATUSES = (ProgressStatus.COMPLETED, ProgressStatus.FAILED, ProgressStatus.ROLLED_BACK)


def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative values (Python's round() is banker's rounding)."""
    return int(math.floor(value + 0.5))


def percent_for(index: int, total: int) -> int:
    if total <= 0:
        return 0
    return round_half_up(index / total * 100)


@dataclass
class PerformanceMetrics:
    """Throughput counters for the current run."""
    records_per_second: float = 0.0
    elapsed_seconds: float = 0.0
    phase_durations: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "records_per_second": self.records_per_second,
            "elapsed_seconds": self.elapsed_seconds,
            "phase_durations": self.phase_durations,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PerformanceMetrics":
        """Create from dictionary representation."""
        return cls(
            records_per_second=data.get("records_per_second", 0.0),
            elapsed_seconds=data.get("elapsed_seconds", 0.0),
            phase_durations=data.get("phase_durations", {}),
        )


@dataclass
class MigrationProgress:
    """Live (and, after a terminal state, audit) progress of one pipeline."""
    pipeline_id: str
    current_step: str = "Pipeline created"
    total_steps: int = TOTAL_PHASES
    current_step_index: int = 0
    percent_complete: int = 0
    records_processed: int = 0
    total_records: int = 0
    errors_encountered: int = 0
    warnings_encountered: int = 0
    estimated_time_remaining: int = 0  # minutes
    status: ProgressStatus = ProgressStatus.PREPARING
    last_update_time: datetime = field(default_factory=utcnow)
    detailed_log: List[str] = field(default_factory=list)
    performance: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    run_id: Optional[str] = None
    correlation_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def recalculate(self) -> None:
        """Recompute the percentage from the phase index."""
        self.percent_complete = percent_for(self.current_step_index, self.total_steps)

    def log(self, message: str) -> None:
        self.detailed_log.append(f"[{utcnow().isoformat()}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "pipeline_id": self.pipeline_id,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "current_step_index": self.current_step_index,
            "percent_complete": self.percent_complete,
            "records_processed": self.records_processed,
            "total_records": self.total_records,
            "errors_encountered": self.errors_encountered,
            "warnings_encountered": self.warnings_encountered,
            "estimated_time_remaining": self.estimated_time_remaining,
            "status": self.status.value,
            "last_update_time": self.last_update_time.isoformat(),
            "detailed_log": self.detailed_log,
            "performance": self.performance.to_dict(),
            "run_id": self.run_id,
            "correlation_id": self.correlation_id,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationProgress":
        """Create from dictionary representation."""
        return cls(
            pipeline_id=data["pipeline_id"],
            current_step=data.get("current_step", "Pipeline created"),
            total_steps=data.get("total_steps", TOTAL_PHASES),
            current_step_index=data.get("current_step_index", 0),
            percent_complete=data.get("percent_complete", 0),
            records_processed=data.get("records_processed", 0),
            total_records=data.get("total_records", 0),
            errors_encountered=data.get("errors_encountered", 0),
            warnings_encountered=data.get("warnings_encountered", 0),
            estimated_time_remaining=data.get("estimated_time_remaining", 0),
            status=ProgressStatus(data.get("status", "preparing")),
            last_update_time=from_iso(data.get("last_update_time")) or utcnow(),
            detailed_log=data.get("detailed_log", []),
            performance=PerformanceMetrics.from_dict(data.get("performance", {})),
            run_id=data.get("run_id"),
            correlation_id=data.get("correlation_id"),
            started_at=from_iso(data.get("started_at")),
            completed_at=from_iso(data.get("completed_at")),
        )
