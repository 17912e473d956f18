"""Exception hierarchy for the migration engine.

Row-level problems are never raised; they are collected as
``models.record.ValidationError`` entries on an ``ImportResult``.
Everything here is pipeline-, phase- or field-level.
"""

from typing import Dict, List, Optional


class MigrationError(Exception):
    """Base exception for all migration engine errors.

    Attributes:
        pipeline_id: Pipeline the error relates to, when known.
        correlation_id: Correlation id of the run that raised it.
        retryable: Whether the caller may retry the operation as-is.
    """

    def __init__(
        self,
        message: str,
        pipeline_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.pipeline_id = pipeline_id
        self.correlation_id = correlation_id
        self.retryable = retryable


class ConfigurationError(MigrationError):
    """Missing or invalid engine configuration."""


class PipelineNotFoundError(MigrationError):
    """No pipeline definition or progress record exists for the id."""

    def __init__(self, pipeline_id: str):
        super().__init__(f"Pipeline not found: {pipeline_id}", pipeline_id=pipeline_id)


class AlreadyRunningError(MigrationError):
    """An execution (or rollback) is already in flight for the pipeline."""

    def __init__(self, pipeline_id: str):
        super().__init__(
            f"Migration is already running for pipeline {pipeline_id}",
            pipeline_id=pipeline_id,
        )


class InvalidStateTransitionError(MigrationError):
    """Requested status change is not allowed from the current status."""

    def __init__(self, pipeline_id: str, current: str, requested: str):
        super().__init__(
            f"Cannot {requested} pipeline {pipeline_id} in status: {current}",
            pipeline_id=pipeline_id,
        )
        self.current = current
        self.requested = requested


class BackupError(MigrationError):
    """A backup could not be written or verified."""


class BackupNotFoundError(MigrationError):
    """No verified backup exists for the pipeline."""

    def __init__(self, pipeline_id: str):
        super().__init__(f"No verified backup found for pipeline {pipeline_id}", pipeline_id=pipeline_id)


class RollbackFailedError(MigrationError):
    """A verified backup was found but restoring it failed."""


class RollbackConflictError(MigrationError):
    """Another pipeline has since written rows this rollback would revert."""

    def __init__(self, pipeline_id: str, other_pipeline_id: str, rows: Dict[str, List[str]]):
        shared = ", ".join(f"{entity}: {', '.join(ids)}" for entity, ids in sorted(rows.items()))
        super().__init__(
            f"Cannot roll back pipeline {pipeline_id}: pipeline {other_pipeline_id} "
            f"has since written the same rows ({shared})",
            pipeline_id=pipeline_id,
        )
        self.other_pipeline_id = other_pipeline_id
        self.rows = rows


class PhaseTimeoutError(MigrationError):
    """A phase exceeded its configured timeout."""

    def __init__(self, pipeline_id: str, phase: str, timeout: float, correlation_id: Optional[str] = None):
        super().__init__(
            f"Phase '{phase}' exceeded timeout of {timeout:g}s",
            pipeline_id=pipeline_id,
            correlation_id=correlation_id,
        )
        self.phase = phase
        self.timeout = timeout


class TransformationError(MigrationError):
    """A single field could not be transformed; the raw value is kept."""

    def __init__(self, field: str, message: str, value=None):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.value = value


class ConnectorError(MigrationError):
    """A source connector is missing, unhealthy or failed to extract."""

    def __init__(self, message: str, connector: str = "", retryable: bool = False):
        super().__init__(message, retryable=retryable)
        self.connector = connector


class QualityGateError(MigrationError):
    """Source data scored below the pipeline's quality threshold."""

    def __init__(self, pipeline_id: str, score: int, threshold: int):
        super().__init__(
            f"Source data quality {score} is below threshold {threshold}",
            pipeline_id=pipeline_id,
        )
        self.score = score
        self.threshold = threshold
