"""Data models for the migration engine."""

from .pipeline import (
    AlternativeMapping,
    BackupPolicy,
    Complexity,
    FieldMapping,
    MigrationApproach,
    MigrationStrategy,
    NotificationPreferences,
    Pipeline,
    QualityAssurance,
    RuleKind,
    SourceAnalysis,
    SourceSystem,
    TargetSystem,
    TransformationRule,
    UserExperience,
    ValidationConstraint,
)
from .progress import (
    MigrationProgress,
    PerformanceMetrics,
    Phase,
    ProgressStatus,
)
from .record import (
    ImportResult,
    TransformedRow,
    ValidationError,
)
from .backup import BackupRecord

__all__ = [
    "AlternativeMapping",
    "BackupPolicy",
    "Complexity",
    "FieldMapping",
    "MigrationApproach",
    "MigrationStrategy",
    "NotificationPreferences",
    "Pipeline",
    "QualityAssurance",
    "RuleKind",
    "SourceAnalysis",
    "SourceSystem",
    "TargetSystem",
    "TransformationRule",
    "UserExperience",
    "ValidationConstraint",
    "MigrationProgress",
    "PerformanceMetrics",
    "Phase",
    "ProgressStatus",
    "ImportResult",
    "TransformedRow",
    "ValidationError",
    "BackupRecord",
]
