"""Pydantic models for pipeline creation and execution requests."""

from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field

from .pipeline import NotificationPreferences, SourceSystem, TargetSystem


class SourceSystemRequest(BaseModel):
    system_name: str
    system_type: str = "file_based"
    connector: Optional[str] = None
    connection: Dict[str, Any] = Field(default_factory=dict)
    data_types: List[str] = Field(default_factory=list)
    estimated_volume: float = Field(default=0.0, ge=0)  # GB
    entity: Optional[str] = None
    sample_rows: Optional[List[Dict[str, Any]]] = None

    def to_source_system(self) -> SourceSystem:
        return SourceSystem(
            system_name=self.system_name,
            system_type=self.system_type,
            connector=self.connector,
            connection=dict(self.connection),
            data_types=list(self.data_types),
            estimated_volume=self.estimated_volume,
            entity=self.entity,
        )


class TargetSystemRequest(BaseModel):
    system_name: str = "care_platform"
    entity: str = "residents"
    data_model: Dict[str, Any] = Field(default_factory=dict)

    def to_target_system(self) -> TargetSystem:
        return TargetSystem(
            system_name=self.system_name,
            entity=self.entity,
            data_model=dict(self.data_model),
        )


class NotificationPreferencesRequest(BaseModel):
    real_time_updates: bool = True
    email: bool = True
    sms: bool = False
    in_app: bool = True
    frequency: Literal["immediate", "batched_5min", "batched_15min", "hourly"] = "immediate"
    critical_alerts_only: bool = False

    def to_preferences(self) -> NotificationPreferences:
        return NotificationPreferences(**self.model_dump())


class MigrationRequirements(BaseModel):
    migration_timeline_days: int = Field(default=30, ge=0)
    downtime_allowance_hours: float = Field(default=0.0, ge=0)
    data_quality_threshold: int = Field(default=80, ge=0, le=100)
    required_fields: List[str] = Field(default_factory=list)
    user_preferences: Optional[NotificationPreferencesRequest] = None


class UserGuidance(BaseModel):
    experience_level: Literal["beginner", "intermediate", "expert"] = "intermediate"
    assistance_level: Literal["full", "moderate", "minimal"] = "moderate"
    automation_level: Literal["high", "medium", "low"] = "medium"


class PipelineRequest(BaseModel):
    """Request for creating a migration pipeline."""
    name: str = ""
    sources: List[SourceSystemRequest] = Field(min_length=1)
    target: TargetSystemRequest = Field(default_factory=TargetSystemRequest)
    requirements: MigrationRequirements = Field(default_factory=MigrationRequirements)
    user_guidance: Optional[UserGuidance] = None


class ExecutionOptions(BaseModel):
    """Options for a single pipeline execution."""
    dry_run: bool = False
    pause_on_errors: bool = False
    auto_resolve_conflicts: bool = False


class ImportRequest(BaseModel):
    """Request for importing already-decoded rows outside a pipeline run."""
    rows: List[Dict[str, Any]]
    target_entity: str = "residents"
    auto_mapping: bool = True
    dry_run: bool = False
    auto_resolve_conflicts: bool = False
    required_fields: List[str] = Field(default_factory=list)
