"""Pipeline definition models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime
import re
import uuid

from ..timeutil import from_iso, utcnow


class RuleKind(str, Enum):
    """Kinds of field transformation rule."""
    DIRECT = "direct"  # Passthrough with optional type coercion
    CALCULATED = "calculated"  # Derived from several source fields
    LOOKUP = "lookup"  # Resolved against a reference table
    CONDITIONAL = "conditional"  # Ordered parsers or a condition table
    HEURISTIC = "heuristic"  # Domain-specific decomposition (medications, contacts)


class MigrationApproach(str, Enum):
    """Cut-over approach for a migration."""
    BIG_BANG = "big_bang"
    PHASED = "phased"
    PARALLEL_RUN = "parallel_run"
    PILOT = "pilot"


class Complexity(str, Enum):
    """Estimated migration complexity."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    COMPLEX = "complex"


_MAX_LENGTH_LABEL = re.compile(r"^max\s+(\d+)\s+characters$", re.IGNORECASE)
_ONE_OF_LABEL = re.compile(r"^one of:\s*(.+)$", re.IGNORECASE)

# Human-readable constraint labels -> (name, severity, auto_fixable, params)
_LABELS: Dict[str, tuple] = {
    "not null": ("not_null", "error", False, {}),
    "not empty": ("not_null", "error", False, {}),
    "unique": ("unique", "error", False, {}),
    "nhs number format": ("nhs_number", "error", False, {}),
    "check digit validation": ("nhs_number", "error", False, {}),
    "exactly 10 digits": ("nhs_number", "error", False, {}),
    "valid date": ("valid_date", "error", False, {}),
    "not future date": ("not_future_date", "error", False, {}),
    "age > 0": ("age_range", "error", False, {"min": 0}),
    "age < 120": ("age_range", "warning", False, {"max": 120}),
    "uk postcode format": ("postcode", "warning", True, {}),
    "uk phone format": ("phone", "warning", True, {}),
    "valid phone format": ("phone", "warning", True, {}),
}


@dataclass
class ValidationConstraint:
    """A constraint evaluated against a field after transformation.

    ``severity`` decides whether a violation blocks the row (error) or is
    only reported (warning). Unknown names are advisory and always pass.
    """
    name: str
    severity: str = "error"  # error, warning
    auto_fixable: bool = False
    params: Dict[str, Any] = field(default_factory=dict)
    label: str = ""

    @classmethod
    def from_label(cls, label: str) -> "ValidationConstraint":
        """Build a constraint from a human-readable label such as 'Age < 120'."""
        key = label.strip().lower()
        if key in _LABELS:
            name, severity, auto_fixable, params = _LABELS[key]
            return cls(name=name, severity=severity, auto_fixable=auto_fixable,
                       params=dict(params), label=label)

        match = _MAX_LENGTH_LABEL.match(label.strip())
        if match:
            return cls(name="max_length", params={"max": int(match.group(1))}, label=label)

        match = _ONE_OF_LABEL.match(label.strip())
        if match:
            options = [o.strip().lower() for o in match.group(1).split("/") if o.strip()]
            return cls(name="one_of", severity="warning", params={"options": options}, label=label)

        return cls(name="advisory", severity="warning", label=label)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "severity": self.severity,
            "auto_fixable": self.auto_fixable,
            "params": self.params,
            "label": self.label,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationConstraint":
        """Create from dictionary representation."""
        return cls(
            name=data["name"],
            severity=data.get("severity", "error"),
            auto_fixable=data.get("auto_fixable", False),
            params=data.get("params", {}),
            label=data.get("label", ""),
        )


def constraints_from_labels(labels: List[str]) -> List[ValidationConstraint]:
    """Build constraints from labels; labels naming the same check are merged."""
    constraints: List[ValidationConstraint] = []
    for label in labels:
        constraint = ValidationConstraint.from_label(label)
        duplicate = any(
            c.name == constraint.name and c.params == constraint.params and c.name != "advisory"
            for c in constraints
        )
        if not duplicate:
            constraints.append(constraint)
    return constraints


@dataclass
class TransformationRule:
    """A typed per-field instruction for converting a source value."""
    source_field: str
    target_field: str
    kind: RuleKind = RuleKind.DIRECT
    description: str = ""
    validation_rules: List[ValidationConstraint] = field(default_factory=list)
    confidence: float = 1.0
    rule_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    recommended: bool = True
    parameters: Dict[str, Any] = field(default_factory=dict)
    test_results: List[Dict[str, Any]] = field(default_factory=list)

    def __post_init__(self):
        if isinstance(self.kind, str) and not isinstance(self.kind, RuleKind):
            self.kind = RuleKind(self.kind)
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Rule confidence must be within [0, 1], got {self.confidence}")

    @property
    def input_fields(self) -> List[str]:
        """Source fields this rule reads."""
        fields = [self.source_field]
        for name in self.parameters.get("source_fields", []):
            if name not in fields:
                fields.append(name)
        return fields

    def record_test(self, passed: int, failed: int, sample: Optional[Dict[str, Any]] = None) -> None:
        """Append the outcome of applying this rule to a batch."""
        total = passed + failed
        self.test_results.append({
            "timestamp": utcnow().isoformat(),
            "passed": passed,
            "failed": failed,
            "accuracy": round(passed / total, 4) if total else None,
            "sample": sample,
        })

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "rule_id": self.rule_id,
            "source_field": self.source_field,
            "target_field": self.target_field,
            "kind": self.kind.value,
            "description": self.description,
            "validation_rules": [c.to_dict() for c in self.validation_rules],
            "confidence": self.confidence,
            "recommended": self.recommended,
            "parameters": self.parameters,
            "test_results": self.test_results,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransformationRule":
        """Create from dictionary representation."""
        return cls(
            rule_id=data.get("rule_id") or str(uuid.uuid4()),
            source_field=data["source_field"],
            target_field=data["target_field"],
            kind=RuleKind(data.get("kind", "direct")),
            description=data.get("description", ""),
            validation_rules=[ValidationConstraint.from_dict(c) for c in data.get("validation_rules", [])],
            confidence=data.get("confidence", 1.0),
            recommended=data.get("recommended", True),
            parameters=data.get("parameters", {}),
            test_results=data.get("test_results", []),
        )


@dataclass
class AlternativeMapping:
    """A lower-ranked target candidate for a source field."""
    target_field: str
    confidence: float
    reasoning: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_field": self.target_field,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AlternativeMapping":
        return cls(
            target_field=data["target_field"],
            confidence=data["confidence"],
            reasoning=data.get("reasoning", ""),
        )


@dataclass
class FieldMapping:
    """A suggested source -> target field mapping."""
    source_field: str
    suggested_target: str
    confidence: float
    reasoning: str = ""
    data_type: str = "str"
    sample_values: List[str] = field(default_factory=list)
    validation_suggestions: List[str] = field(default_factory=list)
    alternatives: List[AlternativeMapping] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "source_field": self.source_field,
            "suggested_target": self.suggested_target,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "data_type": self.data_type,
            "sample_values": self.sample_values,
            "validation_suggestions": self.validation_suggestions,
            "alternatives": [a.to_dict() for a in self.alternatives],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldMapping":
        """Create from dictionary representation."""
        return cls(
            source_field=data["source_field"],
            suggested_target=data["suggested_target"],
            confidence=data["confidence"],
            reasoning=data.get("reasoning", ""),
            data_type=data.get("data_type", "str"),
            sample_values=data.get("sample_values", []),
            validation_suggestions=data.get("validation_suggestions", []),
            alternatives=[AlternativeMapping.from_dict(a) for a in data.get("alternatives", [])],
        )


@dataclass
class BackupPolicy:
    """How backups are taken for a pipeline."""
    automatic: bool = True
    location: str = "migrations"
    retention_days: int = 7
    compression: bool = True
    encryption: bool = True
    incremental: bool = False
    verification: bool = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "automatic": self.automatic,
            "location": self.location,
            "retention_days": self.retention_days,
            "compression": self.compression,
            "encryption": self.encryption,
            "incremental": self.incremental,
            "verification": self.verification,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupPolicy":
        """Create from dictionary representation."""
        return cls(
            automatic=data.get("automatic", True),
            location=data.get("location", "migrations"),
            retention_days=data.get("retention_days", 7),
            compression=data.get("compression", True),
            encryption=data.get("encryption", True),
            incremental=data.get("incremental", False),
            verification=data.get("verification", True),
        )


@dataclass
class SourceAnalysis:
    """Result of analysing the source systems of a pipeline."""
    system_type: str
    data_format: str
    data_volume: float  # GB
    data_quality: int  # 0-100
    complexity: Complexity
    detected_entities: List[str] = field(default_factory=list)
    confidence_score: float = 0.0
    system_fingerprint: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "system_type": self.system_type,
            "data_format": self.data_format,
            "data_volume": self.data_volume,
            "data_quality": self.data_quality,
            "complexity": self.complexity.value,
            "detected_entities": self.detected_entities,
            "confidence_score": self.confidence_score,
            "system_fingerprint": self.system_fingerprint,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceAnalysis":
        """Create from dictionary representation."""
        return cls(
            system_type=data["system_type"],
            data_format=data["data_format"],
            data_volume=data["data_volume"],
            data_quality=data["data_quality"],
            complexity=Complexity(data["complexity"]),
            detected_entities=data.get("detected_entities", []),
            confidence_score=data.get("confidence_score", 0.0),
            system_fingerprint=data.get("system_fingerprint", ""),
        )


@dataclass
class MigrationStrategy:
    """Chosen migration approach and its supporting plan."""
    approach: MigrationApproach
    estimated_duration: int  # minutes
    backup_policy: BackupPolicy
    data_validation: bool = True
    rollback_plan: bool = True
    testing_strategy: str = "comprehensive_with_validation"
    risk_mitigations: List[str] = field(default_factory=list)
    parallel_processing: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "approach": self.approach.value,
            "estimated_duration": self.estimated_duration,
            "backup_policy": self.backup_policy.to_dict(),
            "data_validation": self.data_validation,
            "rollback_plan": self.rollback_plan,
            "testing_strategy": self.testing_strategy,
            "risk_mitigations": self.risk_mitigations,
            "parallel_processing": self.parallel_processing,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationStrategy":
        """Create from dictionary representation."""
        return cls(
            approach=MigrationApproach(data["approach"]),
            estimated_duration=data["estimated_duration"],
            backup_policy=BackupPolicy.from_dict(data.get("backup_policy", {})),
            data_validation=data.get("data_validation", True),
            rollback_plan=data.get("rollback_plan", True),
            testing_strategy=data.get("testing_strategy", "comprehensive_with_validation"),
            risk_mitigations=data.get("risk_mitigations", []),
            parallel_processing=data.get("parallel_processing", False),
        )


@dataclass
class QualityAssurance:
    """Quality checks enabled for a pipeline."""
    quality_threshold: int = 80
    data_validation: bool = True
    integrity_checking: bool = True
    completeness_verification: bool = True
    accuracy_validation: bool = False
    performance_testing: bool = True
    real_time_monitoring: bool = True
    required_fields: List[str] = field(default_factory=list)  # Target fields every row must populate

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "quality_threshold": self.quality_threshold,
            "data_validation": self.data_validation,
            "integrity_checking": self.integrity_checking,
            "completeness_verification": self.completeness_verification,
            "accuracy_validation": self.accuracy_validation,
            "performance_testing": self.performance_testing,
            "real_time_monitoring": self.real_time_monitoring,
            "required_fields": self.required_fields,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QualityAssurance":
        """Create from dictionary representation."""
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class NotificationPreferences:
    """How an operator wants to hear about a migration."""
    real_time_updates: bool = True
    email: bool = True
    sms: bool = False
    in_app: bool = True
    frequency: str = "immediate"  # immediate, batched_5min, batched_15min, hourly
    critical_alerts_only: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "real_time_updates": self.real_time_updates,
            "email": self.email,
            "sms": self.sms,
            "in_app": self.in_app,
            "frequency": self.frequency,
            "critical_alerts_only": self.critical_alerts_only,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationPreferences":
        """Create from dictionary representation."""
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class UserExperience:
    """Operator-facing automation settings."""
    guided_wizard: bool = True
    progress_tracking: bool = True
    real_time_updates: bool = True
    assisted_mapping: bool = True
    auto_error_resolution: bool = False
    notifications: NotificationPreferences = field(default_factory=NotificationPreferences)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "guided_wizard": self.guided_wizard,
            "progress_tracking": self.progress_tracking,
            "real_time_updates": self.real_time_updates,
            "assisted_mapping": self.assisted_mapping,
            "auto_error_resolution": self.auto_error_resolution,
            "notifications": self.notifications.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserExperience":
        """Create from dictionary representation."""
        return cls(
            guided_wizard=data.get("guided_wizard", True),
            progress_tracking=data.get("progress_tracking", True),
            real_time_updates=data.get("real_time_updates", True),
            assisted_mapping=data.get("assisted_mapping", True),
            auto_error_resolution=data.get("auto_error_resolution", False),
            notifications=NotificationPreferences.from_dict(data.get("notifications", {})),
        )


@dataclass
class SourceSystem:
    """A legacy system (or file) rows are extracted from."""
    system_name: str
    system_type: str = "file_based"
    connector: Optional[str] = None  # Registered connector name
    connection: Dict[str, Any] = field(default_factory=dict)  # Passed to connector.extract()
    data_types: List[str] = field(default_factory=list)
    estimated_volume: float = 0.0  # GB
    entity: Optional[str] = None  # Target entity these rows feed; defaults to the pipeline target

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "system_name": self.system_name,
            "system_type": self.system_type,
            "connector": self.connector,
            "connection": self.connection,
            "data_types": self.data_types,
            "estimated_volume": self.estimated_volume,
            "entity": self.entity,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceSystem":
        """Create from dictionary representation."""
        return cls(
            system_name=data["system_name"],
            system_type=data.get("system_type", "file_based"),
            connector=data.get("connector"),
            connection=data.get("connection", {}),
            data_types=data.get("data_types", []),
            estimated_volume=data.get("estimated_volume", 0.0),
            entity=data.get("entity"),
        )


@dataclass
class TargetSystem:
    """The platform-side destination of a migration."""
    system_name: str
    entity: str = "residents"
    data_model: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "system_name": self.system_name,
            "entity": self.entity,
            "data_model": self.data_model,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TargetSystem":
        """Create from dictionary representation."""
        return cls(
            system_name=data["system_name"],
            entity=data.get("entity", "residents"),
            data_model=data.get("data_model", {}),
        )


@dataclass
class Pipeline:
    """A configured migration job from one or more sources to one target.

    Immutable once execution starts, except for rule amendments made between
    runs through the orchestrator.
    """
    source_analysis: SourceAnalysis
    migration_strategy: MigrationStrategy
    sources: List[SourceSystem] = field(default_factory=list)
    target: TargetSystem = field(default_factory=lambda: TargetSystem(system_name="care_platform"))
    transformation_rules: List[TransformationRule] = field(default_factory=list)
    quality_assurance: QualityAssurance = field(default_factory=QualityAssurance)
    user_experience: UserExperience = field(default_factory=UserExperience)
    field_mappings: List[FieldMapping] = field(default_factory=list)
    unmapped_fields: List[str] = field(default_factory=list)
    last_import: Optional[Dict[str, Any]] = None
    name: str = ""
    pipeline_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def get_rule(self, rule_id: str) -> Optional[TransformationRule]:
        """Get a transformation rule by id."""
        for rule in self.transformation_rules:
            if rule.rule_id == rule_id:
                return rule
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "pipeline_id": self.pipeline_id,
            "name": self.name,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "sources": [s.to_dict() for s in self.sources],
            "target": self.target.to_dict(),
            "source_analysis": self.source_analysis.to_dict(),
            "migration_strategy": self.migration_strategy.to_dict(),
            "transformation_rules": [r.to_dict() for r in self.transformation_rules],
            "quality_assurance": self.quality_assurance.to_dict(),
            "user_experience": self.user_experience.to_dict(),
            "field_mappings": [m.to_dict() for m in self.field_mappings],
            "unmapped_fields": self.unmapped_fields,
            "last_import": self.last_import,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pipeline":
        """Create from dictionary representation."""
        return cls(
            pipeline_id=data["pipeline_id"],
            name=data.get("name", ""),
            created_at=from_iso(data["created_at"]),
            updated_at=from_iso(data["updated_at"]),
            sources=[SourceSystem.from_dict(s) for s in data.get("sources", [])],
            target=TargetSystem.from_dict(data["target"]),
            source_analysis=SourceAnalysis.from_dict(data["source_analysis"]),
            migration_strategy=MigrationStrategy.from_dict(data["migration_strategy"]),
            transformation_rules=[TransformationRule.from_dict(r) for r in data.get("transformation_rules", [])],
            quality_assurance=QualityAssurance.from_dict(data.get("quality_assurance", {})),
            user_experience=UserExperience.from_dict(data.get("user_experience", {})),
            field_mappings=[FieldMapping.from_dict(m) for m in data.get("field_mappings", [])],
            unmapped_fields=data.get("unmapped_fields", []),
            last_import=data.get("last_import"),
        )
