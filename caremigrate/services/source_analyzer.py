"""Source system analysis and migration strategy design."""

import base64
import logging
from typing import Dict, List, Optional

from ..models.pipeline import (
    BackupPolicy,
    Complexity,
    MigrationApproach,
    MigrationStrategy,
    NotificationPreferences,
    QualityAssurance,
    RuleKind,
    SourceAnalysis,
    SourceSystem,
    TransformationRule,
    UserExperience,
    constraints_from_labels,
)
from ..models.requests import MigrationRequirements, UserGuidance

logger = logging.getLogger(__name__)

ENTITY_PATTERNS: Dict[str, List[str]] = {
    "residents": ["patient", "resident", "client", "service_user", "individual"],
    "medications": ["medication", "drug", "prescription", "medicine", "pharmaceutical"],
    "care_plans": ["care_plan", "treatment", "intervention", "goal", "objective"],
    "staff": ["staff", "employee", "carer", "nurse", "worker"],
    "assessments": ["assessment", "evaluation", "review", "observation", "monitoring"],
    "medical_history": ["history", "condition", "diagnosis", "allergy"],
    "contacts": ["contact", "relative", "kin", "family", "emergency"],
}

COMPLEXITY_MULTIPLIERS = {
    Complexity.LOW: 1,
    Complexity.MEDIUM: 1.5,
    Complexity.HIGH: 2,
    Complexity.COMPLEX: 3,
}

BASE_DURATION_MINUTES = 30
BASE_SOURCE_QUALITY = 75


def system_fingerprint(sources: List[SourceSystem]) -> str:
    """Short stable fingerprint of the source system types and data types."""
    fingerprint = "|".join(f"{s.system_type}-{','.join(s.data_types)}" for s in sources)
    return base64.b64encode(fingerprint.encode("utf-8")).decode("ascii")[:16]


def detect_entities(sources: List[SourceSystem]) -> List[str]:
    """Detect care entities from the declared data types of each source."""
    entities: List[str] = []
    for source in sources:
        for data_type in source.data_types:
            lowered = data_type.lower()
            for entity, patterns in ENTITY_PATTERNS.items():
                if entity not in entities and any(p in lowered for p in patterns):
                    entities.append(entity)
    return entities


def classify_system_type(sources: List[SourceSystem]) -> str:
    types = [s.system_type for s in sources]
    if "healthcare" in types or "care_management" in types:
        return "healthcare_care_system"
    if "nhs" in types or "social_services" in types:
        return "government_healthcare_system"
    return "legacy_care_system"


def detect_data_format(sources: List[SourceSystem]) -> str:
    formats = [t.lower() for s in sources for t in s.data_types]
    if "csv" in formats and "json" in formats:
        return "mixed"
    if "database" in formats:
        return "relational"
    if "fhir" in formats:
        return "fhir_standard"
    return "file_based"


def estimate_complexity(volume: float, system_count: int) -> Complexity:
    if volume < 1 and system_count == 1:
        return Complexity.LOW
    if volume < 5 and system_count <= 2:
        return Complexity.MEDIUM
    if volume < 20 and system_count <= 5:
        return Complexity.HIGH
    return Complexity.COMPLEX


class SourceAnalyzer:
    """
    Analyses source systems and designs a migration strategy.

    Supports:
    - Entity detection from declared data types
    - Complexity, duration and approach selection by threshold
    - Baseline and per-entity transformation rules
    - Quality assurance and user experience configuration
    """

    def __init__(self, backup_location: str = "migrations"):
        self.backup_location = backup_location

    def analyze(self, sources: List[SourceSystem]) -> SourceAnalysis:
        """
        Analyse the source systems of a pipeline.

        Args:
            sources: Declared source systems

        Returns:
            SourceAnalysis
        """
        volume = sum(s.estimated_volume for s in sources)
        entities = detect_entities(sources)

        analysis = SourceAnalysis(
            system_type=classify_system_type(sources),
            data_format=detect_data_format(sources),
            data_volume=volume,
            data_quality=self.source_quality(sources),
            complexity=estimate_complexity(volume, len(sources)),
            detected_entities=entities,
            confidence_score=self.confidence_score(sources, entities),
            system_fingerprint=system_fingerprint(sources),
        )
        logger.info(
            f"Analysed {len(sources)} source(s): {analysis.system_type}, "
            f"{analysis.complexity.value} complexity, entities={entities}"
        )
        return analysis

    @staticmethod
    def confidence_score(sources: List[SourceSystem], entities: List[str]) -> float:
        score = 0.7 + len(entities) * 0.05
        if sources and all(s.system_type == "healthcare" for s in sources):
            score += 0.15
        if any(s.estimated_volume > 5 for s in sources):
            score += 0.05
        return round(min(score, 1.0), 4)

    @staticmethod
    def source_quality(sources: List[SourceSystem]) -> int:
        """Prior quality estimate from system metadata, before any rows are seen."""
        score = BASE_SOURCE_QUALITY
        if any("NHS" in s.system_name for s in sources):
            score += 15
        if any(s.estimated_volume > 10 for s in sources):
            score += 5
        if any(s.system_type == "api" for s in sources):
            score += 10
        if len(sources) == 1:
            score += 5
        return min(score, 100)

    def design_strategy(
        self,
        requirements: MigrationRequirements,
        analysis: SourceAnalysis,
        encryption_available: bool = True,
    ) -> MigrationStrategy:
        """
        Choose an approach, duration, backup policy and risk mitigations.

        Args:
            requirements: Migration requirements from the request
            analysis: Result of ``analyze``
            encryption_available: Whether a backup encryption key is configured

        Returns:
            MigrationStrategy
        """
        return MigrationStrategy(
            approach=self.select_approach(requirements, analysis),
            estimated_duration=self.estimate_duration(analysis),
            backup_policy=self.backup_policy(analysis, encryption_available),
            data_validation=True,
            rollback_plan=True,
            testing_strategy="comprehensive_with_validation",
            risk_mitigations=self.risk_mitigations(analysis),
            parallel_processing=analysis.data_volume > 1,
        )

    @staticmethod
    def estimate_duration(analysis: SourceAnalysis) -> int:
        """Estimated duration in minutes."""
        multiplier = COMPLEXITY_MULTIPLIERS[analysis.complexity]
        return int(round(BASE_DURATION_MINUTES + analysis.data_volume * 10 * multiplier))

    @staticmethod
    def select_approach(requirements: MigrationRequirements, analysis: SourceAnalysis) -> MigrationApproach:
        if requirements.downtime_allowance_hours > 24:
            return MigrationApproach.BIG_BANG
        if analysis.data_volume > 10:
            return MigrationApproach.PHASED
        if analysis.complexity == Complexity.COMPLEX:
            return MigrationApproach.PARALLEL_RUN
        return MigrationApproach.PILOT

    @staticmethod
    def risk_mitigations(analysis: SourceAnalysis) -> List[str]:
        strategies = ["Automated data backup", "Real-time validation", "Incremental migration"]
        if analysis.data_volume > 5:
            strategies.append("Parallel processing")
        if analysis.complexity == Complexity.COMPLEX:
            strategies.extend(["Staged rollout", "Enhanced monitoring"])
        if analysis.confidence_score < 0.8:
            strategies.extend(["Enhanced validation", "Manual review checkpoints"])
        if "medications" in analysis.detected_entities:
            strategies.extend(["Clinical validation", "Pharmacist review"])
        return strategies

    def backup_policy(self, analysis: SourceAnalysis, encryption_available: bool = True) -> BackupPolicy:
        return BackupPolicy(
            automatic=True,
            location=self.backup_location,
            retention_days=30 if analysis.complexity == Complexity.COMPLEX else 7,
            compression=analysis.data_volume > 1,
            encryption=encryption_available,
            incremental=analysis.data_volume > 5,
            verification=True,
        )

    @staticmethod
    def baseline_rules() -> List[TransformationRule]:
        """Rules every care data migration starts from."""
        return [
            TransformationRule(
                source_field="patient_id",
                target_field="resident_id",
                kind=RuleKind.DIRECT,
                description="Direct mapping of the legacy patient identifier",
                validation_rules=constraints_from_labels(["Not null", "Unique"]),
                confidence=0.95,
            ),
            TransformationRule(
                source_field="patient_name",
                target_field="full_name",
                kind=RuleKind.CALCULATED,
                description="Combine first_name, middle_name, last_name",
                validation_rules=constraints_from_labels(["Not empty", "Valid characters only"]),
                confidence=0.90,
                parameters={"source_fields": ["first_name", "middle_name", "last_name"]},
            ),
            TransformationRule(
                source_field="dob",
                target_field="date_of_birth",
                kind=RuleKind.CONDITIONAL,
                description="Parse multiple date formats (YYYY-MM-DD, DD/MM/YYYY, D/M/YYYY)",
                validation_rules=constraints_from_labels(["Valid date", "Age > 0", "Age < 120"]),
                confidence=0.85,
            ),
            TransformationRule(
                source_field="medications",
                target_field="current_medications",
                kind=RuleKind.HEURISTIC,
                description="Parse medication strings, extract dosage, frequency, and route",
                validation_rules=constraints_from_labels(
                    ["Valid medication names", "Valid dosages", "Valid frequencies"]
                ),
                confidence=0.80,
                parameters={"parser": "medications"},
            ),
        ]

    @staticmethod
    def dynamic_rules(entity: str) -> List[TransformationRule]:
        """Extra rules for a detected entity; unknown entities get none."""
        if entity == "residents":
            return [
                TransformationRule(
                    source_field="id",
                    target_field="resident_id",
                    kind=RuleKind.DIRECT,
                    description="Direct ID mapping with validation",
                    validation_rules=constraints_from_labels(["Not null", "Unique"]),
                    confidence=0.95,
                ),
                TransformationRule(
                    source_field="admission_date",
                    target_field="admission_date",
                    kind=RuleKind.CONDITIONAL,
                    description="Parse admission date and validate against birth date",
                    validation_rules=constraints_from_labels(
                        ["Valid date", "Not future date", "After birth date"]
                    ),
                    confidence=0.90,
                ),
            ]
        if entity == "medications":
            return [
                TransformationRule(
                    source_field="drug_name",
                    target_field="medication_name",
                    kind=RuleKind.LOOKUP,
                    description="Resolve drug names against the medication formulary",
                    validation_rules=constraints_from_labels(["Valid medication names"]),
                    confidence=0.85,
                    parameters={"table": "medications"},
                ),
            ]
        if entity == "contacts":
            return [
                TransformationRule(
                    source_field="emergency_contact",
                    target_field="next_of_kin",
                    kind=RuleKind.HEURISTIC,
                    description="Split contact strings into name, relationship and phone",
                    validation_rules=constraints_from_labels(["Valid phone format", "Valid relationship type"]),
                    confidence=0.80,
                    parameters={"parser": "contact"},
                ),
            ]
        return []

    @staticmethod
    def quality_assurance(requirements: MigrationRequirements) -> QualityAssurance:
        return QualityAssurance(
            quality_threshold=requirements.data_quality_threshold,
            data_validation=True,
            integrity_checking=True,
            completeness_verification=True,
            accuracy_validation=requirements.data_quality_threshold >= 90,
            performance_testing=True,
            real_time_monitoring=True,
            required_fields=list(requirements.required_fields),
        )

    @staticmethod
    def user_experience(
        guidance: Optional[UserGuidance],
        preferences: Optional[NotificationPreferences] = None,
    ) -> UserExperience:
        preferences = preferences or NotificationPreferences()
        return UserExperience(
            guided_wizard=guidance is None or guidance.experience_level != "expert",
            progress_tracking=True,
            real_time_updates=preferences.real_time_updates,
            assisted_mapping=guidance is None or guidance.assistance_level != "minimal",
            auto_error_resolution=guidance is not None and guidance.automation_level == "high",
            notifications=preferences,
        )
