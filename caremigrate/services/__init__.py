"""Services for mapping, transforming, validating and backing up care data."""

from .backup import BackupCipher, BackupManager, Compressor
from .field_mapper import FieldMapper, MappingReport, PatternScoringStrategy, ScoringStrategy, mapping_to_rule
from .importer import Importer, ImportSession
from .progress import ProgressTracker
from .quality import QualityAssessor, QualityReport, recommend_actions
from .source_analyzer import SourceAnalyzer
from .transformer import DictLookupProvider, LookupProvider, RuleEngine
from .validators import ConstraintValidator, RecordValidator, validate_nhs_number

__all__ = [
    "BackupCipher",
    "BackupManager",
    "Compressor",
    "FieldMapper",
    "MappingReport",
    "PatternScoringStrategy",
    "ScoringStrategy",
    "mapping_to_rule",
    "Importer",
    "ImportSession",
    "ProgressTracker",
    "QualityAssessor",
    "QualityReport",
    "recommend_actions",
    "SourceAnalyzer",
    "DictLookupProvider",
    "LookupProvider",
    "RuleEngine",
    "ConstraintValidator",
    "RecordValidator",
    "validate_nhs_number",
]
