"""Data quality assessment for source and transformed rows."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .dates import detect_date_format
from .field_mapper import field_tokens, normalize_field_name
from .validators import is_empty

logger = logging.getLogger(__name__)

DATE_FORMAT_PENALTY = 10
DUPLICATE_PENALTY = 5
COMPLETENESS_WARNING = 80
IDENTIFIER_TOKENS = ("id", "ref")


@dataclass
class QualityReport:
    """Result of a quality assessment."""
    score: int
    issues: List[str] = field(default_factory=list)
    completeness: float = 0.0
    rows_assessed: int = 0
    inconsistent_date_fields: List[str] = field(default_factory=list)
    identifier_field: Optional[str] = None
    duplicate_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "score": self.score,
            "issues": self.issues,
            "completeness": self.completeness,
            "rows_assessed": self.rows_assessed,
            "inconsistent_date_fields": self.inconsistent_date_fields,
            "identifier_field": self.identifier_field,
            "duplicate_count": self.duplicate_count,
        }


class QualityAssessor:
    """
    Scores a row set from 0 to 100.

    Supports:
    - Completeness over a sample (required fields, or every field)
    - Date format consistency per date-like field
    - Duplicate detection on the identifier field
    """

    def __init__(
        self,
        sample_size: int = 100,
        date_sample_size: int = 50,
        identifier_fields: Optional[List[str]] = None,
    ):
        self.sample_size = sample_size
        self.date_sample_size = date_sample_size
        self.identifier_fields = [normalize_field_name(f) for f in identifier_fields or []]

    def identifier_field(self, fields: List[str]) -> Optional[str]:
        """
        Pick the field duplicates are counted on.

        A configured identifier field wins; otherwise the first field with a
        whole word "id" or "ref" in its name ('PatientID', 'client_ref').
        """
        for wanted in self.identifier_fields:
            for name in fields:
                if normalize_field_name(name) == wanted:
                    return name
        for name in fields:
            if any(token in IDENTIFIER_TOKENS for token in field_tokens(name)):
                return name
        return None

    def assess(self, rows: List[Dict[str, Any]], required_fields: Optional[List[str]] = None) -> QualityReport:
        """
        Assess the quality of a row set.

        Args:
            rows: Rows to assess (source or transformed)
            required_fields: Fields that must be populated; defaults to every field seen

        Returns:
            QualityReport with an int score in [0, 100]
        """
        if not rows:
            return QualityReport(score=0, issues=["No data provided"])

        report = QualityReport(score=0)
        fields = self._field_names(rows)

        completeness = self._completeness(rows[:self.sample_size], required_fields or fields)
        report.completeness = round(completeness, 2)
        report.rows_assessed = min(len(rows), self.sample_size)
        score = completeness
        if completeness < COMPLETENESS_WARNING:
            report.issues.append("High percentage of missing data detected")

        date_fields = [f for f in fields if "date" in f.lower() or "dob" in f.lower()]
        for date_field in date_fields:
            formats = set()
            for row in rows[:self.date_sample_size]:
                value = row.get(date_field)
                if not is_empty(value):
                    formats.add(detect_date_format(value))
            if len(formats) > 1:
                report.issues.append(f"Inconsistent date formats detected in field: {date_field}")
                report.inconsistent_date_fields.append(date_field)
                score -= DATE_FORMAT_PENALTY

        id_field = self.identifier_field(fields)
        report.identifier_field = id_field
        if id_field:
            seen = set()
            for row in rows:
                value = row.get(id_field)
                if is_empty(value):
                    continue
                key = str(value).strip().lower()
                if key in seen:
                    report.duplicate_count += 1
                    score -= DUPLICATE_PENALTY
                else:
                    seen.add(key)
            if report.duplicate_count:
                report.issues.append(f"Duplicate records detected: {report.duplicate_count} in field {id_field}")

        report.score = int(max(0, min(100, round(score))))
        logger.info(f"Quality score {report.score} for {len(rows)} rows ({len(report.issues)} issues)")
        return report

    @staticmethod
    def _field_names(rows: List[Dict[str, Any]]) -> List[str]:
        names: List[str] = []
        for row in rows:
            for name in row:
                if name not in names:
                    names.append(name)
        return names

    @staticmethod
    def _completeness(rows: List[Dict[str, Any]], fields: List[str]) -> float:
        total = len(rows) * len(fields)
        if total == 0:
            return 0.0
        empty = sum(1 for row in rows for f in fields if is_empty(row.get(f)))
        return 100 - (empty / total) * 100


def recommend_actions(
    quality: Optional[QualityReport],
    error_count: int,
    warning_count: int,
    imported: int,
) -> List[str]:
    """
    Remediation actions for an import.

    Args:
        quality: Source quality report, if one was computed
        error_count: Row-level errors recorded
        warning_count: Row-level warnings recorded
        imported: Rows written to the target

    Returns:
        Ordered list of recommended actions
    """
    actions = []
    if quality is not None and quality.score < COMPLETENESS_WARNING:
        actions.append("Improve data quality before full migration")
        actions.append("Review data completeness and consistency")
    if error_count:
        actions.append("Review and fix data validation errors")
        actions.append("Check required field mappings")
    if warning_count:
        actions.append("Address data warnings for optimal results")
    if quality is not None and quality.inconsistent_date_fields:
        actions.append("Standardize date formats across all records")
    if quality is not None and quality.duplicate_count:
        actions.append("Remove or merge duplicate records")
    if imported > 0:
        actions.append("Review imported data for accuracy")
        actions.append("Perform post-migration validation checks")
    return actions
