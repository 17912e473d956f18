"""Row-level models for import results."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set


@dataclass
class ValidationError:
    """A row-level problem found while transforming or validating a row.

    Rows are numbered from 1. ``severity`` is ``error`` (the row is skipped)
    or ``warning`` (the row is still imported).
    """
    row: int
    field: str
    message: str
    severity: str = "error"  # error, warning
    suggestion: Optional[str] = None
    error_type: str = "validation"
    value: Optional[Any] = None
    auto_fixable: bool = False
    auto_resolved: bool = False

    @property
    def is_error(self) -> bool:
        return self.severity == "error"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "row": self.row,
            "field": self.field,
            "message": self.message,
            "severity": self.severity,
            "suggestion": self.suggestion,
            "error_type": self.error_type,
            "value": None if self.value is None else str(self.value),
            "auto_fixable": self.auto_fixable,
            "auto_resolved": self.auto_resolved,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationError":
        """Create from dictionary representation."""
        return cls(
            row=data["row"],
            field=data["field"],
            message=data["message"],
            severity=data.get("severity", "error"),
            suggestion=data.get("suggestion"),
            error_type=data.get("error_type", "validation"),
            value=data.get("value"),
            auto_fixable=data.get("auto_fixable", False),
            auto_resolved=data.get("auto_resolved", False),
        )


@dataclass
class TransformedRow:
    """A source row after rules were applied."""
    row: int
    data: Dict[str, Any]
    source: Dict[str, Any] = field(default_factory=dict)
    errors: List[ValidationError] = field(default_factory=list)
    warnings: List[ValidationError] = field(default_factory=list)
    validated_fields: Set[str] = field(default_factory=set)

    @property
    def is_valid(self) -> bool:
        """A row is importable when it has no errors."""
        return len(self.errors) == 0

    def add_issue(self, issue: ValidationError) -> None:
        if issue.is_error:
            self.errors.append(issue)
        else:
            self.warnings.append(issue)


@dataclass
class ImportResult:
    """Outcome of importing a batch of rows."""
    records_imported: int = 0
    records_skipped: int = 0
    errors: List[ValidationError] = field(default_factory=list)
    warnings: List[ValidationError] = field(default_factory=list)
    quality_score: int = 0
    quality_issues: List[str] = field(default_factory=list)
    recommended_actions: List[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def success(self) -> bool:
        """True when no row-level errors were recorded."""
        return len(self.errors) == 0

    @property
    def total_rows(self) -> int:
        return self.records_imported + self.records_skipped

    def errors_for_row(self, row: int) -> List[ValidationError]:
        return [e for e in self.errors if e.row == row]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "success": self.success,
            "records_imported": self.records_imported,
            "records_skipped": self.records_skipped,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "quality_score": self.quality_score,
            "quality_issues": self.quality_issues,
            "recommended_actions": self.recommended_actions,
            "dry_run": self.dry_run,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImportResult":
        """Create from dictionary representation."""
        return cls(
            records_imported=data.get("records_imported", 0),
            records_skipped=data.get("records_skipped", 0),
            errors=[ValidationError.from_dict(e) for e in data.get("errors", [])],
            warnings=[ValidationError.from_dict(w) for w in data.get("warnings", [])],
            quality_score=data.get("quality_score", 0),
            quality_issues=data.get("quality_issues", []),
            recommended_actions=data.get("recommended_actions", []),
            dry_run=data.get("dry_run", False),
        )
