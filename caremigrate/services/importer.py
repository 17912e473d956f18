"""Row import: transform, validate and write rows to the target."""

import logging
from typing import Any, Dict, Iterable, List, Optional

from .quality import QualityReport, recommend_actions
from .transformer import RuleEngine
from .validators import RecordValidator, is_empty
from ..models.pipeline import TransformationRule
from ..models.record import ImportResult, TransformedRow, ValidationError
from ..targets.base import TargetSink

logger = logging.getLogger(__name__)


class ImportSession:
    """
    One import run, possibly spanning several batches.

    Row numbers continue across batches and uniqueness constraints are
    checked over the whole run. Rows with errors are skipped; rows with
    only warnings are written.
    """

    def __init__(
        self,
        engine: RuleEngine,
        record_validator: RecordValidator,
        target: Optional[TargetSink],
        rules: List[TransformationRule],
        entity: str,
        dry_run: bool = False,
        auto_resolve: bool = False,
        required_fields: Optional[List[str]] = None,
    ):
        self.engine = engine
        self.record_validator = record_validator
        self.target = target
        self.rules = rules
        self.entity = entity
        self.dry_run = dry_run
        self.auto_resolve = auto_resolve
        self.required_fields = required_fields or []

        self.result = ImportResult(dry_run=dry_run)
        self.accepted_count = 0
        self.written_ids: List[str] = []
        self._next_row = 1
        self._stats: Dict[str, List[int]] = {}
        self.engine.validator.reset()

    def warn_unmapped(self, fields: Iterable[str]) -> None:
        """Record run-level warnings for source fields no rule consumes."""
        for name in fields:
            self.result.warnings.append(ValidationError(
                row=0,
                field=name,
                message=f"No mapping found for field '{name}'; it will not be imported",
                severity="warning",
                suggestion="Add a transformation rule for this field or ignore it",
                error_type="unmapped_field",
            ))

    def _check_required(self, transformed: TransformedRow) -> None:
        for name in self.required_fields:
            if is_empty(transformed.data.get(name)):
                transformed.add_issue(ValidationError(
                    row=transformed.row,
                    field=name,
                    message=f"Required field missing: {name}",
                    severity="error",
                    suggestion="Provide a value for this field",
                    error_type="required",
                ))

    def process(self, rows: List[Dict[str, Any]]) -> List[TransformedRow]:
        """
        Transform, validate and (unless dry-run) write a batch.

        Args:
            rows: Source rows

        Returns:
            The transformed rows of this batch, including skipped ones
        """
        batch: List[TransformedRow] = []
        accepted: List[Dict[str, Any]] = []
        accepted_rows: List[int] = []

        for row in rows:
            row_number = self._next_row
            self._next_row += 1

            transformed = self.engine.transform_row(
                row, self.rules, row_number, auto_resolve=self.auto_resolve, stats=self._stats
            )
            issues = self.record_validator.validate_record(
                transformed.data,
                row_number,
                skip_fields=transformed.validated_fields,
                auto_resolve=self.auto_resolve,
            )
            for issue in issues:
                transformed.add_issue(issue)
            self._check_required(transformed)

            self.result.errors.extend(transformed.errors)
            self.result.warnings.extend(transformed.warnings)

            if transformed.is_valid:
                accepted.append(transformed.data)
                accepted_rows.append(row_number)
            else:
                self.result.records_skipped += 1
                logger.warning(f"Row {row_number} skipped with {len(transformed.errors)} error(s)")
            batch.append(transformed)

        self.accepted_count += len(accepted)
        if self.dry_run or self.target is None:
            self.result.records_imported += len(accepted)
        elif accepted:
            load = self.target.write_rows(self.entity, accepted)
            self.written_ids.extend(load.created_ids)
            self.result.records_imported += load.total_succeeded
            for failure in load.errors:
                self.result.records_skipped += 1
                self.result.errors.append(ValidationError(
                    row=accepted_rows[failure["index"]],
                    field="*",
                    message=f"Failed to write row: {failure['error']}",
                    severity="error",
                    error_type="load",
                ))

        return batch

    def finish(self, quality: Optional[QualityReport] = None) -> ImportResult:
        """
        Close the run and attach quality and recommended actions.

        Args:
            quality: Source quality report for the run

        Returns:
            The accumulated ImportResult
        """
        RuleEngine.record_rule_tests(self.rules, self._stats)

        result = self.result
        if quality is not None:
            result.quality_score = quality.score
            result.quality_issues = list(quality.issues)
        result.recommended_actions = recommend_actions(
            quality,
            error_count=len(result.errors),
            warning_count=len([w for w in result.warnings if w.row > 0]),
            imported=result.records_imported,
        )

        logger.info(
            f"Import of {self.entity} finished: {result.records_imported} imported, "
            f"{result.records_skipped} skipped, {len(result.errors)} errors, "
            f"{len(result.warnings)} warnings{' (dry run)' if self.dry_run else ''}"
        )
        return result


class Importer:
    """Creates import sessions over a rule engine, validator and target."""

    def __init__(
        self,
        engine: Optional[RuleEngine] = None,
        record_validator: Optional[RecordValidator] = None,
        target: Optional[TargetSink] = None,
    ):
        self.engine = engine or RuleEngine()
        self.record_validator = record_validator or RecordValidator()
        self.target = target

    def start(
        self,
        rules: List[TransformationRule],
        entity: str,
        dry_run: bool = False,
        auto_resolve: bool = False,
        required_fields: Optional[List[str]] = None,
    ) -> ImportSession:
        return ImportSession(
            self.engine,
            self.record_validator,
            self.target,
            rules,
            entity,
            dry_run=dry_run,
            auto_resolve=auto_resolve,
            required_fields=required_fields,
        )

    def import_rows(
        self,
        rows: List[Dict[str, Any]],
        rules: List[TransformationRule],
        entity: str,
        dry_run: bool = False,
        auto_resolve: bool = False,
        required_fields: Optional[List[str]] = None,
        unmapped_fields: Optional[List[str]] = None,
        quality: Optional[QualityReport] = None,
    ) -> ImportResult:
        """
        Import a complete row set in one call.

        Args:
            rows: Source rows
            rules: Transformation rules to apply
            entity: Target entity
            dry_run: Validate only; nothing is written
            auto_resolve: Apply auto-fixes for fixable warnings
            required_fields: Target fields every row must populate
            unmapped_fields: Source fields reported as unmapped
            quality: Source quality report

        Returns:
            ImportResult
        """
        session = self.start(
            rules, entity, dry_run=dry_run, auto_resolve=auto_resolve, required_fields=required_fields
        )
        if unmapped_fields:
            session.warn_unmapped(unmapped_fields)
        session.process(rows)
        return session.finish(quality)
