"""Tests for caremigrate.services.importer."""

import pytest

from caremigrate.services.field_mapper import FieldMapper, mapping_to_rule
from caremigrate.services.importer import Importer
from caremigrate.services.quality import QualityAssessor
from caremigrate.services.transformer import RuleEngine
from caremigrate.services.validators import RecordValidator
from caremigrate.targets.memory import InMemoryTarget


# ---------------------------------------------------------------------------
# Helpers / Fixtures
# ---------------------------------------------------------------------------
class RejectingTarget(InMemoryTarget):
    """Refuses to store one resident id."""

    def __init__(self, rejected_id):
        super().__init__()
        self.rejected_id = rejected_id

    def write_row(self, entity, row):
        if row.get("resident_id") == self.rejected_id:
            raise IOError("disk full")
        return super().write_row(entity, row)


@pytest.fixture
def rules(resident_rows):
    report = FieldMapper().map_fields(resident_rows)
    return [mapping_to_rule(m) for m in report.mappings]


def _importer(constraint_validator, target):
    engine = RuleEngine(validator=constraint_validator)
    return Importer(engine, RecordValidator(), target)


# ---------------------------------------------------------------------------
# Import runs
# ---------------------------------------------------------------------------
class TestImportRows:

    def test_row_without_identifier_is_skipped(self, resident_rows, rules, constraint_validator, target):
        result = _importer(constraint_validator, target).import_rows(resident_rows, rules, "residents")

        assert result.records_imported == 4
        assert result.records_skipped == 1
        assert not result.success
        row_errors = result.errors_for_row(4)
        assert any(e.field == "identifier" for e in row_errors)
        assert all(e.row == 4 for e in result.errors)
        assert target.count("residents") == 4

    def test_transformed_values_are_stored(self, resident_rows, rules, constraint_validator, target):
        _importer(constraint_validator, target).import_rows(resident_rows, rules, "residents")
        stored = target.get("residents", "PCS001")
        assert stored["last_name"] == "Smith"
        assert stored["date_of_birth"].isoformat() == "1940-03-15"
        assert [m["name"] for m in stored["current_medications"]] == ["Amlodipine", "Simvastatin"]

    def test_dry_run_writes_nothing(self, resident_rows, rules, constraint_validator, target):
        result = _importer(constraint_validator, target).import_rows(
            resident_rows, rules, "residents", dry_run=True
        )
        assert result.dry_run
        assert result.records_imported == 4
        assert target.count("residents") == 0

    def test_required_fields(self, resident_rows, rules, constraint_validator, target):
        result = _importer(constraint_validator, target).import_rows(
            resident_rows, rules, "residents", required_fields=["nhs_number"]
        )
        assert result.records_imported == 2
        missing = [e for e in result.errors if e.message == "Required field missing: nhs_number"]
        assert sorted(e.row for e in missing) == [3, 4, 5]

    def test_unmapped_fields_are_run_level_warnings(self, resident_rows, rules, constraint_validator, target):
        result = _importer(constraint_validator, target).import_rows(
            resident_rows, rules, "residents", unmapped_fields=["mobility_aid"]
        )
        unmapped = [w for w in result.warnings if w.error_type == "unmapped_field"]
        assert len(unmapped) == 1
        assert unmapped[0].row == 0
        assert unmapped[0].field == "mobility_aid"

    def test_quality_and_actions_attached(self, resident_rows, rules, constraint_validator, target):
        quality = QualityAssessor().assess(resident_rows)
        result = _importer(constraint_validator, target).import_rows(
            resident_rows, rules, "residents", quality=quality
        )
        assert result.quality_score == quality.score
        assert "Review and fix data validation errors" in result.recommended_actions
        assert "Review imported data for accuracy" in result.recommended_actions

    def test_load_failure_reports_source_row(self, resident_rows, rules, constraint_validator):
        target = RejectingTarget("PCS005")
        result = _importer(constraint_validator, target).import_rows(resident_rows, rules, "residents")

        load_errors = [e for e in result.errors if e.error_type == "load"]
        assert len(load_errors) == 1
        assert load_errors[0].row == 5
        assert result.records_imported == 3
        assert result.records_skipped == 2

    def test_rule_test_results_recorded(self, resident_rows, rules, constraint_validator, target):
        _importer(constraint_validator, target).import_rows(resident_rows, rules, "residents")
        id_rule = next(r for r in rules if r.target_field == "resident_id")
        assert id_rule.test_results[-1]["passed"] == 4
        assert id_rule.test_results[-1]["failed"] == 1


class TestImportSession:

    def test_row_numbers_and_uniqueness_span_batches(self, rules, constraint_validator, target):
        session = _importer(constraint_validator, target).start(rules, "residents")
        session.process([{"PatientID": "PCS001", "Surname": "Smith"}])
        session.process([{"PatientID": "PCS001", "Surname": "Smythe"}])
        result = session.finish()

        assert result.records_imported == 1
        assert result.records_skipped == 1
        assert result.errors[0].row == 2
        assert "Duplicate" in result.errors[0].message
