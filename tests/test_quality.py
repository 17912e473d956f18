"""Tests for caremigrate.services.quality."""

import pytest

from caremigrate.services.quality import QualityAssessor, QualityReport, recommend_actions


def _rows(count, missing_every=0):
    rows = []
    for i in range(count):
        row = {"resident_id": f"R{i}", "surname": f"Name{i}", "dob": "15/03/1940", "room": str(i)}
        if missing_every and i % missing_every == 0:
            row["surname"] = ""
            row["room"] = None
        rows.append(row)
    return rows


@pytest.fixture
def assessor():
    return QualityAssessor()


class TestQualityAssessor:

    def test_empty_input(self, assessor):
        report = assessor.assess([])
        assert report.score == 0
        assert report.issues == ["No data provided"]

    def test_clean_data_scores_full(self, assessor):
        report = assessor.assess(_rows(10))
        assert report.score == 100
        assert report.issues == []
        assert report.identifier_field == "resident_id"

    def test_missing_data_scores_lower(self, assessor):
        clean = assessor.assess(_rows(10))
        half_missing = assessor.assess(_rows(10, missing_every=2))
        assert half_missing.score < clean.score
        assert half_missing.completeness == pytest.approx(75.0)
        assert "High percentage of missing data detected" in half_missing.issues

    def test_inconsistent_date_formats(self, assessor):
        rows = _rows(4)
        rows[1]["dob"] = "1940-03-15"
        report = assessor.assess(rows)
        assert report.inconsistent_date_fields == ["dob"]
        assert report.score == 90
        assert "Inconsistent date formats detected in field: dob" in report.issues

    def test_duplicates_penalised(self, assessor):
        rows = _rows(4)
        rows[3]["resident_id"] = "r0"
        report = assessor.assess(rows)
        assert report.duplicate_count == 1
        assert report.score == 95
        assert "Duplicate records detected: 1 in field resident_id" in report.issues

    def test_required_fields_limit_completeness(self, assessor):
        report = assessor.assess(_rows(10, missing_every=2), required_fields=["resident_id", "dob"])
        assert report.completeness == 100.0

    def test_score_is_clamped(self, assessor):
        rows = [{"resident_id": "R1", "surname": "Smith"} for _ in range(30)]
        report = assessor.assess(rows)
        assert report.duplicate_count == 29
        assert report.score == 0
        assert isinstance(report.score, int)
        assert report.issues == ["Duplicate records detected: 29 in field resident_id"]

    def test_identifier_matched_as_whole_word(self, assessor):
        rows = [
            {"MiddleName": "Jane", "PreferredName": "Jo", "ResidentID": "R1"},
            {"MiddleName": "Jane", "PreferredName": "Jo", "ResidentID": "R1"},
        ]
        report = assessor.assess(rows)
        assert report.identifier_field == "ResidentID"
        assert report.duplicate_count == 1

    def test_configured_identifier_field_wins(self):
        assessor = QualityAssessor(identifier_fields=["patient_id"])
        rows = [
            {"CarerRef": "C1", "PatientID": "P1"},
            {"CarerRef": "C1", "PatientID": "P2"},
        ]
        report = assessor.assess(rows)
        assert report.identifier_field == "PatientID"
        assert report.duplicate_count == 0

    def test_no_identifier_field(self, assessor):
        report = assessor.assess([{"Provider": "Acme", "Surname": "Smith"}] * 2)
        assert report.identifier_field is None
        assert report.duplicate_count == 0


class TestRecommendActions:

    def test_low_quality_and_errors(self):
        report = QualityReport(score=60, inconsistent_date_fields=["dob"], duplicate_count=2)
        actions = recommend_actions(report, error_count=3, warning_count=1, imported=10)
        assert actions == [
            "Improve data quality before full migration",
            "Review data completeness and consistency",
            "Review and fix data validation errors",
            "Check required field mappings",
            "Address data warnings for optimal results",
            "Standardize date formats across all records",
            "Remove or merge duplicate records",
            "Review imported data for accuracy",
            "Perform post-migration validation checks",
        ]

    def test_clean_import(self):
        actions = recommend_actions(QualityReport(score=98), error_count=0, warning_count=0, imported=5)
        assert actions == ["Review imported data for accuracy", "Perform post-migration validation checks"]

    def test_nothing_imported(self):
        assert recommend_actions(None, error_count=0, warning_count=0, imported=0) == []
