"""Tests for caremigrate.services.field_mapper."""

import pytest

from caremigrate.models.pipeline import FieldMapping, RuleKind
from caremigrate.services.field_mapper import (
    FieldMapper,
    PatternScoringStrategy,
    ScoringStrategy,
    field_tokens,
    mapping_to_rule,
    normalize_field_name,
)


@pytest.fixture
def mapper():
    return FieldMapper()


class TestNameHelpers:

    def test_normalize(self):
        assert normalize_field_name("Date_Of Birth") == "dateofbirth"

    @pytest.mark.parametrize("name, tokens", [
        ("GPPractice", ["gp", "practice"]),
        ("NHSNumber", ["nhs", "number"]),
        ("patient_id", ["patient", "id"]),
        ("PatientID", ["patient", "id"]),
    ])
    def test_tokens(self, name, tokens):
        assert field_tokens(name) == tokens


class TestAnalyzeField:

    @pytest.mark.parametrize("source, target", [
        ("PatientID", "resident_id"),
        ("Surname", "last_name"),
        ("Forename", "first_name"),
        ("DOB", "date_of_birth"),
        ("PhoneNumber", "phone_number"),
        ("Medications", "current_medications"),
        ("GPPractice", "gp_practice"),
        ("GP", "gp_name"),
        ("NextOfKin", "next_of_kin"),
        ("FundingType", "funding_type"),
        ("NHSNumber", "nhs_number"),
        ("Postcode", "postcode"),
    ])
    def test_suggested_targets(self, mapper, source, target):
        mapping = mapper.analyze_field(source, ["sample"])
        assert mapping is not None
        assert mapping.suggested_target == target

    def test_short_pattern_needs_whole_word(self, mapper):
        # "aid" contains "id" but is not the word "id"
        assert mapper.analyze_field("mobility_aid", ["Walking frame"]) is None

    def test_unmatched_field_has_no_mapping(self, mapper):
        assert mapper.analyze_field("favourite_colour", ["blue"]) is None

    def test_confidence_and_reasoning(self, mapper):
        mapping = mapper.analyze_field("PatientID", ["PCS001"])
        assert 0.0 <= mapping.confidence <= 1.0
        assert mapping.confidence == pytest.approx(0.95)
        assert "'id'" in mapping.reasoning
        assert "95%" in mapping.reasoning

    def test_exact_name_bonus(self, mapper):
        assert mapper.analyze_field("Surname", ["Smith"]).confidence == pytest.approx(0.95)

    def test_alternatives_decay(self, mapper):
        mapping = mapper.analyze_field("PatientID", ["PCS001"])
        assert [a.target_field for a in mapping.alternatives] == ["patient_id", "client_id"]
        assert mapping.alternatives[0].confidence == pytest.approx(0.85)
        assert mapping.alternatives[1].confidence == pytest.approx(0.75)

    def test_empty_samples_penalised(self, mapper):
        assert mapper.analyze_field("PatientID", []).confidence == pytest.approx(0.90)

    def test_nhs_value_fallback(self, mapper):
        valid = mapper.analyze_field("ref_no_2", ["943 476 5919"])
        assert valid.suggested_target == "resident_id"  # "ref" wins on the name

        by_value = mapper.analyze_field("legacy_code", ["943 476 5919"])
        assert by_value.suggested_target == "nhs_number"
        assert by_value.confidence == pytest.approx(0.75)

        bad_checksum = mapper.analyze_field("legacy_code", ["1234567890"])
        assert bad_checksum.confidence == pytest.approx(0.55)

    def test_postcode_value_fallback(self, mapper):
        mapping = mapper.analyze_field("area", ["LS1 4AP"])
        assert mapping.suggested_target == "postcode"

    def test_custom_scoring_strategy(self):
        class Halving(ScoringStrategy):
            def score(self, source_field, pattern, base_confidence, sample_values):
                return base_confidence / 2

        mapping = FieldMapper(scoring=Halving()).analyze_field("PatientID", ["PCS001"])
        assert mapping.confidence == pytest.approx(0.475)

    def test_scores_are_clamped(self):
        mapper = FieldMapper(scoring=PatternScoringStrategy(exact_bonus=0.5))
        assert mapper.analyze_field("Surname", ["Smith"]).confidence == 1.0


class TestMapFields:

    def test_report(self, mapper, resident_rows):
        rows = [dict(r, mobility_aid="Frame") for r in resident_rows]
        report = mapper.map_fields(rows)
        assert report.get("PatientID").suggested_target == "resident_id"
        assert report.unmapped == ["mobility_aid"]
        assert all(0.0 <= m.confidence <= 1.0 for m in report.mappings)

    def test_samples_skip_empty_values(self, mapper, resident_rows):
        report = mapper.map_fields(resident_rows)
        assert report.get("NHSNumber").sample_values == ["943 476 5919", "401 023 2137"]

    def test_no_rows(self, mapper):
        report = mapper.map_fields([])
        assert report.mappings == []
        assert report.unmapped == []


class TestMappingToRule:

    def _mapping(self, target, confidence=0.9):
        return FieldMapping(source_field="src", suggested_target=target, confidence=confidence)

    def test_identifier_rule_keeps_not_null(self):
        rule = mapping_to_rule(self._mapping("resident_id"))
        names = [c.name for c in rule.validation_rules]
        assert "not_null" in names
        assert "unique" in names
        assert rule.kind == RuleKind.DIRECT

    def test_optional_targets_drop_not_null(self):
        rule = mapping_to_rule(self._mapping("full_name"))
        assert "not_null" not in [c.name for c in rule.validation_rules]

    def test_rule_kinds(self):
        assert mapping_to_rule(self._mapping("date_of_birth")).kind == RuleKind.CONDITIONAL
        meds = mapping_to_rule(self._mapping("current_medications"))
        assert meds.kind == RuleKind.HEURISTIC
        assert meds.parameters == {"parser": "medications"}

    def test_low_confidence_not_recommended(self):
        assert mapping_to_rule(self._mapping("room_number", confidence=0.55)).recommended is False
        assert mapping_to_rule(self._mapping("room_number", confidence=0.85)).recommended is True


class TestFeedbackLearning:

    def test_accepted_suggestion_raises_confidence(self, mapper):
        mapper.learn_from_feedback("Surname", "last_name", accepted=True)
        assert mapper.patterns["surname"][1] == pytest.approx(0.97)

    def test_rejected_suggestion_lowers_confidence(self, mapper):
        mapper.learn_from_feedback("Surname", "last_name", accepted=False)
        assert mapper.patterns["surname"][1] == pytest.approx(0.82)
        assert mapper.analyze_field("Surname", ["Smith"]).confidence == pytest.approx(0.85)

    def test_confidence_is_clamped(self, mapper):
        for _ in range(3):
            mapper.learn_from_feedback("Surname", "last_name", accepted=True)
        assert mapper.patterns["surname"][1] == 1.0
        for _ in range(20):
            mapper.learn_from_feedback("Surname", "last_name", accepted=False)
        assert mapper.patterns["surname"][1] == pytest.approx(0.1)

    def test_unknown_target_leaves_patterns_alone(self, mapper):
        before = dict(mapper.patterns)
        assert mapper.adjust_pattern_confidence("Surname", "room_number", 0.05) is None
        assert mapper.adjust_pattern_confidence("Provider", "last_name", 0.05) is None
        assert mapper.patterns == before

    def test_selected_target_becomes_pattern(self, mapper):
        assert mapper.analyze_field("ClientCode", ["C1"]) is None

        mapper.learn_from_feedback("ClientCode", "room_number", accepted=False, selected_target="resident_id")

        mapping = mapper.analyze_field("ClientCode", ["C1"])
        assert mapping.suggested_target == "resident_id"
        assert mapping.confidence == pytest.approx(0.73)

    def test_learning_does_not_leak_between_mappers(self, mapper):
        mapper.learn_from_feedback("Surname", "last_name", accepted=True)
        assert FieldMapper().patterns["surname"][1] == pytest.approx(0.92)
