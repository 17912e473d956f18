"""Field mapping suggestions for legacy care data."""

import re
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .validators import is_empty, nhs_checksum_valid, UK_POSTCODE
from ..models.pipeline import (
    AlternativeMapping,
    FieldMapping,
    RuleKind,
    TransformationRule,
    constraints_from_labels,
)

logger = logging.getLogger(__name__)

ALTERNATIVE_DECAY = 0.1

# Feedback learning
ACCEPTED_BOOST = 0.05
REJECTED_PENALTY = 0.1
MIN_PATTERN_CONFIDENCE = 0.1
LEARNED_PATTERN_CONFIDENCE = 0.7

# pattern -> (targets in rank order, base confidence)
FIELD_PATTERNS: Dict[str, Tuple[List[str], float]] = {
    "id": (["resident_id", "patient_id", "client_id"], 0.95),
    "ref": (["resident_id", "client_id"], 0.80),
    "name": (["full_name", "patient_name", "client_name"], 0.90),
    "surname": (["last_name", "family_name"], 0.92),
    "forename": (["first_name", "given_name"], 0.92),
    "firstname": (["first_name", "given_name"], 0.92),
    "lastname": (["last_name", "family_name"], 0.92),
    "middlename": (["middle_name"], 0.90),
    "dob": (["date_of_birth", "birth_date"], 0.95),
    "birth": (["date_of_birth", "birth_date"], 0.95),
    "gender": (["gender", "sex"], 0.95),
    "address": (["address", "home_address", "residential_address"], 0.85),
    "phone": (["phone_number", "contact_number", "telephone"], 0.90),
    "medication": (["current_medications", "medications", "drugs"], 0.85),
    "meds": (["current_medications", "medications"], 0.80),
    "allergy": (["known_allergies", "allergies", "adverse_reactions"], 0.90),
    "allergies": (["known_allergies", "allergies", "adverse_reactions"], 0.90),
    "gp": (["gp_name", "general_practitioner", "primary_care_physician"], 0.88),
    "gpname": (["gp_name", "general_practitioner"], 0.92),
    "gppractice": (["gp_practice", "gp_surgery"], 0.92),
    "care": (["care_requirements", "care_needs", "support_needs"], 0.85),
    "carelevel": (["care_level", "dependency_level"], 0.90),
    "room": (["room_number", "room", "accommodation"], 0.90),
    "funding": (["funding_type", "payment_method", "fee_arrangement"], 0.88),
    "admission": (["admission_date", "admitted_on"], 0.90),
    "nextofkin": (["next_of_kin", "emergency_contact"], 0.88),
    "emergencycontact": (["next_of_kin", "emergency_contact"], 0.85),
}

VALIDATION_SUGGESTIONS: Dict[str, List[str]] = {
    "resident_id": ["Not null", "Unique", "Alphanumeric", "Max 20 characters"],
    "date_of_birth": ["Valid date", "Age > 0", "Age < 120", "Not future date"],
    "admission_date": ["Valid date", "Not future date"],
    "phone_number": ["UK phone format", "Not empty", "Valid digits only"],
    "nhs_number": ["NHS number format", "Check digit validation", "Exactly 10 digits"],
    "postcode": ["UK postcode format", "Valid area code", "Uppercase format"],
    "full_name": ["Not empty", "Valid characters only", "Max 100 characters"],
    "care_level": ["Valid care level", "One of: low/medium/high dependency"],
    "funding_type": ["Valid funding type", "One of: self-funded/local-authority/nhs"],
}
DEFAULT_SUGGESTIONS = ["Not empty", "Valid format"]

MANDATORY_TARGETS = ("resident_id",)

# How a suggested target is transformed when the mapping becomes a rule
TARGET_RULE_KINDS: Dict[str, Tuple[RuleKind, Dict[str, Any]]] = {
    "date_of_birth": (RuleKind.CONDITIONAL, {}),
    "birth_date": (RuleKind.CONDITIONAL, {}),
    "admission_date": (RuleKind.CONDITIONAL, {}),
    "current_medications": (RuleKind.HEURISTIC, {"parser": "medications"}),
    "medications": (RuleKind.HEURISTIC, {"parser": "medications"}),
    "known_allergies": (RuleKind.HEURISTIC, {"parser": "allergies"}),
    "allergies": (RuleKind.HEURISTIC, {"parser": "allergies"}),
    "next_of_kin": (RuleKind.HEURISTIC, {"parser": "contact"}),
}

NHS_NAME = re.compile(r"nhs|nationalhealth")
POSTCODE_NAME = re.compile(r"post(al)?code|zip")
TEN_DIGITS = re.compile(r"^\d{3}\s?\d{3}\s?\d{4}$")


def normalize_field_name(name: str) -> str:
    """Lower-case alphanumerics only: 'Date_Of Birth' -> 'dateofbirth'."""
    return re.sub(r"[^a-z0-9]", "", str(name).lower())


def field_tokens(name: str) -> List[str]:
    """Split a field name into lower-case words: 'GPPractice' -> ['gp', 'practice']."""
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", str(name))
    spaced = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1 \2", spaced)
    return [t for t in re.split(r"[^A-Za-z0-9]+", spaced.lower()) if t]


def clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class ScoringStrategy(ABC):
    """Scores a candidate mapping. Implementations may be statistical models."""

    @abstractmethod
    def score(
        self,
        source_field: str,
        pattern: str,
        base_confidence: float,
        sample_values: List[Any],
    ) -> float:
        """Return a confidence for mapping ``source_field`` via ``pattern``."""
        pass


class PatternScoringStrategy(ScoringStrategy):
    """Uses the hand-tuned base confidence of the matched pattern.

    An exact match of the whole field name earns a small bonus; a field with
    no sample values at all is slightly penalised.
    """

    def __init__(self, exact_bonus: float = 0.03, empty_penalty: float = 0.05):
        self.exact_bonus = exact_bonus
        self.empty_penalty = empty_penalty

    def score(
        self,
        source_field: str,
        pattern: str,
        base_confidence: float,
        sample_values: List[Any],
    ) -> float:
        score = base_confidence
        if normalize_field_name(source_field) == pattern:
            score += self.exact_bonus
        if not sample_values:
            score -= self.empty_penalty
        return score


@dataclass
class MappingReport:
    """Mapper output for a set of sample rows."""
    mappings: List[FieldMapping] = field(default_factory=list)
    unmapped: List[str] = field(default_factory=list)

    def get(self, source_field: str) -> Optional[FieldMapping]:
        for mapping in self.mappings:
            if mapping.source_field == source_field:
                return mapping
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mappings": [m.to_dict() for m in self.mappings],
            "unmapped": self.unmapped,
        }


class FieldMapper:
    """
    Proposes source -> target field mappings with confidence scores.

    Matching order:
    1. Dictionary patterns against the normalised field name; the longest
       matching pattern wins, then the higher base confidence. Patterns of
       three characters or fewer must equal a whole word of the name.
    2. Name fallbacks for NHS numbers and postcodes.
    3. Value fallbacks: a 10-digit identifier, a UK postcode shape.

    A field with no match gets no mapping at all.
    """

    def __init__(
        self,
        patterns: Optional[Dict[str, Tuple[List[str], float]]] = None,
        scoring: Optional[ScoringStrategy] = None,
        sample_size: int = 3,
    ):
        self.patterns = {normalize_field_name(k): v for k, v in (patterns or FIELD_PATTERNS).items()}
        self.scoring = scoring or PatternScoringStrategy()
        self.sample_size = sample_size

    def _match_pattern(self, source_field: str) -> Optional[str]:
        normalized = normalize_field_name(source_field)
        tokens = set(field_tokens(source_field))

        best: Optional[str] = None
        for pattern, (_, confidence) in self.patterns.items():
            if len(pattern) <= 3:
                matched = pattern in tokens
            else:
                matched = pattern in normalized
            if not matched:
                continue
            if best is None:
                best = pattern
                continue
            if len(pattern) > len(best) or (
                len(pattern) == len(best) and confidence > self.patterns[best][1]
            ):
                best = pattern
        return best

    def _samples(self, source_field: str, rows: List[Dict[str, Any]]) -> List[Any]:
        values = []
        for row in rows:
            value = row.get(source_field)
            if not is_empty(value):
                values.append(value)
                if len(values) >= self.sample_size:
                    break
        return values

    def analyze_field(self, source_field: str, sample_values: List[Any]) -> Optional[FieldMapping]:
        """
        Suggest a mapping for one field.

        Args:
            source_field: Field name in the source
            sample_values: Non-empty sample values (may be empty)

        Returns:
            FieldMapping, or None if nothing matches
        """
        data_type = type(sample_values[0]).__name__ if sample_values else "NoneType"
        samples = [str(v) for v in sample_values]

        pattern = self._match_pattern(source_field)
        if pattern:
            targets, base_confidence = self.patterns[pattern]
            confidence = clamp(self.scoring.score(source_field, pattern, base_confidence, sample_values))
            alternatives = []
            for index, target in enumerate(targets[1:]):
                decayed = round(confidence - (index + 1) * ALTERNATIVE_DECAY, 4)
                if decayed <= 0:
                    break
                alternatives.append(AlternativeMapping(
                    target_field=target,
                    confidence=clamp(decayed),
                    reasoning=f"Alternative mapping for '{pattern}'",
                ))
            return FieldMapping(
                source_field=source_field,
                suggested_target=targets[0],
                confidence=round(confidence, 4),
                reasoning=f"Field name pattern match for '{pattern}' with {round(confidence * 100)}% confidence",
                data_type=data_type,
                sample_values=samples,
                validation_suggestions=VALIDATION_SUGGESTIONS.get(targets[0], DEFAULT_SUGGESTIONS),
                alternatives=alternatives,
            )

        return self._fallback(source_field, sample_values, data_type, samples)

    def _fallback(
        self,
        source_field: str,
        sample_values: List[Any],
        data_type: str,
        samples: List[str],
    ) -> Optional[FieldMapping]:
        normalized = normalize_field_name(source_field)
        candidate: Optional[Tuple[str, float, str]] = None

        if NHS_NAME.search(normalized):
            candidate = ("nhs_number", 0.85, "Field name suggests NHS number")
        elif POSTCODE_NAME.search(normalized):
            candidate = ("postcode", 0.90, "Field name suggests postal code")
        elif sample_values:
            first = str(sample_values[0]).strip()
            if TEN_DIGITS.match(first):
                digits = re.sub(r"\s", "", first)
                confidence = 0.75 if nhs_checksum_valid(digits) else 0.55
                candidate = ("nhs_number", confidence, "Values look like 10-digit NHS numbers")
            elif UK_POSTCODE.match(first):
                candidate = ("postcode", 0.75, "Values look like UK postcodes")

        if candidate is None:
            logger.debug(f"No mapping found for field: {source_field}")
            return None

        target, base_confidence, reasoning = candidate
        confidence = clamp(self.scoring.score(source_field, target.replace("_", ""), base_confidence, sample_values))
        return FieldMapping(
            source_field=source_field,
            suggested_target=target,
            confidence=round(confidence, 4),
            reasoning=reasoning,
            data_type=data_type,
            sample_values=samples,
            validation_suggestions=VALIDATION_SUGGESTIONS[target],
        )

    def map_fields(self, rows: List[Dict[str, Any]]) -> MappingReport:
        """
        Suggest mappings for every field seen in the sample rows.

        Args:
            rows: Sample source rows

        Returns:
            MappingReport with mappings and unmapped field names
        """
        report = MappingReport()
        if not rows:
            return report

        fields: List[str] = []
        for row in rows:
            for name in row:
                if name not in fields:
                    fields.append(name)

        for source_field in fields:
            mapping = self.analyze_field(source_field, self._samples(source_field, rows))
            if mapping:
                report.mappings.append(mapping)
            else:
                report.unmapped.append(source_field)

        logger.info(f"Mapped {len(report.mappings)} of {len(fields)} fields ({len(report.unmapped)} unmapped)")
        return report

    def adjust_pattern_confidence(self, source_field: str, target: str, delta: float) -> Optional[float]:
        """
        Shift the base confidence of the pattern that maps a field to a target.

        Returns:
            The new confidence, or None if no pattern maps the field to the target
        """
        pattern = self._match_pattern(source_field)
        if pattern is None:
            return None
        targets, confidence = self.patterns[pattern]
        if target not in targets:
            return None

        updated = round(max(MIN_PATTERN_CONFIDENCE, min(1.0, confidence + delta)), 4)
        self.patterns[pattern] = (targets, updated)
        logger.info(f"Pattern '{pattern}' -> {target}: confidence {confidence} -> {updated}")
        return updated

    def learn_from_feedback(
        self,
        source_field: str,
        recommended_target: str,
        accepted: bool,
        selected_target: Optional[str] = None,
    ) -> None:
        """
        Learn from a user's verdict on a suggested mapping.

        An accepted suggestion raises its pattern's confidence and a rejected
        one lowers it. When the user picked a different target, the field
        name becomes a new pattern for that target.

        Args:
            source_field: Field the suggestion was made for
            recommended_target: Target that was suggested
            accepted: Whether the user kept the suggestion
            selected_target: Target the user chose instead, if any
        """
        if accepted:
            self.adjust_pattern_confidence(source_field, recommended_target, ACCEPTED_BOOST)
            return

        self.adjust_pattern_confidence(source_field, recommended_target, -REJECTED_PENALTY)
        if selected_target and selected_target != recommended_target:
            pattern = normalize_field_name(source_field)
            self.patterns[pattern] = ([selected_target], LEARNED_PATTERN_CONFIDENCE)
            logger.info(f"Learned pattern '{pattern}' -> {selected_target}")


def mapping_to_rule(mapping: FieldMapping) -> TransformationRule:
    """Turn a suggested mapping into a transformation rule."""
    kind, parameters = TARGET_RULE_KINDS.get(mapping.suggested_target, (RuleKind.DIRECT, {}))
    constraints = constraints_from_labels(VALIDATION_SUGGESTIONS.get(mapping.suggested_target, []))
    # Only the identifier is mandatory; other suggested fields may be blank
    if mapping.suggested_target not in MANDATORY_TARGETS:
        constraints = [c for c in constraints if c.name != "not_null"]
    return TransformationRule(
        source_field=mapping.source_field,
        target_field=mapping.suggested_target,
        kind=kind,
        description=f"Suggested mapping: {mapping.reasoning}",
        validation_rules=constraints,
        confidence=mapping.confidence,
        recommended=mapping.confidence >= 0.8,
        parameters=dict(parameters),
    )
