"""Transformation rule engine for legacy care records."""

import re
import difflib
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from .dates import parse_date
from .validators import ConstraintValidator, is_empty
from ..errors import TransformationError
from ..models.pipeline import RuleKind, TransformationRule
from ..models.record import TransformedRow, ValidationError

logger = logging.getLogger(__name__)

DOSAGE = re.compile(r"(\d+(?:\.\d+)?)\s?(mg|mcg|g|ml|units?)\b", re.IGNORECASE)
FREQUENCY = re.compile(r"\b(OD|BD|TDS|QDS|PRN|ON|morning|evening|daily|twice.*day)\b", re.IGNORECASE)
CONTACT = re.compile(r"^(.+?)\s*\((.+?)\)\s*-\s*(.+)$")

_NONE_VALUES = ("", "none", "none known", "nil", "nkda")

DEFAULT_LOOKUP_TABLES: Dict[str, Dict[str, str]] = {
    "medications": {
        "paracetamol": "Paracetamol",
        "aspirin": "Aspirin",
        "ibuprofen": "Ibuprofen",
        "amlodipine": "Amlodipine",
        "simvastatin": "Simvastatin",
        "atorvastatin": "Atorvastatin",
        "metformin": "Metformin",
        "ramipril": "Ramipril",
        "donepezil": "Donepezil",
        "warfarin": "Warfarin",
        "furosemide": "Furosemide",
        "bisoprolol": "Bisoprolol",
        "levothyroxine": "Levothyroxine",
        "omeprazole": "Omeprazole",
        "sertraline": "Sertraline",
    },
}


def parse_medications(value: Any) -> List[Dict[str, Any]]:
    """
    Split a medication string into structured entries.

    ``"Amlodipine 5mg OD; Simvastatin 20mg ON"`` becomes two entries with
    name, dosage, frequency, route, prescriber and active flag. Missing
    components get defaults (frequency 'As directed', route 'Oral').
    """
    if isinstance(value, list):
        return value
    text = str(value).strip()
    if text.lower() in _NONE_VALUES:
        return []

    medications = []
    for part in text.split(";"):
        trimmed = part.strip()
        if not trimmed:
            continue

        dosage_match = DOSAGE.search(trimmed)
        frequency_match = FREQUENCY.search(trimmed)
        name = trimmed[:dosage_match.start()].strip() if dosage_match else ""
        if not name:
            name = trimmed.split()[0]

        medications.append({
            "name": name,
            "dosage": f"{dosage_match.group(1)}{dosage_match.group(2)}" if dosage_match else "",
            "frequency": frequency_match.group(1) if frequency_match else "As directed",
            "route": "Oral",
            "prescriber": "GP",
            "active": True,
        })
    return medications


def parse_allergies(value: Any) -> List[str]:
    """Split an allergy list; 'None known' becomes an empty list."""
    if isinstance(value, list):
        return value
    text = str(value).strip()
    if text.lower() in _NONE_VALUES:
        return []
    return [a.strip() for a in re.split(r"[,;]", text) if a.strip()]


def parse_contact(value: Any) -> Dict[str, Any]:
    """Parse 'Mary Smith (Daughter) - 07700123456' into a next-of-kin record."""
    if isinstance(value, dict):
        return value
    text = str(value).strip()
    match = CONTACT.match(text)
    if match:
        return {
            "name": match.group(1).strip(),
            "relationship": match.group(2).strip(),
            "phone": match.group(3).strip(),
            "is_primary": True,
            "address": None,
        }
    return {
        "name": text,
        "relationship": "Unknown",
        "phone": "",
        "is_primary": True,
        "address": None,
    }


class LookupProvider(ABC):
    """Resolves values against reference tables (formularies, code lists)."""

    @abstractmethod
    def resolve(self, table: str, value: Any) -> Optional[Any]:
        """Return the canonical value, or None if it cannot be resolved."""
        pass


class DictLookupProvider(LookupProvider):
    """
    Lookup over in-memory tables.

    Matches case-insensitively first, then falls back to the closest key
    by ``difflib`` similarity above ``fuzzy_cutoff``.
    """

    def __init__(
        self,
        tables: Optional[Dict[str, Dict[str, Any]]] = None,
        fuzzy_cutoff: float = 0.8,
    ):
        self.fuzzy_cutoff = fuzzy_cutoff
        self._tables: Dict[str, Dict[str, Any]] = {}
        for name, table in (tables if tables is not None else DEFAULT_LOOKUP_TABLES).items():
            self.register_table(name, table)

    def register_table(self, name: str, table: Dict[str, Any]) -> None:
        self._tables[name] = {str(k).strip().lower(): v for k, v in table.items()}

    def resolve(self, table: str, value: Any) -> Optional[Any]:
        entries = self._tables.get(table)
        if entries is None:
            raise TransformationError(table, f"Unknown lookup table: {table}", value)

        key = str(value).strip().lower()
        if key in entries:
            return entries[key]

        # Medication strings often carry a dose; try the leading word too
        first_word = key.split()[0] if key.split() else key
        if first_word in entries:
            return entries[first_word]

        close = difflib.get_close_matches(key, list(entries), n=1, cutoff=self.fuzzy_cutoff)
        if not close and first_word != key:
            close = difflib.get_close_matches(first_word, list(entries), n=1, cutoff=self.fuzzy_cutoff)
        if close:
            logger.debug(f"Fuzzy lookup in {table}: {value!r} -> {close[0]!r}")
            return entries[close[0]]
        return None


class RuleEngine:
    """
    Engine for applying TransformationRules to source rows.

    Supports:
    - The five rule kinds (direct, calculated, lookup, conditional, heuristic)
    - Pluggable lookup providers and heuristic parsers
    - Post-transform constraint validation with batch-wide uniqueness
    - Row-level partial failure: a failed field keeps its raw value
    """

    def __init__(
        self,
        lookup_provider: Optional[LookupProvider] = None,
        validator: Optional[ConstraintValidator] = None,
    ):
        """Initialize the rule engine."""
        self.lookup_provider = lookup_provider or DictLookupProvider()
        self.validator = validator or ConstraintValidator()
        self._kinds: Dict[RuleKind, Callable] = {
            RuleKind.DIRECT: self._apply_direct,
            RuleKind.CALCULATED: self._apply_calculated,
            RuleKind.LOOKUP: self._apply_lookup,
            RuleKind.CONDITIONAL: self._apply_conditional,
            RuleKind.HEURISTIC: self._apply_heuristic,
        }
        self._parsers: Dict[str, Callable[[Any], Any]] = {
            "medications": parse_medications,
            "allergies": parse_allergies,
            "contact": parse_contact,
        }

    def register_parser(self, name: str, func: Callable[[Any], Any]) -> None:
        """Register a heuristic parser usable via ``parameters={'parser': name}``."""
        self._parsers[name] = func

    def apply_rule(self, value: Any, rule: TransformationRule, row: Optional[Dict[str, Any]] = None) -> Any:
        """
        Apply a single rule to a value.

        Args:
            value: Source value of ``rule.source_field``
            rule: Rule to apply
            row: Whole source row (needed by calculated rules)

        Returns:
            Transformed value

        Raises:
            TransformationError: If the value cannot be transformed
        """
        handler = self._kinds.get(rule.kind)
        if handler is None:
            raise TransformationError(rule.target_field, f"Unsupported rule kind: {rule.kind}", value)
        try:
            return handler(value, rule, row or {})
        except TransformationError:
            raise
        except (ValueError, TypeError, KeyError) as e:
            raise TransformationError(rule.target_field, str(e), value) from e

    def _apply_direct(self, value: Any, rule: TransformationRule, row: Dict[str, Any]) -> Any:
        if isinstance(value, str):
            value = value.strip()

        coerce = rule.parameters.get("coerce")
        if coerce is None or value is None:
            return value
        if coerce == "str":
            return str(value)
        if coerce == "int":
            return int(str(value).strip())
        if coerce == "float":
            return float(str(value).strip())
        if coerce == "bool":
            return str(value).strip().lower() in ("true", "yes", "y", "1")
        if coerce == "upper":
            return str(value).upper()
        if coerce == "lower":
            return str(value).lower()
        if coerce == "title":
            return str(value).title()
        raise TransformationError(rule.target_field, f"Unknown coercion: {coerce}", value)

    def _apply_calculated(self, value: Any, rule: TransformationRule, row: Dict[str, Any]) -> Any:
        source_fields = rule.parameters.get("source_fields", [])
        separator = rule.parameters.get("separator", " ")

        parts = [str(row[f]).strip() for f in source_fields if not is_empty(row.get(f))]
        if parts:
            return separator.join(parts)
        if not is_empty(value):
            return str(value).strip()
        raise TransformationError(rule.target_field, f"No values to combine from {source_fields}", value)

    def _apply_lookup(self, value: Any, rule: TransformationRule, row: Dict[str, Any]) -> Any:
        table = rule.parameters.get("table", "medications")
        resolved = self.lookup_provider.resolve(table, value)
        if resolved is None:
            raise TransformationError(rule.target_field, f"No match for {value!r} in lookup table '{table}'", value)
        return resolved

    def _apply_conditional(self, value: Any, rule: TransformationRule, row: Dict[str, Any]) -> Any:
        conditions = rule.parameters.get("conditions")
        if conditions:
            key = str(value).strip().lower()
            for condition, result in conditions.items():
                if key == str(condition).strip().lower():
                    return result
            if "default" in rule.parameters:
                return rule.parameters["default"]
            raise TransformationError(rule.target_field, f"No condition matches {value!r}", value)

        try:
            return parse_date(value)
        except ValueError as e:
            raise TransformationError(rule.target_field, str(e), value) from e

    def _apply_heuristic(self, value: Any, rule: TransformationRule, row: Dict[str, Any]) -> Any:
        parser_name = rule.parameters.get("parser", "medications")
        parser = self._parsers.get(parser_name)
        if parser is None:
            raise TransformationError(rule.target_field, f"Unknown heuristic parser: {parser_name}", value)
        return parser(value)

    def transform_row(
        self,
        row: Dict[str, Any],
        rules: List[TransformationRule],
        row_number: int,
        auto_resolve: bool = False,
        stats: Optional[Dict[str, List[int]]] = None,
    ) -> TransformedRow:
        """
        Transform one source row.

        A rule applies when any of its input fields is present in the row.
        When several rules feed the same target, the first non-empty value wins.

        Args:
            row: Source row
            rules: Ordered rules
            row_number: 1-based row number used in issues
            auto_resolve: Apply auto-fixes for fixable warnings
            stats: Optional rule_id -> [passed, failed] accumulator

        Returns:
            TransformedRow with data, errors and warnings
        """
        result = TransformedRow(row=row_number, data={}, source=row)

        for rule in rules:
            if not any(f in row for f in rule.input_fields):
                continue
            if not is_empty(result.data.get(rule.target_field)):
                continue

            value = row.get(rule.source_field)
            failed = False

            if is_empty(value) and rule.kind != RuleKind.CALCULATED:
                transformed = None
            else:
                try:
                    transformed = self.apply_rule(value, rule, row)
                except TransformationError as e:
                    logger.warning(f"Transformation error for {rule.source_field} at row {row_number}: {e}")
                    result.warnings.append(ValidationError(
                        row=row_number,
                        field=rule.target_field,
                        message=f"Transformation failed, original value kept: {e}",
                        severity="warning",
                        error_type="transformation",
                        value=value,
                    ))
                    transformed = value
                    failed = True

            transformed, issues = self.validator.evaluate(
                rule.validation_rules, rule.target_field, transformed, row_number, auto_resolve=auto_resolve
            )
            for issue in issues:
                result.add_issue(issue)

            result.data[rule.target_field] = transformed
            result.validated_fields.add(rule.target_field)

            if stats is not None:
                counts = stats.setdefault(rule.rule_id, [0, 0])
                if failed or any(i.is_error for i in issues):
                    counts[1] += 1
                else:
                    counts[0] += 1

        return result

    def transform_rows(
        self,
        rows: List[Dict[str, Any]],
        rules: List[TransformationRule],
        auto_resolve: bool = False,
        start_row: int = 1,
        record_tests: bool = True,
    ) -> List[TransformedRow]:
        """
        Transform a batch of rows.

        Uniqueness constraints are checked across the whole batch. When
        ``record_tests`` is set, each applied rule gets a test result entry.
        """
        self.validator.reset()
        stats: Dict[str, List[int]] = {}

        transformed = [
            self.transform_row(row, rules, start_row + i, auto_resolve=auto_resolve, stats=stats)
            for i, row in enumerate(rows)
        ]

        if record_tests:
            self.record_rule_tests(rules, stats)
        return transformed

    @staticmethod
    def record_rule_tests(rules: List[TransformationRule], stats: Dict[str, List[int]]) -> None:
        for rule in rules:
            if rule.rule_id in stats:
                passed, failed = stats[rule.rule_id]
                rule.record_test(passed, failed)
