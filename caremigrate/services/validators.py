"""Validation rules for migrated care records."""

import re
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple
from datetime import date

from .dates import age_on, parse_date
from ..models.pipeline import ValidationConstraint
from ..models.record import ValidationError
from ..timeutil import utcnow

logger = logging.getLogger(__name__)

UK_PHONE = re.compile(r"^(\+44|0)[0-9\s\-\(\)]{8,15}$")
UK_POSTCODE = re.compile(r"^[A-Z]{1,2}[0-9][A-Z0-9]? ?[0-9][A-Z]{2}$", re.IGNORECASE)

SUGGESTIONS = {
    "not_null": "Provide a value for this field",
    "unique": "Remove or merge duplicate records",
    "nhs_number": "Provide a valid 10-digit NHS number",
    "valid_date": "Use YYYY-MM-DD format or DD/MM/YYYY",
    "not_future_date": "Check date format and value",
    "age_range": "Check date format and value",
    "postcode": "Use a UK postcode such as M1 1AA",
    "phone": "Use a UK phone number such as 0161 123 4567",
    "max_length": "Shorten the value",
    "one_of": "Use one of the allowed values",
}


def is_empty(value: Any) -> bool:
    """True for None, blank strings and empty collections."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def nhs_checksum_valid(number: str) -> bool:
    """Check a 10-digit NHS number against its modulus 11 check digit."""
    if not re.fullmatch(r"\d{10}", number):
        return False
    digits = [int(d) for d in number]
    total = sum(digit * (10 - index) for index, digit in enumerate(digits[:9]))
    remainder = total % 11
    expected = 0 if remainder == 0 else 11 - remainder
    # A computed check digit of 10 means no valid number exists with this prefix
    return expected != 10 and expected == digits[9]


def validate_nhs_number(value: Any) -> str:
    """
    Validate an NHS number and return it without whitespace.

    Raises:
        ValueError: If the number is malformed or fails the check digit
    """
    cleaned = re.sub(r"\s", "", str(value))
    if not re.fullmatch(r"\d{10}", cleaned):
        raise ValueError("NHS number must be exactly 10 digits")
    if not nhs_checksum_valid(cleaned):
        raise ValueError("Invalid NHS number check digit")
    return cleaned


def normalize_phone(value: Any) -> str:
    """Normalise a UK phone number to +44 form."""
    cleaned = re.sub(r"[\s\-\(\)]", "", str(value))
    if cleaned.startswith("0"):
        return "+44" + cleaned[1:]
    if cleaned.startswith("44"):
        return "+" + cleaned
    return cleaned if cleaned.startswith("+") else "+44" + cleaned


def normalize_postcode(value: Any) -> str:
    """Upper-case a postcode and put the space before the inward code."""
    cleaned = re.sub(r"\s+", " ", str(value).upper()).strip()
    if len(cleaned) >= 5 and " " not in cleaned:
        return cleaned[:-3] + " " + cleaned[-3:]
    return cleaned


class ValidationRules:
    """Field-level checks. Each returns an error message or None."""

    @staticmethod
    def not_null(value: Any, params: Dict[str, Any], today: date) -> Optional[str]:
        if is_empty(value):
            return "Value is required"
        return None

    @staticmethod
    def nhs_number(value: Any, params: Dict[str, Any], today: date) -> Optional[str]:
        try:
            validate_nhs_number(value)
        except ValueError as e:
            return str(e)
        return None

    @staticmethod
    def valid_date(value: Any, params: Dict[str, Any], today: date) -> Optional[str]:
        try:
            parse_date(value)
        except ValueError:
            return "Invalid date format"
        return None

    @staticmethod
    def not_future_date(value: Any, params: Dict[str, Any], today: date) -> Optional[str]:
        try:
            parsed = parse_date(value)
        except ValueError:
            return None  # reported by valid_date
        if parsed > today:
            return "Date cannot be in the future"
        return None

    @staticmethod
    def age_range(value: Any, params: Dict[str, Any], today: date) -> Optional[str]:
        try:
            age = age_on(parse_date(value), today)
        except ValueError:
            return None
        minimum = params.get("min")
        maximum = params.get("max")
        if minimum is not None and age < minimum:
            if minimum == 0:
                return "Birth date cannot be in the future"
            return f"Age {age} is below {minimum} years"
        if maximum is not None and age > maximum:
            return f"Age over {maximum} years detected"
        return None

    @staticmethod
    def postcode(value: Any, params: Dict[str, Any], today: date) -> Optional[str]:
        if not UK_POSTCODE.match(str(value).strip()):
            return "Postcode format may be invalid"
        return None

    @staticmethod
    def phone(value: Any, params: Dict[str, Any], today: date) -> Optional[str]:
        if not UK_PHONE.match(str(value).strip()):
            return "Phone number format may be invalid"
        return None

    @staticmethod
    def max_length(value: Any, params: Dict[str, Any], today: date) -> Optional[str]:
        limit = params.get("max")
        if limit is not None and len(str(value)) > limit:
            return f"Value exceeds max length of {limit}"
        return None

    @staticmethod
    def one_of(value: Any, params: Dict[str, Any], today: date) -> Optional[str]:
        options = params.get("options", [])
        normalized = str(value).strip().lower()
        if options and not any(normalized == o or normalized.startswith(o) for o in options):
            return f"Value '{value}' is not one of: {', '.join(options)}"
        return None


AUTO_FIXES: Dict[str, Callable[[Any], Any]] = {
    "phone": normalize_phone,
    "postcode": normalize_postcode,
}


class ConstraintValidator:
    """
    Evaluates ValidationConstraints against transformed values.

    Uniqueness is tracked across one batch; call ``reset`` between batches
    that should be checked independently.
    """

    def __init__(self, today: Optional[date] = None):
        """
        Initialize the validator.

        Args:
            today: Reference date for age and future-date checks (defaults to the current UTC date)
        """
        self._today = today
        self._checks: Dict[str, Callable] = {
            "not_null": ValidationRules.not_null,
            "nhs_number": ValidationRules.nhs_number,
            "valid_date": ValidationRules.valid_date,
            "not_future_date": ValidationRules.not_future_date,
            "age_range": ValidationRules.age_range,
            "postcode": ValidationRules.postcode,
            "phone": ValidationRules.phone,
            "max_length": ValidationRules.max_length,
            "one_of": ValidationRules.one_of,
        }
        self._seen: Dict[str, Set[str]] = {}

    @property
    def today(self) -> date:
        return self._today or utcnow().date()

    def register_check(self, name: str, func: Callable) -> None:
        """Register a custom check ``func(value, params, today) -> Optional[str]``."""
        self._checks[name] = func

    def reset(self) -> None:
        self._seen = {}

    def check(self, constraint: ValidationConstraint, field: str, value: Any) -> Optional[str]:
        """Return a violation message, or None if the value satisfies the constraint."""
        if constraint.name == "not_null":
            return ValidationRules.not_null(value, constraint.params, self.today)

        # Everything else only applies to present values
        if is_empty(value):
            return None

        if constraint.name == "unique":
            key = str(value).strip().lower()
            seen = self._seen.setdefault(field, set())
            if key in seen:
                return f"Duplicate value '{value}'"
            seen.add(key)
            return None

        check = self._checks.get(constraint.name)
        if check is None:
            return None  # advisory constraint
        return check(value, constraint.params, self.today)

    def evaluate(
        self,
        constraints: Iterable[ValidationConstraint],
        field: str,
        value: Any,
        row: int,
        auto_resolve: bool = False,
    ) -> Tuple[Any, List[ValidationError]]:
        """
        Evaluate all constraints on a field.

        Auto-fixable warnings are corrected when ``auto_resolve`` is set and
        the corrected value passes the same check.

        Returns:
            Tuple of (possibly fixed value, issues)
        """
        issues: List[ValidationError] = []

        for constraint in constraints:
            message = self.check(constraint, field, value)
            if message is None:
                continue

            resolved = False
            if auto_resolve and constraint.auto_fixable and constraint.name in AUTO_FIXES:
                fixed = AUTO_FIXES[constraint.name](value)
                if self.check(constraint, field, fixed) is None:
                    logger.debug(f"Row {row}: auto-resolved {field} {value!r} -> {fixed!r}")
                    value = fixed
                    resolved = True

            issues.append(ValidationError(
                row=row,
                field=field,
                message=message,
                severity=constraint.severity,
                suggestion=SUGGESTIONS.get(constraint.name),
                error_type=constraint.name,
                value=value,
                auto_fixable=constraint.auto_fixable,
                auto_resolved=resolved,
            ))

        return value, issues


# Checks applied to well-known target fields when no rule already validated them
DEFAULT_FIELD_CONSTRAINTS: Dict[str, List[ValidationConstraint]] = {
    "date_of_birth": [
        ValidationConstraint("valid_date", label="Valid date"),
        ValidationConstraint("age_range", params={"min": 0}, label="Age > 0"),
        ValidationConstraint("age_range", severity="warning", params={"max": 120}, label="Age < 120"),
    ],
    "nhs_number": [ValidationConstraint("nhs_number", label="NHS number format")],
    "phone_number": [ValidationConstraint("phone", severity="warning", auto_fixable=True, label="UK phone format")],
    "postcode": [ValidationConstraint("postcode", severity="warning", auto_fixable=True, label="UK postcode format")],
}


class RecordValidator:
    """
    Record-level validation of a transformed row.

    Supports:
    - Required resident identifier
    - Default checks for date of birth, NHS number, phone and postcode
    """

    def __init__(
        self,
        identifier_fields: Optional[List[str]] = None,
        constraint_validator: Optional[ConstraintValidator] = None,
    ):
        self.identifier_fields = identifier_fields or ["resident_id", "patient_id", "client_id"]
        self.constraints = constraint_validator or ConstraintValidator()

    def validate_record(
        self,
        record: Dict[str, Any],
        row: int,
        skip_fields: Optional[Set[str]] = None,
        auto_resolve: bool = False,
    ) -> List[ValidationError]:
        """
        Validate a transformed record.

        Args:
            record: Transformed row (may be modified by auto-resolved fixes)
            row: 1-based row number
            skip_fields: Fields already validated by their transformation rule
            auto_resolve: Apply auto-fixes for fixable warnings

        Returns:
            List of errors and warnings
        """
        skip_fields = skip_fields or set()
        issues: List[ValidationError] = []

        if all(is_empty(record.get(f)) for f in self.identifier_fields):
            issues.append(ValidationError(
                row=row,
                field="identifier",
                message="Resident identifier is required",
                severity="error",
                suggestion="Provide a unique identifier for each resident",
                error_type="required",
            ))

        for field_name, constraints in DEFAULT_FIELD_CONSTRAINTS.items():
            if field_name in skip_fields or is_empty(record.get(field_name)):
                continue
            value, field_issues = self.constraints.evaluate(
                constraints, field_name, record[field_name], row, auto_resolve=auto_resolve
            )
            record[field_name] = value
            issues.extend(field_issues)

        return issues
