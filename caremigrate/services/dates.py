"""Date parsing for legacy care records.

UK systems write dates day-first, so ``15/03/1940`` is 15 March. Parsers
are tried in a fixed order: ISO 8601, DD/MM/YYYY, DD-MM-YYYY, D/M/YYYY,
then a day-first free-text parse.
"""

import re
from datetime import date, datetime
from typing import Any, Optional

from dateutil import parser as date_parser

ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}")
DMY_SLASH = re.compile(r"^(\d{2})/(\d{2})/(\d{4})$")
DMY_DASH = re.compile(r"^(\d{2})-(\d{2})-(\d{4})$")
DMY_SHORT = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")

FORMAT_PATTERNS = [
    ("YYYY-MM-DD", ISO_DATE),
    ("DD/MM/YYYY", re.compile(r"^\d{2}/\d{2}/\d{4}")),
    ("DD-MM-YYYY", re.compile(r"^\d{2}-\d{2}-\d{4}")),
    ("D/M/YYYY", re.compile(r"^\d{1,2}/\d{1,2}/\d{4}")),
]


def parse_date(value: Any) -> date:
    """
    Parse a date value from a legacy system.

    Args:
        value: A date, datetime or string

    Returns:
        The parsed calendar date

    Raises:
        ValueError: If the value is not a recognisable date
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if value is None:
        raise ValueError("No date value")

    text = str(value).strip()
    if not text:
        raise ValueError("No date value")

    if ISO_DATE.match(text):
        try:
            return date_parser.isoparse(text).date()
        except ValueError as e:
            raise ValueError(f"Invalid date format: {text} ({e})")

    for pattern in (DMY_SLASH, DMY_DASH, DMY_SHORT):
        match = pattern.match(text)
        if match:
            day, month, year = (int(part) for part in match.groups())
            try:
                return date(year, month, day)
            except ValueError as e:
                raise ValueError(f"Invalid date format: {text} ({e})")

    try:
        return date_parser.parse(text, dayfirst=True).date()
    except (ValueError, OverflowError) as e:
        raise ValueError(f"Invalid date format: {text}") from e


def try_parse_date(value: Any) -> Optional[date]:
    try:
        return parse_date(value)
    except ValueError:
        return None


def detect_date_format(value: Any) -> str:
    """Name the textual format of a date value, or 'unknown'."""
    if isinstance(value, (date, datetime)):
        return "YYYY-MM-DD"
    text = str(value).strip()
    for name, pattern in FORMAT_PATTERNS:
        if pattern.match(text):
            return name
    return "unknown"


def age_on(birth: date, today: date) -> int:
    """Whole years between a birth date and ``today``; negative for future dates."""
    years = today.year - birth.year
    if (today.month, today.day) < (birth.month, birth.day):
        years -= 1
    return years
