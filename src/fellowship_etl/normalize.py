"""Normalization functions for FellowshipOne export ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

_DATETIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
)

_TRUE_VALUES = frozenset({"true", "1", "yes", "y", "t"})
_FALSE_VALUES = frozenset({"false", "0", "no", "n", "f"})
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


def remove_whitespace(value: str | None) -> str:
    """Drop every whitespace character.  None becomes ''."""
    if value is None:
        return ""
    return re.sub(r"\s+", "", value)


# ---------------------------------------------------------------------------
# Rule 3: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: str | None) -> str | None:
    """Lowercase and trim an email address; None unless it looks like local@domain.tld."""
    v = trim(value)
    if v is None or not _EMAIL_RE.match(v):
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 4: parse_phone
# ---------------------------------------------------------------------------

def parse_phone(value: str | None) -> tuple[str, str, str | None] | None:
    """Split a free-form phone value into (country_code, number, extension).

    Extensions follow an 'x' or 'ext' marker.  An 11-digit number with a
    leading 1 is treated as country code 1.  Fewer than 7 digits → None.
    """
    v = trim(value)
    if v is None:
        return None
    extension = None
    parts = re.split(r"(?i)\s*(?:ext\.?|x)\s*", v, maxsplit=1)
    if len(parts) == 2:
        ext_digits = re.sub(r"\D", "", parts[1])
        extension = ext_digits or None
    digits = re.sub(r"\D", "", parts[0])
    if len(digits) < 7:
        return None
    if len(digits) == 11 and digits.startswith("1"):
        return "1", digits[1:], extension
    return "1", digits, extension


# ---------------------------------------------------------------------------
# Rule 5: title_case
# ---------------------------------------------------------------------------

def title_case(value: str | None) -> str | None:
    """Capitalize each word, leaving fully upper-case words (acronyms) alone.

    "kids CHECK-IN room" → "Kids CHECK-IN Room"
    """
    v = trim(value)
    if v is None:
        return None

    def _word(match: re.Match[str]) -> str:
        word = match.group(0)
        if word.isupper():
            return word
        return word[0].upper() + word[1:].lower()

    return re.sub(r"[^\W_]+(?:'[^\W_]+)?", _word, v)


# ---------------------------------------------------------------------------
# Rule 6: parse_datetime / parse_date
# ---------------------------------------------------------------------------

def parse_datetime(value: str | None) -> datetime | None:
    """Parse the export's date/time spellings; unparseable values → None."""
    v = trim(value)
    if v is None:
        return None
    try:
        return datetime.fromisoformat(v)
    except ValueError:
        pass
    for fmt in _DATETIME_FORMATS:
        try:
            return datetime.strptime(v, fmt)
        except ValueError:
            continue
    return None


def parse_date(value: str | None) -> date | None:
    dt = parse_datetime(value)
    return dt.date() if dt else None


# ---------------------------------------------------------------------------
# Rule 7: numeric / boolean
# ---------------------------------------------------------------------------

def parse_int(value: str | None) -> int | None:
    """Parse an integer, tolerating a trailing '.0' from spreadsheet exports."""
    v = trim(value)
    if v is None:
        return None
    try:
        return int(v)
    except ValueError:
        pass
    try:
        d = Decimal(v.replace(",", ""))
    except InvalidOperation:
        return None
    if not d.is_finite() or d != d.to_integral_value():
        return None
    return int(d)


def parse_decimal(value: str | None) -> Decimal | None:
    """Parse a money/number value, stripping '$' and thousands separators."""
    v = trim(value)
    if v is None:
        return None
    cleaned = v.replace("$", "").replace(",", "")
    try:
        d = Decimal(cleaned)
    except InvalidOperation:
        return None
    return d if d.is_finite() else None


def parse_bool(value: str | None) -> bool | None:
    v = trim(value)
    if v is None:
        return None
    v = v.lower()
    if v in _TRUE_VALUES:
        return True
    if v in _FALSE_VALUES:
        return False
    return None


# ---------------------------------------------------------------------------
# Rule 8: age
# ---------------------------------------------------------------------------

def age_on(birth_date: date | None, today: date) -> int | None:
    """Whole years between birth_date and today; None without a birth date."""
    if birth_date is None:
        return None
    years = today.year - birth_date.year
    if (today.month, today.day) < (birth_date.month, birth_date.day):
        years -= 1
    return years
