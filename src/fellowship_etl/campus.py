"""fellowship_etl.campus

Campus tokens embedded in exported names.

FellowshipOne has no campus column on ministries, activities, rooms or
group types; churches encode the campus in the name instead, as a prefix
("MAIN - Kids Church") or a suffix ("Small Groups - North").  A token
matches a campus name or short code case-insensitively and must be
followed (prefix) or preceded (suffix) by whitespace, a delimiter or the
end of the value.  Names are only rewritten when they contain a delimiter.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable

from fellowship_etl.models import Campus
from fellowship_etl.normalize import title_case, trim

DELIMITERS = ("*", "-", "|", ":")


class Direction(Enum):
    BEGINS = "begins"
    ENDS = "ends"


def _bounded(rest: str) -> bool:
    return rest == "" or rest[0].isspace() or rest[0] in DELIMITERS


def starts_with_token(value: str, token: str | None) -> bool:
    if not token or len(value) < len(token):
        return False
    if value[: len(token)].lower() != token.lower():
        return False
    return _bounded(value[len(token):])


def ends_with_token(value: str, token: str | None) -> bool:
    if not token or len(value) < len(token):
        return False
    if value[len(value) - len(token):].lower() != token.lower():
        return False
    return _bounded(value[: len(value) - len(token)][::-1])


def has_delimiter(value: str | None) -> bool:
    return bool(value) and any(d in value for d in DELIMITERS)


class CampusDirectory:
    """Campus lookups over the destination's campus list."""

    def __init__(self, campuses: Iterable[Campus]) -> None:
        self._campuses = list(campuses)

    def __len__(self) -> int:
        return len(self._campuses)

    def by_id(self, campus_id: int | None) -> Campus | None:
        for campus in self._campuses:
            if campus.id == campus_id:
                return campus
        return None

    def by_name(self, value: str | None) -> Campus | None:
        """Exact (case-insensitive) match on name or short code."""
        v = trim(value)
        if v is None:
            return None
        v = v.lower()
        for campus in self._campuses:
            if campus.name.lower() == v or (campus.short_code or "").lower() == v:
                return campus
        return None

    def find(
        self,
        value: str | None,
        direction: Direction = Direction.BEGINS,
        include_name: bool = True,
    ) -> Campus | None:
        """Campus whose token opens (or closes) value; the longest token wins."""
        v = trim(value)
        if v is None:
            return None
        matcher = starts_with_token if direction is Direction.BEGINS else ends_with_token
        best: tuple[int, Campus] | None = None
        for campus in self._campuses:
            tokens = [campus.short_code]
            if include_name:
                tokens.append(campus.name)
            for token in tokens:
                if token and matcher(v, token):
                    if best is None or len(token) > best[0]:
                        best = (len(token), campus)
        return best[1] if best else None

    def extract(
        self,
        value: str | None,
        direction: Direction = Direction.BEGINS,
    ) -> tuple[str | None, Campus | None]:
        """Return (name without campus token, campus).

        Without a matching campus the name comes back unchanged.
        """
        v = trim(value)
        campus = self.find(v, direction)
        if campus is None or not has_delimiter(v):
            return v, campus
        if direction is Direction.BEGINS:
            return strip_prefix(v, campus), campus
        return strip_suffix(v, campus), campus


def _tokens(campus: Campus) -> list[str]:
    return sorted(filter(None, (campus.name, campus.short_code)), key=len, reverse=True)


def strip_prefix(value: str, campus: Campus) -> str:
    """Drop the leading campus token and the delimiter that follows it.

    "MAIN - kids church" → "Kids Church"
    """
    v = value.strip()
    for token in _tokens(campus):
        if starts_with_token(v, token):
            v = v[len(token):].lstrip()
            while v and v[0] in DELIMITERS:
                v = v[1:].lstrip()
            break
    return title_case(v) or value


def strip_suffix(value: str, campus: Campus) -> str:
    """Drop the trailing campus token and the delimiter before it.

    "Small Groups - North" → "Small Groups"
    """
    v = value.strip()
    for token in _tokens(campus):
        if ends_with_token(v, token):
            v = v[: len(v) - len(token)].rstrip()
            while v and v[-1] in DELIMITERS:
                v = v[:-1].rstrip()
            break
    return title_case(v) or value
