"""fellowship_etl.source

Read-side of the import: a typed accessor over one exported row and the
scanner protocol that hands rows out table by table.

Absent columns and unparseable values both come back as None; callers
decide whether the row still carries enough data to be useful.
"""

from __future__ import annotations

import csv
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator, Mapping, Protocol

from fellowship_etl.normalize import (
    parse_bool,
    parse_date,
    parse_datetime,
    parse_decimal,
    parse_int,
    trim,
)


# ---------------------------------------------------------------------------
# SourceRow
# ---------------------------------------------------------------------------

class SourceRow:
    """Typed, null-safe view over a single exported row."""

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, Any]) -> None:
        self._values = values

    def __getitem__(self, column: str) -> Any:
        return self._values.get(column)

    def __repr__(self) -> str:
        return f"SourceRow({dict(self._values)!r})"

    def get(self, column: str) -> Any:
        return self._values.get(column)

    def as_dict(self) -> dict[str, str]:
        return {k: "" if v is None else str(v) for k, v in self._values.items()}

    def get_str(self, column: str) -> str | None:
        value = self._values.get(column)
        if value is None:
            return None
        return trim(str(value))

    def get_int(self, column: str) -> int | None:
        value = self._values.get(column)
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        return parse_int(str(value))

    def get_decimal(self, column: str) -> Decimal | None:
        value = self._values.get(column)
        if value is None:
            return None
        if isinstance(value, Decimal):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return Decimal(str(value))
        return parse_decimal(str(value))

    def get_datetime(self, column: str) -> datetime | None:
        value = self._values.get(column)
        if value is None:
            return None
        if isinstance(value, datetime):
            return value
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day)
        return parse_datetime(str(value))

    def get_date(self, column: str) -> date | None:
        value = self._values.get(column)
        if value is None:
            return None
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        return parse_date(str(value))

    def get_bool(self, column: str) -> bool | None:
        value = self._values.get(column)
        if value is None:
            return None
        if isinstance(value, bool):
            return value
        return parse_bool(str(value))


# ---------------------------------------------------------------------------
# Scanner protocol
# ---------------------------------------------------------------------------

class SourceScanner(Protocol):
    """Hands out the exported tables.

    scan() is lazy and finite; iterating a table again requires a new call.
    """

    def table_names(self) -> list[str]:
        ...

    def scan(self, table: str) -> Iterator[SourceRow]:
        ...

    def row_count(self, table: str) -> int:
        ...


class CsvTableScanner:
    """Reads one <Table>.csv file per exported table from a directory."""

    def __init__(self, directory: Path) -> None:
        self._dir = directory

    def _path(self, table: str) -> Path:
        return self._dir / f"{table}.csv"

    def table_names(self) -> list[str]:
        return sorted(p.stem for p in self._dir.glob("*.csv"))

    def scan(self, table: str) -> Iterator[SourceRow]:
        with self._path(table).open(newline="", encoding="utf-8-sig") as fh:
            reader = csv.DictReader(fh)
            for raw in reader:
                yield SourceRow({k.strip(): v for k, v in raw.items() if k})

    def row_count(self, table: str) -> int:
        with self._path(table).open(newline="", encoding="utf-8-sig") as fh:
            return sum(1 for _ in csv.DictReader(fh))


class ListScanner:
    """In-memory scanner over lists of dicts, keyed by table name."""

    def __init__(self, tables: Mapping[str, list[Mapping[str, Any]]]) -> None:
        self._tables = tables

    def table_names(self) -> list[str]:
        return sorted(self._tables)

    def scan(self, table: str) -> Iterator[SourceRow]:
        for values in self._tables.get(table, []):
            yield SourceRow(values)

    def row_count(self, table: str) -> int:
        return len(self._tables.get(table, []))
