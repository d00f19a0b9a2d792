"""fellowship_etl.config

YAML import settings.

Usage:
    from pathlib import Path
    from fellowship_etl.config import load_import_config

    config = load_import_config(Path("config/import.example.yml"))
    config = config.with_overrides(chunk_size=250)
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from fellowship_etl.batch import DEFAULT_CHUNK_SIZE

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

KNOWN_KEYS = frozenset({
    "chunk_size",
    "tables",
    "exclude_tables",
    "serving_marker",
    "delete_marker",
})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ImportConfigValidationError(ValueError):
    """Raised when an import config file fails schema validation."""


# ---------------------------------------------------------------------------
# ImportConfig
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ImportConfig:
    chunk_size: int = DEFAULT_CHUNK_SIZE
    tables: tuple[str, ...] = ()
    exclude_tables: tuple[str, ...] = ()
    serving_marker: str = "SERV:"
    delete_marker: str = "Delete"
    source_path: str | None = field(default=None, compare=False)

    def selects(self, table: str) -> bool:
        """True when the table passes the include/exclude filters."""
        if self.tables and table not in self.tables:
            return False
        return table not in self.exclude_tables

    def with_overrides(self, **values: Any) -> "ImportConfig":
        """Copy with every non-empty override applied (CLI beats YAML)."""
        changes = {k: v for k, v in values.items() if v not in (None, (), [])}
        if "tables" in changes:
            changes["tables"] = tuple(changes["tables"])
        updated = dataclasses.replace(self, **changes)
        validate_import_config(dataclasses.asdict(updated))
        return updated


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_import_config(yaml_path: Path | None) -> ImportConfig:
    """Load and validate an ImportConfig; None gives the defaults.

    Raises:
        ImportConfigValidationError: If a key is unknown or a value invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    if yaml_path is None:
        return ImportConfig()
    raw = yaml_path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw)
    if data is None:
        data = {}
    validate_import_config(data)
    return ImportConfig(
        chunk_size=int(data.get("chunk_size", DEFAULT_CHUNK_SIZE)),
        tables=tuple(data.get("tables") or ()),
        exclude_tables=tuple(data.get("exclude_tables") or ()),
        serving_marker=str(data.get("serving_marker", "SERV:")),
        delete_marker=str(data.get("delete_marker", "Delete")),
        source_path=str(yaml_path),
    )


def validate_import_config(data: dict[str, Any]) -> None:
    """Raise ImportConfigValidationError if data does not match the schema."""
    if not isinstance(data, dict):
        raise ImportConfigValidationError("YAML root must be a mapping.")

    unknown = set(data.keys()) - KNOWN_KEYS - {"source_path"}
    if unknown:
        raise ImportConfigValidationError(f"Unknown config keys: {sorted(unknown)}")

    chunk_size = data.get("chunk_size", DEFAULT_CHUNK_SIZE)
    if isinstance(chunk_size, bool) or not isinstance(chunk_size, int) or chunk_size <= 0:
        raise ImportConfigValidationError(
            f"'chunk_size' must be a positive integer, got {chunk_size!r}."
        )

    for key in ("tables", "exclude_tables"):
        value = data.get(key)
        if value is None:
            continue
        if not isinstance(value, (list, tuple)) or not all(isinstance(t, str) for t in value):
            raise ImportConfigValidationError(f"'{key}' must be a list of table names.")

    for key in ("serving_marker", "delete_marker"):
        value = data.get(key)
        if value is not None and (not isinstance(value, str) or not value.strip()):
            raise ImportConfigValidationError(f"'{key}' must be a non-empty string.")
