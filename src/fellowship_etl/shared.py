"""fellowship_etl.shared

Shared utilities used by the orchestrator, every mapping routine and the
CLI.  Includes the exception taxonomy, RejectWriter, RunCounters and
report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class FellowshipImportError(Exception):
    """Base class for run-level failures."""


class ReferenceLoadError(FellowshipImportError):
    """Raised when the destination store cannot be read at run start."""


class MissingDependencyError(FellowshipImportError):
    """Raised when the run has no minimum viable entity set to build on."""


class PersistenceError(FellowshipImportError):
    """Raised when a chunk flush or an immediate save fails.

    Chunks flushed before the failure stay committed.
    """


class RunCancelledError(FellowshipImportError):
    """Raised at a chunk boundary after cancellation was requested."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for skipped rows.

    Each table gets its own header; a new header is written whenever the
    table changes.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self._table: str | None = None

    def write(self, table: str, row: dict[str, str], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
        if self._writer is None or table != self._table:
            fieldnames = ["_table"] + list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
            self._table = table
        out = {"_table": table, **row, "_reject_reason": reason}
        self._writer.writerow(out)
        self._fh.flush()

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class TableResult:
    table: str
    rows_read: int = 0
    imported: int = 0
    skipped: int = 0
    skipped_group_keys: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "rows_read": self.rows_read,
            "imported": self.imported,
            "skipped": self.skipped,
            "skipped_group_keys": list(self.skipped_group_keys),
        }


@dataclass
class RunCounters:
    tables: dict[str, TableResult] = field(default_factory=dict)
    chunks_flushed: int = 0
    records_written: int = 0
    immediate_saves: int = 0
    groups_created: int = 0
    serving_groups_cloned: int = 0
    occurrences_created: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def imported(self) -> int:
        return sum(t.imported for t in self.tables.values())

    @property
    def skipped(self) -> int:
        return sum(t.skipped for t in self.tables.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "imported": self.imported,
            "skipped": self.skipped,
            "chunks_flushed": self.chunks_flushed,
            "records_written": self.records_written,
            "immediate_saves": self.immediate_saves,
            "groups_created": self.groups_created,
            "serving_groups_cloned": self.serving_groups_cloned,
            "occurrences_created": self.occurrences_created,
            "tables": [t.to_dict() for t in self.tables.values()],
            "warnings": self.warnings[:50],
        }


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

def build_import_report(
    counters: RunCounters,
    state: str,
    dry_run: bool = False,
) -> str:
    lines = [
        "=" * 60,
        "FellowshipOne Import Report",
        f"  state:   {state}",
        f"  dry_run: {dry_run}",
        "=" * 60,
    ]
    for result in counters.tables.values():
        lines.append(
            f"  {result.table:<24} imported: {result.imported:>7}  "
            f"skipped: {result.skipped:>7}"
        )
        if result.skipped_group_keys:
            lines.append(
                f"    skipped group keys: {', '.join(result.skipped_group_keys)}"
            )
    lines += [
        "-" * 60,
        f"  total imported:   {counters.imported}",
        f"  total skipped:    {counters.skipped}",
        f"  chunks flushed:   {counters.chunks_flushed}",
        f"  groups created:   {counters.groups_created}",
        f"  serving clones:   {counters.serving_groups_cloned}",
        f"  occurrences:      {counters.occurrences_created}",
    ]
    if counters.warnings:
        lines.append(f"\nWarnings ({len(counters.warnings)}):")
        for w in counters.warnings[:20]:
            lines.append(f"  {w}")
        if len(counters.warnings) > 20:
            lines.append(f"  ... and {len(counters.warnings) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)


def write_run_report(
    run_id: str,
    started_at: str,
    state: str,
    dry_run: bool,
    source_dir: str,
    counters: RunCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "state": state,
        "dry_run": dry_run,
        "source_dir": source_dir,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
