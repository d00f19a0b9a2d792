"""fellowship_etl.context

The per-run state handed to every mapping routine.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date

from fellowship_etl.batch import BatchWriter, ProgressSink
from fellowship_etl.campus import CampusDirectory
from fellowship_etl.config import ImportConfig
from fellowship_etl.hierarchy import HierarchySynthesizer
from fellowship_etl.occurrences import OccurrenceResolver
from fellowship_etl.references import ReferenceSet
from fellowship_etl.shared import RejectWriter, RunCounters, TableResult
from fellowship_etl.source import SourceRow

log = logging.getLogger(__name__)


@dataclass
class ImportContext:
    refs: ReferenceSet
    writer: BatchWriter
    hierarchy: HierarchySynthesizer
    occurrences: OccurrenceResolver
    campuses: CampusDirectory
    progress: ProgressSink
    counters: RunCounters
    config: ImportConfig = field(default_factory=ImportConfig)
    rejects: RejectWriter | None = None
    today: date = field(default_factory=date.today)

    def skip(self, result: TableResult, row: SourceRow, reason: str) -> None:
        """Count, log and (optionally) write a rejected row."""
        result.skipped += 1
        log.info("%s: row skipped: %s", result.table, reason)
        if self.rejects is not None:
            self.rejects.write(result.table, row.as_dict(), reason)
