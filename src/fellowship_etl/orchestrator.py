"""fellowship_etl.orchestrator

Import Orchestrator: loads references once, orders the available source
tables so structural tables run before the tables that reference them,
dispatches each table to its mapping routine and flushes after every
table.

State machine:
    IDLE → LOADING_REFERENCES → MAPPING ⇄ FLUSHING → COMPLETED
    any state → ABORTED on a fatal error or cancellation

Usage:
    orchestrator = ImportOrchestrator(store, CsvTableScanner(Path(src)), progress=sink)
    counters = orchestrator.run()
"""

from __future__ import annotations

import logging
from datetime import date
from enum import Enum
from typing import Callable, Iterable

from fellowship_etl.batch import BatchWriter, ProgressSink, RecordingProgressSink
from fellowship_etl.campus import CampusDirectory
from fellowship_etl.config import ImportConfig
from fellowship_etl.context import ImportContext
from fellowship_etl.hierarchy import HierarchySynthesizer
from fellowship_etl.map_assignments import map_activity_assignment, map_staffing_assignment
from fellowship_etl.map_attendance import map_attendance, map_group_attendance
from fellowship_etl.map_financial import map_batch, map_contribution
from fellowship_etl.map_groups import (
    map_activity_group,
    map_activity_ministry,
    map_activity_schedule,
    map_group_schedule,
    map_home_groups,
    map_rlc,
)
from fellowship_etl.map_people import (
    map_communication,
    map_company,
    map_family_address,
    map_person,
)
from fellowship_etl.models import Occurrence
from fellowship_etl.occurrences import OccurrenceResolver
from fellowship_etl.references import ReferenceSet, load_references
from fellowship_etl.shared import RejectWriter, RunCancelledError, RunCounters, TableResult
from fellowship_etl.source import SourceRow, SourceScanner
from fellowship_etl.store import DestinationStore

log = logging.getLogger(__name__)

Mapper = Callable[[ImportContext, Iterable[SourceRow], int], TableResult]


class RunState(Enum):
    IDLE = "idle"
    LOADING_REFERENCES = "loading_references"
    MAPPING = "mapping"
    FLUSHING = "flushing"
    COMPLETED = "completed"
    ABORTED = "aborted"


# Later entries are imported first: people before their addresses and
# companies, then batches, and the group structure top-down before home
# groups.
TABLE_DEPENDENCIES = [
    "ContactFormData",
    "Groups",
    "GroupsDescription",
    "RLC",
    "Activity_Group",
    "ActivityMinistry",
    "Activity_Schedule",
    "Batch",
    "Users",
    "Company",
    "Household_Address",
    "Individual_Household",
]

MAPPERS: dict[str, Mapper] = {
    "Individual_Household": map_person,
    "Company": map_company,
    "Household_Address": map_family_address,
    "Communication": map_communication,
    "Batch": map_batch,
    "Contribution": map_contribution,
    "Activity_Schedule": map_activity_schedule,
    "ActivityMinistry": map_activity_ministry,
    "Activity_Group": map_activity_group,
    "RLC": map_rlc,
    "GroupsDescription": map_group_schedule,
    "Groups": map_home_groups,
    "ActivityAssignment": map_activity_assignment,
    "Staffing_Assignment": map_staffing_assignment,
    "Attendance": map_attendance,
    "GroupsAttendance": map_group_attendance,
}


def order_tables(names: Iterable[str]) -> list[str]:
    """Dependency tables first (reverse list order), then the rest by name."""
    names = list(dict.fromkeys(names))
    ranked = sorted(
        (n for n in names if n in TABLE_DEPENDENCIES),
        key=TABLE_DEPENDENCIES.index,
        reverse=True,
    )
    return ranked + sorted(n for n in names if n not in TABLE_DEPENDENCIES)


class ImportOrchestrator:
    def __init__(
        self,
        store: DestinationStore,
        scanner: SourceScanner,
        config: ImportConfig | None = None,
        progress: ProgressSink | None = None,
        rejects: RejectWriter | None = None,
        counters: RunCounters | None = None,
        today: date | None = None,
    ) -> None:
        self._store = store
        self._scanner = scanner
        self._config = config or ImportConfig()
        self._progress = progress if progress is not None else RecordingProgressSink()
        self._rejects = rejects
        self.counters = counters if counters is not None else RunCounters()
        self._today = today or date.today()
        self._state = RunState.IDLE
        self._cancel_requested = False
        self._refs: ReferenceSet | None = None

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def refs(self) -> ReferenceSet | None:
        return self._refs

    def request_cancel(self) -> None:
        """Stop at the next chunk boundary; committed chunks stay committed."""
        self._cancel_requested = True

    def _set_state(self, state: RunState) -> None:
        log.debug("run state %s -> %s", self._state.value, state.value)
        self._state = state

    def _build_context(self, refs: ReferenceSet) -> ImportContext:
        campuses = CampusDirectory(refs.campuses)
        writer = BatchWriter(
            self._store,
            self._progress,
            chunk_size=self._config.chunk_size,
            counters=self.counters,
            should_cancel=lambda: self._cancel_requested,
        )

        def add_occurrence(occ: Occurrence) -> None:
            writer.save_now(occ)
            self.counters.occurrences_created += 1

        return ImportContext(
            refs=refs,
            writer=writer,
            hierarchy=HierarchySynthesizer(
                refs, writer, campuses, self.counters, self._config.serving_marker
            ),
            occurrences=OccurrenceResolver(add_occurrence, refs.occurrences),
            campuses=campuses,
            progress=self._progress,
            counters=self.counters,
            config=self._config,
            rejects=self._rejects,
            today=self._today,
        )

    def run(self) -> RunCounters:
        """Import every selected table; raises FellowshipImportError subclasses on abort."""
        if self._state is not RunState.IDLE:
            raise RuntimeError(f"orchestrator already used (state={self._state.value})")
        try:
            self._set_state(RunState.LOADING_REFERENCES)
            tables = [t for t in self._scanner.table_names() if self._config.selects(t)]
            self._refs = load_references(self._store, tables)
            ctx = self._build_context(self._refs)

            self._set_state(RunState.MAPPING)
            for table in order_tables(tables):
                mapper = MAPPERS.get(table)
                if mapper is None:
                    log.info("table %s has no mapping routine; ignored", table)
                    continue
                if self._cancel_requested:
                    raise RunCancelledError(f"cancelled before table {table}")

                log.info("mapping table %s", table)
                result = mapper(ctx, self._scanner.scan(table), self._scanner.row_count(table))
                self.counters.tables[table] = result

                self._set_state(RunState.FLUSHING)
                ctx.writer.flush()
                ctx.writer.clear_listeners()
                self._set_state(RunState.MAPPING)
                log.info(
                    "table %s done: read=%d imported=%d skipped=%d",
                    table, result.rows_read, result.imported, result.skipped,
                )
        except BaseException:
            self._set_state(RunState.ABORTED)
            raise
        self._set_state(RunState.COMPLETED)
        return self.counters
