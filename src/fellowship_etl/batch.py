"""fellowship_etl.batch

Batch Writer / Checkpoint Controller and progress reporting.

New entities are staged per kind and written in chunks.  Each chunk is
one transaction: a failing chunk aborts the run with PersistenceError,
while every earlier chunk stays committed.  Because mapping routines look
entities up by foreign key before creating them, re-running the same
export after a failure only writes what is still missing.

Progress for a table of N rows is reported once per ceil(N / 100)
completed items, so a table always reports at most ~100 percentage lines.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from typing import Any, Callable, Protocol

import click

from fellowship_etl.shared import PersistenceError, RunCancelledError, RunCounters
from fellowship_etl.store import DestinationStore

log = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 100

# Kinds are written in this order inside a chunk so that staged parents get
# their ids before staged children reference them.
WRITE_ORDER = (
    "group_type",
    "group_type_role",
    "location",
    "schedule",
    "group",
    "family",
    "group_member",
    "occurrence",
    "attendance",
    "phone_number",
    "person_email",
    "attribute_value",
    "person_relationship",
    "family_address",
    "financial_account",
    "financial_batch",
    "financial_transaction",
)


def _write_rank(kind: str) -> int:
    return WRITE_ORDER.index(kind) if kind in WRITE_ORDER else len(WRITE_ORDER)


# ---------------------------------------------------------------------------
# Progress sinks
# ---------------------------------------------------------------------------

class ProgressSink(Protocol):
    """Receives progress; implementations never raise."""

    def report(self, percent: int, message: str) -> None:
        ...

    def report_tick(self) -> None:
        ...


class EchoProgressSink:
    """click.echo progress lines tagged with the run id."""

    def __init__(self, run_id: str) -> None:
        self._run_id = run_id
        self._started = time.monotonic()

    def _emit(self, line: str) -> None:
        try:
            click.echo(f"[{self._run_id}] {line}")
        except OSError as exc:
            log.warning("progress output failed: %s", exc)

    def report(self, percent: int, message: str) -> None:
        self._emit(message)

    def report_tick(self) -> None:
        self._emit(f"chunk committed ({time.monotonic() - self._started:.1f}s elapsed)")


class RecordingProgressSink:
    """Collects progress in memory (for unit tests)."""

    def __init__(self) -> None:
        self.reports: list[tuple[int, str]] = []
        self.ticks = 0

    def report(self, percent: int, message: str) -> None:
        self.reports.append((percent, message))

    def report_tick(self) -> None:
        self.ticks += 1

    @property
    def messages(self) -> list[str]:
        return [m for _, m in self.reports]


class TableProgress:
    """Start/percent/finish messages for one source table."""

    def __init__(self, sink: ProgressSink, noun: str, total: int, existing: int = 0) -> None:
        self._sink = sink
        self.noun = noun
        self.total = total
        self.existing = existing
        self.every = max(1, (total - 1) // 100 + 1)

    def start(self) -> None:
        self._sink.report(
            0,
            f"Verifying {self.noun} import ({self.total:,} found, "
            f"{self.existing:,} already exist).",
        )

    def step(self, completed: int) -> None:
        if completed > 0 and completed % self.every == 0:
            percent = completed // self.every
            self._sink.report(
                percent, f"{completed:,} {self.noun} imported ({percent}% complete)."
            )

    def finish(self, completed: int) -> None:
        self._sink.report(100, f"Finished {self.noun} import: {completed:,} imported.")


# ---------------------------------------------------------------------------
# BatchWriter
# ---------------------------------------------------------------------------

class BatchWriter:
    """Stages entities per kind and flushes them in chunks.

    Listeners registered with on_flushed(kind, fn) receive each written
    list after its chunk commits; mapping routines use this to put newly
    assigned ids into the ReferenceSet.
    """

    def __init__(
        self,
        store: DestinationStore,
        progress: ProgressSink,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        counters: RunCounters | None = None,
        should_cancel: Callable[[], bool] | None = None,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self._store = store
        self._progress = progress
        self.chunk_size = chunk_size
        self._counters = counters if counters is not None else RunCounters()
        self._should_cancel = should_cancel
        self._staged: dict[str, list[Any]] = {}
        self._listeners: dict[str, list[Callable[[list[Any]], None]]] = defaultdict(list)
        self.flush_count = 0

    def stage(self, entity: Any) -> None:
        self._staged.setdefault(entity.kind, []).append(entity)

    def pending(self, kind: str | None = None) -> int:
        if kind is not None:
            return len(self._staged.get(kind, ()))
        return sum(len(items) for items in self._staged.values())

    def on_flushed(self, kind: str, callback: Callable[[list[Any]], None]) -> None:
        self._listeners[kind].append(callback)

    def clear_listeners(self) -> None:
        self._listeners.clear()

    def maybe_flush(self, completed: int, chunk_size: int | None = None) -> bool:
        """Flush when completed lands on a chunk boundary and work is staged."""
        size = chunk_size or self.chunk_size
        if completed % size != 0 or not self.pending():
            return False
        self.flush()
        return True

    def flush(self) -> int:
        """Write everything staged as one chunk; returns records written."""
        if not self.pending():
            return 0
        staged, self._staged = self._staged, {}
        batches = {k: staged[k] for k in sorted(staged, key=_write_rank)}
        try:
            with self._store.transaction():
                for kind, entities in batches.items():
                    self._store.upsert_batch(kind, entities)
        except Exception as exc:
            kinds = ", ".join(f"{k}={len(v)}" for k, v in batches.items())
            raise PersistenceError(f"chunk flush failed ({kinds}): {exc}") from exc

        written = sum(len(v) for v in batches.values())
        self.flush_count += 1
        self._counters.chunks_flushed += 1
        self._counters.records_written += written
        for kind, entities in batches.items():
            for callback in self._listeners.get(kind, ()):
                callback(entities)

        self._store.recycle()
        self._progress.report_tick()
        log.debug("chunk %d flushed: %d records", self.flush_count, written)

        if self._should_cancel is not None and self._should_cancel():
            raise RunCancelledError(f"cancelled after chunk {self.flush_count}")
        return written

    def save_now(self, entity: Any) -> None:
        """Write one entity immediately; used when its id is needed right away."""
        try:
            self._store.insert(entity)
        except Exception as exc:
            raise PersistenceError(f"immediate save of {entity.kind} failed: {exc}") from exc
        self._counters.immediate_saves += 1
