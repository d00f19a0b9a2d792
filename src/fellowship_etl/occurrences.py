"""fellowship_etl.occurrences

Occurrence Resolver: one attendance occurrence per
(group, location, schedule, day), created on first use and reused after.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Callable

from fellowship_etl.models import Occurrence

log = logging.getLogger(__name__)


def _token(value: int | None) -> str:
    return "" if value is None else str(value)


def occurrence_key(
    group_id: int | None,
    location_id: int | None,
    schedule_id: int | None,
    occurred_on: date | datetime,
) -> str:
    """Composite cache key; None ids become empty tokens, time is dropped."""
    if isinstance(occurred_on, datetime):
        occurred_on = occurred_on.date()
    return "|".join((
        _token(group_id),
        _token(location_id),
        _token(schedule_id),
        occurred_on.isoformat(),
    ))


class OccurrenceResolver:
    """Write-through occurrence cache.

    add_occurrence persists a new Occurrence (assigning its id); it is
    called at most once per composite key per run.
    """

    def __init__(
        self,
        add_occurrence: Callable[[Occurrence], None],
        existing: dict[str, int] | None = None,
    ) -> None:
        self._add = add_occurrence
        self._cache: dict[str, int] = existing if existing is not None else {}
        self.created = 0

    def __len__(self) -> int:
        return len(self._cache)

    def resolve_or_create(
        self,
        group_id: int | None,
        occurred_at: date | datetime,
        schedule_id: int | None,
        location_id: int | None = None,
    ) -> int:
        key = occurrence_key(group_id, location_id, schedule_id, occurred_at)
        occurrence_id = self._cache.get(key)
        if occurrence_id is not None:
            return occurrence_id

        occurred_on = occurred_at.date() if isinstance(occurred_at, datetime) else occurred_at
        occ = Occurrence(
            group_id=group_id,
            location_id=location_id,
            schedule_id=schedule_id,
            occurred_on=occurred_on,
        )
        self._add(occ)
        if occ.id is None:
            raise ValueError(f"occurrence {key} was not assigned an id")
        self._cache[key] = occ.id
        self.created += 1
        log.debug("occurrence created: %s -> %d", key, occ.id)
        return occ.id
