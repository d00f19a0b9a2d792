"""Unit tests for fellowship_etl.occurrences."""

from datetime import date, datetime

import pytest

from fellowship_etl.occurrences import OccurrenceResolver, occurrence_key


class _Recorder:
    def __init__(self):
        self.added = []
        self._next_id = 500

    def __call__(self, occ):
        self._next_id += 1
        occ.id = self._next_id
        self.added.append(occ)


class TestOccurrenceKey:
    def test_time_is_dropped(self):
        assert occurrence_key(1, 2, 3, datetime(2024, 1, 7, 9, 30)) == "1|2|3|2024-01-07"

    def test_none_ids_are_empty_tokens(self):
        assert occurrence_key(None, None, 3, date(2024, 1, 7)) == "||3|2024-01-07"


class TestOccurrenceResolver:
    def test_same_day_reuses_occurrence(self):
        recorder = _Recorder()
        resolver = OccurrenceResolver(recorder)
        first = resolver.resolve_or_create(10, datetime(2024, 1, 7, 9, 0), 3, 4)
        second = resolver.resolve_or_create(10, datetime(2024, 1, 7, 11, 0), 3, 4)
        assert first == second
        assert len(recorder.added) == 1
        assert recorder.added[0].occurred_on == date(2024, 1, 7)
        assert resolver.created == 1

    def test_different_day_creates_new(self):
        recorder = _Recorder()
        resolver = OccurrenceResolver(recorder)
        resolver.resolve_or_create(10, datetime(2024, 1, 7), 3)
        resolver.resolve_or_create(10, datetime(2024, 1, 14), 3)
        assert len(recorder.added) == 2
        assert len(resolver) == 2

    def test_different_location_creates_new(self):
        recorder = _Recorder()
        resolver = OccurrenceResolver(recorder)
        resolver.resolve_or_create(10, date(2024, 1, 7), 3, 4)
        resolver.resolve_or_create(10, date(2024, 1, 7), 3, 5)
        assert len(recorder.added) == 2

    def test_existing_cache_is_used(self):
        recorder = _Recorder()
        existing = {occurrence_key(10, None, 3, date(2024, 1, 7)): 77}
        resolver = OccurrenceResolver(recorder, existing)
        assert resolver.resolve_or_create(10, datetime(2024, 1, 7, 9, 0), 3) == 77
        assert recorder.added == []

    def test_new_ids_are_written_back_to_cache(self):
        existing = {}
        resolver = OccurrenceResolver(_Recorder(), existing)
        occurrence_id = resolver.resolve_or_create(None, date(2024, 1, 7), 3)
        assert existing == {"||3|2024-01-07": occurrence_id}

    def test_missing_id_raises(self):
        resolver = OccurrenceResolver(lambda occ: None)
        with pytest.raises(ValueError, match="not assigned an id"):
            resolver.resolve_or_create(1, date(2024, 1, 7), 3)
