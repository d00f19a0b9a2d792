"""Shared fixtures for unit tests: an ImportContext over a MemoryStore."""

from __future__ import annotations

from datetime import date

import pytest

from fellowship_etl.batch import BatchWriter, RecordingProgressSink
from fellowship_etl.campus import CampusDirectory
from fellowship_etl.config import ImportConfig
from fellowship_etl.context import ImportContext
from fellowship_etl.hierarchy import HierarchySynthesizer
from fellowship_etl.map_groups import map_activity_ministry
from fellowship_etl.map_people import map_person
from fellowship_etl.models import Campus
from fellowship_etl.occurrences import OccurrenceResolver
from fellowship_etl.references import load_references
from fellowship_etl.shared import RunCounters
from fellowship_etl.source import SourceRow
from fellowship_etl.store import MemoryStore

TODAY = date(2024, 6, 1)


def _campuses() -> list[Campus]:
    return [
        Campus(id=900, name="Main Campus", short_code="MAIN"),
        Campus(id=901, name="North", short_code="NOR"),
    ]


@pytest.fixture
def store():
    return MemoryStore(campuses=_campuses())


@pytest.fixture
def make_ctx():
    """Factory: a fresh ImportContext (fresh references) over a store."""

    def _make(store, chunk_size=100, rejects=None):
        refs = load_references(store, ["Individual_Household"])
        campuses = CampusDirectory(refs.campuses)
        progress = RecordingProgressSink()
        counters = RunCounters()
        writer = BatchWriter(store, progress, chunk_size=chunk_size, counters=counters)
        return ImportContext(
            refs=refs,
            writer=writer,
            hierarchy=HierarchySynthesizer(refs, writer, campuses, counters),
            occurrences=OccurrenceResolver(writer.save_now, refs.occurrences),
            campuses=campuses,
            progress=progress,
            counters=counters,
            config=ImportConfig(chunk_size=chunk_size),
            rejects=rejects,
            today=TODAY,
        )

    return _make


# ---------------------------------------------------------------------------
# Seeded contexts
# ---------------------------------------------------------------------------

HOUSEHOLD_42 = [
    {
        "Individual_ID": "1001", "Household_ID": "42", "First_Name": "Ann",
        "Last_Name": "Smith", "Household_Position": "Head", "Gender": "Female",
        "Date_Of_Birth": "1980-02-01", "Status_Name": "Member",
        "SubStatus_Name": "MAIN", "Household_Name": "The Smiths",
    },
    {
        "Individual_ID": "1002", "Household_ID": "42", "First_Name": "Ben",
        "Last_Name": "Smith", "Household_Position": "Child", "Gender": "Male",
        "Date_Of_Birth": "2012-05-05", "SubStatus_Name": "MAIN",
    },
    {
        "Individual_ID": "1003", "Household_ID": "42", "First_Name": "Cal",
        "Last_Name": "Jones", "Household_Position": "Visitor", "Gender": "Male",
    },
]

MINISTRIES = [
    {
        "Ministry_ID": "1", "Ministry_Name": "MAIN - Kids Ministry",
        "Activity_ID": "11", "Activity_Name": "Sunday School",
    },
    {
        "Ministry_ID": "1", "Ministry_Name": "MAIN - Kids Ministry",
        "Activity_ID": "12", "Activity_Name": "Wednesday Club",
        "Has_Checkin_Template": "true",
    },
    {
        "Ministry_ID": "2", "Ministry_Name": "Worship",
        "Activity_ID": "21", "Activity_Name": "SERV: Greeters",
    },
]


def _run_mapper(ctx, mapper, dicts):
    """Map one table and flush it the way the orchestrator does."""
    result = mapper(ctx, [SourceRow(d) for d in dicts], len(dicts))
    ctx.writer.flush()
    ctx.writer.clear_listeners()
    return result


@pytest.fixture
def run_mapper():
    return _run_mapper


@pytest.fixture
def people_ctx(store, make_ctx):
    ctx = make_ctx(store)
    _run_mapper(ctx, map_person, HOUSEHOLD_42)
    return ctx


@pytest.fixture
def ministry_ctx(people_ctx):
    _run_mapper(people_ctx, map_activity_ministry, MINISTRIES)
    return people_ctx
