"""fellowship_etl.references

Reference Cache Loader.

Loads everything earlier runs of this tool wrote (people, group types,
groups, schedules, locations, occurrences, batches) into in-memory indices
once per run.  The resulting ReferenceSet is passed explicitly through the
orchestrator into every mapping routine and is mutated as new entities are
synthesized, so it always mirrors what has been or will be written.

Usage:
    refs = load_references(store, scanner.table_names())
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable

import psycopg

from fellowship_etl.models import (
    GROUP_TYPE_FAMILY,
    GROUP_TYPE_GENERAL,
    GROUP_TYPE_SERVING_TEAM,
    GROUP_TYPE_SMALL_GROUP,
    SERVING_TEAMS_GROUP,
    Campus,
    FinancialAccount,
    GroupNode,
    GroupTypeNode,
    GroupTypeRole,
    LocationNode,
    PersonKey,
    ScheduleNode,
)
from fellowship_etl.occurrences import occurrence_key
from fellowship_etl.shared import MissingDependencyError, ReferenceLoadError
from fellowship_etl.store import DestinationStore

log = logging.getLogger(__name__)

# Tables whose presence lets a run start from an empty destination.
BASE_SOURCE_TABLES = frozenset({"Individual_Household"})


# ---------------------------------------------------------------------------
# ReferenceSet
# ---------------------------------------------------------------------------

@dataclass
class ReferenceSet:
    people: list[PersonKey] = field(default_factory=list)
    group_types: dict[str, GroupTypeNode] = field(default_factory=dict)
    system_group_types: dict[str, GroupTypeNode] = field(default_factory=dict)
    roles: dict[tuple[int, str], GroupTypeRole] = field(default_factory=dict)
    groups: dict[str, GroupNode] = field(default_factory=dict)
    schedules: dict[str, ScheduleNode] = field(default_factory=dict)
    locations: list[LocationNode] = field(default_factory=list)
    campuses: list[Campus] = field(default_factory=list)
    occurrences: dict[str, int] = field(default_factory=dict)
    batches: dict[int, int | None] = field(default_factory=dict)
    accounts: dict[str, FinancialAccount] = field(default_factory=dict)
    serving_teams_group: GroupNode | None = None
    checkin_group_keys: set[str] = field(default_factory=set)

    def __post_init__(self) -> None:
        self._by_individual: dict[int, PersonKey] = {}
        self._by_household: dict[int, list[PersonKey]] = defaultdict(list)
        self._groups_by_id: dict[int, GroupNode] = {}
        for key in self.people:
            self._index_person(key)
        for node in self.groups.values():
            if node.id is not None:
                self._groups_by_id[node.id] = node
        if self.serving_teams_group is not None and self.serving_teams_group.id is not None:
            self._groups_by_id[self.serving_teams_group.id] = self.serving_teams_group

    # -- people -------------------------------------------------------------

    def _index_person(self, key: PersonKey) -> None:
        if key.individual_id is not None:
            self._by_individual[key.individual_id] = key
        if key.household_id is not None:
            self._by_household[key.household_id].append(key)

    def add_person(self, key: PersonKey) -> None:
        """Add a newly written person; an existing individual id wins."""
        if key.individual_id is not None and key.individual_id in self._by_individual:
            return
        self.people.append(key)
        self._index_person(key)

    def person_by_individual(self, individual_id: int) -> PersonKey | None:
        return self._by_individual.get(individual_id)

    def people_in_household(self, household_id: int) -> list[PersonKey]:
        return list(self._by_household.get(household_id, ()))

    # -- groups -------------------------------------------------------------

    def add_group(self, node: GroupNode) -> None:
        if node.foreign_key is not None:
            self.groups.setdefault(node.foreign_key, node)
        if node.id is not None:
            self._groups_by_id[node.id] = node

    def group_by_key(self, foreign_key: str) -> GroupNode | None:
        return self.groups.get(foreign_key)

    def group_by_id(self, group_id: int | None) -> GroupNode | None:
        """Loaded or immediately saved nodes; staged nodes are reached via .parent."""
        if group_id is None:
            return None
        return self._groups_by_id.get(group_id)

    # -- types / roles ------------------------------------------------------

    def system_type_id(self, system_key: str) -> int | None:
        node = self.system_group_types.get(system_key)
        return node.id if node else None

    def excluded_member_type_ids(self) -> set[int]:
        """Group types that volunteer/assignment rows never attach to."""
        return {
            t.id for key, t in self.system_group_types.items()
            if key in (GROUP_TYPE_FAMILY, GROUP_TYPE_GENERAL, GROUP_TYPE_SMALL_GROUP)
            and t.id is not None
        }

    def add_role(self, role: GroupTypeRole) -> None:
        self.roles.setdefault((role.group_type_id, role.name.lower()), role)

    def role(self, group_type_id: int, name: str) -> GroupTypeRole | None:
        return self.roles.get((group_type_id, name.lower()))

    # -- locations ----------------------------------------------------------

    def find_location(self, name: str, parent_location_id: int | None) -> LocationNode | None:
        wanted = name.casefold()
        for node in self.locations:
            if node.parent_location_id == parent_location_id and node.name.casefold() == wanted:
                return node
        return None


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_references(
    store: DestinationStore,
    available_tables: Iterable[str] = (),
) -> ReferenceSet:
    """Build the ReferenceSet from the destination store.

    Raises:
        ReferenceLoadError: the store could not be read.
        MissingDependencyError: nothing was imported before and no base
            person table is present in this run.
    """
    try:
        refs = _load(store)
    except psycopg.Error as exc:
        raise ReferenceLoadError(f"destination store unreachable: {exc}") from exc

    tables = set(available_tables)
    if not refs.people and not (tables & BASE_SOURCE_TABLES):
        raise MissingDependencyError(
            "no previously imported people and no Individual_Household table; "
            "import people first"
        )

    log.info(
        "references loaded: people=%d group_types=%d groups=%d schedules=%d "
        "locations=%d occurrences=%d batches=%d",
        len(refs.people), len(refs.group_types), len(refs.groups),
        len(refs.schedules), len(refs.locations), len(refs.occurrences),
        len(refs.batches),
    )
    return refs


def _load(store: DestinationStore) -> ReferenceSet:
    system_types: dict[str, GroupTypeNode] = {}
    for system_key in (
        GROUP_TYPE_FAMILY, GROUP_TYPE_GENERAL, GROUP_TYPE_SERVING_TEAM, GROUP_TYPE_SMALL_GROUP,
    ):
        node = store.query_by_system_key("group_type", system_key)
        if node is None:
            raise MissingDependencyError(f"system group type {system_key!r} is not seeded")
        system_types[system_key] = node

    refs = ReferenceSet(
        people=list(store.query_all_by_marker("person_key")),
        group_types={
            t.foreign_key: t for t in store.query_all_by_marker("group_type")
        },
        system_group_types=system_types,
        groups={g.foreign_key: g for g in store.query_all_by_marker("group")},
        schedules={s.foreign_key: s for s in store.query_all_by_marker("schedule")},
        locations=list(store.query_all_by_marker("location")),
        campuses=list(store.query_all_by_marker("campus")),
        occurrences={
            occurrence_key(o.group_id, o.location_id, o.schedule_id, o.occurred_on): o.id
            for o in store.query_all_by_marker("occurrence")
        },
        batches={b.foreign_id: b.id for b in store.query_all_by_marker("financial_batch")},
        accounts={
            a.name.casefold(): a for a in store.query_all_by_marker("financial_account")
        },
        serving_teams_group=store.query_by_system_key("group", SERVING_TEAMS_GROUP),
    )
    for role in store.query_all_by_marker("group_type_role"):
        refs.add_role(role)
    return refs
