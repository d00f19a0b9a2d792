"""Unit tests for fellowship_etl.references."""

import pytest

from fellowship_etl.models import (
    GROUP_TYPE_FAMILY,
    GROUP_TYPE_GENERAL,
    GROUP_TYPE_SERVING_TEAM,
    GROUP_TYPE_SMALL_GROUP,
    Family,
    GroupNode,
    LocationNode,
    NewPerson,
    ScheduleNode,
)
from fellowship_etl.references import load_references
from fellowship_etl.shared import MissingDependencyError
from fellowship_etl.store import MemoryStore


# ---------------------------------------------------------------------------
# load_references
# ---------------------------------------------------------------------------

class TestLoadReferences:
    def test_empty_store_needs_people_table(self):
        with pytest.raises(MissingDependencyError, match="import people first"):
            load_references(MemoryStore(), ["Attendance"])

    def test_empty_store_with_people_table(self):
        refs = load_references(MemoryStore(), ["Individual_Household", "Attendance"])
        assert refs.people == []
        assert set(refs.system_group_types) == {
            GROUP_TYPE_FAMILY, GROUP_TYPE_GENERAL, GROUP_TYPE_SERVING_TEAM, GROUP_TYPE_SMALL_GROUP,
        }
        assert refs.serving_teams_group is not None
        assert refs.serving_teams_group.name == "Serving Teams"

    def test_unseeded_system_type(self):
        store = MemoryStore()
        store.group_types = [t for t in store.group_types if t.system_key != GROUP_TYPE_SMALL_GROUP]
        with pytest.raises(MissingDependencyError, match="small_group"):
            load_references(store, ["Individual_Household"])

    def test_previous_people_satisfy_dependency(self):
        store = MemoryStore()
        store.insert(Family(
            household_id=42, name="Smith Family",
            members=[NewPerson("Ann", "Smith", 1001, 42)],
        ))
        refs = load_references(store, ["Attendance"])
        assert [k.individual_id for k in refs.people] == [1001]
        assert refs.person_by_individual(1001).alias_id is not None

    def test_groups_indexed_by_key_and_id(self):
        store = MemoryStore()
        node = GroupNode(foreign_key="10", name="Kids", group_type_id=2)
        store.insert(node)
        refs = load_references(store, ["Individual_Household"])
        assert refs.group_by_key("10").id == node.id
        assert refs.group_by_id(node.id).foreign_key == "10"

    def test_serving_teams_group_indexed_by_id(self):
        refs = load_references(MemoryStore(), ["Individual_Household"])
        serving_teams = refs.serving_teams_group
        assert refs.group_by_id(serving_teams.id) is serving_teams
        assert refs.group_by_id(None) is None

    def test_only_imported_schedules_loaded(self):
        store = MemoryStore()
        store.insert(ScheduleNode(foreign_key=None, name="Sunday 9AM"))
        store.insert(ScheduleNode(foreign_key="F1GD_7", name="Tuesday 07:00 PM"))
        refs = load_references(store, ["Individual_Household"])
        assert list(refs.schedules) == ["F1GD_7"]

    def test_loaded_groups_are_copies(self):
        store = MemoryStore()
        store.insert(GroupNode(foreign_key="10", name="Kids", group_type_id=2))
        refs = load_references(store, ["Individual_Household"])
        refs.group_by_key("10").name = "Changed"
        assert store.groups[-1].name == "Kids"

    def test_excluded_member_types(self):
        refs = load_references(MemoryStore(), ["Individual_Household"])
        excluded = refs.excluded_member_type_ids()
        assert refs.system_type_id(GROUP_TYPE_SERVING_TEAM) not in excluded
        assert refs.system_type_id(GROUP_TYPE_FAMILY) in excluded
        assert refs.system_type_id(GROUP_TYPE_SMALL_GROUP) in excluded

    def test_seeded_roles_are_case_insensitive(self):
        refs = load_references(MemoryStore(), ["Individual_Household"])
        serving = refs.system_type_id(GROUP_TYPE_SERVING_TEAM)
        assert refs.role(serving, "leader").is_leader is True


class TestFindLocation:
    def test_matches_name_under_parent(self):
        store = MemoryStore()
        store.insert(LocationNode(name="Main Campus"))
        refs = load_references(store, ["Individual_Household"])
        parent = refs.find_location("main campus", None)
        assert parent is not None
        assert refs.find_location("Main Campus", parent.id) is None
