"""Unit tests for fellowship_etl.resolver."""

from fellowship_etl.models import FamilyRole, Gender, PersonKey
from fellowship_etl.references import ReferenceSet
from fellowship_etl.resolver import resolve_family, resolve_person


def _key(person_id, individual_id, household_id, role=FamilyRole.ADULT, gender=Gender.UNKNOWN):
    return PersonKey(
        person_id=person_id,
        alias_id=person_id + 1000,
        individual_id=individual_id,
        household_id=household_id,
        gender=gender,
        family_role=role,
    )


def _refs(*keys):
    return ReferenceSet(people=list(keys))


# ---------------------------------------------------------------------------
# resolve_person
# ---------------------------------------------------------------------------

class TestResolvePerson:
    def test_by_individual(self):
        ann = _key(1, 1001, 42)
        assert resolve_person(_refs(ann), 1001) == ann

    def test_unknown_individual(self):
        assert resolve_person(_refs(_key(1, 1001, 42)), 9999) is None

    def test_individual_wins_over_household(self):
        ann = _key(1, 1001, 42)
        ben = _key(2, 1002, 42, FamilyRole.CHILD)
        assert resolve_person(_refs(ann, ben), 1002, 42) == ben

    def test_household_adult_before_child(self):
        child = _key(2, 1002, 42, FamilyRole.CHILD, Gender.UNKNOWN)
        adult = _key(1, 1001, 42, FamilyRole.ADULT, Gender.FEMALE)
        assert resolve_person(_refs(child, adult), household_id=42) == adult

    def test_household_gender_breaks_role_tie(self):
        wife = _key(1, 1001, 42, FamilyRole.ADULT, Gender.FEMALE)
        husband = _key(2, 1002, 42, FamilyRole.ADULT, Gender.MALE)
        assert resolve_person(_refs(wife, husband), household_id=42) == husband

    def test_equal_keys_keep_cache_order(self):
        first = _key(1, 1001, 42)
        second = _key(2, 1002, 42)
        assert resolve_person(_refs(first, second), household_id=42) == first

    def test_visitor_only_household(self):
        visitor = _key(3, 1003, 42, FamilyRole.VISITOR)
        refs = _refs(visitor)
        assert resolve_person(refs, household_id=42) == visitor
        assert resolve_person(refs, household_id=42, include_visitors=False) is None

    def test_no_ids(self):
        assert resolve_person(_refs(_key(1, 1001, 42))) is None

    def test_added_person_is_resolvable(self):
        refs = _refs()
        refs.add_person(_key(5, 2001, 77))
        assert resolve_person(refs, household_id=77).person_id == 5

    def test_existing_individual_wins_on_add(self):
        refs = _refs(_key(1, 1001, 42))
        refs.add_person(_key(9, 1001, 42))
        assert resolve_person(refs, 1001).person_id == 1
        assert len(refs.people) == 1


# ---------------------------------------------------------------------------
# resolve_family
# ---------------------------------------------------------------------------

class TestResolveFamily:
    def test_excludes_visitors(self):
        ann = _key(1, 1001, 42)
        ben = _key(2, 1002, 42, FamilyRole.CHILD)
        cal = _key(3, 1003, 42, FamilyRole.VISITOR)
        refs = _refs(ann, ben, cal)
        assert resolve_family(refs, 42, include_visitors=False) == [ann, ben]
        assert resolve_family(refs, 42) == [ann, ben, cal]

    def test_unknown_household(self):
        assert resolve_family(_refs(), 42) == []
        assert resolve_family(_refs(), None) == []
