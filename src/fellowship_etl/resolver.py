"""fellowship_etl.resolver

Entity Resolver: source individual/household ids → imported PersonKeys.

Household tie-break (resolve_person without an individual id): candidates
are sorted by family role rank (Adult < Child < Visitor), then by gender
value (Unknown < Male < Female); the first one wins.  Python's sort is
stable, so equal keys keep cache order, which is the order people were
loaded or imported in.
"""

from __future__ import annotations

from fellowship_etl.models import FamilyRole, PersonKey
from fellowship_etl.references import ReferenceSet


def _household_candidates(
    refs: ReferenceSet,
    household_id: int,
    include_visitors: bool,
) -> list[PersonKey]:
    candidates = refs.people_in_household(household_id)
    if not include_visitors:
        candidates = [k for k in candidates if k.family_role != FamilyRole.VISITOR]
    return candidates


def resolve_person(
    refs: ReferenceSet,
    individual_id: int | None = None,
    household_id: int | None = None,
    include_visitors: bool = True,
) -> PersonKey | None:
    """Return the PersonKey for an individual, or the primary person of a household.

    None means the caller must skip the row: dependent data cannot be
    created without an owner.
    """
    if individual_id is not None:
        return refs.person_by_individual(individual_id)
    if household_id is not None:
        candidates = _household_candidates(refs, household_id, include_visitors)
        if not candidates:
            return None
        candidates.sort(key=lambda k: (int(k.family_role), int(k.gender)))
        return candidates[0]
    return None


def resolve_family(
    refs: ReferenceSet,
    household_id: int | None,
    include_visitors: bool = True,
) -> list[PersonKey]:
    """Every PersonKey of a household, same visitor filter, no tie-break."""
    if household_id is None:
        return []
    return _household_candidates(refs, household_id, include_visitors)
