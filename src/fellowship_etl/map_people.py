"""fellowship_etl.map_people

People, companies, communication values and household addresses.

Individual_Household rows are grouped into families by Household_ID.
Each household becomes one Family (group + people + aliases + foreign-id
attribute values) written as a unit; visitors get a family of their own
so they never count as members of the household they visited; known
relationships link them to its members instead.  New PersonKeys enter
the ReferenceSet after every flushed chunk, so later tables in the same
run resolve them like previously imported people.
"""

from __future__ import annotations

import html
import logging
from collections import Counter
from datetime import date
from typing import Iterable

from fellowship_etl.batch import TableProgress
from fellowship_etl.context import ImportContext
from fellowship_etl.models import (
    LOGIN_ATTRIBUTE,
    AttributeValue,
    Family,
    FamilyAddress,
    FamilyRole,
    Gender,
    NewPerson,
    PersonEmail,
    PersonKey,
    PersonRelationship,
    PhoneNumber,
)
from fellowship_etl.normalize import age_on, normalize_email, parse_phone, remove_whitespace
from fellowship_etl.resolver import resolve_family, resolve_person
from fellowship_etl.shared import TableResult
from fellowship_etl.source import SourceRow

log = logging.getLogger(__name__)

# Extra Individual_Household columns kept as person attribute values.
PERSON_ATTRIBUTE_COLUMNS = {
    "Former_Name": "PreviousName",
    "Former_Church": "PreviousChurch",
    "Employer": "Employer",
    "School_Name": "School",
    "Status_Comment": "StatusComment",
    "Member_Env_Code": "EnvelopeNumber",
    "Bar_Code": "BarCode",
    "Default_tag_comment": "AllergyNote",
}
PERSON_DATE_ATTRIBUTE_COLUMNS = {
    "First_Record": "FirstVisit",
    "Status_Date": "MembershipDate",
}
SOCIAL_ATTRIBUTES = ("Twitter", "Facebook", "Instagram")
PHONE_TYPE_MARKERS = ("Phone", "Mobile", "Fax")
MAX_NAME_LENGTH = 50


def _register_family_listener(ctx: ImportContext) -> None:
    def add_keys(families: list[Family]) -> None:
        for family in families:
            for person in family.members:
                ctx.refs.add_person(person.key())

    ctx.writer.on_flushed("family", add_keys)


def _flush_if_full(ctx: ImportContext, since_flush: int) -> int:
    """Flush once a chunk's worth of people is staged; returns the new count."""
    if since_flush >= ctx.writer.chunk_size:
        ctx.writer.flush()
        return 0
    return since_flush


# ---------------------------------------------------------------------------
# Individual_Household
# ---------------------------------------------------------------------------

def family_role_for(position: str | None, age: int | None) -> FamilyRole:
    """Visitor stays Visitor; Child, or anyone under 18, is Child; else Adult."""
    p = (position or "").strip().lower()
    if p == "visitor":
        return FamilyRole.VISITOR
    if p == "child" or (age is not None and age < 18):
        return FamilyRole.CHILD
    return FamilyRole.ADULT


def visitor_relationships(
    visitors: list[NewPerson],
    members: list[NewPerson],
    today: date,
) -> list[PersonRelationship]:
    """Known relationships between a household's visitors and its members.

    Every visitor was invited by every member.  A visitor under 15 may be
    checked in by members over 15; members over 18 can check in visitors
    under 18.
    """
    links: list[PersonRelationship] = []
    for visitor in visitors:
        visitor_age = age_on(visitor.birth_date, today)
        for member in members:
            member_age = age_on(member.birth_date, today)
            links.append(PersonRelationship(visitor, member, "Invited By"))
            links.append(PersonRelationship(member, visitor, "Invitee"))
            if visitor_age is None or member_age is None:
                continue
            if visitor_age < 15 < member_age:
                links.append(PersonRelationship(visitor, member, "Allow Check In By"))
            if visitor_age < 18 < member_age:
                links.append(PersonRelationship(member, visitor, "Can Check In"))
    return links


def apply_member_status(person: NewPerson, status: str | None) -> None:
    s = (status or "").strip()
    lowered = s.lower()
    if not s:
        person.connection_status = "Visitor"
    elif lowered == "member":
        person.connection_status = "Member"
    elif lowered == "visitor":
        person.connection_status = "Visitor"
    elif lowered == "deceased":
        person.is_deceased = True
        person.record_status = "inactive"
    elif lowered == "dropped" or lowered.startswith("inactive"):
        person.record_status = "inactive"
    else:
        person.connection_status = s


def _new_person(
    ctx: ImportContext,
    row: SourceRow,
    individual_id: int,
    household_id: int,
) -> NewPerson:
    first_name = row.get_str("First_Name")
    birth_date = row.get_date("Date_Of_Birth")
    person = NewPerson(
        first_name=first_name,
        last_name=row.get_str("Last_Name"),
        individual_id=individual_id,
        household_id=household_id,
        family_role=family_role_for(
            row.get_str("Household_Position"), age_on(birth_date, ctx.today)
        ),
        gender=Gender.parse(row.get_str("Gender")),
        nick_name=row.get_str("Goes_By") or first_name,
        middle_name=row.get_str("Middle_Name"),
        title=row.get_str("Prefix"),
        suffix=row.get_str("Suffix"),
        birth_date=birth_date,
        marital_status=row.get_str("Marital_Status") or "Unknown",
        created_at=row.get_datetime("Created_Date"),
    )
    apply_member_status(person, row.get_str("Status_Name"))

    for column, key in PERSON_ATTRIBUTE_COLUMNS.items():
        value = row.get_str(column)
        if value:
            person.attributes[key] = value
    occupation = row.get_str("Occupation_Name") or row.get_str("Occupation_Description")
    if occupation:
        person.attributes["Position"] = occupation
    for column, key in PERSON_DATE_ATTRIBUTE_COLUMNS.items():
        value = row.get_date(column)
        if value is not None:
            person.attributes[key] = value.isoformat()
    return person


def map_person(
    ctx: ImportContext,
    rows: Iterable[SourceRow],
    total: int,
) -> TableResult:
    result = TableResult("Individual_Household")
    _register_family_listener(ctx)

    households: dict[int, list[SourceRow]] = {}
    for row in rows:
        result.rows_read += 1
        household_id = row.get_int("Household_ID")
        if household_id is None or row.get_int("Individual_ID") is None:
            ctx.skip(result, row, "missing Household_ID or Individual_ID")
            continue
        households.setdefault(household_id, []).append(row)

    existing = sum(
        1 for hh_rows in households.values() for r in hh_rows
        if ctx.refs.person_by_individual(r.get_int("Individual_ID")) is not None
    )
    progress = TableProgress(ctx.progress, "person", total, existing)
    progress.start()

    seen: set[int] = set()
    completed = 0
    since_flush = 0
    for household_id, hh_rows in households.items():
        family_rows: list[tuple[NewPerson, SourceRow]] = []
        visitors: list[NewPerson] = []
        for row in hh_rows:
            individual_id = row.get_int("Individual_ID")
            if individual_id in seen or ctx.refs.person_by_individual(individual_id) is not None:
                continue
            seen.add(individual_id)
            person = _new_person(ctx, row, individual_id, household_id)
            campus = ctx.campuses.by_name(row.get_str("SubStatus_Name"))
            person.campus_id = campus.id if campus else None

            if person.family_role == FamilyRole.VISITOR:
                ctx.writer.stage(Family(
                    household_id=household_id,
                    name=f"{person.last_name or ''} Family".strip(),
                    campus_id=person.campus_id,
                    members=[person],
                    created_at=person.created_at,
                ))
                visitors.append(person)
            else:
                family_rows.append((person, row))
            completed += 1
            since_flush += 1
            progress.step(completed)

        if family_rows:
            first_person, first_row = family_rows[0]
            campus_votes = Counter(
                p.campus_id for p, _ in family_rows if p.campus_id is not None
            )
            ctx.writer.stage(Family(
                household_id=household_id,
                name=(
                    first_row.get_str("Household_Name")
                    or f"{first_person.last_name or ''} Family".strip()
                ),
                campus_id=campus_votes.most_common(1)[0][0] if campus_votes else None,
                members=[p for p, _ in family_rows],
                created_at=first_person.created_at,
            ))
            for link in visitor_relationships(
                visitors, [p for p, _ in family_rows], ctx.today
            ):
                ctx.writer.stage(link)
        since_flush = _flush_if_full(ctx, since_flush)

    result.imported = completed
    progress.finish(completed)
    return result


# ---------------------------------------------------------------------------
# Company
# ---------------------------------------------------------------------------

def clean_business_name(value: str | None) -> str | None:
    if not value:
        return None
    return html.unescape(value).strip()[:MAX_NAME_LENGTH] or None


def map_company(
    ctx: ImportContext,
    rows: Iterable[SourceRow],
    total: int,
) -> TableResult:
    """Households no person row resolves to become business records."""
    result = TableResult("Company")
    _register_family_listener(ctx)
    rows = list(rows)
    existing = sum(
        1 for r in rows
        if r.get_int("Household_ID") is not None
        and resolve_person(ctx.refs, household_id=r.get_int("Household_ID")) is not None
    )
    progress = TableProgress(ctx.progress, "company", total, existing)
    progress.start()

    seen: set[int] = set()
    completed = 0
    for row in rows:
        result.rows_read += 1
        household_id = row.get_int("Household_ID")
        if household_id is None:
            ctx.skip(result, row, "missing Household_ID")
            continue
        if household_id in seen or resolve_person(ctx.refs, household_id=household_id):
            continue
        seen.add(household_id)

        name = clean_business_name(row.get_str("Household_Name")) or f"Business {household_id}"
        business = NewPerson(
            first_name=None,
            last_name=name,
            individual_id=None,
            household_id=household_id,
            record_type="business",
            created_at=row.get_datetime("Created_Date"),
        )
        ctx.writer.stage(Family(
            household_id=household_id,
            name=name,
            members=[business],
            created_at=business.created_at,
        ))
        completed += 1
        progress.step(completed)
        ctx.writer.maybe_flush(completed)

    result.imported = completed
    progress.finish(completed)
    return result


# ---------------------------------------------------------------------------
# Communication
# ---------------------------------------------------------------------------

def _communication_targets(ctx: ImportContext, row: SourceRow) -> list[PersonKey]:
    individual_id = row.get_int("Individual_ID")
    household_id = row.get_int("Household_ID")
    if individual_id is not None:
        person = resolve_person(ctx.refs, individual_id, household_id, include_visitors=False)
        if person is None or person.family_role == FamilyRole.VISITOR:
            return []
        return [person]
    return resolve_family(ctx.refs, household_id, include_visitors=False)


class _CommunicationState:
    """Per-table dedupe sets for values staged but not yet written."""

    def __init__(self) -> None:
        self.phones: set[tuple[int, str, str]] = set()
        self.phone_ids: set[tuple[int, int]] = set()
        self.attributes: set[tuple[int, str]] = set()


def _stage_phones(
    ctx: ImportContext,
    state: _CommunicationState,
    people: list[PersonKey],
    row: SourceRow,
    value: str,
    type_name: str,
) -> bool:
    parsed = parse_phone(value)
    if parsed is None:
        return False
    country_code, number, extension = parsed
    communication_id = row.get_int("Communication_ID")
    listed = row.get_bool("Listed")
    for person in people:
        if (person.person_id, number, type_name) in state.phones:
            continue
        if communication_id is not None and (communication_id, person.person_id) in state.phone_ids:
            continue
        state.phones.add((person.person_id, number, type_name))
        if communication_id is not None:
            state.phone_ids.add((communication_id, person.person_id))
        ctx.writer.stage(PhoneNumber(
            person_id=person.person_id,
            number=number[:20],
            type_name=type_name,
            country_code=country_code,
            extension=extension[:20] if extension else None,
            is_unlisted=listed is False,
            is_messaging_enabled=type_name.lower().startswith("mobile"),
            description=row.get_str("Communication_Comment"),
            foreign_id=communication_id,
        ))
    return True


def _stage_attribute(
    ctx: ImportContext,
    state: _CommunicationState,
    person_id: int,
    key: str,
    value: str,
) -> None:
    if (person_id, key) in state.attributes:
        return
    state.attributes.add((person_id, key))
    ctx.writer.stage(AttributeValue(person_id=person_id, key=key, value=value))


def map_communication(
    ctx: ImportContext,
    rows: Iterable[SourceRow],
    total: int,
) -> TableResult:
    """Phones, emails, social handles and InFellowship logins.

    Rows are taken newest first, so when a person has several values of
    one kind the most recent becomes the primary one.
    """
    result = TableResult("Communication")
    ordered = sorted(
        rows,
        key=lambda r: (
            r.get_datetime("LastUpdatedDate") is not None,
            r.get_datetime("LastUpdatedDate"),
        ),
        reverse=True,
    )
    progress = TableProgress(ctx.progress, "communication", total)
    progress.start()

    state = _CommunicationState()
    completed = 0
    for row in ordered:
        result.rows_read += 1
        raw = row.get_str("Communication_Value")
        type_name = row.get_str("Communication_Type") or ""
        if not raw:
            ctx.skip(result, row, "empty Communication_Value")
            continue
        people = _communication_targets(ctx, row)
        if not people:
            ctx.skip(result, row, "no imported person for individual/household")
            continue

        value = remove_whitespace(raw)
        if any(marker.lower() in type_name.lower() for marker in PHONE_TYPE_MARKERS):
            if not _stage_phones(ctx, state, people, row, raw, type_name):
                ctx.skip(result, row, f"unparseable phone number {raw!r}")
                continue
        else:
            person = people[0]
            staged = False
            if "infellowship" in type_name.lower():
                _stage_attribute(ctx, state, person.person_id, LOGIN_ATTRIBUTE, value)
                staged = True
            email = normalize_email(value)
            if email is not None:
                ctx.writer.stage(PersonEmail(
                    person_id=person.person_id,
                    email=email[:75],
                    is_active=row.get_bool("Listed") is not False,
                    note=row.get_str("Communication_Comment"),
                    foreign_id=row.get_int("Communication_ID"),
                ))
                staged = True
            else:
                for social in SOCIAL_ATTRIBUTES:
                    if social.lower() in type_name.lower():
                        _stage_attribute(ctx, state, person.person_id, social, value)
                        staged = True
                        break
            if not staged:
                ctx.skip(result, row, f"unsupported communication type {type_name!r}")
                continue

        completed += 1
        progress.step(completed)
        ctx.writer.maybe_flush(completed)

    result.imported = completed
    progress.finish(completed)
    return result


# ---------------------------------------------------------------------------
# Household_Address
# ---------------------------------------------------------------------------

def address_type_for(value: str | None) -> tuple[str | None, bool, bool]:
    """Address_Type → (location type, is mailing, is mapped)."""
    v = (value or "").strip()
    lowered = v.lower()
    if lowered == "primary":
        return "Home", True, True
    if lowered == "business" or lowered.startswith("org"):
        return "Work", False, False
    if lowered == "previous":
        return "Previous", False, False
    return v or None, False, False


def map_family_address(
    ctx: ImportContext,
    rows: Iterable[SourceRow],
    total: int,
) -> TableResult:
    """Addresses attach to the family of the household's primary person.

    Postal codes are cut to five characters so ZIP+4 variants of one
    address collapse into a single record.
    """
    result = TableResult("Household_Address")
    progress = TableProgress(ctx.progress, "address", total)
    progress.start()

    seen: set[tuple[int, str]] = set()
    completed = 0
    for row in rows:
        result.rows_read += 1
        household_id = row.get_int("Household_ID")
        person = resolve_person(
            ctx.refs, row.get_int("Individual_ID"), household_id, include_visitors=False
        )
        if person is None or person.family_role == FamilyRole.VISITOR:
            ctx.skip(result, row, "no imported person for individual/household")
            continue
        owner = resolve_person(
            ctx.refs, household_id=person.household_id, include_visitors=False
        ) or person

        location_type, is_mailing, is_mapped = address_type_for(row.get_str("Address_Type"))
        address = FamilyAddress(
            person_id=owner.person_id,
            street1=row.get_str("Address_1"),
            street2=row.get_str("Address_2"),
            city=row.get_str("City"),
            state=row.get_str("State"),
            postal_code=(row.get_str("Postal_Code") or "")[:5] or None,
            country=row.get_str("country") or row.get_str("Country"),
            location_type=location_type,
            is_mailing=is_mailing,
            is_mapped=is_mapped,
        )
        missing = [
            label for label, value in (
                ("Address", address.street1),
                ("City", address.city),
                ("State/Province", address.state),
            )
            if not value
        ]
        if len(missing) == 3:
            ctx.skip(result, row, "empty address")
            continue
        if missing:
            log.warning(
                "household %s: address missing %s; not imported",
                household_id, ", ".join(missing),
            )
            ctx.skip(result, row, f"address missing {', '.join(missing)}")
            continue

        key = (owner.person_id, address.address_key())
        if key in seen:
            continue
        seen.add(key)
        ctx.writer.stage(address)
        completed += 1
        progress.step(completed)
        ctx.writer.maybe_flush(completed)

    result.imported = completed
    progress.finish(completed)
    return result
