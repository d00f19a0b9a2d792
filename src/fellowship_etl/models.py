"""fellowship_etl.models

Cached reference nodes and the entity records staged for writing.

Every staged record carries a class-level `kind` naming the destination
table family it belongs to; the BatchWriter keeps one list per kind and
the store dispatches writes on it.  Destination ids are None until the
record has been written.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from enum import IntEnum
from typing import ClassVar

# ---------------------------------------------------------------------------
# Well-known keys
# ---------------------------------------------------------------------------

INDIVIDUAL_ID_ATTRIBUTE = "F1IndividualId"
HOUSEHOLD_ID_ATTRIBUTE = "F1HouseholdId"
LOGIN_ATTRIBUTE = "InFellowshipLogin"

GROUP_TYPE_FAMILY = "family"
GROUP_TYPE_GENERAL = "general"
GROUP_TYPE_SERVING_TEAM = "serving_team"
GROUP_TYPE_SMALL_GROUP = "small_group"
SERVING_TEAMS_GROUP = "serving_teams"


class FamilyRole(IntEnum):
    """Ordinal order is the household tie-break rank."""

    ADULT = 0
    CHILD = 1
    VISITOR = 2

    @classmethod
    def from_label(cls, label: str | None) -> "FamilyRole":
        if label:
            for role in cls:
                if role.name == label.strip().upper():
                    return role
        return cls.ADULT

    @property
    def label(self) -> str:
        return self.name.capitalize()


class Gender(IntEnum):
    UNKNOWN = 0
    MALE = 1
    FEMALE = 2

    @classmethod
    def parse(cls, value: str | None) -> "Gender":
        v = (value or "").strip().lower()
        if v in ("m", "male"):
            return cls.MALE
        if v in ("f", "female"):
            return cls.FEMALE
        return cls.UNKNOWN


# ---------------------------------------------------------------------------
# Reference nodes (cached)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PersonKey:
    person_id: int
    alias_id: int | None
    individual_id: int | None
    household_id: int | None
    gender: Gender = Gender.UNKNOWN
    family_role: FamilyRole = FamilyRole.ADULT


@dataclass
class Campus:
    id: int
    name: str
    short_code: str | None = None
    location_id: int | None = None


@dataclass
class GroupTypeNode:
    kind: ClassVar[str] = "group_type"

    name: str
    foreign_key: str | None = None
    system_key: str | None = None
    takes_attendance: bool = True
    id: int | None = None


@dataclass
class GroupTypeRole:
    kind: ClassVar[str] = "group_type_role"

    group_type_id: int
    name: str
    is_leader: bool = False
    foreign_key: str | None = None
    id: int | None = None


@dataclass
class GroupNode:
    kind: ClassVar[str] = "group"

    foreign_key: str | None
    name: str
    group_type_id: int | None
    parent_group_id: int | None = None
    campus_id: int | None = None
    schedule_id: int | None = None
    location_id: int | None = None
    is_active: bool = True
    description: str | None = None
    created_at: datetime | None = None
    system_key: str | None = None
    id: int | None = None
    # Parent node for records staged before the parent had an id.
    parent: "GroupNode | None" = field(default=None, repr=False, compare=False)

    def resolved_parent_id(self) -> int | None:
        if self.parent_group_id is None and self.parent is not None:
            self.parent_group_id = self.parent.id
        return self.parent_group_id


@dataclass
class ScheduleNode:
    kind: ClassVar[str] = "schedule"

    foreign_key: str
    name: str
    day_of_week: int | None = None
    time_of_day: time | None = None
    is_active: bool = True
    description: str | None = None
    id: int | None = None


@dataclass
class LocationNode:
    kind: ClassVar[str] = "location"

    name: str
    parent_location_id: int | None = None
    foreign_key: str | None = None
    is_active: bool = True
    capacity: int | None = None
    id: int | None = None


# ---------------------------------------------------------------------------
# Staged records
# ---------------------------------------------------------------------------

@dataclass
class NewPerson:
    first_name: str | None
    last_name: str | None
    individual_id: int | None
    household_id: int | None
    family_role: FamilyRole = FamilyRole.ADULT
    gender: Gender = Gender.UNKNOWN
    nick_name: str | None = None
    middle_name: str | None = None
    title: str | None = None
    suffix: str | None = None
    birth_date: date | None = None
    marital_status: str | None = None
    connection_status: str | None = None
    record_status: str = "active"
    is_deceased: bool = False
    record_type: str = "person"
    email: str | None = None
    campus_id: int | None = None
    created_at: datetime | None = None
    attributes: dict[str, str] = field(default_factory=dict)
    id: int | None = None
    alias_id: int | None = None

    def key(self) -> PersonKey:
        return PersonKey(
            person_id=self.id,  # type: ignore[arg-type]
            alias_id=self.alias_id,
            individual_id=self.individual_id,
            household_id=self.household_id,
            gender=self.gender,
            family_role=self.family_role,
        )


@dataclass
class Family:
    """A family group with its member people, written as one unit."""

    kind: ClassVar[str] = "family"

    household_id: int | None
    name: str
    campus_id: int | None = None
    members: list[NewPerson] = field(default_factory=list)
    created_at: datetime | None = None
    id: int | None = None


@dataclass
class GroupMember:
    kind: ClassVar[str] = "group_member"

    group: GroupNode
    person_id: int
    role_id: int | None
    is_active: bool = True
    added_at: datetime | None = None
    note: str | None = None
    id: int | None = None


@dataclass
class Occurrence:
    kind: ClassVar[str] = "occurrence"

    group_id: int | None
    location_id: int | None
    schedule_id: int | None
    occurred_on: date
    id: int | None = None


@dataclass
class Attendance:
    kind: ClassVar[str] = "attendance"

    occurrence_id: int
    person_alias_id: int
    start_at: datetime
    end_at: datetime | None = None
    did_attend: bool = True
    note: str | None = None
    campus_id: int | None = None
    id: int | None = None


@dataclass
class PhoneNumber:
    kind: ClassVar[str] = "phone_number"

    person_id: int
    number: str
    type_name: str
    country_code: str = "1"
    extension: str | None = None
    is_unlisted: bool = False
    is_messaging_enabled: bool = False
    description: str | None = None
    foreign_id: int | None = None
    id: int | None = None


@dataclass
class PersonEmail:
    """Primary email when the person has none, else kept as a search key."""

    kind: ClassVar[str] = "person_email"

    person_id: int
    email: str
    is_active: bool = True
    note: str | None = None
    foreign_id: int | None = None


@dataclass
class AttributeValue:
    """Person attribute value; an existing value for the key is kept."""

    kind: ClassVar[str] = "attribute_value"

    person_id: int
    key: str
    value: str


@dataclass
class PersonRelationship:
    """person knows related as relationship (Invited By, Can Check In, ...).

    Holds the NewPerson records themselves; both are written earlier in
    the same chunk, so their ids exist by the time this row is written.
    """

    kind: ClassVar[str] = "person_relationship"

    person: NewPerson
    related: NewPerson
    relationship: str
    id: int | None = None


@dataclass
class FamilyAddress:
    """An address attached to the family group of person_id."""

    kind: ClassVar[str] = "family_address"

    person_id: int
    street1: str | None
    street2: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None
    location_type: str | None = None
    is_mailing: bool = False
    is_mapped: bool = False
    address_id: int | None = None
    id: int | None = None

    def address_key(self) -> str:
        parts = (self.street1, self.street2, self.city, self.state, self.postal_code, self.country)
        return "|".join(" ".join((p or "").lower().split()) for p in parts)


@dataclass
class FinancialBatch:
    kind: ClassVar[str] = "financial_batch"

    foreign_id: int
    name: str
    batch_date: datetime | None = None
    control_amount: Decimal | None = None
    campus_id: int | None = None
    id: int | None = None


@dataclass
class FinancialAccount:
    kind: ClassVar[str] = "financial_account"

    name: str
    foreign_key: str | None = None
    parent_account_id: int | None = None
    campus_id: int | None = None
    is_active: bool = True
    id: int | None = None


@dataclass
class FinancialTransaction:
    kind: ClassVar[str] = "financial_transaction"

    foreign_id: int
    person_alias_id: int
    account_id: int
    amount: Decimal
    transaction_date: datetime | None = None
    batch_id: int | None = None
    check_number: str | None = None
    transaction_type: str | None = None
    summary: str | None = None
    id: int | None = None
