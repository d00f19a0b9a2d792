"""fellowship_etl.store

Destination store: the protocol every mapping routine writes through, the
PostgreSQL implementation used by the CLI, and an in-memory implementation
for unit tests.

Records written by this tool carry a foreign marker (`foreign_key` text or
`foreign_id` integer) so a later run can find them again.  Natural-key
conflicts (memberships, attendance, phone numbers, attribute values,
addresses, relationships, transactions) are ignored, which makes a re-run
after a failed chunk safe.
"""

from __future__ import annotations

import contextlib
import dataclasses
import itertools
import logging
from typing import Any, Callable, Iterator, Protocol, Sequence

import psycopg

from fellowship_etl.models import (
    GROUP_TYPE_FAMILY,
    HOUSEHOLD_ID_ATTRIBUTE,
    INDIVIDUAL_ID_ATTRIBUTE,
    Attendance,
    AttributeValue,
    Campus,
    Family,
    FamilyAddress,
    FamilyRole,
    FinancialAccount,
    FinancialBatch,
    FinancialTransaction,
    Gender,
    GroupMember,
    GroupNode,
    GroupTypeNode,
    GroupTypeRole,
    LocationNode,
    NewPerson,
    Occurrence,
    PersonEmail,
    PersonKey,
    PersonRelationship,
    PhoneNumber,
    ScheduleNode,
)

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class DestinationStore(Protocol):
    """Query/transaction primitives of the destination data model."""

    def upsert_batch(self, kind: str, entities: Sequence[Any]) -> None:
        """Write entities of one kind, assigning destination ids in place."""
        ...

    def insert(self, entity: Any) -> None:
        """Write one entity immediately (its id is needed right away)."""
        ...

    def query_by_foreign_key(self, kind: str, key: Any) -> Any | None:
        ...

    def query_all_by_marker(self, kind: str) -> list[Any]:
        ...

    def query_by_system_key(self, kind: str, key: str) -> Any | None:
        ...

    def transaction(self) -> contextlib.AbstractContextManager:
        ...

    def recycle(self) -> None:
        """Drop per-session state; the next call runs on a fresh session."""
        ...

    def close(self) -> None:
        ...


def _person_attributes(person: NewPerson) -> dict[str, str]:
    values = dict(person.attributes)
    if person.individual_id is not None:
        values[INDIVIDUAL_ID_ATTRIBUTE] = str(person.individual_id)
    if person.household_id is not None:
        values[HOUSEHOLD_ID_ATTRIBUTE] = str(person.household_id)
    return values


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------

class PostgresStore:
    """psycopg 3 store over the schema in migrations/.

    Normal runs use an autocommit connection so each transaction() block
    commits on exit.  Dry runs keep one outer transaction, turn every
    transaction() block into a savepoint and roll everything back on close.
    """

    def __init__(self, dsn: str, dry_run: bool = False) -> None:
        self._dsn = dsn
        self._dry_run = dry_run
        self._conn = self._connect()
        self._family_roles: dict[str, int] = {}
        self._savepoints = itertools.count(1)

    def _connect(self) -> psycopg.Connection:
        return psycopg.connect(self._dsn, autocommit=not self._dry_run)

    @property
    def connection(self) -> psycopg.Connection:
        return self._conn

    # -- session ------------------------------------------------------------

    @contextlib.contextmanager
    def transaction(self) -> Iterator[None]:
        if not self._dry_run:
            with self._conn.transaction():
                yield
            return
        sp_name = f"chunk_{next(self._savepoints)}"
        self._conn.execute(f"SAVEPOINT {sp_name}")
        try:
            yield
        except BaseException:
            self._conn.execute(f"ROLLBACK TO SAVEPOINT {sp_name}")
            raise
        self._conn.execute(f"RELEASE SAVEPOINT {sp_name}")

    def recycle(self) -> None:
        if self._dry_run:
            return
        self._conn.close()
        self._conn = self._connect()

    def close(self) -> None:
        if self._dry_run and not self._conn.closed:
            self._conn.rollback()
        self._conn.close()

    # -- writes -------------------------------------------------------------

    def upsert_batch(self, kind: str, entities: Sequence[Any]) -> None:
        writer = self._writers()[kind]
        for entity in entities:
            writer(entity)

    def insert(self, entity: Any) -> None:
        with self.transaction():
            self._writers()[entity.kind](entity)

    def _writers(self) -> dict[str, Callable[[Any], None]]:
        return {
            "family": self._write_family,
            "group_type": self._write_group_type,
            "group_type_role": self._write_group_type_role,
            "group": self._write_group,
            "group_member": self._write_group_member,
            "schedule": self._write_schedule,
            "location": self._write_location,
            "occurrence": self._write_occurrence,
            "attendance": self._write_attendance,
            "phone_number": self._write_phone_number,
            "person_email": self._write_person_email,
            "attribute_value": self._write_attribute_value,
            "person_relationship": self._write_person_relationship,
            "family_address": self._write_family_address,
            "financial_batch": self._write_financial_batch,
            "financial_account": self._write_financial_account,
            "financial_transaction": self._write_financial_transaction,
        }

    def _family_role_id(self, role: FamilyRole) -> int:
        name = "Child" if role == FamilyRole.CHILD else "Adult"
        if name not in self._family_roles:
            row = self._conn.execute(
                """
                SELECT r.id FROM group_type_role r
                JOIN group_type t ON t.id = r.group_type_id
                WHERE t.system_key = %s AND r.name = %s
                """,
                (GROUP_TYPE_FAMILY, name),
            ).fetchone()
            if row is None:
                raise LookupError(f"family role {name!r} is not seeded")
            self._family_roles[name] = row[0]
        return self._family_roles[name]

    def _write_family(self, family: Family) -> None:
        row = self._conn.execute(
            """
            INSERT INTO church_group
              (name, foreign_key, group_type_id, campus_id, is_active, created_at)
            SELECT %s, %s, t.id, %s, true, COALESCE(%s, now())
            FROM group_type t WHERE t.system_key = %s
            RETURNING id
            """,
            (
                family.name,
                str(family.household_id) if family.household_id is not None else None,
                family.campus_id,
                family.created_at,
                GROUP_TYPE_FAMILY,
            ),
        ).fetchone()
        family.id = row[0]
        for person in family.members:
            self._write_person(person)
            self._conn.execute(
                """
                INSERT INTO group_member (group_id, person_id, group_role_id)
                VALUES (%s, %s, %s)
                ON CONFLICT (group_id, person_id, group_role_id) DO NOTHING
                """,
                (family.id, person.id, self._family_role_id(person.family_role)),
            )

    def _write_person(self, person: NewPerson) -> None:
        row = self._conn.execute(
            """
            INSERT INTO person
              (first_name, nick_name, middle_name, last_name, title, suffix,
               birth_date, gender, marital_status, connection_status,
               record_status, record_type, is_deceased, email, family_role,
               campus_id, foreign_id, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                    %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, now()))
            RETURNING id
            """,
            (
                person.first_name, person.nick_name, person.middle_name,
                person.last_name, person.title, person.suffix,
                person.birth_date, int(person.gender), person.marital_status,
                person.connection_status, person.record_status,
                person.record_type, person.is_deceased, person.email,
                person.family_role.label, person.campus_id,
                person.individual_id, person.created_at,
            ),
        ).fetchone()
        person.id = row[0]
        alias = self._conn.execute(
            "INSERT INTO person_alias (person_id, foreign_id) VALUES (%s, %s) RETURNING id",
            (person.id, person.individual_id),
        ).fetchone()
        person.alias_id = alias[0]
        for key, value in _person_attributes(person).items():
            self._write_attribute_value(AttributeValue(person.id, key, value))

    def _write_group_type(self, node: GroupTypeNode) -> None:
        row = self._conn.execute(
            """
            INSERT INTO group_type (name, foreign_key, system_key, takes_attendance)
            VALUES (%s, %s, %s, %s)
            RETURNING id
            """,
            (node.name, node.foreign_key, node.system_key, node.takes_attendance),
        ).fetchone()
        node.id = row[0]

    def _write_group_type_role(self, role: GroupTypeRole) -> None:
        row = self._conn.execute(
            """
            INSERT INTO group_type_role (group_type_id, name, is_leader, foreign_key)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (group_type_id, name) DO UPDATE SET name = EXCLUDED.name
            RETURNING id
            """,
            (role.group_type_id, role.name, role.is_leader, role.foreign_key),
        ).fetchone()
        role.id = row[0]

    def _write_group(self, node: GroupNode) -> None:
        row = self._conn.execute(
            """
            INSERT INTO church_group
              (name, foreign_key, system_key, group_type_id, parent_group_id,
               campus_id, schedule_id, is_active, description, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, now()))
            RETURNING id
            """,
            (
                node.name, node.foreign_key, node.system_key, node.group_type_id,
                node.resolved_parent_id(), node.campus_id, node.schedule_id,
                node.is_active, node.description, node.created_at,
            ),
        ).fetchone()
        node.id = row[0]
        if node.location_id is not None:
            self._conn.execute(
                """
                INSERT INTO group_location (group_id, location_id)
                VALUES (%s, %s)
                ON CONFLICT (group_id, location_id) DO NOTHING
                """,
                (node.id, node.location_id),
            )

    def _write_group_member(self, member: GroupMember) -> None:
        if member.group.id is None:
            raise ValueError(
                f"group member staged for unsaved group {member.group.foreign_key!r}"
            )
        row = self._conn.execute(
            """
            INSERT INTO group_member
              (group_id, person_id, group_role_id, is_active, note, created_at)
            VALUES (%s, %s, %s, %s, %s, COALESCE(%s, now()))
            ON CONFLICT (group_id, person_id, group_role_id) DO NOTHING
            RETURNING id
            """,
            (
                member.group.id, member.person_id, member.role_id,
                member.is_active, member.note, member.added_at,
            ),
        ).fetchone()
        member.id = row[0] if row else None

    def _write_schedule(self, node: ScheduleNode) -> None:
        row = self._conn.execute(
            """
            INSERT INTO schedule
              (name, foreign_key, day_of_week, time_of_day, is_active, description)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                node.name, node.foreign_key, node.day_of_week, node.time_of_day,
                node.is_active, node.description,
            ),
        ).fetchone()
        node.id = row[0]

    def _write_location(self, node: LocationNode) -> None:
        row = self._conn.execute(
            """
            INSERT INTO location
              (name, parent_location_id, foreign_key, is_active, capacity)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                node.name, node.parent_location_id, node.foreign_key,
                node.is_active, node.capacity,
            ),
        ).fetchone()
        node.id = row[0]

    def _write_occurrence(self, occ: Occurrence) -> None:
        row = self._conn.execute(
            """
            INSERT INTO attendance_occurrence
              (group_id, location_id, schedule_id, occurrence_date)
            VALUES (%s, %s, %s, %s)
            RETURNING id
            """,
            (occ.group_id, occ.location_id, occ.schedule_id, occ.occurred_on),
        ).fetchone()
        occ.id = row[0]

    def _write_attendance(self, att: Attendance) -> None:
        row = self._conn.execute(
            """
            INSERT INTO attendance
              (occurrence_id, person_alias_id, start_at, end_at, did_attend,
               note, campus_id)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (occurrence_id, person_alias_id, start_at) DO NOTHING
            RETURNING id
            """,
            (
                att.occurrence_id, att.person_alias_id, att.start_at, att.end_at,
                att.did_attend, att.note, att.campus_id,
            ),
        ).fetchone()
        att.id = row[0] if row else None

    def _write_phone_number(self, phone: PhoneNumber) -> None:
        row = self._conn.execute(
            """
            INSERT INTO phone_number
              (person_id, number, extension, country_code, type_name,
               is_unlisted, is_messaging_enabled, description, foreign_id)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (person_id, number, type_name) DO NOTHING
            RETURNING id
            """,
            (
                phone.person_id, phone.number, phone.extension,
                phone.country_code, phone.type_name, phone.is_unlisted,
                phone.is_messaging_enabled, phone.description, phone.foreign_id,
            ),
        ).fetchone()
        phone.id = row[0] if row else None

    def _write_person_email(self, email: PersonEmail) -> None:
        updated = self._conn.execute(
            """
            UPDATE person SET email = %s
            WHERE id = %s AND (email IS NULL OR email = '')
            RETURNING id
            """,
            (email.email, email.person_id),
        ).fetchone()
        if updated:
            return
        self._conn.execute(
            """
            INSERT INTO person_search_key (person_id, search_value)
            SELECT %s, %s
            WHERE NOT EXISTS (
              SELECT 1 FROM person WHERE id = %s AND lower(email) = lower(%s)
            )
            ON CONFLICT (person_id, search_value) DO NOTHING
            """,
            (email.person_id, email.email, email.person_id, email.email),
        )

    def _write_attribute_value(self, value: AttributeValue) -> None:
        self._conn.execute(
            """
            INSERT INTO person_attribute_value (person_id, attribute_key, value)
            VALUES (%s, %s, %s)
            ON CONFLICT (person_id, attribute_key) DO NOTHING
            """,
            (value.person_id, value.key, value.value),
        )

    def _write_person_relationship(self, rel: PersonRelationship) -> None:
        row = self._conn.execute(
            """
            INSERT INTO person_relationship (person_id, related_person_id, relationship)
            VALUES (%s, %s, %s)
            ON CONFLICT (person_id, related_person_id, relationship) DO NOTHING
            RETURNING id
            """,
            (rel.person.id, rel.related.id, rel.relationship),
        ).fetchone()
        rel.id = row[0] if row else None

    def _write_family_address(self, address: FamilyAddress) -> None:
        row = self._conn.execute(
            """
            INSERT INTO address
              (street1, street2, city, state, postal_code, country, address_key)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (address_key) DO UPDATE SET address_key = EXCLUDED.address_key
            RETURNING id
            """,
            (
                address.street1, address.street2, address.city, address.state,
                address.postal_code, address.country, address.address_key(),
            ),
        ).fetchone()
        address.address_id = row[0]
        row = self._conn.execute(
            """
            INSERT INTO group_address
              (group_id, address_id, location_type, is_mailing, is_mapped)
            SELECT m.group_id, %s, %s, %s, %s
            FROM group_member m
            JOIN church_group g ON g.id = m.group_id
            JOIN group_type t ON t.id = g.group_type_id
            WHERE m.person_id = %s AND t.system_key = %s
            ORDER BY m.group_id
            LIMIT 1
            ON CONFLICT (group_id, address_id) DO NOTHING
            RETURNING id
            """,
            (
                address.address_id, address.location_type, address.is_mailing,
                address.is_mapped, address.person_id, GROUP_TYPE_FAMILY,
            ),
        ).fetchone()
        address.id = row[0] if row else None

    def _write_financial_batch(self, batch: FinancialBatch) -> None:
        self._conn.execute(
            """
            INSERT INTO financial_batch
              (name, batch_date, control_amount, campus_id, foreign_id)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (foreign_id) DO NOTHING
            """,
            (
                batch.name, batch.batch_date, batch.control_amount,
                batch.campus_id, batch.foreign_id,
            ),
        )
        row = self._conn.execute(
            "SELECT id FROM financial_batch WHERE foreign_id = %s",
            (batch.foreign_id,),
        ).fetchone()
        batch.id = row[0]

    def _write_financial_account(self, account: FinancialAccount) -> None:
        row = self._conn.execute(
            """
            INSERT INTO financial_account
              (name, foreign_key, parent_account_id, campus_id, is_active)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                account.name, account.foreign_key, account.parent_account_id,
                account.campus_id, account.is_active,
            ),
        ).fetchone()
        account.id = row[0]

    def _write_financial_transaction(self, txn: FinancialTransaction) -> None:
        row = self._conn.execute(
            """
            INSERT INTO financial_transaction
              (foreign_id, person_alias_id, batch_id, account_id, amount,
               transaction_date, check_number, transaction_type, summary)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (foreign_id) DO NOTHING
            RETURNING id
            """,
            (
                txn.foreign_id, txn.person_alias_id, txn.batch_id, txn.account_id,
                txn.amount, txn.transaction_date, txn.check_number,
                txn.transaction_type, txn.summary,
            ),
        ).fetchone()
        txn.id = row[0] if row else None

    # -- reads --------------------------------------------------------------

    def query_by_foreign_key(self, kind: str, key: Any) -> Any | None:
        if kind == "group":
            rows = self._select_groups("g.foreign_key = %s", (str(key),))
        elif kind == "group_type":
            rows = self._select_group_types("foreign_key = %s", (str(key),))
        elif kind == "schedule":
            rows = self._select_schedules("foreign_key = %s", (str(key),))
        elif kind == "financial_batch":
            rows = self._select_batches("foreign_id = %s", (int(key),))
        else:
            raise KeyError(f"no foreign-key lookup for kind {kind!r}")
        return rows[0] if rows else None

    def query_by_system_key(self, kind: str, key: str) -> Any | None:
        if kind == "group":
            rows = self._select_groups("g.system_key = %s", (key,))
        elif kind == "group_type":
            rows = self._select_group_types("system_key = %s", (key,))
        else:
            raise KeyError(f"no system-key lookup for kind {kind!r}")
        return rows[0] if rows else None

    def query_all_by_marker(self, kind: str) -> list[Any]:
        if kind == "person_key":
            return self._select_person_keys()
        if kind == "campus":
            return [
                Campus(id=r[0], name=r[1], short_code=r[2], location_id=r[3])
                for r in self._conn.execute(
                    "SELECT id, name, short_code, location_id FROM campus ORDER BY id"
                ).fetchall()
            ]
        if kind == "group_type":
            return self._select_group_types("foreign_key IS NOT NULL", ())
        if kind == "group_type_role":
            return [
                GroupTypeRole(
                    group_type_id=r[1], name=r[2], is_leader=r[3],
                    foreign_key=r[4], id=r[0],
                )
                for r in self._conn.execute(
                    """
                    SELECT id, group_type_id, name, is_leader, foreign_key
                    FROM group_type_role ORDER BY id
                    """
                ).fetchall()
            ]
        if kind == "group":
            return self._select_groups(
                "g.foreign_key IS NOT NULL AND t.system_key IS DISTINCT FROM %s",
                (GROUP_TYPE_FAMILY,),
            )
        if kind == "schedule":
            return self._select_schedules("foreign_key IS NOT NULL", ())
        if kind == "location":
            return [
                LocationNode(
                    name=r[1], parent_location_id=r[2], foreign_key=r[3],
                    is_active=r[4], capacity=r[5], id=r[0],
                )
                for r in self._conn.execute(
                    """
                    SELECT id, name, parent_location_id, foreign_key, is_active, capacity
                    FROM location ORDER BY id
                    """
                ).fetchall()
            ]
        if kind == "occurrence":
            return [
                Occurrence(
                    group_id=r[1], location_id=r[2], schedule_id=r[3],
                    occurred_on=r[4], id=r[0],
                )
                for r in self._conn.execute(
                    """
                    SELECT id, group_id, location_id, schedule_id, occurrence_date
                    FROM attendance_occurrence ORDER BY id
                    """
                ).fetchall()
            ]
        if kind == "financial_batch":
            return self._select_batches("foreign_id IS NOT NULL", ())
        if kind == "financial_account":
            return [
                FinancialAccount(
                    name=r[1], foreign_key=r[2], parent_account_id=r[3],
                    campus_id=r[4], is_active=r[5], id=r[0],
                )
                for r in self._conn.execute(
                    """
                    SELECT id, name, foreign_key, parent_account_id, campus_id, is_active
                    FROM financial_account ORDER BY id
                    """
                ).fetchall()
            ]
        raise KeyError(f"no marker query for kind {kind!r}")

    def _select_person_keys(self) -> list[PersonKey]:
        rows = self._conn.execute(
            """
            SELECT p.id, a.id, ind.value, hh.value, p.gender, p.family_role
            FROM person_attribute_value hh
            JOIN person p ON p.id = hh.person_id
            LEFT JOIN person_attribute_value ind
              ON ind.person_id = p.id AND ind.attribute_key = %s
            LEFT JOIN LATERAL (
              SELECT id FROM person_alias WHERE person_id = p.id ORDER BY id LIMIT 1
            ) a ON true
            WHERE hh.attribute_key = %s
            ORDER BY p.id
            """,
            (INDIVIDUAL_ID_ATTRIBUTE, HOUSEHOLD_ID_ATTRIBUTE),
        ).fetchall()
        return [
            PersonKey(
                person_id=r[0],
                alias_id=r[1],
                individual_id=_int_or_none(r[2]),
                household_id=_int_or_none(r[3]),
                gender=Gender(r[4]) if r[4] in (0, 1, 2) else Gender.UNKNOWN,
                family_role=FamilyRole.from_label(r[5]),
            )
            for r in rows
        ]

    def _select_groups(self, where: str, params: tuple) -> list[GroupNode]:
        rows = self._conn.execute(
            f"""
            SELECT g.id, g.foreign_key, g.name, g.group_type_id, g.parent_group_id,
                   g.campus_id, g.schedule_id,
                   (SELECT gl.location_id FROM group_location gl
                    WHERE gl.group_id = g.id ORDER BY gl.id LIMIT 1),
                   g.is_active, g.system_key
            FROM church_group g
            JOIN group_type t ON t.id = g.group_type_id
            WHERE {where}
            ORDER BY g.id
            """,
            params,
        ).fetchall()
        return [
            GroupNode(
                foreign_key=r[1], name=r[2], group_type_id=r[3],
                parent_group_id=r[4], campus_id=r[5], schedule_id=r[6],
                location_id=r[7], is_active=r[8], system_key=r[9], id=r[0],
            )
            for r in rows
        ]

    def _select_group_types(self, where: str, params: tuple) -> list[GroupTypeNode]:
        rows = self._conn.execute(
            f"""
            SELECT id, name, foreign_key, system_key, takes_attendance
            FROM group_type WHERE {where} ORDER BY id
            """,
            params,
        ).fetchall()
        return [
            GroupTypeNode(
                name=r[1], foreign_key=r[2], system_key=r[3],
                takes_attendance=r[4], id=r[0],
            )
            for r in rows
        ]

    def _select_schedules(self, where: str, params: tuple) -> list[ScheduleNode]:
        rows = self._conn.execute(
            f"""
            SELECT id, foreign_key, name, day_of_week, time_of_day, is_active, description
            FROM schedule WHERE {where} ORDER BY id
            """,
            params,
        ).fetchall()
        return [
            ScheduleNode(
                foreign_key=r[1], name=r[2], day_of_week=r[3], time_of_day=r[4],
                is_active=r[5], description=r[6], id=r[0],
            )
            for r in rows
        ]

    def _select_batches(self, where: str, params: tuple) -> list[FinancialBatch]:
        rows = self._conn.execute(
            f"""
            SELECT id, foreign_id, name, batch_date, control_amount, campus_id
            FROM financial_batch WHERE {where} ORDER BY id
            """,
            params,
        ).fetchall()
        return [
            FinancialBatch(
                foreign_id=r[1], name=r[2], batch_date=r[3],
                control_amount=r[4], campus_id=r[5], id=r[0],
            )
            for r in rows
        ]


# ---------------------------------------------------------------------------
# In-memory (unit tests)
# ---------------------------------------------------------------------------

class MemoryStore:
    """Dict-backed store with the same write/read semantics as PostgresStore.

    Query results are copies, so a fresh ReferenceSet loaded from the same
    MemoryStore behaves like a new run against the same database.
    """

    def __init__(self, campuses: Sequence[Campus] = ()) -> None:
        self._ids = itertools.count(1)
        self.campuses: list[Campus] = list(campuses)
        self.people: list[NewPerson] = []
        self.attributes: dict[tuple[int, str], str] = {}
        self.search_keys: set[tuple[int, str]] = set()
        self.families: list[Family] = []
        self.group_types: list[GroupTypeNode] = []
        self.roles: list[GroupTypeRole] = []
        self.groups: list[GroupNode] = []
        self.members: dict[tuple[int, int, int | None], GroupMember] = {}
        self.schedules: list[ScheduleNode] = []
        self.locations: list[LocationNode] = []
        self.occurrences: list[Occurrence] = []
        self.attendance: dict[tuple[int, int, Any], Attendance] = {}
        self.phone_numbers: dict[tuple[int, str, str], PhoneNumber] = {}
        self.addresses: dict[str, int] = {}
        self.family_addresses: dict[tuple[int, int], FamilyAddress] = {}
        self.relationships: dict[tuple[int, int, str], PersonRelationship] = {}
        self.batches: dict[int, FinancialBatch] = {}
        self.accounts: list[FinancialAccount] = []
        self.transactions: dict[int, FinancialTransaction] = {}
        self.upsert_calls: list[tuple[str, int]] = []
        self.recycle_count = 0
        self._seed()

    def _seed(self) -> None:
        for name, system_key, takes_attendance in (
            ("Family", "family", False),
            ("General Groups", "general", True),
            ("Serving Team", "serving_team", True),
            ("Small Group", "small_group", True),
        ):
            node = GroupTypeNode(
                name=name, system_key=system_key,
                takes_attendance=takes_attendance, id=next(self._ids),
            )
            self.group_types.append(node)
        seeded_roles = {
            "family": [("Adult", False), ("Child", False)],
            "general": [("Member", False)],
            "serving_team": [("Member", False), ("Leader", True)],
            "small_group": [("Member", False), ("Leader", True)],
        }
        for node in self.group_types:
            for role_name, is_leader in seeded_roles[node.system_key]:
                self.roles.append(GroupTypeRole(
                    group_type_id=node.id, name=role_name,
                    is_leader=is_leader, id=next(self._ids),
                ))
        serving = self._system_type("serving_team")
        self.groups.append(GroupNode(
            foreign_key=None, name="Serving Teams", group_type_id=serving.id,
            system_key="serving_teams", id=next(self._ids),
        ))

    def _system_type(self, key: str) -> GroupTypeNode:
        return next(t for t in self.group_types if t.system_key == key)

    # -- session ------------------------------------------------------------

    @contextlib.contextmanager
    def transaction(self) -> Iterator[None]:
        yield

    def recycle(self) -> None:
        self.recycle_count += 1

    def close(self) -> None:
        pass

    # -- writes -------------------------------------------------------------

    def upsert_batch(self, kind: str, entities: Sequence[Any]) -> None:
        self.upsert_calls.append((kind, len(entities)))
        for entity in entities:
            self._write(entity)

    def insert(self, entity: Any) -> None:
        self._write(entity)

    def _write(self, entity: Any) -> None:
        kind = entity.kind
        if kind == "family":
            self._write_family(entity)
        elif kind == "group":
            entity.resolved_parent_id()
            entity.id = next(self._ids)
            self.groups.append(entity)
        elif kind == "group_type":
            entity.id = next(self._ids)
            self.group_types.append(entity)
        elif kind == "group_type_role":
            existing = next(
                (r for r in self.roles
                 if r.group_type_id == entity.group_type_id and r.name == entity.name),
                None,
            )
            if existing:
                entity.id = existing.id
            else:
                entity.id = next(self._ids)
                self.roles.append(entity)
        elif kind == "group_member":
            if entity.group.id is None:
                raise ValueError(
                    f"group member staged for unsaved group {entity.group.foreign_key!r}"
                )
            key = (entity.group.id, entity.person_id, entity.role_id)
            if key not in self.members:
                entity.id = next(self._ids)
                self.members[key] = entity
        elif kind == "schedule":
            entity.id = next(self._ids)
            self.schedules.append(entity)
        elif kind == "location":
            entity.id = next(self._ids)
            self.locations.append(entity)
        elif kind == "occurrence":
            entity.id = next(self._ids)
            self.occurrences.append(entity)
        elif kind == "attendance":
            key = (entity.occurrence_id, entity.person_alias_id, entity.start_at)
            if key not in self.attendance:
                entity.id = next(self._ids)
                self.attendance[key] = entity
        elif kind == "phone_number":
            key = (entity.person_id, entity.number, entity.type_name)
            if key not in self.phone_numbers:
                entity.id = next(self._ids)
                self.phone_numbers[key] = entity
        elif kind == "person_email":
            person = next(p for p in self.people if p.id == entity.person_id)
            if not person.email:
                person.email = entity.email
            elif person.email.lower() != entity.email.lower():
                self.search_keys.add((person.id, entity.email))
        elif kind == "attribute_value":
            self.attributes.setdefault((entity.person_id, entity.key), entity.value)
        elif kind == "person_relationship":
            key = (entity.person.id, entity.related.id, entity.relationship)
            if key not in self.relationships:
                entity.id = next(self._ids)
                self.relationships[key] = entity
        elif kind == "family_address":
            self._write_family_address(entity)
        elif kind == "financial_batch":
            existing = self.batches.get(entity.foreign_id)
            if existing:
                entity.id = existing.id
            else:
                entity.id = next(self._ids)
                self.batches[entity.foreign_id] = entity
        elif kind == "financial_account":
            entity.id = next(self._ids)
            self.accounts.append(entity)
        elif kind == "financial_transaction":
            if entity.foreign_id not in self.transactions:
                entity.id = next(self._ids)
                self.transactions[entity.foreign_id] = entity
        else:
            raise KeyError(f"unknown entity kind {kind!r}")

    def _write_family(self, family: Family) -> None:
        family.id = next(self._ids)
        self.families.append(family)
        family_type = self._system_type(GROUP_TYPE_FAMILY)
        for person in family.members:
            person.id = next(self._ids)
            person.alias_id = next(self._ids)
            self.people.append(person)
            for key, value in _person_attributes(person).items():
                self.attributes.setdefault((person.id, key), value)
            role_name = "Child" if person.family_role == FamilyRole.CHILD else "Adult"
            role = next(
                r for r in self.roles
                if r.group_type_id == family_type.id and r.name == role_name
            )
            self.members[(family.id, person.id, role.id)] = GroupMember(
                group=GroupNode(
                    foreign_key=str(family.household_id), name=family.name,
                    group_type_id=family_type.id, id=family.id,
                ),
                person_id=person.id,
                role_id=role.id,
            )

    def _write_family_address(self, address: FamilyAddress) -> None:
        family_type = self._system_type(GROUP_TYPE_FAMILY)
        family_ids = sorted(
            m.group.id for m in self.members.values()
            if m.person_id == address.person_id and m.group.group_type_id == family_type.id
        )
        address_key = address.address_key()
        if address_key not in self.addresses:
            self.addresses[address_key] = next(self._ids)
        address.address_id = self.addresses[address_key]
        if not family_ids:
            return
        key = (family_ids[0], address.address_id)
        if key not in self.family_addresses:
            address.id = next(self._ids)
            self.family_addresses[key] = address

    # -- reads --------------------------------------------------------------

    def query_by_foreign_key(self, kind: str, key: Any) -> Any | None:
        pools: dict[str, list[Any]] = {
            "group": self.groups,
            "group_type": self.group_types,
            "schedule": self.schedules,
        }
        if kind == "financial_batch":
            found = self.batches.get(int(key))
            return dataclasses.replace(found) if found else None
        if kind not in pools:
            raise KeyError(f"no foreign-key lookup for kind {kind!r}")
        for item in pools[kind]:
            if item.foreign_key == str(key):
                return dataclasses.replace(item)
        return None

    def query_by_system_key(self, kind: str, key: str) -> Any | None:
        pool = {"group": self.groups, "group_type": self.group_types}.get(kind)
        if pool is None:
            raise KeyError(f"no system-key lookup for kind {kind!r}")
        for item in pool:
            if item.system_key == key:
                return dataclasses.replace(item)
        return None

    def query_all_by_marker(self, kind: str) -> list[Any]:
        if kind == "person_key":
            return [
                p.key() for p in self.people
                if (p.id, HOUSEHOLD_ID_ATTRIBUTE) in self.attributes
            ]
        if kind == "group":
            family_type = self._system_type(GROUP_TYPE_FAMILY)
            return [
                dataclasses.replace(g, parent=None) for g in self.groups
                if g.foreign_key is not None and g.group_type_id != family_type.id
            ]
        if kind == "group_type":
            return [
                dataclasses.replace(t) for t in self.group_types
                if t.foreign_key is not None
            ]
        if kind == "schedule":
            return [
                dataclasses.replace(s) for s in self.schedules
                if s.foreign_key is not None
            ]
        if kind == "financial_batch":
            return [dataclasses.replace(b) for b in self.batches.values()]
        pools: dict[str, list[Any]] = {
            "campus": self.campuses,
            "group_type_role": self.roles,
            "location": self.locations,
            "occurrence": self.occurrences,
            "financial_account": self.accounts,
        }
        if kind not in pools:
            raise KeyError(f"no marker query for kind {kind!r}")
        return [dataclasses.replace(item) for item in pools[kind]]
