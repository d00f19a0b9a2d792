"""fellowship_etl.map_assignments

Participant (ActivityAssignment) and volunteer (Staffing_Assignment)
memberships in the ministry hierarchy.

Family, general and small-group types never receive assignment members,
so the archive root and home groups are excluded from lookups.
"""

from __future__ import annotations

import logging
from typing import Iterable

from fellowship_etl.batch import TableProgress
from fellowship_etl.campus import strip_prefix
from fellowship_etl.context import ImportContext
from fellowship_etl.hierarchy import ServingVariant, variant_key
from fellowship_etl.models import GroupMember, GroupNode
from fellowship_etl.normalize import title_case
from fellowship_etl.resolver import resolve_person
from fellowship_etl.shared import TableResult
from fellowship_etl.source import SourceRow

log = logging.getLogger(__name__)

PARTICIPANT_ROLE = "Member"


def _first_id(row: SourceRow, columns: tuple[str, ...]) -> int | None:
    for column in columns:
        value = row.get_int(column)
        if value is not None:
            return value
    return None


def _eligible(ctx: ImportContext, node: GroupNode | None) -> GroupNode | None:
    if node is None or node.group_type_id in ctx.refs.excluded_member_type_ids():
        return None
    return node


def participant_group(ctx: ImportContext, source_key: str) -> GroupNode | None:
    """Plain node first; a serving-only node still takes participants."""
    for variant in (
        ServingVariant.PLAIN,
        ServingVariant.SERVING_CASCADE,
        ServingVariant.SERVING_DIRECT,
    ):
        node = _eligible(ctx, ctx.refs.group_by_key(variant_key(source_key, variant)))
        if node is not None:
            return node
    return None


def volunteer_group(ctx: ImportContext, source_key: str) -> GroupNode | None:
    """Serving forms first (SERVT_, then SERV_), then the plain node."""
    for variant in (
        ServingVariant.SERVING_CASCADE,
        ServingVariant.SERVING_DIRECT,
        ServingVariant.PLAIN,
    ):
        node = _eligible(ctx, ctx.refs.group_by_key(variant_key(source_key, variant)))
        if node is not None:
            return node
    return None


# ---------------------------------------------------------------------------
# ActivityAssignment
# ---------------------------------------------------------------------------

def map_activity_assignment(
    ctx: ImportContext,
    rows: Iterable[SourceRow],
    total: int,
) -> TableResult:
    result = TableResult("ActivityAssignment")
    progress = TableProgress(ctx.progress, "participant assignment", total)
    progress.start()

    completed = 0
    for row in rows:
        result.rows_read += 1
        lookup_id = _first_id(row, ("RLC_ID", "Activity_Group_ID", "Activity_ID", "Ministry_ID"))
        if lookup_id is None:
            ctx.skip(result, row, "no RLC, activity group, activity or ministry id")
            continue
        group = participant_group(ctx, str(lookup_id))
        if group is None:
            ctx.skip(result, row, f"group {lookup_id} not imported")
            continue
        individual_id = row.get_int("Individual_ID")
        person = resolve_person(ctx.refs, individual_id) if individual_id is not None else None
        if person is None:
            ctx.skip(result, row, f"individual {individual_id} not imported")
            continue

        stop = row.get_datetime("Activity_End_Time")
        role = ctx.hierarchy.role(group.group_type_id, PARTICIPANT_ROLE)
        ctx.writer.stage(GroupMember(
            group=group,
            person_id=person.person_id,
            role_id=role.id,
            is_active=stop is None or stop.date() > ctx.today,
            added_at=row.get_datetime("Activity_Start_Time") or row.get_datetime("AssignmentDateTime"),
            note=row.get_str("Activity_Time_Name"),
        ))
        completed += 1
        progress.step(completed)
        ctx.writer.maybe_flush(completed)

    result.imported = completed
    progress.finish(completed)
    return result


# ---------------------------------------------------------------------------
# Staffing_Assignment
# ---------------------------------------------------------------------------

def volunteer_role_name(ctx: ImportContext, job_title: str | None) -> str:
    title = job_title or PARTICIPANT_ROLE
    campus = ctx.campuses.find(title)
    if campus is not None:
        title = strip_prefix(title, campus)
    return title_case(title) or PARTICIPANT_ROLE


def map_staffing_assignment(
    ctx: ImportContext,
    rows: Iterable[SourceRow],
    total: int,
) -> TableResult:
    """Volunteer memberships; unresolved group ids are collected for the report."""
    result = TableResult("Staffing_Assignment")
    progress = TableProgress(ctx.progress, "volunteer assignment", total)
    progress.start()

    completed = 0
    for row in rows:
        result.rows_read += 1
        lookup_id = _first_id(row, ("RLC_ID", "Activity_Group_ID", "Activity_ID", "Ministry_ID"))
        if lookup_id is None:
            ctx.skip(result, row, "no RLC, activity group, activity or ministry id")
            continue
        group = volunteer_group(ctx, str(lookup_id))
        if group is None:
            key = str(lookup_id)
            if key not in result.skipped_group_keys:
                result.skipped_group_keys.append(key)
                ctx.counters.warnings.append(
                    f"Staffing_Assignment: volunteer group {key} not found; assignments skipped"
                )
            ctx.skip(result, row, f"group {lookup_id} not imported")
            continue
        individual_id = row.get_int("Individual_ID")
        person = resolve_person(ctx.refs, individual_id) if individual_id is not None else None
        if person is None:
            ctx.skip(result, row, f"individual {individual_id} not imported")
            continue

        role_name = volunteer_role_name(ctx, row.get_str("Job_Title"))
        role = ctx.hierarchy.role(
            group.group_type_id, role_name, is_leader=role_name.endswith("Leader")
        )
        ctx.writer.stage(GroupMember(
            group=group,
            person_id=person.person_id,
            role_id=role.id,
            is_active=row.get_bool("Is_Active") is not False,
            note=row.get_str("Activity_Time_Name"),
        ))
        completed += 1
        progress.step(completed)
        ctx.writer.maybe_flush(completed)

    if result.skipped_group_keys:
        log.warning(
            "volunteer groups not found, assignments skipped: %s",
            ", ".join(result.skipped_group_keys),
        )
    result.imported = completed
    progress.finish(completed)
    return result
