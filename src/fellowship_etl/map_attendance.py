"""fellowship_etl.map_attendance

Check-in (Attendance) and home-group (GroupsAttendance) attendance.

Every attendance record hangs off an occurrence keyed by
(group, location, schedule, day).  Occurrences are created through the
OccurrenceResolver, which saves each new one immediately so its id can be
used by attendance records staged in the same chunk.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from fellowship_etl.batch import TableProgress
from fellowship_etl.context import ImportContext
from fellowship_etl.hierarchy import ServingVariant, variant_key
from fellowship_etl.models import Attendance, GroupNode
from fellowship_etl.resolver import resolve_person
from fellowship_etl.shared import TableResult
from fellowship_etl.source import SourceRow

log = logging.getLogger(__name__)


def attendance_group(ctx: ImportContext, source_id: int | None) -> GroupNode | None:
    if source_id is None:
        return None
    for variant in ServingVariant:
        node = ctx.refs.group_by_key(variant_key(str(source_id), variant))
        if node is not None and node.id is not None:
            return node
    return None


def _stage_attendance(
    ctx: ImportContext,
    group: GroupNode | None,
    schedule_id: int | None,
    person_alias_id: int,
    start: datetime,
    end: datetime | None,
    did_attend: bool,
    note: str | None,
) -> None:
    occurrence_id = ctx.occurrences.resolve_or_create(
        group.id if group else None,
        start,
        schedule_id,
        group.location_id if group else None,
    )
    ctx.writer.stage(Attendance(
        occurrence_id=occurrence_id,
        person_alias_id=person_alias_id,
        start_at=start,
        end_at=end,
        did_attend=did_attend,
        note=note,
        campus_id=group.campus_id if group else None,
    ))


def map_attendance(
    ctx: ImportContext,
    rows: Iterable[SourceRow],
    total: int,
) -> TableResult:
    """Room check-ins; all occurrences use the Archived Attendance schedule."""
    result = TableResult("Attendance")
    archived = ctx.hierarchy.archived_schedule()
    progress = TableProgress(ctx.progress, "attendance", total)
    progress.start()

    completed = 0
    for row in rows:
        result.rows_read += 1
        individual_id = row.get_int("Individual_ID")
        start = row.get_datetime("Start_Date_Time")
        if individual_id is None or start is None:
            ctx.skip(result, row, "missing Individual_ID or Start_Date_Time")
            continue
        person = resolve_person(ctx.refs, individual_id)
        if person is None or person.alias_id is None:
            ctx.skip(result, row, f"individual {individual_id} not imported")
            continue

        _stage_attendance(
            ctx,
            attendance_group(ctx, row.get_int("RLC_ID")),
            archived.id,
            person.alias_id,
            start,
            row.get_datetime("Check_Out_Time"),
            True,
            row.get_str("BreakoutGroup_Name"),
        )
        completed += 1
        progress.step(completed)
        ctx.writer.maybe_flush(completed)

    result.imported = completed
    progress.finish(completed)
    return result


def map_group_attendance(
    ctx: ImportContext,
    rows: Iterable[SourceRow],
    total: int,
) -> TableResult:
    result = TableResult("GroupsAttendance")
    archived = ctx.hierarchy.archived_schedule()
    progress = TableProgress(ctx.progress, "group attendance", total)
    progress.start()

    completed = 0
    for row in rows:
        result.rows_read += 1
        individual_id = row.get_int("IndividualID")
        start = row.get_datetime("StartDateTime")
        if individual_id is None or start is None:
            ctx.skip(result, row, "missing IndividualID or StartDateTime")
            continue
        person = resolve_person(ctx.refs, individual_id)
        if person is None or person.alias_id is None:
            ctx.skip(result, row, f"individual {individual_id} not imported")
            continue

        group = attendance_group(ctx, row.get_int("GroupID"))
        schedule_id = group.schedule_id if group and group.schedule_id else archived.id
        _stage_attendance(
            ctx,
            group,
            schedule_id,
            person.alias_id,
            start,
            row.get_datetime("EndDateTime") or row.get_datetime("CheckoutDateTime"),
            row.get_int("Individual_Present") != 0,
            row.get_str("Comments"),
        )
        completed += 1
        progress.step(completed)
        ctx.writer.maybe_flush(completed)

    result.imported = completed
    progress.finish(completed)
    return result
