"""fellowship_etl.map_groups

Mapping routines for the group hierarchy tables:

  ActivityMinistry   ministry → activity
  Activity_Group     activity → (super group) → activity group
  RLC                activity group / activity → room, plus its location chain
  Activity_Schedule  weekly activity schedules
  GroupsDescription  weekly home-group schedules
  Groups             home groups and their members

Every routine takes (ctx, rows, total) and returns a TableResult.
"""

from __future__ import annotations

import logging
from datetime import datetime, time
from typing import Iterable

from fellowship_etl.batch import TableProgress
from fellowship_etl.campus import Direction
from fellowship_etl.context import ImportContext
from fellowship_etl.hierarchy import (
    ATTENDANCE_HISTORY_TYPE_NAME,
    ServingVariant,
    classify,
    is_delete_sentinel,
    is_serving_name,
    strip_serving_marker,
    variant_key,
)
from fellowship_etl.models import GROUP_TYPE_SERVING_TEAM, GroupMember, GroupNode, ScheduleNode
from fellowship_etl.normalize import remove_whitespace, title_case
from fellowship_etl.resolver import resolve_person
from fellowship_etl.shared import TableResult
from fellowship_etl.source import SourceRow

log = logging.getLogger(__name__)

DAY_NAMES = ("sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday")
GROUP_SCHEDULE_PREFIX = "F1GD_"
ROOM_SCHEDULE_PREFIX = "RLC_"


def day_of_week(moment: datetime) -> int:
    """Sunday = 0 … Saturday = 6."""
    return (moment.weekday() + 1) % 7


def parse_day_name(value: str | None) -> int | None:
    v = (value or "").strip().lower()
    for index, name in enumerate(DAY_NAMES):
        if len(v) >= 3 and name.startswith(v):
            return index
    return None


def parse_start_hour(value: str | None) -> time | None:
    """"HH:mm" (seconds optional) → time; anything else → None."""
    v = (value or "").strip()
    if v.count(":") == 1:
        v = f"{v}:00"
    try:
        return datetime.strptime(v, "%H:%M:%S").time()
    except ValueError:
        return None


def _serving_type_id(ctx: ImportContext) -> int:
    return ctx.hierarchy.system_type_id(GROUP_TYPE_SERVING_TEAM)


def _type_for(ctx: ImportContext, variant: ServingVariant, parent: GroupNode) -> int | None:
    return _serving_type_id(ctx) if variant.is_serving else parent.group_type_id


# ---------------------------------------------------------------------------
# ActivityMinistry
# ---------------------------------------------------------------------------

def map_activity_ministry(
    ctx: ImportContext,
    rows: Iterable[SourceRow],
    total: int,
) -> TableResult:
    """Ministries become top-level nodes, activities their children.

    A ministry is serving when its own name or any of its activities'
    names carries the serving marker; a serving ministry's activities all
    cascade into the serving tree.
    """
    result = TableResult("ActivityMinistry")
    hier = ctx.hierarchy
    marker = ctx.config.serving_marker
    hier.group_type(ATTENDANCE_HISTORY_TYPE_NAME)
    hier.archive_root()
    hier.serving_root()

    ordered = sorted(
        rows,
        key=lambda r: (r.get_int("Ministry_ID") or 0, r.get_int("Activity_ID") or 0),
    )
    existing = sum(
        1 for r in ordered
        if r.get_int("Activity_ID") is not None
        and hier.find(str(r.get_int("Activity_ID")), True)[0] is not None
    )
    progress = TableProgress(ctx.progress, "ministries and activities", total, existing)
    progress.start()

    completed = 0
    for row in ordered:
        result.rows_read += 1
        ministry_id = row.get_int("Ministry_ID")
        ministry_name = row.get_str("Ministry_Name")
        activity_id = row.get_int("Activity_ID")
        activity_name = row.get_str("Activity_Name")

        if ministry_id is None or not ministry_name:
            ctx.skip(result, row, "missing Ministry_ID or Ministry_Name")
            continue
        if is_delete_sentinel(ministry_name, ctx.config.delete_marker) or is_delete_sentinel(
            activity_name, ctx.config.delete_marker
        ):
            ctx.skip(result, row, "delete marker")
            continue

        ministry_variant = classify(ministry_name, ServingVariant.PLAIN, marker)
        if not ministry_variant.is_serving and is_serving_name(activity_name, marker):
            ministry_variant = ServingVariant.SERVING_DIRECT

        ministry_clean, campus = ctx.campuses.extract(strip_serving_marker(ministry_name, marker))
        activity_clean, activity_campus = (None, None)
        if activity_name:
            activity_clean, activity_campus = ctx.campuses.extract(
                strip_serving_marker(activity_name, marker)
            )
        campus = campus or activity_campus

        ministry, found_variant = hier.find(str(ministry_id), ministry_variant.is_serving)
        if ministry is None or (ministry_variant.is_serving and not found_variant.is_serving):
            root = hier.root_for(ministry_variant)
            parent = (
                hier.campus_group(root, campus, ministry_variant.is_serving)
                if campus else root
            )
            type_id = (
                _serving_type_id(ctx) if ministry_variant.is_serving
                else hier.group_type(ministry_clean).id
            )
            ministry, _ = hier.ensure_group(
                variant_key(str(ministry_id), ministry_variant),
                ministry_clean,
                type_id,
                parent,
                campus.id if campus else None,
                is_active=row.get_bool("Ministry_Active") is not False,
            )
            found_variant = ministry_variant

        if activity_id is None or not activity_name:
            completed += 1
            progress.step(completed)
            ctx.writer.maybe_flush(completed)
            continue

        if row.get_bool("Has_Checkin_Template"):
            ctx.refs.checkin_group_keys.add(str(activity_id))
        if hier.imported(str(activity_id)) is not None:
            continue
        activity_variant = classify(activity_name, found_variant, marker)
        activity_key = variant_key(str(activity_id), activity_variant)

        hier.ensure_group(
            activity_key,
            activity_clean,
            _type_for(ctx, activity_variant, ministry),
            ministry,
            campus.id if campus else ministry.campus_id,
            is_active=row.get_bool("Activity_Active") is not False,
            stage=True,
        )
        completed += 1
        progress.step(completed)
        ctx.writer.maybe_flush(completed)

    result.imported = completed
    progress.finish(completed)
    return result


# ---------------------------------------------------------------------------
# Activity_Group
# ---------------------------------------------------------------------------

def map_activity_group(
    ctx: ImportContext,
    rows: Iterable[SourceRow],
    total: int,
) -> TableResult:
    result = TableResult("Activity_Group")
    hier = ctx.hierarchy
    marker = ctx.config.serving_marker
    progress = TableProgress(ctx.progress, "activity groups", total)
    progress.start()

    completed = 0
    for row in rows:
        result.rows_read += 1
        group_id = row.get_int("Activity_Group_ID")
        activity_id = row.get_int("Activity_ID")
        name = row.get_str("Activity_Group_Name")

        if group_id is None or activity_id is None or not name:
            ctx.skip(result, row, "missing Activity_Group_ID, Activity_ID or name")
            continue
        if is_delete_sentinel(name, ctx.config.delete_marker):
            ctx.skip(result, row, "delete marker")
            continue
        if hier.imported(str(group_id)) is not None:
            continue

        parent, parent_variant = hier.resolve_parent(
            str(activity_id), is_serving_name(name, marker)
        )
        if parent is None:
            ctx.skip(result, row, f"activity {activity_id} not imported")
            continue

        super_id = row.get_int("Activity_Super_Group_ID")
        super_name = row.get_str("Activity_Super_Group")
        if (
            super_id is not None
            and super_name
            and not is_delete_sentinel(super_name, ctx.config.delete_marker)
        ):
            super_variant = classify(super_name, parent_variant, marker)
            if super_variant.is_serving and not parent_variant.is_serving:
                parent = hier.clone_serving_chain(parent)
                super_variant = ServingVariant.SERVING_CASCADE
            super_clean, super_campus = ctx.campuses.extract(
                strip_serving_marker(super_name, marker)
            )
            parent, _ = hier.ensure_group(
                variant_key(str(super_id), super_variant),
                super_clean,
                _type_for(ctx, super_variant, parent),
                parent,
                super_campus.id if super_campus else parent.campus_id,
            )
            parent_variant = super_variant

        variant = classify(name, parent_variant, marker)
        key = variant_key(str(group_id), variant)

        clean, campus = ctx.campuses.extract(strip_serving_marker(name, marker))
        hier.ensure_group(
            key,
            clean,
            _type_for(ctx, variant, parent),
            parent,
            campus.id if campus else parent.campus_id,
            stage=True,
        )
        completed += 1
        progress.step(completed)
        ctx.writer.maybe_flush(completed)

    result.imported = completed
    progress.finish(completed)
    return result


# ---------------------------------------------------------------------------
# RLC
# ---------------------------------------------------------------------------

def activity_schedules(ctx: ImportContext) -> dict[int, ScheduleNode]:
    """First weekly schedule per activity id, from "<schedule>-<activity>" keys."""
    index: dict[int, ScheduleNode] = {}
    for key, node in ctx.refs.schedules.items():
        if key.startswith((ROOM_SCHEDULE_PREFIX, GROUP_SCHEDULE_PREFIX)):
            continue
        _, sep, activity = key.rpartition("-")
        if sep and activity.isdigit():
            index.setdefault(int(activity), node)
    return index


def map_rlc(
    ctx: ImportContext,
    rows: Iterable[SourceRow],
    total: int,
) -> TableResult:
    """Rooms attach to their activity group, or to the activity without one.

    Campus comes from the room name, then the building name, then the
    parent group.  Each room gets a campus → building → room location chain.
    """
    result = TableResult("RLC")
    hier = ctx.hierarchy
    marker = ctx.config.serving_marker
    schedules = activity_schedules(ctx)
    progress = TableProgress(ctx.progress, "rooms", total)
    progress.start()

    completed = 0
    for row in rows:
        result.rows_read += 1
        rlc_id = row.get_int("RLC_ID")
        activity_id = row.get_int("Activity_ID")
        activity_group_id = row.get_int("Activity_Group_ID")
        name = row.get_str("RLC_Name")

        if rlc_id is None or not name:
            ctx.skip(result, row, "missing RLC_ID or RLC_Name")
            continue
        if is_delete_sentinel(name, ctx.config.delete_marker):
            ctx.skip(result, row, "delete marker")
            continue
        if hier.imported(str(rlc_id)) is not None:
            continue

        wants_serving = is_serving_name(name, marker)
        parent, parent_variant = None, ServingVariant.PLAIN
        for parent_id in (activity_group_id, activity_id):
            if parent_id is not None:
                parent, parent_variant = hier.resolve_parent(str(parent_id), wants_serving)
                if parent is not None:
                    break
        if parent is None:
            ctx.skip(result, row, f"no activity group/activity for room {rlc_id}")
            continue

        variant = classify(name, parent_variant, marker)
        key = variant_key(str(rlc_id), variant)

        clean, campus = ctx.campuses.extract(strip_serving_marker(name, marker))
        building = row.get_str("Building_Name")
        if campus is None and building:
            campus = ctx.campuses.find(building)
        if campus is None:
            campus = ctx.campuses.by_id(parent.campus_id)

        location_id = hier.campus_location_id(campus)
        if building:
            building_name = building
            if campus is not None:
                building_name, _ = ctx.campuses.extract(building)
            location_id = hier.ensure_location(building_name or building, location_id).id
        room = hier.ensure_location(
            row.get_str("Room_Name") or clean,
            location_id,
            capacity=row.get_int("Max_Capacity"),
        )

        schedule_id = None
        if not variant.is_serving and str(activity_id) not in ctx.refs.checkin_group_keys:
            activity_schedule = schedules.get(activity_id)
            if activity_schedule is not None:
                schedule, _ = hier.schedule(
                    f"{ROOM_SCHEDULE_PREFIX}{rlc_id}_{activity_schedule.foreign_key}",
                    activity_schedule.name,
                    day_of_week=activity_schedule.day_of_week,
                    time_of_day=activity_schedule.time_of_day,
                    is_active=activity_schedule.is_active,
                )
                schedule_id = schedule.id

        hier.ensure_group(
            key,
            clean,
            _type_for(ctx, variant, parent),
            parent,
            campus.id if campus else parent.campus_id,
            is_active=row.get_bool("Is_Active") is not False,
            schedule_id=schedule_id,
            location_id=room.id,
            description=row.get_str("Room_Desc"),
            stage=True,
        )
        completed += 1
        progress.step(completed)
        ctx.writer.maybe_flush(completed)

    result.imported = completed
    progress.finish(completed)
    return result


# ---------------------------------------------------------------------------
# Activity_Schedule / GroupsDescription
# ---------------------------------------------------------------------------

def map_activity_schedule(
    ctx: ImportContext,
    rows: Iterable[SourceRow],
    total: int,
) -> TableResult:
    """Weekly activity times; other recurrences have no schedule equivalent."""
    result = TableResult("Activity_Schedule")
    progress = TableProgress(ctx.progress, "schedules", total)
    progress.start()

    completed = 0
    for row in rows:
        result.rows_read += 1
        schedule_id = row.get_int("Activity_Schedule_ID")
        activity_id = row.get_int("Activity_ID")
        name = row.get_str("Activity_Time_Name")
        start = row.get_datetime("Activity_Start_Time")

        if schedule_id is None or not name:
            ctx.skip(result, row, "missing Activity_Schedule_ID or Activity_Time_Name")
            continue
        if "weekly" not in name.lower() or start is None:
            ctx.skip(result, row, "not a weekly schedule")
            continue

        key = f"{schedule_id}-{activity_id}" if activity_id is not None else str(schedule_id)
        if key in ctx.refs.schedules:
            continue

        end = row.get_datetime("Activity_End_Time")
        ctx.hierarchy.schedule(
            key,
            name,
            day_of_week=day_of_week(start),
            time_of_day=start.time(),
            is_active=end is None or end.date() > ctx.today,
            stage=True,
        )
        completed += 1
        progress.step(completed)
        ctx.writer.maybe_flush(completed)

    result.imported = completed
    progress.finish(completed)
    return result


def map_group_schedule(
    ctx: ImportContext,
    rows: Iterable[SourceRow],
    total: int,
) -> TableResult:
    result = TableResult("GroupsDescription")
    progress = TableProgress(ctx.progress, "group schedules", total)
    progress.start()

    completed = 0
    for row in rows:
        result.rows_read += 1
        group_id = row.get_int("Group_ID")
        if group_id is None:
            ctx.skip(result, row, "missing Group_ID")
            continue
        key = f"{GROUP_SCHEDULE_PREFIX}{group_id}"
        if key in ctx.refs.schedules:
            continue

        recurrence = (row.get_str("RecurrenceType") or "").lower()
        day = parse_day_name(row.get_str("ScheduleDay"))
        start = parse_start_hour(row.get_str("StartHour"))
        if recurrence != "weekly" or day is None or start is None:
            ctx.skip(result, row, "no weekly day/time")
            continue

        ctx.hierarchy.schedule(
            key,
            f"{DAY_NAMES[day].capitalize()} {start.strftime('%I:%M %p')}",
            day_of_week=day,
            time_of_day=start,
            description=row.get_str("Description"),
            stage=True,
        )
        completed += 1
        progress.step(completed)
        ctx.writer.maybe_flush(completed)

    result.imported = completed
    progress.finish(completed)
    return result


# ---------------------------------------------------------------------------
# Groups (home groups)
# ---------------------------------------------------------------------------

def _home_group(ctx: ImportContext, row: SourceRow, group_id: int, name: str) -> GroupNode:
    hier = ctx.hierarchy
    marker = ctx.config.serving_marker
    type_name = row.get_str("Group_Type_Name") or "Small Groups"
    serving = is_serving_name(type_name, marker)
    variant = ServingVariant.SERVING_DIRECT if serving else ServingVariant.PLAIN

    existing, _ = hier.find(str(group_id), serving)
    if existing is not None:
        return existing

    type_clean, type_campus = ctx.campuses.extract(
        strip_serving_marker(type_name, marker), Direction.ENDS
    )
    campus = ctx.campuses.by_name(row.get_str("CampusName")) or type_campus
    type_id = _serving_type_id(ctx) if serving else hier.group_type(type_clean).id

    placeholder, _ = hier.ensure_group(
        variant_key(remove_whitespace(type_clean), variant),
        type_clean,
        type_id,
        hier.root_for(variant),
        is_active=False,
    )
    parent = hier.campus_group(placeholder, campus, serving=False) if campus else placeholder

    group_clean, group_campus = ctx.campuses.extract(strip_serving_marker(name, marker))
    campus = group_campus or campus
    schedule = ctx.refs.schedules.get(f"{GROUP_SCHEDULE_PREFIX}{group_id}")
    node, _ = hier.ensure_group(
        variant_key(
            str(group_id),
            ServingVariant.SERVING_CASCADE if serving else ServingVariant.PLAIN,
        ),
        group_clean,
        type_id,
        parent,
        campus.id if campus else None,
        schedule_id=schedule.id if schedule else None,
        created_at=row.get_datetime("Created_Date"),
    )
    return node


def map_home_groups(
    ctx: ImportContext,
    rows: Iterable[SourceRow],
    total: int,
) -> TableResult:
    """One row per (group, member); group type names may end in a campus."""
    result = TableResult("Groups")
    progress = TableProgress(ctx.progress, "group members", total)
    progress.start()

    completed = 0
    for row in rows:
        result.rows_read += 1
        group_id = row.get_int("Group_ID")
        name = row.get_str("Group_Name")
        if group_id is None or not name:
            ctx.skip(result, row, "missing Group_ID or Group_Name")
            continue
        if is_delete_sentinel(name, ctx.config.delete_marker):
            ctx.skip(result, row, "delete marker")
            continue

        group = _home_group(ctx, row, group_id, name)

        individual_id = row.get_int("Individual_ID")
        if individual_id is None:
            continue
        person = resolve_person(ctx.refs, individual_id)
        if person is None:
            ctx.skip(result, row, f"individual {individual_id} not imported")
            continue

        role_name = title_case(row.get_str("Group_Member_Type")) or "Member"
        role = ctx.hierarchy.role(
            group.group_type_id, role_name, is_leader=role_name.lower().endswith("leader")
        )
        ctx.writer.stage(GroupMember(
            group=group,
            person_id=person.person_id,
            role_id=role.id,
            added_at=row.get_datetime("Created_Date"),
        ))
        completed += 1
        progress.step(completed)
        ctx.writer.maybe_flush(completed)

    result.imported = completed
    progress.finish(completed)
    return result
