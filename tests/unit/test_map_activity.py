"""Unit tests for fellowship_etl.map_assignments, map_attendance and map_financial."""

from datetime import date, datetime
from decimal import Decimal

import pytest

from fellowship_etl.map_assignments import (
    map_activity_assignment,
    map_staffing_assignment,
    participant_group,
    volunteer_group,
    volunteer_role_name,
)
from fellowship_etl.map_attendance import map_attendance, map_group_attendance
from fellowship_etl.map_financial import map_batch, map_contribution
from fellowship_etl.map_groups import map_group_schedule, map_home_groups
from fellowship_etl.models import GROUP_TYPE_SERVING_TEAM
from fellowship_etl.resolver import resolve_person


def _memberships(store, group, person):
    return [
        m for (group_id, person_id, _), m in store.members.items()
        if group_id == group.id and person_id == person.person_id
    ]


# ---------------------------------------------------------------------------
# Group lookups
# ---------------------------------------------------------------------------

class TestGroupLookups:
    def test_participants_prefer_plain(self, ministry_ctx):
        assert participant_group(ministry_ctx, "11").foreign_key == "11"
        assert participant_group(ministry_ctx, "21").foreign_key == "SERVT_21"

    def test_volunteers_prefer_serving(self, ministry_ctx):
        assert volunteer_group(ministry_ctx, "2").foreign_key == "SERV_2"
        assert volunteer_group(ministry_ctx, "11").foreign_key == "11"

    def test_unknown_key(self, ministry_ctx):
        assert participant_group(ministry_ctx, "404") is None
        assert volunteer_group(ministry_ctx, "404") is None

    def test_role_name_drops_campus_prefix(self, ministry_ctx):
        assert volunteer_role_name(ministry_ctx, "MAIN - team leader") == "Team Leader"
        assert volunteer_role_name(ministry_ctx, None) == "Member"


# ---------------------------------------------------------------------------
# ActivityAssignment
# ---------------------------------------------------------------------------

class TestMapActivityAssignment:
    ROWS = [
        {
            "Individual_ID": "1001", "Ministry_ID": "1", "Activity_ID": "11",
            "Activity_Start_Time": "2024-01-07 09:00:00",
        },
        {"Individual_ID": "1002", "Activity_ID": "12", "Activity_End_Time": "2024-01-01"},
        {"Individual_ID": "1001", "Activity_ID": "21"},
        {"Individual_ID": "9999", "Activity_ID": "11"},
        {"Individual_ID": "1001", "Activity_ID": "404"},
        {"Individual_ID": "1001"},
    ]

    def test_counts(self, ministry_ctx, run_mapper):
        result = run_mapper(ministry_ctx, map_activity_assignment, self.ROWS)
        assert result.imported == 3
        assert result.skipped == 3

    def test_members_written(self, ministry_ctx, store, run_mapper):
        run_mapper(ministry_ctx, map_activity_assignment, self.ROWS)
        refs = ministry_ctx.refs
        ann = resolve_person(refs, 1001)
        ben = resolve_person(refs, 1002)

        sunday = refs.group_by_key("11")
        [member] = _memberships(store, sunday, ann)
        assert member.is_active is True
        assert member.added_at == datetime(2024, 1, 7, 9, 0)
        assert member.role_id == refs.role(sunday.group_type_id, "Member").id

        [ended] = _memberships(store, refs.group_by_key("12"), ben)
        assert ended.is_active is False

        assert _memberships(store, refs.group_by_key("SERVT_21"), ann)

    def test_rerun_adds_no_members(self, ministry_ctx, store, make_ctx, run_mapper):
        run_mapper(ministry_ctx, map_activity_assignment, self.ROWS)
        before = len(store.members)
        run_mapper(make_ctx(store), map_activity_assignment, self.ROWS)
        assert len(store.members) == before


# ---------------------------------------------------------------------------
# Staffing_Assignment
# ---------------------------------------------------------------------------

class TestMapStaffingAssignment:
    ROWS = [
        {"Individual_ID": "1001", "Activity_ID": "21", "Job_Title": "MAIN - team leader"},
        {"Individual_ID": "1002", "Activity_ID": "11", "Job_Title": "Helper", "Is_Active": "false"},
        {"Individual_ID": "1001", "Activity_ID": "77"},
        {"Individual_ID": "1002", "Activity_ID": "77"},
        {"Individual_ID": "1001", "Ministry_ID": "2"},
    ]

    def test_counts_and_missing_groups(self, ministry_ctx, run_mapper):
        result = run_mapper(ministry_ctx, map_staffing_assignment, self.ROWS)
        assert result.imported == 3
        assert result.skipped == 2
        assert result.skipped_group_keys == ["77"]
        assert len(ministry_ctx.counters.warnings) == 1

    def test_roles_from_job_title(self, ministry_ctx, store, run_mapper):
        run_mapper(ministry_ctx, map_staffing_assignment, self.ROWS)
        refs = ministry_ctx.refs
        ann = resolve_person(refs, 1001)
        ben = resolve_person(refs, 1002)
        serving = refs.system_type_id(GROUP_TYPE_SERVING_TEAM)

        team_leader = refs.role(serving, "Team Leader")
        assert team_leader.is_leader is True
        [greeter] = _memberships(store, refs.group_by_key("SERVT_21"), ann)
        assert greeter.role_id == team_leader.id

        sunday = refs.group_by_key("11")
        [helper] = _memberships(store, sunday, ben)
        assert helper.role_id == refs.role(sunday.group_type_id, "Helper").id
        assert helper.is_active is False

        [worship] = _memberships(store, refs.group_by_key("SERV_2"), ann)
        assert worship.role_id == refs.role(serving, "Member").id


# ---------------------------------------------------------------------------
# Attendance
# ---------------------------------------------------------------------------

class TestMapAttendance:
    ROWS = [
        {
            "Individual_ID": "1001", "RLC_ID": "11", "Start_Date_Time": "2024-01-07 09:05:00",
            "Check_Out_Time": "2024-01-07 10:15:00", "BreakoutGroup_Name": "Blue",
        },
        {"Individual_ID": "1002", "RLC_ID": "11", "Start_Date_Time": "2024-01-07 09:10:00"},
        {"Individual_ID": "1001", "RLC_ID": "11", "Start_Date_Time": "2024-01-14 09:00:00"},
        {"Individual_ID": "1003", "Start_Date_Time": "2024-01-07 09:00:00"},
        {"Individual_ID": "1001"},
        {"Individual_ID": "9999", "Start_Date_Time": "2024-01-07 09:00:00"},
    ]

    def test_counts(self, ministry_ctx, run_mapper):
        result = run_mapper(ministry_ctx, map_attendance, self.ROWS)
        assert result.imported == 4
        assert result.skipped == 2

    def test_one_occurrence_per_group_and_day(self, ministry_ctx, store, run_mapper):
        run_mapper(ministry_ctx, map_attendance, self.ROWS)
        archived = ministry_ctx.hierarchy.archived_schedule()
        sunday = ministry_ctx.refs.group_by_key("11")

        assert ministry_ctx.occurrences.created == 3
        assert {(o.group_id, o.occurred_on) for o in store.occurrences} == {
            (sunday.id, date(2024, 1, 7)),
            (sunday.id, date(2024, 1, 14)),
            (None, date(2024, 1, 7)),
        }
        assert all(o.schedule_id == archived.id for o in store.occurrences)

    def test_attendance_details(self, ministry_ctx, store, run_mapper):
        run_mapper(ministry_ctx, map_attendance, self.ROWS)
        ann = resolve_person(ministry_ctx.refs, 1001)
        record = next(
            a for a in store.attendance.values()
            if a.person_alias_id == ann.alias_id and a.start_at == datetime(2024, 1, 7, 9, 5)
        )
        assert record.end_at == datetime(2024, 1, 7, 10, 15)
        assert record.note == "Blue"
        assert record.campus_id == 900
        assert record.did_attend is True

    def test_rerun_reuses_occurrences(self, ministry_ctx, store, make_ctx, run_mapper):
        run_mapper(ministry_ctx, map_attendance, self.ROWS)
        ctx = make_ctx(store)
        run_mapper(ctx, map_attendance, self.ROWS)
        assert ctx.occurrences.created == 0
        assert len(store.occurrences) == 3
        assert len(store.attendance) == 4


class TestMapGroupAttendance:
    ROWS = [
        {
            "GroupID": "11", "IndividualID": "1001", "StartDateTime": "2024-02-06 19:00:00",
            "Individual_Present": "0", "Comments": "sick",
        },
        {
            "GroupID": "11", "IndividualID": "1002", "StartDateTime": "2024-02-06 19:00:00",
            "EndDateTime": "2024-02-06 20:30:00",
        },
        {"GroupID": "11", "IndividualID": "1002"},
    ]

    def test_presence_flag(self, ministry_ctx, store, run_mapper):
        result = run_mapper(ministry_ctx, map_group_attendance, self.ROWS)
        refs = ministry_ctx.refs
        ann = resolve_person(refs, 1001)
        ben = resolve_person(refs, 1002)

        assert result.imported == 2
        assert result.skipped == 1
        assert len(store.occurrences) == 1
        by_alias = {a.person_alias_id: a for a in store.attendance.values()}
        assert by_alias[ann.alias_id].did_attend is False
        assert by_alias[ann.alias_id].note == "sick"
        assert by_alias[ben.alias_id].did_attend is True
        assert by_alias[ben.alias_id].end_at == datetime(2024, 2, 6, 20, 30)

    def test_home_group_schedule_used(self, people_ctx, store, run_mapper):
        run_mapper(people_ctx, map_group_schedule, [{
            "Group_ID": "700", "RecurrenceType": "Weekly", "ScheduleDay": "Tuesday",
            "StartHour": "19:00",
        }])
        run_mapper(people_ctx, map_home_groups, [{
            "Group_ID": "700", "Group_Name": "Smith Home Group",
            "Group_Type_Name": "Small Groups - North", "Individual_ID": "1001",
        }])
        run_mapper(people_ctx, map_group_attendance, [{
            "GroupID": "700", "IndividualID": "1001", "StartDateTime": "2024-02-06 19:00:00",
        }])
        [occurrence] = store.occurrences
        assert occurrence.schedule_id == people_ctx.refs.schedules["F1GD_700"].id
        assert occurrence.group_id == people_ctx.refs.group_by_key("700").id


# ---------------------------------------------------------------------------
# Batch / Contribution
# ---------------------------------------------------------------------------

BATCHES = [
    {"BatchID": "10", "BatchName": "MAIN Sunday", "BatchDate": "2024-01-07", "BatchAmount": "150.00"},
    {"BatchID": "10", "BatchName": "MAIN Sunday again"},
    {"BatchID": "11"},
    {"BatchName": "No id"},
]

CONTRIBUTIONS = [
    {
        "ContributionID": "1", "Individual_ID": "1001", "Household_ID": "42",
        "Amount": "100.00", "Fund_Name": "General Fund", "BatchID": "10",
        "Received_Date": "2024-01-07", "Check_Number": "1234",
    },
    {
        "ContributionID": "2", "Household_ID": "42", "Amount": "50",
        "Fund_Name": "Missions", "Sub_Fund_Name": "MAIN Haiti Trip",
    },
    {
        "ContributionID": "3", "Individual_ID": "9999", "Household_ID": "42",
        "Amount": "5", "Fund_Name": "general fund",
    },
    {"ContributionID": "1", "Individual_ID": "1001", "Amount": "100.00", "Fund_Name": "General Fund"},
    {"ContributionID": "4", "Individual_ID": "9999", "Amount": "5", "Fund_Name": "General Fund"},
    {"ContributionID": "5", "Individual_ID": "1001", "Amount": "", "Fund_Name": "X"},
]


class TestMapBatch:
    def test_batches_staged_once(self, people_ctx, store, run_mapper):
        result = run_mapper(people_ctx, map_batch, BATCHES)

        assert result.imported == 2
        assert result.skipped == 1
        sunday = store.batches[10]
        assert sunday.name == "MAIN Sunday"
        assert sunday.campus_id == 900
        assert sunday.control_amount == Decimal("150.00")
        assert store.batches[11].name == "Batch 11"
        assert people_ctx.refs.batches == {10: sunday.id, 11: store.batches[11].id}

    def test_rerun_imports_nothing(self, people_ctx, store, make_ctx, run_mapper):
        run_mapper(people_ctx, map_batch, BATCHES)
        result = run_mapper(make_ctx(store), map_batch, BATCHES)
        assert result.imported == 0
        assert len(store.batches) == 2


class TestMapContribution:
    @pytest.fixture
    def giving_ctx(self, people_ctx, run_mapper):
        run_mapper(people_ctx, map_batch, BATCHES)
        self.result = run_mapper(people_ctx, map_contribution, CONTRIBUTIONS)
        return people_ctx

    def test_counts(self, giving_ctx):
        assert self.result.imported == 3
        assert self.result.skipped == 2

    def test_accounts(self, giving_ctx, store):
        accounts = {a.name: a for a in store.accounts}
        assert set(accounts) == {"General Fund", "Missions", "MAIN Haiti Trip"}
        trip = accounts["MAIN Haiti Trip"]
        assert trip.parent_account_id == accounts["Missions"].id
        assert trip.campus_id == 900

    def test_transactions(self, giving_ctx, store):
        ann = resolve_person(giving_ctx.refs, 1001)
        accounts = {a.name: a for a in store.accounts}

        first = store.transactions[1]
        assert first.amount == Decimal("100.00")
        assert first.batch_id == store.batches[10].id
        assert first.person_alias_id == ann.alias_id
        assert first.check_number == "1234"

        household_gift = store.transactions[2]
        assert household_gift.person_alias_id == ann.alias_id
        assert household_gift.account_id == accounts["MAIN Haiti Trip"].id
        assert household_gift.batch_id is None

        assert store.transactions[3].account_id == accounts["General Fund"].id

    def test_rerun_adds_nothing(self, giving_ctx, store, make_ctx, run_mapper):
        run_mapper(make_ctx(store), map_contribution, CONTRIBUTIONS)
        assert len(store.transactions) == 3
        assert len(store.accounts) == 3
