"""Integration tests for PostgresStore, the orchestrator and the import CLI.

These tests run against an ephemeral PostgreSQL database with the schema
applied via the db_conn fixture in conftest.py.
"""

from __future__ import annotations

import csv
import json
from datetime import date
from pathlib import Path

import pytest
from click.testing import CliRunner

from fellowship_etl.import_fellowship_one import main
from fellowship_etl.models import (
    GROUP_TYPE_GENERAL,
    GROUP_TYPE_SERVING_TEAM,
    Family,
    GroupNode,
    NewPerson,
)
from fellowship_etl.orchestrator import ImportOrchestrator, RunState
from fellowship_etl.references import load_references
from fellowship_etl.source import CsvTableScanner
from fellowship_etl.store import PostgresStore

# ---------------------------------------------------------------------------
# Source fixture
# ---------------------------------------------------------------------------

EXPORT = {
    "Individual_Household": [
        {
            "Individual_ID": "1001", "Household_ID": "42", "First_Name": "Ann",
            "Last_Name": "Smith", "Household_Position": "Head", "Gender": "Female",
            "SubStatus_Name": "MAIN", "Household_Name": "The Smiths",
        },
        {
            "Individual_ID": "1002", "Household_ID": "42", "First_Name": "Ben",
            "Last_Name": "Smith", "Household_Position": "Child", "Gender": "Male",
            "Date_Of_Birth": "2012-05-05",
        },
        {
            "Individual_ID": "1003", "Household_ID": "42", "First_Name": "Cal",
            "Last_Name": "Jones", "Household_Position": "Visitor",
        },
    ],
    "Communication": [
        {
            "Communication_ID": "1", "Individual_ID": "1001",
            "Communication_Type": "Email", "Communication_Value": "ann@example.com",
        },
        {
            "Communication_ID": "2", "Individual_ID": "1001",
            "Communication_Type": "Mobile Phone", "Communication_Value": "(207) 555-0101",
        },
    ],
    "ActivityMinistry": [
        {
            "Ministry_ID": "1", "Ministry_Name": "MAIN - Kids Ministry",
            "Activity_ID": "11", "Activity_Name": "Sunday School",
        },
        {
            "Ministry_ID": "2", "Ministry_Name": "Worship",
            "Activity_ID": "21", "Activity_Name": "SERV: Greeters",
        },
    ],
    "Activity_Group": [
        {"Activity_ID": "11", "Activity_Group_ID": "111", "Activity_Group_Name": "Preschool"},
    ],
    "ActivityAssignment": [
        {"Individual_ID": "1002", "Activity_Group_ID": "111"},
    ],
    "Staffing_Assignment": [
        {"Individual_ID": "1001", "Activity_ID": "21", "Job_Title": "Leader"},
    ],
    "Attendance": [
        {"Individual_ID": "1002", "RLC_ID": "111", "Start_Date_Time": "2024-01-07 09:00:00"},
        {"Individual_ID": "9999", "RLC_ID": "111", "Start_Date_Time": "2024-01-07 09:00:00"},
    ],
    "Batch": [
        {"BatchID": "10", "BatchName": "Sunday", "BatchDate": "2024-01-07"},
    ],
    "Contribution": [
        {
            "ContributionID": "1", "Household_ID": "42", "Amount": "25.00",
            "Fund_Name": "General Fund", "BatchID": "10",
        },
    ],
}


def _write_export(directory: Path) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    for table, rows in EXPORT.items():
        columns = list(dict.fromkeys(k for row in rows for k in row))
        with open(directory / f"{table}.csv", "w", newline="", encoding="utf-8") as fh:
            writer = csv.DictWriter(fh, fieldnames=columns)
            writer.writeheader()
            writer.writerows(rows)
    return directory


def _count(conn, sql: str, params: tuple = ()) -> int:
    return conn.execute(sql, params).fetchone()[0]


def _table_counts(conn) -> dict[str, int]:
    return {
        table: _count(conn, f"SELECT count(*) FROM {table}")
        for table in (
            "person", "church_group", "group_member", "attendance_occurrence",
            "attendance", "phone_number", "financial_batch", "financial_transaction",
        )
    }


# ---------------------------------------------------------------------------
# Store primitives
# ---------------------------------------------------------------------------

class TestPostgresStore:
    def test_references_from_seeded_schema(self, db_conn):
        _, dsn = db_conn
        store = PostgresStore(dsn)
        try:
            refs = load_references(store, ["Individual_Household"])
        finally:
            store.close()

        assert refs.people == []
        assert [c.short_code for c in refs.campuses] == ["MAIN"]
        assert refs.serving_teams_group.name == "Serving Teams"
        serving = refs.system_type_id(GROUP_TYPE_SERVING_TEAM)
        assert refs.role(serving, "leader").is_leader is True

    def test_family_round_trip(self, db_conn):
        conn, dsn = db_conn
        family = Family(
            household_id=42, name="Smith Family",
            members=[NewPerson("Ann", "Smith", 1001, 42), NewPerson("Ben", "Smith", 1002, 42)],
        )
        store = PostgresStore(dsn)
        try:
            with store.transaction():
                store.upsert_batch("family", [family])
            keys = store.query_all_by_marker("person_key")
        finally:
            store.close()

        assert [k.individual_id for k in keys] == [1001, 1002]
        assert all(k.household_id == 42 and k.alias_id is not None for k in keys)
        assert _count(conn, "SELECT count(*) FROM group_member WHERE group_id = %s", (family.id,)) == 2

    def test_group_lookup_by_foreign_key(self, db_conn):
        _, dsn = db_conn
        store = PostgresStore(dsn)
        try:
            general = store.query_by_system_key("group_type", GROUP_TYPE_GENERAL)
            node = GroupNode(foreign_key="10", name="Kids", group_type_id=general.id)
            store.insert(node)
            found = store.query_by_foreign_key("group", "10")
            assert found.id == node.id
            assert store.query_by_foreign_key("group", "404") is None
        finally:
            store.close()

    def test_dry_run_rolls_back(self, db_conn):
        conn, dsn = db_conn
        store = PostgresStore(dsn, dry_run=True)
        general = store.query_by_system_key("group_type", GROUP_TYPE_GENERAL)
        store.insert(GroupNode(foreign_key="10", name="Kids", group_type_id=general.id))
        assert store.query_by_foreign_key("group", "10") is not None
        store.close()

        assert _count(conn, "SELECT count(*) FROM church_group WHERE foreign_key = '10'") == 0


# ---------------------------------------------------------------------------
# Full import
# ---------------------------------------------------------------------------

class TestImportRun:
    def _run(self, dsn: str, source: Path) -> ImportOrchestrator:
        store = PostgresStore(dsn)
        orchestrator = ImportOrchestrator(
            store, CsvTableScanner(source), today=date(2024, 6, 1)
        )
        try:
            orchestrator.run()
        finally:
            store.close()
        return orchestrator

    def test_export_imported(self, db_conn, tmp_path):
        conn, dsn = db_conn
        orchestrator = self._run(dsn, _write_export(tmp_path / "export"))

        assert orchestrator.state is RunState.COMPLETED
        assert orchestrator.counters.tables["Attendance"].skipped == 1
        assert _count(conn, "SELECT count(*) FROM person") == 3
        assert _count(conn, "SELECT count(*) FROM person WHERE email = 'ann@example.com'") == 1
        assert _count(conn, "SELECT count(*) FROM phone_number WHERE number = '2075550101'") == 1
        assert _count(conn, "SELECT count(*) FROM attendance") == 1
        assert _count(
            conn,
            """
            SELECT count(*) FROM church_group child
            JOIN church_group parent ON parent.id = child.parent_group_id
            WHERE child.foreign_key = '111' AND parent.foreign_key = '11'
            """,
        ) == 1
        assert _count(
            conn,
            """
            SELECT count(*) FROM financial_transaction t
            JOIN financial_batch b ON b.id = t.batch_id
            WHERE b.foreign_id = 10 AND t.amount = 25.00
            """,
        ) == 1
        assert _count(
            conn,
            """
            SELECT count(*) FROM group_member m
            JOIN church_group g ON g.id = m.group_id
            JOIN group_type_role r ON r.id = m.group_role_id
            WHERE g.foreign_key = 'SERVT_21' AND r.name = 'Leader'
            """,
        ) == 1

    def test_rerun_writes_nothing_new(self, db_conn, tmp_path):
        conn, dsn = db_conn
        source = _write_export(tmp_path / "export")
        self._run(dsn, source)
        before = _table_counts(conn)

        orchestrator = self._run(dsn, source)
        assert orchestrator.counters.tables["Individual_Household"].imported == 0
        assert _table_counts(conn) == before


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

class TestCli:
    def _invoke(self, dsn: str, source: Path, tmp_path: Path, *extra: str):
        runner = CliRunner()
        return runner.invoke(main, [
            "--db-dsn", dsn,
            "--source-dir", str(source),
            "--rejects-path", str(tmp_path / "rejects.csv"),
            "--run-id", "test-run",
            *extra,
        ])

    def test_dry_run_produces_no_rows(self, db_conn, tmp_path, monkeypatch):
        conn, dsn = db_conn
        monkeypatch.chdir(tmp_path)
        result = self._invoke(dsn, _write_export(tmp_path / "export"), tmp_path, "--dry-run")

        assert result.exit_code == 0, f"CLI failed:\n{result.output}"
        assert "All changes rolled back" in result.output
        assert _count(conn, "SELECT count(*) FROM person") == 0
        assert _count(conn, "SELECT count(*) FROM financial_batch") == 0

    def test_real_run_writes_report(self, db_conn, tmp_path, monkeypatch):
        conn, dsn = db_conn
        monkeypatch.chdir(tmp_path)
        result = self._invoke(dsn, _write_export(tmp_path / "export"), tmp_path)

        assert result.exit_code == 0, f"CLI failed:\n{result.output}"
        assert "FellowshipOne Import Report" in result.output
        assert _count(conn, "SELECT count(*) FROM person") == 3

        report = json.loads((tmp_path / "artifacts" / "reports" / "test-run.json").read_text())
        assert report["state"] == "completed"
        assert report["started_at"].endswith("+00:00")
        with open(tmp_path / "rejects.csv", newline="", encoding="utf-8") as fh:
            reasons = [row["_reject_reason"] for row in csv.DictReader(fh)]
        assert reasons == ["individual 9999 not imported"]

    def test_table_filter(self, db_conn, tmp_path, monkeypatch):
        conn, dsn = db_conn
        monkeypatch.chdir(tmp_path)
        result = self._invoke(
            dsn, _write_export(tmp_path / "export"), tmp_path,
            "--table", "Individual_Household", "--table", "Batch",
        )

        assert result.exit_code == 0, f"CLI failed:\n{result.output}"
        assert _count(conn, "SELECT count(*) FROM person") == 3
        assert _count(conn, "SELECT count(*) FROM financial_batch") == 1
        assert _count(conn, "SELECT count(*) FROM financial_transaction") == 0

    @pytest.mark.parametrize("chunk_size", ["0", "-5"])
    def test_invalid_chunk_size_rejected(self, db_conn, tmp_path, chunk_size):
        _, dsn = db_conn
        result = self._invoke(
            dsn, _write_export(tmp_path / "export"), tmp_path, "--chunk-size", chunk_size,
        )
        assert result.exit_code == 1
