"""fellowship_etl.import_fellowship_one

FellowshipOne import CLI.

Usage:
    python -m fellowship_etl.import_fellowship_one \\
        --db-dsn postgresql://localhost/church \\
        --source-dir ./exports/f1 \\
        [--config config/import.example.yml] [--table Individual_Household ...] \\
        [--chunk-size 100] [--dry-run]
"""

from __future__ import annotations

import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import click
import psycopg

from fellowship_etl.batch import EchoProgressSink
from fellowship_etl.config import ImportConfigValidationError, load_import_config
from fellowship_etl.orchestrator import ImportOrchestrator
from fellowship_etl.shared import (
    FellowshipImportError,
    RejectWriter,
    RunCounters,
    build_import_report,
    write_run_report,
)
from fellowship_etl.source import CsvTableScanner
from fellowship_etl.store import PostgresStore

log = logging.getLogger(__name__)


@click.command()
@click.option("--db-dsn", required=True, help="PostgreSQL DSN")
@click.option(
    "--source-dir",
    required=True,
    type=click.Path(exists=True, file_okay=False),
    help="Directory of exported <Table>.csv files",
)
@click.option("--config", "config_path", default=None, type=click.Path(exists=True), help="YAML import config")
@click.option("--chunk-size", default=None, type=int, help="Records per committed chunk (overrides config)")
@click.option("--table", "tables", multiple=True, help="Import only these tables (repeatable)")
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/fellowship_one_rejects.csv",
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--verbose", is_flag=True, default=False, help="DEBUG logging")
def main(
    db_dsn: str,
    source_dir: str,
    config_path: str | None,
    chunk_size: int | None,
    tables: tuple[str, ...],
    rejects_path: str,
    run_id: str | None,
    dry_run: bool,
    verbose: bool,
) -> None:
    """FellowshipOne → destination import CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()
    counters = RunCounters()

    try:
        config = load_import_config(Path(config_path) if config_path else None)
        config = config.with_overrides(chunk_size=chunk_size, tables=tables)
    except ImportConfigValidationError as exc:
        click.echo(f"[{run_id}] FATAL: invalid config: {exc}", err=True)
        sys.exit(1)

    click.echo(
        f"[{run_id}] Starting FellowshipOne import from {source_dir} "
        f"(dry_run={dry_run}, chunk_size={config.chunk_size})"
    )

    try:
        store = PostgresStore(db_dsn, dry_run=dry_run)
    except psycopg.Error as exc:
        click.echo(f"[{run_id}] FATAL: cannot connect to destination: {exc}", err=True)
        sys.exit(1)

    rejects = RejectWriter(Path(rejects_path))
    orchestrator = ImportOrchestrator(
        store,
        CsvTableScanner(Path(source_dir)),
        config=config,
        progress=EchoProgressSink(run_id),
        rejects=rejects,
        counters=counters,
    )
    failure: FellowshipImportError | None = None
    try:
        orchestrator.run()
    except FellowshipImportError as exc:
        failure = exc
    finally:
        store.close()
        rejects.close()
        if dry_run:
            click.echo(f"[{run_id}] [dry-run] All changes rolled back.")

    state = orchestrator.state.value
    click.echo(build_import_report(counters, state, dry_run=dry_run))
    report_path = write_run_report(run_id, started_at, state, dry_run, source_dir, counters)
    click.echo(f"[{run_id}] Run report: {report_path}")

    if failure is not None:
        click.echo(f"[{run_id}] FATAL: {type(failure).__name__}: {failure}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
