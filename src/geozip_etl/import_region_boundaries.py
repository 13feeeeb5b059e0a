"""geozip_etl.import_region_boundaries

CLI entrypoint for postal-code boundary ingestion into the geo_zip table.

Reads a newline-delimited JSON file, one Region per line, and upserts each
record (probe by zip, then insert or update Center/Outline). Write failures land
in a ledger CSV (Counter,Zip,Error) and the run keeps going.

Modes (--mode):
  full        : attempt every record at or past the cursor (default)
  retry_only  : attempt only zips listed in a prior run's ledger

Resuming: the line counter is absolute (0-based) and advances for every input
line whatever happens to it, so ``--cursor N`` always means "start at line N".

Usage (full run):
    python -m geozip_etl.import_region_boundaries \\
        --input-path output.txt \\
        --store postgres \\
        --db-dsn "$GEOZIP_DB_DSN"

Usage (resume at line 120000 after a crash):
    python -m geozip_etl.import_region_boundaries \\
        --input-path output.txt --cursor 120000 --append-ledger

Lines are decoded before the cursor is checked, so with the default
``--on-malformed abort`` an undecodable line still stops a run whose cursor
is past it. Add ``--on-malformed record`` to step over it: lines below the
cursor are then skipped without a ledger row.

Usage (retry the previous run's failures against DynamoDB):
    python -m geozip_etl.import_region_boundaries \\
        --input-path output.txt \\
        --store dynamodb \\
        --mode retry_only \\
        --retry-ledger artifacts/ledgers/geo_zip_errors.csv \\
        --ledger-path artifacts/ledgers/geo_zip_errors_retry.csv
"""

from __future__ import annotations

import logging
import os
import sys
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable

import click
import psycopg
from dotenv import load_dotenv

from geozip_etl.records import MalformedRecordError, decode_region_line
from geozip_etl.resolver import PROBE_FAILURE_POLICIES, upsert_region
from geozip_etl.shared import (
    ErrorLedger,
    FileOpenError,
    RunCounters,
    load_failed_zips,
    write_run_report,
)
from geozip_etl.store import (
    DEFAULT_AWS_REGION,
    DEFAULT_TABLE,
    DynamoRegionStore,
    PostgresRegionStore,
    RegionStore,
)

log = logging.getLogger(__name__)

MODES = ("full", "retry_only")
MALFORMED_POLICIES = ("abort", "record")


# ---------------------------------------------------------------------------
# Resume cursor
# ---------------------------------------------------------------------------

class ResumeCursor:
    """Lines numbered below the cursor are skipped without touching the store."""

    def __init__(self, position: int = 0) -> None:
        if position < 0:
            raise ValueError(f"cursor must be >= 0, got {position}")
        self._position = position

    @property
    def position(self) -> int:
        return self._position

    def should_skip(self, counter: int) -> bool:
        return counter < self._position


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def run_region_ingest(
    run_id: str,
    input_path: Path,
    store: RegionStore,
    ledger: ErrorLedger,
    counters: RunCounters,
    *,
    cursor: int = 0,
    mode: str = "full",
    retry_zips: set[int] | None = None,
    on_malformed: str = "abort",
    probe_failure: str = "record",
    dry_run: bool = False,
    echo: Callable[[str], None] = click.echo,
) -> None:
    """Stream input_path through decode, cursor/filter, upsert.

    Raises FileOpenError if the input cannot be opened, and re-raises
    MalformedRecordError when on_malformed == "abort".
    """
    if mode not in MODES:
        raise ValueError(f"unknown mode {mode!r}")
    if mode == "retry_only" and retry_zips is None:
        raise ValueError("retry_only mode requires retry_zips")
    if on_malformed not in MALFORMED_POLICIES:
        raise ValueError(f"unknown on_malformed policy {on_malformed!r}")
    resume = ResumeCursor(cursor)

    try:
        fh = open(input_path, encoding="utf-8")
    except OSError as exc:
        raise FileOpenError(input_path, exc) from exc

    with fh:
        for counter, line in enumerate(fh):
            counters.lines_read += 1

            try:
                region = decode_region_line(line)
            except MalformedRecordError as exc:
                counters.malformed_rows += 1
                if on_malformed == "abort":
                    log.error("Malformed record at line %d: %s", counter, exc)
                    raise MalformedRecordError(
                        f"line {counter}: {exc.reason}", exc.zip_code
                    ) from exc
                if resume.should_skip(counter):
                    counters.rows_skipped_cursor += 1
                    echo(f"[{run_id}] Skipping {counter}")
                    continue
                counters.warnings.append(f"line={counter} malformed: {exc.reason}")
                if not dry_run:
                    ledger.record(counter, exc.zip_code, f"malformed record: {exc.reason}")
                echo(f"[{run_id}] Malformed {counter}")
                continue

            if resume.should_skip(counter):
                counters.rows_skipped_cursor += 1
                echo(f"[{run_id}] Skipping {counter}")
                continue

            if mode == "retry_only" and region.zip not in retry_zips:  # type: ignore[operator]
                counters.rows_skipped_filter += 1
                echo(f"[{run_id}] Skipping {counter} (zip {region.zip} not in retry ledger)")
                continue

            echo(f"[{run_id}] Processing {counter}")
            counters.rows_processed += 1
            upsert_region(
                store, region, counter, ledger, counters,
                probe_failure=probe_failure,
                dry_run=dry_run,
            )


# ---------------------------------------------------------------------------
# Report builder
# ---------------------------------------------------------------------------

def build_region_report(counters: RunCounters, dry_run: bool) -> str:
    lines = [
        "=== geo_zip Region Ingest Report ===",
        f"dry_run              : {dry_run}",
        "",
        "--- Input ---",
        f"lines_read           : {counters.lines_read}",
        f"skipped(cursor)      : {counters.rows_skipped_cursor}",
        f"skipped(retry filter): {counters.rows_skipped_filter}",
        f"rows_processed       : {counters.rows_processed}",
        f"malformed_rows       : {counters.malformed_rows}",
        "",
        "--- Store ---",
        f"items_inserted       : {counters.items_inserted}",
        f"items_updated        : {counters.items_updated}",
        f"oversize_items       : {counters.oversize_items}",
    ]
    if dry_run:
        lines += [
            f"would_insert         : {counters.dry_run_inserts}",
            f"would_update         : {counters.dry_run_updates}",
        ]
    lines += [
        "",
        "--- Errors ---",
        f"write_failures       : {counters.write_failures}",
        f"probe_failures       : {counters.probe_failures}",
    ]
    if counters.warnings:
        lines += ["", "--- Warnings (first 10) ---"]
        lines += [f"  {w}" for w in counters.warnings[:10]]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Store selection
# ---------------------------------------------------------------------------

def _build_store(
    store_kind: str,
    db_dsn: str | None,
    table_name: str,
    aws_region: str | None,
    aws_key_env: str,
    aws_secret_env: str,
    run_id: str,
) -> RegionStore:
    if store_kind == "postgres":
        dsn = db_dsn or os.environ.get("GEOZIP_DB_DSN", "")
        if not dsn:
            click.echo(
                f"[{run_id}] FATAL: postgres store requires --db-dsn or GEOZIP_DB_DSN",
                err=True,
            )
            sys.exit(1)
        try:
            return PostgresRegionStore.connect(dsn, table_name)
        except psycopg.Error as exc:
            click.echo(f"[{run_id}] FATAL: cannot connect to PostgreSQL: {exc}", err=True)
            sys.exit(1)

    # Credentials come from env only, never from CLI args
    region = aws_region or os.environ.get("AWS_REGION") or DEFAULT_AWS_REGION
    store = DynamoRegionStore.from_credentials(
        region=region,
        access_key=os.environ.get(aws_key_env),
        secret_key=os.environ.get(aws_secret_env),
        table_name=table_name,
    )
    click.echo(f"[{run_id}] DynamoDB session created (region={region}, table={table_name})")
    return store


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option("--input-path", required=True, type=click.Path(), help="Newline-delimited JSON region records")
@click.option("--cursor", default=0, type=click.IntRange(min=0), show_default=True, help="Line number (0-based) to resume from")
@click.option(
    "--mode",
    default="full",
    type=click.Choice(list(MODES)),
    show_default=True,
    help="full: every record; retry_only: only zips listed in --retry-ledger",
)
@click.option("--retry-ledger", default=None, type=click.Path(), help="[retry_only] Ledger CSV from a prior run")
@click.option(
    "--ledger-path",
    default="./artifacts/ledgers/geo_zip_errors.csv",
    type=click.Path(),
    show_default=True,
)
@click.option("--append-ledger", is_flag=True, default=False, help="Append to --ledger-path instead of truncating it")
@click.option(
    "--on-malformed",
    default="abort",
    type=click.Choice(list(MALFORMED_POLICIES)),
    show_default=True,
    help="abort: stop the run on an undecodable line; record: write it to the ledger and continue",
)
@click.option(
    "--probe-failure",
    default="record",
    type=click.Choice(list(PROBE_FAILURE_POLICIES)),
    show_default=True,
    help="record: ledger the zip and skip it; insert: treat a failed probe as not-found",
)
@click.option("--store", "store_kind", default="postgres", type=click.Choice(["postgres", "dynamodb"]), show_default=True)
@click.option("--db-dsn", default=None, help="[postgres] PostgreSQL DSN (falls back to GEOZIP_DB_DSN)")
@click.option("--table-name", default=None, help="Table name (falls back to GEOZIP_TABLE, then geo_zip)")
@click.option("--aws-region", default=None, help="[dynamodb] Region (falls back to AWS_REGION, then us-east-1)")
@click.option("--aws-key-env", default="AWS_KEY", show_default=True, help="[dynamodb] Env var name holding the access key id")
@click.option("--aws-secret-env", default="AWS_SECRET", show_default=True, help="[dynamodb] Env var name holding the secret key")
@click.option("--env-file", default=".env", type=click.Path(), show_default=True, help="Optional dotenv file loaded before reading env vars")
@click.option("--dry-run", is_flag=True, default=False, help="Probe only; no writes and no ledger rows")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--report/--no-report", default=True, show_default=True, help="Write a JSON run report under ./artifacts/reports")
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    show_default=True,
)
def main(
    input_path: str,
    cursor: int,
    mode: str,
    retry_ledger: str | None,
    ledger_path: str,
    append_ledger: bool,
    on_malformed: str,
    probe_failure: str,
    store_kind: str,
    db_dsn: str | None,
    table_name: str | None,
    aws_region: str | None,
    aws_key_env: str,
    aws_secret_env: str,
    env_file: str,
    dry_run: bool,
    run_id: str | None,
    report: bool,
    log_level: str,
) -> None:
    """Upsert postal-code boundaries into the geo_zip table."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(UTC).isoformat()
    counters = RunCounters()

    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)

    load_dotenv(env_file)
    table = table_name or os.environ.get("GEOZIP_TABLE") or DEFAULT_TABLE

    click.echo(
        f"[{run_id}] Starting {mode} run (store={store_kind}, cursor={cursor}, dry_run={dry_run})"
    )

    if mode == "retry_only" and not retry_ledger:
        click.echo(f"[{run_id}] FATAL: retry_only mode requires: --retry-ledger", err=True)
        sys.exit(1)

    # Read the retry filter before the ledger is opened: they may be the same file.
    retry_zips: set[int] | None = None
    if mode == "retry_only":
        try:
            retry_zips = load_failed_zips(Path(retry_ledger))  # type: ignore[arg-type]
        except FileOpenError as exc:
            click.echo(f"[{run_id}] FATAL: {exc}", err=True)
            sys.exit(1)
        click.echo(f"[{run_id}] Retry ledger loaded: {len(retry_zips)} zips")

    if not Path(input_path).is_file():
        click.echo(f"[{run_id}] FATAL: cannot open {input_path}: no such file", err=True)
        sys.exit(1)

    store = _build_store(
        store_kind, db_dsn, table, aws_region, aws_key_env, aws_secret_env, run_id
    )

    # A dry run writes no rows; append mode leaves an existing ledger intact.
    try:
        ledger = ErrorLedger(Path(ledger_path), append=append_ledger or dry_run)
    except FileOpenError as exc:
        store.close()
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    fatal: str | None = None
    try:
        run_region_ingest(
            run_id,
            Path(input_path),
            store,
            ledger,
            counters,
            cursor=cursor,
            mode=mode,
            retry_zips=retry_zips,
            on_malformed=on_malformed,
            probe_failure=probe_failure,
            dry_run=dry_run,
        )
    except MalformedRecordError as exc:
        fatal = f"malformed record at {exc}"
    except FileOpenError as exc:
        fatal = str(exc)
    finally:
        store.close()
        ledger.close()

    click.echo(build_region_report(counters, dry_run=dry_run))
    click.echo(f"[{run_id}] Ledger rows written: {ledger.rows_written} ({ledger.path})")

    if report:
        report_path = write_run_report(
            run_id, started_at, mode, dry_run,
            {
                "input_path": input_path,
                "ledger_path": ledger_path,
                "retry_ledger": retry_ledger or "",
                "cursor": str(cursor),
                "store": store_kind,
                "table_name": table,
            },
            counters,
        )
        click.echo(f"[{run_id}] Run report: {report_path}")

    if fatal:
        click.echo(f"[{run_id}] FATAL: {fatal}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
