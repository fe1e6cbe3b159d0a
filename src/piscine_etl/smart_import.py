"""piscine_etl.smart_import

Smart CSV import: classify an uploaded spreadsheet by its headers and
upsert students, exam grades and rush scores from it.

Stages (linear, no retries):
  received file -> size/extension validated -> tokenized
    -> header-classified -> per kind: resolve columns -> import
    -> stats merged -> ImportResult

Classification and imports run on a worker thread raced against a
wall-clock budget.  On timeout the caller gets a timeout result right away
and the worker stops at its next cancellation check; writes already issued
are kept.

Usage:
    python -m piscine_etl.smart_import \\
        --db-dsn "$DB_DSN" \\
        --csv-path "exports/piscine_october.csv"
"""

from __future__ import annotations

import logging
import sys
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import click
import psycopg

from piscine_etl.column_map import (
    DEFAULT_SYNONYMS,
    EXAM_GRADES,
    RUSH_SCORES,
    STUDENTS,
    SynonymSet,
    SynonymSetValidationError,
    detect_record_kinds,
    load_synonym_set,
    missing_required,
    resolve_columns,
)
from piscine_etl.csv_grid import CsvDecodeError, decode_csv_bytes, parse_csv_text
from piscine_etl.import_scores import import_exam_grades, import_rush_scores
from piscine_etl.import_students import import_students
from piscine_etl.shared import (
    FAILURE_INTERNAL,
    FAILURE_REJECTED,
    FAILURE_TIMEOUT,
    CancelToken,
    CsvRejectedError,
    ImportResult,
    ImportStats,
    ImportTimeoutError,
    write_run_report,
)
from piscine_etl.store import PostgresStore, RecordStore

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAX_DATA_ROWS = 1000
MAX_FILE_BYTES = 10 * 1024 * 1024
DEFAULT_TIMEOUT_SECONDS = 25.0

NO_KIND_MESSAGE = (
    "No recognizable columns found. Expected student, exam, or rush data columns."
)

IMPORTERS = {
    STUDENTS: import_students,
    EXAM_GRADES: import_exam_grades,
    RUSH_SCORES: import_rush_scores,
}


# ---------------------------------------------------------------------------
# Structural validation
# ---------------------------------------------------------------------------

def validate_upload(
    file_bytes: bytes,
    file_name: str,
    max_rows: int = MAX_DATA_ROWS,
    max_bytes: int = MAX_FILE_BYTES,
) -> list[list[str]]:
    """Return the parsed grid, or raise CsvRejectedError before any write."""
    if not file_name or not file_name.lower().endswith(".csv"):
        raise CsvRejectedError("Only CSV files are allowed")
    if len(file_bytes) > max_bytes:
        raise CsvRejectedError(
            f"File is {len(file_bytes)} bytes; the limit is {max_bytes} bytes"
        )
    try:
        text = decode_csv_bytes(file_bytes)
    except CsvDecodeError as exc:
        raise CsvRejectedError(str(exc)) from exc

    grid = parse_csv_text(text)
    if len(grid) < 2:
        raise CsvRejectedError("CSV file must contain headers and at least one data row")
    data_rows = len(grid) - 1
    if data_rows > max_rows:
        raise CsvRejectedError(
            f"CSV file has {data_rows} data rows; the limit is {max_rows}"
        )
    return grid


# ---------------------------------------------------------------------------
# Classification + per-kind imports (worker side)
# ---------------------------------------------------------------------------

@dataclass
class RunState:
    """Progress shared between the worker and the waiting caller."""

    detected: list[str] = field(default_factory=list)
    kind_stats: dict[str, ImportStats] = field(default_factory=dict)

    def merged_stats(self) -> ImportStats:
        total = ImportStats()
        for stats in list(self.kind_stats.values()):
            total = total.merge(stats.snapshot())
        return total


def run_smart_import(
    grid: list[list[str]],
    store: RecordStore,
    synonyms: SynonymSet,
    cancel: CancelToken,
    state: RunState,
) -> RunState:
    """Classify the header row, then run every matching importer in order."""
    headers = grid[0]
    detected = detect_record_kinds(headers, synonyms)
    log.info("smart_import: detected kinds %s", detected)
    if not detected:
        raise CsvRejectedError(NO_KIND_MESSAGE)
    state.detected = detected

    for kind_name in detected:
        cancel.raise_if_cancelled()
        stats = state.kind_stats.setdefault(kind_name, ImportStats())
        columns = resolve_columns(headers, kind_name, synonyms)
        missing = missing_required(kind_name, columns, synonyms)
        if missing:
            stats.record_error(
                f"{kind_name}: required column(s) missing from header: {', '.join(missing)}"
            )
            continue
        IMPORTERS[kind_name](grid, columns, store, stats=stats, cancel=cancel)
    return state


def _await_import(future: Future, timeout_seconds: float) -> RunState:
    done, _ = wait([future], timeout=timeout_seconds)
    if not done:
        raise ImportTimeoutError(f"Import timed out after {timeout_seconds:g}s")
    return future.result()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def import_csv(
    file_bytes: bytes,
    file_name: str,
    store: RecordStore,
    *,
    synonyms: SynonymSet = DEFAULT_SYNONYMS,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    max_rows: int = MAX_DATA_ROWS,
    max_bytes: int = MAX_FILE_BYTES,
) -> ImportResult:
    """Import one uploaded CSV and return the result payload.

    Never raises for bad input, timeouts or store failures; callers are
    expected to have authenticated the request already.
    """
    try:
        grid = validate_upload(file_bytes, file_name, max_rows, max_bytes)
    except CsvRejectedError as exc:
        log.info("smart_import: rejected %s: %s", file_name, exc)
        return ImportResult(
            success=False, message=str(exc), errors=[str(exc)],
            failure_reason=FAILURE_REJECTED,
        )

    state = RunState()
    cancel = CancelToken()
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="smart-import")
    future = executor.submit(run_smart_import, grid, store, synonyms, cancel, state)
    try:
        _await_import(future, timeout_seconds)
    except ImportTimeoutError as exc:
        cancel.cancel()
        stats = state.merged_stats()
        log.warning("smart_import: %s (%d units processed)", exc, stats.total_rows)
        return ImportResult(
            success=False,
            message=f"{exc}; records written before the timeout were kept",
            stats=stats,
            detected_tables=list(state.detected),
            errors=stats.error_messages + [str(exc)],
            failure_reason=FAILURE_TIMEOUT,
        )
    except CsvRejectedError as exc:
        return ImportResult(
            success=False, message=str(exc), errors=[str(exc)],
            failure_reason=FAILURE_REJECTED,
        )
    except Exception as exc:
        log.error("smart_import: internal error: %s: %s", type(exc).__name__, exc)
        return ImportResult(
            success=False,
            message="Internal server error",
            stats=state.merged_stats(),
            detected_tables=list(state.detected),
            errors=[f"{type(exc).__name__}: {exc}"],
            failure_reason=FAILURE_INTERNAL,
        )
    finally:
        executor.shutdown(wait=False)

    stats = state.merged_stats()
    return ImportResult(
        success=stats.errors == 0,
        message=(
            f"Smart import completed. Detected and imported to: {', '.join(state.detected)}. "
            f"Created: {stats.created}, Updated: {stats.updated}, Errors: {stats.errors}"
        ),
        stats=stats,
        detected_tables=list(state.detected),
        errors=stats.error_messages,
    )


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

MAX_ERRORS_SHOWN = 20


@click.command()
@click.option("--db-dsn", required=True, help="PostgreSQL DSN")
@click.option(
    "--csv-path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="CSV export to import",
)
@click.option(
    "--synonyms-file",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="YAML file overriding the built-in column synonyms",
)
@click.option(
    "--timeout-seconds",
    default=DEFAULT_TIMEOUT_SECONDS,
    type=float,
    show_default=True,
    help="Wall-clock budget for classification + import",
)
@click.option(
    "--max-rows",
    default=MAX_DATA_ROWS,
    type=int,
    show_default=True,
    help="Reject files with more data rows than this",
)
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--report-dir",
    default="./artifacts/reports",
    show_default=True,
    type=click.Path(file_okay=False),
)
@click.option("--verbose", is_flag=True, default=False, help="Enable DEBUG logging")
def main(
    db_dsn: str,
    csv_path: str,
    synonyms_file: str | None,
    timeout_seconds: float,
    max_rows: int,
    dry_run: bool,
    run_id: str | None,
    report_dir: str,
    verbose: bool,
) -> None:
    """Smart CSV import of students, exam grades and rush scores."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=f"%(asctime)s [{run_id}] %(levelname)s %(name)s: %(message)s",
    )

    synonyms = DEFAULT_SYNONYMS
    if synonyms_file:
        try:
            synonyms = load_synonym_set(Path(synonyms_file))
        except SynonymSetValidationError as exc:
            click.echo(f"[{run_id}] FATAL: {exc}", err=True)
            sys.exit(1)

    path = Path(csv_path)
    click.echo(f"[{run_id}] Starting smart_import run (dry_run={dry_run}) file={path.name}")

    def _run(conn: psycopg.Connection) -> ImportResult:
        return import_csv(
            path.read_bytes(),
            path.name,
            PostgresStore(conn),
            synonyms=synonyms,
            timeout_seconds=timeout_seconds,
            max_rows=max_rows,
        )

    conn = psycopg.connect(db_dsn, autocommit=not dry_run)
    try:
        if dry_run:
            # Store calls nest as savepoints inside this block
            with conn.transaction(force_rollback=True):
                result = _run(conn)
            click.echo(f"[{run_id}] [dry-run] All changes rolled back.")
        else:
            result = _run(conn)
    finally:
        conn.close()

    click.echo(f"[{run_id}] {result.message}")
    s = result.stats
    click.echo(
        f"[{run_id}] Done: {s.total_rows} units, {s.created} created, "
        f"{s.updated} updated, {s.errors} errors "
        f"(tables: {', '.join(result.detected_tables) or 'none'})"
    )
    for message in result.errors[:MAX_ERRORS_SHOWN]:
        click.echo(f"[{run_id}]   {message}", err=True)
    if len(result.errors) > MAX_ERRORS_SHOWN:
        click.echo(
            f"[{run_id}]   ... {len(result.errors) - MAX_ERRORS_SHOWN} more",
            err=True,
        )

    report_path = write_run_report(
        run_id, started_at, dry_run, path.name, result, Path(report_dir)
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if result.timed_out:
        click.echo(f"[{run_id}] FATAL: import timed out", err=True)
        sys.exit(2)
    if not result.success:
        sys.exit(1)


if __name__ == "__main__":
    main()
