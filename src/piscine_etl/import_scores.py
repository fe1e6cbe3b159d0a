"""piscine_etl.import_scores

Exam-grade and rush-score importers for smart import.

Both kinds share one shape: every data row names a student by username,
and each present sub-field column (exam00..final_exam, or the three rush
projects) carries an independent score.  Each surviving (row, sub-field)
value is one upsert unit keyed by (student_id, <name column>), where
student_id is the student's uuid.

Skips vs errors:
  - blank username, or a blank / '0' / 'null' / non-positive score cell:
    silent skip, not counted anywhere
  - unknown username: row-level error
  - store failure on lookup, update or insert: unit-level error; later
    units and rows still run
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from piscine_etl.csv_grid import cell, is_blank_row
from piscine_etl.normalize import parse_positive_score, trim
from piscine_etl.shared import CancelToken, ImportStats
from piscine_etl.store import RecordStore

log = logging.getLogger(__name__)

VALIDATION_THRESHOLD = 60
MAX_GRADE = 100


# ---------------------------------------------------------------------------
# Kind descriptors
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScoredKind:
    """Parameterizes import_scored_fields for one target table."""

    table: str
    name_column: str
    fields: tuple[str, ...]
    build_record: Callable[[str, str, float], dict[str, Any]]
    unit_label: str


def exam_grade_record(student_uuid: str, exam_name: str, grade: float) -> dict[str, Any]:
    return {
        "student_id": student_uuid,
        "exam_name": exam_name,
        "grade": grade,
        "validated": grade >= VALIDATION_THRESHOLD,
        "max_grade": MAX_GRADE,
    }


def rush_score_record(student_uuid: str, project_name: str, score: float) -> dict[str, Any]:
    return {
        "student_id": student_uuid,
        "project_name": project_name,
        "score": score,
    }


EXAM_GRADES = ScoredKind(
    table="exam_grades",
    name_column="exam_name",
    fields=("exam00", "exam01", "exam02", "final_exam"),
    build_record=exam_grade_record,
    unit_label="grade",
)

RUSH_SCORES = ScoredKind(
    table="rush_scores",
    name_column="project_name",
    fields=("square", "sky_scraper", "rosetta_stone"),
    build_record=rush_score_record,
    unit_label="score",
)


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------

def _lookup_student_uuid(
    store: RecordStore,
    username: str,
    cache: dict[str, str | None],
) -> str | None:
    if username not in cache:
        student = store.find_one("students", {"username": username}, ["uuid"])
        cache[username] = str(student["uuid"]) if student else None
    return cache[username]


def _upsert_unit(
    store: RecordStore,
    kind: ScoredKind,
    record: dict[str, Any],
    row_no: int,
    field_name: str,
    stats: ImportStats,
) -> None:
    match = {"student_id": record["student_id"], kind.name_column: field_name}
    try:
        existing = store.find_one(kind.table, match, ["id"])
    except Exception as exc:
        stats.record_error(f"Row {row_no}, {field_name}: Error checking {kind.unit_label}: {exc}")
        return

    if existing:
        try:
            store.update_one(kind.table, match, record)
            stats.updated += 1
        except Exception as exc:
            stats.record_error(f"Row {row_no}, {field_name}: Update failed: {exc}")
    else:
        try:
            store.insert_many(kind.table, [record])
            stats.created += 1
        except Exception as exc:
            stats.record_error(f"Row {row_no}, {field_name}: Insert failed: {exc}")


def import_scored_fields(
    kind: ScoredKind,
    grid: list[list[str]],
    columns: dict[str, int],
    store: RecordStore,
    stats: ImportStats | None = None,
    cancel: CancelToken | None = None,
) -> ImportStats:
    """Upsert one record per present, positive sub-field value."""
    stats = stats if stats is not None else ImportStats()
    cancel = cancel or CancelToken()
    present = [f for f in kind.fields if f in columns]
    log.debug("%s: sub-fields present %s", kind.table, present)

    uuid_cache: dict[str, str | None] = {}
    for idx, row in enumerate(grid[1:]):
        cancel.raise_if_cancelled()
        if is_blank_row(row):
            continue
        row_no = idx + 2

        username = (trim(cell(row, columns, "username")) or "").lower()
        if not username:
            continue

        try:
            student_uuid = _lookup_student_uuid(store, username, uuid_cache)
        except Exception as exc:
            log.warning("%s: student lookup for %s failed: %s", kind.table, username, exc)
            student_uuid = None
        if student_uuid is None:
            stats.record_error(f"Row {row_no}: Student {username} not found")
            continue

        for field_name in present:
            score = parse_positive_score(cell(row, columns, field_name))
            if score is None:
                continue
            cancel.raise_if_cancelled()
            stats.total_rows += 1
            log.debug("%s: row %d %s=%s for %s", kind.table, row_no, field_name, score, username)
            _upsert_unit(
                store, kind, kind.build_record(student_uuid, field_name, score),
                row_no, field_name, stats,
            )

    log.info(
        "%s: %d units, %d created, %d updated, %d errors",
        kind.table, stats.total_rows, stats.created, stats.updated, stats.errors,
    )
    return stats


def import_exam_grades(
    grid: list[list[str]],
    columns: dict[str, int],
    store: RecordStore,
    stats: ImportStats | None = None,
    cancel: CancelToken | None = None,
) -> ImportStats:
    return import_scored_fields(EXAM_GRADES, grid, columns, store, stats, cancel)


def import_rush_scores(
    grid: list[list[str]],
    columns: dict[str, int],
    store: RecordStore,
    stats: ImportStats | None = None,
    cancel: CancelToken | None = None,
) -> ImportStats:
    return import_scored_fields(RUSH_SCORES, grid, columns, store, stats, cancel)
