"""piscine_etl.import_students

Participant ("students") importer for smart import.

Processing order:
  1. Per non-blank data row: require username + name, extract the clean
     name and image URL from the name cell, coerce the optional attributes
     into a StudentRecord.
  2. One bulk existence read of every username seen in the file.
  3. One bulk insert of all new usernames.  If the store rejects the batch
     (a duplicate key, e.g. two usernames hashing to the same fallback
     uuid), the batch is retried one record at a time so only the
     offending rows fail.
  4. Updates for existing usernames (and repeats of a username within the
     file), issued one by one in chunks of UPDATE_CHUNK_SIZE with a
     cancellation check and a progress line per chunk.

Updates only carry the attributes the row actually set, so a re-import that
lacks a column never overwrites a stored value with null.  The synthesized
email and the fallback uuid are insert-only for the same reason.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from piscine_etl.csv_grid import cell, is_blank_row
from piscine_etl.html_name import extract_name_and_image
from piscine_etl.normalize import (
    LEARNER_EMAIL_DOMAIN,
    clean_email,
    deterministic_uuid,
    parse_bool,
    parse_numeric,
    resolve_email,
    trim,
)
from piscine_etl.shared import CancelToken, ImportStats
from piscine_etl.store import RecordStore

log = logging.getLogger(__name__)

TABLE = "students"
UPDATE_CHUNK_SIZE = 10

# Numeric metrics: a present-but-blank cell falls back to 0
_METRIC_FIELDS = (
    "blocks", "level", "votes_given", "votes_received", "voters",
    "reviewee", "reviewer", "feedbacks_received",
    "performance", "communication", "professionalism",
    "validated_projects",
)
_TEXT_FIELDS = (
    "validated_rushes_participated", "passed_exams_registered",
    "last_validated_project", "gender", "coding_level", "context",
)


# ---------------------------------------------------------------------------
# StudentRecord
# ---------------------------------------------------------------------------

@dataclass
class StudentRecord:
    """Canonical participant attributes; None means 'not set by this row'."""

    username: str
    name: str
    email: str | None = None
    uuid: str | None = None
    profile_image_url: str | None = None
    blocks: float | None = None
    level: float | None = None
    votes_given: float | None = None
    votes_received: float | None = None
    voters: float | None = None
    reviewee: float | None = None
    reviewer: float | None = None
    feedbacks_received: float | None = None
    performance: float | None = None
    communication: float | None = None
    professionalism: float | None = None
    validated_rushes_participated: str | None = None
    passed_exams_registered: str | None = None
    final_exam_validated: bool | None = None
    last_validated_project: str | None = None
    validated_projects: float | None = None
    age: float | None = None
    gender: str | None = None
    coding_level: str | None = None
    context: str | None = None

    def compact(self) -> dict[str, Any]:
        """Return only the attributes that are set."""
        return {k: v for k, v in asdict(self).items() if v is not None}


def student_uuid(provided: str | None, username: str | None, row_index: int) -> str:
    """Use the file's uuid when present, else derive one from the username."""
    return trim(provided) or deterministic_uuid(username or f"student_{row_index}")


def build_student_record(
    row: list[str],
    columns: dict[str, int],
    username: str,
    raw_name: str,
) -> StudentRecord:
    """Coerce one data row into a StudentRecord.

    Fields whose column is absent from the file stay None.  Present metric
    columns default to 0 and final_exam_validated to False; age, email and
    text columns stay None when blank.
    """
    extracted = extract_name_and_image(raw_name)
    record = StudentRecord(
        username=username,
        name=extracted.name or username,
        email=clean_email(cell(row, columns, "email")),
        uuid=trim(cell(row, columns, "uuid")),
        profile_image_url=extracted.image_url,
    )
    for field_name in _METRIC_FIELDS:
        if field_name in columns:
            setattr(record, field_name, parse_numeric(cell(row, columns, field_name)) or 0)
    for field_name in _TEXT_FIELDS:
        setattr(record, field_name, trim(cell(row, columns, field_name)))
    if "final_exam_validated" in columns:
        record.final_exam_validated = parse_bool(cell(row, columns, "final_exam_validated"))
    record.age = parse_numeric(cell(row, columns, "age")) or None
    return record


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------

@dataclass
class _PendingRow:
    row_no: int
    record: StudentRecord
    insert_payload: dict[str, Any]

    @property
    def update_patch(self) -> dict[str, Any]:
        patch = self.record.compact()
        patch.pop("username", None)
        return patch


def import_students(
    grid: list[list[str]],
    columns: dict[str, int],
    store: RecordStore,
    stats: ImportStats | None = None,
    cancel: CancelToken | None = None,
    email_domain: str = LEARNER_EMAIL_DOMAIN,
) -> ImportStats:
    """Upsert participants keyed by lowercased username."""
    stats = stats if stats is not None else ImportStats()
    cancel = cancel or CancelToken()
    log.debug("students: resolved columns %s", sorted(columns))

    pending: list[_PendingRow] = []
    for idx, row in enumerate(grid[1:]):
        cancel.raise_if_cancelled()
        if is_blank_row(row):
            continue
        row_no = idx + 2
        stats.total_rows += 1

        username = (trim(cell(row, columns, "username")) or "").lower()
        raw_name = trim(cell(row, columns, "name"))
        if not username or not raw_name:
            missing = [f for f, v in (("username", username), ("name", raw_name)) if not v]
            stats.record_error(f"Row {row_no}: Missing required fields: {', '.join(missing)}")
            continue

        record = build_student_record(row, columns, username, raw_name)
        insert_payload = record.compact()
        insert_payload["uuid"] = student_uuid(record.uuid, username, idx)
        insert_payload["email"] = resolve_email(username, record.email, email_domain)
        log.debug("students: row %d username=%s name=%r", row_no, username, record.name)
        pending.append(_PendingRow(row_no, record, insert_payload))

    if not pending:
        return stats

    cancel.raise_if_cancelled()
    try:
        existing = store.exists_by_key(TABLE, "username", [p.record.username for p in pending])
    except Exception as exc:
        log.warning("students: existence lookup failed: %s", exc)
        for p in pending:
            stats.record_error(f"Row {p.row_no}: Database error: {exc}")
        return stats

    inserts: dict[str, _PendingRow] = {}
    updates: list[_PendingRow] = []
    for p in pending:
        if p.record.username in existing or p.record.username in inserts:
            updates.append(p)
        else:
            inserts[p.record.username] = p

    failed_inserts: set[str] = set()
    if inserts:
        cancel.raise_if_cancelled()
        failed_inserts = _insert_new(store, list(inserts.values()), stats, cancel)

    chunks = range(0, len(updates), UPDATE_CHUNK_SIZE)
    for start in chunks:
        cancel.raise_if_cancelled()
        chunk = updates[start:start + UPDATE_CHUNK_SIZE]
        for p in chunk:
            cancel.raise_if_cancelled()
            if p.record.username in failed_inserts:
                stats.record_error(
                    f"Row {p.row_no}: Update skipped: insert of {p.record.username} failed"
                )
                continue
            try:
                store.update_one(TABLE, {"username": p.record.username}, p.update_patch)
                stats.updated += 1
            except Exception as exc:
                stats.record_error(f"Row {p.row_no}: Update failed: {exc}")
        log.info(
            "students: update chunk %d/%d done (%d of %d rows)",
            start // UPDATE_CHUNK_SIZE + 1, len(chunks), start + len(chunk), len(updates),
        )

    log.info(
        "students: %d rows, %d created, %d updated, %d errors",
        stats.total_rows, stats.created, stats.updated, stats.errors,
    )
    return stats


def _insert_new(
    store: RecordStore,
    rows: list[_PendingRow],
    stats: ImportStats,
    cancel: CancelToken,
) -> set[str]:
    """Insert new participants; return the usernames that could not be inserted.

    One bulk call first.  If the store rejects it, every record is retried
    on its own so a single duplicate key only costs its own row.
    """
    try:
        store.insert_many(TABLE, [p.insert_payload for p in rows])
        stats.created += len(rows)
        return set()
    except Exception as exc:
        log.warning(
            "students: bulk insert of %d rows failed, retrying one by one: %s",
            len(rows), exc,
        )

    failed: set[str] = set()
    for p in rows:
        cancel.raise_if_cancelled()
        try:
            store.insert_many(TABLE, [p.insert_payload])
            stats.created += 1
        except Exception as exc:
            failed.add(p.record.username)
            stats.record_error(f"Row {p.row_no}: Insert failed: {exc}")
    return failed
