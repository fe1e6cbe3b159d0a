"""piscine_etl.store

Record store boundary consumed by the smart-import importers.

The importers only need four calls: a bulk key-existence lookup, an atomic
bulk insert, a keyed single-row update, and a keyed point lookup.
PostgresStore implements them over psycopg; tests substitute an in-memory
store with the same shape.

Each PostgresStore call runs inside conn.transaction(): in autocommit mode
that commits the call on its own, and under an outer transaction (dry-run,
tests) it becomes a savepoint, so one failed statement never poisons the
connection for the calls that follow.
"""

from __future__ import annotations

from typing import Any, Iterable, Protocol

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

# ---------------------------------------------------------------------------
# Schema whitelist
# ---------------------------------------------------------------------------

STUDENT_COLUMNS = frozenset({
    "uuid", "username", "name", "email", "profile_image_url",
    "blocks", "level", "votes_given", "votes_received", "voters",
    "reviewee", "reviewer", "feedbacks_received",
    "performance", "communication", "professionalism",
    "validated_rushes_participated", "passed_exams_registered",
    "final_exam_validated", "last_validated_project", "validated_projects",
    "age", "gender", "coding_level", "context",
})

TABLE_COLUMNS: dict[str, frozenset[str]] = {
    "students": STUDENT_COLUMNS | {"id", "created_at", "updated_at"},
    "exam_grades": frozenset({
        "id", "student_id", "exam_name", "grade", "validated", "max_grade",
        "created_at", "updated_at",
    }),
    "rush_scores": frozenset({
        "id", "student_id", "project_name", "score", "created_at", "updated_at",
    }),
}


class UnknownColumnError(ValueError):
    """Raised when a store call names a table or column outside the schema."""


def _check_columns(table: str, columns: Iterable[str]) -> None:
    allowed = TABLE_COLUMNS.get(table)
    if allowed is None:
        raise UnknownColumnError(f"unknown table {table!r}")
    unknown = set(columns) - allowed
    if unknown:
        raise UnknownColumnError(f"unknown columns for {table}: {sorted(unknown)}")


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class RecordStore(Protocol):
    def exists_by_key(
        self, table: str, key_field: str, key_values: Iterable[str]
    ) -> set[str]:
        """Return the subset of key_values already present in table."""
        ...

    def insert_many(self, table: str, records: list[dict[str, Any]]) -> None:
        """Insert all records or none; raise on failure."""
        ...

    def update_one(
        self, table: str, match: dict[str, Any], patch: dict[str, Any]
    ) -> None:
        """Apply patch to the row(s) matching every key in match."""
        ...

    def find_one(
        self, table: str, match: dict[str, Any], columns: list[str] | None = None
    ) -> dict[str, Any] | None:
        """Return the first matching row as a dict, or None."""
        ...


# ---------------------------------------------------------------------------
# PostgresStore
# ---------------------------------------------------------------------------

def _where(match: dict[str, Any]) -> sql.Composed:
    return sql.SQL(" AND ").join(
        sql.SQL("{} = {}").format(sql.Identifier(k), sql.Placeholder())
        for k in match
    )


class PostgresStore:
    """RecordStore over a psycopg connection."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def exists_by_key(
        self, table: str, key_field: str, key_values: Iterable[str]
    ) -> set[str]:
        keys = list(dict.fromkeys(key_values))
        if not keys:
            return set()
        _check_columns(table, [key_field])
        query = sql.SQL("SELECT {key} FROM {table} WHERE {key} = ANY(%s)").format(
            key=sql.Identifier(key_field),
            table=sql.Identifier(table),
        )
        with self._conn.transaction():
            rows = self._conn.execute(query, (keys,)).fetchall()
        return {str(r[0]) for r in rows}

    def insert_many(self, table: str, records: list[dict[str, Any]]) -> None:
        if not records:
            return
        for record in records:
            _check_columns(table, record)
        with self._conn.transaction():
            for record in records:
                cols = list(record)
                query = sql.SQL("INSERT INTO {table} ({cols}) VALUES ({vals})").format(
                    table=sql.Identifier(table),
                    cols=sql.SQL(", ").join(map(sql.Identifier, cols)),
                    vals=sql.SQL(", ").join([sql.Placeholder()] * len(cols)),
                )
                self._conn.execute(query, [record[c] for c in cols])

    def update_one(
        self, table: str, match: dict[str, Any], patch: dict[str, Any]
    ) -> None:
        if not match:
            raise ValueError("update_one requires a non-empty match")
        _check_columns(table, list(match) + list(patch))
        assignments = [
            sql.SQL("{} = {}").format(sql.Identifier(k), sql.Placeholder())
            for k in patch
        ]
        assignments.append(sql.SQL("updated_at = now()"))
        query = sql.SQL("UPDATE {table} SET {sets} WHERE {where}").format(
            table=sql.Identifier(table),
            sets=sql.SQL(", ").join(assignments),
            where=_where(match),
        )
        with self._conn.transaction():
            self._conn.execute(query, list(patch.values()) + list(match.values()))

    def find_one(
        self, table: str, match: dict[str, Any], columns: list[str] | None = None
    ) -> dict[str, Any] | None:
        _check_columns(table, list(match) + list(columns or []))
        select = (
            sql.SQL(", ").join(map(sql.Identifier, columns)) if columns else sql.SQL("*")
        )
        query = sql.SQL("SELECT {select} FROM {table} WHERE {where} LIMIT 1").format(
            select=select,
            table=sql.Identifier(table),
            where=_where(match),
        )
        with self._conn.transaction():
            with self._conn.cursor(row_factory=dict_row) as cur:
                return cur.execute(query, list(match.values())).fetchone()
