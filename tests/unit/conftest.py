"""Unit test fixtures.

FakeStore is an in-memory RecordStore that records every call, enforces the
same uniqueness keys as the migrations, and can be told to fail or stall
on specific (method, table) pairs.
"""

from __future__ import annotations

import copy
from typing import Any, Callable, Iterable

import pytest

UNIQUE_KEYS: dict[str, list[tuple[str, ...]]] = {
    "students": [("username",), ("uuid",)],
    "exam_grades": [("student_id", "exam_name")],
    "rush_scores": [("student_id", "project_name")],
}


class FakeStore:
    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {t: [] for t in UNIQUE_KEYS}
        self.calls: list[tuple[str, str]] = []
        self.fail: dict[tuple[str, str], Exception] = {}
        self.on_call: Callable[[str, str], None] | None = None

    def _enter(self, method: str, table: str) -> None:
        self.calls.append((method, table))
        if self.on_call is not None:
            self.on_call(method, table)
        exc = self.fail.get((method, table))
        if exc is not None:
            raise exc

    @staticmethod
    def _matches(row: dict[str, Any], match: dict[str, Any]) -> bool:
        return all(row.get(k) == v for k, v in match.items())

    def calls_for(self, method: str, table: str | None = None) -> int:
        return sum(1 for m, t in self.calls if m == method and (table is None or t == table))

    # RecordStore ----------------------------------------------------------

    def exists_by_key(self, table: str, key_field: str, key_values: Iterable[str]) -> set[str]:
        self._enter("exists_by_key", table)
        wanted = set(key_values)
        return {str(r[key_field]) for r in self.tables[table] if r.get(key_field) in wanted}

    def insert_many(self, table: str, records: list[dict[str, Any]]) -> None:
        self._enter("insert_many", table)
        staged = list(self.tables[table])
        for record in records:
            for key in UNIQUE_KEYS[table]:
                value = tuple(record.get(k) for k in key)
                if any(tuple(r.get(k) for k in key) == value for r in staged):
                    raise ValueError(f"duplicate key value violates unique constraint {key}")
            staged.append(copy.deepcopy(record))
        self.tables[table] = staged

    def update_one(self, table: str, match: dict[str, Any], patch: dict[str, Any]) -> None:
        self._enter("update_one", table)
        for row in self.tables[table]:
            if self._matches(row, match):
                row.update(copy.deepcopy(patch))

    def find_one(
        self, table: str, match: dict[str, Any], columns: list[str] | None = None
    ) -> dict[str, Any] | None:
        self._enter("find_one", table)
        for idx, row in enumerate(self.tables[table]):
            if self._matches(row, match):
                found = {"id": idx, **row}
                if columns:
                    return {c: found.get(c) for c in columns}
                return found
        return None


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def seed_student(store: FakeStore) -> Callable[..., dict[str, Any]]:
    """Insert a student row directly, bypassing call recording."""

    def _seed(username: str, uuid: str | None = None, **attrs: Any) -> dict[str, Any]:
        row = {
            "username": username,
            "uuid": uuid or f"uuid-{username}",
            "name": username.title(),
            "email": f"{username}@learner.42.tech",
            **attrs,
        }
        store.tables["students"].append(row)
        return row

    return _seed
