"""Unit tests for piscine_etl.smart_import (orchestrator + CLI)."""

import json
import threading
from unittest.mock import MagicMock

import pytest
from click.testing import CliRunner

from piscine_etl import smart_import
from piscine_etl.column_map import EXAM_GRADES, STUDENTS
from piscine_etl.shared import CsvRejectedError
from piscine_etl.smart_import import (
    NO_KIND_MESSAGE,
    import_csv,
    main,
    validate_upload,
)


def _csv(text: str) -> bytes:
    return text.encode("utf-8")


@pytest.fixture
def release():
    """Event that stalled store calls wait on; always set at teardown."""
    event = threading.Event()
    yield event
    event.set()


def _stall_on(store, release, method, table):
    def hook(m, t):
        if (m, t) == (method, table):
            release.wait(5)

    store.on_call = hook


# ---------------------------------------------------------------------------
# validate_upload
# ---------------------------------------------------------------------------

class TestValidateUpload:
    def test_accepts_exactly_max_rows(self):
        body = "username,name\n" + "\n".join(f"u{i},N" for i in range(1000))
        grid = validate_upload(_csv(body), "students.csv")
        assert len(grid) == 1001

    def test_extension_case_insensitive(self):
        assert validate_upload(_csv("username,name\na,A"), "EXPORT.CSV")[0] == ["username", "name"]

    @pytest.mark.parametrize("name", ["students.txt", "students.csv.zip", "", "csv"])
    def test_rejects_non_csv_name(self, name):
        with pytest.raises(CsvRejectedError, match="Only CSV files are allowed"):
            validate_upload(_csv("username,name\na,A"), name)

    def test_rejects_oversized_file(self):
        with pytest.raises(CsvRejectedError, match="the limit is 10 bytes"):
            validate_upload(_csv("username,name\na,A"), "s.csv", max_bytes=10)

    @pytest.mark.parametrize("body", ["", "username,name", "username,name\n\n"])
    def test_rejects_header_only(self, body):
        with pytest.raises(CsvRejectedError, match="headers and at least one data row"):
            validate_upload(_csv(body), "s.csv")

    def test_rejects_undecodable_bytes(self):
        with pytest.raises(CsvRejectedError, match="not valid UTF-8"):
            validate_upload(b"username,name\n\xff,A", "s.csv")


# ---------------------------------------------------------------------------
# import_csv: rejection
# ---------------------------------------------------------------------------

class TestRejection:
    def test_row_limit_rejects_before_any_write(self, store):
        body = "username,name\n" + "\n".join(f"u{i},N" for i in range(1001))
        result = import_csv(_csv(body), "big.csv", store)
        assert result.success is False
        assert result.failure_reason == "rejected"
        assert result.message == "CSV file has 1001 data rows; the limit is 1000"
        assert store.calls == []

    def test_custom_row_limit(self, store):
        result = import_csv(_csv("username,name\na,A\nb,B"), "s.csv", store, max_rows=1)
        assert result.failure_reason == "rejected"
        assert store.calls == []

    def test_wrong_extension(self, store):
        result = import_csv(_csv("username,name\na,A"), "s.xlsx", store)
        assert result.to_dict() == {
            "success": False,
            "message": "Only CSV files are allowed",
            "stats": {"total_rows": 0, "created": 0, "updated": 0, "errors": 0},
            "detectedTables": [],
            "errors": ["Only CSV files are allowed"],
            "failureReason": "rejected",
        }

    def test_no_recognizable_columns(self, store):
        result = import_csv(_csv("foo,bar\n1,2"), "s.csv", store)
        assert result.success is False
        assert result.message == NO_KIND_MESSAGE
        assert result.detected_tables == []
        assert result.failure_reason == "rejected"
        assert store.calls == []


# ---------------------------------------------------------------------------
# import_csv: completed runs
# ---------------------------------------------------------------------------

class TestCompleted:
    def test_students_only(self, store):
        result = import_csv(_csv("Login,Name,Level\njdoe,Jane,3\nasmith,Ann,2"), "s.csv", store)
        assert result.success is True
        assert result.detected_tables == [STUDENTS]
        assert result.stats.to_dict() == {"total_rows": 2, "created": 2, "updated": 0, "errors": 0}
        assert result.message == (
            "Smart import completed. Detected and imported to: students. "
            "Created: 2, Updated: 0, Errors: 0"
        )
        assert "errors" not in result.to_dict()
        assert "failureReason" not in result.to_dict()

    def test_students_then_exams_in_one_file(self, store):
        text = "username,name,exam 00,exam 01\njdoe,Jane,75,\nasmith,Ann,40,61"
        result = import_csv(_csv(text), "s.csv", store)
        assert result.success is True
        assert result.detected_tables == [STUDENTS, EXAM_GRADES]
        # 2 student rows + 3 grade units
        assert result.stats.total_rows == 5
        assert result.stats.created == 5
        assert len(store.tables["exam_grades"]) == 3

    def test_grade_sheet_without_name_column(self, store, seed_student):
        seed_student("jdoe")
        result = import_csv(_csv("username,exam 00\njdoe,50"), "grades.csv", store)
        assert result.detected_tables == [STUDENTS, EXAM_GRADES]
        assert result.errors == ["students: required column(s) missing from header: name"]
        assert result.success is False
        assert result.failure_reason is None
        assert result.stats.created == 1
        assert store.calls_for("exists_by_key") == 0

    def test_row_errors_make_result_unsuccessful(self, store):
        result = import_csv(_csv("username,name\n,Jane\njdoe,Jane"), "s.csv", store)
        assert result.success is False
        assert result.stats.created == 1
        assert result.errors == ["Row 2: Missing required fields: username"]

    def test_rush_scores_for_unknown_students(self, store):
        result = import_csv(_csv("login,square\nghost,10"), "rush.csv", store)
        assert result.detected_tables == [STUDENTS, "rush_scores"]
        assert "Row 2: Student ghost not found" in result.errors

    def test_custom_synonyms(self, store):
        from piscine_etl.column_map import build_synonym_set

        synonyms = build_synonym_set({
            "record_kinds": {
                "rush_scores": {
                    "required": ["username"],
                    "detect": ["square"],
                    "fields": {"username": ["intra"], "square": ["rush 00"]},
                },
            },
        })
        store.tables["students"].append({"username": "jdoe", "uuid": "u-1"})
        result = import_csv(_csv("intra,rush 00\njdoe,42"), "r.csv", store, synonyms=synonyms)
        assert result.detected_tables == ["rush_scores"]
        assert result.stats.created == 1


# ---------------------------------------------------------------------------
# import_csv: timeout + internal errors
# ---------------------------------------------------------------------------

class TestTimeout:
    def test_timeout_returns_partial_stats(self, store, release):
        _stall_on(store, release, "find_one", "exam_grades")
        text = "username,name,exam 00\njdoe,Jane,75\nasmith,Ann,80"
        result = import_csv(_csv(text), "s.csv", store, timeout_seconds=0.2)
        release.set()

        assert result.success is False
        assert result.timed_out is True
        assert result.failure_reason == "timeout"
        assert result.message == (
            "Import timed out after 0.2s; records written before the timeout were kept"
        )
        assert result.detected_tables == [STUDENTS, EXAM_GRADES]
        assert result.stats.created == 2
        assert result.errors[-1] == "Import timed out after 0.2s"
        # students committed before the stall stay in place
        assert {r["username"] for r in store.tables["students"]} == {"jdoe", "asmith"}

    def test_worker_stops_after_cancel(self, store, release):
        _stall_on(store, release, "exists_by_key", "students")
        result = import_csv(_csv("username,name\njdoe,Jane"), "s.csv", store, timeout_seconds=0.1)
        release.set()
        assert result.failure_reason == "timeout"
        assert result.stats.total_rows == 1
        # the cancel token is set before the stalled call returns
        assert store.calls_for("insert_many") == 0

    def test_internal_error(self, store, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("kaboom")

        monkeypatch.setitem(smart_import.IMPORTERS, STUDENTS, explode)
        result = import_csv(_csv("username,name\njdoe,Jane"), "s.csv", store)
        assert result.success is False
        assert result.message == "Internal server error"
        assert result.errors == ["RuntimeError: kaboom"]
        assert result.failure_reason == "internal"
        assert result.detected_tables == [STUDENTS]


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_db(monkeypatch, store):
    conn = MagicMock(name="conn")
    connect = MagicMock(name="connect", return_value=conn)
    monkeypatch.setattr(smart_import.psycopg, "connect", connect)
    monkeypatch.setattr(smart_import, "PostgresStore", lambda c: store)
    return connect, conn


def _invoke(tmp_path, text, *extra, name="export.csv"):
    csv_path = tmp_path / name
    csv_path.write_text(text, encoding="utf-8")
    args = [
        "--db-dsn", "postgresql://example/db",
        "--csv-path", str(csv_path),
        "--report-dir", str(tmp_path / "reports"),
        "--run-id", "run-1",
        *extra,
    ]
    return CliRunner().invoke(main, args)


class TestCli:
    def test_success_writes_report(self, tmp_path, fake_db, store):
        connect, conn = fake_db
        result = _invoke(tmp_path, "username,name\njdoe,Jane")
        assert result.exit_code == 0, result.output
        assert "[run-1] Smart import completed" in result.output
        connect.assert_called_once_with("postgresql://example/db", autocommit=True)
        conn.close.assert_called_once()
        conn.transaction.assert_not_called()

        report = json.loads((tmp_path / "reports" / "run-1.json").read_text())
        assert report["mode"] == "smart_import"
        assert report["source_file"] == "export.csv"
        assert report["dry_run"] is False
        assert report["result"]["detectedTables"] == [STUDENTS]
        assert report["result"]["stats"]["created"] == 1

    def test_dry_run_rolls_back(self, tmp_path, fake_db):
        connect, conn = fake_db
        result = _invoke(tmp_path, "username,name\njdoe,Jane", "--dry-run")
        assert result.exit_code == 0, result.output
        connect.assert_called_once_with("postgresql://example/db", autocommit=False)
        conn.transaction.assert_called_once_with(force_rollback=True)
        assert "[dry-run] All changes rolled back." in result.output

    def test_rejected_file_exits_1(self, tmp_path, fake_db):
        result = _invoke(tmp_path, "foo,bar\n1,2")
        assert result.exit_code == 1
        assert NO_KIND_MESSAGE in result.output

    def test_row_errors_exit_1(self, tmp_path, fake_db):
        result = _invoke(tmp_path, "username,name\n,Jane")
        assert result.exit_code == 1
        assert "Row 2: Missing required fields: username" in result.output

    def test_timeout_exits_2(self, tmp_path, fake_db, store, release):
        _stall_on(store, release, "exists_by_key", "students")
        result = _invoke(tmp_path, "username,name\njdoe,Jane", "--timeout-seconds", "0.1")
        release.set()
        assert result.exit_code == 2
        assert "FATAL: import timed out" in result.output

    def test_invalid_synonyms_file_exits_1(self, tmp_path, fake_db):
        connect, _ = fake_db
        bad = tmp_path / "syn.yml"
        bad.write_text("record_kinds: {}\n", encoding="utf-8")
        result = _invoke(tmp_path, "username,name\njdoe,Jane", "--synonyms-file", str(bad))
        assert result.exit_code == 1
        assert "FATAL" in result.output
        connect.assert_not_called()

    def test_non_csv_path_rejected(self, tmp_path, fake_db):
        result = _invoke(tmp_path, "username,name\njdoe,Jane", name="export.txt")
        assert result.exit_code == 1
        assert "Only CSV files are allowed" in result.output
