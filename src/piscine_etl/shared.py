"""piscine_etl.shared

Types shared by the smart-import importers and orchestrator.
Includes ImportStats, ImportResult, the cancellation token, exceptions,
and report-writing support.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class CsvRejectedError(Exception):
    """Raised when an upload fails structural validation; nothing is written."""


class ImportTimeoutError(Exception):
    """Raised when the import exceeds its wall-clock budget."""


class ImportCancelledError(Exception):
    """Raised inside an importer once its CancelToken has been set."""


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class CancelToken:
    """Shared flag checked by importers between rows and write units."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ImportCancelledError("import cancelled")


# ---------------------------------------------------------------------------
# ImportStats
# ---------------------------------------------------------------------------

@dataclass
class ImportStats:
    """Per-kind accumulator threaded through one importer call.

    total_rows counts data units: non-blank rows for students, surviving
    (row, sub-field) values for exam grades and rush scores.
    """

    total_rows: int = 0
    created: int = 0
    updated: int = 0
    errors: int = 0
    error_messages: list[str] = field(default_factory=list)

    def record_error(self, message: str) -> None:
        self.errors += 1
        self.error_messages.append(message)

    def merge(self, other: ImportStats) -> ImportStats:
        return ImportStats(
            total_rows=self.total_rows + other.total_rows,
            created=self.created + other.created,
            updated=self.updated + other.updated,
            errors=self.errors + other.errors,
            error_messages=self.error_messages + other.error_messages,
        )

    def snapshot(self) -> ImportStats:
        return ImportStats(
            self.total_rows, self.created, self.updated, self.errors,
            list(self.error_messages),
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "total_rows": self.total_rows,
            "created": self.created,
            "updated": self.updated,
            "errors": self.errors,
        }


# ---------------------------------------------------------------------------
# ImportResult
# ---------------------------------------------------------------------------

FAILURE_REJECTED = "rejected"
FAILURE_TIMEOUT = "timeout"
FAILURE_INTERNAL = "internal"


@dataclass
class ImportResult:
    success: bool
    message: str
    stats: ImportStats = field(default_factory=ImportStats)
    detected_tables: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    failure_reason: str | None = None

    @property
    def timed_out(self) -> bool:
        return self.failure_reason == FAILURE_TIMEOUT

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "stats": self.stats.to_dict(),
            "detectedTables": list(self.detected_tables),
        }
        if self.errors:
            d["errors"] = list(self.errors)
        if self.failure_reason:
            d["failureReason"] = self.failure_reason
        return d


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    dry_run: bool,
    source_file: str,
    result: ImportResult,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": "smart_import",
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        "source_file": source_file,
        "result": result.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
