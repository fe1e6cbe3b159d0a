"""piscine_etl.column_map

Header classification and column resolution for smart import.

Responsibilities:
  - Hold the synonym tables (canonical field -> accepted header spellings)
    for the three record kinds: students, exam_grades, rush_scores
  - Decide which record kinds a header row targets
  - Map each canonical field of one kind to a column index
  - Load and validate synonym overrides from YAML (config/column_synonyms.yml)

Usage:
    from piscine_etl.column_map import DEFAULT_SYNONYMS, detect_record_kinds, resolve_columns

    kinds = detect_record_kinds(headers)
    columns = resolve_columns(headers, kinds[0])
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from piscine_etl.normalize import normalize_header

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

STUDENTS = "students"
EXAM_GRADES = "exam_grades"
RUSH_SCORES = "rush_scores"

# Classification output order
KIND_ORDER = (STUDENTS, EXAM_GRADES, RUSH_SCORES)

STUDENT_FIELDS = (
    "username", "name", "email", "uuid",
    "blocks", "level", "votes_given", "votes_received", "voters",
    "reviewee", "reviewer", "feedbacks_received",
    "performance", "communication", "professionalism",
    "validated_rushes_participated", "passed_exams_registered",
    "final_exam_validated", "last_validated_project", "validated_projects",
    "age", "gender", "coding_level", "context",
)
EXAM_FIELDS = ("exam00", "exam01", "exam02", "final_exam")
RUSH_FIELDS = ("square", "sky_scraper", "rosetta_stone")

KNOWN_FIELDS: dict[str, frozenset[str]] = {
    STUDENTS: frozenset(STUDENT_FIELDS),
    EXAM_GRADES: frozenset(("username", "uuid") + EXAM_FIELDS),
    RUSH_SCORES: frozenset(("username", "uuid") + RUSH_FIELDS),
}

DEFAULT_SYNONYM_DATA: dict[str, Any] = {
    "version": 1,
    "record_kinds": {
        STUDENTS: {
            "required": ["username", "name"],
            "fields": {
                "username": ["username", "login"],
                "name": ["name"],
                "email": ["email"],
                "uuid": ["uuid"],
                "blocks": ["blocks"],
                "level": ["level"],
                "votes_given": ["votes given", "votes_given"],
                "votes_received": ["votes received", "votes_received"],
                "voters": ["voters"],
                "reviewee": ["reviewee"],
                "reviewer": ["reviewer"],
                "feedbacks_received": ["feedbacks received", "feedbacks_received"],
                "performance": ["performance"],
                "communication": ["communication"],
                "professionalism": ["professionalism"],
                "validated_rushes_participated": [
                    "# validated rushes / participated", "validated_rushes_participated",
                ],
                "passed_exams_registered": [
                    "# passed exams / registered", "passed_exams_registered",
                ],
                "final_exam_validated": ["final exam validated?", "final_exam_validated"],
                "last_validated_project": ["last validated project", "last_validated_project"],
                "validated_projects": ["# validated projects", "validated_projects"],
                "age": ["age"],
                "gender": ["gender"],
                "coding_level": ["coding level", "coding_level"],
                "context": ["context"],
            },
        },
        EXAM_GRADES: {
            "required": ["username"],
            "detect": list(EXAM_FIELDS),
            "fields": {
                "username": ["username", "login"],
                "uuid": ["uuid"],
                "exam00": ["exam 00", "exam00"],
                "exam01": ["exam 01", "exam01"],
                "exam02": ["exam 02", "exam02"],
                "final_exam": ["final exam", "final_exam", "finalexam"],
            },
        },
        RUSH_SCORES: {
            "required": ["username"],
            "detect": list(RUSH_FIELDS),
            "fields": {
                "username": ["username", "login"],
                "uuid": ["uuid"],
                "square": ["square"],
                "sky_scraper": ["sky scraper", "skyscraper"],
                "rosetta_stone": ["rosetta stone", "rosettastone"],
            },
        },
    },
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SynonymSetValidationError(ValueError):
    """Raised when a synonym YAML file fails schema validation."""


# ---------------------------------------------------------------------------
# RecordKind
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RecordKind:
    """Synonym table for one record kind."""

    name: str
    fields: dict[str, tuple[str, ...]]
    detect_fields: tuple[str, ...]
    required: tuple[str, ...]

    def detection_headers(self) -> frozenset[str]:
        return frozenset(
            normalize_header(spelling)
            for f in self.detect_fields
            for spelling in self.fields[f]
        )


SynonymSet = dict[str, RecordKind]


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def validate_synonym_set(data: Any) -> None:
    """Raise SynonymSetValidationError if data does not match the schema.

    Validates:
      - root is a mapping with a non-empty 'record_kinds' mapping
      - record kinds are known, fields are known canonical names
      - every field lists at least one non-empty string spelling
      - 'required' and 'detect' only reference declared fields
      - 'username' is declared and required for every kind
    """
    if not isinstance(data, dict):
        raise SynonymSetValidationError("YAML root must be a mapping.")

    kinds = data.get("record_kinds")
    if not isinstance(kinds, dict) or not kinds:
        raise SynonymSetValidationError("'record_kinds' must be a non-empty mapping.")

    unknown_kinds = set(kinds) - set(KIND_ORDER)
    if unknown_kinds:
        raise SynonymSetValidationError(
            f"Unknown record kinds {sorted(unknown_kinds)}. Must be among {list(KIND_ORDER)}."
        )

    for kind_name, entry in kinds.items():
        if not isinstance(entry, dict):
            raise SynonymSetValidationError(f"'{kind_name}' must be a mapping.")
        fields = entry.get("fields")
        if not isinstance(fields, dict) or not fields:
            raise SynonymSetValidationError(f"'{kind_name}.fields' must be a non-empty mapping.")

        unknown_fields = set(fields) - KNOWN_FIELDS[kind_name]
        if unknown_fields:
            raise SynonymSetValidationError(
                f"'{kind_name}' declares unknown fields {sorted(unknown_fields)}."
            )

        for field_name, spellings in fields.items():
            if (
                not isinstance(spellings, list)
                or not spellings
                or not all(isinstance(s, str) and s.strip() for s in spellings)
            ):
                raise SynonymSetValidationError(
                    f"'{kind_name}.fields.{field_name}' must be a non-empty list of strings."
                )

        required = entry.get("required") or []
        if "username" not in fields or "username" not in required:
            raise SynonymSetValidationError(
                f"'{kind_name}' must declare and require 'username'."
            )
        for key in ("required", "detect"):
            listed = entry.get(key) or []
            missing = set(listed) - set(fields)
            if missing:
                raise SynonymSetValidationError(
                    f"'{kind_name}.{key}' references undeclared fields {sorted(missing)}."
                )


def build_synonym_set(data: dict[str, Any]) -> SynonymSet:
    """Validate raw synonym data and return RecordKinds in classification order."""
    validate_synonym_set(data)
    kinds = data["record_kinds"]
    result: SynonymSet = {}
    for kind_name in KIND_ORDER:
        entry = kinds.get(kind_name)
        if entry is None:
            continue
        fields = {k: tuple(v) for k, v in entry["fields"].items()}
        result[kind_name] = RecordKind(
            name=kind_name,
            fields=fields,
            detect_fields=tuple(entry.get("detect") or fields),
            required=tuple(entry["required"]),
        )
    return result


def load_synonym_set(yaml_path: Path) -> SynonymSet:
    """Load, validate, and return a SynonymSet from a YAML file.

    Raises:
        SynonymSetValidationError: If the file content is invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise SynonymSetValidationError(f"Invalid YAML in {yaml_path}: {exc}") from exc
    return build_synonym_set(data)


DEFAULT_SYNONYMS: SynonymSet = build_synonym_set(DEFAULT_SYNONYM_DATA)


# ---------------------------------------------------------------------------
# Classification + resolution
# ---------------------------------------------------------------------------

def detect_record_kinds(
    headers: list[str],
    synonyms: SynonymSet = DEFAULT_SYNONYMS,
) -> list[str]:
    """Return the record kinds whose detection spellings appear in headers.

    Exact match after lowercase+trim.  Output follows KIND_ORDER.
    """
    normalized = {normalize_header(h) for h in headers}
    return [
        kind.name
        for kind in synonyms.values()
        if normalized & kind.detection_headers()
    ]


def resolve_columns(
    headers: list[str],
    kind_name: str,
    synonyms: SynonymSet = DEFAULT_SYNONYMS,
) -> dict[str, int]:
    """Map each canonical field of a kind to the index of its first accepted spelling.

    Spellings are tried in priority order; fields with no matching header
    are left out of the map.
    """
    normalized = [normalize_header(h) for h in headers]
    columns: dict[str, int] = {}
    for field_name, spellings in synonyms[kind_name].fields.items():
        for spelling in spellings:
            target = normalize_header(spelling)
            if target in normalized:
                columns[field_name] = normalized.index(target)
                break
    return columns


def missing_required(kind_name: str, columns: dict[str, int], synonyms: SynonymSet) -> list[str]:
    return [f for f in synonyms[kind_name].required if f not in columns]
