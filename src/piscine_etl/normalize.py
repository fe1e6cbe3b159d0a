"""Normalization and coercion functions for piscine CSV ingestion.

All functions accept str | None and return the appropriate type or None,
except where a fallback value is documented (parse_bool, resolve_email).
"""

from __future__ import annotations

import re

LEARNER_EMAIL_DOMAIN = "learner.42.tech"

_TRUE_VALUES = frozenset({"true", "yes", "1", "validated"})
_USERNAME_UNSAFE_RE = re.compile(r"[^a-z0-9.-]")
# ASCII decimal only: no digit separators, no non-ASCII digits, no nan/inf
_NUMERIC_RE = re.compile(r"[+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


def is_null_literal(value: str | None) -> bool:
    """True for None, blank, whitespace-only, or a case-insensitive 'null'."""
    v = trim(value)
    return v is None or v.lower() == "null"


# ---------------------------------------------------------------------------
# Rule 2: normalize_header
# ---------------------------------------------------------------------------

def normalize_header(value: str | None) -> str:
    """Lowercase and trim a header cell.

    Shared by header classification and column resolution so both see the
    same spelling.
    """
    return (value or "").strip().lower()


# ---------------------------------------------------------------------------
# Rule 3: parse_numeric
# ---------------------------------------------------------------------------

def parse_numeric(value: str | None) -> float | None:
    """Parse a float, returning None for blank, 'null' or non-numeric text."""
    if is_null_literal(value):
        return None
    v = value.strip()  # type: ignore[union-attr]
    if not _NUMERIC_RE.fullmatch(v):
        return None
    parsed = float(v)
    # overflowing exponents such as 1e999 parse to inf
    if parsed in (float("inf"), float("-inf")):
        return None
    return parsed


# ---------------------------------------------------------------------------
# Rule 4: parse_bool
# ---------------------------------------------------------------------------

def parse_bool(value: str | None) -> bool:
    """Return True only for true/yes/1/validated (case-insensitive)."""
    if is_null_literal(value):
        return False
    return value.strip().lower() in _TRUE_VALUES  # type: ignore[union-attr]


# ---------------------------------------------------------------------------
# Rule 5: parse_positive_score  (exam grades + rush scores)
# ---------------------------------------------------------------------------

def parse_positive_score(value: str | None) -> float | None:
    """Return a strictly positive float, or None when the cell should be skipped.

    Blank, '0', 'null', non-numeric and non-positive values all map to None.
    """
    v = trim(value)
    if v is None or v == "0" or v.lower() == "null":
        return None
    score = parse_numeric(v)
    if score is None or score <= 0:
        return None
    return score


# ---------------------------------------------------------------------------
# Rule 6: email resolution
# ---------------------------------------------------------------------------

def sanitize_username(username: str) -> str:
    """Lowercase and keep only [a-z0-9.-]."""
    return _USERNAME_UNSAFE_RE.sub("", username.lower())


def clean_email(value: str | None) -> str | None:
    """Return the lowercased email when it contains '@', else None."""
    v = trim(value)
    if v and "@" in v:
        return v.lower()
    return None


def resolve_email(
    username: str,
    provided: str | None,
    domain: str = LEARNER_EMAIL_DOMAIN,
) -> str:
    """Use the provided email when it contains '@', else synthesize one."""
    return clean_email(provided) or f"{sanitize_username(username)}@{domain}"


# ---------------------------------------------------------------------------
# Rule 7: deterministic_uuid
# ---------------------------------------------------------------------------

def _rolling_hash32(value: str) -> int:
    """hash = hash * 31 + code_unit over UTF-16 code units, as signed 32-bit."""
    h = 0
    data = value.encode("utf-16-le", errors="surrogatepass")
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = ((h << 5) - h + unit) & 0xFFFFFFFF
    if h & 0x80000000:
        h -= 1 << 32
    return h


def deterministic_uuid(value: str) -> str:
    """Return a UUID-shaped key derived from value.

    Not a valid v4 UUID and not collision-free: only used when the source
    file omits a real identifier.  Version/variant nibbles are forced to
    '4' and '8'.
    """
    hx = format(abs(_rolling_hash32(value)), "x").rjust(8, "0")
    return (
        f"{hx[0:8]}-{hx[0:4]}-4{hx[1:4]}-8{hx[2:5]}-"
        f"{hx.ljust(12, '0')[0:12]}"
    )
