"""piscine_etl.csv_grid

Lexical CSV pass for smart-import uploads.

The stdlib csv module treats a doubled quote as an escaped quote; uploads
from the piscine spreadsheets are parsed with a simpler rule instead: a
double quote only toggles quoted state, and commas inside a quoted region
are literal.  No header or type validation happens here.
"""

from __future__ import annotations


class CsvDecodeError(ValueError):
    """Raised when upload bytes are not valid UTF-8."""


def decode_csv_bytes(data: bytes) -> str:
    """Decode upload bytes as UTF-8, tolerating a leading BOM."""
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise CsvDecodeError(f"File is not valid UTF-8: {exc}") from exc


def tokenize_line(line: str) -> list[str]:
    """Split one line on commas outside quoted regions; trim each cell.

    An empty line yields a single empty cell.
    """
    cells: list[str] = []
    current: list[str] = []
    in_quotes = False
    for char in line:
        if char == '"':
            in_quotes = not in_quotes
        elif char == "," and not in_quotes:
            cells.append("".join(current).strip())
            current = []
        else:
            current.append(char)
    cells.append("".join(current).strip())
    return cells


def parse_csv_text(text: str) -> list[list[str]]:
    """Parse CSV text into a grid of string cells; row 0 is the header.

    Surrounding whitespace of the whole document is dropped first, so a
    trailing newline does not produce a phantom row.  Never raises.
    """
    return [tokenize_line(line) for line in text.strip().split("\n")]


def serialize_grid(grid: list[list[str]]) -> str:
    """Inverse of parse_csv_text for cells without commas or quotes."""
    return "\n".join(",".join(row) for row in grid)


def is_blank_row(row: list[str]) -> bool:
    return all(not cell or not cell.strip() for cell in row)


def cell(row: list[str], columns: dict[str, int], field: str) -> str | None:
    """Return the raw cell for a canonical field, or None if absent.

    Absent covers both a field missing from the column map and a short row.
    """
    idx = columns.get(field)
    if idx is None or idx >= len(row):
        return None
    return row[idx]
