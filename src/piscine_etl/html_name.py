"""piscine_etl.html_name

Extract a display name and profile image URL from intra export name cells.

Exports paste the learner's name as an anchor to their picture, e.g.
``<a target=_blank href=https://cdn.intra.42.fr/users/x.jpg>Jane Doe</a>``.
The href may be double-quoted, single-quoted or bare.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

UNKNOWN_NAME = "Unknown"

_HREF_PATTERNS = (
    re.compile(r'href="([^"]+)"'),
    re.compile(r"href='([^']+)'"),
    re.compile(r"href=([^\s>]+)"),
)
_ANCHOR_TEXT_RE = re.compile(r">([^<>]*)</a>")
_TAG_RE = re.compile(r"<[^>]*>")


@dataclass(frozen=True)
class NameAndImage:
    name: str
    image_url: str | None = None


def _extract_image_url(field: str) -> str | None:
    for pattern in _HREF_PATTERNS:
        m = pattern.search(field)
        if m:
            return m.group(1)
    return None


def _extract_name(field: str) -> str:
    # 1. text between the last '>' before '</a>' and '</a>'
    m = _ANCHOR_TEXT_RE.search(field)
    if m and m.group(1).strip():
        return m.group(1).strip()

    # 2. text after the last '>' up to the next '<' or end of string
    if ">" in field:
        tail = field.rsplit(">", 1)[1].split("<", 1)[0].strip()
        if tail:
            return tail

    # 3. whatever is left once tags are stripped
    return _TAG_RE.sub("", field).strip()


def extract_name_and_image(field: str | None) -> NameAndImage:
    """Return the clean name and optional image URL for a raw name cell.

    Total: never raises; the worst case is NameAndImage("Unknown", None).
    """
    if not field:
        return NameAndImage(UNKNOWN_NAME)

    if "<a" not in field and "href" not in field:
        return NameAndImage(field.strip() or UNKNOWN_NAME)

    image_url = _extract_image_url(field)
    name = _extract_name(field)
    return NameAndImage(name or UNKNOWN_NAME, image_url)
