"""Service for deriving stable, content-addressed ids for documents and units.

Two devices importing the same content must arrive at the same keys without
talking to each other, so every id here is a pure function of content.
"""

import re
import unicodedata
from collections.abc import Iterable

from reciter.domain.constants import FALLBACK_SLUG
from reciter.domain.models import ContentUnit, Document

_STRIP_RE = re.compile(r"[^\w\s-]")
_COLLAPSE_RE = re.compile(r"[\s_-]+")
_UNIT_SUFFIX_RE = re.compile(r"-v(\d+)(?:-(\d+))?$")


def _normalize(text: str) -> str:
    text = unicodedata.normalize("NFKC", text).lower().strip()
    text = _STRIP_RE.sub("", text)
    text = _COLLAPSE_RE.sub("-", text)
    return text.strip("-")


def slug(title: str, qualifiers: Iterable[str | None] | None = None) -> str:
    """
    Derive a document id from its title and optional qualifiers.

    Qualifiers (e.g. version, collection) are prefixed in the order given;
    empty ones are skipped. A title that normalizes to nothing falls back to
    a fixed placeholder so the result is never empty.

    >>> slug("1 Corinthians: 13!")
    '1-corinthians-13'
    >>> slug("Romans 8", ["NIV", "Romans"])
    'niv-romans-romans-8'
    """
    base = _normalize(title or "") or FALLBACK_SLUG
    parts = [_normalize(q) for q in (qualifiers or []) if q]
    parts = [p for p in parts if p]
    return "-".join([*parts, base])


def document_slug(document: Document) -> str:
    return slug(document.title, document.qualifiers)


def range_label(first: int, last: int) -> str:
    return f"{first}" if first == last else f"{first}-{last}"


def unit_id(doc_id: str, first: int, last: int) -> str:
    return f"{doc_id}-v{range_label(first, last)}"


def positional_unit_id(doc_id: str, position: int) -> str:
    """Id for the unit at 1-based ``position`` when it has no numbered items."""
    return f"{doc_id}-u{position}"


def rebase_positional_unit_id(old_doc_id: str, new_doc_id: str, value: str) -> str | None:
    """Move a positional unit id from ``old_doc_id`` onto ``new_doc_id``."""
    match = re.fullmatch(re.escape(old_doc_id) + r"-u(\d+)", value)
    if not match:
        return None
    return positional_unit_id(new_doc_id, int(match.group(1)))


def canonical_unit_id(doc_id: str, unit: ContentUnit) -> str | None:
    """Canonical id for a unit, or None when it has no numbered body items."""
    first, last = unit.first_number, unit.last_number
    if first is None or last is None:
        return None
    return unit_id(doc_id, first, last)


def is_canonical_document_id(doc_id: str, document: Document) -> bool:
    return doc_id == document_slug(document)


def is_canonical_unit_id(doc_id: str, unit: ContentUnit) -> bool:
    expected = canonical_unit_id(doc_id, unit)
    return expected is None or unit.id == expected


def parse_unit_id(value: str) -> tuple[str, int, int] | None:
    """Split a canonical unit id back into (doc_id, first, last)."""
    match = _UNIT_SUFFIX_RE.search(value)
    if not match:
        return None
    first = int(match.group(1))
    last = int(match.group(2)) if match.group(2) else first
    return value[: match.start()], first, last
