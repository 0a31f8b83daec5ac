"""
Import of parsed documents into the state blob.

Parsing raw text is an external concern. A parser hands over a
ParsedDocument (title plus ordered units of typed items); this module turns it
into a Document with deterministic ids and installs it with default review
states.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from importlib import resources
from pathlib import Path
from typing import Any

import yaml

from reciter.application.id_service import positional_unit_id, range_label, slug, unit_id
from reciter.domain.models import (
    ContentUnit,
    Document,
    DocumentStats,
    Item,
    ReviewState,
    StateBlob,
)

logger = logging.getLogger(__name__)

SEED_RESOURCE = "seed.yaml"


@dataclass
class ParsedUnit:
    items: list[Item]


@dataclass
class ParsedDocument:
    title: str
    units: list[ParsedUnit]
    source_text: str = ""
    version: str | None = None
    collection: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


def build_unit(doc_id: str, parsed: ParsedUnit, index: int) -> ContentUnit:
    numbered = [i for i in parsed.items if i.kind == "body" and i.number is not None]
    body_text = " ".join(i.text.strip() for i in parsed.items if i.kind == "body")

    if numbered:
        first, last = numbered[0].number, numbered[-1].number
        return ContentUnit(
            id=unit_id(doc_id, first, last),
            range_label=range_label(first, last),
            items=tuple(parsed.items),
            text=body_text,
        )

    # Unnumbered spans still need a stable id; position is the only content signal.
    logger.warning(f"[import] unit #{index + 1} of {doc_id} has no numbered items")
    return ContentUnit(
        id=positional_unit_id(doc_id, index + 1),
        range_label="",
        items=tuple(parsed.items),
        text=body_text,
    )


def build_document(
    parsed: ParsedDocument,
    version: str | None = None,
    collection: str | None = None,
    now: datetime | None = None,
) -> Document:
    """
    Build a Document whose ids are derived purely from its content.

    Explicit version/collection arguments override those carried by ``parsed``.
    """
    now = now or datetime.now(timezone.utc)
    version = version or parsed.version
    collection = collection or parsed.collection
    doc_id = slug(parsed.title, [version, collection])
    units = tuple(build_unit(doc_id, u, i) for i, u in enumerate(parsed.units))
    return Document(
        id=doc_id,
        title=parsed.title,
        source_text=parsed.source_text,
        units=units,
        created_at=now,
        version=version,
        collection=collection,
    )


def import_document(
    blob: StateBlob,
    parsed: ParsedDocument,
    version: str | None = None,
    collection: str | None = None,
    now: datetime | None = None,
) -> tuple[StateBlob, Document]:
    """
    Install a parsed document, replacing any previous import of the same content.

    Review states for units that still exist are kept untouched; new units get
    fresh states. States of units that disappeared are kept as well, since
    review states only ever leave the blob together with their document.
    """
    now = now or datetime.now(timezone.utc)
    document = build_document(parsed, version=version, collection=collection, now=now)

    previous = blob.documents.get(document.id)
    if previous is not None:
        # Re-import keeps the original creation time
        document = replace(document, created_at=previous.created_at)
        logger.info(f"[import] replacing {document.id}")

    states = dict(blob.review_states.get(document.id, {}))
    created = 0
    for unit in document.units:
        if unit.id not in states:
            states[unit.id] = ReviewState.new(unit.id, now)
            created += 1

    updated = blob.with_document(document).with_review_states(document.id, states)
    if document.id not in updated.stats:
        updated = updated.with_stats(document.id, DocumentStats())
    if not updated.active_units.get(document.id) and document.units:
        updated = updated.with_active_unit(document.id, document.units[0].id)
    updated = updated.with_selected(document.id)

    logger.info(
        f"[import] {document.id}: {len(document.units)} units, {created} new review states"
    )
    return updated, document


# ---------- Parsed document files ----------


def parsed_document_from_dict(data: dict[str, Any]) -> ParsedDocument:
    """
    Build a ParsedDocument from its YAML/JSON form::

        title: Romans 8
        version: kjv
        units:
          - items:
              - {kind: label, text: Life in the Spirit}
              - {number: 1, text: There is therefore now no condemnation...}
    """
    if not isinstance(data, dict) or "title" not in data:
        raise ValueError("parsed document needs a 'title'")

    units = []
    for raw_unit in data.get("units") or []:
        raw_items = raw_unit.get("items", []) if isinstance(raw_unit, dict) else raw_unit
        items = []
        for raw in raw_items or []:
            if isinstance(raw, str):
                items.append(Item(text=raw, kind="label"))
                continue
            number = raw.get("number")
            kind = raw.get("kind") or ("body" if number is not None else "label")
            items.append(
                Item(
                    text=str(raw.get("text", "")),
                    kind=kind,
                    number=int(number) if number is not None else None,
                )
            )
        units.append(ParsedUnit(items=items))

    known = {"title", "units", "source_text", "version", "collection"}
    return ParsedDocument(
        title=str(data["title"]),
        units=units,
        source_text=str(data.get("source_text") or ""),
        version=data.get("version"),
        collection=data.get("collection"),
        extra={k: v for k, v in data.items() if k not in known},
    )


def load_parsed_document(path: Path) -> ParsedDocument:
    """Read a parsed document from a YAML (or JSON) file."""
    text = path.read_text(encoding="utf-8")
    data = yaml.safe_load(text)
    return parsed_document_from_dict(data)


def load_seed_document() -> ParsedDocument:
    text = resources.files("reciter.resources").joinpath(SEED_RESOURCE).read_text(
        encoding="utf-8"
    )
    return parsed_document_from_dict(yaml.safe_load(text))


def seed_state(now: datetime | None = None) -> StateBlob:
    """First-run state: the bundled seed document, selected and ready to review."""
    blob, _ = import_document(StateBlob(), load_seed_document(), now=now)
    return blob
