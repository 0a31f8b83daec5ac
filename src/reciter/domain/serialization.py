"""JSON-compatible (de)serialization of domain models.

Timestamps are written as ISO-8601 strings. Naive timestamps read back are
treated as UTC.
"""

from datetime import datetime, timezone
from typing import Any

from reciter.domain.models import (
    ContentUnit,
    Document,
    DocumentStats,
    Item,
    RecordKind,
    RemoteRecord,
    ReviewState,
    StateBlob,
)

SCHEMA_VERSION = 2


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        # Epoch milliseconds, as some clients send them
        dt = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


# ---------- Items / units / documents ----------


def item_to_dict(item: Item) -> dict[str, Any]:
    return {"text": item.text, "kind": item.kind, "number": item.number}


def item_from_dict(data: dict[str, Any]) -> Item:
    kind = data.get("kind", "body")
    if kind not in ("body", "label"):
        raise ValueError(f"Unknown item kind: {kind!r}")
    number = data.get("number")
    return Item(
        text=str(data.get("text", "")),
        kind=kind,
        number=int(number) if number is not None else None,
    )


def unit_to_dict(unit: ContentUnit) -> dict[str, Any]:
    return {
        "id": unit.id,
        "range_label": unit.range_label,
        "items": [item_to_dict(i) for i in unit.items],
        "text": unit.text,
    }


def unit_from_dict(data: dict[str, Any]) -> ContentUnit:
    return ContentUnit(
        id=str(data["id"]),
        range_label=str(data.get("range_label", "")),
        items=tuple(item_from_dict(i) for i in data.get("items", [])),
        text=str(data.get("text", "")),
    )


def document_to_dict(doc: Document) -> dict[str, Any]:
    return {
        "id": doc.id,
        "title": doc.title,
        "source_text": doc.source_text,
        "units": [unit_to_dict(u) for u in doc.units],
        "created_at": format_timestamp(doc.created_at),
        "version": doc.version,
        "collection": doc.collection,
    }


def document_from_dict(data: dict[str, Any]) -> Document:
    return Document(
        id=str(data["id"]),
        title=str(data.get("title", "")),
        source_text=str(data.get("source_text", "")),
        units=tuple(unit_from_dict(u) for u in data.get("units", [])),
        created_at=parse_timestamp(data.get("created_at")) or datetime.now(timezone.utc),
        version=data.get("version"),
        collection=data.get("collection"),
    )


# ---------- Review state / stats ----------


def review_state_to_dict(state: ReviewState) -> dict[str, Any]:
    return {
        "id": state.id,
        "ease": state.ease,
        "interval_days": state.interval_days,
        "reps": state.reps,
        "lapses": state.lapses,
        "next_due_at": format_timestamp(state.next_due_at),
        "last_score": state.last_score,
        "suppressed_until": format_timestamp(state.suppressed_until),
        "mastered": state.mastered,
    }


def review_state_from_dict(data: dict[str, Any]) -> ReviewState:
    last_score = data.get("last_score")
    return ReviewState(
        id=str(data["id"]),
        ease=float(data.get("ease", 2.5)),
        interval_days=int(data.get("interval_days", 0)),
        reps=int(data.get("reps", 0)),
        lapses=int(data.get("lapses", 0)),
        next_due_at=parse_timestamp(data.get("next_due_at")) or datetime.now(timezone.utc),
        last_score=float(last_score) if last_score is not None else None,
        suppressed_until=parse_timestamp(data.get("suppressed_until")),
        mastered=bool(data.get("mastered", False)),
    )


def stats_to_dict(stats: DocumentStats) -> dict[str, Any]:
    return {"streak": stats.streak, "last_activity_at": format_timestamp(stats.last_activity_at)}


def stats_from_dict(data: dict[str, Any]) -> DocumentStats:
    return DocumentStats(
        streak=int(data.get("streak", 0)),
        last_activity_at=parse_timestamp(data.get("last_activity_at")),
    )


# ---------- Blob ----------


def blob_to_dict(blob: StateBlob) -> dict[str, Any]:
    return {
        "schema": SCHEMA_VERSION,
        "documents": {k: document_to_dict(v) for k, v in blob.documents.items()},
        "review_states": {
            doc_id: {unit_id: review_state_to_dict(s) for unit_id, s in states.items()}
            for doc_id, states in blob.review_states.items()
        },
        "stats": {k: stats_to_dict(v) for k, v in blob.stats.items()},
        "selected_document_id": blob.selected_document_id,
        "active_units": dict(blob.active_units),
        "settings": dict(blob.settings),
    }


def blob_from_dict(data: dict[str, Any]) -> StateBlob:
    if not isinstance(data, dict):
        raise ValueError("state blob must be a JSON object")

    if "document" in data and "documents" not in data:
        data = upgrade_single_document_layout(data)

    return StateBlob(
        documents={k: document_from_dict(v) for k, v in data.get("documents", {}).items()},
        review_states={
            doc_id: {unit_id: review_state_from_dict(s) for unit_id, s in states.items()}
            for doc_id, states in data.get("review_states", {}).items()
        },
        stats={k: stats_from_dict(v) for k, v in data.get("stats", {}).items()},
        selected_document_id=data.get("selected_document_id"),
        active_units=dict(data.get("active_units", {})),
        settings=dict(data.get("settings", {})),
    )


def upgrade_single_document_layout(data: dict[str, Any]) -> dict[str, Any]:
    """
    Upgrade the v1 layout, which held exactly one document, to the keyed layout.

    v1: {"document": {...}, "review_states": {unit: state}, "stats": {...},
         "active_unit_id": ..., "settings": {...}}

    The document keeps its stored id here; re-keying onto the canonical slug is
    the migration engine's job.
    """
    doc = dict(data["document"])
    doc_id = str(doc.get("id") or doc.get("title") or "document")
    doc["id"] = doc_id
    stats = data.get("stats") or {"streak": 0, "last_activity_at": None}
    return {
        "documents": {doc_id: doc},
        "review_states": {doc_id: data.get("review_states") or {}},
        "stats": {doc_id: stats},
        "selected_document_id": doc_id,
        "active_units": {doc_id: data.get("active_unit_id")},
        "settings": data.get("settings") or {},
    }


# ---------- Remote records ----------


def record_to_dict(record: RemoteRecord) -> dict[str, Any]:
    return {
        "kind": record.kind.value,
        "user_id": record.user_id,
        "document_id": record.document_id,
        "unit_id": record.unit_id,
        "data": record.payload,
        "updated_at": format_timestamp(record.updated_at),
    }


def record_from_dict(data: dict[str, Any]) -> RemoteRecord:
    updated_at = parse_timestamp(data.get("updated_at"))
    if updated_at is None:
        raise ValueError("remote record is missing updated_at")
    return RemoteRecord(
        kind=RecordKind(data["kind"]),
        user_id=str(data["user_id"]),
        document_id=str(data["document_id"]),
        unit_id=data.get("unit_id"),
        payload=dict(data.get("data") or {}),
        updated_at=updated_at,
    )
