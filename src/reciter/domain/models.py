"""
Domain models for documents, review states and the persisted state blob.

These are pure data structures with no I/O. Every "update" helper returns a
new object; nested mappings are copied, never mutated in place.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from reciter.domain.constants import DEFAULT_EASE

ItemKind = Literal["body", "label"]


@dataclass(frozen=True)
class Item:
    """
    One entry of a content unit.

    Attributes:
        text: The item's text.
        kind: "body" for numbered content, "label" for headings.
        number: Position number of a body item (None for labels).
    """

    text: str
    kind: ItemKind = "body"
    number: int | None = None


@dataclass(frozen=True)
class ContentUnit:
    """A contiguous, independently reviewable span of a document."""

    id: str
    range_label: str
    items: tuple[Item, ...]
    text: str

    @property
    def numbered_items(self) -> list[Item]:
        return [i for i in self.items if i.kind == "body" and i.number is not None]

    @property
    def first_number(self) -> int | None:
        numbered = self.numbered_items
        return numbered[0].number if numbered else None

    @property
    def last_number(self) -> int | None:
        numbered = self.numbered_items
        return numbered[-1].number if numbered else None


@dataclass(frozen=True)
class Document:
    id: str
    title: str
    source_text: str
    units: tuple[ContentUnit, ...]
    created_at: datetime
    version: str | None = None
    collection: str | None = None

    @property
    def qualifiers(self) -> list[str]:
        """Slug qualifiers in their fixed order: version, then collection."""
        return [q for q in (self.version, self.collection) if q]

    def unit(self, unit_id: str) -> ContentUnit | None:
        for unit in self.units:
            if unit.id == unit_id:
                return unit
        return None


@dataclass(frozen=True)
class ReviewState:
    """
    Spaced-repetition bookkeeping for one content unit.

    Attributes:
        id: The unit id this state belongs to.
        ease: Interval growth multiplier, never below 1.3.
        interval_days: Current interval in days.
        reps: Consecutive successful repetitions.
        lapses: Total failed reviews.
        next_due_at: When the unit is next due.
        last_score: Most recent recall score, if any.
        suppressed_until: Set after a failure; the unit is held back until then.
        mastered: Promoted after sustained success or toggled by the learner.
    """

    id: str
    next_due_at: datetime
    ease: float = DEFAULT_EASE
    interval_days: int = 0
    reps: int = 0
    lapses: int = 0
    last_score: float | None = None
    suppressed_until: datetime | None = None
    mastered: bool = False

    @classmethod
    def new(cls, unit_id: str, now: datetime) -> "ReviewState":
        return cls(id=unit_id, next_due_at=now)


@dataclass(frozen=True)
class DocumentStats:
    streak: int = 0
    last_activity_at: datetime | None = None


@dataclass(frozen=True)
class StateBlob:
    """
    The aggregate root: the unit of persistence and of synchronization.

    review_states is keyed by document id, then unit id. active_units maps a
    document id to its currently active unit id.
    """

    documents: dict[str, Document] = field(default_factory=dict)
    review_states: dict[str, dict[str, ReviewState]] = field(default_factory=dict)
    stats: dict[str, DocumentStats] = field(default_factory=dict)
    selected_document_id: str | None = None
    active_units: dict[str, str | None] = field(default_factory=dict)
    settings: dict[str, Any] = field(default_factory=dict)

    def review_state(self, document_id: str, unit_id: str) -> ReviewState | None:
        return self.review_states.get(document_id, {}).get(unit_id)

    def with_document(self, document: Document) -> "StateBlob":
        return replace(self, documents={**self.documents, document.id: document})

    def with_review_state(self, document_id: str, state: ReviewState) -> "StateBlob":
        states = {**self.review_states.get(document_id, {}), state.id: state}
        return replace(self, review_states={**self.review_states, document_id: states})

    def with_review_states(
        self, document_id: str, states: dict[str, ReviewState]
    ) -> "StateBlob":
        return replace(self, review_states={**self.review_states, document_id: dict(states)})

    def with_stats(self, document_id: str, stats: DocumentStats) -> "StateBlob":
        return replace(self, stats={**self.stats, document_id: stats})

    def with_active_unit(self, document_id: str, unit_id: str | None) -> "StateBlob":
        return replace(self, active_units={**self.active_units, document_id: unit_id})

    def with_selected(self, document_id: str | None) -> "StateBlob":
        return replace(self, selected_document_id=document_id)

    def with_settings(self, settings: dict[str, Any]) -> "StateBlob":
        return replace(self, settings={**self.settings, **settings})

    def without_document(self, document_id: str) -> "StateBlob":
        """Drop a document together with everything keyed by it."""
        documents = {k: v for k, v in self.documents.items() if k != document_id}
        selected = self.selected_document_id
        if selected == document_id:
            selected = next(iter(documents), None)
        return replace(
            self,
            documents=documents,
            review_states={k: v for k, v in self.review_states.items() if k != document_id},
            stats={k: v for k, v in self.stats.items() if k != document_id},
            active_units={k: v for k, v in self.active_units.items() if k != document_id},
            selected_document_id=selected,
        )


class RecordKind(str, Enum):
    REVIEW_STATE = "review_state"
    DOCUMENT = "document"
    STATS = "stats"


@dataclass(frozen=True)
class RemoteRecord:
    """
    A mirror-side row: a serialized payload plus the server-assigned timestamp.

    The payload is the JSON form of a ReviewState, Document or DocumentStats.
    """

    kind: RecordKind
    user_id: str
    document_id: str
    payload: dict[str, Any]
    updated_at: datetime
    unit_id: str | None = None

    @property
    def key(self) -> str:
        """Ledger key: the unit id for review states, kind-prefixed otherwise."""
        if self.kind is RecordKind.REVIEW_STATE:
            return self.unit_id or ""
        return f"{self.kind.value}:{self.document_id}"


def review_state_key(unit_id: str) -> str:
    return unit_id


def document_key(document_id: str) -> str:
    return f"{RecordKind.DOCUMENT.value}:{document_id}"


def stats_key(document_id: str) -> str:
    return f"{RecordKind.STATS.value}:{document_id}"
