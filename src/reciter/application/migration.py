"""
Migration of persisted state onto deterministic, content-derived ids.

Older data may key documents and units by random or time-based ids. This
module re-keys every structure that references them (documents, review
states, stats, active-unit pointers, the selected document) onto the ids the
identity service derives, building a new StateBlob rather than mutating the
input.

Guarantees:
1. Idempotent: migrate(migrate(b)) == migrate(b) for the same ``now``.
2. Lossless: no review state or stats record is dropped. Two records that
   would land on the same key with different contents raise MigrationError.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import TypeVar

from reciter.application.id_service import (
    canonical_unit_id,
    document_slug,
    range_label,
    rebase_positional_unit_id,
)
from reciter.application.streak import should_reset_streak
from reciter.domain.exceptions import MigrationError
from reciter.domain.models import Document, ReviewState, StateBlob

logger = logging.getLogger(__name__)

V = TypeVar("V")


@dataclass
class MigrationReport:
    """What a migration changed."""

    documents: list[tuple[str, str]] = field(default_factory=list)  # (old, new)
    units: list[tuple[str, str, str]] = field(default_factory=list)  # (doc, old, new)
    streaks_reset: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.documents or self.units or self.streaks_reset)


def migrate(blob: StateBlob, now: datetime | None = None) -> StateBlob:
    migrated, _ = migrate_with_report(blob, now)
    return migrated


def migrate_with_report(
    blob: StateBlob, now: datetime | None = None
) -> tuple[StateBlob, MigrationReport]:
    """
    Re-key documents and units onto canonical ids, then decay stale streaks.

    Args:
        blob: State as loaded from storage or assembled from the mirror.
        now: Injectable clock used for streak decay.

    Returns:
        (new blob, report of what changed)

    Raises:
        MigrationError: two documents or units claim the same canonical id, or a
            relocated record would overwrite a different record.
    """
    now = now or datetime.now(timezone.utc).astimezone()
    report = MigrationReport()

    # 1. Documents
    doc_key_map: dict[str, str] = {}
    documents: dict[str, Document] = {}
    for old_id, doc in blob.documents.items():
        new_id = document_slug(doc)
        if new_id in documents:
            raise MigrationError(
                f"Documents '{_previous_key(doc_key_map, new_id)}' and '{old_id}' "
                f"both map to '{new_id}'"
            )
        doc_key_map[old_id] = new_id
        documents[new_id] = doc if doc.id == new_id else replace(doc, id=new_id)
        if old_id != new_id:
            report.documents.append((old_id, new_id))
            logger.info(f"[migrate] document {old_id} -> {new_id}")

    review_states = _rekey(
        blob.review_states, doc_key_map, _merge_state_maps, "review states"
    )
    stats = _rekey(blob.stats, doc_key_map, _same_or_fail, "stats")
    active_units = _rekey(blob.active_units, doc_key_map, _take_relocated, "active unit")

    selected = blob.selected_document_id
    if selected is not None:
        selected = doc_key_map.get(selected, selected)

    # 2. Units
    previous_ids = {new: old for old, new in doc_key_map.items()}
    for doc_id, doc in list(documents.items()):
        old_doc_id = previous_ids.get(doc_id, doc_id)
        unit_key_map: dict[str, str] = {}
        units = []
        claimed: set[str] = set()
        for unit in doc.units:
            target = canonical_unit_id(doc_id, unit)
            if target is None:
                # Positional ids follow their document
                target = rebase_positional_unit_id(old_doc_id, doc_id, unit.id) or unit.id
            if target in claimed:
                raise MigrationError(f"Two units of '{doc_id}' map to '{target}'")
            claimed.add(target)

            if target != unit.id:
                unit_key_map[unit.id] = target
                report.units.append((doc_id, unit.id, target))
                logger.info(f"[migrate] unit {unit.id} -> {target}")
                if unit.first_number is not None:
                    unit = replace(
                        unit,
                        id=target,
                        range_label=range_label(unit.first_number, unit.last_number),
                    )
                else:
                    unit = replace(unit, id=target)
            units.append(unit)

        if unit_key_map:
            documents[doc_id] = replace(doc, units=tuple(units))

        if doc_id in review_states:
            relocated = _rekey(
                review_states[doc_id], unit_key_map, _same_or_fail, f"review state in {doc_id}"
            )
            review_states[doc_id] = {
                uid: state if state.id == uid else replace(state, id=uid)
                for uid, state in relocated.items()
            }

        pointer = active_units.get(doc_id)
        if pointer in unit_key_map:
            active_units[doc_id] = unit_key_map[pointer]

    # 3. Streak decay
    for doc_id, doc_stats in list(stats.items()):
        if doc_stats.streak and should_reset_streak(doc_stats.last_activity_at, now):
            stats[doc_id] = replace(doc_stats, streak=0)
            report.streaks_reset.append(doc_id)
            logger.debug(f"[migrate] streak reset for {doc_id}")

    migrated = StateBlob(
        documents=documents,
        review_states=review_states,
        stats=stats,
        selected_document_id=selected,
        active_units=active_units,
        settings=dict(blob.settings),
    )
    return migrated, report


def _previous_key(key_map: dict[str, str], new_id: str) -> str:
    for old, new in key_map.items():
        if new == new_id:
            return old
    return new_id


def _rekey(
    mapping: dict[str, V],
    key_map: dict[str, str],
    on_conflict: Callable[[str, V, V, str], V],
    what: str,
) -> dict[str, V]:
    """
    Copy ``mapping`` with its keys translated through ``key_map``.

    Entries whose key does not move are placed first, so a relocated entry is
    always the one checked against an existing occupant.
    """
    out: dict[str, V] = {}
    staying = [(k, v) for k, v in mapping.items() if key_map.get(k, k) == k]
    moving = [(k, v) for k, v in mapping.items() if key_map.get(k, k) != k]
    for old, value in staying + moving:
        new = key_map.get(old, old)
        if new in out:
            out[new] = on_conflict(new, out[new], value, what)
        else:
            out[new] = value
    return out


def _same_or_fail(key: str, existing: V, incoming: V, what: str) -> V:
    if _comparable(existing) == _comparable(incoming):
        return existing
    raise MigrationError(f"Conflicting {what} records for '{key}'")


def _comparable(value):
    # Review states differ only in id when one copy was already re-keyed
    if isinstance(value, ReviewState):
        return replace(value, id="")
    return value


def _merge_state_maps(
    key: str,
    existing: dict[str, ReviewState],
    incoming: dict[str, ReviewState],
    what: str,
) -> dict[str, ReviewState]:
    merged = dict(existing)
    for uid, state in incoming.items():
        if uid in merged:
            merged[uid] = _same_or_fail(uid, merged[uid], state, what)
        else:
            merged[uid] = state
    return merged


def _take_relocated(key: str, existing: V, incoming: V, what: str) -> V:
    return incoming
