import copy
from dataclasses import replace
from datetime import timedelta

import pytest

from reciter.application.importer import (
    ParsedDocument,
    ParsedUnit,
    build_document,
    import_document,
)
from reciter.application.migration import migrate, migrate_with_report
from reciter.domain.exceptions import MigrationError
from reciter.domain.models import (
    ContentUnit,
    Document,
    DocumentStats,
    Item,
    ReviewState,
    StateBlob,
)


def _unit(unit_id, first, last):
    items = tuple(Item(text=f"item {n}", number=n) for n in range(first, last + 1))
    return ContentUnit(id=unit_id, range_label="", items=items, text="")


def _state(unit_id, now, **kwargs):
    return ReviewState(id=unit_id, next_due_at=now, **kwargs)


@pytest.fixture
def legacy_blob(now):
    doc = Document(
        id="doc_1700000000",
        title="Romans 8",
        source_text="",
        units=(_unit("u-abc", 1, 4), _unit("u-def", 5, 8)),
        created_at=now,
    )
    return StateBlob(
        documents={doc.id: doc},
        review_states={
            doc.id: {
                "u-abc": _state("u-abc", now, reps=2, ease=2.7, interval_days=6),
                "u-def": _state("u-def", now, lapses=1, mastered=True),
            }
        },
        stats={doc.id: DocumentStats(streak=3, last_activity_at=now)},
        selected_document_id=doc.id,
        active_units={doc.id: "u-def"},
        settings={"font_size": 18},
    )


def test_rekeys_documents_units_and_pointers(legacy_blob, now):
    migrated, report = migrate_with_report(legacy_blob, now)

    assert list(migrated.documents) == ["romans-8"]
    doc = migrated.documents["romans-8"]
    assert doc.id == "romans-8"
    assert [u.id for u in doc.units] == ["romans-8-v1-4", "romans-8-v5-8"]
    assert [u.range_label for u in doc.units] == ["1-4", "5-8"]

    states = migrated.review_states["romans-8"]
    assert states["romans-8-v1-4"].reps == 2
    assert states["romans-8-v1-4"].id == "romans-8-v1-4"
    assert states["romans-8-v5-8"].mastered

    assert migrated.stats["romans-8"].streak == 3
    assert migrated.selected_document_id == "romans-8"
    assert migrated.active_units == {"romans-8": "romans-8-v5-8"}
    assert migrated.settings == {"font_size": 18}

    assert report.documents == [("doc_1700000000", "romans-8")]
    assert len(report.units) == 2
    assert report.changed


def test_migration_is_idempotent(legacy_blob, now):
    once = migrate(legacy_blob, now)
    twice, report = migrate_with_report(once, now)
    assert twice == once
    assert not report.changed


def test_migration_is_lossless(legacy_blob, now):
    migrated = migrate(legacy_blob, now)
    old_states = legacy_blob.review_states["doc_1700000000"]
    new_states = migrated.review_states["romans-8"]
    renamed = {"u-abc": "romans-8-v1-4", "u-def": "romans-8-v5-8"}

    assert len(new_states) == len(old_states)
    for old_id, new_id in renamed.items():
        assert new_states[new_id].id == new_id
        assert replace(new_states[new_id], id="") == replace(old_states[old_id], id="")

    assert len(migrated.stats) == len(legacy_blob.stats)
    assert migrated.stats["romans-8"] == legacy_blob.stats["doc_1700000000"]


def test_migration_does_not_mutate_input(legacy_blob, now):
    snapshot = copy.deepcopy(legacy_blob)
    migrate(legacy_blob, now)
    assert legacy_blob == snapshot


def test_canonical_blob_is_untouched(romans_parsed, now):
    blob, _ = import_document(StateBlob(), romans_parsed, now=now)
    migrated, report = migrate_with_report(blob, now)
    assert migrated == blob
    assert not report.changed


def test_document_collision_raises(now):
    a = Document(id="a", title="Psalm 23", source_text="", units=(), created_at=now)
    b = Document(id="b", title="psalm 23!", source_text="", units=(), created_at=now)
    blob = StateBlob(documents={"a": a, "b": b})
    with pytest.raises(MigrationError):
        migrate(blob, now)


def test_unit_collision_raises(now):
    doc = Document(
        id="romans-8",
        title="Romans 8",
        source_text="",
        units=(_unit("x", 1, 4), _unit("y", 1, 4)),
        created_at=now,
    )
    with pytest.raises(MigrationError):
        migrate(StateBlob(documents={doc.id: doc}), now)


def test_relocated_state_conflicting_with_existing_raises(now):
    doc = Document(
        id="romans-8",
        title="Romans 8",
        source_text="",
        units=(_unit("old-id", 1, 4),),
        created_at=now,
    )
    blob = StateBlob(
        documents={doc.id: doc},
        review_states={
            doc.id: {
                "old-id": _state("old-id", now, reps=1),
                "romans-8-v1-4": _state("romans-8-v1-4", now, reps=5),
            }
        },
    )
    with pytest.raises(MigrationError):
        migrate(blob, now)


def test_stale_streak_is_reset(legacy_blob, now):
    stale = legacy_blob.with_stats(
        "doc_1700000000", DocumentStats(streak=5, last_activity_at=now - timedelta(days=3))
    )
    migrated, report = migrate_with_report(stale, now)
    assert migrated.stats["romans-8"].streak == 0
    assert migrated.stats["romans-8"].last_activity_at == now - timedelta(days=3)
    assert report.streaks_reset == ["romans-8"]


def test_yesterday_keeps_streak(legacy_blob, now):
    recent = legacy_blob.with_stats(
        "doc_1700000000", DocumentStats(streak=5, last_activity_at=now - timedelta(days=1))
    )
    assert migrate(recent, now).stats["romans-8"].streak == 5


def test_unnumbered_units_keep_their_ids(now):
    unit = ContentUnit(id="intro", range_label="", items=(Item(text="Intro", kind="label"),), text="")
    doc = Document(id="romans-8", title="Romans 8", source_text="", units=(unit,), created_at=now)
    blob = StateBlob(
        documents={doc.id: doc}, review_states={doc.id: {"intro": _state("intro", now)}}
    )
    migrated = migrate(blob, now)
    assert migrated.documents["romans-8"].units[0].id == "intro"
    assert "intro" in migrated.review_states["romans-8"]


def test_unnumbered_units_follow_a_rekeyed_document(now):
    intro = ContentUnit(
        id="doc_1700000000-u1",
        range_label="",
        items=(Item(text="Life in the Spirit", kind="label"),),
        text="",
    )
    doc = Document(
        id="doc_1700000000",
        title="Romans 8",
        source_text="",
        units=(intro, _unit("u-abc", 1, 4)),
        created_at=now,
    )
    blob = StateBlob(
        documents={doc.id: doc},
        review_states={doc.id: {intro.id: _state(intro.id, now, reps=2)}},
        active_units={doc.id: intro.id},
    )

    migrated, report = migrate_with_report(blob, now)
    assert [u.id for u in migrated.documents["romans-8"].units] == [
        "romans-8-u1",
        "romans-8-v1-4",
    ]
    assert migrated.review_states["romans-8"]["romans-8-u1"].reps == 2
    assert migrated.active_units == {"romans-8": "romans-8-u1"}
    assert ("romans-8", "doc_1700000000-u1", "romans-8-u1") in report.units

    # A fresh import of the same content lands on the same ids
    parsed = ParsedDocument(
        title="Romans 8",
        units=[
            ParsedUnit(items=[Item(text="Life in the Spirit", kind="label")]),
            ParsedUnit(items=[Item(text=f"item {n}", number=n) for n in range(1, 5)]),
        ],
    )
    rebuilt = build_document(parsed, now=now)
    assert [u.id for u in rebuilt.units] == ["romans-8-u1", "romans-8-v1-4"]
    assert migrate(migrated, now) == migrated
