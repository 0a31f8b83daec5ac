"""Merging remote records into a StateBlob (whole-record replacement)."""

from dataclasses import replace

from reciter.domain.models import RecordKind, RemoteRecord, StateBlob
from reciter.domain.serialization import (
    document_from_dict,
    review_state_from_dict,
    stats_from_dict,
)


def apply_record(blob: StateBlob, record: RemoteRecord) -> StateBlob:
    """Return a new blob with ``record``'s payload installed under its keys."""
    if record.kind is RecordKind.REVIEW_STATE:
        if not record.unit_id:
            raise ValueError("review state record without unit_id")
        state = review_state_from_dict({**record.payload, "id": record.unit_id})
        return blob.with_review_state(record.document_id, state)

    if record.kind is RecordKind.DOCUMENT:
        document = document_from_dict({**record.payload, "id": record.document_id})
        updated = blob.with_document(document)
        if record.document_id not in updated.review_states:
            updated = replace(
                updated, review_states={**updated.review_states, record.document_id: {}}
            )
        return updated

    if record.kind is RecordKind.STATS:
        return blob.with_stats(record.document_id, stats_from_dict(record.payload))

    raise ValueError(f"Unsupported record kind: {record.kind}")
