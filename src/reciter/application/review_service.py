"""
Review flow: application layer orchestrator.

Coordinates the scheduler, the state blob, local persistence and (when a
session is active) the sync reconciler. Local changes are committed first;
sync results never undo them.
"""

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from reciter.application.importer import ParsedDocument, import_document
from reciter.application.scheduler import advance, clamp_score, set_mastered
from reciter.application.state import AppState
from reciter.application.streak import updated_streak
from reciter.application.sync.reconciler import SyncReconciler
from reciter.domain.exceptions import UnknownDocumentError, UnknownUnitError
from reciter.domain.models import Document, DocumentStats, ReviewState

logger = logging.getLogger(__name__)


class ReviewService:
    """
    Application service for grading, importing and managing documents.

    Args:
        state: The live application state.
        reconciler: Optional sync reconciler; without one the service is offline-only.
        clock: Injectable source of "now".
    """

    def __init__(
        self,
        state: AppState,
        reconciler: SyncReconciler | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.state = state
        self.reconciler = reconciler
        self._clock = clock or (lambda: datetime.now(timezone.utc).astimezone())

    def _document(self, document_id: str) -> Document:
        document = self.state.blob.documents.get(document_id)
        if document is None:
            raise UnknownDocumentError(document_id)
        return document

    def _review_state(self, document_id: str, unit_id: str) -> ReviewState:
        self._document(document_id)
        review_state = self.state.blob.review_state(document_id, unit_id)
        if review_state is None:
            raise UnknownUnitError(document_id, unit_id)
        return review_state

    async def grade(self, document_id: str, unit_id: str, raw_score: float) -> ReviewState:
        """
        Record one graded review.

        Args:
            document_id: Document the unit belongs to.
            unit_id: The reviewed unit.
            raw_score: Recall quality from the scoring subsystem; clamped to [0, 1].

        Returns:
            The updated ReviewState (already committed locally).
        """
        document = self._document(document_id)
        current = self._review_state(document_id, unit_id)
        now = self._clock()

        score = clamp_score(raw_score)
        updated = advance(current, score, now)

        stats = self.state.blob.stats.get(document_id, DocumentStats())
        stats = replace(
            stats,
            streak=updated_streak(stats.streak, stats.last_activity_at, now),
            last_activity_at=now,
        )

        self.state.commit(
            self.state.blob.with_review_state(document_id, updated).with_stats(document_id, stats)
        )
        logger.info(
            f"[review] {unit_id} score={score:.2f} interval={updated.interval_days}d "
            f"ease={updated.ease:.2f} mastered={updated.mastered}"
        )

        if self.reconciler is not None:
            await self.reconciler.push_review_state(document_id, updated)
            await self.reconciler.push_stats(document_id)
            if updated.mastered != current.mastered:
                await self.reconciler.push_shared_progress(
                    document.title, unit_id, updated.mastered
                )
        return updated

    async def set_mastered(self, document_id: str, unit_id: str, mastered: bool) -> ReviewState:
        """Explicit learner toggle of a unit's mastered flag."""
        document = self._document(document_id)
        updated = set_mastered(self._review_state(document_id, unit_id), mastered)
        self.state.commit(self.state.blob.with_review_state(document_id, updated))

        if self.reconciler is not None:
            await self.reconciler.push_review_state(document_id, updated)
            await self.reconciler.push_shared_progress(document.title, unit_id, mastered)
        return updated

    async def import_document(
        self,
        parsed: ParsedDocument,
        version: str | None = None,
        collection: str | None = None,
    ) -> Document:
        blob, document = import_document(
            self.state.blob, parsed, version=version, collection=collection, now=self._clock()
        )
        self.state.commit(blob)
        if self.reconciler is not None:
            await self.reconciler.push_document_with_states(document.id)
        return document

    async def delete_document(self, document_id: str) -> None:
        document = self._document(document_id)
        self.state.commit(self.state.blob.without_document(document_id))
        logger.info(f"[review] deleted {document_id}")
        if self.reconciler is not None:
            await self.reconciler.delete_document(document_id, document.title)

    def select_document(self, document_id: str) -> None:
        self._document(document_id)
        self.state.commit(self.state.blob.with_selected(document_id))

    def set_active_unit(self, document_id: str, unit_id: str) -> None:
        document = self._document(document_id)
        if document.unit(unit_id) is None:
            raise UnknownUnitError(document_id, unit_id)
        self.state.commit(self.state.blob.with_active_unit(document_id, unit_id))

    def update_settings(self, **settings: Any) -> None:
        self.state.commit(self.state.blob.with_settings(settings))
