"""
Progress calculator for deriving per-document summaries from review states.

This is a pure computation module with no I/O.
"""

from dataclasses import dataclass
from datetime import datetime

from reciter.application.scheduler import is_due, is_suppressed
from reciter.domain.models import DocumentStats, ReviewState, StateBlob


@dataclass
class DocumentProgress:
    """
    Summary of one document's learning progress.
    """

    document_id: str
    title: str
    total_units: int
    mastered: int
    due: int
    suppressed: int
    new: int  # never reviewed
    streak: int

    lapse_rate: float | None  # lapses / (reps + lapses)
    average_ease: float | None

    @property
    def mastered_ratio(self) -> float:
        if self.total_units == 0:
            return 0.0
        return self.mastered / self.total_units


class ProgressCalculator:
    """
    Computes progress summaries and due listings from a StateBlob.

    Stateless and side-effect free.
    """

    def summarize(self, blob: StateBlob, document_id: str, now: datetime) -> DocumentProgress:
        document = blob.documents[document_id]
        states = self._states_for(blob, document_id)
        stats = blob.stats.get(document_id, DocumentStats())

        return DocumentProgress(
            document_id=document_id,
            title=document.title,
            total_units=len(document.units),
            mastered=sum(1 for s in states if s.mastered),
            due=sum(1 for s in states if self._reviewable(s, now)),
            suppressed=sum(1 for s in states if is_suppressed(s, now)),
            new=sum(1 for s in states if s.last_score is None),
            streak=stats.streak,
            lapse_rate=self._compute_lapse_rate(states),
            average_ease=self._compute_average_ease(states),
        )

    def summarize_all(self, blob: StateBlob, now: datetime) -> list[DocumentProgress]:
        return [self.summarize(blob, doc_id, now) for doc_id in blob.documents]

    def due_units(
        self, blob: StateBlob, document_id: str, now: datetime, limit: int | None = None
    ) -> list[ReviewState]:
        """
        Units that are due, not suppressed and not mastered, earliest first.
        """
        due = [s for s in self._states_for(blob, document_id) if self._reviewable(s, now)]
        due.sort(key=lambda s: s.next_due_at)
        return due[:limit] if limit is not None else due

    def _reviewable(self, state: ReviewState, now: datetime) -> bool:
        return not state.mastered and is_due(state, now) and not is_suppressed(state, now)

    def _states_for(self, blob: StateBlob, document_id: str) -> list[ReviewState]:
        # Only units that still exist in the document are counted
        document = blob.documents[document_id]
        states = blob.review_states.get(document_id, {})
        return [states[u.id] for u in document.units if u.id in states]

    def _compute_lapse_rate(self, states: list[ReviewState]) -> float | None:
        attempts = sum(s.reps + s.lapses for s in states)
        if attempts == 0:
            return None
        return sum(s.lapses for s in states) / attempts

    def _compute_average_ease(self, states: list[ReviewState]) -> float | None:
        reviewed = [s.ease for s in states if s.last_score is not None]
        if not reviewed:
            return None
        return sum(reviewed) / len(reviewed)
