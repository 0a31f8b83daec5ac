"""
SM-2 style scheduler for content units.

Pure computation: (review state, recall score, now) -> next review state.
"""

import math
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from reciter.domain.constants import (
    FAILED_EASE_PENALTY,
    FIRST_INTERVAL_DAYS,
    MASTERED_REP_THRESHOLD,
    MIN_EASE,
    SECOND_INTERVAL_DAYS,
    SHAKY_EASE_PENALTY,
    SHAKY_INTERVAL_FACTOR,
    SHAKY_SCORE,
    STRONG_SCORE,
    SUPPRESSION_HOURS,
)
from reciter.domain.models import ReviewState


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values, so every device agrees."""
    return int(math.floor(value + 0.5))


def clamp_score(raw: float | None) -> float:
    """Clamp a raw score from the scoring subsystem into [0, 1]."""
    if raw is None or math.isnan(raw):
        return 0.0
    return min(1.0, max(0.0, float(raw)))


def advance(state: ReviewState, score: float, now: datetime | None = None) -> ReviewState:
    """
    Apply one graded review to a review state.

    Bands:
        score >= 0.9          strong: interval grows, reps += 1, may promote to mastered
        0.75 <= score < 0.9   shaky: interval halves (min 1 day), ease drops by 0.2
        score < 0.75          failed: reset, lapse recorded, held back for 24h, demoted

    Args:
        state: Current review state.
        score: Recall quality in [0, 1]. Anything outside (or NaN) is clamped
            first, so every input yields a valid state.
        now: Injectable clock; defaults to the current UTC time.

    Returns:
        A new ReviewState. The input is never modified.
    """
    score = clamp_score(score)
    now = now or datetime.now(timezone.utc)

    ease = state.ease
    interval = state.interval_days
    reps = state.reps
    lapses = state.lapses
    mastered = state.mastered
    suppressed_until: datetime | None

    if score >= STRONG_SCORE:
        if reps == 0:
            interval = FIRST_INTERVAL_DAYS
        elif reps == 1:
            interval = SECOND_INTERVAL_DAYS
        else:
            interval = round_half_up(interval * ease)
        reps += 1
        miss = 1 - score
        ease = max(MIN_EASE, ease + (0.1 - miss * (0.1 + miss * 0.1)))
        suppressed_until = None
        if reps >= MASTERED_REP_THRESHOLD:
            mastered = True
    elif score >= SHAKY_SCORE:
        interval = max(1, round_half_up(interval * SHAKY_INTERVAL_FACTOR))
        ease = max(MIN_EASE, ease - SHAKY_EASE_PENALTY)
        suppressed_until = None
    else:
        reps = 0
        interval = 0
        lapses += 1
        ease = max(MIN_EASE, ease - FAILED_EASE_PENALTY)
        suppressed_until = now + timedelta(hours=SUPPRESSION_HOURS)
        mastered = False

    return replace(
        state,
        ease=ease,
        interval_days=max(0, interval),
        reps=reps,
        lapses=lapses,
        last_score=score,
        suppressed_until=suppressed_until,
        mastered=mastered,
        next_due_at=now + timedelta(days=max(0, interval)),
    )


def set_mastered(state: ReviewState, mastered: bool) -> ReviewState:
    """Explicit learner toggle of the mastered flag."""
    return replace(state, mastered=mastered)


def is_due(state: ReviewState, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    return state.next_due_at <= now


def is_suppressed(state: ReviewState, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    return state.suppressed_until is not None and state.suppressed_until > now
