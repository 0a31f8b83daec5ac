"""Daily streak rules shared by the review flow and the load-time migration."""

from datetime import datetime, timezone


def days_between(later: datetime, earlier: datetime) -> int:
    """Whole calendar days from earlier to later, judged in later's timezone."""
    tz = later.tzinfo or timezone.utc
    return (later.astimezone(tz).date() - earlier.astimezone(tz).date()).days


def updated_streak(streak: int, last_activity: datetime | None, now: datetime) -> int:
    """Streak after a graded review at ``now``."""
    if last_activity is None:
        return 1
    diff = days_between(now, last_activity)
    if diff == 1:
        return streak + 1
    if diff > 1:
        return 1
    return streak


def should_reset_streak(last_activity: datetime | None, now: datetime) -> bool:
    """True when more than one full calendar day has passed without activity."""
    if last_activity is None:
        return False
    return days_between(now, last_activity) > 1
