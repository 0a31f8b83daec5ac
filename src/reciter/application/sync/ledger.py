"""Local write ledger used to suppress stale echoes of this device's own writes."""

from datetime import datetime, timezone

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class LocalWriteLedger:
    """
    Process-local map of record key -> timestamp of the latest write seen.

    Never persisted. Entries only move forward: ``advance`` keeps the max of
    the current and incoming timestamps, so a late acknowledgement cannot drag
    an entry backwards. One ledger belongs to one sync session; pass it
    explicitly rather than sharing it globally.
    """

    def __init__(self) -> None:
        self._entries: dict[str, datetime] = {}

    def get(self, key: str) -> datetime:
        return self._entries.get(key, EPOCH)

    def advance(self, key: str, at: datetime) -> datetime:
        current = self._entries.get(key)
        if current is None or at > current:
            self._entries[key] = at
            return at
        return current

    def should_apply(self, key: str, updated_at: datetime) -> bool:
        """A remote value is applied only when strictly newer than the ledger entry."""
        return updated_at > self.get(key)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
