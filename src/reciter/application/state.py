"""In-memory holder of the current StateBlob, persisted on every commit."""

import logging
from collections.abc import Callable
from datetime import datetime

from reciter.application.migration import migrate_with_report
from reciter.domain.models import StateBlob
from reciter.infrastructure.storage.local_store import LocalStore

logger = logging.getLogger(__name__)

CommitListener = Callable[[StateBlob, StateBlob], None]


class AppState:
    """
    Single owner of the live blob.

    Every change goes through ``commit``, which saves the blob locally and then
    notifies listeners with (previous, current).
    """

    def __init__(self, store: LocalStore, blob: StateBlob | None = None):
        self._store = store
        self._blob = blob if blob is not None else StateBlob()
        self._listeners: list[CommitListener] = []

    @classmethod
    def hydrate(cls, store: LocalStore, now: datetime | None = None) -> "AppState":
        """Load the saved blob, migrate it onto canonical ids and persist the result."""
        loaded = store.load()
        migrated, report = migrate_with_report(loaded, now)
        if report.changed:
            logger.info(
                f"[state] migrated {len(report.documents)} document(s), "
                f"{len(report.units)} unit(s), {len(report.streaks_reset)} streak reset(s)"
            )
            store.save(migrated)
        return cls(store, migrated)

    @property
    def blob(self) -> StateBlob:
        return self._blob

    def commit(self, blob: StateBlob) -> None:
        previous = self._blob
        if blob == previous:
            return
        self._blob = blob
        self._store.save(blob)
        for listener in list(self._listeners):
            listener(previous, blob)

    def add_listener(self, listener: CommitListener) -> Callable[[], None]:
        """Register a commit listener; returns a function that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove
