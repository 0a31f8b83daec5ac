"""
Process-local RemoteMirror.

Backs the ``reciter serve`` HTTP API, the offline demo and the test suite.
Behaves like the hosted mirror it stands in for: the server assigns every
``updated_at`` (strictly increasing), every upsert is echoed to the user's
live subscriptions, and each row is replaced whole.
"""

import asyncio
import logging
from collections import defaultdict, deque
from collections.abc import AsyncIterator, Callable
from datetime import datetime, timedelta, timezone
from itertools import islice
from typing import Any

from ulid import ULID

from reciter.domain.constants import CHANGE_LOG_LIMIT
from reciter.domain.interfaces import RemoteMirror, Subscription
from reciter.domain.models import (
    Document,
    DocumentStats,
    RecordKind,
    RemoteRecord,
    ReviewState,
)
from reciter.domain.serialization import (
    document_to_dict,
    review_state_to_dict,
    stats_to_dict,
)

logger = logging.getLogger(__name__)

_CLOSED = object()


def generate_subscription_id() -> str:
    return f"sub_{ULID()}"


class MemorySubscription(Subscription):
    """Queue-backed live feed handed out by InMemoryRemoteMirror."""

    def __init__(self, mirror: "InMemoryRemoteMirror", user_id: str):
        self.id = generate_subscription_id()
        self.user_id = user_id
        self._mirror = mirror
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, record: RemoteRecord) -> None:
        if not self._closed:
            self._queue.put_nowait(record)

    async def _iterate(self) -> AsyncIterator[RemoteRecord]:
        while not self._closed:
            item = await self._queue.get()
            if item is _CLOSED:
                break
            yield item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._mirror._detach(self)
        self._queue.put_nowait(_CLOSED)


class InMemoryRemoteMirror(RemoteMirror):
    """
    Args:
        clock: Injectable source of server time. Timestamps handed out are
            forced to be strictly increasing even if the clock stalls.
        change_log_limit: How many recent changes the cursor feed retains.
            A cursor older than that resumes at the oldest retained change.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] | None = None,
        change_log_limit: int = CHANGE_LOG_LIMIT,
    ):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._last_stamp: datetime | None = None

        # user_id -> record key -> record
        self._rows: dict[str, dict[str, RemoteRecord]] = defaultdict(dict)
        # Recent changes only; the cursor counts every change ever logged
        self._changes: deque[RemoteRecord] = deque(maxlen=change_log_limit)
        self._logged = 0
        self._subscriptions: dict[str, list[MemorySubscription]] = defaultdict(list)

        self._groups: dict[str, set[str]] = defaultdict(set)
        # (group_id, user_id, document_title, unit_id) -> mastered
        self.shared_progress: dict[tuple[str, str, str, str], bool] = {}
        self.profiles: dict[str, dict[str, Any]] = {}

    # ---------- Server clock ----------

    def _stamp(self) -> datetime:
        now = self._clock()
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now

    def _store(
        self,
        kind: RecordKind,
        user_id: str,
        document_id: str,
        payload: dict[str, Any],
        unit_id: str | None = None,
    ) -> datetime:
        record = RemoteRecord(
            kind=kind,
            user_id=user_id,
            document_id=document_id,
            payload=payload,
            updated_at=self._stamp(),
            unit_id=unit_id,
        )
        self._rows[user_id][record.key] = record
        self._changes.append(record)
        self._logged += 1
        for subscription in list(self._subscriptions.get(user_id, [])):
            subscription.deliver(record)
        return record.updated_at

    # ---------- Records ----------

    async def upsert_review_state(
        self, user_id: str, document_id: str, unit_id: str, state: ReviewState
    ) -> datetime:
        payload = review_state_to_dict(state)
        payload["id"] = unit_id
        return self._store(RecordKind.REVIEW_STATE, user_id, document_id, payload, unit_id)

    async def upsert_document(self, user_id: str, document: Document) -> datetime:
        return self._store(
            RecordKind.DOCUMENT, user_id, document.id, document_to_dict(document)
        )

    async def upsert_stats(
        self, user_id: str, document_id: str, stats: DocumentStats
    ) -> datetime:
        return self._store(RecordKind.STATS, user_id, document_id, stats_to_dict(stats))

    async def fetch_all(self, user_id: str) -> list[RemoteRecord]:
        return list(self._rows.get(user_id, {}).values())

    def changes_since(
        self, user_id: str, cursor: int | None
    ) -> tuple[list[RemoteRecord], int]:
        """
        Records changed for ``user_id`` after ``cursor``, plus the new cursor.

        A ``None`` cursor returns no records and the current tail position.
        """
        if cursor is None:
            return [], self._logged
        oldest = self._logged - len(self._changes)
        if cursor < oldest:
            logger.warning(
                f"[mirror] cursor {cursor} for {user_id} predates the change log "
                f"(oldest retained: {oldest})"
            )
        cursor = max(oldest, min(cursor, self._logged))
        retained = islice(self._changes, cursor - oldest, None)
        records = [r for r in retained if r.user_id == user_id]
        return records, self._logged

    async def delete_document(self, user_id: str, document_id: str) -> None:
        rows = self._rows.get(user_id, {})
        doomed = [key for key, record in rows.items() if record.document_id == document_id]
        for key in doomed:
            del rows[key]
        logger.debug(f"[mirror] deleted {len(doomed)} row(s) of {document_id} for {user_id}")

    # ---------- Live updates ----------

    def subscribe(self, user_id: str) -> MemorySubscription:
        subscription = MemorySubscription(self, user_id)
        self._subscriptions[user_id].append(subscription)
        logger.debug(f"[mirror] {subscription.id} opened for {user_id}")
        return subscription

    def _detach(self, subscription: MemorySubscription) -> None:
        subscribers = self._subscriptions.get(subscription.user_id, [])
        if subscription in subscribers:
            subscribers.remove(subscription)
            logger.debug(f"[mirror] {subscription.id} closed")

    def subscriber_count(self, user_id: str) -> int:
        return len(self._subscriptions.get(user_id, []))

    # ---------- Groups ----------

    def add_member(self, group_id: str, user_id: str) -> None:
        self._groups[group_id].add(user_id)

    async def fetch_group_ids(self, user_id: str) -> list[str]:
        return sorted(gid for gid, members in self._groups.items() if user_id in members)

    async def upsert_shared_progress(
        self,
        group_id: str,
        user_id: str,
        document_title: str,
        unit_id: str,
        mastered: bool,
    ) -> None:
        self.shared_progress[(group_id, user_id, document_title, unit_id)] = mastered

    async def delete_shared_progress(
        self, group_id: str, user_id: str, document_title: str
    ) -> None:
        doomed = [
            key
            for key in self.shared_progress
            if key[0] == group_id and key[1] == user_id and key[2] == document_title
        ]
        for key in doomed:
            del self.shared_progress[key]

    def group_progress(self, group_id: str) -> list[dict[str, Any]]:
        return [
            {
                "user_id": uid,
                "document_title": title,
                "unit_id": unit_id,
                "mastered": mastered,
            }
            for (gid, uid, title, unit_id), mastered in sorted(self.shared_progress.items())
            if gid == group_id
        ]

    # ---------- Profiles ----------

    async def update_profile(self, user_id: str, profile: dict[str, Any]) -> None:
        self.profiles[user_id] = {**self.profiles.get(user_id, {}), **profile}
