"""
Ports (interfaces) for persistence and the remote mirror.

These define the contract that infrastructure adapters must implement.
Application services depend on these abstractions, not concrete implementations.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any

from reciter.domain.exceptions import FanoutError
from reciter.domain.models import Document, DocumentStats, RemoteRecord, ReviewState

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """
    Byte-oriented persistence substrate.

    Implementations are context managers: the medium is acquired on enter and
    released (flushed and closed) on exit.

    Implementations:
        - SqliteKeyValueStore: single-table SQLite database on disk.
    """

    def __enter__(self) -> "KeyValueStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None

    @abstractmethod
    def get(self, key: str) -> bytes | None:
        pass

    @abstractmethod
    def set(self, key: str, value: bytes) -> None:
        """Replace the value stored under key in a single write."""
        pass


class Subscription(ABC):
    """
    A live feed of remote changes for one user.

    Usage:
        async with mirror.subscribe(user_id) as sub:
            async for record in sub:
                ...

    Entering the block calls ``open()``, which fixes the point in the change
    stream the feed starts from. Anything written after ``open()`` returns is
    delivered, so callers that also take a snapshot open the feed first.

    Leaving the ``async with`` block (normally or through an exception)
    releases the feed. ``close()`` may also be called directly and is
    idempotent; iteration ends once the subscription is closed.
    """

    async def open(self) -> None:
        """Pin the starting point of the feed. Safe to call more than once."""

    async def __aenter__(self) -> "Subscription":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def __aiter__(self) -> AsyncIterator[RemoteRecord]:
        return self._iterate()

    @abstractmethod
    def _iterate(self) -> AsyncIterator[RemoteRecord]:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    @property
    @abstractmethod
    def closed(self) -> bool:
        pass


class RemoteMirror(ABC):
    """
    Port for the remote mirror of a user's state.

    Every upsert returns the server-assigned ``updated_at`` of the stored row,
    which is the only timestamp used for conflict arbitration.

    Implementations:
        - InMemoryRemoteMirror: process-local mirror (tests, offline demo, server backing).
        - HttpRemoteMirror: talks to ``reciter serve`` over HTTP.
    """

    @abstractmethod
    async def upsert_review_state(
        self, user_id: str, document_id: str, unit_id: str, state: ReviewState
    ) -> datetime:
        pass

    @abstractmethod
    async def upsert_document(self, user_id: str, document: Document) -> datetime:
        pass

    @abstractmethod
    async def upsert_stats(
        self, user_id: str, document_id: str, stats: DocumentStats
    ) -> datetime:
        pass

    @abstractmethod
    async def fetch_all(self, user_id: str) -> list[RemoteRecord]:
        """Fetch every record (documents, review states, stats) for a user."""
        pass

    @abstractmethod
    def subscribe(self, user_id: str) -> Subscription:
        """Open a live feed of the user's changed records."""
        pass

    @abstractmethod
    async def delete_document(self, user_id: str, document_id: str) -> None:
        """Delete a document with its review states and stats."""
        pass

    @abstractmethod
    async def fetch_group_ids(self, user_id: str) -> list[str]:
        pass

    @abstractmethod
    async def upsert_shared_progress(
        self,
        group_id: str,
        user_id: str,
        document_title: str,
        unit_id: str,
        mastered: bool,
    ) -> None:
        """Idempotent upsert of one user's mastery flag for one group."""
        pass

    @abstractmethod
    async def delete_shared_progress(
        self, group_id: str, user_id: str, document_title: str
    ) -> None:
        pass

    @abstractmethod
    async def update_profile(self, user_id: str, profile: dict[str, Any]) -> None:
        pass

    async def upsert_fanout(
        self,
        group_ids: list[str],
        user_id: str,
        document_title: str,
        unit_id: str,
        mastered: bool,
    ) -> None:
        """
        Mirror one mastery flag into every group, one independent upsert each.

        All upserts run concurrently. Failures are collected into a single
        FanoutError; groups that succeeded keep their write.
        """
        if not group_ids:
            return

        results = await asyncio.gather(
            *(
                self.upsert_shared_progress(gid, user_id, document_title, unit_id, mastered)
                for gid in group_ids
            ),
            return_exceptions=True,
        )

        failures: dict[str, BaseException] = {}
        succeeded: list[str] = []
        for gid, result in zip(group_ids, results):
            if isinstance(result, BaseException):
                failures[gid] = result
            else:
                succeeded.append(gid)

        if failures:
            raise FanoutError(failures, succeeded)
        logger.debug(f"[fanout] {unit_id} mastered={mastered} -> {len(succeeded)} group(s)")

    async def delete_shared_progress_fanout(
        self, group_ids: list[str], user_id: str, document_title: str
    ) -> None:
        results = await asyncio.gather(
            *(self.delete_shared_progress(gid, user_id, document_title) for gid in group_ids),
            return_exceptions=True,
        )
        failures = {
            gid: r for gid, r in zip(group_ids, results) if isinstance(r, BaseException)
        }
        if failures:
            succeeded = [gid for gid in group_ids if gid not in failures]
            raise FanoutError(failures, succeeded)

    async def close(self) -> None:
        return None
