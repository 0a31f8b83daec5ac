import asyncio
import logging
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from reciter.domain.constants import (
    DEFAULT_MIRROR_URL,
    MAX_RETRY_DELAY,
    POLL_INTERVAL,
    REQUEST_TIMEOUT,
)
from reciter.domain.exceptions import MirrorError
from reciter.domain.interfaces import RemoteMirror, Subscription
from reciter.domain.models import Document, DocumentStats, RemoteRecord, ReviewState
from reciter.domain.serialization import (
    document_to_dict,
    parse_timestamp,
    record_from_dict,
    review_state_to_dict,
    stats_to_dict,
)


def _seg(value: str) -> str:
    return quote(value, safe="")


class PollingSubscription(Subscription):
    """
    Live feed built on the server's change cursor, polled every ``interval`` seconds.

    A failed poll keeps the cursor and is retried after a growing delay
    (capped at ``max_backoff``), so a transient outage delays records but
    never drops them.
    """

    def __init__(
        self,
        mirror: "HttpRemoteMirror",
        user_id: str,
        interval: float = POLL_INTERVAL,
        max_backoff: float = MAX_RETRY_DELAY,
    ):
        self.user_id = user_id
        self.interval = interval
        self.max_backoff = max_backoff
        self._mirror = mirror
        self._cursor: int | None = None
        self._closed = False
        self._wake = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> None:
        if self._cursor is None:
            # Start at the tail: history is covered by the caller's snapshot
            _, self._cursor = await self._mirror.changes_since(self.user_id, None)

    async def _iterate(self) -> AsyncIterator[RemoteRecord]:
        await self.open()
        delay = self.interval
        while not self._closed:
            try:
                records, cursor = await self._mirror.changes_since(self.user_id, self._cursor)
            except MirrorError as e:
                self._mirror.logger.warning(
                    f"Poll for {self.user_id} failed, retrying in {delay:.2f}s: {e}"
                )
                await self._pause(delay)
                delay = min(delay * 2, max(self.max_backoff, self.interval))
                continue
            delay = self.interval
            self._cursor = cursor
            for record in records:
                if self._closed:
                    return
                yield record
            if not records:
                await self._pause(self.interval)

    async def _pause(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def close(self) -> None:
        self._closed = True
        self._wake.set()


class HttpRemoteMirror(RemoteMirror):
    """Adapter for the mirror served by ``reciter serve`` (JSON over HTTP)."""

    def __init__(
        self,
        url: str = DEFAULT_MIRROR_URL,
        timeout: float = REQUEST_TIMEOUT,
        poll_interval: float = POLL_INTERVAL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.logger = logging.getLogger(__name__)
        self.url = url.rstrip("/")
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.logger.debug(f"HttpRemoteMirror initialized with url={self.url}")

    def _get_client(self) -> httpx.AsyncClient:
        # Reuse one client (and its connection pool) per mirror
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.url, timeout=self.timeout, transport=self._transport
            )
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        try:
            resp = await self._get_client().request(method, path, json=json, params=params)
            resp.raise_for_status()
            if not resp.content:
                return None
            return resp.json()
        except httpx.HTTPStatusError as e:
            detail = e.response.text[:200]
            self.logger.error(f"Mirror call {method} {path} failed: {e.response.status_code}")
            raise MirrorError(
                f"{method} {path} -> {e.response.status_code}: {detail}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            self.logger.error(f"Mirror call {method} {path} failed: {e}")
            raise MirrorError(f"{method} {path} failed: {e}") from e

    async def is_responsive(self) -> bool:
        """Check that the mirror answers its health endpoint."""
        try:
            data = await self._request("GET", "/health")
        except MirrorError:
            return False
        return isinstance(data, dict) and data.get("status") == "ok"

    def _updated_at(self, data: Any) -> datetime:
        updated_at = parse_timestamp((data or {}).get("updated_at"))
        if updated_at is None:
            raise MirrorError("mirror response is missing updated_at")
        return updated_at

    # ---------- Records ----------

    async def upsert_review_state(
        self, user_id: str, document_id: str, unit_id: str, state: ReviewState
    ) -> datetime:
        data = await self._request(
            "PUT",
            f"/users/{_seg(user_id)}/documents/{_seg(document_id)}/units/{_seg(unit_id)}",
            json=review_state_to_dict(state),
        )
        return self._updated_at(data)

    async def upsert_document(self, user_id: str, document: Document) -> datetime:
        data = await self._request(
            "PUT",
            f"/users/{_seg(user_id)}/documents/{_seg(document.id)}",
            json=document_to_dict(document),
        )
        return self._updated_at(data)

    async def upsert_stats(
        self, user_id: str, document_id: str, stats: DocumentStats
    ) -> datetime:
        data = await self._request(
            "PUT",
            f"/users/{_seg(user_id)}/documents/{_seg(document_id)}/stats",
            json=stats_to_dict(stats),
        )
        return self._updated_at(data)

    async def fetch_all(self, user_id: str) -> list[RemoteRecord]:
        data = await self._request("GET", f"/users/{_seg(user_id)}/records")
        return [record_from_dict(r) for r in (data or {}).get("records", [])]

    async def changes_since(
        self, user_id: str, cursor: int | None
    ) -> tuple[list[RemoteRecord], int]:
        params = {"since": cursor} if cursor is not None else None
        data = await self._request("GET", f"/users/{_seg(user_id)}/changes", params=params)
        data = data or {}
        records = [record_from_dict(r) for r in data.get("records", [])]
        return records, int(data.get("cursor", cursor or 0))

    def subscribe(self, user_id: str) -> PollingSubscription:
        return PollingSubscription(self, user_id, self.poll_interval)

    async def delete_document(self, user_id: str, document_id: str) -> None:
        await self._request("DELETE", f"/users/{_seg(user_id)}/documents/{_seg(document_id)}")

    # ---------- Groups / profile ----------

    async def fetch_group_ids(self, user_id: str) -> list[str]:
        data = await self._request("GET", f"/users/{_seg(user_id)}/groups")
        return list((data or {}).get("group_ids", []))

    async def upsert_shared_progress(
        self,
        group_id: str,
        user_id: str,
        document_title: str,
        unit_id: str,
        mastered: bool,
    ) -> None:
        await self._request(
            "PUT",
            f"/groups/{_seg(group_id)}/progress",
            json={
                "user_id": user_id,
                "document_title": document_title,
                "unit_id": unit_id,
                "mastered": mastered,
            },
        )

    async def delete_shared_progress(
        self, group_id: str, user_id: str, document_title: str
    ) -> None:
        await self._request(
            "DELETE",
            f"/groups/{_seg(group_id)}/progress",
            params={"user_id": user_id, "document_title": document_title},
        )

    async def update_profile(self, user_id: str, profile: dict[str, Any]) -> None:
        await self._request("PATCH", f"/users/{_seg(user_id)}/profile", json=profile)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
