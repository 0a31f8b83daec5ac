"""
Sync Reconciler: keeps the local StateBlob eventually consistent with the mirror.

Three flows share one LocalWriteLedger:
1. Push-on-write: the ledger is advanced to "now" before the network write and
   to the server's ``updated_at`` after it succeeds.
2. Pull-on-start: fetch every record once; apply those newer than the ledger.
3. Live updates: records from the subscription go through the same rule. The
   feed is opened before the pull and reopened (followed by a fresh pull)
   after it fails.

Conflicts are settled by whole-record timestamps (last writer wins). Two
devices editing the same unit within one round trip can lose one of the edits;
in exchange there is no coordination protocol at all.

Local state is authoritative until a newer remote timestamp says otherwise, so
every network failure here is logged and reported through the return value,
never raised into the review flow.
"""

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from reciter.application.state import AppState
from reciter.application.sync.apply import apply_record
from reciter.application.sync.debounce import Debouncer
from reciter.application.sync.ledger import LocalWriteLedger
from reciter.domain.constants import DEBOUNCE_SECONDS, MAX_RETRY_DELAY, RESUBSCRIBE_DELAY
from reciter.domain.exceptions import FanoutError
from reciter.domain.interfaces import RemoteMirror, Subscription
from reciter.domain.models import (
    Document,
    RemoteRecord,
    ReviewState,
    StateBlob,
    document_key,
    review_state_key,
    stats_key,
)
from reciter.domain.serialization import format_timestamp

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncReconciler:
    """
    Args:
        mirror: The remote mirror port.
        state: The live application state; remote changes are committed into it.
        user_id: Owner of the synced records.
        ledger: Echo-suppression ledger for this session. A fresh one is created
            when omitted; never share one between unrelated sessions.
        clock: Injectable source of "now" for optimistic ledger entries.
        debounce_seconds: Quiet period before settings are pushed to the profile.
        resubscribe_delay: First wait before reopening a failed live feed; doubled
            per failed attempt up to a ceiling.
    """

    def __init__(
        self,
        mirror: RemoteMirror,
        state: AppState,
        user_id: str,
        ledger: LocalWriteLedger | None = None,
        clock: Callable[[], datetime] | None = None,
        debounce_seconds: float = DEBOUNCE_SECONDS,
        resubscribe_delay: float = RESUBSCRIBE_DELAY,
    ):
        self.mirror = mirror
        self.state = state
        self.user_id = user_id
        self.ledger = ledger if ledger is not None else LocalWriteLedger()
        self.group_ids: list[str] = []
        self._clock = clock or _utcnow
        self._profile_debouncer = Debouncer(debounce_seconds, self._push_profile)
        self._resubscribe_delay = resubscribe_delay
        self._consumer: asyncio.Task | None = None
        self._subscription: Subscription | None = None
        self._remove_listener: Callable[[], None] | None = None

    # ---------- Session lifecycle ----------

    async def __aenter__(self) -> "SyncReconciler":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    @property
    def live(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    async def start(self) -> None:
        """Session start: load groups, open the live feed, then pull everything once.

        The feed is opened before the snapshot is taken, so a write landing
        while the pull is in flight arrives through the feed instead of being
        lost between the two.
        """
        if self._remove_listener is None:
            self._remove_listener = self.state.add_listener(self._on_commit)
        await self.ensure_group_ids()
        if self.live:
            await self.pull()
            return
        subscription = await self._open_feed()
        await self.pull()
        self._consumer = asyncio.get_running_loop().create_task(self._consume(subscription))

    async def stop(self) -> None:
        """Session end: release the live feed and flush a pending profile sync."""
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None

        consumer, self._consumer = self._consumer, None
        if consumer is not None and not consumer.done():
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer

        if self._subscription is not None and not self._subscription.closed:
            await self._subscription.close()
        self._subscription = None

        await self._profile_debouncer.flush()

    async def _open_feed(self) -> Subscription | None:
        subscription = self.mirror.subscribe(self.user_id)
        try:
            await subscription.open()
        except Exception as e:
            logger.error(f"Could not open live update feed for {self.user_id}: {e}")
            await subscription.close()
            return None
        self._subscription = subscription
        return subscription

    async def _consume(self, subscription: Subscription | None) -> None:
        delay = self._resubscribe_delay
        while True:
            if subscription is not None:
                try:
                    async with subscription:
                        async for record in subscription:
                            self.apply_remote(record)
                            delay = self._resubscribe_delay
                    return
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Live update feed for {self.user_id} failed: {e}")
                finally:
                    self._subscription = None

            logger.info(f"Reopening live update feed for {self.user_id} in {delay:.2f}s")
            await asyncio.sleep(delay)
            delay = min(delay * 2, max(MAX_RETRY_DELAY, self._resubscribe_delay))
            subscription = await self._open_feed()
            if subscription is not None:
                # Catch up on whatever was written while the feed was down
                await self.pull()

    # ---------- Push-on-write ----------

    async def _write(
        self, key: str, what: str, write: Callable[[], Awaitable[datetime]]
    ) -> bool:
        # Optimistic entry first, so an echo arriving mid-flight is ignored
        self.ledger.advance(key, self._clock())
        try:
            updated_at = await write()
        except Exception as e:
            logger.error(f"Sync error ({what}): {e}")
            return False
        self.ledger.advance(key, updated_at)
        logger.debug(f"[push] {what} @ {format_timestamp(updated_at)}")
        return True

    async def push_review_state(self, document_id: str, state: ReviewState) -> bool:
        return await self._write(
            review_state_key(state.id),
            f"review state {state.id}",
            lambda: self.mirror.upsert_review_state(self.user_id, document_id, state.id, state),
        )

    async def push_document(self, document: Document) -> bool:
        return await self._write(
            document_key(document.id),
            f"document {document.id}",
            lambda: self.mirror.upsert_document(self.user_id, document),
        )

    async def push_stats(self, document_id: str) -> bool:
        stats = self.state.blob.stats.get(document_id)
        if stats is None:
            return True
        return await self._write(
            stats_key(document_id),
            f"stats {document_id}",
            lambda: self.mirror.upsert_stats(self.user_id, document_id, stats),
        )

    async def push_document_with_states(self, document_id: str) -> bool:
        """Push a document, all of its review states and its stats."""
        blob = self.state.blob
        document = blob.documents.get(document_id)
        if document is None:
            return False
        ok = await self.push_document(document)
        for review_state in blob.review_states.get(document_id, {}).values():
            ok = await self.push_review_state(document_id, review_state) and ok
        ok = await self.push_stats(document_id) and ok
        return ok

    # ---------- Group fan-out ----------

    async def ensure_group_ids(self) -> list[str]:
        if self.group_ids:
            return self.group_ids
        try:
            self.group_ids = list(await self.mirror.fetch_group_ids(self.user_id))
        except Exception as e:
            logger.error(f"Failed to fetch groups for {self.user_id}: {e}")
        return self.group_ids

    async def push_shared_progress(
        self, document_title: str, unit_id: str, mastered: bool
    ) -> bool:
        group_ids = await self.ensure_group_ids()
        if not group_ids:
            return True
        try:
            await self.mirror.upsert_fanout(
                group_ids, self.user_id, document_title, unit_id, mastered
            )
        except FanoutError as e:
            logger.error(f"Shared progress sync incomplete for {unit_id}: {e}")
            return False
        except Exception as e:
            logger.error(f"Shared progress sync failed for {unit_id}: {e}")
            return False
        return True

    async def sync_all_mastered(self) -> int:
        """Re-publish every mastered unit to every group. Returns units published."""
        blob = self.state.blob
        published = 0
        for doc_id, document in blob.documents.items():
            for unit_id, review_state in blob.review_states.get(doc_id, {}).items():
                if review_state.mastered:
                    if await self.push_shared_progress(document.title, unit_id, True):
                        published += 1
        return published

    # ---------- Pull / live updates ----------

    def apply_remote(self, record: RemoteRecord) -> bool:
        """
        Apply one remote record if it is newer than this device's ledger entry.

        Returns True when the record was applied.
        """
        key = record.key
        if not self.ledger.should_apply(key, record.updated_at):
            logger.debug(
                f"[pull] skip {key}: {format_timestamp(record.updated_at)} "
                f"<= {format_timestamp(self.ledger.get(key))}"
            )
            return False

        try:
            updated = apply_record(self.state.blob, record)
        except Exception as e:
            logger.warning(f"Ignoring malformed remote record {key}: {e}")
            return False

        self.ledger.advance(key, record.updated_at)
        self.state.commit(updated)
        return True

    async def pull(self) -> int:
        """Fetch the full remote set once and apply what is newer. Returns records applied."""
        try:
            records = await self.mirror.fetch_all(self.user_id)
        except Exception as e:
            logger.error(f"Pull failed for {self.user_id}: {e}")
            return 0

        applied = sum(1 for record in records if self.apply_remote(record))
        logger.info(f"[pull] {applied}/{len(records)} remote record(s) applied")
        return applied

    # ---------- Deletes ----------

    async def delete_document(self, document_id: str, document_title: str) -> bool:
        ok = True
        try:
            await self.mirror.delete_document(self.user_id, document_id)
        except Exception as e:
            logger.error(f"Failed to delete {document_id} remotely: {e}")
            ok = False

        group_ids = await self.ensure_group_ids()
        if group_ids:
            try:
                await self.mirror.delete_shared_progress_fanout(
                    group_ids, self.user_id, document_title
                )
            except Exception as e:
                logger.error(f"Failed to clear shared progress for {document_title}: {e}")
                ok = False
        return ok

    # ---------- Debounced profile sync ----------

    def _on_commit(self, previous: StateBlob, current: StateBlob) -> None:
        if previous.settings == current.settings:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("[profile] no running loop, settings sync skipped")
            return
        self._profile_debouncer.trigger(dict(current.settings))

    async def _push_profile(self, settings: dict) -> None:
        await self.mirror.update_profile(
            self.user_id,
            {"settings": settings, "last_active": format_timestamp(self._clock())},
        )
