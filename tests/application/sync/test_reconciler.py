import asyncio
from collections.abc import AsyncIterator
from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from reciter.application.importer import import_document
from reciter.application.review_service import ReviewService
from reciter.application.state import AppState
from reciter.application.sync.reconciler import SyncReconciler
from reciter.domain.exceptions import FanoutError, MirrorError
from reciter.domain.interfaces import Subscription
from reciter.domain.models import RecordKind, RemoteRecord, StateBlob
from reciter.domain.serialization import review_state_to_dict
from reciter.infrastructure.adapters.memory_mirror import InMemoryRemoteMirror

USER = "user-1"
UNIT = "romans-8-v1-2"


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def new_device(make_state, romans_parsed, now):
    """A device that has imported Romans 8 locally."""

    def factory() -> AppState:
        blob, _ = import_document(StateBlob(), romans_parsed, now=now)
        return make_state(blob)

    return factory


@pytest.fixture
def mirror(clock):
    return InMemoryRemoteMirror(clock=clock)


@pytest.fixture
def device(new_device):
    return new_device()


@pytest.fixture
def reconciler(mirror, device, clock):
    return SyncReconciler(mirror, device, USER, clock=clock, debounce_seconds=0.01)


def _remote_state(state, updated_at, **changes) -> RemoteRecord:
    return RemoteRecord(
        kind=RecordKind.REVIEW_STATE,
        user_id=USER,
        document_id="romans-8",
        unit_id=state.id,
        payload=review_state_to_dict(replace(state, **changes)),
        updated_at=updated_at,
    )


# --- Push-on-write / ledger ---


@pytest.mark.asyncio
async def test_push_realigns_ledger_to_server_timestamp(reconciler, device, mirror):
    state = device.blob.review_state("romans-8", UNIT)
    assert await reconciler.push_review_state("romans-8", state)

    stored = (await mirror.fetch_all(USER))[0]
    assert reconciler.ledger.get(UNIT) >= stored.updated_at


@pytest.mark.asyncio
async def test_older_remote_value_is_ignored(reconciler, device, clock):
    local = device.blob.review_state("romans-8", UNIT)
    await reconciler.push_review_state("romans-8", local)
    t1 = reconciler.ledger.get(UNIT)

    stale = _remote_state(local, t1 - timedelta(seconds=30), reps=9)
    assert not reconciler.apply_remote(stale)
    assert device.blob.review_state("romans-8", UNIT) == local
    assert reconciler.ledger.get(UNIT) == t1


@pytest.mark.asyncio
async def test_newer_remote_value_is_applied(reconciler, device):
    local = device.blob.review_state("romans-8", UNIT)
    await reconciler.push_review_state("romans-8", local)
    t2 = reconciler.ledger.get(UNIT) + timedelta(seconds=30)

    assert reconciler.apply_remote(_remote_state(local, t2, reps=9))
    assert device.blob.review_state("romans-8", UNIT).reps == 9
    assert reconciler.ledger.get(UNIT) == t2


@pytest.mark.asyncio
async def test_failed_push_keeps_local_change(reconciler, device, mirror):
    mirror.upsert_review_state = AsyncMock(side_effect=MirrorError("offline"))
    changed = replace(device.blob.review_state("romans-8", UNIT), reps=4)
    device.commit(device.blob.with_review_state("romans-8", changed))

    assert not await reconciler.push_review_state("romans-8", changed)
    assert device.blob.review_state("romans-8", UNIT).reps == 4
    # optimistic entry stays, so an older echo cannot clobber the edit
    assert UNIT in reconciler.ledger


class HeldAckMirror(InMemoryRemoteMirror):
    """Stores review states immediately but holds each acknowledgement until released."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.held: list[asyncio.Event] = []

    async def upsert_review_state(self, user_id, document_id, unit_id, state):
        updated_at = await super().upsert_review_state(user_id, document_id, unit_id, state)
        release = asyncio.Event()
        self.held.append(release)
        await release.wait()
        return updated_at


@pytest.mark.asyncio
async def test_ledger_keeps_newest_stamp_when_acks_arrive_out_of_order(device, clock):
    mirror = HeldAckMirror(clock=clock)
    reconciler = SyncReconciler(mirror, device, USER, clock=clock)
    state = device.blob.review_state("romans-8", UNIT)

    first = asyncio.create_task(reconciler.push_review_state("romans-8", replace(state, reps=1)))
    await settle()
    clock.advance(seconds=1)
    second = asyncio.create_task(reconciler.push_review_state("romans-8", replace(state, reps=2)))
    await settle()
    assert len(mirror.held) == 2

    # the later write is acknowledged first
    mirror.held[1].set()
    assert await second
    mirror.held[0].set()
    assert await first

    (stored,) = await mirror.fetch_all(USER)
    assert stored.payload["reps"] == 2
    assert reconciler.ledger.get(UNIT) == stored.updated_at

    # the first write's echo is older than the ledger and changes nothing
    stale = _remote_state(state, stored.updated_at - timedelta(seconds=1), reps=1)
    assert not reconciler.apply_remote(stale)


# --- Pull ---


@pytest.mark.asyncio
async def test_pull_brings_a_fresh_device_up_to_date(mirror, clock, new_device, make_state):
    device_a = new_device()
    a = SyncReconciler(mirror, device_a, USER, clock=clock)
    service_a = ReviewService(device_a, a, clock=clock)
    await a.push_document_with_states("romans-8")
    await service_a.grade("romans-8", UNIT, 1.0)

    device_b = make_state(StateBlob())
    b = SyncReconciler(mirror, device_b, USER, clock=clock)
    applied = await b.pull()

    assert applied == len(await mirror.fetch_all(USER))
    assert device_b.blob.review_state("romans-8", UNIT).reps == 1
    assert device_b.blob.documents["romans-8"].title == "Romans 8"
    assert device_b.blob.stats["romans-8"].streak == 1

    # a second pull finds nothing newer
    assert await b.pull() == 0


@pytest.mark.asyncio
async def test_pull_failure_leaves_state_alone(reconciler, device, mirror):
    before = device.blob
    mirror.fetch_all = AsyncMock(side_effect=MirrorError("timeout"))
    assert await reconciler.pull() == 0
    assert device.blob is before


@pytest.mark.asyncio
async def test_malformed_remote_record_is_skipped(reconciler, device, now):
    bad = RemoteRecord(
        kind=RecordKind.REVIEW_STATE,
        user_id=USER,
        document_id="romans-8",
        unit_id=None,
        payload={},
        updated_at=now + timedelta(days=1),
    )
    before = device.blob
    assert not reconciler.apply_remote(bad)
    assert device.blob is before


# --- Live updates ---


@pytest.mark.asyncio
async def test_live_update_reaches_other_device(mirror, clock, new_device):
    device_a = new_device()
    device_b = new_device()
    a = SyncReconciler(mirror, device_a, USER, clock=clock)
    b = SyncReconciler(mirror, device_b, USER, clock=clock)

    async with a, b:
        await settle()
        clock.advance(seconds=5)
        await ReviewService(device_a, a, clock=clock).grade("romans-8", UNIT, 1.0)
        await settle()

        assert device_b.blob.review_state("romans-8", UNIT).reps == 1
        assert device_b.blob.review_state("romans-8", UNIT) == device_a.blob.review_state(
            "romans-8", UNIT
        )


@pytest.mark.asyncio
async def test_own_echo_is_suppressed(reconciler, device, mirror):
    commits = []
    device.add_listener(lambda prev, cur: commits.append(cur))

    async with reconciler:
        await settle()
        assert mirror.subscriber_count(USER) == 1
        state = replace(device.blob.review_state("romans-8", UNIT), reps=2)
        device.commit(device.blob.with_review_state("romans-8", state))
        await reconciler.push_review_state("romans-8", state)
        await settle()

    # only the local commit; the echo carried nothing newer
    assert len(commits) == 1


@pytest.mark.asyncio
async def test_subscription_released_on_stop(reconciler, mirror):
    await reconciler.start()
    await settle()
    assert reconciler.live
    assert mirror.subscriber_count(USER) == 1

    await reconciler.stop()
    assert not reconciler.live
    assert mirror.subscriber_count(USER) == 0


class FailingSubscription(Subscription):
    def __init__(self):
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def _iterate(self) -> AsyncIterator[RemoteRecord]:
        raise MirrorError("connection reset")
        yield  # pragma: no cover

    async def close(self) -> None:
        self._closed = True


@pytest.mark.asyncio
async def test_subscription_released_when_feed_fails(reconciler, mirror, caplog):
    failing = FailingSubscription()
    mirror.subscribe = MagicMock(return_value=failing)

    await reconciler.start()
    await settle()

    assert failing.closed
    assert "connection reset" in caplog.text
    # still retrying in the background until stopped
    assert reconciler.live
    await reconciler.stop()
    assert not reconciler.live
    assert mirror.subscribe.call_count == 1


@pytest.mark.asyncio
async def test_feed_reopens_and_catches_up_after_failure(mirror, device, clock):
    failing = FailingSubscription()
    real_subscribe = mirror.subscribe
    feeds = []

    def subscribe(user_id):
        feeds.append(user_id)
        return failing if len(feeds) == 1 else real_subscribe(user_id)

    mirror.subscribe = subscribe
    reconciler = SyncReconciler(mirror, device, USER, clock=clock, resubscribe_delay=0.05)
    state = device.blob.review_state("romans-8", UNIT)

    await reconciler.start()
    await settle()
    assert failing.closed

    # written while the feed is down: picked up by the pull after reopening
    clock.advance(seconds=5)
    await mirror.upsert_review_state(USER, "romans-8", UNIT, replace(state, reps=5))
    await asyncio.sleep(0.2)
    assert len(feeds) == 2
    assert reconciler.live
    assert mirror.subscriber_count(USER) == 1
    assert device.blob.review_state("romans-8", UNIT).reps == 5

    # and the reopened feed delivers new writes again
    clock.advance(seconds=5)
    await mirror.upsert_review_state(USER, "romans-8", UNIT, replace(state, reps=7))
    await settle()
    assert device.blob.review_state("romans-8", UNIT).reps == 7

    await reconciler.stop()
    assert mirror.subscriber_count(USER) == 0


@pytest.mark.asyncio
async def test_write_during_initial_pull_is_delivered(mirror, device, clock):
    state = device.blob.review_state("romans-8", UNIT)
    snapshot = mirror.fetch_all

    async def fetch_all_then_other_device_writes(user_id):
        records = await snapshot(user_id)
        clock.advance(seconds=5)
        await mirror.upsert_review_state(USER, "romans-8", UNIT, replace(state, reps=9))
        return records

    mirror.fetch_all = fetch_all_then_other_device_writes
    async with SyncReconciler(mirror, device, USER, clock=clock):
        await settle()
        assert device.blob.review_state("romans-8", UNIT).reps == 9


# --- Groups ---


class FlakyGroupMirror(InMemoryRemoteMirror):
    def __init__(self, failing: set[str], **kwargs):
        super().__init__(**kwargs)
        self.failing = failing

    async def upsert_shared_progress(self, group_id, user_id, document_title, unit_id, mastered):
        if group_id in self.failing:
            raise MirrorError(f"{group_id} rejected the write")
        await super().upsert_shared_progress(
            group_id, user_id, document_title, unit_id, mastered
        )


@pytest.mark.asyncio
async def test_fanout_partial_failure_keeps_successful_groups(clock):
    mirror = FlakyGroupMirror({"g2"}, clock=clock)
    for gid in ("g1", "g2", "g3"):
        mirror.add_member(gid, USER)

    with pytest.raises(FanoutError) as exc:
        await mirror.upsert_fanout(["g1", "g2", "g3"], USER, "Romans 8", UNIT, True)

    assert set(exc.value.failures) == {"g2"}
    assert sorted(exc.value.succeeded) == ["g1", "g3"]
    assert mirror.shared_progress[("g1", USER, "Romans 8", UNIT)] is True
    assert mirror.shared_progress[("g3", USER, "Romans 8", UNIT)] is True
    assert ("g2", USER, "Romans 8", UNIT) not in mirror.shared_progress


@pytest.mark.asyncio
async def test_reconciler_reports_fanout_failure(clock, device):
    mirror = FlakyGroupMirror({"g1"}, clock=clock)
    mirror.add_member("g1", USER)
    mirror.add_member("g2", USER)
    reconciler = SyncReconciler(mirror, device, USER, clock=clock)

    assert not await reconciler.push_shared_progress("Romans 8", UNIT, True)
    assert ("g2", USER, "Romans 8", UNIT) in mirror.shared_progress


@pytest.mark.asyncio
async def test_sync_all_mastered(reconciler, device, mirror):
    mirror.add_member("g1", USER)
    state = replace(device.blob.review_state("romans-8", UNIT), mastered=True)
    device.commit(device.blob.with_review_state("romans-8", state))

    assert await reconciler.sync_all_mastered() == 1
    assert mirror.group_progress("g1") == [
        {"user_id": USER, "document_title": "Romans 8", "unit_id": UNIT, "mastered": True}
    ]


@pytest.mark.asyncio
async def test_delete_document_clears_mirror_and_groups(reconciler, device, mirror):
    mirror.add_member("g1", USER)
    await reconciler.push_document_with_states("romans-8")
    await mirror.upsert_shared_progress("g1", USER, "Romans 8", UNIT, True)

    assert await reconciler.delete_document("romans-8", "Romans 8")
    assert await mirror.fetch_all(USER) == []
    assert mirror.group_progress("g1") == []


# --- Profile ---


@pytest.mark.asyncio
async def test_settings_change_is_debounced_to_profile(reconciler, device, mirror):
    async with reconciler:
        device.commit(device.blob.with_settings({"font_size": 18}))
        device.commit(device.blob.with_settings({"font_size": 20}))
        await asyncio.sleep(0.05)
        assert mirror.profiles[USER]["settings"] == {"font_size": 20}


@pytest.mark.asyncio
async def test_stop_flushes_pending_profile_sync(mirror, device, clock):
    reconciler = SyncReconciler(mirror, device, USER, clock=clock, debounce_seconds=60)
    await reconciler.start()
    device.commit(device.blob.with_settings({"theme": "dark"}))
    assert USER not in mirror.profiles

    await reconciler.stop()
    assert mirror.profiles[USER]["settings"] == {"theme": "dark"}
