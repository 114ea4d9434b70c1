"""
Tests for the change feed and the view reducer.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from pairchat.core.exceptions import SubscriptionLost
from pairchat.core.realtime import (
    ChangeEvent,
    ChangeFeed,
    ViewState,
    apply_event,
    merge_records,
    merge_snapshot,
    resync,
)
from pairchat.schemas.message import MessageRecord

BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def record(id: str, offset: int = 0, revision: int = 1, conversation_id: str = "conv", **kwargs) -> MessageRecord:
    return MessageRecord(
        id=id,
        conversation_id=conversation_id,
        sender_id=kwargs.pop("sender_id", "alice"),
        content=kwargs.pop("content", f"message {id}"),
        revision=revision,
        created_at=BASE_TIME + timedelta(seconds=offset),
        **kwargs,
    )


class TestChangeFeed:
    """Fan-out, loss and lifecycle of subscriptions."""

    async def test_publish_reaches_subscribers_of_that_conversation_only(self):
        feed = ChangeFeed(queue_size=4)
        sub = feed.subscribe("conv", "alice")
        other = feed.subscribe("other", "alice")

        delivered = feed.publish(ChangeEvent.inserted(record("m1")))

        assert delivered == 1
        event = await asyncio.wait_for(sub.get(), timeout=1)
        assert event.message_id == "m1"
        assert other._queue.empty()

    async def test_events_arrive_in_publish_order(self):
        feed = ChangeFeed(queue_size=8)
        sub = feed.subscribe("conv", "bob")

        for i in range(3):
            feed.publish(ChangeEvent.inserted(record(f"m{i}", offset=i)))

        ids = [(await sub.get()).message_id for _ in range(3)]
        assert ids == ["m0", "m1", "m2"]

    async def test_overflow_marks_subscription_lost(self):
        feed = ChangeFeed(queue_size=2)
        sub = feed.subscribe("conv", "bob")

        for i in range(3):
            feed.publish(ChangeEvent.inserted(record(f"m{i}", offset=i)))

        assert sub.lost is True
        assert feed.subscriber_count("conv") == 0
        assert feed.is_viewing("conv", "bob") is False
        with pytest.raises(SubscriptionLost):
            await sub.get()

    async def test_blocked_reader_is_woken_by_loss(self):
        feed = ChangeFeed(queue_size=1)
        sub = feed.subscribe("conv", "bob")
        feed.publish(ChangeEvent.inserted(record("m0")))
        assert (await sub.get()).message_id == "m0"

        reader = asyncio.create_task(sub.get())
        await asyncio.sleep(0)
        feed.publish(ChangeEvent.inserted(record("m1")))
        feed.publish(ChangeEvent.inserted(record("m2")))

        with pytest.raises(SubscriptionLost):
            await asyncio.wait_for(reader, timeout=1)

    async def test_close_ends_iteration(self):
        feed = ChangeFeed(queue_size=4)
        sub = feed.subscribe("conv", "alice")
        feed.publish(ChangeEvent.inserted(record("m1")))
        feed.unsubscribe(sub)

        received = [event.message_id async for event in sub]

        assert received == ["m1"]
        assert feed.subscriber_count("conv") == 0

    async def test_is_viewing(self):
        feed = ChangeFeed(queue_size=4)
        sub = feed.subscribe("conv", "alice")

        assert feed.is_viewing("conv", "alice") is True
        assert feed.is_viewing("conv", "bob") is False

        feed.unsubscribe(sub)
        assert feed.is_viewing("conv", "alice") is False


class TestReducer:
    """Pure merge rules for a view's local record set."""

    def test_merge_keeps_unique_ids_in_order(self):
        state = merge_records(ViewState(), [record("b", offset=2), record("a", offset=1)])
        state = merge_records(state, [record("a", offset=1), record("c", offset=3)])

        assert [r.id for r in state.records] == ["a", "b", "c"]

    def test_higher_revision_wins_either_way(self):
        newer = record("a", revision=3, content="edited")
        older = record("a", revision=2, content="stale")

        state = merge_records(ViewState(), [newer])
        state = merge_records(state, [older])

        assert state.get("a").content == "edited"

    def test_delete_event_removes_and_blocks_reinsertion(self):
        state = merge_records(ViewState(), [record("a"), record("b", offset=1)])

        state = apply_event(state, ChangeEvent.deleted("conv", "a"))
        state = merge_snapshot(state, [record("a"), record("b", offset=1)])

        assert [r.id for r in state.records] == ["b"]

    def test_snapshot_does_not_undo_newer_events(self):
        state = apply_event(ViewState(), ChangeEvent.updated(record("a", revision=2, content="edited")))

        state = merge_snapshot(state, [record("a", revision=1), record("b", offset=1)])

        assert state.get("a").content == "edited"
        assert [r.id for r in state.records] == ["a", "b"]

    def test_resync_drops_records_missing_from_snapshot(self):
        state = merge_records(ViewState(), [record("a"), record("gone", offset=1)])

        state = resync(state, [record("a"), record("new", offset=2)])

        assert [r.id for r in state.records] == ["a", "new"]

    def test_resync_keeps_newer_local_copy(self):
        state = merge_records(ViewState(), [record("a", revision=4, content="local")])

        state = resync(state, [record("a", revision=3, content="snapshot")])

        assert state.get("a").content == "local"

    def test_apply_event_is_idempotent(self):
        event = ChangeEvent.inserted(record("a"))
        once = apply_event(ViewState(), event)
        twice = apply_event(once, event)
        assert once == twice
