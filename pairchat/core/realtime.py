"""
In-process change feed and the reducer that folds its events into a view.

The message store publishes an event after every committed mutation. Each
open view holds a Subscription (a bounded queue) on the conversation it
shows. A subscriber that falls behind loses its subscription instead of
blocking publishers, and must resubscribe and resync from a snapshot.

The reducer functions at the bottom are pure: a view's local message set is
replaced wholesale by their results.
"""
import asyncio
import enum
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import AsyncIterator, DefaultDict, FrozenSet, Iterable, List, Optional, Set, Tuple

from pairchat.config import settings
from pairchat.core.exceptions import SubscriptionLost
from pairchat.schemas.message import MessageRecord

logger = logging.getLogger(__name__)


class ChangeKind(str, enum.Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    """A committed change to one message."""

    kind: ChangeKind
    conversation_id: str
    message_id: str
    record: Optional[MessageRecord] = None

    @classmethod
    def inserted(cls, record: MessageRecord) -> "ChangeEvent":
        return cls(ChangeKind.INSERT, record.conversation_id, record.id, record)

    @classmethod
    def updated(cls, record: MessageRecord) -> "ChangeEvent":
        return cls(ChangeKind.UPDATE, record.conversation_id, record.id, record)

    @classmethod
    def deleted(cls, conversation_id: str, message_id: str) -> "ChangeEvent":
        return cls(ChangeKind.DELETE, conversation_id, message_id)


_CLOSED = object()


class Subscription:
    """
    A viewer's handle on a conversation's events.

    Iterate with ``async for`` or call ``get()``. Once the subscription is
    lost, reads raise SubscriptionLost; once closed, iteration ends.
    """

    def __init__(self, conversation_id: str, viewer_id: str, maxsize: int):
        self.conversation_id = conversation_id
        self.viewer_id = viewer_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize + 1)
        self._maxsize = maxsize
        self.lost = False
        self.closed = False

    def _offer(self, event: ChangeEvent) -> bool:
        """Enqueue without blocking. Returns False when the buffer is full."""
        if self.closed or self.lost:
            return False
        if self._queue.qsize() >= self._maxsize:
            self.lost = True
            # Wake a reader blocked on get() so it observes the loss
            self._queue.put_nowait(_CLOSED)
            return False
        self._queue.put_nowait(event)
        return True

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            if self._queue.qsize() <= self._maxsize:
                self._queue.put_nowait(_CLOSED)

    async def get(self) -> Optional[ChangeEvent]:
        """
        Wait for the next event.

        Returns:
            The next event, or None once the subscription is closed

        Raises:
            SubscriptionLost: The buffer overflowed and events were dropped
        """
        if self.lost:
            raise SubscriptionLost(f"Subscription to {self.conversation_id} lost")
        if self.closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if self.lost:
            raise SubscriptionLost(f"Subscription to {self.conversation_id} lost")
        if item is _CLOSED:
            return None
        return item

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ChangeEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class ChangeFeed:
    """Fan-out of change events to subscribers, keyed by conversation id."""

    def __init__(self, queue_size: Optional[int] = None):
        self.queue_size = queue_size or settings.subscription_queue_size
        self._subscribers: DefaultDict[str, Set[Subscription]] = defaultdict(set)

    def subscribe(self, conversation_id: str, viewer_id: str) -> Subscription:
        subscription = Subscription(conversation_id, viewer_id, self.queue_size)
        self._subscribers[conversation_id].add(subscription)
        logger.debug(f"Viewer {viewer_id} subscribed to conversation {conversation_id}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        subscribers = self._subscribers.get(subscription.conversation_id)
        if subscribers is not None:
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscribers[subscription.conversation_id]

    def publish(self, event: ChangeEvent) -> int:
        """
        Deliver an event to every subscriber of its conversation.

        Returns:
            Number of subscribers the event was delivered to
        """
        delivered = 0
        for subscription in list(self._subscribers.get(event.conversation_id, ())):
            if subscription._offer(event):
                delivered += 1
            elif subscription.lost:
                logger.warning(
                    f"Subscriber {subscription.viewer_id} fell behind on conversation "
                    f"{event.conversation_id}; dropping its subscription"
                )
                self._subscribers[event.conversation_id].discard(subscription)
        return delivered

    def publish_all(self, events: Iterable[ChangeEvent]) -> None:
        for event in events:
            self.publish(event)

    def is_viewing(self, conversation_id: str, user_id: str) -> bool:
        """Whether the user has a live subscription on the conversation."""
        return any(
            s.viewer_id == user_id and not s.lost and not s.closed
            for s in self._subscribers.get(conversation_id, ())
        )

    def subscriber_count(self, conversation_id: str) -> int:
        return len(self._subscribers.get(conversation_id, ()))


# Process-wide feed shared by the store and every open view
change_feed = ChangeFeed()


# ============================================================================
# View reducer
# ============================================================================

@dataclass(frozen=True)
class ViewState:
    """
    A view's local copy of a conversation's raw records.

    records is kept sorted by (created_at, id) with unique ids. removed_ids
    remembers hard deletions so a late snapshot cannot bring them back.
    """

    records: Tuple[MessageRecord, ...] = ()
    removed_ids: FrozenSet[str] = field(default_factory=frozenset)

    def get(self, message_id: str) -> Optional[MessageRecord]:
        for record in self.records:
            if record.id == message_id:
                return record
        return None


def _newer(current: Optional[MessageRecord], incoming: MessageRecord) -> MessageRecord:
    if current is None or incoming.revision >= current.revision:
        return incoming
    return current


def merge_records(state: ViewState, incoming: Iterable[MessageRecord]) -> ViewState:
    """
    Merge records into the view by id.

    The copy with the higher revision wins; ids removed by a hard delete are
    ignored. The result is re-sorted by (created_at, id).
    """
    by_id = {record.id: record for record in state.records}
    for record in incoming:
        if record.id in state.removed_ids:
            continue
        by_id[record.id] = _newer(by_id.get(record.id), record)
    ordered: List[MessageRecord] = sorted(by_id.values(), key=lambda r: r.sort_key)
    return ViewState(records=tuple(ordered), removed_ids=state.removed_ids)


def apply_event(state: ViewState, event: ChangeEvent) -> ViewState:
    """Fold one change event into the view."""
    if event.kind is ChangeKind.DELETE:
        return ViewState(
            records=tuple(r for r in state.records if r.id != event.message_id),
            removed_ids=state.removed_ids | {event.message_id},
        )
    if event.record is None:
        return state
    return merge_records(state, [event.record])


def merge_snapshot(state: ViewState, snapshot: Iterable[MessageRecord]) -> ViewState:
    """
    Reconcile the view with a freshly fetched snapshot.

    Records already in the view (for example from events that arrived while
    the snapshot was in flight) are kept unless the snapshot holds a newer
    revision.
    """
    return merge_records(state, snapshot)


def resync(state: ViewState, snapshot: Iterable[MessageRecord]) -> ViewState:
    """
    Replace the view with an authoritative snapshot after missed events.

    Records missing from the snapshot were hard-deleted while the view was
    not listening and are dropped.
    """
    snapshot = list(snapshot)
    fresh = merge_records(ViewState(removed_ids=state.removed_ids), snapshot)
    kept_ids = {record.id for record in fresh.records}
    current = [record for record in state.records if record.id in kept_ids]
    return merge_records(fresh, current)
