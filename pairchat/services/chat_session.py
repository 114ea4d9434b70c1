"""
Messaging session controller.

One ChatSession drives one open conversation view for one user:

    Idle -> Loading -> Ready -> (SendingMessage | Editing | ConfirmingDelete) -> Ready
    any -> Closed

It owns the view's local record set (a ViewState), keeps it current from
the change feed, and routes user actions to the store. Each action opens
its own database session from the session factory, so a ChatSession can
live as long as a socket connection.
"""
import asyncio
import enum
import hashlib
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pairchat.config import settings
from pairchat.core.database import AsyncSessionLocal
from pairchat.core.exceptions import (
    InvalidMessage,
    NotFound,
    PermissionDenied,
    SessionStateError,
    SubscriptionLost,
)
from pairchat.core.platform_client import PlatformClient
from pairchat.core.realtime import (
    ChangeEvent,
    ChangeFeed,
    ChangeKind,
    Subscription,
    ViewState,
    apply_event,
    change_feed,
    merge_snapshot,
    resync,
)
from pairchat.schemas.message import DeleteScope, DisplayMessage, MessageRecord
from pairchat.services.conversation_service import ConversationService
from pairchat.services.message_service import MessageService
from pairchat.services.notification_service import NotificationDispatcher, summarize
from pairchat.services.storage_service import MediaUpload, StorageService
from pairchat.services.visibility import project, project_one

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    SENDING_MESSAGE = "sending_message"
    EDITING = "editing"
    CONFIRMING_DELETE = "confirming_delete"
    CLOSED = "closed"


@dataclass(frozen=True)
class ViewUpdate:
    """Something the client rendering this view should react to."""

    kind: str  # inserted | updated | removed | resynced | notification | closed
    conversation_id: Optional[str]
    message: Optional[DisplayMessage] = None
    message_id: Optional[str] = None
    messages: Tuple[DisplayMessage, ...] = ()
    summary: Optional[str] = None


@dataclass(frozen=True)
class EditDraft:
    message_id: str
    text: str


@dataclass(frozen=True)
class DeleteOptions:
    """Deletion choices offered for a message."""

    message_id: str
    for_me: bool = True
    for_everyone: bool = False


Listener = Callable[[ViewUpdate], Awaitable[None]]


class ChatSession:
    """State machine for a single user's open conversation view."""

    def __init__(
        self,
        viewer_id: str,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        *,
        viewer_role: Optional[str] = None,
        feed: Optional[ChangeFeed] = None,
        storage: Optional[StorageService] = None,
        notifier: Optional[NotificationDispatcher] = None,
        platform: Optional[PlatformClient] = None,
        listener: Optional[Listener] = None,
        notifications_enabled: bool = False,
        typing_quiet_interval: Optional[float] = None,
    ):
        """
        Args:
            viewer_id: User owning the view
            session_factory: Factory for per-action database sessions
            viewer_role: Platform role, used by the first-contact gate
            feed: Change feed to subscribe to
            storage: Media storage for outgoing attachments
            notifier: Push dispatcher for recipients without an open view
            platform: Platform client for the permission gate
            listener: Coroutine receiving ViewUpdates
            notifications_enabled: Emit a notification update on inbound messages
            typing_quiet_interval: Seconds of silence before the typing flag clears
        """
        self.viewer_id = viewer_id
        self.viewer_role = viewer_role
        self.session_factory = session_factory or AsyncSessionLocal
        self.feed = feed or change_feed
        self.storage = storage
        self.notifier = notifier
        self.platform = platform
        self.listener = listener
        self.notifications_enabled = notifications_enabled
        self.typing_quiet_interval = (
            typing_quiet_interval if typing_quiet_interval is not None
            else settings.typing_quiet_interval_seconds
        )

        self.conversation_id: Optional[str] = None
        self.peer_id: Optional[str] = None
        self.view = ViewState()
        self.focused = True
        self.edit_draft: Optional[EditDraft] = None
        self.pending_delete: Optional[DeleteOptions] = None
        self.is_typing = False

        self._mode = SessionState.IDLE
        self._subscription: Optional[Subscription] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._typing_handle: Optional[asyncio.TimerHandle] = None
        self._in_flight: Dict[str, asyncio.Future] = {}
        # Bumped whenever the view is torn down, so late results can tell they are stale
        self._generation = 0
        self._attach_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        if self._mode is SessionState.READY and self._in_flight:
            return SessionState.SENDING_MESSAGE
        return self._mode

    @property
    def messages(self) -> List[DisplayMessage]:
        """The view as the viewer sees it."""
        return project(self.view.records, self.viewer_id)

    def _require(self, *modes: SessionState) -> None:
        if self._mode not in modes:
            raise SessionStateError(
                f"Cannot do that while {self.state.value}; expected {', '.join(m.value for m in modes)}"
            )

    def _message_service(self, db: AsyncSession) -> MessageService:
        return MessageService(db, storage=self.storage, notifier=self.notifier, feed=self.feed)

    async def _emit(self, update: ViewUpdate) -> None:
        if self.listener is None:
            return
        try:
            await self.listener(update)
        except Exception:
            logger.exception(f"View listener failed for {self.viewer_id} on {update.kind}")

    # ------------------------------------------------------------------
    # Opening and closing
    # ------------------------------------------------------------------

    async def open_with(self, peer_id: str) -> List[DisplayMessage]:
        """
        Open the view of the conversation with a peer.

        An existing conversation is loaded straight away. For a first contact
        the permission gate runs and the view starts empty; the conversation
        row is only created by the first send.

        Raises:
            PermissionDenied: The peer does not accept first contact from the viewer
            SessionStateError: The session is closed or still loading
        """
        self._require(SessionState.IDLE, SessionState.READY)
        await self._detach()
        self._mode = SessionState.LOADING
        try:
            async with self.session_factory() as db:
                conversation = await ConversationService(db, self.platform).open_direct(
                    self.viewer_id, peer_id, self.viewer_role
                )
                conversation_id = conversation.id if conversation is not None else None
            self.peer_id = peer_id
            if conversation_id is not None:
                await self._attach(conversation_id)
            else:
                self._mode = SessionState.READY
        except Exception:
            await self._detach()
            self._mode = SessionState.IDLE
            raise
        return self.messages

    async def open_conversation(self, conversation_id: str) -> List[DisplayMessage]:
        """
        Open the view of a conversation the viewer takes part in.

        Raises:
            NotFound: Unknown conversation
            PermissionDenied: Viewer is not a participant
        """
        self._require(SessionState.IDLE, SessionState.READY)
        await self._detach()
        self._mode = SessionState.LOADING
        try:
            async with self.session_factory() as db:
                conversation = await ConversationService(db, self.platform).get_for_participant(
                    conversation_id, self.viewer_id
                )
                self.peer_id = conversation.other_participant(self.viewer_id)
            await self._attach(conversation_id)
        except Exception:
            await self._detach()
            self._mode = SessionState.IDLE
            raise
        return self.messages

    async def _fetch_snapshot(self) -> List[MessageRecord]:
        async with self.session_factory() as db:
            return await self._message_service(db).list_raw(self.conversation_id)

    async def _attach(self, conversation_id: str) -> None:
        # Subscribe before the snapshot so nothing committed in between is missed
        self.conversation_id = conversation_id
        self._subscription = self.feed.subscribe(conversation_id, self.viewer_id)
        self.view = merge_snapshot(ViewState(), await self._fetch_snapshot())
        self._mode = SessionState.READY
        await self._mark_read_if_unread()
        self._pump_task = asyncio.create_task(self._pump(self._subscription))
        logger.info(f"{self.viewer_id} opened conversation {conversation_id} ({len(self.view.records)} records)")

    async def _detach(self) -> None:
        self._generation += 1
        self._in_flight.clear()
        self._cancel_typing()
        task, self._pump_task = self._pump_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._subscription is not None:
            self.feed.unsubscribe(self._subscription)
            self._subscription = None
        self.conversation_id = None
        self.peer_id = None
        self.view = ViewState()
        self.edit_draft = None
        self.pending_delete = None

    async def close(self) -> None:
        """Tear down the view. Safe to call more than once."""
        if self._mode is SessionState.CLOSED:
            return
        await self._detach()
        self._mode = SessionState.CLOSED

    # ------------------------------------------------------------------
    # Realtime
    # ------------------------------------------------------------------

    async def _pump(self, subscription: Subscription) -> None:
        while True:
            try:
                event = await subscription.get()
            except SubscriptionLost:
                logger.warning(f"Subscription lost for {self.viewer_id} on {self.conversation_id}; resyncing")
                if not await self._recover():
                    return
                subscription = self._subscription
                continue
            if event is None:
                return
            await self._absorb(event, from_feed=True)

    async def _recover(self) -> bool:
        """Resubscribe and resync from a snapshot, with bounded retries."""
        if self._subscription is not None:
            self.feed.unsubscribe(self._subscription)
        conversation_id = self.conversation_id
        for attempt in range(1, settings.resync_max_attempts + 1):
            self._subscription = self.feed.subscribe(conversation_id, self.viewer_id)
            try:
                snapshot = await self._fetch_snapshot()
            except SQLAlchemyError as e:
                logger.warning(f"Resync attempt {attempt} for {conversation_id} failed: {e}")
                self.feed.unsubscribe(self._subscription)
                self._subscription = None
                await asyncio.sleep(settings.resync_retry_delay_seconds)
                continue
            self.view = resync(self.view, snapshot)
            await self._emit(ViewUpdate("resynced", conversation_id, messages=tuple(self.messages)))
            return True

        logger.error(f"Giving up on conversation {conversation_id} for {self.viewer_id} after failed resyncs")
        await self._detach()
        self._mode = SessionState.CLOSED
        await self._emit(ViewUpdate("closed", conversation_id))
        return False

    def _display(self, record: MessageRecord) -> Optional[DisplayMessage]:
        target = self.view.get(record.reply_to_id) if record.reply_to_id else None
        return project_one(record, self.viewer_id, target)

    async def _absorb(self, event: ChangeEvent, from_feed: bool = False) -> None:
        """Fold an event into the view and tell the listener what changed."""
        before = self.view.get(event.message_id)
        self.view = apply_event(self.view, event)
        after = self.view.get(event.message_id)

        was_shown = before is not None and not before.hidden_for(self.viewer_id)
        display = self._display(after) if after is not None else None

        if display is None:
            if was_shown:
                await self._emit(ViewUpdate("removed", self.conversation_id, message_id=event.message_id))
            return
        if not was_shown:
            await self._emit(ViewUpdate("inserted", self.conversation_id, message=display))
            if (
                from_feed
                and event.kind is ChangeKind.INSERT
                and after.sender_id != self.viewer_id
                and self.notifications_enabled
            ):
                await self._emit(ViewUpdate("notification", self.conversation_id, message=display, summary=summarize(after)))
        elif after.revision != before.revision:
            await self._emit(ViewUpdate("updated", self.conversation_id, message=display))

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    @staticmethod
    def _send_key(text, media, gif_id, reply_to_id) -> str:
        digest = hashlib.sha256(media.data).hexdigest() if media is not None else ""
        return "|".join([text or "", gif_id or "", reply_to_id or "", digest])

    async def send(
        self,
        text: Optional[str] = None,
        media: Optional[MediaUpload] = None,
        gif_id: Optional[str] = None,
        reply_to_id: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> DisplayMessage:
        """
        Send a message from the viewer.

        A send that is identical to one still in flight (same nonce, or same
        content when no nonce is given) joins the in-flight send instead of
        dispatching again.

        Raises:
            SessionStateError: View not ready
            InvalidMessage: Nothing to send
            UploadFailed: Media could not be stored; nothing was sent
            StoreWriteFailed: Message could not be saved
        """
        self._require(SessionState.READY)
        if self.peer_id is None:
            raise SessionStateError("No conversation is open")

        key = nonce or self._send_key(text, media, gif_id, reply_to_id)
        pending = self._in_flight.get(key)
        if pending is not None:
            logger.debug(f"Joining in-flight send {key!r} for {self.viewer_id}")
            return await asyncio.shield(pending)

        task = asyncio.ensure_future(self._dispatch_send(text, media, gif_id, reply_to_id))
        self._in_flight[key] = task
        task.add_done_callback(lambda done, k=key: self._forget_send(k, done))
        return await asyncio.shield(task)

    def _forget_send(self, key: str, task: asyncio.Future) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def _ensure_conversation(self, generation: int, peer_id: str) -> str:
        async with self._attach_lock:
            if generation == self._generation and self.conversation_id is not None:
                return self.conversation_id
            async with self.session_factory() as db:
                conversation = await ConversationService(db, self.platform).ensure_direct(
                    self.viewer_id, peer_id, self.viewer_role
                )
                conversation_id = conversation.id
            if generation == self._generation:
                await self._attach(conversation_id)
            return conversation_id

    async def _dispatch_send(self, text, media, gif_id, reply_to_id) -> DisplayMessage:
        generation = self._generation
        conversation_id = await self._ensure_conversation(generation, self.peer_id)
        async with self.session_factory() as db:
            record = await self._message_service(db).send_message(
                conversation_id,
                self.viewer_id,
                text=text,
                media=media,
                gif_id=gif_id,
                reply_to_id=reply_to_id,
            )
        if generation != self._generation:
            # The viewer switched away or closed while this was in flight
            logger.debug(f"Send {record.id} finished after {self.viewer_id} left {conversation_id}")
            return project_one(record, self.viewer_id)
        await self._absorb(ChangeEvent.inserted(record))
        return self._display(record)

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------

    def _visible_record(self, message_id: str) -> MessageRecord:
        record = self.view.get(message_id)
        if record is None or record.hidden_for(self.viewer_id):
            raise NotFound("Message not found")
        return record

    def begin_edit(self, message_id: str) -> EditDraft:
        """
        Enter edit mode for one of the viewer's own messages.

        Raises:
            NotFound: Message not in the view
            PermissionDenied: Message belongs to the peer
            InvalidMessage: Message was deleted for everyone
        """
        self._require(SessionState.READY)
        record = self._visible_record(message_id)
        if record.sender_id != self.viewer_id:
            raise PermissionDenied("Only the sender can edit this message")
        if record.is_deleted:
            raise InvalidMessage("Cannot edit a deleted message")
        self.edit_draft = EditDraft(message_id, record.content or "")
        self._mode = SessionState.EDITING
        return self.edit_draft

    async def commit_edit(self, text: str) -> DisplayMessage:
        """
        Save the edit. On failure the session stays in edit mode with the
        draft intact so the user can retry or cancel.
        """
        self._require(SessionState.EDITING)
        draft = self.edit_draft
        async with self.session_factory() as db:
            record = await self._message_service(db).edit(draft.message_id, self.viewer_id, text)
        self.edit_draft = None
        self._mode = SessionState.READY
        await self._absorb(ChangeEvent.updated(record))
        return self._display(record)

    def cancel_edit(self) -> None:
        self._require(SessionState.EDITING)
        self.edit_draft = None
        self._mode = SessionState.READY

    # ------------------------------------------------------------------
    # Deleting
    # ------------------------------------------------------------------

    def request_delete(self, message_id: str) -> DeleteOptions:
        """Offer deletion choices; "for everyone" only on the viewer's own live messages."""
        self._require(SessionState.READY)
        record = self._visible_record(message_id)
        self.pending_delete = DeleteOptions(
            message_id=message_id,
            for_me=True,
            for_everyone=record.sender_id == self.viewer_id and not record.is_deleted,
        )
        self._mode = SessionState.CONFIRMING_DELETE
        return self.pending_delete

    async def confirm_delete(self, scope: DeleteScope) -> Optional[DisplayMessage]:
        """
        Carry out the pending deletion. There is no undo.

        Returns:
            The message as now displayed (a placeholder for "everyone"), or
            None when it left the viewer's view ("me")
        """
        self._require(SessionState.CONFIRMING_DELETE)
        options = self.pending_delete
        if scope is DeleteScope.EVERYONE and not options.for_everyone:
            raise PermissionDenied("Only the sender can delete this message for everyone")
        try:
            async with self.session_factory() as db:
                record = await self._message_service(db).delete(options.message_id, self.viewer_id, scope)
        finally:
            self.pending_delete = None
            self._mode = SessionState.READY
        await self._absorb(ChangeEvent.updated(record))
        return self._display(record)

    def cancel_delete(self) -> None:
        self._require(SessionState.CONFIRMING_DELETE)
        self.pending_delete = None
        self._mode = SessionState.READY

    # ------------------------------------------------------------------
    # Read receipts, focus and typing
    # ------------------------------------------------------------------

    def has_unread(self) -> bool:
        return any(
            r.sender_id != self.viewer_id and not r.is_read and not r.hidden_for(self.viewer_id)
            for r in self.view.records
        )

    async def _mark_read_if_unread(self) -> int:
        if self.conversation_id is None or not self.has_unread():
            return 0
        async with self.session_factory() as db:
            return await self._message_service(db).mark_read(self.conversation_id, self.viewer_id)

    async def on_focus(self) -> int:
        """
        The view regained focus; mark the peer's messages read if any are unread.

        Returns:
            Number of messages marked read
        """
        self.focused = True
        if self._mode in (SessionState.IDLE, SessionState.LOADING, SessionState.CLOSED):
            return 0
        return await self._mark_read_if_unread()

    def on_blur(self) -> None:
        self.focused = False

    def note_typing(self) -> None:
        """Register a keystroke; the typing flag clears after a quiet interval."""
        self._cancel_typing()
        self.is_typing = True
        loop = asyncio.get_running_loop()
        self._typing_handle = loop.call_later(self.typing_quiet_interval, self._typing_expired)

    def _typing_expired(self) -> None:
        self.is_typing = False
        self._typing_handle = None

    def _cancel_typing(self) -> None:
        if self._typing_handle is not None:
            self._typing_handle.cancel()
            self._typing_handle = None
        self.is_typing = False
