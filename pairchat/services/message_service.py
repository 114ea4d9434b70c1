"""
Message store service.

Every mutation commits first and then publishes a change event, so
subscribers only ever see committed state. Database failures surface as
StoreWriteFailed after the session is rolled back.
"""
import logging
from typing import List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pairchat.config import settings
from pairchat.core.exceptions import InvalidMessage, NotFound, PermissionDenied, StoreWriteFailed
from pairchat.core.realtime import ChangeEvent, ChangeFeed, change_feed
from pairchat.models.conversation import Conversation
from pairchat.models.message import AttachmentKind, MessageVisibility, PrivateMessage
from pairchat.repositories.conversation_repo import ConversationRepository
from pairchat.repositories.message_repo import MessageRepository
from pairchat.schemas.message import (
    Attachment,
    DeleteScope,
    GifAttachment,
    ImageAttachment,
    MessageListResponse,
    MessagePayload,
    MessageRecord,
    VideoAttachment,
    attachment_columns,
)
from pairchat.services.gif_service import GifService
from pairchat.services.notification_service import NotificationDispatcher
from pairchat.services.storage_service import MediaUpload, StorageService, storage_service
from pairchat.services.visibility import project
from pairchat.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)


def to_record(message: PrivateMessage) -> MessageRecord:
    return MessageRecord.model_validate(message)


class MessageService:
    """Service for the message lifecycle: send, edit, delete, read, list."""

    def __init__(
        self,
        db: AsyncSession,
        storage: Optional[StorageService] = None,
        notifier: Optional[NotificationDispatcher] = None,
        feed: Optional[ChangeFeed] = None,
    ):
        """
        Initialize message service.

        Args:
            db: Async database session
            storage: Media storage used by send_message
            notifier: Push dispatcher for recipients without an open view;
                None disables notifications
            feed: Change feed events are published to
        """
        self.db = db
        self.message_repo = MessageRepository(db)
        self.conversation_repo = ConversationRepository(db)
        self.storage = storage or storage_service
        self.notifier = notifier
        self.feed = feed or change_feed

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _conversation_for(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = await self.conversation_repo.get(conversation_id)
        if conversation is None:
            raise NotFound("Conversation not found")
        if not conversation.has_participant(user_id):
            raise PermissionDenied("Not a participant of this conversation")
        return conversation

    async def _message_for(self, message_id: str, actor_id: str) -> PrivateMessage:
        message = await self.message_repo.get(message_id)
        if message is None:
            raise NotFound("Message not found")
        await self._conversation_for(message.conversation_id, actor_id)
        return message

    async def _check_reply(self, conversation_id: str, reply_to_id: Optional[str]) -> None:
        if not reply_to_id:
            return
        target = await self.message_repo.get(reply_to_id)
        if target is None or target.conversation_id != conversation_id:
            raise InvalidMessage("Reply target must be a message in this conversation")

    @staticmethod
    def _clean_text(text: Optional[str]) -> Optional[str]:
        if text is None:
            return None
        text = text.strip()
        if len(text) > settings.max_message_length:
            raise InvalidMessage(f"Message is longer than {settings.max_message_length} characters")
        return text or None

    async def _commit(self, action: str) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Store write failed ({action}): {e}")
            raise StoreWriteFailed()

    # ------------------------------------------------------------------
    # Store operations
    # ------------------------------------------------------------------

    async def append(self, conversation_id: str, sender_id: str, payload: MessagePayload) -> MessageRecord:
        """
        Store a new message.

        Args:
            conversation_id: Target conversation
            sender_id: Author, must be a participant
            payload: Text, attachment and reply reference

        Returns:
            The stored record

        Raises:
            InvalidMessage: Empty payload or foreign reply target
            NotFound: Unknown conversation
            PermissionDenied: Sender is not a participant
            StoreWriteFailed: The insert failed
        """
        text = self._clean_text(payload.text)
        if text is None and payload.attachment is None:
            raise InvalidMessage("Message must have text or an attachment")

        conversation = await self._conversation_for(conversation_id, sender_id)
        await self._check_reply(conversation_id, payload.reply_to_id)
        kind, ref = attachment_columns(payload.attachment)

        try:
            message = await self.message_repo.create(
                conversation_id=conversation_id,
                sender_id=sender_id,
                content=text,
                attachment_kind=kind,
                attachment_ref=ref,
                reply_to_id=payload.reply_to_id,
                created_at=utc_now(),
            )
            await self.conversation_repo.touch(conversation, message.created_at)
            await self._resurface(conversation, sender_id)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to append message to {conversation_id}: {e}")
            raise StoreWriteFailed("Message could not be saved")
        await self._commit("append")

        record = to_record(message)
        logger.info(f"Message {record.id} appended to conversation {conversation_id} by {sender_id}")
        self.feed.publish(ChangeEvent.inserted(record))
        await self._notify_recipient(conversation, record)
        return record

    async def _resurface(self, conversation: Conversation, sender_id: str) -> None:
        """Unhide the conversation for the sender, and for the recipient if configured."""
        users = [sender_id]
        if settings.resurface_hidden_conversations:
            users.append(conversation.other_participant(sender_id))
        for user_id in users:
            if await self.conversation_repo.is_hidden(conversation.id, user_id):
                await self.conversation_repo.set_hidden(conversation.id, user_id, False)

    async def _notify_recipient(self, conversation: Conversation, record: MessageRecord) -> None:
        if self.notifier is None:
            return
        recipient_id = conversation.other_participant(record.sender_id)
        if self.feed.is_viewing(conversation.id, recipient_id):
            return
        await self.notifier.notify_new_message(record, recipient_id)

    async def edit(self, message_id: str, actor_id: str, new_text: Optional[str]) -> MessageRecord:
        """
        Replace a message's text.

        Only the sender may edit, tombstoned messages cannot be edited, and
        the attachment is never touched.

        Raises:
            NotFound: Unknown message
            PermissionDenied: Actor is not the sender
            InvalidMessage: Message deleted, or edit would leave it empty
        """
        message = await self._message_for(message_id, actor_id)
        if message.sender_id != actor_id:
            raise PermissionDenied("Only the sender can edit this message")
        if message.is_deleted:
            raise InvalidMessage("Cannot edit a deleted message")

        text = self._clean_text(new_text)
        if text is None and message.attachment_kind == AttachmentKind.NONE:
            raise InvalidMessage("Message must have text or an attachment")

        message.content = text
        message.edited_at = utc_now()
        message.revision += 1
        await self._commit("edit")

        record = to_record(message)
        self.feed.publish(ChangeEvent.updated(record))
        return record

    async def _set_flag(self, message: PrivateMessage, flag: MessageVisibility, action: str) -> MessageRecord:
        if message.flags & flag:
            return to_record(message)
        message.visibility = int(message.flags | flag)
        message.revision += 1
        await self._commit(action)
        record = to_record(message)
        self.feed.publish(ChangeEvent.updated(record))
        return record

    async def soft_delete_for_me(self, message_id: str, actor_id: str) -> MessageRecord:
        """
        Hide a message on the actor's side only. Idempotent.

        Raises:
            NotFound: Unknown message
            PermissionDenied: Actor is not a participant
        """
        message = await self._message_for(message_id, actor_id)
        flag = (
            MessageVisibility.HIDDEN_FOR_SENDER
            if message.sender_id == actor_id
            else MessageVisibility.HIDDEN_FOR_RECEIVER
        )
        return await self._set_flag(message, flag, "delete for me")

    async def soft_delete_for_everyone(self, message_id: str, actor_id: str) -> MessageRecord:
        """
        Tombstone a message for both participants. Idempotent, cannot be undone.

        Raises:
            NotFound: Unknown message
            PermissionDenied: Actor is not the sender
        """
        message = await self._message_for(message_id, actor_id)
        if message.sender_id != actor_id:
            raise PermissionDenied("Only the sender can delete this message for everyone")
        if message.is_deleted:
            return to_record(message)
        # Tombstone replaces earlier side hides so both participants see the placeholder
        message.visibility = int(MessageVisibility.TOMBSTONED)
        message.revision += 1
        await self._commit("delete for everyone")
        record = to_record(message)
        self.feed.publish(ChangeEvent.updated(record))
        return record

    async def delete(self, message_id: str, actor_id: str, scope: DeleteScope) -> MessageRecord:
        if scope is DeleteScope.EVERYONE:
            return await self.soft_delete_for_everyone(message_id, actor_id)
        return await self.soft_delete_for_me(message_id, actor_id)

    async def hard_delete(self, message_id: str) -> None:
        """
        Remove a message row entirely (administrative path).

        Replies that referenced it are detached first. Subscribers receive a
        delete event and updates for the detached replies.

        Raises:
            NotFound: Unknown message
        """
        message = await self.message_repo.get(message_id)
        if message is None:
            raise NotFound("Message not found")
        conversation_id = message.conversation_id

        try:
            detached = await self.message_repo.detach_replies(message_id)
            await self.message_repo.delete(message_id)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to hard delete message {message_id}: {e}")
            raise StoreWriteFailed()
        await self._commit("hard delete")
        logger.info(f"Message {message_id} hard deleted from conversation {conversation_id}")

        self.feed.publish(ChangeEvent.deleted(conversation_id, message_id))
        replies = await self.message_repo.reload(detached)
        self.feed.publish_all(ChangeEvent.updated(to_record(reply)) for reply in replies)

    async def mark_read(self, conversation_id: str, reader_id: str) -> int:
        """
        Mark every peer message in the conversation as read.

        Returns:
            Number of messages that changed
        """
        await self._conversation_for(conversation_id, reader_id)
        try:
            ids = await self.message_repo.mark_read(conversation_id, reader_id)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to mark {conversation_id} read for {reader_id}: {e}")
            raise StoreWriteFailed()
        if not ids:
            return 0
        await self._commit("mark read")

        messages = await self.message_repo.reload(ids)
        self.feed.publish_all(ChangeEvent.updated(to_record(message)) for message in messages)
        return len(ids)

    async def clear_for_me(self, conversation_id: str, user_id: str) -> int:
        """
        Hide every message of a conversation on the user's side.

        Returns:
            Number of messages that changed
        """
        await self._conversation_for(conversation_id, user_id)
        try:
            ids = await self.message_repo.hide_all_for(conversation_id, user_id)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to clear {conversation_id} for {user_id}: {e}")
            raise StoreWriteFailed()
        await self._commit("clear for me")

        messages = await self.message_repo.reload(ids)
        self.feed.publish_all(ChangeEvent.updated(to_record(message)) for message in messages)
        return len(ids)

    async def list_raw(
        self,
        conversation_id: str,
        limit: Optional[int] = None,
        before_id: Optional[str] = None,
    ) -> List[MessageRecord]:
        """History in ascending (created_at, id) order, unfiltered. Without a limit, everything."""
        records, _ = await self.list_page(conversation_id, limit, before_id)
        return records

    async def list_page(
        self,
        conversation_id: str,
        limit: Optional[int],
        before_id: Optional[str] = None,
    ) -> Tuple[List[MessageRecord], bool]:
        messages, has_more = await self.message_repo.list_for_conversation(
            conversation_id, limit=limit, before_id=before_id
        )
        return [to_record(message) for message in messages], has_more

    async def list_for_viewer(
        self,
        conversation_id: str,
        viewer_id: str,
        limit: int = 50,
        before_id: Optional[str] = None,
    ) -> MessageListResponse:
        """
        A page of history projected for the viewer.

        Reply targets older than the page are fetched so previews render.
        """
        await self._conversation_for(conversation_id, viewer_id)
        records, has_more = await self.list_page(conversation_id, limit, before_id)

        page_ids = {record.id for record in records}
        missing = [r.reply_to_id for r in records if r.reply_to_id and r.reply_to_id not in page_ids]
        targets = {m.id: to_record(m) for m in await self.message_repo.get_many(missing)}

        return MessageListResponse(
            messages=project(records, viewer_id, extra_reply_targets=targets),
            has_more=has_more,
            next_cursor=records[0].id if has_more and records else None,
        )

    # ------------------------------------------------------------------
    # Send pipeline
    # ------------------------------------------------------------------

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        text: Optional[str] = None,
        media: Optional[MediaUpload] = None,
        gif_id: Optional[str] = None,
        reply_to_id: Optional[str] = None,
    ) -> MessageRecord:
        """
        Resolve shortcodes, upload media, then append.

        Media is uploaded before the message is stored. A failed upload
        aborts the send; a failed append after a successful upload leaves
        the uploaded object behind (logged).

        Args:
            conversation_id: Target conversation
            sender_id: Author
            text: Message text; may contain a gif shortcode
            media: Image or video to attach
            gif_id: Gif picked from the catalog
            reply_to_id: Message being replied to

        Returns:
            The stored record

        Raises:
            InvalidMessage: Empty message or more than one attachment
            UploadFailed: Media could not be stored
            StoreWriteFailed: Message could not be saved
        """
        await self._conversation_for(conversation_id, sender_id)
        text = self._clean_text(text)
        attachment: Optional[Attachment] = None
        gifs = GifService(self.db)

        if gif_id:
            if media is not None:
                raise InvalidMessage("A message can carry only one attachment")
            gif = await gifs.use_gif(gif_id, sender_id)
            attachment = GifAttachment(gif_id=gif.id)
        elif media is None and text:
            resolution = await gifs.resolve(text, sender_id)
            if resolution is not None:
                attachment = GifAttachment(gif_id=resolution.gif_id)
                text = resolution.remaining_text or None

        if text is None and attachment is None and media is None:
            raise InvalidMessage("Message must have text or an attachment")
        await self._check_reply(conversation_id, reply_to_id)

        uploaded_url = None
        if media is not None:
            uploaded_url = await self.storage.upload(media, folder=f"messages/{conversation_id}")
            if media.kind == "video":
                attachment = VideoAttachment(url=uploaded_url)
            else:
                attachment = ImageAttachment(url=uploaded_url)

        payload = MessagePayload(text=text, attachment=attachment, reply_to_id=reply_to_id)
        try:
            return await self.append(conversation_id, sender_id, payload)
        except StoreWriteFailed:
            if uploaded_url is not None:
                logger.warning(f"Append failed after upload; orphaned object {uploaded_url}")
            raise
