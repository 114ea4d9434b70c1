"""
Message API routes.
Provides endpoints for sending, editing and deleting messages.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from pairchat.core.cache import get_sent_message_id, remember_send
from pairchat.core.database import get_db
from pairchat.core.exceptions import InvalidMessage, NotFound
from pairchat.core.platform_client import PlatformClient
from pairchat.core.rate_limit import SEND_LIMIT, limiter
from pairchat.dependencies import get_current_user, get_notifier, get_platform_client, get_storage_service
from pairchat.repositories.message_repo import MessageRepository
from pairchat.schemas.message import DeleteScope, DisplayMessage, MessageCreate, MessageRecord, MessageUpdate
from pairchat.services.conversation_service import ConversationService
from pairchat.services.message_service import MessageService, to_record
from pairchat.services.notification_service import NotificationDispatcher
from pairchat.services.storage_service import MediaUpload, StorageService
from pairchat.services.visibility import project_one

logger = logging.getLogger(__name__)

router = APIRouter()


async def _target_conversation(
    db: AsyncSession,
    platform: PlatformClient,
    current_user: dict,
    conversation_id: Optional[str],
    recipient_id: Optional[str],
) -> str:
    if conversation_id:
        return conversation_id
    if not recipient_id:
        raise InvalidMessage("conversation_id or recipient_id is required")
    service = ConversationService(db, platform)
    conversation = await service.ensure_direct(current_user["id"], recipient_id, current_user.get("role"))
    return conversation.id


async def _render(db: AsyncSession, record: MessageRecord, viewer_id: str) -> DisplayMessage:
    reply_target = None
    if record.reply_to_id:
        target = await MessageRepository(db).get(record.reply_to_id)
        reply_target = to_record(target) if target is not None else None
    display = project_one(record, viewer_id, reply_target)
    if display is None:
        raise NotFound("Message not found")
    return display


@router.post(
    "",
    response_model=DisplayMessage,
    status_code=status.HTTP_201_CREATED,
    summary="Send a message",
    description=(
        "Send a text or gif message to an existing conversation or to a peer. "
        "Messaging a peer for the first time creates the conversation if their privacy policy allows it."
    )
)
@limiter.limit(SEND_LIMIT)
async def send_message(
    request: Request,
    message_data: MessageCreate,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    platform: PlatformClient = Depends(get_platform_client),
    storage: StorageService = Depends(get_storage_service),
    notifier: NotificationDispatcher = Depends(get_notifier)
):
    """
    Send a new message.

    - **conversation_id** or **recipient_id**: where the message goes
    - **content**: text; a lone `[gif:name]` or `.name.` becomes a gif
    - **gif_id**: gif picked from the catalog
    - **reply_to_id**: message being replied to
    - **client_nonce**: retries with the same nonce return the first message
    """
    user_id = current_user["id"]
    service = MessageService(db, storage=storage, notifier=notifier)

    if message_data.client_nonce:
        sent_id = await get_sent_message_id(user_id, message_data.client_nonce)
        if sent_id:
            existing = await service.message_repo.get(sent_id)
            if existing is not None:
                logger.info(f"Duplicate send {message_data.client_nonce} from {user_id}")
                return await _render(db, to_record(existing), user_id)

    conversation_id = await _target_conversation(
        db, platform, current_user, message_data.conversation_id, message_data.recipient_id
    )
    record = await service.send_message(
        conversation_id,
        user_id,
        text=message_data.content,
        gif_id=message_data.gif_id,
        reply_to_id=message_data.reply_to_id,
    )
    if message_data.client_nonce:
        await remember_send(user_id, message_data.client_nonce, record.id)
    return await _render(db, record, user_id)


@router.post(
    "/media",
    response_model=DisplayMessage,
    status_code=status.HTTP_201_CREATED,
    summary="Send an image or video",
    description="Multipart upload. The file is stored before the message is created."
)
@limiter.limit(SEND_LIMIT)
async def send_media_message(
    request: Request,
    file: UploadFile = File(..., description="Image or video to attach"),
    conversation_id: Optional[str] = Form(None),
    recipient_id: Optional[str] = Form(None),
    content: Optional[str] = Form(None, max_length=4000),
    reply_to_id: Optional[str] = Form(None),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    platform: PlatformClient = Depends(get_platform_client),
    storage: StorageService = Depends(get_storage_service),
    notifier: NotificationDispatcher = Depends(get_notifier)
):
    if conversation_id and recipient_id:
        raise InvalidMessage("Exactly one of conversation_id or recipient_id is required")

    media = MediaUpload(
        data=await file.read(),
        mime_type=file.content_type or "application/octet-stream",
        filename=file.filename,
    )
    # Reject bad files before a first contact creates the conversation
    storage.validate(media)

    target_id = await _target_conversation(db, platform, current_user, conversation_id, recipient_id)
    service = MessageService(db, storage=storage, notifier=notifier)
    record = await service.send_message(
        target_id,
        current_user["id"],
        text=content,
        media=media,
        reply_to_id=reply_to_id,
    )
    return await _render(db, record, current_user["id"])


@router.patch(
    "/{message_id}",
    response_model=DisplayMessage,
    summary="Edit message",
    description="Replace the text of a message. Only the sender can edit, and deleted messages cannot be edited."
)
async def edit_message(
    message_id: str,
    update_data: MessageUpdate,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    service = MessageService(db)
    record = await service.edit(message_id, current_user["id"], update_data.content)
    return await _render(db, record, current_user["id"])


@router.delete(
    "/{message_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete message",
    description=(
        "`scope=me` hides the message for the caller only. "
        "`scope=everyone` replaces it with a placeholder for both participants (sender only)."
    )
)
async def delete_message(
    message_id: str,
    scope: DeleteScope = Query(DeleteScope.ME, description="me or everyone"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    service = MessageService(db)
    await service.delete(message_id, current_user["id"], scope)
