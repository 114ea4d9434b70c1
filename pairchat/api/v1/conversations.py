"""
Conversation API routes.
Provides endpoints for the inbox, opening a conversation with a peer,
reading history and managing per-user visibility.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from pairchat.core.database import get_db
from pairchat.core.platform_client import PlatformClient
from pairchat.core.rate_limit import limiter
from pairchat.dependencies import get_current_user, get_platform_client
from pairchat.schemas.conversation import (
    ConversationOpenRequest,
    ConversationOpenResponse,
    ConversationSummary,
    HideAllResponse,
)
from pairchat.schemas.message import MarkReadResponse, MessageListResponse
from pairchat.services.conversation_service import ConversationService
from pairchat.services.message_service import MessageService

router = APIRouter()


@router.get(
    "",
    response_model=List[ConversationSummary],
    summary="List conversations",
    description="Visible conversations of the current user, most recent first."
)
async def list_conversations(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    platform: PlatformClient = Depends(get_platform_client)
):
    service = ConversationService(db, platform)
    return await service.list_for_user(current_user["id"])


@router.post(
    "/open",
    response_model=ConversationOpenResponse,
    summary="Open the conversation with a peer",
    description=(
        "Returns the existing conversation with the peer. For a first contact the "
        "peer's privacy policy is checked and nothing is created until a message is sent."
    )
)
@limiter.limit("30/minute")
async def open_conversation(
    request: Request,
    data: ConversationOpenRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    platform: PlatformClient = Depends(get_platform_client)
):
    """
    Open a conversation with a peer.

    - **peer_id**: user to talk to

    A 403 means the peer does not accept new conversations from the caller.
    """
    service = ConversationService(db, platform)
    conversation = await service.open_direct(current_user["id"], data.peer_id, current_user.get("role"))
    return ConversationOpenResponse(
        peer_id=data.peer_id,
        conversation_id=conversation.id if conversation else None,
        exists=conversation is not None,
    )


@router.get(
    "/{conversation_id}",
    response_model=ConversationSummary,
    summary="Get conversation"
)
async def get_conversation(
    conversation_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    platform: PlatformClient = Depends(get_platform_client)
):
    service = ConversationService(db, platform)
    return await service.get_summary(conversation_id, current_user["id"])


@router.delete(
    "/{conversation_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Hide conversation",
    description="Removes the conversation from the caller's list. The peer still sees it."
)
async def hide_conversation(
    conversation_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    service = ConversationService(db)
    await service.hide(conversation_id, current_user["id"])


@router.post(
    "/{conversation_id}/unhide",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Unhide conversation"
)
async def unhide_conversation(
    conversation_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    service = ConversationService(db)
    await service.unhide(conversation_id, current_user["id"])


@router.delete(
    "",
    response_model=HideAllResponse,
    summary="Hide all conversations"
)
async def hide_all_conversations(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    service = ConversationService(db)
    hidden = await service.hide_all(current_user["id"])
    return HideAllResponse(hidden=hidden)


@router.post(
    "/{conversation_id}/clear",
    response_model=MarkReadResponse,
    summary="Clear history for me",
    description="Hides every message of the conversation on the caller's side only."
)
async def clear_conversation(
    conversation_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    service = MessageService(db)
    updated = await service.clear_for_me(conversation_id, current_user["id"])
    return MarkReadResponse(conversation_id=conversation_id, updated=updated)


@router.get(
    "/{conversation_id}/messages",
    response_model=MessageListResponse,
    summary="Get conversation messages",
    description="Messages as seen by the caller, oldest first. Page backwards with `before`."
)
async def get_messages(
    conversation_id: str,
    limit: int = Query(50, ge=1, le=100, description="Number of messages to return"),
    before: Optional[str] = Query(None, description="Return messages older than this message id"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    service = MessageService(db)
    return await service.list_for_viewer(conversation_id, current_user["id"], limit=limit, before_id=before)


@router.post(
    "/{conversation_id}/read",
    response_model=MarkReadResponse,
    summary="Mark conversation as read"
)
async def mark_conversation_read(
    conversation_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    service = MessageService(db)
    updated = await service.mark_read(conversation_id, current_user["id"])
    return MarkReadResponse(conversation_id=conversation_id, updated=updated)
