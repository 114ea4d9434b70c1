"""
Administrative API routes.
"""
import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from pairchat.core.database import get_db
from pairchat.dependencies import require_elevated_user
from pairchat.services.message_service import MessageService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.delete(
    "/messages/{message_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove message permanently",
    description="Deletes the message row. Replies to it lose their reference. Elevated roles only."
)
async def hard_delete_message(
    message_id: str,
    current_user: dict = Depends(require_elevated_user),
    db: AsyncSession = Depends(get_db)
):
    service = MessageService(db)
    await service.hard_delete(message_id)
    logger.warning(f"Message {message_id} removed by {current_user['id']}")
