"""
Viewer projection of stored messages.

Pure functions only: given raw records and a viewer id, decide what the
viewer sees. The same rules apply to the full history, to single realtime
events and to reply previews.
"""
from typing import Dict, Iterable, List, Optional

from pairchat.schemas.message import DisplayMessage, MessageRecord, ReplyPreview


def project_one(
    record: MessageRecord,
    viewer_id: str,
    reply_target: Optional[MessageRecord] = None,
) -> Optional[DisplayMessage]:
    """
    Project a single record for a viewer.

    Args:
        record: Stored message
        viewer_id: User looking at the conversation
        reply_target: The record referenced by reply_to_id, when known

    Returns:
        DisplayMessage, or None if the viewer hid the message on their side
    """
    if record.hidden_for(viewer_id):
        return None

    reply_preview = None
    if record.reply_to_id:
        reply_preview = _reply_preview(record.reply_to_id, reply_target, viewer_id)

    common = dict(
        id=record.id,
        conversation_id=record.conversation_id,
        sender_id=record.sender_id,
        is_own=record.sender_id == viewer_id,
        reply_to_id=record.reply_to_id,
        reply_to=reply_preview,
        is_read=record.is_read,
        created_at=record.created_at,
    )

    if record.is_deleted:
        # Placeholder: keeps its slot and stays addressable as a reply target
        return DisplayMessage(deleted=True, **common)

    return DisplayMessage(
        content=record.content,
        image_url=record.image_url,
        video_url=record.video_url,
        gif_id=record.gif_id,
        edited=record.edited_at is not None,
        edited_at=record.edited_at,
        **common,
    )


def _reply_preview(reply_to_id: str, target: Optional[MessageRecord], viewer_id: str) -> ReplyPreview:
    if target is None or target.hidden_for(viewer_id):
        return ReplyPreview(id=reply_to_id, unavailable=True)
    if target.is_deleted:
        return ReplyPreview(id=target.id, sender_id=target.sender_id, deleted=True)
    return ReplyPreview(id=target.id, sender_id=target.sender_id, content=target.content)


def project(
    records: Iterable[MessageRecord],
    viewer_id: str,
    extra_reply_targets: Optional[Dict[str, MessageRecord]] = None,
) -> List[DisplayMessage]:
    """
    Project a conversation history for a viewer.

    Own messages hidden for the sender and peer messages hidden for the
    receiver are omitted; tombstones become placeholders; everything else
    is shown in full. Output is ordered by (created_at, id).

    Args:
        records: Raw records, any order
        viewer_id: User looking at the conversation
        extra_reply_targets: Records outside `records` that replies may point at
            (for paginated pages)

    Returns:
        Display messages in chronological order
    """
    ordered = sorted(records, key=lambda r: r.sort_key)
    by_id: Dict[str, MessageRecord] = dict(extra_reply_targets or {})
    by_id.update({record.id: record for record in ordered})

    projected: List[DisplayMessage] = []
    for record in ordered:
        target = by_id.get(record.reply_to_id) if record.reply_to_id else None
        display = project_one(record, viewer_id, target)
        if display is not None:
            projected.append(display)
    return projected
