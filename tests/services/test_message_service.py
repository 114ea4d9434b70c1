"""
Unit tests for MessageService.
Tests the message lifecycle, the send pipeline and change events.
"""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from pairchat.core.exceptions import (
    InvalidMessage,
    NotFound,
    PermissionDenied,
    StoreWriteFailed,
    UploadFailed,
)
from pairchat.core.realtime import ChangeKind
from pairchat.models import Conversation, PrivateMessage
from pairchat.models.message import AttachmentKind
from pairchat.schemas.message import DeleteScope, ImageAttachment, MessagePayload
from pairchat.services.conversation_service import ConversationService
from pairchat.services.message_service import MessageService
from pairchat.services.storage_service import MediaUpload
from pairchat.services.visibility import project
from pairchat.utils.datetime_utils import utc_now

ALICE = "user_alice"
BOB = "user_bob"
CAROL = "user_carol"


@pytest.fixture
def service(db_session, storage, notifier, feed) -> MessageService:
    return MessageService(db_session, storage=storage, notifier=notifier, feed=feed)


async def drain(subscription, count: int):
    return [await asyncio.wait_for(subscription.get(), timeout=1) for _ in range(count)]


class TestAppend:
    """Storing new messages."""

    async def test_append_text(self, service, conversation):
        record = await service.append(conversation.id, ALICE, MessagePayload(text="  hello  "))

        assert record.content == "hello"
        assert record.is_read is False
        assert record.attachment_kind == AttachmentKind.NONE
        assert record.revision == 1

    async def test_append_bumps_conversation(self, service, db_session, conversation):
        before = conversation.updated_at

        record = await service.append(conversation.id, ALICE, MessagePayload(text="hi"))

        assert conversation.updated_at == record.created_at
        assert conversation.updated_at >= before

    async def test_empty_payload_rejected(self, service, conversation):
        with pytest.raises(InvalidMessage):
            await service.append(conversation.id, ALICE, MessagePayload(text="   "))

    async def test_too_long_rejected(self, service, conversation, mocker):
        from pairchat.config import settings

        mocker.patch.object(settings, "max_message_length", 5)
        with pytest.raises(InvalidMessage):
            await service.append(conversation.id, ALICE, MessagePayload(text="way too long"))

    async def test_outsider_cannot_append(self, service, conversation):
        with pytest.raises(PermissionDenied):
            await service.append(conversation.id, CAROL, MessagePayload(text="hi"))

    async def test_unknown_conversation(self, service):
        with pytest.raises(NotFound):
            await service.append("missing", ALICE, MessagePayload(text="hi"))

    async def test_reply_must_stay_in_conversation(self, service, db_session, conversation, make_message):
        other = await ConversationService(db_session).get_or_create(ALICE, CAROL)
        foreign = await make_message(other.id, CAROL, "elsewhere")

        with pytest.raises(InvalidMessage):
            await service.append(conversation.id, ALICE, MessagePayload(text="re", reply_to_id=foreign.id))

    async def test_append_publishes_insert(self, service, feed, conversation):
        subscription = feed.subscribe(conversation.id, BOB)

        record = await service.append(conversation.id, ALICE, MessagePayload(text="hi"))

        [event] = await drain(subscription, 1)
        assert event.kind is ChangeKind.INSERT
        assert event.record == record

    async def test_recipient_not_viewing_is_notified(self, service, platform, conversation):
        await service.append(conversation.id, ALICE, MessagePayload(text="ping"))

        platform.send_notification.assert_awaited_once()
        assert platform.send_notification.await_args.args[0] == BOB
        assert platform.send_notification.await_args.kwargs["body"] == "ping"

    async def test_recipient_viewing_is_not_notified(self, service, platform, feed, conversation):
        feed.subscribe(conversation.id, BOB)

        await service.append(conversation.id, ALICE, MessagePayload(text="ping"))

        platform.send_notification.assert_not_called()

    async def test_notification_failure_does_not_fail_send(self, service, platform, conversation):
        from pairchat.core.platform_client import PlatformAPIException

        platform.send_notification.side_effect = PlatformAPIException("push down")

        record = await service.append(conversation.id, ALICE, MessagePayload(text="still sent"))

        assert record.content == "still sent"

    async def test_store_failure_raises_store_write_failed(self, service, db_session, conversation, mocker):
        mocker.patch.object(
            service.message_repo, "create", side_effect=OperationalError("INSERT", {}, Exception("disk full"))
        )

        with pytest.raises(StoreWriteFailed):
            await service.append(conversation.id, ALICE, MessagePayload(text="lost"))


class TestScenarios:
    """End-to-end flows over the store and the projection."""

    async def test_first_message_creates_conversation_then_read_on_open(self, db_session, platform, feed):
        """A sends "hello" to B with no prior conversation, B opens and reads."""
        conversation = await ConversationService(db_session, platform).ensure_direct(ALICE, BOB)
        service = MessageService(db_session, feed=feed)

        record = await service.send_message(conversation.id, ALICE, text="hello")

        count = await db_session.execute(select(func.count(Conversation.id)))
        assert count.scalar_one() == 1
        assert record.content == "hello"
        assert record.is_read is False

        assert await service.mark_read(conversation.id, BOB) == 1
        [stored] = await service.list_raw(conversation.id)
        assert stored.is_read is True

    async def test_gif_shortcode_message(self, db_session, feed, conversation, wave_gif):
        """A sends "[gif:wave]": no text, gif attached, usage counted once."""
        service = MessageService(db_session, feed=feed)

        record = await service.send_message(conversation.id, ALICE, text="[gif:wave]")

        assert record.content is None
        assert record.gif_id == wave_gif.id
        await db_session.refresh(wave_gif)
        assert wave_gif.usage_count == 1

    async def test_delete_for_me_hides_only_for_actor(self, service, conversation):
        record = await service.append(conversation.id, ALICE, MessagePayload(text="oops"))

        await service.soft_delete_for_me(record.id, ALICE)

        raw = await service.list_raw(conversation.id)
        assert project(raw, ALICE) == []
        [bob_sees] = project(raw, BOB)
        assert bob_sees.content == "oops"
        assert bob_sees.deleted is False

    async def test_delete_for_everyone_tombstones_and_keeps_reply_target(self, service, conversation):
        original = await service.append(conversation.id, ALICE, MessagePayload(text="secret"))
        reply = await service.append(conversation.id, BOB, MessagePayload(text="what?", reply_to_id=original.id))

        await service.soft_delete_for_everyone(original.id, ALICE)

        raw = await service.list_raw(conversation.id)
        for viewer in (ALICE, BOB):
            shown = {m.id: m for m in project(raw, viewer)}
            assert shown[original.id].deleted is True
            assert shown[original.id].content is None
            assert shown[reply.id].reply_to.deleted is True
        assert await service.append(
            conversation.id, BOB, MessagePayload(text="still replying", reply_to_id=original.id)
        )


class TestEdit:
    """Only the sender edits, and never the attachment."""

    async def test_sender_edits(self, service, feed, conversation):
        record = await service.append(conversation.id, ALICE, MessagePayload(text="helo"))
        subscription = feed.subscribe(conversation.id, BOB)

        edited = await service.edit(record.id, ALICE, "hello")

        assert edited.content == "hello"
        assert edited.edited_at is not None
        assert edited.revision == record.revision + 1
        [event] = await drain(subscription, 1)
        assert event.kind is ChangeKind.UPDATE

    async def test_peer_cannot_edit(self, service, conversation):
        record = await service.append(conversation.id, ALICE, MessagePayload(text="mine"))

        with pytest.raises(PermissionDenied):
            await service.edit(record.id, BOB, "hijacked")

    async def test_edit_keeps_attachment(self, service, conversation):
        payload = MessagePayload(text="look", attachment=ImageAttachment(url="https://cdn/p.png"))
        record = await service.append(conversation.id, ALICE, payload)

        edited = await service.edit(record.id, ALICE, "look at this")

        assert edited.image_url == "https://cdn/p.png"

    async def test_media_message_text_can_be_cleared(self, service, conversation):
        payload = MessagePayload(text="caption", attachment=ImageAttachment(url="https://cdn/p.png"))
        record = await service.append(conversation.id, ALICE, payload)

        edited = await service.edit(record.id, ALICE, "")

        assert edited.content is None

    async def test_text_message_cannot_become_empty(self, service, conversation):
        record = await service.append(conversation.id, ALICE, MessagePayload(text="words"))

        with pytest.raises(InvalidMessage):
            await service.edit(record.id, ALICE, "   ")

    async def test_deleted_message_cannot_be_edited(self, service, conversation):
        record = await service.append(conversation.id, ALICE, MessagePayload(text="gone"))
        await service.soft_delete_for_everyone(record.id, ALICE)

        with pytest.raises(InvalidMessage):
            await service.edit(record.id, ALICE, "back")

    async def test_unknown_message(self, service):
        with pytest.raises(NotFound):
            await service.edit("missing", ALICE, "x")


class TestDelete:
    """Soft deletion for one side or both."""

    async def test_receiver_delete_for_me(self, service, conversation):
        record = await service.append(conversation.id, ALICE, MessagePayload(text="hi"))

        updated = await service.soft_delete_for_me(record.id, BOB)

        assert updated.deleted_for_receiver is True
        assert updated.deleted_for_sender is False

    async def test_peer_cannot_delete_for_everyone(self, service, conversation):
        record = await service.append(conversation.id, ALICE, MessagePayload(text="hi"))

        with pytest.raises(PermissionDenied):
            await service.soft_delete_for_everyone(record.id, BOB)

    async def test_everyone_overrides_side_flags(self, service, conversation):
        record = await service.append(conversation.id, ALICE, MessagePayload(text="hi"))
        await service.soft_delete_for_me(record.id, BOB)

        await service.delete(record.id, ALICE, DeleteScope.EVERYONE)

        raw = await service.list_raw(conversation.id)
        [for_alice] = project(raw, ALICE)
        [for_bob] = project(raw, BOB)
        assert for_alice.deleted is True
        # Bob had hidden it, the tombstone brings the placeholder back
        assert for_bob.deleted is True
        assert for_bob.content is None

    async def test_hide_after_tombstone_is_one_sided(self, service, conversation):
        record = await service.append(conversation.id, ALICE, MessagePayload(text="hi"))
        await service.soft_delete_for_everyone(record.id, ALICE)

        await service.soft_delete_for_me(record.id, BOB)

        raw = await service.list_raw(conversation.id)
        assert project(raw, BOB) == []
        assert project(raw, ALICE)[0].deleted is True

    async def test_delete_is_idempotent(self, service, feed, conversation):
        record = await service.append(conversation.id, ALICE, MessagePayload(text="hi"))
        first = await service.soft_delete_for_everyone(record.id, ALICE)
        subscription = feed.subscribe(conversation.id, BOB)

        second = await service.soft_delete_for_everyone(record.id, ALICE)

        assert second.revision == first.revision
        assert subscription._queue.empty()

    async def test_outsider_cannot_delete(self, service, conversation):
        record = await service.append(conversation.id, ALICE, MessagePayload(text="hi"))

        with pytest.raises(PermissionDenied):
            await service.soft_delete_for_me(record.id, CAROL)

    async def test_clear_for_me(self, service, conversation):
        await service.append(conversation.id, ALICE, MessagePayload(text="one"))
        await service.append(conversation.id, BOB, MessagePayload(text="two"))

        changed = await service.clear_for_me(conversation.id, ALICE)

        raw = await service.list_raw(conversation.id)
        assert changed == 2
        assert project(raw, ALICE) == []
        assert len(project(raw, BOB)) == 2

    async def test_hard_delete_detaches_replies(self, service, feed, conversation):
        original = await service.append(conversation.id, ALICE, MessagePayload(text="bad"))
        reply = await service.append(conversation.id, BOB, MessagePayload(text="re", reply_to_id=original.id))
        subscription = feed.subscribe(conversation.id, BOB)

        await service.hard_delete(original.id)

        [stored] = await service.list_raw(conversation.id)
        assert stored.id == reply.id
        assert stored.reply_to_id is None
        deleted, updated = await drain(subscription, 2)
        assert deleted.kind is ChangeKind.DELETE
        assert deleted.message_id == original.id
        assert updated.kind is ChangeKind.UPDATE
        assert updated.message_id == reply.id

    async def test_hard_delete_unknown(self, service):
        with pytest.raises(NotFound):
            await service.hard_delete("missing")


class TestReadAndList:
    """Read receipts and history paging."""

    async def test_mark_read_only_touches_peer_messages(self, service, feed, conversation):
        mine = await service.append(conversation.id, BOB, MessagePayload(text="from bob"))
        await service.append(conversation.id, ALICE, MessagePayload(text="from alice"))
        subscription = feed.subscribe(conversation.id, ALICE)

        assert await service.mark_read(conversation.id, ALICE) == 1
        assert await service.mark_read(conversation.id, ALICE) == 0

        [event] = await drain(subscription, 1)
        assert event.message_id == mine.id
        assert event.record.is_read is True

    async def test_paging_backwards(self, service, db_session, conversation, make_message):
        start = utc_now()
        for i in range(5):
            await make_message(conversation.id, ALICE, f"m{i}", created_at=start + timedelta(seconds=i))

        page = await service.list_for_viewer(conversation.id, BOB, limit=2)
        assert [m.content for m in page.messages] == ["m3", "m4"]
        assert page.has_more is True

        older = await service.list_for_viewer(conversation.id, BOB, limit=2, before_id=page.next_cursor)
        assert [m.content for m in older.messages] == ["m1", "m2"]

        oldest = await service.list_for_viewer(conversation.id, BOB, limit=2, before_id=older.next_cursor)
        assert [m.content for m in oldest.messages] == ["m0"]
        assert oldest.has_more is False
        assert oldest.next_cursor is None

    async def test_raw_history_with_cursor(self, service, conversation, make_message):
        start = utc_now()
        messages = [
            await make_message(conversation.id, BOB, f"m{i}", created_at=start + timedelta(seconds=i))
            for i in range(4)
        ]

        assert [r.content for r in await service.list_raw(conversation.id)] == ["m0", "m1", "m2", "m3"]
        assert [r.content for r in await service.list_raw(conversation.id, limit=2)] == ["m2", "m3"]
        older = await service.list_raw(conversation.id, limit=2, before_id=messages[2].id)
        assert [r.content for r in older] == ["m0", "m1"]

    async def test_reply_preview_across_pages(self, service, db_session, conversation, make_message):
        start = utc_now()
        target = await make_message(conversation.id, ALICE, "way back", created_at=start)
        await make_message(conversation.id, ALICE, "filler", created_at=start + timedelta(seconds=1))
        await make_message(
            conversation.id, BOB, "replying", reply_to_id=target.id, created_at=start + timedelta(seconds=2)
        )

        page = await service.list_for_viewer(conversation.id, BOB, limit=1)

        assert page.messages[0].reply_to.content == "way back"

    async def test_outsider_cannot_list(self, service, conversation):
        with pytest.raises(PermissionDenied):
            await service.list_for_viewer(conversation.id, CAROL)


class TestSendPipeline:
    """Shortcodes, uploads and the order they run in."""

    async def test_embedded_shortcode_keeps_remaining_text(self, service, conversation, wave_gif):
        record = await service.send_message(conversation.id, ALICE, text="hi [gif:wave] there")

        assert record.content == "hi there"
        assert record.gif_id == wave_gif.id

    async def test_unknown_shortcode_is_plain_text(self, service, conversation):
        record = await service.send_message(conversation.id, ALICE, text="[gif:nothing]")

        assert record.content == "[gif:nothing]"
        assert record.gif_id is None

    async def test_picked_gif(self, service, conversation, wave_gif):
        record = await service.send_message(conversation.id, ALICE, gif_id=wave_gif.id)

        assert record.gif_id == wave_gif.id
        assert record.content is None

    async def test_gif_and_media_together_rejected(self, service, conversation, wave_gif, png_bytes):
        media = MediaUpload(data=png_bytes, mime_type="image/png", filename="a.png")

        with pytest.raises(InvalidMessage):
            await service.send_message(conversation.id, ALICE, media=media, gif_id=wave_gif.id)

    async def test_image_uploaded_before_append(self, service, oss_bucket, conversation, png_bytes):
        media = MediaUpload(data=png_bytes, mime_type="image/png", filename="cat.png")

        record = await service.send_message(conversation.id, ALICE, text="cat", media=media)

        oss_bucket.put_object.assert_called_once()
        key = oss_bucket.put_object.call_args.args[0]
        assert key.startswith(f"messages/{conversation.id}/")
        assert key.endswith(".png")
        assert record.image_url.endswith(key)
        assert record.content == "cat"

    async def test_video_attachment(self, service, conversation):
        media = MediaUpload(data=b"\x00\x00\x00\x18ftypmp42", mime_type="video/mp4", filename="clip.mp4")

        record = await service.send_message(conversation.id, ALICE, media=media)

        assert record.video_url is not None
        assert record.attachment_kind == AttachmentKind.VIDEO

    async def test_failed_upload_stores_nothing(self, service, db_session, oss_bucket, conversation, png_bytes, mocker):
        oss_bucket.put_object.return_value = mocker.Mock(status=503)
        media = MediaUpload(data=png_bytes, mime_type="image/png")

        with pytest.raises(UploadFailed):
            await service.send_message(conversation.id, ALICE, media=media)

        count = await db_session.execute(select(func.count(PrivateMessage.id)))
        assert count.scalar_one() == 0

    async def test_fake_image_rejected(self, service, oss_bucket, conversation):
        media = MediaUpload(data=b"definitely not a png", mime_type="image/png")

        with pytest.raises(UploadFailed) as exc_info:
            await service.send_message(conversation.id, ALICE, media=media)

        assert exc_info.value.status_code == 415
        oss_bucket.put_object.assert_not_called()

    async def test_store_failure_after_upload_leaves_object(
        self, service, oss_bucket, conversation, png_bytes, mocker
    ):
        mocker.patch.object(service, "append", side_effect=StoreWriteFailed())
        media = MediaUpload(data=png_bytes, mime_type="image/png")

        with pytest.raises(StoreWriteFailed):
            await service.send_message(conversation.id, ALICE, media=media)

        oss_bucket.put_object.assert_called_once()
        oss_bucket.delete_object.assert_not_called()
