"""
Integration tests for Message, Gif and Admin API endpoints.
Tests API routes and HTTP interactions.
"""
from sqlalchemy import select

from pairchat.dependencies import get_current_user
from pairchat.main import fastapi_app
from pairchat.models import Conversation, PrivateMessage, canonical_pair

ALICE = "user_alice"
BOB = "user_bob"
CAROL = "user_carol"


def as_user(user_id: str, role: str = "member"):
    async def override():
        return {"id": user_id, "role": role, "username": user_id}
    return override


class TestSendMessageAPI:
    """Test cases for sending messages."""

    async def test_send_message_unauthorized(self, unauth_client, conversation):
        """Test sending a message without authentication."""
        response = await unauth_client.post(
            "/api/v1/messages",
            json={"conversation_id": conversation.id, "content": "Test message"},
        )

        assert response.status_code == 401

    async def test_send_message_success(self, client, conversation, platform):
        """Test sending a message successfully."""
        response = await client.post(
            "/api/v1/messages",
            json={"conversation_id": conversation.id, "content": "Test message"},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["content"] == "Test message"
        assert data["sender_id"] == ALICE
        assert data["is_own"] is True
        assert data["is_read"] is False
        # Bob has no open view, so a push goes out
        platform.send_notification.assert_awaited_once()

    async def test_send_to_recipient_creates_conversation(self, client, db_session):
        response = await client.post(
            "/api/v1/messages",
            json={"recipient_id": CAROL, "content": "hello stranger"},
        )

        assert response.status_code == 201
        result = await db_session.execute(select(Conversation))
        [created] = result.scalars().all()
        assert response.json()["conversation_id"] == created.id
        assert created.has_participant(CAROL)

    async def test_send_to_recipient_refused(self, client, db_session, platform):
        platform.get_messaging_permission.return_value = "nobody"

        response = await client.post(
            "/api/v1/messages",
            json={"recipient_id": CAROL, "content": "hello?"},
        )

        assert response.status_code == 403
        assert response.json()["code"] == "permission_denied"
        result = await db_session.execute(select(Conversation))
        assert result.scalars().all() == []

    async def test_send_requires_one_target(self, client, conversation):
        response = await client.post(
            "/api/v1/messages",
            json={"conversation_id": conversation.id, "recipient_id": BOB, "content": "x"},
        )

        assert response.status_code == 422

    async def test_send_empty_content_rejected(self, client, conversation):
        response = await client.post(
            "/api/v1/messages",
            json={"conversation_id": conversation.id, "content": "   "},
        )

        assert response.status_code == 422

    async def test_send_to_foreign_conversation_forbidden(self, client, db_session):
        low, high = canonical_pair(BOB, CAROL)
        other = Conversation(participant_a=low, participant_b=high)
        db_session.add(other)
        await db_session.commit()

        response = await client.post(
            "/api/v1/messages",
            json={"conversation_id": other.id, "content": "let me in"},
        )

        assert response.status_code == 403

    async def test_send_reply_carries_preview(self, client, conversation, make_message):
        original = await make_message(conversation.id, BOB, "question?")

        response = await client.post(
            "/api/v1/messages",
            json={"conversation_id": conversation.id, "content": "answer", "reply_to_id": original.id},
        )

        assert response.status_code == 201
        reply_to = response.json()["reply_to"]
        assert reply_to["id"] == original.id
        assert reply_to["content"] == "question?"

    async def test_send_shortcode_becomes_gif(self, client, conversation, wave_gif):
        response = await client.post(
            "/api/v1/messages",
            json={"conversation_id": conversation.id, "content": "[gif:wave]"},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["gif_id"] == wave_gif.id
        assert data["content"] is None

    async def test_send_picked_gif(self, client, conversation, wave_gif):
        response = await client.post(
            "/api/v1/messages",
            json={"conversation_id": conversation.id, "gif_id": wave_gif.id},
        )

        assert response.status_code == 201
        assert response.json()["gif_id"] == wave_gif.id


class TestSendMediaAPI:
    """Test cases for multipart media messages."""

    async def test_send_image(self, client, conversation, oss_bucket, png_bytes):
        response = await client.post(
            "/api/v1/messages/media",
            data={"conversation_id": conversation.id, "content": "look"},
            files={"file": ("cat.png", png_bytes, "image/png")},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["content"] == "look"
        assert data["image_url"].endswith(".png")
        oss_bucket.put_object.assert_called_once()

    async def test_fake_image_rejected_before_upload(self, client, conversation, oss_bucket, db_session):
        response = await client.post(
            "/api/v1/messages/media",
            data={"conversation_id": conversation.id},
            files={"file": ("cat.png", b"not really a png", "image/png")},
        )

        assert response.status_code == 415
        assert response.json()["code"] == "upload_failed"
        oss_bucket.put_object.assert_not_called()
        result = await db_session.execute(select(PrivateMessage))
        assert result.scalars().all() == []

    async def test_rejected_file_does_not_open_first_contact(self, client, db_session):
        response = await client.post(
            "/api/v1/messages/media",
            data={"recipient_id": CAROL},
            files={"file": ("notes.txt", b"plain text", "text/plain")},
        )

        assert response.status_code == 415
        result = await db_session.execute(select(Conversation))
        assert result.scalars().all() == []

    async def test_storage_failure_sends_nothing(self, client, conversation, oss_bucket, png_bytes, db_session, mocker):
        oss_bucket.put_object.return_value = mocker.Mock(status=503)

        response = await client.post(
            "/api/v1/messages/media",
            data={"conversation_id": conversation.id},
            files={"file": ("cat.png", png_bytes, "image/png")},
        )

        assert response.status_code == 502
        result = await db_session.execute(select(PrivateMessage))
        assert result.scalars().all() == []


class TestEditMessageAPI:
    """Test cases for editing messages."""

    async def test_edit_own_message(self, client, conversation, make_message):
        message = await make_message(conversation.id, ALICE, "helo")

        response = await client.patch(f"/api/v1/messages/{message.id}", json={"content": "hello"})

        assert response.status_code == 200
        data = response.json()
        assert data["content"] == "hello"
        assert data["edited"] is True
        assert data["edited_at"] is not None

    async def test_edit_peer_message_forbidden(self, client, conversation, make_message):
        message = await make_message(conversation.id, BOB, "mine, not yours")

        response = await client.patch(f"/api/v1/messages/{message.id}", json={"content": "hijacked"})

        assert response.status_code == 403
        assert response.json()["code"] == "permission_denied"

    async def test_edit_whitespace_rejected(self, client, conversation, make_message):
        message = await make_message(conversation.id, ALICE, "keep")

        response = await client.patch(f"/api/v1/messages/{message.id}", json={"content": "   "})

        assert response.status_code == 422

    async def test_edit_missing_message(self, client):
        response = await client.patch("/api/v1/messages/nope", json={"content": "hello"})

        assert response.status_code == 404


class TestDeleteMessageAPI:
    """Test cases for deleting messages."""

    async def test_delete_for_everyone(self, client, conversation, make_message):
        message = await make_message(conversation.id, ALICE, "oops")

        response = await client.delete(f"/api/v1/messages/{message.id}", params={"scope": "everyone"})

        assert response.status_code == 204
        history = await client.get(f"/api/v1/conversations/{conversation.id}/messages")
        [placeholder] = history.json()["messages"]
        assert placeholder["deleted"] is True
        assert placeholder["content"] is None

    async def test_delete_peer_message_for_everyone_forbidden(self, client, conversation, make_message):
        message = await make_message(conversation.id, BOB, "stays")

        response = await client.delete(f"/api/v1/messages/{message.id}", params={"scope": "everyone"})

        assert response.status_code == 403

    async def test_delete_for_me_hides_only_my_side(self, client, conversation, make_message):
        message = await make_message(conversation.id, BOB, "not for me")

        response = await client.delete(f"/api/v1/messages/{message.id}")

        assert response.status_code == 204
        history = await client.get(f"/api/v1/conversations/{conversation.id}/messages")
        assert history.json()["messages"] == []

        fastapi_app.dependency_overrides[get_current_user] = as_user(BOB)
        peer_history = await client.get(f"/api/v1/conversations/{conversation.id}/messages")
        assert [m["content"] for m in peer_history.json()["messages"]] == ["not for me"]

    async def test_delete_invalid_scope(self, client, conversation, make_message):
        message = await make_message(conversation.id, ALICE, "x")

        response = await client.delete(f"/api/v1/messages/{message.id}", params={"scope": "nobody"})

        assert response.status_code == 422


class TestGifAPI:
    """Test cases for the gif catalog."""

    async def test_list_gifs(self, client, wave_gif):
        response = await client.get("/api/v1/gifs")

        assert response.status_code == 200
        [gif] = response.json()["gifs"]
        assert gif["shortcode"] == "wave"
        assert gif["usage_count"] == 0

    async def test_get_gif(self, client, wave_gif):
        response = await client.get(f"/api/v1/gifs/{wave_gif.id}")

        assert response.status_code == 200
        assert response.json()["original_url"] == wave_gif.original_url

    async def test_get_unknown_gif(self, client):
        response = await client.get("/api/v1/gifs/unknown")

        assert response.status_code == 404
        assert response.json()["code"] == "not_found"


class TestAdminAPI:
    """Test cases for administrative removal."""

    async def test_member_cannot_hard_delete(self, client, conversation, make_message):
        message = await make_message(conversation.id, BOB, "reported")

        response = await client.delete(f"/api/v1/admin/messages/{message.id}")

        assert response.status_code == 403

    async def test_admin_hard_delete(self, client, db_session, conversation, make_message):
        message = await make_message(conversation.id, BOB, "reported")
        fastapi_app.dependency_overrides[get_current_user] = as_user(CAROL, role="super_admin")

        response = await client.delete(f"/api/v1/admin/messages/{message.id}")

        assert response.status_code == 204
        result = await db_session.execute(select(PrivateMessage).where(PrivateMessage.id == message.id))
        assert result.scalar_one_or_none() is None


class TestHealthAPI:
    async def test_health(self, unauth_client):
        response = await unauth_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
