"""
WebSocket manager for real-time messaging.

Each Socket.IO connection drives one ChatSession: the client opens a
conversation, acts on it through events (acks carry results or errors) and
receives per-viewer projected updates for it.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import socketio
from fastapi import FastAPI

from pairchat.config import settings
from pairchat.core.exceptions import InvalidMessage, MessagingError
from pairchat.core.realtime import ChangeFeed
from pairchat.core.security import SecurityException, user_from_token
from pairchat.schemas.message import DeleteScope, DisplayMessage
from pairchat.services.chat_session import ChatSession, ViewUpdate
from pairchat.services.notification_service import NotificationDispatcher

logger = logging.getLogger(__name__)

# ViewUpdate.kind -> client event name
_EVENT_NAMES = {
    "inserted": "message_inserted",
    "updated": "message_updated",
    "removed": "message_removed",
    "resynced": "messages_resynced",
    "notification": "notification",
    "closed": "view_closed",
}


def _dump(message: Optional[DisplayMessage]) -> Optional[Dict[str, Any]]:
    return message.model_dump(mode="json") if message is not None else None


class ConnectionManager:
    """
    WebSocket connection manager using Socket.IO.

    Tracks connected users and the single open ChatSession of each
    connection.
    """

    def __init__(self, session_factory=None, feed: Optional[ChangeFeed] = None):
        self.sio = socketio.AsyncServer(
            async_mode="asgi",
            cors_allowed_origins=settings.allowed_origins or "*",
            # Socket.IO's own loggers are too noisy; ours cover the events that matter
            logger=False,
            engineio_logger=False,
            ping_timeout=settings.ws_ping_timeout,
            ping_interval=settings.ws_ping_interval,
        )
        self.session_factory = session_factory
        self.feed = feed

        # Track connections: {sid: current user dict}
        self.connections: Dict[str, Dict[str, Any]] = {}

        # Track user sessions: {user_id: set of sids}
        self.user_sessions: Dict[str, Set[str]] = {}

        # Open views: {sid: ChatSession}
        self.views: Dict[str, ChatSession] = {}

        # Serializes opening and closing views per connection: {sid: lock}
        self._view_locks: Dict[str, asyncio.Lock] = {}

        self._setup_handlers()

    def _setup_handlers(self) -> None:
        """Register Socket.IO event handlers."""
        self.sio.on("connect", self.handle_connect)
        self.sio.on("disconnect", self.handle_disconnect)
        self.sio.on("open_conversation", self.handle_open_conversation)
        self.sio.on("close_conversation", self.handle_close_conversation)
        self.sio.on("send_message", self.handle_send_message)
        self.sio.on("begin_edit", self.handle_begin_edit)
        self.sio.on("commit_edit", self.handle_commit_edit)
        self.sio.on("cancel_edit", self.handle_cancel_edit)
        self.sio.on("request_delete", self.handle_request_delete)
        self.sio.on("confirm_delete", self.handle_confirm_delete)
        self.sio.on("cancel_delete", self.handle_cancel_delete)
        self.sio.on("focus", self.handle_focus)
        self.sio.on("blur", self.handle_blur)
        self.sio.on("typing", self.handle_typing)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def handle_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> bool:
        """Authenticate the handshake token; refuse the connection otherwise."""
        token = auth.get("token") if auth else None
        if not token:
            logger.warning(f"Connection rejected - no token: {sid}")
            return False
        try:
            user = user_from_token(token)
        except SecurityException as e:
            logger.warning(f"Connection rejected - {e.detail}: {sid}")
            return False

        self.connections[sid] = user
        self.user_sessions.setdefault(user["id"], set()).add(sid)
        logger.info(f"User {user['id']} connected: {sid}")
        return True

    async def handle_disconnect(self, sid: str, reason: Optional[str] = None) -> None:
        async with self._view_lock(sid):
            view = self.views.pop(sid, None)
            if view is not None:
                await view.close()
        self._view_locks.pop(sid, None)
        user = self.connections.pop(sid, None)
        if user is not None:
            sids = self.user_sessions.get(user["id"])
            if sids is not None:
                sids.discard(sid)
                if not sids:
                    del self.user_sessions[user["id"]]
            logger.info(f"User {user['id']} disconnected: {sid}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _make_view(self, sid: str, user: Dict[str, Any], notifications_enabled: bool) -> ChatSession:
        async def listener(update: ViewUpdate) -> None:
            await self._deliver(sid, update)

        return ChatSession(
            user["id"],
            self.session_factory,
            viewer_role=user.get("role"),
            feed=self.feed,
            notifier=NotificationDispatcher(),
            listener=listener,
            notifications_enabled=notifications_enabled,
        )

    async def _deliver(self, sid: str, update: ViewUpdate) -> None:
        payload: Dict[str, Any] = {"conversation_id": update.conversation_id}
        if update.message is not None:
            payload["message"] = _dump(update.message)
        if update.message_id is not None:
            payload["message_id"] = update.message_id
        if update.kind == "resynced":
            payload["messages"] = [_dump(m) for m in update.messages]
        if update.summary is not None:
            payload["summary"] = update.summary
        await self.sio.emit(_EVENT_NAMES[update.kind], payload, to=sid)

    def _view_lock(self, sid: str) -> asyncio.Lock:
        return self._view_locks.setdefault(sid, asyncio.Lock())

    def _view(self, sid: str) -> ChatSession:
        view = self.views.get(sid)
        if view is None:
            raise InvalidMessage("No conversation is open on this connection")
        return view

    async def _guard(self, sid: str, action: Callable[[], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
        """Run a handler body, turning messaging errors into an error ack."""
        if sid not in self.connections:
            return {"error": "unauthorized", "detail": "Not authenticated"}
        try:
            return await action()
        except MessagingError as e:
            logger.info(f"{e.code} for {sid}: {e.detail}")
            return {"error": e.code, "detail": e.detail}

    # ------------------------------------------------------------------
    # View events
    # ------------------------------------------------------------------

    async def handle_open_conversation(self, sid: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Open a view by ``conversation_id`` or by ``peer_id``.

        Any view already open on this connection is closed first.
        """
        async def action():
            async with self._view_lock(sid):
                user = self.connections.get(sid)
                if user is None:
                    raise InvalidMessage("Connection closed")
                previous = self.views.pop(sid, None)
                if previous is not None:
                    await previous.close()

                view = self._make_view(sid, user, bool(data.get("notifications", False)))
                if data.get("conversation_id"):
                    messages = await view.open_conversation(data["conversation_id"])
                elif data.get("peer_id"):
                    messages = await view.open_with(data["peer_id"])
                else:
                    raise InvalidMessage("conversation_id or peer_id is required")
                self.views[sid] = view
            return {
                "conversation_id": view.conversation_id,
                "peer_id": view.peer_id,
                "messages": [_dump(m) for m in messages],
            }

        return await self._guard(sid, action)

    async def handle_close_conversation(self, sid: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if sid not in self.connections:
            return {"closed": False}
        async with self._view_lock(sid):
            view = self.views.pop(sid, None)
            if view is not None:
                await view.close()
        return {"closed": view is not None}

    async def handle_send_message(self, sid: str, data: Dict[str, Any]) -> Dict[str, Any]:
        async def action():
            message = await self._view(sid).send(
                text=data.get("content"),
                gif_id=data.get("gif_id"),
                reply_to_id=data.get("reply_to_id"),
                nonce=data.get("nonce"),
            )
            return {"message": _dump(message), "nonce": data.get("nonce")}

        return await self._guard(sid, action)

    async def handle_begin_edit(self, sid: str, data: Dict[str, Any]) -> Dict[str, Any]:
        async def action():
            draft = self._view(sid).begin_edit(data.get("message_id") or "")
            return {"message_id": draft.message_id, "text": draft.text}

        return await self._guard(sid, action)

    async def handle_commit_edit(self, sid: str, data: Dict[str, Any]) -> Dict[str, Any]:
        async def action():
            message = await self._view(sid).commit_edit(data.get("content") or "")
            return {"message": _dump(message)}

        return await self._guard(sid, action)

    async def handle_cancel_edit(self, sid: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        async def action():
            self._view(sid).cancel_edit()
            return {"cancelled": True}

        return await self._guard(sid, action)

    async def handle_request_delete(self, sid: str, data: Dict[str, Any]) -> Dict[str, Any]:
        async def action():
            options = self._view(sid).request_delete(data.get("message_id") or "")
            return {
                "message_id": options.message_id,
                "for_me": options.for_me,
                "for_everyone": options.for_everyone,
            }

        return await self._guard(sid, action)

    async def handle_confirm_delete(self, sid: str, data: Dict[str, Any]) -> Dict[str, Any]:
        async def action():
            try:
                scope = DeleteScope(data.get("scope", "me"))
            except ValueError:
                raise InvalidMessage("scope must be 'me' or 'everyone'")
            message = await self._view(sid).confirm_delete(scope)
            return {"message": _dump(message)}

        return await self._guard(sid, action)

    async def handle_cancel_delete(self, sid: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        async def action():
            self._view(sid).cancel_delete()
            return {"cancelled": True}

        return await self._guard(sid, action)

    async def handle_focus(self, sid: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        async def action():
            marked = await self._view(sid).on_focus()
            return {"marked_read": marked}

        return await self._guard(sid, action)

    async def handle_blur(self, sid: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        async def action():
            self._view(sid).on_blur()
            return {"focused": False}

        return await self._guard(sid, action)

    async def handle_typing(self, sid: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Keystroke in the composer; the indicator is local to this view."""
        async def action():
            view = self._view(sid)
            view.note_typing()
            return {"typing": view.is_typing}

        return await self._guard(sid, action)

    def get_asgi_app(self, fastapi_app: FastAPI) -> socketio.ASGIApp:
        """
        Wrap the FastAPI app so Socket.IO serves /socket.io and everything
        else falls through to FastAPI.
        """
        return socketio.ASGIApp(self.sio, fastapi_app)


# Global connection manager instance
connection_manager = ConnectionManager()
