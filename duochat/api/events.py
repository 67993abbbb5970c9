"""
Inbound WebSocket event dispatch.

Maps event names to engine operations and applies the error policy:
malformed requests are answered with an ``error`` event, authorization and
lookup misses are ignored, failed sends are reported as
``chat_message:failed``, and nothing a handler raises ends the session.
"""
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from duochat.api.metrics import websocket_events_received_total
from duochat.api.schemas import ChatMessageIn, JoinPrivateChatIn, MessageRef, RoomRef, WSError
from duochat.api.websocket_manager import ChatSession
from duochat.core.errors import ChatError, NotAuthorized, NotFound, PersistenceFailure
from duochat.services.chat_engine import ChatEngine

logger = logging.getLogger(__name__)

Handler = Callable[[ChatSession, Any], Awaitable[None]]


class EventDispatcher:
    """Routes ``{"event", "data"}`` frames from one session to the engine."""

    def __init__(self, engine: ChatEngine):
        self.engine = engine
        self.registry = engine.registry
        self.handlers: Dict[str, Handler] = {
            "chat_message": self.on_chat_message,
            "join_private_chat": self.on_join_private_chat,
            "conversation:read": self.on_conversation_read,
            "message:delivered": self.on_message_delivered,
            "message:delete": self.on_message_delete,
            "typing": self.on_typing,
            "stop_typing": self.on_stop_typing,
            "pong": self.on_pong,
        }

    async def dispatch_raw(self, session: ChatSession, raw: str) -> None:
        """Parse one text frame and dispatch it."""
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            await self.send_error(session, "Invalid JSON format", "INVALID_JSON")
            return

        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            await self.send_error(session, "Frame must carry an event name", "INVALID_EVENT")
            return

        await self.dispatch(session, frame["event"], frame.get("data"))

    async def dispatch(self, session: ChatSession, event: str, data: Any) -> None:
        handler = self.handlers.get(event)
        if handler is None:
            await self.send_error(session, f"Unknown event: {event}", "INVALID_EVENT", event)
            return

        websocket_events_received_total.labels(event=event).inc()
        log_extra = {"user_id": session.user_id, "session_id": session.session_id}

        try:
            await handler(session, data)
        except ValidationError as e:
            await self.send_error(session, f"Invalid payload: {e.errors()[0]['msg']}", "INVALID_MESSAGE", event)
        except (NotAuthorized, NotFound) as e:
            logger.info(f"Ignored {event}: {e.message}", extra=log_extra)
        except ChatError as e:
            await self.send_error(session, e.message, e.code, event)
        except Exception as e:
            logger.error(f"Error handling {event}: {e}", exc_info=True, extra=log_extra)
            await self.send_error(session, "Internal server error", "INTERNAL_ERROR", event)

    async def send_error(self, session: ChatSession, error: str, code: str, event: Optional[str] = None) -> None:
        payload = WSError(error=error, code=code, event=event).model_dump(mode="json")
        await self.registry.send(session, "error", payload)

    # Handlers

    async def on_chat_message(self, session: ChatSession, data: Any) -> None:
        request = ChatMessageIn.model_validate(data)
        try:
            await self.engine.pipeline.send(
                session,
                request.room_id,
                request.content,
                message_type=request.type,
                duration=request.duration,
                client_id=request.client_id
            )
        except PersistenceFailure as e:
            await self.registry.send(session, "chat_message:failed", {
                "clientId": request.client_id,
                "roomId": request.room_id,
                "error": e.message,
            })

    async def on_join_private_chat(self, session: ChatSession, data: Any) -> None:
        if isinstance(data, (int, str)) and not isinstance(data, bool):
            text = str(data).strip()
            request = JoinPrivateChatIn(other_user_id=int(text)) if text.isdigit() else JoinPrivateChatIn(room_id=text)
        else:
            request = JoinPrivateChatIn.model_validate(data)

        await self.engine.join_private_chat(session, other_user_id=request.other_user_id, room_id=request.room_id)

    async def on_conversation_read(self, session: ChatSession, data: Any) -> None:
        request = self._room_ref(data)
        await self.engine.delivery.mark_read(session, request.room_id)

    async def on_message_delivered(self, session: ChatSession, data: Any) -> None:
        request = MessageRef.model_validate(data)
        await self.engine.delivery.mark_delivered(session, request.message_id)

    async def on_message_delete(self, session: ChatSession, data: Any) -> None:
        request = MessageRef.model_validate(data)
        await self.engine.delivery.soft_delete(session, request.message_id)

    async def on_typing(self, session: ChatSession, data: Any) -> None:
        await self.engine.relay_typing(session, self._room_ref(data).room_id, typing=True)

    async def on_stop_typing(self, session: ChatSession, data: Any) -> None:
        await self.engine.relay_typing(session, self._room_ref(data).room_id, typing=False)

    async def on_pong(self, session: ChatSession, data: Any) -> None:
        self.registry.update_heartbeat(session)

    @staticmethod
    def _room_ref(data: Any) -> RoomRef:
        """Room payloads arrive either bare or as ``{"roomId": ...}``."""
        if isinstance(data, (int, str)) and not isinstance(data, bool):
            return RoomRef(room_id=data)
        return RoomRef.model_validate(data)
