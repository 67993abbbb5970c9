"""
Messaging engine wiring.

Builds the registry, resolver, pipeline, delivery state machine and presence
broadcaster around one set of collaborators, and implements the two
interactions that span several of them: opening a private chat and relaying
typing indicators.
"""
import logging
from typing import Optional

from duochat.api.schemas import HistoryPage
from duochat.api.websocket_manager import ChatSession, SessionRegistry, conversation_channel
from duochat.core.codec import ConfidentialityCodec, get_codec
from duochat.core.config import settings
from duochat.core.errors import InvalidParticipant
from duochat.db.database import SessionLocal
from duochat.services.conversation_resolver import ConversationRef, ConversationResolver
from duochat.services.delivery import DeliveryStateMachine
from duochat.services.message_pipeline import MessagePipeline
from duochat.services.presence import PresenceBroadcaster
from duochat.services.push_notifier import PushNotifier

logger = logging.getLogger(__name__)

PRIVATE_CHAT_READY_EVENT = "private_chat_ready"
DISPLAY_TYPING_EVENT = "display_typing"
HIDE_TYPING_EVENT = "hide_typing"


class ChatEngine:
    """Owns every engine component for one process."""

    def __init__(
        self,
        session_factory=SessionLocal,
        codec: Optional[ConfidentialityCodec] = None,
        push_notifier: Optional[PushNotifier] = None,
        max_sessions_per_user: Optional[int] = None,
        history_limit: Optional[int] = None
    ):
        self.session_factory = session_factory
        self.codec = codec or get_codec()

        self.registry = SessionRegistry(
            session_factory=session_factory,
            max_sessions_per_user=max_sessions_per_user or settings.max_sessions_per_user
        )
        self.presence = PresenceBroadcaster(self.registry, session_factory)
        self.registry.presence_listener = self.presence.broadcast_presence

        self.resolver = ConversationResolver(session_factory)
        self.pipeline = MessagePipeline(
            registry=self.registry,
            resolver=self.resolver,
            codec=self.codec,
            push_notifier=push_notifier,
            session_factory=session_factory,
            history_limit=history_limit or settings.history_limit
        )
        self.delivery = DeliveryStateMachine(self.registry, session_factory)

    async def join_private_chat(
        self,
        session: ChatSession,
        other_user_id: Optional[int] = None,
        room_id: Optional[ConversationRef] = None
    ) -> HistoryPage:
        """
        Open the conversation with another user (or by provisional key), join
        the caller to its channel and send back the recent history.

        Raises:
            InvalidParticipant: self-chat, unknown user, or a malformed key
        """
        if other_user_id is not None:
            conversation_id = await self.resolver.resolve(session.user_id, other_user_id)
        elif room_id is not None:
            conversation_id = await self.resolver.resolve_composite(str(room_id), session.user_id)
        else:
            raise InvalidParticipant("join_private_chat needs otherUserId or roomId")

        self.registry.join(session, conversation_channel(conversation_id))
        history = await self.pipeline.load_history(conversation_id)
        page = HistoryPage(room_id=conversation_id, history=history)

        await self.registry.send(session, PRIVATE_CHAT_READY_EVENT, page.model_dump(by_alias=True, mode="json"))
        logger.info(
            f"User {session.user_id} joined conversation {conversation_id} ({len(history)} messages)",
            extra={"user_id": session.user_id, "session_id": session.session_id,
                   "conversation_id": conversation_id}
        )
        return page

    async def relay_typing(self, session: ChatSession, room_id: ConversationRef, typing: bool) -> int:
        """
        Forward a typing indicator to the other sessions in the conversation.

        Only sessions that joined the conversation may signal in it; the
        typist never receives its own indicator.

        Returns:
            Number of sessions reached
        """
        conversation_id = ConversationResolver.as_conversation_id(room_id)
        if conversation_id is None:
            return 0

        channel = conversation_channel(conversation_id)
        if not self.registry.is_member(session, channel):
            return 0

        if typing:
            event, payload = DISPLAY_TYPING_EVENT, {"username": session.display_name, "roomId": conversation_id}
        else:
            event, payload = HIDE_TYPING_EVENT, {"roomId": conversation_id}
        return await self.registry.emit([channel], event, payload, exclude_session_id=session.session_id)
