"""
Delivery status transitions and soft deletion.

Status only moves forward (sent -> delivered -> read). The guards live in the
UPDATE statements, so concurrent or replayed events never downgrade a message.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Tuple
from uuid import UUID

from duochat.api.metrics import message_status_transitions_total
from duochat.api.websocket_manager import ChatSession, SessionRegistry, conversation_channel, user_channel
from duochat.core.audit_logger import audit_logger
from duochat.core.errors import NotAuthorized, NotFound
from duochat.db.database import SessionLocal
from duochat.db.models import Conversation, Message, MessageStatus
from duochat.db.repository import Repository
from duochat.services.conversation_resolver import ConversationRef, ConversationResolver

logger = logging.getLogger(__name__)

STATUS_UPDATE_EVENT = "message:status_update"
READ_ACK_EVENT = "conversation:read_ack"
DELETED_EVENT = "message:deleted"


@dataclass(frozen=True)
class _Transition:
    changed: bool
    conversation: Tuple[int, int, int]  # (conversation id, low, high)
    sender_id: int


def parse_message_id(raw) -> UUID:
    """
    Raises:
        NotFound: if ``raw`` is not a message identifier
    """
    try:
        return UUID(str(raw))
    except ValueError:
        raise NotFound(f"Message {raw!r} not found")


class DeliveryStateMachine:
    """markDelivered, markRead and softDelete, with their broadcasts."""

    def __init__(self, registry: SessionRegistry, session_factory=SessionLocal):
        self.registry = registry
        self.session_factory = session_factory

    async def mark_delivered(self, session: ChatSession, message_id) -> bool:
        """
        Move a message from sent to delivered on behalf of its recipient.

        A message that is already delivered or read is left alone and nothing
        is broadcast.

        Raises:
            NotFound: unknown message
            NotAuthorized: the caller is not the message's recipient
        """
        key = parse_message_id(message_id)
        result = await asyncio.to_thread(self._mark_delivered, key, session.user_id)
        if not result.changed:
            return False

        conversation_id = result.conversation[0]
        message_status_transitions_total.labels(status=MessageStatus.DELIVERED.value).inc()
        await self.registry.emit(
            [conversation_channel(conversation_id), user_channel(result.sender_id)],
            STATUS_UPDATE_EVENT,
            {"messageId": str(key), "status": MessageStatus.DELIVERED.value, "roomId": conversation_id}
        )
        return True

    def _mark_delivered(self, message_id: UUID, recipient_id: int) -> _Transition:
        db = self.session_factory()
        try:
            repository = Repository(db)
            message, conversation = self._load_message(repository, message_id)
            if recipient_id == message.sender_id or recipient_id not in conversation.participant_ids:
                raise NotAuthorized(f"User {recipient_id} cannot acknowledge message {message_id}")
            changed = repository.mark_message_delivered(message_id)
            return _Transition(changed, self._key(conversation), message.sender_id)
        finally:
            db.close()

    async def mark_read(self, session: ChatSession, conversation_ref: ConversationRef) -> int:
        """
        Mark every message the caller did not send in a conversation as read.

        The acknowledgement is always broadcast, even when nothing changed.

        Returns:
            Number of messages that moved to read

        Raises:
            NotFound: unknown conversation, or the caller is not a participant
        """
        updated, conversation = await asyncio.to_thread(self._mark_read, conversation_ref, session.user_id)
        conversation_id, low, high = conversation
        other_id = high if low == session.user_id else low

        if updated:
            message_status_transitions_total.labels(status=MessageStatus.READ.value).inc(updated)
        await self.registry.emit(
            [conversation_channel(conversation_id), user_channel(other_id)],
            READ_ACK_EVENT,
            {"roomId": conversation_id, "readerId": session.user_id}
        )
        logger.debug(
            f"User {session.user_id} read {updated} message(s) in conversation {conversation_id}",
            extra={"user_id": session.user_id, "conversation_id": conversation_id}
        )
        return updated

    def _mark_read(self, conversation_ref: ConversationRef, reader_id: int):
        conversation_id = ConversationResolver.as_conversation_id(conversation_ref)
        if conversation_id is None:
            raise NotFound(f"Conversation {conversation_ref!r} not found")

        db = self.session_factory()
        try:
            repository = Repository(db)
            conversation = repository.get_conversation_by_id(conversation_id)
            if conversation is None or reader_id not in conversation.participant_ids:
                raise NotFound(f"Conversation {conversation_ref!r} not found")
            updated = repository.mark_conversation_as_read(conversation_id, reader_id)
            return updated, self._key(conversation)
        finally:
            db.close()

    async def soft_delete(self, session: ChatSession, message_id) -> bool:
        """
        Delete a message on behalf of its sender.

        Raises:
            NotFound: unknown message
            NotAuthorized: the caller did not send the message
        """
        key = parse_message_id(message_id)
        try:
            result = await asyncio.to_thread(self._soft_delete, key, session.user_id)
        except NotAuthorized:
            audit_logger.log_authorization_denied(session.user_id, session.session_id, f"message:{key}", "delete")
            raise

        conversation_id, low, high = result.conversation
        audit_logger.log_message_deleted(session.user_id, session.session_id, str(key))
        await self.registry.emit(
            [conversation_channel(conversation_id), user_channel(low), user_channel(high)],
            DELETED_EVENT,
            {"messageId": str(key)}
        )
        return result.changed

    def _soft_delete(self, message_id: UUID, requester_id: int) -> _Transition:
        db = self.session_factory()
        try:
            repository = Repository(db)
            message, conversation = self._load_message(repository, message_id)
            if message.sender_id != requester_id:
                raise NotAuthorized(f"User {requester_id} cannot delete message {message_id}")
            changed = repository.soft_delete_message(message_id, requester_id)
            return _Transition(changed, self._key(conversation), message.sender_id)
        finally:
            db.close()

    @staticmethod
    def _load_message(repository: Repository, message_id: UUID) -> Tuple[Message, Conversation]:
        message = repository.get_message_by_id(message_id)
        conversation: Optional[Conversation] = message.conversation if message else None
        if message is None or conversation is None:
            raise NotFound(f"Message {message_id} not found")
        return message, conversation

    @staticmethod
    def _key(conversation: Conversation) -> Tuple[int, int, int]:
        return conversation.id, conversation.user_low_id, conversation.user_high_id
