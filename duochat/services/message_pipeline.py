"""
Message send pipeline and history retrieval.

A send runs: validate -> seal text -> persist message and conversation
preview -> fan out plaintext to both participants -> queue pushes to offline
recipients. The steps after the database commit are not transactional with
it: if the process dies between persist and fan-out, the message is only
seen on the next history load. Push jobs run as background tasks with a
timeout and never hold up the sender.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import timezone
from typing import Dict, List, Optional, Tuple

from opentelemetry import trace
from sqlalchemy.exc import SQLAlchemyError

from duochat.api.metrics import (
    message_send_duration_seconds, message_send_failures_total,
    messages_persisted_total, push_notifications_total
)
from duochat.api.schemas import ChatMessageOut, ConversationListItem, ParticipantSummary
from duochat.api.websocket_manager import ChatSession, SessionRegistry, user_channel
from duochat.core.codec import ConfidentialityCodec
from duochat.core.config import settings
from duochat.core.errors import ChatError, CollaboratorFailure, InvalidMessage, PersistenceFailure
from duochat.db.database import SessionLocal
from duochat.db.models import Message, MessageType, User
from duochat.db.repository import Repository
from duochat.services.conversation_resolver import (
    START_OF_CONVERSATION, ConversationRef, ConversationResolver
)
from duochat.services.push_notifier import PushNotifier, push_body_for

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CHAT_MESSAGE_EVENT = "chat_message"
DELETED_PLACEHOLDER = "This message was deleted"

PREVIEW_LABELS = {
    MessageType.IMAGE: "📷 Image",
    MessageType.AUDIO: "🎤 Audio",
}


def preview_for(message_type: MessageType, stored_content: str) -> str:
    """Conversation preview: a label for media, the sealed text for text."""
    return PREVIEW_LABELS.get(message_type, stored_content)


@dataclass
class PersistedMessage:
    """Result of the persistence step, detached from the database session."""
    message: ChatMessageOut
    participant_ids: Tuple[int, int]
    recipient_tokens: Dict[int, List[str]] = field(default_factory=dict)


class MessagePipeline:
    """Persists, fans out and reads back chat messages."""

    def __init__(
        self,
        registry: SessionRegistry,
        resolver: ConversationResolver,
        codec: ConfidentialityCodec,
        push_notifier: Optional[PushNotifier] = None,
        session_factory=SessionLocal,
        history_limit: int = 50,
        push_timeout: Optional[float] = None
    ):
        self.registry = registry
        self.resolver = resolver
        self.codec = codec
        self.push_notifier = push_notifier
        self.session_factory = session_factory
        self.history_limit = history_limit
        self.push_timeout = push_timeout or settings.push_timeout_seconds

    # Send

    @staticmethod
    def validate(body, message_type, duration=None) -> Tuple[MessageType, Optional[float]]:
        """
        Check an inbound message.

        Returns:
            The parsed type and the duration to store (audio only)

        Raises:
            InvalidMessage: unknown type, empty content, or a negative duration
        """
        try:
            kind = MessageType(message_type)
        except ValueError:
            raise InvalidMessage(f"Unsupported message type: {message_type!r}")

        if not isinstance(body, str) or not body.strip():
            raise InvalidMessage("Message content is empty")

        if kind is not MessageType.AUDIO or duration is None:
            return kind, None
        if duration < 0:
            raise InvalidMessage("Audio duration cannot be negative")
        return kind, float(duration)

    async def send(
        self,
        session: ChatSession,
        conversation_ref: ConversationRef,
        body: str,
        message_type: str = "text",
        duration: Optional[float] = None,
        client_id: Optional[str] = None
    ) -> ChatMessageOut:
        """
        Run the full send pipeline for one message.

        Raises:
            InvalidMessage: the message was rejected before any state change
            InvalidParticipant / NotFound: the conversation reference did not resolve
            PersistenceFailure: the message could not be stored
        """
        kind, duration = self.validate(body, message_type, duration)
        started = time.perf_counter()

        with tracer.start_as_current_span("message.send") as span:
            span.set_attribute("message.type", kind.value)
            span.set_attribute("sender.id", session.user_id)

            stored = self.codec.encrypt(body) if kind is MessageType.TEXT else body

            try:
                persisted = await asyncio.to_thread(
                    self._persist, session.user_id, conversation_ref, stored, body, kind, duration, client_id
                )
            except PersistenceFailure:
                message_send_failures_total.inc()
                raise

            messages_persisted_total.labels(type=kind.value).inc()
            span.set_attribute("conversation.id", persisted.message.room_id)

            await self.registry.emit(
                [user_channel(user_id) for user_id in persisted.participant_ids],
                CHAT_MESSAGE_EVENT,
                persisted.message.to_event()
            )
            self._schedule_push(session, persisted, kind)

        message_send_duration_seconds.observe(time.perf_counter() - started)
        logger.info(
            f"Message {persisted.message.message_id} sent to conversation {persisted.message.room_id}",
            extra={"user_id": session.user_id, "session_id": session.session_id,
                   "conversation_id": persisted.message.room_id}
        )
        return persisted.message

    def _persist(
        self,
        sender_id: int,
        conversation_ref: ConversationRef,
        stored_content: str,
        plaintext: str,
        kind: MessageType,
        duration: Optional[float],
        client_id: Optional[str]
    ) -> PersistedMessage:
        db = self.session_factory()
        try:
            repository = Repository(db)
            conversation = self.resolver.resolve_reference(repository, conversation_ref, sender_id)

            message = repository.create_message(
                conversation_id=conversation.id,
                sender_id=sender_id,
                content=stored_content,
                message_type=kind,
                duration=duration
            )
            repository.update_conversation_preview(conversation, preview_for(kind, stored_content))
            db.commit()

            users = repository.get_users_by_ids(conversation.participant_ids)
            recipient_tokens = {
                user_id: repository.get_push_tokens(user_id)
                for user_id in conversation.participant_ids
                if user_id != sender_id
            }
            rendered = self.render(message, users.get(sender_id), client_id=client_id, plaintext=plaintext)
            return PersistedMessage(
                message=rendered,
                participant_ids=conversation.participant_ids,
                recipient_tokens=recipient_tokens
            )
        except ChatError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to persist message from user {sender_id}: {e}")
            raise PersistenceFailure("Message could not be stored") from e
        finally:
            db.close()

    def _schedule_push(self, session: ChatSession, persisted: PersistedMessage, kind: MessageType) -> None:
        """
        Queue at most one push per offline recipient that has registered
        devices. Recipients are picked now; the jobs run in the background.
        """
        if self.push_notifier is None:
            return

        data = {
            "conversationId": persisted.message.room_id,
            "senderId": session.user_id,
            "type": kind.value,
        }
        for recipient_id, tokens in persisted.recipient_tokens.items():
            if not tokens or self.registry.is_online(recipient_id):
                continue
            self.registry.spawn(
                self._push(recipient_id, tokens, session.display_name, push_body_for(kind.value), data)
            )

    async def _push(self, recipient_id: int, tokens: List[str], title: str, body: str, data: dict) -> None:
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self.push_notifier.notify, tokens, title, body, data),
                timeout=self.push_timeout
            )
            push_notifications_total.labels(outcome="queued").inc()
        except asyncio.TimeoutError:
            push_notifications_total.labels(outcome="failed").inc()
            logger.warning(
                f"Push to user {recipient_id} timed out after {self.push_timeout}s",
                extra={"user_id": recipient_id}
            )
        except CollaboratorFailure as e:
            push_notifications_total.labels(outcome="failed").inc()
            logger.warning(f"Push to user {recipient_id} failed: {e}", extra={"user_id": recipient_id})
        except Exception as e:
            push_notifications_total.labels(outcome="failed").inc()
            logger.error(f"Unexpected push error for user {recipient_id}: {e}", exc_info=True)

    # History

    async def load_history(self, conversation_id: int, limit: Optional[int] = None) -> List[ChatMessageOut]:
        """
        The most recent ``limit`` messages of a conversation, oldest first.

        Deleted messages carry the placeholder text. Sender names and avatars
        come from the current user records.
        """
        return await asyncio.to_thread(self._load_history, conversation_id, limit or self.history_limit)

    def _load_history(self, conversation_id: int, limit: int) -> List[ChatMessageOut]:
        db = self.session_factory()
        try:
            repository = Repository(db)
            messages = repository.get_recent_messages(conversation_id, limit)
            messages.reverse()
            senders = repository.get_users_by_ids({message.sender_id for message in messages})
            return [self.render(message, senders.get(message.sender_id)) for message in messages]
        finally:
            db.close()

    def render(
        self,
        message: Message,
        sender: Optional[User],
        client_id: Optional[str] = None,
        plaintext: Optional[str] = None
    ) -> ChatMessageOut:
        """Client view of a stored message; content is never ciphertext."""
        if message.is_deleted:
            content = DELETED_PLACEHOLDER
        elif plaintext is not None:
            content = plaintext
        elif message.type is MessageType.TEXT:
            content = self.codec.decrypt(message.content)
        else:
            content = message.content

        return ChatMessageOut(
            message_id=str(message.id),
            content=content,
            sender_id=message.sender_id,
            sender_name=sender.username if sender else "Unknown",
            sender_avatar=sender.avatar_url if sender else None,
            timestamp=message.created_at.replace(tzinfo=timezone.utc),
            room_id=message.conversation_id,
            type=message.type.value,
            duration=message.duration,
            is_deleted=message.is_deleted,
            status=message.status.value,
            client_id=client_id
        )

    # Conversation list

    def list_conversations(self, repository: Repository, user_id: int) -> List[ConversationListItem]:
        """
        The user's conversations with a readable preview of the latest
        message. Conversations whose counterpart no longer exists are skipped.
        """
        conversations = repository.get_user_conversations(user_id)
        others = repository.get_users_by_ids(c.other_participant(user_id) for c in conversations)

        items = []
        for conversation in conversations:
            other = others.get(conversation.other_participant(user_id))
            if other is None:
                continue

            latest = repository.get_latest_message(conversation.id)
            if latest is None:
                preview, is_deleted = START_OF_CONVERSATION, False
            elif latest.is_deleted:
                preview, is_deleted = DELETED_PLACEHOLDER, True
            elif latest.type is MessageType.TEXT:
                preview, is_deleted = self.codec.decrypt(latest.content), False
            else:
                preview, is_deleted = PREVIEW_LABELS[latest.type], False

            items.append(ConversationListItem(
                id=conversation.id,
                other_user=ParticipantSummary(
                    id=other.id,
                    username=other.username,
                    avatar_url=other.avatar_url,
                    is_online=other.is_online
                ),
                last_message=preview,
                last_message_is_deleted=is_deleted,
                updated_at=conversation.updated_at.replace(tzinfo=timezone.utc)
            ))
        return items
