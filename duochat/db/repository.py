"""
Repository layer for database operations.
Provides high-level methods for the queries the messaging engine runs.
"""
from typing import Dict, Iterable, List, Optional, Set
from uuid import UUID
from sqlalchemy import or_, update
from sqlalchemy.orm import Session
from duochat.db.models import (
    User, PushToken, Conversation, Message, MessageStatus, MessageType, utcnow
)


def ordered_pair(user_a: int, user_b: int) -> tuple:
    """Canonical (low, high) key of an unordered participant pair."""
    return (user_a, user_b) if user_a < user_b else (user_b, user_a)


class Repository:
    """Repository class for database operations."""

    def __init__(self, db: Session):
        """
        Initialize repository with database session.

        Args:
            db: SQLAlchemy database session
        """
        self.db = db

    # User operations
    def get_user_by_username(self, username: str) -> Optional[User]:
        """Get user by username."""
        return self.db.query(User).filter(User.username == username).first()

    def get_users_by_ids(self, user_ids: Iterable[int]) -> Dict[int, User]:
        """Get users keyed by ID; unknown IDs are absent from the result."""
        ids = set(user_ids)
        if not ids:
            return {}
        users = self.db.query(User).filter(User.id.in_(ids)).all()
        return {user.id: user for user in users}

    def set_user_online(self, user_id: int, online: bool) -> None:
        """Persist the online flag for a user."""
        self.db.query(User).filter(User.id == user_id).update(
            {"is_online": online, "updated_at": utcnow()},
            synchronize_session=False
        )
        self.db.commit()

    # Push token operations
    def get_push_tokens(self, user_id: int) -> List[str]:
        """Get all push registration tokens for a user."""
        rows = self.db.query(PushToken.token).filter(PushToken.user_id == user_id).all()
        return [row.token for row in rows]

    def add_push_token(self, user_id: int, token: str) -> bool:
        """
        Register a push token for a user. Set semantics: adding an existing
        token is a no-op.

        Returns:
            True if the token was added, False if it was already registered
        """
        exists = self.db.query(PushToken).filter(
            PushToken.user_id == user_id,
            PushToken.token == token
        ).first()
        if exists:
            return False
        self.db.add(PushToken(user_id=user_id, token=token))
        self.db.commit()
        return True

    def remove_push_token(self, user_id: int, token: str) -> bool:
        """Unregister a push token. Returns True if a row was removed."""
        removed = self.db.query(PushToken).filter(
            PushToken.user_id == user_id,
            PushToken.token == token
        ).delete(synchronize_session=False)
        self.db.commit()
        return removed > 0

    # Conversation operations
    def get_conversation_by_id(self, conversation_id: int) -> Optional[Conversation]:
        """Get conversation by ID."""
        return self.db.query(Conversation).filter(Conversation.id == conversation_id).first()

    def get_conversation_by_pair(self, user_a: int, user_b: int) -> Optional[Conversation]:
        """Get the conversation between two users, in either order."""
        low, high = ordered_pair(user_a, user_b)
        return self.db.query(Conversation).filter(
            Conversation.user_low_id == low,
            Conversation.user_high_id == high
        ).first()

    def create_conversation(self, user_a: int, user_b: int, preview: str) -> Conversation:
        """
        Create the conversation for a pair and commit.

        Raises:
            sqlalchemy.exc.IntegrityError: if the pair already has a conversation
        """
        low, high = ordered_pair(user_a, user_b)
        now = utcnow()
        conversation = Conversation(
            user_low_id=low,
            user_high_id=high,
            last_message=preview,
            created_at=now,
            updated_at=now
        )
        self.db.add(conversation)
        self.db.commit()
        self.db.refresh(conversation)
        return conversation

    def get_user_conversations(self, user_id: int) -> List[Conversation]:
        """Get all conversations a user takes part in, most recently updated first."""
        return self.db.query(Conversation).filter(
            or_(Conversation.user_low_id == user_id, Conversation.user_high_id == user_id)
        ).order_by(Conversation.updated_at.desc()).all()

    def get_contact_ids(self, user_id: int) -> Set[int]:
        """Get the other participant of every conversation containing ``user_id``."""
        rows = self.db.query(Conversation.user_low_id, Conversation.user_high_id).filter(
            or_(Conversation.user_low_id == user_id, Conversation.user_high_id == user_id)
        ).all()
        return {high if low == user_id else low for low, high in rows}

    def update_conversation_preview(self, conversation: Conversation, preview: str) -> None:
        """Set the last-message preview and refresh the timestamp (no commit)."""
        conversation.last_message = preview
        conversation.updated_at = utcnow()

    # Message operations
    def create_message(
        self,
        conversation_id: int,
        sender_id: int,
        content: str,
        message_type: MessageType,
        duration: Optional[float] = None
    ) -> Message:
        """Add a new message with status SENT (no commit)."""
        message = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            type=message_type,
            duration=duration,
            status=MessageStatus.SENT,
            is_deleted=False,
            created_at=utcnow()
        )
        self.db.add(message)
        self.db.flush()
        return message

    def get_message_by_id(self, message_id: UUID) -> Optional[Message]:
        """Get message by ID."""
        return self.db.query(Message).filter(Message.id == message_id).first()

    def get_recent_messages(self, conversation_id: int, limit: int = 50) -> List[Message]:
        """Get the newest ``limit`` messages of a conversation, newest first."""
        return self.db.query(Message).filter(
            Message.conversation_id == conversation_id
        ).order_by(Message.created_at.desc()).limit(limit).all()

    def get_latest_message(self, conversation_id: int) -> Optional[Message]:
        """Get the newest message of a conversation."""
        return self.db.query(Message).filter(
            Message.conversation_id == conversation_id
        ).order_by(Message.created_at.desc()).first()

    def mark_message_delivered(self, message_id: UUID) -> bool:
        """
        Move a message from SENT to DELIVERED.

        The status guard lives in the UPDATE itself, so a message already
        delivered or read is never downgraded.

        Returns:
            True if the status changed
        """
        result = self.db.execute(
            update(Message)
            .where(Message.id == message_id, Message.status == MessageStatus.SENT)
            .values(status=MessageStatus.DELIVERED, updated_at=utcnow())
        )
        self.db.commit()
        return result.rowcount > 0

    def mark_conversation_as_read(self, conversation_id: int, reader_id: int) -> int:
        """
        Mark every message in a conversation that ``reader_id`` did not send
        as READ, whatever its current status.

        Returns:
            Number of messages marked as read
        """
        result = self.db.execute(
            update(Message)
            .where(
                Message.conversation_id == conversation_id,
                Message.sender_id != reader_id,
                Message.status != MessageStatus.READ
            )
            .values(status=MessageStatus.READ, updated_at=utcnow())
        )
        self.db.commit()
        return result.rowcount

    def soft_delete_message(self, message_id: UUID, sender_id: int) -> bool:
        """
        Flag a message as deleted if ``sender_id`` sent it.

        Returns:
            True if the message is (now) deleted by its sender
        """
        result = self.db.execute(
            update(Message)
            .where(Message.id == message_id, Message.sender_id == sender_id)
            .values(is_deleted=True, updated_at=utcnow())
        )
        self.db.commit()
        return result.rowcount > 0
