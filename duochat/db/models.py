"""
SQLAlchemy ORM models for the duochat database.
Defines all entities: User, PushToken, Conversation, Message.
"""
import enum
import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Integer, DateTime, ForeignKey, Text, Float,
    Boolean, Enum as SQLEnum, Uuid, UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.orm import relationship
from duochat.db.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ENUM Types
class MessageType(str, enum.Enum):
    """Kind of message content."""
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"


class MessageStatus(str, enum.Enum):
    """Delivery lifecycle of a message: sent -> delivered -> read."""
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


# Models
class User(Base):
    """
    User entity. Owned by the credential service; the messaging engine only
    reads identity fields and writes ``is_online``.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(50), unique=True, nullable=False, index=True)
    avatar_url = Column(String(500), nullable=True)
    is_online = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    push_tokens = relationship("PushToken", back_populates="user", cascade="all, delete-orphan")


class PushToken(Base):
    """Device registration token for offline push notifications."""
    __tablename__ = "push_tokens"
    __table_args__ = (
        UniqueConstraint("user_id", "token", name="uq_push_token_user"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token = Column(String(512), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    user = relationship("User", back_populates="push_tokens")


class Conversation(Base):
    """
    Two-party conversation.

    Participants are stored ordered (low id, high id) so the unordered pair
    has exactly one key, and the unique constraint on that key is what keeps
    concurrent first-contact events from creating two conversations.
    """
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("user_low_id", "user_high_id", name="uq_conversation_pair"),
        CheckConstraint("user_low_id < user_high_id", name="ck_conversation_pair_order"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_low_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    user_high_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    last_message = Column(Text, nullable=True)  # Preview: sealed text or a type label, never plaintext
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    # Relationships
    messages = relationship("Message", back_populates="conversation")

    @property
    def participant_ids(self) -> tuple:
        return (self.user_low_id, self.user_high_id)

    def other_participant(self, user_id: int) -> int:
        return self.user_high_id if user_id == self.user_low_id else self.user_low_id


class Message(Base):
    """Message entity. Never physically deleted; ``is_deleted`` hides it."""
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False, index=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    content = Column(Text, nullable=False)  # Sealed text, or a URL for image/audio
    type = Column(SQLEnum(MessageType), default=MessageType.TEXT, nullable=False)
    duration = Column(Float, nullable=True)  # Seconds, audio only
    status = Column(SQLEnum(MessageStatus), default=MessageStatus.SENT, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    conversation = relationship("Conversation", back_populates="messages")
    sender = relationship("User")
