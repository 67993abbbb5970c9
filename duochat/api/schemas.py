"""
Pydantic schemas for WebSocket event payloads and REST responses.
Field aliases match the camelCase keys the mobile client sends and expects.
"""
from datetime import datetime, timezone
from typing import List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Inbound WebSocket payloads
class ChatMessageIn(BaseModel):
    """
    Payload of a ``chat_message`` event.

    Example:
        ```json
        {"content": "hello", "roomId": 12, "type": "text", "clientId": "tmp-1"}
        ```
    ``roomId`` is either a conversation id or a provisional ``"<idA>_<idB>"`` key.
    """
    model_config = ConfigDict(populate_by_name=True)

    content: Optional[str] = Field(None, description="Message text, or uploaded file URL")
    room_id: Union[int, str] = Field(..., alias="roomId", description="Conversation reference")
    type: str = Field("text", description="text, image or audio")
    duration: Optional[float] = Field(None, description="Audio length in seconds")
    client_id: Optional[str] = Field(None, alias="clientId", max_length=100, description="Client-side id echoed back")


class JoinPrivateChatIn(BaseModel):
    """Payload of ``join_private_chat``: the other user, or a provisional room key."""
    model_config = ConfigDict(populate_by_name=True)

    other_user_id: Optional[int] = Field(None, alias="otherUserId")
    room_id: Optional[Union[int, str]] = Field(None, alias="roomId")


class RoomRef(BaseModel):
    """Payload carrying a conversation id (``conversation:read``, typing)."""
    model_config = ConfigDict(populate_by_name=True)

    room_id: Union[int, str] = Field(..., alias="roomId")


class MessageRef(BaseModel):
    """Payload of ``message:delivered`` and ``message:delete``."""
    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(..., alias="messageId")
    room_id: Optional[Union[int, str]] = Field(None, alias="roomId")


# Outbound WebSocket payloads
class ChatMessageOut(BaseModel):
    """A message as rendered to clients: plaintext content, never ciphertext."""
    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(..., alias="_id")
    content: Optional[str] = None
    sender_id: int
    sender_name: str
    sender_avatar: Optional[str] = None
    timestamp: datetime
    room_id: int = Field(..., alias="roomId")
    type: str
    duration: Optional[float] = None
    is_deleted: bool = Field(False, alias="isDeleted")
    status: str
    client_id: Optional[str] = Field(None, alias="clientId")

    def to_event(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class WSError(BaseModel):
    """WebSocket event: Error notification sent to the offending session only."""
    error: str = Field(..., description="Error message")
    code: Optional[str] = Field(None, description="Error code")
    event: Optional[str] = Field(None, description="Inbound event that failed")
    timestamp: datetime = Field(default_factory=_utcnow, description="Event timestamp")


# REST schemas
class ParticipantSummary(BaseModel):
    """The other side of a conversation."""
    id: int
    username: str
    avatar_url: Optional[str] = None
    is_online: bool


class ConversationListItem(BaseModel):
    """
    One row of the conversation list.

    Attributes:
        id: Conversation ID
        other_user: The counterpart
        last_message: Readable preview of the latest message
        last_message_is_deleted: Whether the latest message was deleted
        updated_at: Last activity
    """
    model_config = ConfigDict(populate_by_name=True)

    id: int
    other_user: ParticipantSummary = Field(..., alias="otherUser")
    last_message: str = Field(..., alias="lastMessage")
    last_message_is_deleted: bool = Field(False, alias="lastMessageIsDeleted")
    updated_at: datetime = Field(..., alias="updatedAt")


class PushTokenRequest(BaseModel):
    """Device token registration request."""
    token: str = Field(..., min_length=1, max_length=512)


class UserSearchResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    username: str
    is_online: bool = Field(..., alias="isOnline")


class UploadResponse(BaseModel):
    """Durable URL of an uploaded file, used as image/audio message content."""
    url: str


class HistoryPage(BaseModel):
    """Payload of ``private_chat_ready``."""
    model_config = ConfigDict(populate_by_name=True)

    room_id: int = Field(..., alias="roomId")
    history: List[ChatMessageOut]
