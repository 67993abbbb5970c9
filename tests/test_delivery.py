"""
Tests for delivery status transitions and soft deletion.
"""
from uuid import UUID, uuid4

import pytest

from duochat.core.errors import NotAuthorized, NotFound
from duochat.db.database import SessionLocal
from duochat.db.models import Message, MessageStatus
from duochat.services.chat_engine import ChatEngine


def stored_message(message_id: str) -> Message:
    db = SessionLocal()
    try:
        return db.query(Message).filter(Message.id == UUID(message_id)).one()
    finally:
        db.close()


@pytest.fixture
async def chat(chat_engine: ChatEngine, users: dict, connect):
    """Alice and Bob online, both joined to their conversation, one message from Alice."""
    alice, bob = users["alice"], users["bob"]
    alice_session, alice_connection = await connect(alice)
    bob_session, bob_connection = await connect(bob)
    await chat_engine.join_private_chat(alice_session, other_user_id=bob.id)
    await chat_engine.join_private_chat(bob_session, other_user_id=alice.id)
    sent = await chat_engine.pipeline.send(alice_session, f"{alice.id}_{bob.id}", "hello")
    return {
        "alice": (alice_session, alice_connection),
        "bob": (bob_session, bob_connection),
        "message": sent,
    }


class TestMarkDelivered:

    async def test_recipient_marks_delivered(self, chat_engine: ChatEngine, chat: dict):
        """Test the recipient moves a message to delivered and both sides hear it."""
        bob_session, bob_connection = chat["bob"]
        _, alice_connection = chat["alice"]
        message = chat["message"]

        assert await chat_engine.delivery.mark_delivered(bob_session, message.message_id) is True

        assert stored_message(message.message_id).status is MessageStatus.DELIVERED
        expected = {"messageId": message.message_id, "status": "delivered", "roomId": message.room_id}
        assert alice_connection.payloads("message:status_update") == [expected]
        assert bob_connection.payloads("message:status_update") == [expected]

    async def test_sender_cannot_mark_own_message(self, chat_engine: ChatEngine, chat: dict):
        """Test the sender cannot mark their own message delivered."""
        alice_session, alice_connection = chat["alice"]

        with pytest.raises(NotAuthorized):
            await chat_engine.delivery.mark_delivered(alice_session, chat["message"].message_id)

        assert stored_message(chat["message"].message_id).status is MessageStatus.SENT
        assert alice_connection.payloads("message:status_update") == []

    async def test_unknown_or_malformed_ids(self, chat_engine: ChatEngine, chat: dict):
        """Test unknown and malformed message ids are not found."""
        bob_session, _ = chat["bob"]

        with pytest.raises(NotFound):
            await chat_engine.delivery.mark_delivered(bob_session, str(uuid4()))
        with pytest.raises(NotFound):
            await chat_engine.delivery.mark_delivered(bob_session, "not-a-message-id")


class TestMarkRead:

    async def test_delivered_then_read_then_delivered_again(self, chat_engine: ChatEngine, chat: dict):
        """Test a read message is never downgraded to delivered."""
        bob_session, _ = chat["bob"]
        _, alice_connection = chat["alice"]
        message = chat["message"]

        await chat_engine.delivery.mark_delivered(bob_session, message.message_id)
        assert await chat_engine.delivery.mark_read(bob_session, message.room_id) == 1
        assert await chat_engine.delivery.mark_delivered(bob_session, message.message_id) is False

        assert stored_message(message.message_id).status is MessageStatus.READ
        assert len(alice_connection.payloads("message:status_update")) == 1
        assert alice_connection.payloads("conversation:read_ack") == [
            {"roomId": message.room_id, "readerId": bob_session.user_id}
        ]

    async def test_read_skips_readers_own_messages(self, chat_engine: ChatEngine, chat: dict):
        """Test reading only affects messages from the other participant."""
        alice_session, _ = chat["alice"]
        bob_session, _ = chat["bob"]
        message = chat["message"]
        reply = await chat_engine.pipeline.send(bob_session, message.room_id, "hi alice")

        assert await chat_engine.delivery.mark_read(alice_session, message.room_id) == 1

        assert stored_message(message.message_id).status is MessageStatus.SENT
        assert stored_message(reply.message_id).status is MessageStatus.READ

    async def test_read_from_sent_skips_delivered(self, chat_engine: ChatEngine, chat: dict):
        """Test a sent message can go straight to read."""
        bob_session, _ = chat["bob"]
        message = chat["message"]

        await chat_engine.delivery.mark_read(bob_session, message.room_id)

        assert stored_message(message.message_id).status is MessageStatus.READ

    async def test_ack_is_sent_even_when_nothing_changed(self, chat_engine: ChatEngine, chat: dict):
        """Test the read ack goes out even when no message changed."""
        alice_session, alice_connection = chat["alice"]
        _, bob_connection = chat["bob"]
        room_id = chat["message"].room_id

        assert await chat_engine.delivery.mark_read(alice_session, room_id) == 0

        assert bob_connection.payloads("conversation:read_ack") == [{"roomId": room_id, "readerId": alice_session.user_id}]

    async def test_outsider_cannot_mark_read(self, chat_engine: ChatEngine, chat: dict, users: dict, connect):
        """Test a non-participant cannot mark a conversation read."""
        carol_session, _ = await connect(users["carol"])

        with pytest.raises(NotFound):
            await chat_engine.delivery.mark_read(carol_session, chat["message"].room_id)

        assert stored_message(chat["message"].message_id).status is MessageStatus.SENT


class TestSoftDelete:

    async def test_sender_deletes(self, chat_engine: ChatEngine, chat: dict):
        """Test the sender can soft-delete a message."""
        alice_session, _ = chat["alice"]
        _, bob_connection = chat["bob"]
        message = chat["message"]

        assert await chat_engine.delivery.soft_delete(alice_session, message.message_id) is True

        assert stored_message(message.message_id).is_deleted is True
        assert bob_connection.payloads("message:deleted") == [{"messageId": message.message_id}]

    async def test_non_sender_delete_is_refused_silently(self, chat_engine: ChatEngine, chat: dict):
        """Test a non-sender delete changes nothing and emits nothing."""
        bob_session, bob_connection = chat["bob"]
        _, alice_connection = chat["alice"]
        message = chat["message"]

        with pytest.raises(NotAuthorized):
            await chat_engine.delivery.soft_delete(bob_session, message.message_id)

        assert stored_message(message.message_id).is_deleted is False
        assert alice_connection.payloads("message:deleted") == []
        assert bob_connection.payloads("message:deleted") == []
