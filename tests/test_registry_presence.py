"""
Tests for session admission, channel emission and targeted presence.
"""
import asyncio

import pytest
from sqlalchemy.orm import Session

from duochat.core.errors import SessionLimitReached
from duochat.core.security import Identity
from duochat.db.database import SessionLocal
from duochat.db.models import User
from duochat.services.chat_engine import ChatEngine
from tests.fakes import BrokenConnection, FakeConnection


def stored_online(user_id: int) -> bool:
    db = SessionLocal()
    try:
        return db.query(User).filter(User.id == user_id).one().is_online
    finally:
        db.close()


class TestSessionRegistry:
    """Tests for admission, release and the online flag."""

    async def test_online_flag_follows_session_count(self, chat_engine: ChatEngine, users: dict, connect):
        """Test the stored online flag follows the live session count."""
        registry = chat_engine.registry
        alice = users["alice"]

        phone, _ = await connect(alice)
        laptop, _ = await connect(alice)
        await registry.wait_idle()
        assert stored_online(alice.id) is True
        assert len(registry.get_user_sessions(alice.id)) == 2

        assert await registry.release(phone) is False
        await registry.wait_idle()
        assert stored_online(alice.id) is True
        assert registry.is_online(alice.id)

        assert await registry.release(laptop) is True
        await registry.wait_idle()
        assert stored_online(alice.id) is False
        assert not registry.is_online(alice.id)

    async def test_release_is_idempotent(self, chat_engine: ChatEngine, users: dict, connect):
        """Test releasing a session twice is harmless."""
        session, _ = await connect(users["alice"])

        assert await chat_engine.registry.release(session) is True
        assert await chat_engine.registry.release(session) is False
        assert chat_engine.registry.get_session_count() == 0
        assert chat_engine.registry.channel_members == {}

    async def test_session_limit(self, test_db: Session, codec, users: dict):
        """Test admission stops at the per-user session limit."""
        chat_engine = ChatEngine(session_factory=SessionLocal, codec=codec, max_sessions_per_user=2)
        alice = users["alice"]
        identity = Identity(alice.id, alice.username)

        await chat_engine.registry.admit(FakeConnection(), identity)
        await chat_engine.registry.admit(FakeConnection(), identity)
        with pytest.raises(SessionLimitReached):
            await chat_engine.registry.admit(FakeConnection(), identity)

        assert chat_engine.registry.get_session_count() == 2
        await chat_engine.registry.wait_idle()

    async def test_emit_reaches_each_session_once(self, chat_engine: ChatEngine, users: dict, connect):
        """Test a session in several target channels gets one copy."""
        registry = chat_engine.registry
        session, connection = await connect(users["alice"])
        registry.join(session, "conversation:1")

        sent = await registry.emit(["user:%d" % users["alice"].id, "conversation:1"], "ping", None)

        assert sent == 1
        assert connection.events().count("ping") == 1

    async def test_failed_send_releases_session(self, chat_engine: ChatEngine, users: dict):
        """Test a failed write releases the session."""
        registry = chat_engine.registry
        alice = users["alice"]
        session = await registry.admit(BrokenConnection(), Identity(alice.id, alice.username))

        assert await registry.send(session, "ping") is False
        await registry.wait_idle()

        assert not registry.is_online(alice.id)

    async def test_stale_sessions(self, chat_engine: ChatEngine, users: dict, connect):
        """Test sessions past the heartbeat timeout are reported stale."""
        registry = chat_engine.registry
        session, _ = await connect(users["alice"])

        assert registry.get_stale_sessions(timeout_seconds=40) == []
        assert registry.get_stale_sessions(timeout_seconds=-1) == [session]


class TestPresence:
    """Presence is addressed to contacts only."""

    async def test_presence_reaches_contacts_only(self, chat_engine: ChatEngine, users: dict, connect):
        """Test presence goes to contacts and nobody else."""
        alice, bob, carol = users["alice"], users["bob"], users["carol"]
        await chat_engine.resolver.resolve(alice.id, bob.id)

        _, bob_connection = await connect(bob)
        _, carol_connection = await connect(carol)
        alice_session, _ = await connect(alice)

        assert bob_connection.payloads("user_status_change") == [{"userId": alice.id, "isOnline": True}]
        assert carol_connection.payloads("user_status_change") == []

        await chat_engine.registry.release(alice_session)

        assert bob_connection.payloads("user_status_change")[-1] == {"userId": alice.id, "isOnline": False}
        assert carol_connection.payloads("user_status_change") == []

    async def test_second_device_does_not_rebroadcast(self, chat_engine: ChatEngine, users: dict, connect):
        """Test a second device does not announce presence again."""
        alice, bob = users["alice"], users["bob"]
        await chat_engine.resolver.resolve(alice.id, bob.id)
        _, bob_connection = await connect(bob)

        await connect(alice)
        await connect(alice)

        assert len(bob_connection.payloads("user_status_change")) == 1

    async def test_relevant_contacts(self, chat_engine: ChatEngine, users: dict):
        """Test contacts are the users sharing a conversation."""
        alice, bob, carol, dave = users["alice"], users["bob"], users["carol"], users["dave"]
        await chat_engine.resolver.resolve(alice.id, bob.id)
        await chat_engine.resolver.resolve(carol.id, alice.id)

        assert await chat_engine.presence.relevant_contacts(alice.id) == {bob.id, carol.id}
        assert await chat_engine.presence.relevant_contacts(dave.id) == set()

    async def test_quick_reconnect_announces_in_order(self, chat_engine: ChatEngine, users: dict, connect):
        """Test a quick reconnect is announced offline then online."""
        alice, bob = users["alice"], users["bob"]
        registry = chat_engine.registry
        await chat_engine.resolver.resolve(alice.id, bob.id)
        _, bob_connection = await connect(bob)
        old_session, _ = await connect(alice)
        broadcast = registry.presence_listener

        async def slow_offline(user_id, online):
            if not online:
                await asyncio.sleep(0.05)
            return await broadcast(user_id, online)

        registry.presence_listener = slow_offline
        await asyncio.gather(registry.release(old_session), connect(alice))
        await registry.wait_idle()

        assert bob_connection.payloads("user_status_change") == [
            {"userId": alice.id, "isOnline": True},
            {"userId": alice.id, "isOnline": False},
            {"userId": alice.id, "isOnline": True},
        ]
        assert stored_online(alice.id) is True
        assert registry.is_online(alice.id)
