"""
Session registry for real-time delivery.

Tracks admitted WebSocket sessions, the logical channels each session has
joined, and which sessions belong to which user. All targeted emission is a
lookup in the channel membership table: ``user:<id>`` channels reach every
device of a user, ``conversation:<id>`` channels reach sessions that opened
that conversation.
"""
import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set
from uuid import uuid4

from duochat.api.metrics import (
    websocket_disconnections_total, websocket_events_sent_total,
    websocket_sessions_total, update_websocket_metrics
)
from duochat.core.audit_logger import audit_logger
from duochat.core.errors import SessionLimitReached
from duochat.core.security import Identity
from duochat.db.database import SessionLocal
from duochat.db.repository import Repository

logger = logging.getLogger(__name__)

PresenceListener = Callable[[int, bool], Awaitable[None]]


def user_channel(user_id: int) -> str:
    return f"user:{user_id}"


def conversation_channel(conversation_id: int) -> str:
    return f"conversation:{conversation_id}"


@dataclass(frozen=True)
class ChatSession:
    """
    Immutable record of one admitted connection.

    Created at admission and passed by reference into every handler.
    Channel membership is owned by the registry, not by the record.
    """
    user_id: int
    display_name: str
    connection: Any = field(compare=False, repr=False)
    ip_address: Optional[str] = None
    session_id: str = field(default_factory=lambda: uuid4().hex)


class SessionRegistry:
    """
    Tracks sessions per user (multiple devices supported), channel
    membership per session, and heartbeats.

    The user's stored online flag follows the number of live sessions: it is
    set when the first session is admitted and cleared when the last one is
    released, and presence is announced only on those transitions.
    """

    def __init__(
        self,
        session_factory=SessionLocal,
        max_sessions_per_user: int = 5,
        presence_listener: Optional[PresenceListener] = None
    ):
        self.session_factory = session_factory
        self.max_sessions_per_user = max_sessions_per_user
        self.presence_listener = presence_listener

        # {session_id: ChatSession}
        self.sessions: Dict[str, ChatSession] = {}

        # {user_id: Set[session_id]} - all sessions per user
        self.user_sessions: Dict[int, Set[str]] = defaultdict(set)

        # {channel: Set[session_id]} and the reverse index
        self.channel_members: Dict[str, Set[str]] = defaultdict(set)
        self.session_channels: Dict[str, Set[str]] = defaultdict(set)

        # {session_id: datetime} - last heartbeat received
        self.last_heartbeat: Dict[str, datetime] = {}

        self._background: Set[asyncio.Task] = set()
        # {user_id: Task} - latest online/offline transition per user
        self._transitions: Dict[int, asyncio.Task] = {}

        logger.info("SessionRegistry initialized")

    # Admission

    def can_admit(self, user_id: int) -> bool:
        return len(self.user_sessions.get(user_id, ())) < self.max_sessions_per_user

    async def admit(self, connection: Any, identity: Identity, ip_address: Optional[str] = None) -> ChatSession:
        """
        Register an authenticated connection.

        Joins the session to its own user channel. If this is the user's first
        live session, persists the online flag and announces presence to the
        user's contacts.

        Raises:
            SessionLimitReached: if the user already holds the maximum sessions
        """
        if not self.can_admit(identity.user_id):
            audit_logger.log_session_limit_reached(identity.user_id, ip_address, self.max_sessions_per_user)
            raise SessionLimitReached(
                f"User {identity.user_id} already has {self.max_sessions_per_user} sessions"
            )

        session = ChatSession(
            user_id=identity.user_id,
            display_name=identity.display_name,
            connection=connection,
            ip_address=ip_address
        )
        first_session = not self.user_sessions.get(identity.user_id)

        self.sessions[session.session_id] = session
        self.user_sessions[session.user_id].add(session.session_id)
        self.last_heartbeat[session.session_id] = datetime.now(timezone.utc)
        self.join(session, user_channel(session.user_id))

        websocket_sessions_total.labels(instance="api").inc()
        update_websocket_metrics(self)
        audit_logger.log_session_opened(session.user_id, session.session_id, ip_address)
        logger.info(
            f"User {session.user_id} admitted "
            f"(sessions for user: {len(self.user_sessions[session.user_id])})",
            extra={"user_id": session.user_id, "session_id": session.session_id}
        )

        if first_session:
            await asyncio.shield(self._schedule_transition(session.user_id, True))

        return session

    async def release(self, session: ChatSession, reason: str = "normal") -> bool:
        """
        Remove a session and all of its channel memberships.

        Safe to call more than once for the same session.

        Returns:
            True if this was the user's last session (the user went offline)
        """
        if self.sessions.pop(session.session_id, None) is None:
            return False

        for channel in self.session_channels.pop(session.session_id, set()):
            members = self.channel_members.get(channel)
            if members is not None:
                members.discard(session.session_id)
                if not members:
                    del self.channel_members[channel]

        self.last_heartbeat.pop(session.session_id, None)

        remaining = self.user_sessions.get(session.user_id, set())
        remaining.discard(session.session_id)
        went_offline = not remaining
        if went_offline:
            self.user_sessions.pop(session.user_id, None)

        websocket_disconnections_total.labels(instance="api", reason=reason).inc()
        update_websocket_metrics(self)
        audit_logger.log_session_closed(session.user_id, session.session_id, reason)
        logger.info(
            f"User {session.user_id} released ({reason}, remaining sessions: {len(remaining)})",
            extra={"user_id": session.user_id, "session_id": session.session_id}
        )

        if went_offline:
            await asyncio.shield(self._schedule_transition(session.user_id, False))

        return went_offline

    # Channel membership

    def join(self, session: ChatSession, channel: str) -> None:
        """Add a session to a channel."""
        if session.session_id not in self.sessions:
            return
        self.channel_members[channel].add(session.session_id)
        self.session_channels[session.session_id].add(channel)
        logger.debug(f"Session {session.session_id} joined {channel}")

    def is_member(self, session: ChatSession, channel: str) -> bool:
        return session.session_id in self.channel_members.get(channel, ())

    def is_online(self, user_id: int) -> bool:
        """True while the user holds at least one live session on this instance."""
        return bool(self.user_sessions.get(user_id))

    # Emission

    async def emit(
        self,
        channels: Iterable[str],
        event: str,
        data: Any,
        exclude_session_id: Optional[str] = None
    ) -> int:
        """
        Send one event to every session in any of ``channels``.

        A session that belongs to several of the channels receives the event
        once. Sessions whose connection fails are released.

        Returns:
            Number of sessions the event was written to
        """
        targets: List[str] = []
        seen: Set[str] = set()
        for channel in channels:
            for session_id in self.channel_members.get(channel, ()):
                if session_id == exclude_session_id or session_id in seen:
                    continue
                seen.add(session_id)
                targets.append(session_id)

        sent = 0
        for session_id in targets:
            session = self.sessions.get(session_id)
            if session is None:
                continue
            if await self.send(session, event, data):
                sent += 1
        return sent

    async def emit_to_user(self, user_id: int, event: str, data: Any) -> int:
        """Send an event to every session of a user."""
        return await self.emit([user_channel(user_id)], event, data)

    async def send(self, session: ChatSession, event: str, data: Any = None) -> bool:
        """
        Write one event frame to a single session.

        Returns:
            False if the connection failed (the session is then released)
        """
        frame = {"event": event, "data": data}
        try:
            await session.connection.send_json(frame)
        except Exception as e:
            logger.error(
                f"Error sending {event} to user {session.user_id}: {e}",
                extra={"user_id": session.user_id, "session_id": session.session_id}
            )
            self.spawn(self.release(session, reason="send_error"))
            return False
        websocket_events_sent_total.labels(event=event).inc()
        return True

    # Heartbeats

    def update_heartbeat(self, session: ChatSession) -> None:
        """Record that a session answered a ping."""
        if session.session_id in self.sessions:
            self.last_heartbeat[session.session_id] = datetime.now(timezone.utc)

    def get_stale_sessions(self, timeout_seconds: int = 40) -> List[ChatSession]:
        """Sessions that have not sent a heartbeat within ``timeout_seconds``."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=timeout_seconds)
        return [
            self.sessions[session_id]
            for session_id, last_beat in list(self.last_heartbeat.items())
            if last_beat < cutoff and session_id in self.sessions
        ]

    # Stats

    def get_session_count(self) -> int:
        return len(self.sessions)

    def get_user_count(self) -> int:
        return len(self.user_sessions)

    def get_user_sessions(self, user_id: int) -> List[ChatSession]:
        return [self.sessions[sid] for sid in self.user_sessions.get(user_id, ()) if sid in self.sessions]

    # Background work

    async def wait_idle(self) -> None:
        """Wait for pending background work (presence, push jobs, stale releases)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def spawn(self, coro) -> asyncio.Task:
        """Run ``coro`` as a tracked background task that ``wait_idle`` drains."""
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _schedule_transition(self, user_id: int, online: bool) -> asyncio.Task:
        """
        Queue an online/offline transition for a user.

        Transitions of the same user run one after another in the order they
        were scheduled, so contacts never see a reconnect as offline.
        """
        previous = self._transitions.get(user_id)
        task = self.spawn(self._apply_transition(user_id, online, previous))
        self._transitions[user_id] = task

        def _forget(done: asyncio.Task) -> None:
            if self._transitions.get(user_id) is done:
                del self._transitions[user_id]

        task.add_done_callback(_forget)
        return task

    async def _apply_transition(self, user_id: int, online: bool, previous: Optional[asyncio.Task]) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        await self._persist_online(user_id, online)
        await self._notify_presence(user_id, online)

    async def _persist_online(self, user_id: int, online: bool) -> None:
        """Best-effort write of the stored online flag."""
        def _write():
            db = self.session_factory()
            try:
                Repository(db).set_user_online(user_id, online)
            finally:
                db.close()

        try:
            await asyncio.to_thread(_write)
        except Exception as e:
            logger.error(f"Failed to persist online={online} for user {user_id}: {e}")

    async def _notify_presence(self, user_id: int, online: bool) -> None:
        if self.presence_listener is None:
            return
        try:
            await self.presence_listener(user_id, online)
        except Exception as e:
            logger.error(f"Presence broadcast failed for user {user_id}: {e}", exc_info=True)


async def heartbeat_monitor(registry: SessionRegistry, interval_seconds: int = 30, timeout_seconds: int = 40):
    """
    Background task to send heartbeat pings and close stale sessions.

    Sends a ping to every session each ``interval_seconds``. Sessions that
    have not answered with a pong within ``timeout_seconds`` are closed and
    released through the same path as a disconnect.
    """
    logger.info(f"Heartbeat monitor started (interval={interval_seconds}s, timeout={timeout_seconds}s)")

    while True:
        await asyncio.sleep(interval_seconds)

        for session in list(registry.sessions.values()):
            await registry.send(session, "ping")

        for session in registry.get_stale_sessions(timeout_seconds):
            logger.warning(
                f"Closing stale session for user {session.user_id}",
                extra={"user_id": session.user_id, "session_id": session.session_id}
            )
            try:
                await session.connection.close(code=1001, reason="Connection timeout")
            except Exception as e:
                logger.debug(f"Close of stale session {session.session_id} failed: {e}")
            await registry.release(session, reason="timeout")

        update_websocket_metrics(registry)
