"""
Targeted presence broadcast.

Online/offline changes for a user are addressed individually to the user
channel of each person who shares a conversation with them, so presence
traffic scales with the number of contacts, not the number of connected users.
"""
import asyncio
import logging
from typing import Set

from duochat.api.metrics import presence_events_total
from duochat.db.database import SessionLocal
from duochat.db.repository import Repository

logger = logging.getLogger(__name__)

PRESENCE_EVENT = "user_status_change"


class PresenceBroadcaster:
    """Computes relevant contacts and emits presence events to them."""

    def __init__(self, registry, session_factory=SessionLocal):
        self.registry = registry
        self.session_factory = session_factory

    async def relevant_contacts(self, user_id: int) -> Set[int]:
        """Users sharing at least one conversation with ``user_id``."""
        def _load():
            db = self.session_factory()
            try:
                return Repository(db).get_contact_ids(user_id)
            finally:
                db.close()

        return await asyncio.to_thread(_load)

    async def broadcast_presence(self, user_id: int, online: bool) -> int:
        """
        Tell each connected contact that ``user_id`` went online or offline.

        Returns:
            Number of sessions the event reached
        """
        contacts = await self.relevant_contacts(user_id)
        payload = {"userId": user_id, "isOnline": online}

        reached = 0
        for contact_id in contacts:
            if not self.registry.is_online(contact_id):
                continue
            reached += await self.registry.emit_to_user(contact_id, PRESENCE_EVENT, payload)

        state = "online" if online else "offline"
        presence_events_total.labels(state=state).inc(reached)
        logger.info(
            f"Presence {state} for user {user_id}: {len(contacts)} contacts, {reached} sessions",
            extra={"user_id": user_id}
        )
        return reached
