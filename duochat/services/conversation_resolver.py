"""
Conversation identity resolution.

Maps an unordered pair of users to their single conversation, creating it on
first contact. The pair key carries a unique constraint in storage; when two
first-contact events race, the loser's insert fails and it re-reads the
winner's row.
"""
import asyncio
import logging
from typing import Optional, Tuple, Union

from sqlalchemy.exc import IntegrityError

from duochat.core.errors import InvalidParticipant, NotFound
from duochat.db.database import SessionLocal
from duochat.db.models import Conversation
from duochat.db.repository import Repository

logger = logging.getLogger(__name__)

# Preview of a conversation that has no messages yet
START_OF_CONVERSATION = "Start of conversation"

COMPOSITE_SEPARATOR = "_"

ConversationRef = Union[int, str]


def parse_composite(token: str) -> Tuple[int, int]:
    """
    Parse a provisional ``"<idA>_<idB>"`` room key.

    Raises:
        InvalidParticipant: if the token is not two integer ids
    """
    parts = str(token).split(COMPOSITE_SEPARATOR)
    if len(parts) != 2:
        raise InvalidParticipant(f"Malformed conversation key: {token!r}")
    try:
        return int(parts[0]), int(parts[1])
    except ValueError:
        raise InvalidParticipant(f"Malformed conversation key: {token!r}")


class ConversationResolver:
    """Get-or-create over unordered user pairs."""

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    # Synchronous core, run inside a unit of work

    def get_or_create(self, repository: Repository, user_a: int, user_b: int) -> Conversation:
        """
        Return the conversation for ``{user_a, user_b}``, creating it if needed.

        Raises:
            InvalidParticipant: if the users are the same or either is unknown
        """
        if user_a == user_b:
            raise InvalidParticipant("Cannot open a conversation with yourself")

        conversation = repository.get_conversation_by_pair(user_a, user_b)
        if conversation is not None:
            return conversation

        known = repository.get_users_by_ids([user_a, user_b])
        missing = {user_a, user_b} - set(known)
        if missing:
            raise InvalidParticipant(f"Unknown user(s): {sorted(missing)}")

        try:
            conversation = repository.create_conversation(user_a, user_b, START_OF_CONVERSATION)
            logger.info(f"Created conversation {conversation.id} for users {user_a} & {user_b}")
            return conversation
        except IntegrityError:
            repository.db.rollback()
            winner = repository.get_conversation_by_pair(user_a, user_b)
            if winner is None:
                raise
            logger.info(f"Concurrent creation for users {user_a} & {user_b}, using conversation {winner.id}")
            return winner

    def get_or_create_composite(self, repository: Repository, token: str, requester_id: int) -> Conversation:
        """
        Resolve a provisional ``"<idA>_<idB>"`` key.

        Raises:
            InvalidParticipant: if the key is malformed or does not include the requester
        """
        user_a, user_b = parse_composite(token)
        if requester_id not in (user_a, user_b):
            raise InvalidParticipant("Conversation key does not include the requester")
        return self.get_or_create(repository, user_a, user_b)

    def resolve_reference(self, repository: Repository, ref: ConversationRef, requester_id: int) -> Conversation:
        """
        Resolve a client-supplied conversation reference: a canonical id or a
        provisional composite key.

        Raises:
            NotFound: if a canonical id does not exist or the requester is not in it
            InvalidParticipant: if a composite key is malformed or invalid
        """
        conversation_id = self.as_conversation_id(ref)
        if conversation_id is None:
            return self.get_or_create_composite(repository, str(ref), requester_id)

        conversation = repository.get_conversation_by_id(conversation_id)
        if conversation is None or requester_id not in conversation.participant_ids:
            raise NotFound(f"Conversation {ref!r} not found")
        return conversation

    @staticmethod
    def as_conversation_id(ref: ConversationRef) -> Optional[int]:
        if isinstance(ref, bool):
            return None
        if isinstance(ref, int):
            return ref
        text = str(ref).strip()
        if text.isdigit():
            return int(text)
        return None

    # Async entry points

    async def resolve(self, user_a: int, user_b: int) -> int:
        """Idempotent get-or-create; returns the conversation id."""
        return await asyncio.to_thread(self._run, self.get_or_create, user_a, user_b)

    async def resolve_composite(self, token: str, requester_id: int) -> int:
        """Resolve a provisional room key; returns the conversation id."""
        return await asyncio.to_thread(self._run, self.get_or_create_composite, token, requester_id)

    def _run(self, fn, *args) -> int:
        db = self.session_factory()
        try:
            return fn(Repository(db), *args).id
        finally:
            db.close()
