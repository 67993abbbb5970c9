"""
Tests for conversation get-or-create over unordered user pairs.
"""
import pytest
from sqlalchemy.orm import Session

from duochat.core.errors import InvalidParticipant, NotFound
from duochat.db.database import SessionLocal
from duochat.db.models import Conversation
from duochat.db.repository import Repository
from duochat.services.conversation_resolver import (
    START_OF_CONVERSATION, ConversationResolver, parse_composite
)


class StaleLookupRepository(Repository):
    """Misses the first pair lookup, as if another creator committed in between."""

    def __init__(self, db):
        super().__init__(db)
        self.lookups = 0

    def get_conversation_by_pair(self, user_a, user_b):
        self.lookups += 1
        if self.lookups == 1:
            return None
        return super().get_conversation_by_pair(user_a, user_b)


class TestGetOrCreate:
    """Tests for ConversationResolver.get_or_create."""

    def test_creates_conversation_on_first_contact(self, test_db: Session, users: dict):
        """Test the first contact creates a conversation."""
        resolver = ConversationResolver(SessionLocal)
        alice, bob = users["alice"], users["bob"]

        conversation = resolver.get_or_create(Repository(test_db), alice.id, bob.id)

        assert conversation.participant_ids == tuple(sorted((alice.id, bob.id)))
        assert conversation.last_message == START_OF_CONVERSATION

    def test_is_idempotent_and_symmetric(self, test_db: Session, users: dict):
        """Test either order of the pair yields the same conversation."""
        resolver = ConversationResolver(SessionLocal)
        repository = Repository(test_db)
        alice, bob = users["alice"], users["bob"]

        first = resolver.get_or_create(repository, alice.id, bob.id)
        again = resolver.get_or_create(repository, alice.id, bob.id)
        reversed_pair = resolver.get_or_create(repository, bob.id, alice.id)

        assert first.id == again.id == reversed_pair.id
        assert test_db.query(Conversation).count() == 1

    def test_self_chat_is_rejected(self, test_db: Session, users: dict):
        """Test a conversation with yourself is refused."""
        resolver = ConversationResolver(SessionLocal)

        with pytest.raises(InvalidParticipant):
            resolver.get_or_create(Repository(test_db), users["alice"].id, users["alice"].id)

        assert test_db.query(Conversation).count() == 0

    def test_unknown_user_is_rejected(self, test_db: Session, users: dict):
        """Test a conversation with an unknown user is refused."""
        resolver = ConversationResolver(SessionLocal)

        with pytest.raises(InvalidParticipant):
            resolver.get_or_create(Repository(test_db), users["alice"].id, 9999)

        assert test_db.query(Conversation).count() == 0

    def test_concurrent_creation_uses_winner(self, test_db: Session, users: dict):
        """Test a lost creation race returns the existing conversation."""
        resolver = ConversationResolver(SessionLocal)
        alice, bob = users["alice"], users["bob"]
        winner = Repository(test_db).create_conversation(bob.id, alice.id, START_OF_CONVERSATION)

        loser_db = SessionLocal()
        try:
            repository = StaleLookupRepository(loser_db)
            conversation = resolver.get_or_create(repository, alice.id, bob.id)
        finally:
            loser_db.close()

        assert conversation.id == winner.id
        assert repository.lookups == 2
        assert test_db.query(Conversation).count() == 1


class TestReferences:
    """Tests for composite keys and canonical ids."""

    @pytest.mark.parametrize("token", ["1", "a_b", "1_2_3", "", "_"])
    def test_parse_composite_rejects_malformed_keys(self, token):
        """Test malformed composite keys are rejected."""
        with pytest.raises(InvalidParticipant):
            parse_composite(token)

    def test_composite_key_resolves_pair(self, test_db: Session, users: dict):
        """Test a composite key resolves to its pair's conversation."""
        resolver = ConversationResolver(SessionLocal)
        alice, bob = users["alice"], users["bob"]

        conversation = resolver.get_or_create_composite(Repository(test_db), f"{bob.id}_{alice.id}", alice.id)

        assert set(conversation.participant_ids) == {alice.id, bob.id}

    def test_composite_key_must_include_requester(self, test_db: Session, users: dict):
        """Test a composite key must name the requester."""
        resolver = ConversationResolver(SessionLocal)
        alice, bob, carol = users["alice"], users["bob"], users["carol"]

        with pytest.raises(InvalidParticipant):
            resolver.get_or_create_composite(Repository(test_db), f"{alice.id}_{bob.id}", carol.id)

    def test_canonical_id_requires_participation(self, test_db: Session, users: dict):
        """Test canonical ids resolve for participants only."""
        resolver = ConversationResolver(SessionLocal)
        repository = Repository(test_db)
        alice, bob, carol = users["alice"], users["bob"], users["carol"]
        conversation = resolver.get_or_create(repository, alice.id, bob.id)

        assert resolver.resolve_reference(repository, str(conversation.id), bob.id).id == conversation.id
        with pytest.raises(NotFound):
            resolver.resolve_reference(repository, conversation.id, carol.id)
        with pytest.raises(NotFound):
            resolver.resolve_reference(repository, 4242, alice.id)

    async def test_async_resolve_returns_same_id(self, test_db: Session, users: dict):
        """Test user-id and composite resolution agree."""
        resolver = ConversationResolver(SessionLocal)
        alice, bob = users["alice"], users["bob"]

        first = await resolver.resolve(alice.id, bob.id)
        second = await resolver.resolve_composite(f"{alice.id}_{bob.id}", bob.id)

        assert first == second
