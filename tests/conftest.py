"""
Pytest configuration and fixtures for testing.
Provides the test database, engine wiring with in-memory connections,
fake collaborators, and a test client.
"""
import os

# Must be set before duochat.core.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_duochat.db")
os.environ.setdefault("PUSH_ENABLED", "false")
os.environ.setdefault("LOG_JSON", "false")

import pytest
from typing import Generator
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from duochat.core.codec import ConfidentialityCodec
from duochat.core.security import Identity, create_access_token
from duochat.db.database import Base, SessionLocal, engine
from duochat.db.models import User
from duochat.services.chat_engine import ChatEngine
from tests.fakes import FakeConnection, FakePushNotifier

TEST_MESSAGE_KEY = bytes.fromhex("11" * 32)


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a fresh database for each test.
    Automatically creates and destroys tables.
    """
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def users(test_db: Session) -> dict:
    """Seed alice, bob, carol and dave; returns them keyed by username."""
    for name in ("alice", "bob", "carol", "dave"):
        test_db.add(User(username=name, avatar_url=f"https://cdn.example.com/{name}.png"))
    test_db.commit()
    return {user.username: user for user in test_db.query(User).all()}


@pytest.fixture
def codec() -> ConfidentialityCodec:
    return ConfidentialityCodec(TEST_MESSAGE_KEY)


@pytest.fixture
def push() -> FakePushNotifier:
    return FakePushNotifier()


@pytest.fixture
async def chat_engine(test_db, codec, push):
    """Engine wired to the test database; waits for background writes on teardown."""
    chat_engine = ChatEngine(session_factory=SessionLocal, codec=codec, push_notifier=push)
    yield chat_engine
    await chat_engine.registry.wait_idle()


@pytest.fixture
def connect(chat_engine):
    """Admit a user over a FakeConnection; returns (session, connection)."""
    async def _connect(user: User):
        connection = FakeConnection()
        session = await chat_engine.registry.admit(connection, Identity(user.id, user.username))
        return session, connection
    return _connect


@pytest.fixture
def token_for():
    def _token_for(user: User) -> str:
        return create_access_token(user.id, user.username)
    return _token_for


@pytest.fixture(scope="function")
def test_client(test_db: Session) -> Generator[TestClient, None, None]:
    """Test client running the application lifespan against the test database."""
    from duochat.main import app

    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
