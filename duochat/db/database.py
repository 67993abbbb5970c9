"""
Database connection and session management.
Provides SQLAlchemy engine, session factory, and base class.
"""
import logging
import os
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from duochat.core.config import settings

logger = logging.getLogger(__name__)

# Production connection pool settings
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "20"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
DB_POOL_PRE_PING = os.getenv("DB_POOL_PRE_PING", "true").lower() == "true"
DB_POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "3600"))  # 1 hour


def build_engine(database_url: str) -> Engine:
    """
    Create an engine for ``database_url``.

    SQLite connections are shared with worker threads, so same-thread
    checking is disabled there; other backends get a sized pool.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=settings.log_level == "DEBUG"
        )
    return create_engine(
        database_url,
        pool_size=DB_POOL_SIZE,
        max_overflow=DB_MAX_OVERFLOW,
        pool_pre_ping=DB_POOL_PRE_PING,
        pool_recycle=DB_POOL_RECYCLE,
        echo=settings.log_level == "DEBUG"
    )


engine = build_engine(settings.database_url)

# Sessions keep loaded attributes after commit; results are handed back
# to the event loop once the worker thread is done with the session.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

# Create Base class for models
Base = declarative_base()


def init_db() -> None:
    """
    Initialize database by creating all tables.
    Should be called once during application setup.
    """
    from duochat.db import models  # noqa: F401  (registers models with Base)
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created successfully")


def seed_db() -> None:
    """
    Seed database with demo users.
    Creates alice, bob and carol when the users table is empty.
    """
    from duochat.db.models import User

    db = SessionLocal()
    try:
        existing_users = db.query(User).count()
        if existing_users > 0:
            logger.info(f"Database already seeded ({existing_users} users exist)")
            return

        demo_users = [User(username=name) for name in ("alice", "bob", "carol")]
        db.add_all(demo_users)
        db.commit()
        logger.info(f"Database seeded successfully with {len(demo_users)} demo users")

    except Exception as e:
        db.rollback()
        logger.error(f"Error seeding database: {e}")
        raise
    finally:
        db.close()
