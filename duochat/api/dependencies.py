"""
Dependency injection functions for FastAPI.
Provides database sessions, the messaging engine and bearer authentication.
"""
from typing import Generator

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from duochat.core.errors import AuthRejected
from duochat.core.security import Identity, verify_token
from duochat.db.database import SessionLocal
from duochat.services.chat_engine import ChatEngine
from duochat.services.minio_client import BlobStorage, get_blob_storage

security = HTTPBearer(auto_error=False)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency that provides a database session.
    Automatically closes the session when request completes.

    Yields:
        Database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_engine(request: Request) -> ChatEngine:
    """The process-wide messaging engine created at startup."""
    return request.app.state.engine


def get_storage() -> BlobStorage:
    return get_blob_storage()


def get_current_identity(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> Identity:
    """
    Bearer token authentication dependency.

    Raises:
        HTTPException: 401 if the token is missing, invalid or expired
    """
    try:
        return verify_token(credentials.credentials if credentials else None)
    except AuthRejected as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"}
        )
