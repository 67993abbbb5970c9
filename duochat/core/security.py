"""
Credential verification for WebSocket and REST callers.
Uses python-jose for JWT token generation and validation.

Token issuance belongs to the credential service; ``create_access_token``
produces tokens with the same claims for tests and local tooling.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from jose import jwt, JWTError
from duochat.core.config import settings
from duochat.core.errors import AuthRejected


@dataclass(frozen=True)
class Identity:
    """Verified caller identity attached to a session."""
    user_id: int
    display_name: str


def create_access_token(user_id: int, username: str, expires_minutes: Optional[int] = None) -> str:
    """
    Create a signed JWT with the claims the credential service issues.

    Args:
        user_id: User ID to encode in the token
        username: Display name to encode in the token
        expires_minutes: Lifetime override (defaults to settings)

    Returns:
        Encoded JWT string
    """
    now = datetime.now(timezone.utc)
    lifetime = expires_minutes if expires_minutes is not None else settings.access_token_expire_minutes
    payload = {
        "id": user_id,
        "username": username,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=lifetime)).timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode and validate a JWT access token.

    Args:
        token: JWT token string

    Returns:
        Decoded payload if valid, None if invalid or expired
    """
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def verify_token(token: Optional[str]) -> Identity:
    """
    Verify a bearer token and return the identity it carries.

    Raises:
        AuthRejected: if the token is missing, malformed, expired or lacks claims
    """
    if not token:
        raise AuthRejected("No token provided")

    payload = decode_access_token(token)
    if not payload:
        raise AuthRejected("Invalid or expired token")

    user_id = payload.get("id")
    username = payload.get("username")
    if user_id is None or not username:
        raise AuthRejected("Invalid token payload")

    try:
        user_id = int(user_id)
    except (TypeError, ValueError):
        raise AuthRejected("Invalid token payload")

    return Identity(user_id=user_id, display_name=str(username))
