"""
API endpoint implementations.
Defines the REST endpoints for conversations, users and uploads, and the
WebSocket endpoint that carries the real-time chat protocol.
"""
import asyncio
import logging
from typing import List, Optional

from fastapi import (
    APIRouter, Depends, File, HTTPException, Query, Response, UploadFile,
    WebSocket, WebSocketDisconnect, status
)
from sqlalchemy.orm import Session

from duochat.api.dependencies import get_current_identity, get_db, get_engine, get_storage
from duochat.api.events import EventDispatcher
from duochat.api.metrics import websocket_rejections_total
from duochat.api.schemas import (
    ConversationListItem, PushTokenRequest, UploadResponse, UserSearchResponse
)
from duochat.core.audit_logger import audit_logger
from duochat.core.config import settings
from duochat.core.errors import AuthRejected, CollaboratorFailure, SessionLimitReached
from duochat.core.security import Identity, verify_token
from duochat.db.repository import Repository
from duochat.services.chat_engine import ChatEngine
from duochat.services.minio_client import BlobStorage

logger = logging.getLogger(__name__)

# Create routers
conversations_router = APIRouter()
users_router = APIRouter()
uploads_router = APIRouter()
websocket_router = APIRouter()


# Conversation Endpoints
@conversations_router.get("", response_model=List[ConversationListItem], status_code=status.HTTP_200_OK)
def list_conversations(
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    engine: ChatEngine = Depends(get_engine)
):
    """
    List the caller's conversations, most recently active first.

    Each item carries the other participant and a readable preview of the
    latest message.

    Example Response:
        ```json
        [
            {
                "id": 3,
                "otherUser": {"id": 2, "username": "bob", "avatar_url": null, "is_online": true},
                "lastMessage": "see you tomorrow",
                "lastMessageIsDeleted": false,
                "updatedAt": "2025-12-02T10:30:00Z"
            }
        ]
        ```
    """
    items = engine.pipeline.list_conversations(Repository(db), identity.user_id)
    logger.info(f"User {identity.user_id} listed {len(items)} conversations", extra={"user_id": identity.user_id})
    return items


# User Endpoints
@users_router.post("/me/push-tokens", status_code=status.HTTP_201_CREATED)
def register_push_token(
    request: PushTokenRequest,
    response: Response,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db)
):
    """
    Register a device token for offline push notifications.

    Registering the same token twice is a no-op (200 instead of 201).
    """
    added = Repository(db).add_push_token(identity.user_id, request.token)
    if not added:
        response.status_code = status.HTTP_200_OK
    return {"registered": True}


@users_router.delete("/me/push-tokens", status_code=status.HTTP_204_NO_CONTENT)
def unregister_push_token(
    request: PushTokenRequest,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db)
):
    """Remove a device token; removing an unknown token is not an error."""
    Repository(db).remove_push_token(identity.user_id, request.token)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@users_router.get("/search", response_model=UserSearchResponse)
def search_user(
    username: str = Query(..., min_length=1, description="Exact username"),
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db)
):
    """
    Find a user by exact username, to start a private chat with them.

    Raises:
        HTTPException: 404 Not Found if no user has that username
    """
    user = Repository(db).get_user_by_username(username.strip())
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return UserSearchResponse(id=user.id, username=user.username, is_online=user.is_online)


# Upload Endpoints
@uploads_router.post("", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_file(
    file: UploadFile = File(...),
    identity: Identity = Depends(get_current_identity),
    storage: BlobStorage = Depends(get_storage)
):
    """
    Upload an image or audio file and return its durable URL.

    The URL is then sent as the content of an image/audio ``chat_message``.

    Raises:
        HTTPException: 400 if the file is empty
        HTTPException: 413 if the file exceeds the upload limit
        HTTPException: 502 if blob storage fails
    """
    data = await file.read()
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No file uploaded")
    if len(data) > settings.upload_max_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds {settings.upload_max_bytes} bytes"
        )

    try:
        url = await asyncio.to_thread(
            storage.upload, data, file.content_type or "application/octet-stream", file.filename or ""
        )
    except CollaboratorFailure as e:
        logger.error(f"Upload failed for user {identity.user_id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="File upload failed")

    logger.info(f"User {identity.user_id} uploaded {len(data)} bytes", extra={"user_id": identity.user_id})
    return UploadResponse(url=url)


# WebSocket Endpoint
@websocket_router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="JWT access token for authentication")
):
    """
    WebSocket endpoint for the real-time chat protocol.

    Frames are JSON objects ``{"event": <name>, "data": <payload>}`` in both
    directions. Events from one connection are handled one at a time, in the
    order received.

    Connection Flow:
        1. Client connects with token: ws://api/ws?token={jwt}
        2. Server validates token and accepts/rejects connection
        3. Server sends ``login_success {userId, username}``
        4. Client sends chat events (chat_message, join_private_chat, ...)
        5. Server sends ``ping`` every 30s, client must answer ``pong``
        6. Client disconnects or times out (40s without pong)

    Error Codes:
        - 4001: Authentication failed (invalid token)
        - 4002: Session limit reached
        - 1001: Connection timeout (no heartbeat)
    """
    engine: ChatEngine = websocket.app.state.engine
    ip_address = websocket.client.host if websocket.client else None

    try:
        identity = verify_token(token)
    except AuthRejected as e:
        audit_logger.log_auth_rejected(ip_address, e.message)
        websocket_rejections_total.labels(reason="auth").inc()
        logger.warning(f"WebSocket authentication failed: {e.message}")
        await websocket.close(code=4001, reason="Authentication failed")
        return

    if not engine.registry.can_admit(identity.user_id):
        audit_logger.log_session_limit_reached(identity.user_id, ip_address, engine.registry.max_sessions_per_user)
        websocket_rejections_total.labels(reason="session_limit").inc()
        await websocket.close(code=4002, reason="Session limit reached")
        return

    await websocket.accept()
    try:
        session = await engine.registry.admit(websocket, identity, ip_address)
    except SessionLimitReached:
        websocket_rejections_total.labels(reason="session_limit").inc()
        await websocket.close(code=4002, reason="Session limit reached")
        return

    dispatcher = EventDispatcher(engine)
    reason = "normal"
    try:
        await engine.registry.send(session, "login_success", {
            "userId": identity.user_id,
            "username": identity.display_name,
        })

        while True:
            raw = await websocket.receive_text()
            await dispatcher.dispatch_raw(session, raw)

    except WebSocketDisconnect:
        logger.info(
            f"User {identity.display_name} (ID: {identity.user_id}) disconnected from WebSocket",
            extra={"user_id": identity.user_id, "session_id": session.session_id}
        )
    except Exception as e:
        reason = "error"
        logger.error(f"WebSocket error for user {identity.user_id}: {e}", exc_info=True)
    finally:
        await engine.registry.release(session, reason=reason)
