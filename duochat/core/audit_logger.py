"""
Audit logging for security events.
Logs rejected connections, session lifecycle, and denied actions on
messages so that forensics can reconstruct who did what.
"""
import logging
import json
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from enum import Enum

logger = logging.getLogger(__name__)


class AuditEventType(str, Enum):
    """Types of security audit events."""
    AUTH_REJECTED = "auth_rejected"
    SESSION_OPENED = "session_opened"
    SESSION_CLOSED = "session_closed"
    SESSION_LIMIT_REACHED = "session_limit_reached"
    AUTHZ_DENIED = "authorization_denied"
    MESSAGE_DELETED = "message_deleted"


class AuditLogger:
    """
    Security audit logger.

    Every entry carries timestamp, event type, user and session identifiers,
    source address, and free-form metadata.
    """

    @staticmethod
    def log_event(
        event_type: AuditEventType,
        user_id: Optional[int] = None,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        success: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None
    ) -> None:
        """Log a security audit event."""
        audit_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type.value,
            "success": success,
            "user_id": user_id,
            "session_id": session_id,
            "ip_address": ip_address,
            "metadata": metadata or {},
            "error_message": error_message
        }

        log_level = logging.INFO if success else logging.WARNING
        logger.log(
            log_level,
            f"AUDIT: {event_type.value} | user={user_id} | session={session_id} | "
            f"success={success} | {json.dumps(audit_entry, default=str)}"
        )

    @staticmethod
    def log_auth_rejected(ip_address: Optional[str], reason: str) -> None:
        """Log a connection refused at the credential check."""
        AuditLogger.log_event(
            event_type=AuditEventType.AUTH_REJECTED,
            ip_address=ip_address,
            success=False,
            error_message=reason
        )

    @staticmethod
    def log_session_opened(user_id: int, session_id: str, ip_address: Optional[str]) -> None:
        AuditLogger.log_event(
            event_type=AuditEventType.SESSION_OPENED,
            user_id=user_id,
            session_id=session_id,
            ip_address=ip_address
        )

    @staticmethod
    def log_session_closed(user_id: int, session_id: str, reason: str) -> None:
        AuditLogger.log_event(
            event_type=AuditEventType.SESSION_CLOSED,
            user_id=user_id,
            session_id=session_id,
            metadata={"reason": reason}
        )

    @staticmethod
    def log_session_limit_reached(user_id: int, ip_address: Optional[str], limit: int) -> None:
        AuditLogger.log_event(
            event_type=AuditEventType.SESSION_LIMIT_REACHED,
            user_id=user_id,
            ip_address=ip_address,
            success=False,
            metadata={"limit": limit}
        )

    @staticmethod
    def log_authorization_denied(user_id: int, session_id: str, resource: str, action: str) -> None:
        """Log an action refused because the caller does not own the resource."""
        AuditLogger.log_event(
            event_type=AuditEventType.AUTHZ_DENIED,
            user_id=user_id,
            session_id=session_id,
            success=False,
            metadata={"resource": resource, "action": action}
        )

    @staticmethod
    def log_message_deleted(user_id: int, session_id: str, message_id: str) -> None:
        AuditLogger.log_event(
            event_type=AuditEventType.MESSAGE_DELETED,
            user_id=user_id,
            session_id=session_id,
            metadata={"message_id": message_id}
        )


# Global audit logger instance
audit_logger = AuditLogger()
