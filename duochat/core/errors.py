"""
Error taxonomy for the messaging engine.

Each error carries a stable ``code`` that is sent back to clients in
``error`` events. Handlers decide per class whether the error is surfaced,
swallowed, or closes the connection.
"""


class ChatError(Exception):
    """Base class for all messaging engine errors."""
    code = "CHAT_ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class AuthRejected(ChatError):
    """Missing, malformed, expired or wrongly signed credential."""
    code = "AUTH_REJECTED"


class InvalidParticipant(ChatError):
    """Unknown user id, or a user trying to talk to themselves."""
    code = "INVALID_PARTICIPANT"


class InvalidMessage(ChatError):
    """Empty text body or unrecognized message type."""
    code = "INVALID_MESSAGE"


class NotAuthorized(ChatError):
    """Action on a resource the caller does not own."""
    code = "NOT_AUTHORIZED"


class NotFound(ChatError):
    """Reference to a conversation or message that does not exist."""
    code = "NOT_FOUND"


class CollaboratorFailure(ChatError):
    """Push or blob storage call failed."""
    code = "COLLABORATOR_FAILURE"


class PersistenceFailure(ChatError):
    """A database write in the message pipeline did not complete."""
    code = "PERSISTENCE_FAILURE"


class SessionLimitReached(ChatError):
    """The user already holds the maximum number of concurrent sessions."""
    code = "SESSION_LIMIT_REACHED"
