"""
PetNest error types.

Everything raised by the SDK derives from PetNestError so callers can catch
one base class; the subclasses map to the states a chat UI has to render.
"""

from typing import Any, Optional


class PetNestError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = details


class AuthError(PetNestError):
    def __init__(self, message: str, code: str = "auth_error"):
        super().__init__(code, message)


class Unauthenticated(AuthError):
    """No usable credential. `redirect_to` is the sign-in location to send the user to."""

    def __init__(self, message: str = "Not signed in", redirect_to: Optional[str] = None):
        super().__init__(message, code="unauthenticated")
        self.redirect_to = redirect_to


class RefreshDenied(AuthError):
    def __init__(self, message: str = "Credential refresh was rejected"):
        super().__init__(message, code="refresh_denied")


class HttpError(PetNestError):
    def __init__(self, status_code: int, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("http_error", message, details)
        self.status_code = status_code


class ApiError(PetNestError):
    """The API answered 2xx but flagged the call as unsuccessful."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("api_error", message, details)


class TransportDisconnected(PetNestError):
    def __init__(self, message: str = "Realtime connection is down"):
        super().__init__("transport_disconnected", message)


class InvalidConversation(PetNestError):
    def __init__(self, conversation_id: Any):
        super().__init__("invalid_conversation", f"Invalid conversation id: {conversation_id!r}")
        self.conversation_id = conversation_id


class HistoryLoadFailed(PetNestError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__("history_load_failed", message)
        self.status_code = status_code


class MetadataUnavailable(PetNestError):
    def __init__(self, message: str = "Conversation metadata unavailable"):
        super().__init__("metadata_unavailable", message)
