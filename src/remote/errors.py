from typing import Any, Optional


class ChatSyncError(Exception):
    """Base class for every failure the engine surfaces to its callers."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, detail: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail


class NetworkError(ChatSyncError):
    """Transport failure or unexpected server status; retrying may help."""


class NotFoundError(ChatSyncError):
    """The entity no longer exists on the server."""


class ValidationError(ChatSyncError):
    """The request was rejected as invalid; retrying will not help."""


class ConflictError(ChatSyncError):
    """Local state collided with server state and must be re-fetched."""
