from __future__ import annotations

"""Error taxonomy shared by the server-side lifecycle and the client coordination layer."""

from typing import Optional


class ChatRelayError(Exception):
    """Base class for all chatrelay errors."""


class ValidationError(ChatRelayError):
    """A required identifier or field is missing or malformed."""


class AuthError(ChatRelayError):
    def __init__(self, message: str = "Authentication required", *, forbidden: bool = False) -> None:
        super().__init__(message)
        self.forbidden = forbidden


class StorageError(ChatRelayError):
    """Underlying persistence failure. Safe to retry; lifecycle updates are idempotent."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None) -> None:
        detail = f"{operation} failed"
        if cause is not None:
            detail = f"{detail}: {cause}"
        super().__init__(detail)
        self.operation = operation
        self.cause = cause


class NotResumableError(ChatRelayError):
    def __init__(self, stream_id: str, status: Optional[str] = None) -> None:
        if status:
            message = f"Stream {stream_id} is not resumable (status={status})"
        else:
            message = f"Stream {stream_id} is not resumable"
        super().__init__(message)
        self.stream_id = stream_id
        self.status = status


class StreamNotFoundError(NotResumableError):
    def __init__(self, stream_id: str) -> None:
        super().__init__(stream_id)
        self.args = (f"Stream {stream_id} not found",)


class CoordinatorMisuseError(ChatRelayError):
    """Capture attempted while no regeneration is tracked. Absorbed, never surfaced."""


class RegenerationInProgressError(ChatRelayError):
    def __init__(self, active_message_id: str, requested_message_id: str) -> None:
        super().__init__(
            f"Regeneration already in progress for {active_message_id}; refusing {requested_message_id}"
        )
        self.active_message_id = active_message_id
        self.requested_message_id = requested_message_id


class GenerationError(ChatRelayError):
    """The server reported a generation failure inside the data stream."""
