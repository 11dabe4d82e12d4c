"""Exception types shared across the chat backend."""

from __future__ import annotations


class ChatDeskError(Exception):
    """Base error carrying the HTTP status the API layer should report."""

    status_code = 500

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationFailure(ChatDeskError):
    """Raised when a request is well formed JSON but semantically invalid."""

    status_code = 400


class PersistenceError(ChatDeskError):
    """Raised when the store fails to read or write."""

    status_code = 500


class CompletionError(RuntimeError):
    """Raised by completion clients when the upstream model call fails."""


class CompletionStalled(CompletionError):
    """Raised when the upstream stream produced nothing within the idle timeout."""


__all__ = [
    "ChatDeskError",
    "ValidationFailure",
    "PersistenceError",
    "CompletionError",
    "CompletionStalled",
]
