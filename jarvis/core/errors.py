"""Exception classes for the chat client.

Only transport, stream and auth failures ever reach the user. Validation
and summarization failures are absorbed where they occur.
"""

from __future__ import annotations

from typing import Any


class JarvisError(Exception):
    """Base exception for chat client errors."""

    def __init__(
        self,
        message: str,
        details: Any = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        self.status_code = status_code


class ValidationError(JarvisError):
    """Raised for empty input or a malformed stored turn or stream chunk."""


class TransportError(JarvisError):
    """Raised on network failure or a non-2xx response."""


class NotFoundError(TransportError):
    """Raised when a conversation does not exist or is not accessible."""


class StreamInterruptedError(JarvisError):
    """Raised when the model stream ends with an error marker."""


class SummarizationFailure(JarvisError):
    """Raised when the summarizer cannot produce a usable summary."""


class AuthFailure(TransportError):
    """Raised when the backend rejects the session token (401/403)."""
