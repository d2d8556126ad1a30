"""
Structured error classification for backend calls.

The transport decides what kind of failure it saw at the point where it
still has the HTTP status and body, so callers never need to pattern
match on error text.
"""

from enum import Enum

# Statuses that indicate the request itself is wrong; never failed over.
CLIENT_AUTH_STATUSES = frozenset({401, 403})


class ErrorKind(str, Enum):
    """Failure categories returned by the transport."""

    CLIENT = "client"
    TRANSIENT = "transient"
    RETRIES_EXHAUSTED = "retries_exhausted"
    INVALID_RESPONSE = "invalid_response"
    CONFIGURATION = "configuration"


class LLMError(Exception):
    """A backend call that could not produce a response."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        status_code: int | None = None,
        body: str = "",
        model: str = "",
    ):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.body = body
        self.model = model

    @property
    def failover_eligible(self) -> bool:
        """Whether a secondary backend may be tried after this error."""
        if self.status_code in CLIENT_AUTH_STATUSES:
            return False
        return self.kind in (ErrorKind.TRANSIENT, ErrorKind.RETRIES_EXHAUSTED)

    def __repr__(self) -> str:
        return (
            f"LLMError(kind={self.kind.value!r}, status_code={self.status_code!r}, "
            f"message={str(self)!r})"
        )
