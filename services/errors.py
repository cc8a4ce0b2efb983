from __future__ import annotations

from typing import Optional

MAX_BODY_CHARS = 2000


def truncate(text: str, limit: int = MAX_BODY_CHARS) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}... ({len(text) - limit} more characters)"


class ArchiverError(Exception):
    """Base class for every error raised by the archiver core."""


class TransportError(ArchiverError):
    """Connection, DNS or timeout failure. Never retried."""


class RemoteError(ArchiverError):
    """Non-success HTTP status returned by the remote service."""

    def __init__(
        self,
        status: int,
        message: str,
        code: Optional[str] = None,
        body: str = "",
    ):
        self.status = status
        self.code = code
        self.message = message
        self.body = body
        detail = f"{code}: {message}" if code else message
        super().__init__(f"request failed with status {status}: {detail}")


class RateLimitError(RemoteError):
    """Rate limiting persisted past the retry budget."""


class DecodeError(ArchiverError):
    """Payload did not match the expected shape."""

    def __init__(self, message: str, payload: str = ""):
        self.payload = payload
        if payload:
            message = f"{message}\nPayload: {truncate(payload)}"
        super().__init__(message)


class CredentialError(ArchiverError):
    """Refreshing the access token failed."""


class StoreVersionError(ArchiverError):
    """The database was written by an unknown schema version."""
