"""Exception hierarchy for the calendar sync engine.

Fatal errors (``FetchError`` and its subclasses) abort a whole sync
invocation and propagate to the caller. ``RecurrenceConversionError`` and
``PersistenceError`` are local to one event: the reconciler catches them,
logs the external identifier and carries on with the rest of the batch.
"""

from __future__ import annotations

import re


class CalsyncError(Exception):
    """Base class for every error raised by calsync."""


class ConfigError(CalsyncError):
    """Raised when calsync configuration is missing, malformed, or invalid."""


class FetchError(CalsyncError):
    """A provider or network failure while retrieving a page."""


class ProviderRequestError(FetchError):
    """The provider answered with a non-success HTTP status."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Provider request failed ({status_code}): {message}")


class SyncTokenExpiredError(FetchError):
    """The stored continuation token is no longer accepted; a full sync is required."""


class RecurrenceConversionError(CalsyncError):
    """A recurrence pattern or rule could not be converted."""


class PersistenceError(CalsyncError):
    """A storage operation for a single event failed."""


class FeedNotFoundError(CalsyncError):
    """No feed with the requested id is registered."""


_CREDENTIAL_PATTERNS = (
    (re.compile(r"(?i)\b(bearer)\s+[A-Za-z0-9\-._~+/]+=*"), r"\1 [REDACTED]"),
    (
        re.compile(
            r"(?i)\b(access_token|refresh_token|client_secret|\$?deltatoken|\$?skiptoken)"
            r"=([^\s&,;]+)"
        ),
        r"\1=[REDACTED]",
    ),
    (
        re.compile(
            r"""(?i)(['"]?(?:access_token|refresh_token|client_secret)['"]?\s*:\s*)"""
            r"""(['"]).*?\2"""
        ),
        r'\1"[REDACTED]"',
    ),
)


def redact_credentials(message: str) -> str:
    """Redact bearer tokens and continuation tokens from a message."""
    redacted = message
    for pattern, replacement in _CREDENTIAL_PATTERNS:
        redacted = pattern.sub(replacement, redacted)
    return redacted


def short_error_message(exc: BaseException, *, limit: int = 200) -> str:
    """Single-line, redacted, length-capped rendering of *exc* for storage and logs."""
    text = " ".join(str(exc).split()) or exc.__class__.__name__
    return redact_credentials(text)[:limit]
