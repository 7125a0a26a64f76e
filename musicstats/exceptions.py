"""
Exception classes for Music-Stats.

Every failure raised inside the package derives from MusicStatsError so the
session layer and the command line interface can catch all of them with one
except clause while still distinguishing the failure modes.

Exception Hierarchy:
    MusicStatsError (base)
        ConfigError - Missing client credentials or tokens
        AuthError - Token exchange or refresh rejected
        TransportError - Google Drive unreachable or returned non-2xx
        ParseError - Exported document is not valid JSON or has the wrong shape
        PersistenceError - The local snapshot file could not be written
"""

from typing import Any, Dict, Optional


class MusicStatsError(Exception):
    """
    Base exception for all Music-Stats errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional context (status codes, paths).
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return the error message for display."""
        return self.message


class ConfigError(MusicStatsError):
    """
    Raised when cloud sync is missing a prerequisite.

    Common causes:
        - No Google OAuth client id configured
        - No refresh token and no cached access token

    Never escapes the session boundary: the sync engine and the credential
    manager turn it into a failed result.
    """
    pass


class AuthError(MusicStatsError):
    """
    Raised when the Google token endpoint rejects an exchange or refresh,
    or answers without an access token.

    Example:
        raise AuthError(
            "Failed to refresh Google token. invalid_grant",
            details={'status_code': 400}
        )
    """
    pass


class TransportError(MusicStatsError):
    """
    Raised when a Google Drive request fails at the network level or
    returns a non-2xx status on create, update or list.
    """
    pass


class ParseError(MusicStatsError):
    """Raised when an exported document cannot be decoded."""
    pass


class PersistenceError(MusicStatsError):
    """
    Raised when the local snapshot file cannot be written.

    The event store logs it and keeps its dirty flag so the next flush
    tick retries.
    """
    pass
