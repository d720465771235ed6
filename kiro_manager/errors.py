# -*- coding: utf-8 -*-

"""
Error types and failure classification for the credential core.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Union


class KiroManagerError(Exception):
    """Base account manager error."""


class NetworkError(KiroManagerError):
    """Raised on transport failure or timeout talking to a provider."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class ProtocolError(KiroManagerError):
    """
    Raised on non-2xx or structurally invalid provider responses.

    Attributes:
        status_code: HTTP status code when available.
        error_code: Vendor error code (OAuth `error` or `__type`) when available.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class AuthExpiredError(ProtocolError):
    """Raised when the access token is rejected (HTTP 401)."""


class AccountSuspendedError(ProtocolError):
    """Raised when the vendor reports the account as suspended (HTTP 423)."""


class RefreshFailedError(KiroManagerError):
    """Raised when a token refresh could not produce new credentials."""


class DuplicateAccountError(KiroManagerError):
    """Raised when an account with the same identity already exists."""


class SessionStateError(KiroManagerError):
    """Raised when a login session is absent, expired or does not match."""


class AuthorizationTimeoutError(SessionStateError):
    """Raised when device authorization polling runs out of time."""


class OperationCancelledError(KiroManagerError):
    """Raised when an operation is aborted through a cancel token."""


class StorageError(KiroManagerError):
    """Raised when the account store cannot be written."""


class FailureKind(Enum):
    """Outcome of classifying a failed account operation."""

    SUSPENDED = "suspended"
    EXPIRED = "expired"
    OTHER = "other"


SUSPENDED_MARKERS = ("AccountSuspendedException", "423")
EXPIRED_MARKERS = ("401",)

# lastError markers that exclude an account from automatic refresh
BANNED_MARKERS = ("UnauthorizedException", "AccountSuspendedException")


def classify_failure(error: Union[BaseException, str, None]) -> FailureKind:
    """
    Classifies a failure as suspended, expired or other.

    Typed errors are classified by type and status code first. Everything
    else falls back to matching the message, because the portal API only
    reports these conditions inside error strings.

    Args:
        error: Exception or error message.

    Returns:
        FailureKind for the failure.
    """
    if error is None:
        return FailureKind.OTHER

    if isinstance(error, AccountSuspendedError):
        return FailureKind.SUSPENDED
    if isinstance(error, AuthExpiredError):
        return FailureKind.EXPIRED
    if isinstance(error, ProtocolError):
        if error.status_code == 423 or error.error_code == "AccountSuspendedException":
            return FailureKind.SUSPENDED
        if error.status_code == 401:
            return FailureKind.EXPIRED

    message = str(error)
    if any(marker in message for marker in SUSPENDED_MARKERS):
        return FailureKind.SUSPENDED
    if any(marker in message for marker in EXPIRED_MARKERS):
        return FailureKind.EXPIRED
    return FailureKind.OTHER


def is_banned_error(last_error: Optional[str]) -> bool:
    """Returns True if a stored error means the account must not be auto refreshed."""
    if not last_error:
        return False
    return any(marker in last_error for marker in BANNED_MARKERS)
