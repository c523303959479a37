"""Custom exceptions for pystudysync.

Every exception carries a :class:`SyncErrorKind` so callers can branch on
the error taxonomy instead of comparing message strings.
"""

from enum import Enum
from typing import Any, Optional


class SyncErrorKind(str, Enum):
    """Error taxonomy shared by the client and the sync engine."""

    NETWORK_ERROR = "NETWORK_ERROR"
    """Transport failure; retryable by leaving state unchanged"""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    """Malformed caller input; a programming error, never retried"""

    CONFLICT_ERROR = "CONFLICT_ERROR"
    """Server holds a newer version than the write was based on"""

    PROTOCOL_MISMATCH = "PROTOCOL_MISMATCH"
    """Server protocol below the supported floor; terminal for the session"""

    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    """Anything else; treated as non-fatal"""


class StudySyncError(Exception):
    """Base exception for all pystudysync errors."""

    kind: SyncErrorKind = SyncErrorKind.UNKNOWN_ERROR

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class StudySyncConfigError(StudySyncError):
    """Raised when configuration is missing or invalid."""


class StudySyncValidationError(StudySyncError):
    """Raised for invalid caller input such as an unknown data type."""

    kind = SyncErrorKind.VALIDATION_ERROR


class StudySyncAPIError(StudySyncError):
    """Raised when the API returns an error response."""


class StudySyncAuthenticationError(StudySyncAPIError):
    """Raised when the access token is missing, invalid or expired."""


class StudySyncPermissionError(StudySyncAPIError):
    """Raised when access to a resource is forbidden."""


class StudySyncNotFoundError(StudySyncAPIError):
    """Raised when a resource is not found."""


class StudySyncInvalidResponseError(StudySyncAPIError):
    """Raised when the server returns something that is not JSON."""


class StudySyncNetworkError(StudySyncAPIError):
    """Raised when the request never got a response."""

    kind = SyncErrorKind.NETWORK_ERROR


class StudySyncRateLimitError(StudySyncNetworkError):
    """Raised when the rate limit is still exceeded after all retries."""


class StudySyncServerError(StudySyncNetworkError):
    """Raised when the server keeps answering with 5xx after all retries."""


class StudySyncConflictError(StudySyncAPIError):
    """Raised when a write is rejected because of a version conflict."""

    kind = SyncErrorKind.CONFLICT_ERROR

    def __init__(
        self,
        message: str,
        server_data: Any = None,
        server_version: Optional[int] = None,
        details: Optional[Any] = None,
    ):
        super().__init__(message, details)
        self.server_data = server_data
        self.server_version = server_version


class StudySyncProtocolError(StudySyncError):
    """Raised when the server sync protocol is no longer supported."""

    kind = SyncErrorKind.PROTOCOL_MISMATCH

    def __init__(self, message: str, server_version: Optional[int] = None):
        super().__init__(message, {"server_version": server_version})
        self.server_version = server_version
