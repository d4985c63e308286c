# calsync/services/calendar/errors.py
"""Error taxonomy shared by every calendar provider client."""
from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    TRANSIENT_NETWORK = "transient_network"
    AUTH_FAILURE = "auth_failure"
    PERMISSION_FAILURE = "permission_failure"
    CLIENT_FAILURE = "client_failure"
    DISCOVERY_FAILURE = "discovery_failure"
    PARSE_FAILURE = "parse_failure"


class SyncErrorKind(str, Enum):
    TIMEOUT = "timeout"
    UNAUTHORIZED = "unauthorized"
    EXPIRED_TOKEN = "expired_token"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    BAD_REQUEST = "bad_request"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"
    INACTIVE_CONNECTION = "inactive_connection"
    INVALID_BOOKING = "invalid_booking"
    MISSING_CREDENTIALS = "missing_credentials"
    NOT_FOUND = "not_found"
    DISCOVERY_FAILED = "discovery_failed"
    PARSE_FAILED = "parse_failed"
    # CalDAV refinements
    METHOD_NOT_SUPPORTED = "method_not_supported"
    PRECONDITION_FAILED = "precondition_failed"
    CONFLICT = "conflict"
    APP_PASSWORD_REQUIRED = "app_password_required"

    @property
    def retryable(self) -> bool:
        return self in RETRYABLE_KINDS

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORIES.get(self, ErrorCategory.CLIENT_FAILURE)

    @property
    def deactivates_connection(self) -> bool:
        return self.category is ErrorCategory.AUTH_FAILURE


RETRYABLE_KINDS = frozenset({
    SyncErrorKind.TIMEOUT,
    SyncErrorKind.RATE_LIMITED,
    SyncErrorKind.SERVER_ERROR,
})

_CATEGORIES = {
    SyncErrorKind.TIMEOUT: ErrorCategory.TRANSIENT_NETWORK,
    SyncErrorKind.RATE_LIMITED: ErrorCategory.TRANSIENT_NETWORK,
    SyncErrorKind.SERVER_ERROR: ErrorCategory.TRANSIENT_NETWORK,
    SyncErrorKind.UNAUTHORIZED: ErrorCategory.AUTH_FAILURE,
    SyncErrorKind.EXPIRED_TOKEN: ErrorCategory.AUTH_FAILURE,
    SyncErrorKind.APP_PASSWORD_REQUIRED: ErrorCategory.AUTH_FAILURE,
    SyncErrorKind.FORBIDDEN: ErrorCategory.PERMISSION_FAILURE,
    SyncErrorKind.DISCOVERY_FAILED: ErrorCategory.DISCOVERY_FAILURE,
    SyncErrorKind.PARSE_FAILED: ErrorCategory.PARSE_FAILURE,
}

# User-facing text per kind; granular detail stays in logs
DEFAULT_MESSAGES = {
    SyncErrorKind.TIMEOUT: "Request timed out. Please try again.",
    SyncErrorKind.UNAUTHORIZED: "Calendar authorization expired. Please reconnect.",
    SyncErrorKind.EXPIRED_TOKEN: "Calendar authorization expired. Please reconnect.",
    SyncErrorKind.FORBIDDEN: "Insufficient permissions for calendar access.",
    SyncErrorKind.RATE_LIMITED: "Rate limit exceeded. Please try again later.",
    SyncErrorKind.BAD_REQUEST: "Invalid request sent to calendar provider.",
    SyncErrorKind.SERVER_ERROR: "Calendar service temporarily unavailable.",
    SyncErrorKind.UNKNOWN: "Calendar sync failed.",
    SyncErrorKind.INACTIVE_CONNECTION: "Calendar connection is not active.",
    SyncErrorKind.MISSING_CREDENTIALS: "Calendar credentials are missing.",
    SyncErrorKind.METHOD_NOT_SUPPORTED: "Calendar server does not support this operation.",
    SyncErrorKind.PRECONDITION_FAILED: "Calendar event already exists.",
    SyncErrorKind.CONFLICT: "Calendar server reported a conflict.",
    SyncErrorKind.APP_PASSWORD_REQUIRED: "An app password is required for this account.",
    SyncErrorKind.DISCOVERY_FAILED: "No writable calendars were found for this account.",
}


class CalendarSyncError(Exception):
    """Raised inside provider clients; converted to a SyncError at their boundary."""

    def __init__(self, kind: SyncErrorKind, message: Optional[str] = None, status_code: Optional[int] = None):
        self.kind = kind
        self.message = message or DEFAULT_MESSAGES.get(kind, "Calendar sync failed.")
        self.status_code = status_code
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def __repr__(self):
        return f"CalendarSyncError({self.kind.value}, {self.message!r}, status={self.status_code})"


def classify_http_status(status_code: int) -> Optional[SyncErrorKind]:
    """Map an HTTP status to the shared taxonomy; None for success codes"""
    if status_code < 400:
        return None
    if status_code == 400:
        return SyncErrorKind.BAD_REQUEST
    if status_code == 401:
        return SyncErrorKind.UNAUTHORIZED
    if status_code == 403:
        return SyncErrorKind.FORBIDDEN
    if status_code == 404:
        return SyncErrorKind.NOT_FOUND
    if status_code == 408:
        return SyncErrorKind.TIMEOUT
    if status_code == 429:
        return SyncErrorKind.RATE_LIMITED
    if status_code >= 500:
        return SyncErrorKind.SERVER_ERROR
    return SyncErrorKind.BAD_REQUEST


def is_retryable(error: BaseException) -> bool:
    return isinstance(error, CalendarSyncError) and error.retryable


class OAuthError(Exception):
    """OAuth flow failure; the flow is aborted and nothing is persisted"""


class InvalidState(OAuthError):
    pass


class ExpiredState(OAuthError):
    pass


class UnsupportedProvider(OAuthError):
    pass


class MissingCredentials(OAuthError):
    pass


class AuthorizationFailed(OAuthError):
    pass
