"""Exceptions for identity server operations."""

from typing import Optional


class IdentityServiceError(Exception):
    """Base class for every failure reported by the identity service."""


class Unreachable(IdentityServiceError):
    """Transport failure talking to the identity server or homeserver. Retryable."""

    reason = "unreachable"


class UnsupportedServerVersion(IdentityServiceError):
    """The identity server does not support the v2 API."""

    reason = "unsupported-version"


class MalformedResponse(IdentityServiceError):
    """The server answered with something that is not a valid API response."""

    reason = "malformed-response"


class InvalidServerUrl(IdentityServiceError, ValueError):
    """An identity server url that cannot be used (e.g. empty)."""


class InvalidThreePid(IdentityServiceError, ValueError):
    """A ThreePid that cannot be built from the given input."""


class NoIdentityServerConfigured(IdentityServiceError):
    """The operation needs an identity server but none is set."""


class NoActiveSession(IdentityServiceError):
    """No live binding session exists for the ThreePid."""


class BindingStateError(IdentityServiceError):
    """A binding operation was called out of order."""

    def __init__(self, operation: str, state, allowed):
        self.operation = operation
        self.state = state
        self.allowed = tuple(allowed)
        names = ", ".join(s.value for s in self.allowed)
        super().__init__(f"{operation} not allowed in state {state.value} (expected {names})")


class InvalidOrExpiredCode(IdentityServiceError):
    """The identity server rejected a submitted validation code."""

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason  # "invalid-code" or "expired-session"
        super().__init__(message or reason)


class SessionExpired(IdentityServiceError):
    """The validation session expired before the binding was finalized."""


class AlreadyBound(IdentityServiceError):
    """The ThreePid is already bound to another account."""


class BulkLookupUnsupported(IdentityServiceError):
    """The identity server does not offer sha256 hashed lookups."""


class Cancelled(IdentityServiceError):
    """The operation was cancelled before it completed."""


class MatrixApiError(IdentityServiceError):
    """Structured error returned by a Matrix server ({"errcode", "error"})."""

    def __init__(self, status_code: int, errcode: Optional[str], message: str = ""):
        self.status_code = status_code
        self.errcode = errcode
        self.message = message
        super().__init__(f"{status_code} {errcode or 'M_UNKNOWN'}: {message}")
