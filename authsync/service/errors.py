from __future__ import annotations

from typing import Optional


class AuthSyncError(Exception):
    """Base class for engine errors that cross the SessionStore boundary.

    Each subclass carries a stable error_code so subscribers can branch on
    the kind of failure without string matching:
    - provider_unavailable
    - profile_timeout
    - initialization_timeout
    - invalid_credentials
    - admin_override_misuse
    - busy
    - unauthenticated
    - forbidden
    - provider_error
    - disposed
    """

    error_code: str = "auth_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ProviderUnavailable(AuthSyncError):
    """Identity provider unreachable or failing after retries."""
    error_code = "provider_unavailable"


class ProviderError(AuthSyncError):
    """Identity provider rejected the request (non-retryable 4xx)."""
    error_code = "provider_error"

    def __init__(self, message: str, *, status_code: Optional[int] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code


class InvalidCredentials(ProviderError):
    """Password sign-in rejected; fatal only to that call."""
    error_code = "invalid_credentials"


class ProfileTimeoutError(AuthSyncError):
    """Profile could not be ensured in time; a substitute profile was used."""
    error_code = "profile_timeout"


class InitializationTimeout(AuthSyncError):
    """Safety timer fired before initialization settled."""
    error_code = "initialization_timeout"


class AdminOverrideMisuse(AuthSyncError):
    """Override elevation denied."""
    error_code = "admin_override_misuse"


class Busy(AuthSyncError):
    """Another mutating action is already in flight."""
    error_code = "busy"


class NotAuthenticated(AuthSyncError):
    error_code = "unauthenticated"


class ForbiddenError(AuthSyncError):
    error_code = "forbidden"


class StoreDisposed(AuthSyncError):
    error_code = "disposed"


__all__ = [
    "AuthSyncError",
    "ProviderUnavailable",
    "ProviderError",
    "InvalidCredentials",
    "ProfileTimeoutError",
    "InitializationTimeout",
    "AdminOverrideMisuse",
    "Busy",
    "NotAuthenticated",
    "ForbiddenError",
    "StoreDisposed",
]
