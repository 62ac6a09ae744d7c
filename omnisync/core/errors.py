"""Error taxonomy for the sync pipeline.

Error Categories:
- AUTH: Credential expired/invalid/revoked. Retryable refresh vs reconnect
- TRANSIENT: Network/provider 5xx/timeout, retry with backoff
- DATA: Malformed provider payload, skip the record
- FATAL: Programming/config error, surface to operator, no retry
"""

import asyncio
from enum import Enum

import httpx


class ErrorCategory(str, Enum):
    """Classification of pipeline errors."""

    AUTH = "auth"
    TRANSIENT = "transient"
    DATA = "data"
    FATAL = "fatal"


class SyncError(Exception):
    """Base class for classified pipeline errors."""

    category: ErrorCategory = ErrorCategory.FATAL
    code: str = "internal_error"
    retryable: bool = False

    def __init__(self, message: str = "", *, code: str | None = None):
        super().__init__(message or self.__class__.__name__)
        if code:
            self.code = code


class AuthError(SyncError):
    category = ErrorCategory.AUTH
    code = "auth_error"


class ReconnectRequiredError(AuthError):
    """Grant revoked or missing; the user must reconnect the account."""

    code = "reconnect_required"
    retryable = False


class TokenRefreshError(AuthError):
    """Refresh or token use failed in a way a later attempt can fix."""

    code = "token_refresh_failed"
    retryable = True


class TransientSyncError(SyncError):
    category = ErrorCategory.TRANSIENT
    code = "temporary_failure"
    retryable = True


class PayloadError(SyncError):
    """A provider record could not be parsed."""

    category = ErrorCategory.DATA
    code = "payload_error"
    retryable = False


class FatalSyncError(SyncError):
    category = ErrorCategory.FATAL
    code = "internal_error"
    retryable = False


class SyncCancelled(Exception):
    """Raised between units of work once the session was cancelled."""


class InvalidTransitionError(ValueError):
    """Sync session status change not allowed by the state machine."""


class NotConnectedError(Exception):
    """No usable credential exists for the requested provider."""

    def __init__(self, provider: str, code: str = "not_connected"):
        super().__init__(f"{provider} is not connected")
        self.provider = provider
        self.code = code


class ApprovalNotFoundError(LookupError):
    """Pending approval does not exist or was already resolved."""


def classify_error(error: BaseException) -> SyncError:
    """Map an arbitrary exception onto the pipeline taxonomy."""
    if isinstance(error, SyncError):
        return error

    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return TransientSyncError(f"Timed out: {type(error).__name__}", code="timeout")

    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status == 401:
            return TokenRefreshError("Provider rejected access token")
        if status == 429 or status >= 500:
            return TransientSyncError(f"Provider returned {status}")
        return FatalSyncError(f"Provider returned {status}", code="provider_error")

    if isinstance(error, httpx.TransportError):
        return TransientSyncError(f"Network error: {type(error).__name__}", code="network_error")

    return FatalSyncError(f"{type(error).__name__}: {error}")
