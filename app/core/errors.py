"""
Exception classes for the party queue.

Every domain failure raised by a service inherits from PartyQueueError so the
API layer can translate it into the standard error envelope with a single
handler. Each class carries the HTTP status and a machine-readable code.

Exception Hierarchy:
    PartyQueueError (base)
        ValidationError - malformed input, never retried
        UnauthorizedError - missing or invalid credential, PIN or token
        ForbiddenError - authenticated but not allowed (page disabled, suspended)
        NotFoundError - entity absent or owned by another tenant
        ConflictError - stale version or illegal status transition
            DuplicateRequestError - same track already waiting in the queue
        RateLimitedError - submission guard rejection
        ProviderError - external playback provider failures
            ProviderUnavailableError - transient: timeout, 5xx, backoff active
                ProviderRateLimitedError - provider answered 429
            ProviderUnauthorizedError - re-authentication required
            PremiumRequiredError - provider account tier too low
            NoActiveDeviceError - nothing to play on
            TrackNotFoundError - track reference does not resolve
        StorageError - fatal database failure
"""

from typing import Any, Optional


class PartyQueueError(Exception):
    """
    Base exception for all party queue errors.

    Attributes:
        message: Human-readable error description shown to the caller.
        details: Optional dictionary with additional context.
    """

    status_code = 400
    error_code = "error"

    def __init__(self, message: str, details: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class ValidationError(PartyQueueError):
    status_code = 422
    error_code = "validation_error"


class UnauthorizedError(PartyQueueError):
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(PartyQueueError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(PartyQueueError):
    """
    Raised when an entity does not exist or belongs to another tenant.

    Both cases use the same message so callers cannot discover ids that
    exist under a different account.
    """

    status_code = 404
    error_code = "not_found"

    def __init__(self, resource: str = "Resource", details: Optional[dict] = None) -> None:
        super().__init__(f"{resource} not found", details)


class ConflictError(PartyQueueError):
    """
    Raised when a write is based on stale state.

    For event updates `details["current_version"]` holds the version the
    caller must re-read before retrying.
    """

    status_code = 409
    error_code = "conflict"


class DuplicateRequestError(ConflictError):
    error_code = "duplicate_request"


class RateLimitedError(PartyQueueError):
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        details = {"retry_after": round(retry_after, 1)} if retry_after is not None else None
        super().__init__(message, details)
        self.retry_after = retry_after


class ProviderError(PartyQueueError):
    """Base class for failures talking to the playback provider."""

    status_code = 502
    error_code = "provider_error"


class ProviderUnavailableError(ProviderError):
    """
    Transient provider failure.

    Timeouts, connection errors, 5xx answers and an active backoff window all
    end up here. The reconciliation loop skips the tick; admin actions report
    the message and may be retried later.
    """

    status_code = 503
    error_code = "provider_unavailable"


class ProviderRateLimitedError(ProviderUnavailableError):
    error_code = "provider_rate_limited"

    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message, {"retry_after": retry_after} if retry_after is not None else None)
        self.retry_after = retry_after


class ProviderUnauthorizedError(ProviderError):
    """Authorization was revoked or never granted; the admin must reconnect."""

    status_code = 401
    error_code = "provider_unauthorized"


class PremiumRequiredError(ProviderError):
    status_code = 403
    error_code = "premium_required"


class NoActiveDeviceError(ProviderError):
    status_code = 404
    error_code = "no_active_device"


class TrackNotFoundError(ProviderError):
    status_code = 404
    error_code = "track_not_found"


class StorageError(PartyQueueError):
    status_code = 500
    error_code = "storage_error"


def error_payload(exc: PartyQueueError) -> dict[str, Any]:
    """Flatten an exception into the keyword arguments of error_response"""
    return {
        "message": exc.message,
        "error_code": exc.error_code,
        "details": exc.details or None,
        "status_code": exc.status_code,
    }
