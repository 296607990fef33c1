from __future__ import annotations

from typing import Any

from propai.core.config import settings

GENERIC_ERROR_MESSAGE = "Internal server error"


class AppError(Exception):
    """Base for errors that are safe to show to the caller as-is."""

    code = "UNKNOWN_ERROR"
    status_code = 500

    def __init__(self, message: str, *, detail: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ValidationFailed(AppError):
    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str, *, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        # [{"field": ..., "message": ..., "row": ...}]
        self.errors = errors or []


class AuthError(AppError):
    code = "AUTH_ERROR"
    status_code = 401


class AuthorizationError(AppError):
    code = "FORBIDDEN"
    status_code = 403


class NotFoundError(AppError):
    code = "NOT_FOUND"
    status_code = 404


class ConflictError(AppError):
    code = "CONFLICT"
    status_code = 409

    def __init__(self, message: str, *, active_count: int | None = None):
        super().__init__(message, detail={"active_count": active_count} if active_count is not None else None)
        self.active_count = active_count


class QuotaExceededError(AppError):
    code = "QUOTA_EXCEEDED"
    status_code = 402

    def __init__(self, message: str, *, remaining: int, requested: int):
        super().__init__(message, detail={"remaining": remaining, "requested": requested})
        self.remaining = remaining
        self.requested = requested


class UpstreamError(AppError):
    """External API failure. Message is internal; callers get a masked version outside dev."""

    code = "UPSTREAM_ERROR"
    status_code = 502

    def __init__(self, message: str, *, outcome_unknown: bool = False):
        super().__init__(message, detail={"outcome_unknown": outcome_unknown})
        self.outcome_unknown = outcome_unknown


def public_message(exc: BaseException) -> str:
    """Message that may be returned to the caller for `exc`."""
    if isinstance(exc, AppError) and not isinstance(exc, UpstreamError):
        return exc.message
    if settings.env == "dev":
        return str(exc) or type(exc).__name__
    return GENERIC_ERROR_MESSAGE
