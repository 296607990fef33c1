from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from propai.core.errors import AppError, ValidationFailed, public_message

T = TypeVar("T")


class ValidationErrorItem(BaseModel):
    field: str
    message: str
    row: int | None = None
    chunk: int | None = None


class ActionResult(BaseModel, Generic[T]):
    """Uniform envelope returned by every endpoint."""

    success: bool
    data: T | None = None
    message: str | None = None
    error: str | None = None
    code: str | None = None
    validation_errors: list[ValidationErrorItem] | None = None
    detail: dict[str, Any] | None = None


def success_result(data: Any = None, message: str | None = None) -> ActionResult:
    return ActionResult(success=True, data=data, message=message)


def error_result(
    error: str,
    validation_errors: list[dict[str, Any]] | None = None,
    *,
    code: str | None = None,
    detail: dict[str, Any] | None = None,
) -> ActionResult:
    return ActionResult(
        success=False,
        error=error,
        code=code,
        validation_errors=[ValidationErrorItem(**e) for e in validation_errors] if validation_errors else None,
        detail=detail or None,
    )


def to_error_result(exc: BaseException) -> ActionResult:
    if isinstance(exc, ValidationFailed):
        return error_result(exc.message, exc.errors, code=exc.code)
    if isinstance(exc, AppError):
        return error_result(public_message(exc), code=exc.code, detail=exc.detail)
    return error_result(public_message(exc), code="INTERNAL_ERROR")


class IdResponse(BaseModel):
    id: str
