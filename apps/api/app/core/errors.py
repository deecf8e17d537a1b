from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from fastapi.responses import JSONResponse
from sqlalchemy.exc import DBAPIError, IntegrityError

from app.context import get_correlation_id


logger = logging.getLogger("app.errors")

UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred. Please try again."
CONFLICT_MESSAGE = "A record with this value already exists"
FOREIGN_KEY_MESSAGE = "Referenced record does not exist"
UNAUTHENTICATED_MESSAGE = "You must be logged in to perform this action"


class AppError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, code: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code


class AuthenticationError(AppError):
    code = "UNAUTHENTICATED"
    status_code = 401

    def __init__(self, message: str = UNAUTHENTICATED_MESSAGE) -> None:
        super().__init__(message)


class AuthorizationError(AppError):
    code = "UNAUTHORIZED"
    status_code = 403

    def __init__(self, message: str = "You do not have permission to perform this action") -> None:
        super().__init__(message)


class NotFoundError(AppError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str = "Resource") -> None:
        self.resource = resource
        super().__init__(f"{resource} not found")


class ValidationError(AppError):
    code = "VALIDATION_ERROR"
    status_code = 422

    def __init__(self, errors: dict[str, list[str]], message: str = "Validation failed") -> None:
        self.errors = errors
        super().__init__(message)


class ConflictError(AppError):
    code = "CONFLICT"
    status_code = 409

    def __init__(self, message: str = CONFLICT_MESSAGE) -> None:
        super().__init__(message)


class RateLimitError(AppError):
    code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, message: str = "Too many requests") -> None:
        super().__init__(message)


@dataclass
class ActionResult:
    """Outcome of a server action; `status_code` only drives the HTTP mapping."""

    success: bool
    data: Any = None
    message: str | None = None
    error: str | None = None
    errors: dict[str, list[str]] | None = None
    status_code: int = 200
    # Session tokens to write (or drop) on the HTTP response.
    session: Any = field(default=None, repr=False)
    clear_session: bool = field(default=False, repr=False)

    @classmethod
    def ok(cls, data: Any = None, message: str | None = None, status_code: int = 200) -> ActionResult:
        return cls(success=True, data=data, message=message, status_code=status_code)

    @classmethod
    def fail(cls, error: str, status_code: int) -> ActionResult:
        return cls(success=False, error=error, status_code=status_code)

    @classmethod
    def invalid(cls, errors: dict[str, list[str]]) -> ActionResult:
        return cls(success=False, errors=errors, status_code=422)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            payload["data"] = self.data
        if self.message is not None:
            payload["message"] = self.message
        if self.error is not None:
            payload["error"] = self.error
        if self.errors is not None:
            payload["errors"] = self.errors
        return payload

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content=self.to_payload())


def classify_database_error(exc: Exception) -> AppError:
    """Map a data layer fault onto the error kinds surfaced to callers."""

    text = str(getattr(exc, "orig", None) or exc).lower()
    if isinstance(exc, (IntegrityError, DBAPIError)) or "constraint" in text:
        if "unique" in text or "duplicate key" in text:
            return ConflictError()
        if "foreign key" in text:
            return ConflictError(FOREIGN_KEY_MESSAGE)
    return AppError(UNEXPECTED_ERROR_MESSAGE)


def handle_action_error(exc: Exception, *, action: str) -> ActionResult:
    if isinstance(exc, ValidationError):
        return ActionResult.invalid(exc.errors)
    if isinstance(exc, AppError):
        return ActionResult.fail(exc.message, exc.status_code)

    classified = classify_database_error(exc)
    if classified.message == UNEXPECTED_ERROR_MESSAGE:
        logger.error("crm.mutation.failed", exc_info=exc, extra={"action": action, "error": str(exc)})
    else:
        logger.warning("crm.mutation.rejected", extra={"action": action, "error": classified.message})
    return ActionResult.fail(classified.message, classified.status_code)


def error_response(
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "code": code,
            "message": message,
            "details": details,
            "correlation_id": get_correlation_id(),
        },
        headers=headers,
    )


def app_error_response(exc: AppError) -> JSONResponse:
    details = exc.errors if isinstance(exc, ValidationError) else None
    return error_response(exc.status_code, exc.code, exc.message, details)
