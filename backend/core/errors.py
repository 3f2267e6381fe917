"""
Error taxonomy and HTTP mapping.

Domain services raise AppError subclasses; the API layer renders them as
{"message": ..., "errors": [...]} with the matching status code. Storage
errors are translated at the service boundary so lock waits and deadlocks
surface as retryable conflicts instead of opaque 500s.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import exc as sa_exc

logger = structlog.get_logger()

LOCK_CONFLICT_MARKERS = (
    "lock wait timeout",
    "deadlock",
    "could not obtain lock",
    "lock timeout",
    "database is locked",
    "could not serialize access",
)
UNAVAILABLE_MARKERS = (
    "could not connect",
    "connection refused",
    "connection reset",
    "server closed the connection",
    "too many connections",
    "unable to open database",
)


class AppError(Exception):
    """Base for errors that carry an HTTP status and a user-facing message."""

    status_code = 500

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"message": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class ValidationError(AppError):
    status_code = 400


class InvalidTransitionError(AppError):
    status_code = 400


class AuthError(AppError):
    status_code = 401


class ForbiddenError(AppError):
    status_code = 403


class NotFoundError(AppError):
    status_code = 404


class ConflictError(AppError):
    status_code = 409


class ServiceUnavailableError(AppError):
    status_code = 503


class InternalError(AppError):
    status_code = 500


def _matches(error: BaseException, markers: tuple[str, ...]) -> bool:
    text = str(getattr(error, "orig", None) or error).lower()
    return any(marker in text for marker in markers)


def classify_db_error(error: Exception) -> AppError | None:
    """Map a SQLAlchemy error to the taxonomy, or None if it is unexpected."""
    if isinstance(error, sa_exc.TimeoutError):
        return ServiceUnavailableError("Service temporarily unavailable, please try again")
    if isinstance(error, sa_exc.IntegrityError):
        if "unique" in str(error.orig).lower() or "duplicate" in str(error.orig).lower():
            return ConflictError("A record with the same unique value already exists")
        return None
    if isinstance(error, sa_exc.DBAPIError):
        if _matches(error, LOCK_CONFLICT_MARKERS):
            return ConflictError("Transaction conflict, please try again")
        if error.connection_invalidated or isinstance(error, sa_exc.InterfaceError):
            return ServiceUnavailableError("Service temporarily unavailable, please try again")
        if _matches(error, UNAVAILABLE_MARKERS):
            return ServiceUnavailableError("Service temporarily unavailable, please try again")
    return None


@contextmanager
def translate_db_errors() -> Iterator[None]:
    """Re-raise known storage failures as Conflict / ServiceUnavailable."""
    try:
        yield
    except sa_exc.SQLAlchemyError as error:
        mapped = classify_db_error(error)
        if mapped is None:
            raise
        logger.warning("db.error_translated", error=str(error), mapped_to=type(mapped).__name__)
        raise mapped from error


def register_exception_handlers(app: FastAPI) -> None:
    """Install JSON renderers for the error taxonomy."""

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, error: AppError):
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, error: RequestValidationError):
        errors = [
            {
                "field": ".".join(str(part) for part in item.get("loc", ()) if part != "body"),
                "message": item.get("msg", "Invalid value"),
            }
            for item in error.errors()
        ]
        return JSONResponse(status_code=400, content={"message": "Validation failed", "errors": errors})

    @app.exception_handler(sa_exc.SQLAlchemyError)
    async def db_error_handler(request: Request, error: sa_exc.SQLAlchemyError):
        mapped = classify_db_error(error)
        if mapped is None:
            logger.error("db.unhandled_error", path=request.url.path, error=str(error))
            mapped = InternalError("Internal server error")
        return JSONResponse(status_code=mapped.status_code, content=mapped.to_dict())
