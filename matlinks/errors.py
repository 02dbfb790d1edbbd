import logging
from enum import Enum

from fastapi import Request, status
from fastapi.responses import JSONResponse
from psycopg2.errors import (
    CheckViolation,
    ForeignKeyViolation,
    IntegrityError,
    NotNullViolation,
    UniqueViolation,
)

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    GATEWAY = "gateway"
    DATABASE = "database"


_STATUS_BY_KIND = {
    ErrorKind.UNAUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.VALIDATION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.GATEWAY: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.DATABASE: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class AppError(Exception):
    """Business failure carrying a closed error kind and a human-readable message."""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    @property
    def status_code(self) -> int:
        return _STATUS_BY_KIND[self.kind]


class ValidationError(AppError):
    """Controlled validation error (business rules)"""

    def __init__(self, message: str):
        super().__init__(ErrorKind.VALIDATION, message)


def not_found(resource: str) -> AppError:
    return AppError(ErrorKind.NOT_FOUND, f"{resource} not found")


def translate_db_error(exc: IntegrityError, context: str = "") -> AppError:
    """Log a psycopg2 integrity error and convert it to an AppError with a user-facing message."""
    diag = getattr(exc, "diag", None)
    constraint = getattr(diag, "constraint_name", None)

    logger.error(
        "DB ERROR | context=%s | type=%s | constraint=%s | msg=%s",
        context,
        type(exc).__name__,
        constraint,
        str(exc).strip(),
    )

    if isinstance(exc, UniqueViolation):
        if constraint == "profiles_email_key":
            return AppError(ErrorKind.CONFLICT, "A user with this email already exists.")
        return AppError(ErrorKind.CONFLICT, "This record already exists.")
    if isinstance(exc, ForeignKeyViolation):
        return AppError(ErrorKind.VALIDATION, "This record references data that does not exist or is still in use.")
    if isinstance(exc, NotNullViolation):
        return AppError(ErrorKind.VALIDATION, "Some required fields are missing.")
    if isinstance(exc, CheckViolation):
        return AppError(ErrorKind.VALIDATION, "One or more fields contain invalid values.")
    return AppError(ErrorKind.DATABASE, "The operation violates database rules.")


def app_error_handler(_request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "kind": exc.kind.value},
    )


def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    return app_error_handler(request, translate_db_error(exc, context=request.url.path))
