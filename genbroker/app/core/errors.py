"""Domain errors and HTTP error handling."""

from __future__ import annotations

import logging
import re
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

# Regex to detect internal paths (Unix/Linux focus for container env)
_PATH_PATTERN = re.compile(r"(\/(?:app|home|var|tmp|usr|etc|opt)\/[\w\-\.\/]+)")

GENERIC_FAILURE_MESSAGE = "Something went wrong on our side. Please try again later."


class GenBrokerError(Exception):
    """Base class for errors that carry a stable code and an HTTP status."""

    code = "INTERNAL_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


# --- Admission errors (user-facing, raised before any side effect) ---

class InsufficientCreditsError(GenBrokerError):
    code = "INSUFFICIENT_CREDITS"
    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            f"Insufficient credits: {required} required, {available} available "
            f"({required - available} short)",
            required=required,
            available=available,
        )
        self.required = required
        self.available = available


class InvalidRequestError(GenBrokerError):
    code = "INVALID_REQUEST"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors) or "Invalid request", errors=errors)
        self.errors = errors


class UsageLimitExceededError(GenBrokerError):
    code = "USAGE_LIMIT_EXCEEDED"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, limit: str, current: int, maximum: int) -> None:
        super().__init__(
            f"{limit} limit reached ({current}/{maximum})",
            limit=limit,
            current=current,
            maximum=maximum,
        )
        self.limit = limit
        self.current = current
        self.maximum = maximum


# --- Job errors ---

class JobNotFoundError(GenBrokerError):
    code = "JOB_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}", job_id=job_id)
        self.job_id = job_id


class JobAccessDeniedError(GenBrokerError):
    code = "JOB_ACCESS_DENIED"
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, job_id: str) -> None:
        super().__init__("You do not own this job", job_id=job_id)
        self.job_id = job_id


class InvalidTransitionError(GenBrokerError):
    code = "INVALID_TRANSITION"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, job_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Job {job_id} cannot move from {current} to {requested}",
            job_id=job_id,
            current=current,
            requested=requested,
        )
        self.job_id = job_id
        self.current = current
        self.requested = requested


class JobNotCancellableError(GenBrokerError):
    code = "JOB_NOT_CANCELLABLE"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, job_id: str, current: str) -> None:
        super().__init__(f"Job {job_id} is already {current} and cannot be cancelled", job_id=job_id, current=current)
        self.job_id = job_id
        self.current = current


class SubmissionError(GenBrokerError):
    code = "SUBMISSION_FAILED"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self) -> None:
        super().__init__(GENERIC_FAILURE_MESSAGE)


# --- Reservation errors ---

class ReservationNotFoundError(GenBrokerError):
    code = "RESERVATION_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, reservation_id: str) -> None:
        super().__init__(f"Reservation not found: {reservation_id}", reservation_id=reservation_id)
        self.reservation_id = reservation_id


class ReservationExpiredError(GenBrokerError):
    code = "RESERVATION_EXPIRED"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, reservation_id: str, expires_at: int) -> None:
        super().__init__(f"Reservation expired: {reservation_id}", reservation_id=reservation_id, expires_at=expires_at)
        self.reservation_id = reservation_id
        self.expires_at = expires_at


def sanitize_message(msg: str) -> str:
    """
    Sanitize string messages to prevent leaking internal details.
    """
    if _PATH_PATTERN.search(msg):
        return _PATH_PATTERN.sub("[INTERNAL_PATH]", msg)
    return msg


def create_error_response(status_code: int, message: str, error_code: str | None = None) -> JSONResponse:
    content = {"detail": message}
    if error_code:
        content["code"] = error_code
    return JSONResponse(status_code=status_code, content=content)


async def domain_exception_handler(request: Request, exc: GenBrokerError):
    """
    Map domain errors to their status code. Server-side failures never leak detail.
    """
    if exc.status_code >= 500 and not isinstance(exc, SubmissionError):
        logger.exception("Domain error occurred", extra={"data": {"path": request.url.path, "code": exc.code}})
        return create_error_response(exc.status_code, GENERIC_FAILURE_MESSAGE, exc.code)
    return create_error_response(exc.status_code, sanitize_message(exc.message), exc.code)


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """
    Handle explicit HTTP exceptions (e.g. 404, 403).
    """
    return create_error_response(exc.status_code, sanitize_message(str(exc.detail)))


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Handle Pydantic validation errors.
    """
    sanitized_errors = []
    for err in exc.errors():
        loc = ".".join([str(x) for x in err.get("loc", [])])
        msg = err.get("msg", "Invalid input")
        sanitized_errors.append(f"{loc}: {msg}")

    error_msg = "; ".join(sanitized_errors)
    return create_error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, f"Validation Error: {sanitize_message(error_msg)}")


async def database_exception_handler(request: Request, exc: SQLAlchemyError):
    """
    Handle database errors. Log the full error, return generic message.
    """
    logger.exception("Database error occurred", extra={"data": {"path": request.url.path}})
    return create_error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "A database error occurred. Please try again later.",
        "DB_ERROR"
    )


async def global_exception_handler(request: Request, exc: Exception):
    """
    Catch-all for unhandled exceptions.
    """
    logger.exception("Unhandled exception", extra={"data": {"path": request.url.path}})
    return create_error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "An internal server error occurred.",
        "INTERNAL_ERROR"
    )


def register_exception_handlers(app: FastAPI):
    """
    Registrar for all exception handlers.
    """
    app.add_exception_handler(GenBrokerError, domain_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, database_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
