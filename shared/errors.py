import logging
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class BookingServiceError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(BookingServiceError):
    status_code = 404


class AuthorizationError(BookingServiceError):
    status_code = 403


class ValidationFailure(BookingServiceError):
    status_code = 400


class DuplicateValueError(ValidationFailure):
    def __init__(self, message: str, constraint: Optional[str] = None):
        super().__init__(message)
        self.constraint = constraint


class PersistenceError(BookingServiceError):
    status_code = 500


class EventPublishError(BookingServiceError):
    status_code = 500


async def service_error_handler(request: Request, exc: BookingServiceError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message},
    )


def describe_validation_errors(errors) -> str:
    parts = []
    for error in errors:
        location = ".".join(str(p) for p in error.get("loc", ()) if p != "body")
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"success": False, "message": describe_validation_errors(exc.errors())},
    )


def install_error_handlers(app: FastAPI):
    app.add_exception_handler(BookingServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
