"""Error taxonomy for ride operations and the handlers that render it as JSON."""

import logging

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import exc as sa_exc
from starlette.exceptions import HTTPException


logger = logging.getLogger("ridehail.errors")


class RideError(Exception):
    """Base class; carries the HTTP status and a machine-readable code."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "internal_error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(RideError):
    """Malformed or missing input."""
    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"


class UnauthorizedError(RideError):
    """Missing or invalid bearer credential."""
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "unauthorized"


class ForbiddenError(RideError):
    """Authenticated, but not allowed to act on this ride or in this role."""
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"


class NotFoundError(RideError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class InvalidStateError(RideError):
    """Operation not allowed from the ride's current lifecycle state."""
    status_code = status.HTTP_409_CONFLICT
    code = "invalid_state"

    def __init__(self, current: str = "", operation: str = "", message: str | None = None):
        super().__init__(message or f"Cannot {operation} a ride that is {current}")
        self.current = current
        self.operation = operation


class ConflictError(RideError):
    """Lost a race or repeated a once-only action (double accept, double rate)."""
    status_code = status.HTTP_409_CONFLICT
    code = "conflict"


class RideTimeoutError(RideError, TimeoutError):
    """An upstream dependency (database, HTTP) exceeded its time bound."""
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    code = "timeout"


class InternalError(RideError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "internal_error"


ERRORS_BY_CODE: dict[str, type[RideError]] = {
    cls.code: cls
    for cls in (
        ValidationError,
        UnauthorizedError,
        ForbiddenError,
        NotFoundError,
        ConflictError,
        RideTimeoutError,
        InternalError,
    )
}


def error_body(message: str, code: str) -> dict:
    return {"error": message, "code": code}


async def ride_error_handler(request: Request, exc: RideError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, UnauthorizedError) else None
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, exc.code), headers=headers)


async def http_exception_handler(request: Request, exc: HTTPException):
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    code = {
        400: ValidationError.code,
        401: UnauthorizedError.code,
        403: ForbiddenError.code,
        404: NotFoundError.code,
        405: "method_not_allowed",
    }.get(exc.status_code, "http_error")
    return JSONResponse(status_code=exc.status_code, content=error_body(detail, code), headers=getattr(exc, "headers", None))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query"))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    message = "; ".join(parts) or "Invalid request"
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=error_body(message, ValidationError.code))


async def db_timeout_handler(request: Request, exc: sa_exc.TimeoutError):
    logger.warning("database pool timeout on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=RideTimeoutError.status_code, content=error_body("Database timed out", RideTimeoutError.code))


async def unhandled_exception_handler(request: Request, exc: Exception):
    if _is_statement_timeout(exc):
        logger.warning("statement timeout on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=RideTimeoutError.status_code, content=error_body("Database timed out", RideTimeoutError.code))
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=error_body("Internal Server Error", InternalError.code))


def _is_statement_timeout(exc: Exception) -> bool:
    # psycopg2 QueryCanceled carries SQLSTATE 57014
    if isinstance(exc, sa_exc.OperationalError):
        return getattr(exc.orig, "pgcode", None) == "57014"
    return False


def install_error_handlers(app) -> None:
    app.add_exception_handler(RideError, ride_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(sa_exc.TimeoutError, db_timeout_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
