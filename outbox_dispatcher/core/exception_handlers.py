import logging
import traceback
from fastapi import FastAPI, Request, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from outbox_dispatcher.schemas.response import ErrorDetail, ErrorResponse
from outbox_dispatcher.core.errors import (
    CursorEpochMismatchError,
    CursorRegressionError,
    DispatcherError,
    InvalidReplayTargetError,
    LeaseLostError,
    StaleFencingTokenError,
    StoreUnavailableError,
    UnknownPartitionError,
    UnscopedReplayError,
)

log = logging.getLogger("outbox_dispatcher.api")


def _error_body(code: str, message, details=None):
    error = ErrorDetail(code=code, message=message, details=details)
    return ErrorResponse(error=error).model_dump(exclude_none=True)


# (status, code) per dispatcher error; first match in MRO order wins
DISPATCHER_ERROR_STATUS = {
    StoreUnavailableError: (503, "store_unavailable"),
    CursorRegressionError: (409, "cursor_regression"),
    StaleFencingTokenError: (409, "stale_fencing_token"),
    CursorEpochMismatchError: (409, "cursor_reset"),
    LeaseLostError: (409, "lease_lost"),
    UnscopedReplayError: (400, "unscoped_replay"),
    InvalidReplayTargetError: (400, "invalid_replay_target"),
    UnknownPartitionError: (400, "unknown_partition"),
}


# ----------- Exception Handlers (called by FastAPI) -----------

def http_exception_handler(request: Request, exc: HTTPException):
    """Handles exceptions raised by HTTPException (e.g., 404, 400)."""
    return JSONResponse(status_code=exc.status_code, content=_error_body("http_error", exc.detail))


def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handles Pydantic validation errors (422 Unprocessable Entity)."""
    body = _error_body("validation_error", "Invalid input data", details=jsonable_encoder(exc.errors()))
    return JSONResponse(status_code=422, content=body)


def dispatcher_exception_handler(request: Request, exc: DispatcherError):
    """Maps dispatcher errors to 400 (bad operator input), 409 (conflicting state) or 503 (store down)."""
    status_code, code = 500, "dispatcher_error"
    for cls in type(exc).__mro__:
        if cls in DISPATCHER_ERROR_STATUS:
            status_code, code = DISPATCHER_ERROR_STATUS[cls]
            break
    if status_code >= 500:
        log.error(f"Dispatcher error on {request.url.path}: {exc}")
    return JSONResponse(status_code=status_code, content=_error_body(code, str(exc)))


def generic_exception_handler(request: Request, exc: Exception):
    """Handles all unhandled exceptions (500 Internal Server Error)."""
    log.error(f"Unhandled exception on path: {request.url.path}\n{traceback.format_exc()}")
    return JSONResponse(status_code=500, content=_error_body("server_error", "Internal Server Error"))


# ----------- Registration Function -----------

def setup_exception_handlers(app: FastAPI):
    """Registers all custom exception handlers with the FastAPI application."""
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(DispatcherError, dispatcher_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    return app
