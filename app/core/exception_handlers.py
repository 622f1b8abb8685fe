import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.schemas.response import ErrorDetail, ErrorResponse

log = logging.getLogger(__name__)


def _error_response(status_code: int, error: ErrorDetail) -> JSONResponse:
    body = ErrorResponse(error=error)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


# ----------- Exception Handlers (called by FastAPI) -----------

def http_exception_handler(request: Request, exc: HTTPException):
    """Handles exceptions raised by HTTPException (e.g., 404, 400, 409)."""
    return _error_response(exc.status_code, ErrorDetail(code="http_error", message=exc.detail))


def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handles Pydantic validation errors (422 Unprocessable Entity)."""
    error = ErrorDetail(
        code="validation_error",
        message="Invalid input data",
        details=jsonable_encoder(exc.errors()),
    )
    return _error_response(422, error)


def generic_exception_handler(request: Request, exc: Exception):
    """Handles all unhandled exceptions (500 Internal Server Error)."""
    body = ErrorResponse(error=ErrorDetail(code="server_error", message="Internal Server Error"))
    log.error(
        "Unhandled exception on path %s (request_id=%s)",
        request.url.path, body.request_id, exc_info=exc
    )
    return JSONResponse(status_code=500, content=body.model_dump(exclude_none=True))


# ----------- Registration Function -----------

def setup_exception_handlers(app: FastAPI):
    """Registers all custom exception handlers with the FastAPI application."""
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    return app
