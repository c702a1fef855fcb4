"""
Exception handlers for FastAPI.

Caller-facing failures share one shape::

    {"error": {"kind": "<kind>", "message": "..."}}

where ``kind`` is one of unauthenticated, permission-denied,
invalid-argument, not-found or internal.
"""

import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from receiptgold.core.errors import InvalidArgument, OperationError
from receiptgold.core.observability import sentry_capture

logger = logging.getLogger(__name__)


def _error_response(status_code: int, kind: str, message: str, **extra) -> JSONResponse:
    body = {"error": {"kind": kind, "message": message, **extra}}
    return JSONResponse(status_code=status_code, content=body)


def operation_error_handler(request: Request, exc: OperationError):
    if exc.status_code >= 500:
        logger.error("Operation failed on %s %s: %s", request.method, request.url.path, exc.message)
        sentry_capture(exc)
    return _error_response(exc.status_code, exc.kind, exc.message)


def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg")}
        for err in exc.errors()
    ]
    return _error_response(
        InvalidArgument.status_code,
        InvalidArgument.kind,
        "Request validation failed",
        details=details,
    )


def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    sentry_capture(exc)
    return _error_response(500, "internal", "Internal server error")


# Usage in main.py:
# app.add_exception_handler(OperationError, operation_error_handler)
# app.add_exception_handler(RequestValidationError, validation_exception_handler)
# app.add_exception_handler(Exception, generic_exception_handler)
