"""
Error taxonomy for the PharmaPin API.

Every failure a route can produce is an ``AppError`` carrying a stable
``ErrorCode``. Clients switch on ``error.code``; ``error.msg`` is for humans.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import ConnectionFailure
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "validation_error"
    INVALID_INPUT = "invalid_input"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    DUPLICATE_ENTRY = "duplicate_entry"
    ILLEGAL_TRANSITION = "illegal_transition"
    INSUFFICIENT_STOCK = "insufficient_stock"
    FEATURE_DISABLED = "feature_disabled"
    STORE_UNAVAILABLE = "store_unavailable"
    INTERNAL_ERROR = "internal_error"


class AppError(Exception):
    status_code = 400
    code = ErrorCode.INVALID_INPUT

    def __init__(self, msg: str, details: Any = None):
        super().__init__(msg)
        self.msg = msg
        self.details = details


class ValidationError(AppError):
    """Missing or malformed required fields. ``details`` maps field -> message."""

    status_code = 422
    code = ErrorCode.VALIDATION_ERROR

    def __init__(self, msg: str = "Validation error", details: Optional[Dict[str, str]] = None):
        super().__init__(msg, details or {})


class InvalidInput(AppError):
    status_code = 400
    code = ErrorCode.INVALID_INPUT


class Unauthorized(AppError):
    status_code = 401
    code = ErrorCode.UNAUTHORIZED


class Forbidden(AppError):
    status_code = 403
    code = ErrorCode.FORBIDDEN


class NotFound(AppError):
    status_code = 404
    code = ErrorCode.NOT_FOUND


class Conflict(AppError):
    status_code = 409
    code = ErrorCode.CONFLICT


class DuplicateEntry(Conflict):
    code = ErrorCode.DUPLICATE_ENTRY


class IllegalTransition(Conflict):
    code = ErrorCode.ILLEGAL_TRANSITION


class InsufficientStock(AppError):
    status_code = 400
    code = ErrorCode.INSUFFICIENT_STOCK


class FeatureDisabled(AppError):
    status_code = 503
    code = ErrorCode.FEATURE_DISABLED


class StoreUnavailable(AppError):
    status_code = 503
    code = ErrorCode.STORE_UNAVAILABLE

    def __init__(self, msg: str = "Database temporarily unavailable", details: Any = None):
        super().__init__(msg, details)


_HTTP_CODES = {
    400: ErrorCode.INVALID_INPUT,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    409: ErrorCode.CONFLICT,
    422: ErrorCode.VALIDATION_ERROR,
}


def err(
    msg: str = "Something went wrong",
    *,
    status_code: int = 400,
    code: Optional[str] = None,
    details: Any = None,
) -> JSONResponse:
    """
    Standard error wrapper:
    {
      "ok": false,
      "error": {"msg": "...", "code": "...", "details": ...}
    }
    """
    payload: Dict[str, Any] = {
        "ok": False,
        "error": {
            "msg": msg,
            "code": code,
            "details": details,
        },
    }
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload))


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        return err(msg=exc.msg, status_code=exc.status_code, code=exc.code.value, details=exc.details)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        msg = exc.detail if isinstance(exc.detail, str) else "Request failed"
        code = _HTTP_CODES.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
        return err(msg=msg, status_code=exc.status_code, code=code.value)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = {}
        for e in exc.errors():
            field = ".".join(str(p) for p in e.get("loc", ()) if p != "body")
            details[field or "body"] = e.get("msg")
        return err(msg="Validation error", status_code=422, code=ErrorCode.VALIDATION_ERROR.value, details=details)

    @app.exception_handler(PydanticValidationError)
    async def model_validation_handler(request: Request, exc: PydanticValidationError) -> JSONResponse:
        details = {".".join(str(p) for p in e.get("loc", ())) or "body": e.get("msg") for e in exc.errors()}
        return err(msg="Validation error", status_code=422, code=ErrorCode.VALIDATION_ERROR.value, details=details)

    # also covers AutoReconnect and ServerSelectionTimeoutError
    @app.exception_handler(ConnectionFailure)
    async def store_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.warning("Database unreachable on %s %s: %s", request.method, request.url.path, exc)
        e = StoreUnavailable()
        return err(msg=e.msg, status_code=e.status_code, code=e.code.value)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return err(msg="Internal server error", status_code=500, code=ErrorCode.INTERNAL_ERROR.value)
