"""
Error taxonomy and the FastAPI handlers that render it.

Production responses never carry internal detail: storage failures return a
generated request id that matches the server-side log line instead.
"""
import math
import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from ecoticker.config import get_settings

logger = structlog.get_logger()


class AppError(Exception):
    status_code = 500
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        self.message = message or self.message

    def to_dict(self) -> dict:
        return {"error": self.message}

    def headers(self) -> Optional[dict]:
        return None


class ValidationError(AppError):
    status_code = 400
    message = "Validation failed"

    def __init__(self, messages: list[str], message: Optional[str] = None):
        super().__init__(message)
        self.messages = list(messages)

    def to_dict(self) -> dict:
        return {"error": self.message, "details": self.messages}


class AuthError(AppError):
    status_code = 401
    message = "Unauthorized - Valid API key required"

    def headers(self) -> dict:
        return {"WWW-Authenticate": "API-Key"}


class NotFound(AppError):
    status_code = 404
    message = "Not found"


class Conflict(AppError):
    status_code = 409
    message = "Conflict"


class RateLimitExceeded(AppError):
    status_code = 429
    message = "Too Many Requests"

    def __init__(self, reset_at: float, now: Optional[float] = None, message: Optional[str] = None):
        super().__init__(message)
        self.reset_at = reset_at
        now = now if now is not None else datetime.now(timezone.utc).timestamp()
        self.retry_after = max(0, math.ceil(reset_at - now))

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "resetAt": datetime.fromtimestamp(self.reset_at, timezone.utc).isoformat(),
        }

    def headers(self) -> dict:
        return {
            "Retry-After": str(self.retry_after),
            "X-RateLimit-Reset": str(int(self.reset_at * 1000)),
        }


class ExternalServiceFailure(AppError):
    """Classifier or news source failure. Handled per topic, never a blanket 5xx."""
    status_code = 502
    message = "External service failure"


class StorageError(AppError):
    status_code = 500
    message = "Internal server error"


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:12]}"


def storage_error_response(error: Exception, user_message: str, status_code: int = 500) -> JSONResponse:
    """Log the full error and return a sanitized body with a correlation id."""
    settings = get_settings()
    request_id = new_request_id()
    logger.error("storage error", request_id=request_id, message=user_message,
                 error=str(error), error_type=type(error).__name__)
    body = {
        "error": user_message,
        "requestId": request_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if settings.ENVIRONMENT == "development":
        body["details"] = str(error)
    return JSONResponse(body, status_code=status_code)


def register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(StorageError)
    async def _storage_error(request: Request, exc: StorageError):
        cause = exc.__cause__ or exc
        return storage_error_response(cause, exc.message, exc.status_code)

    @app.exception_handler(AppError)
    async def _app_error(request: Request, exc: AppError):
        return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=exc.headers())

    @app.exception_handler(SQLAlchemyError)
    async def _sqlalchemy_error(request: Request, exc: SQLAlchemyError):
        return storage_error_response(exc, "Internal server error")

    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request, exc: RequestValidationError):
        messages = [
            f"{'.'.join(str(p) for p in err['loc'] if p != 'body') or 'root'}: {err['msg']}"
            for err in exc.errors()
        ]
        return JSONResponse({"error": "Validation failed", "details": messages}, status_code=400)
