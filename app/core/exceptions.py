from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class StoreError(AppError):
    def __init__(self, message: str = "Store error", code: str = "STORE_ERROR", details: dict[str, Any] | None = None):
        super().__init__(message, code=code, details=details)


class StoreUnavailableError(StoreError):
    def __init__(self, message: str = "Store unavailable", details: dict[str, Any] | None = None):
        super().__init__(message, code="STORE_UNAVAILABLE", details=details)


class ConcurrencyConflictError(AppError):
    """Charge retry budget exhausted; safe to try again later."""

    def __init__(self, message: str = "Too much contention on account", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONCURRENCY_CONFLICT", details=details)


class MalformedStateError(AppError):
    """Stored balance is missing or not an integer."""

    def __init__(
        self,
        message: str = "Malformed account state",
        code: str = "MALFORMED_STATE",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code=code, details=details)


class AccountNotInitializedError(MalformedStateError):
    def __init__(self, account: str):
        super().__init__(
            f"Account {account!r} has no balance; reset it first",
            code="ACCOUNT_NOT_INITIALIZED",
            details={"account": account},
        )


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body = {
        "error": {
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(status_code=exc.status_code, content=body)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    from app.core.logging import get_logger
    get_logger(__name__).warning("app_error", code=exc.code, message=exc.message, path=request.url.path)
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": exc.errors()},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from app.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    body = {
        "error": {
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
            "details": {},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body,
    )
