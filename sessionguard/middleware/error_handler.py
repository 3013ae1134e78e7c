"""
Global exception handler for standardized error responses.
"""
import logging
from typing import Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception with status code and detail."""

    def __init__(
        self,
        status_code: int = 500,
        detail: str = "Internal server error",
        error_code: str = "INTERNAL_ERROR",
        reason: Optional[str] = None,
    ):
        self.status_code = status_code
        self.detail = detail
        self.error_code = error_code
        self.reason = reason
        super().__init__(detail)


class AuthenticationError(AppException):
    """Authentication failed."""

    def __init__(self, detail: str = "Authentication failed"):
        super().__init__(status_code=401, detail=detail, error_code="AUTH_ERROR")


class AccountStatusError(AppException):
    """The verified account is deleted or deactivated."""

    def __init__(self, reason: str):
        super().__init__(
            status_code=401,
            detail=f"Account rejected: {reason}",
            error_code=reason.upper(),
            reason=reason,
        )


class ProfileNotFoundError(AppException):
    """The verified user has no tenant assignment."""

    def __init__(self, detail: str = "User profile not found"):
        super().__init__(
            status_code=400,
            detail=detail,
            error_code="PROFILE_NOT_FOUND",
            reason="profile_not_found",
        )


class SessionStoreError(AppException):
    """Session store unreachable or write failed. Safe to retry."""

    def __init__(self, detail: str = "Session store unavailable, please retry"):
        super().__init__(status_code=503, detail=detail, error_code="SESSION_STORE_ERROR")


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler that returns standardized error responses.
    """
    request_id = getattr(request.state, "request_id", "unknown")

    # Handle our custom exceptions
    if isinstance(exc, AppException):
        logger.warning(
            f"Application error: {exc.error_code} - {exc.detail}",
            extra={"request_id": request_id}
        )
        error = {
            "code": exc.error_code,
            "message": exc.detail,
            "request_id": request_id,
        }
        if exc.reason:
            error["reason"] = exc.reason
        headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": error},
            headers=headers,
        )

    # Handle request body / Pydantic validation errors
    if isinstance(exc, (RequestValidationError, ValidationError)):
        logger.warning(
            f"Validation error: {exc.errors()}",
            extra={"request_id": request_id}
        )
        return JSONResponse(
            status_code=422,
            content={
                "error": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "details": [
                        {"loc": list(e.get("loc", ())), "msg": e.get("msg", "")}
                        for e in exc.errors()
                    ],
                    "request_id": request_id,
                }
            }
        )

    # Handle unexpected exceptions
    logger.exception(
        f"Unexpected error: {str(exc)}",
        extra={"request_id": request_id}
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
                "request_id": request_id,
            }
        }
    )
