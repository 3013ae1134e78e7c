"""
Rate limiting using slowapi.
Protects the session endpoint from token-guessing and login floods.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from sessionguard.config import settings

logger = logging.getLogger(__name__)


def get_user_identifier(request: Request) -> str:
    """
    Get identifier for rate limiting.
    Uses the verified caller if known, else the client address.
    """
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    return get_remote_address(request)


def create_limiter() -> Limiter:
    """Create rate limiter instance."""
    if not settings.RATE_LIMIT_ENABLED:
        logger.info("Rate limiting is disabled in settings")

    return Limiter(
        key_func=get_user_identifier,
        default_limits=[settings.RATE_LIMIT_DEFAULT],
        storage_uri="memory://",  # Use in-memory storage (no Redis needed)
        enabled=settings.RATE_LIMIT_ENABLED,
    )


# Global limiter instance
limiter = create_limiter()


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Render slowapi rejections in the standard error envelope."""
    request_id = getattr(request.state, "request_id", "unknown")
    logger.warning(
        f"Rate limit exceeded for {get_user_identifier(request)}: {exc.detail}",
        extra={"request_id": request_id},
    )
    return JSONResponse(
        status_code=429,
        content={
            "error": {
                "code": "RATE_LIMIT",
                "message": f"Rate limit exceeded: {exc.detail}",
                "request_id": request_id,
            }
        },
    )


def setup_rate_limiting(app: FastAPI) -> None:
    """
    Setup rate limiting for FastAPI app.
    Call this in main.py after app creation.
    """
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
