"""
Request logging middleware.
"""
import re
import time
import uuid
import logging
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from sessionguard.utils.network import get_client_ip

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,64}$")

# Health-check endpoints are logged at DEBUG so they don't drown session traffic
_QUIET_PATH_SUFFIXES = ("/health", "/health/live", "/health/ready")


def resolve_request_id(request: Request) -> str:
    """Reuse a well-formed upstream request id, else mint a short one."""
    incoming = request.headers.get(REQUEST_ID_HEADER)
    if incoming and _REQUEST_ID_PATTERN.match(incoming):
        return incoming
    return uuid.uuid4().hex[:8]


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log all incoming requests with timing and context."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = resolve_request_id(request)
        request.state.request_id = request_id

        start_time = time.perf_counter()

        response = None
        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            status_code = response.status_code if response else 500

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                # Set by the identity dependency once the caller is verified
                "user_id": getattr(request.state, "user_id", "anonymous"),
                "client_ip": get_client_ip(request),
                "duration_ms": round(duration_ms, 2),
                "status_code": status_code,
            }

            if status_code >= 500:
                logger.error(f"Request failed: {log_data}")
            elif status_code >= 400:
                logger.warning(f"Request rejected: {log_data}")
            elif request.url.path.endswith(_QUIET_PATH_SUFFIXES):
                logger.debug(f"Health check: {log_data}")
            else:
                logger.info(f"Request completed: {log_data}")
