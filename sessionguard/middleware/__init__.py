"""
Middleware package for SessionGuard.
"""
from sessionguard.middleware.rate_limit import (
    limiter,
    setup_rate_limiting,
)
from sessionguard.middleware.logging import RequestLoggingMiddleware

__all__ = [
    "limiter",
    "setup_rate_limiting",
    "RequestLoggingMiddleware",
]
