"""
Pydantic schemas for API request/response models.
"""
from sessionguard.schemas.session import (
    SessionRequest,
    RegisterRequest,
    ValidateRequest,
    HeartbeatRequest,
    InvalidateRequest,
    SessionResponse,
    RegisterResponse,
    ValidateResponse,
    HeartbeatResponse,
    InvalidateResponse,
)

__all__ = [
    # Requests
    "SessionRequest",
    "RegisterRequest",
    "ValidateRequest",
    "HeartbeatRequest",
    "InvalidateRequest",
    # Responses
    "SessionResponse",
    "RegisterResponse",
    "ValidateResponse",
    "HeartbeatResponse",
    "InvalidateResponse",
]
