"""
Session management schemas for request/response validation.

The four operations share one endpoint; the ``action`` field selects the
request variant. Wire names are camelCase.
"""
from datetime import datetime
from typing import Optional, Dict, Any, Union, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model exposing camelCase field names on the wire."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ============================================================================
# REQUESTS
# ============================================================================

class RegisterRequest(CamelModel):
    """Open a new session for the caller."""
    action: Literal["register"]
    device_info: Optional[Dict[str, Any]] = None
    user_agent: Optional[str] = Field(default=None, max_length=4096)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "action": "register",
                "deviceInfo": {"platform": "web", "browser": "Firefox"},
                "userAgent": "Mozilla/5.0",
            }
        }
    )


class TokenRequest(CamelModel):
    session_token: str = Field(min_length=1, max_length=256)


class ValidateRequest(TokenRequest):
    """Check that a session token is still live."""
    action: Literal["validate"]


class HeartbeatRequest(TokenRequest):
    """Slide a live session's expiry forward."""
    action: Literal["heartbeat"]


class InvalidateRequest(TokenRequest):
    """Log out one of the caller's sessions."""
    action: Literal["invalidate"]


# Discriminated on "action" where it is bound to the request body
SessionRequest = Union[RegisterRequest, ValidateRequest, HeartbeatRequest, InvalidateRequest]


# ============================================================================
# RESPONSES
# ============================================================================

class RegisterResponse(CamelModel):
    success: bool = True
    session_token: str
    expires_at: datetime
    invalidated_sessions: int = 0


class ValidateResponse(CamelModel):
    valid: bool
    reason: Optional[str] = None
    session_id: Optional[str] = None
    original_country: Optional[str] = None
    current_country: Optional[str] = None


class HeartbeatResponse(CamelModel):
    success: bool
    expires_at: Optional[datetime] = None
    valid: Optional[bool] = None
    reason: Optional[str] = None


class InvalidateResponse(CamelModel):
    success: bool = True


SessionResponse = Union[RegisterResponse, ValidateResponse, HeartbeatResponse, InvalidateResponse]
