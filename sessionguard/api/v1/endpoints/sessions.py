"""
Session management API endpoint.

One POST endpoint carries all four session operations, selected by the
body's ``action`` field.
"""
import logging
from datetime import datetime, timezone
from typing import Optional, Annotated

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse

from sessionguard.api.deps import Caller, get_caller, get_session_manager
from sessionguard.config import settings
from sessionguard.middleware.rate_limit import limiter
from sessionguard.schemas.session import (
    SessionRequest,
    RegisterRequest,
    ValidateRequest,
    HeartbeatRequest,
    InvalidateRequest,
    RegisterResponse,
    ValidateResponse,
    HeartbeatResponse,
    InvalidateResponse,
    SessionResponse,
)
from sessionguard.services.session_manager import SessionManager
from sessionguard.utils.network import get_client_ip

logger = logging.getLogger(__name__)

router = APIRouter()


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored timestamps are naive UTC; mark them so clients get an offset."""
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def _render(response: SessionResponse) -> JSONResponse:
    return JSONResponse(
        content=response.model_dump(mode="json", by_alias=True, exclude_none=True)
    )


# ============================================================================
# ACTION HANDLERS
# ============================================================================

async def _register(
    payload: RegisterRequest,
    request: Request,
    caller: Caller,
    manager: SessionManager,
) -> RegisterResponse:
    result = await manager.register(
        user_id=caller.id,
        tenant_id=caller.tenant_id,
        device_info=payload.device_info,
        user_agent=payload.user_agent or request.headers.get("user-agent"),
        client_ip=get_client_ip(request),
    )
    return RegisterResponse(
        session_token=result.session_token,
        expires_at=_as_utc(result.expires_at),
        invalidated_sessions=result.evicted_count,
    )


async def _validate(
    payload: ValidateRequest,
    request: Request,
    manager: SessionManager,
) -> ValidateResponse:
    result = await manager.validate(payload.session_token, client_ip=get_client_ip(request))
    if result.valid:
        return ValidateResponse(valid=True, session_id=str(result.session_id))
    return ValidateResponse(
        valid=False,
        reason=result.reason.value,
        original_country=result.original_country,
        current_country=result.current_country,
    )


async def _heartbeat(
    payload: HeartbeatRequest,
    caller: Caller,
    manager: SessionManager,
) -> HeartbeatResponse:
    result = await manager.heartbeat(payload.session_token, user_id=caller.id)
    if result.success:
        return HeartbeatResponse(success=True, expires_at=_as_utc(result.expires_at))
    return HeartbeatResponse(success=False, valid=False, reason=result.reason.value)


async def _invalidate(
    payload: InvalidateRequest,
    caller: Caller,
    manager: SessionManager,
) -> InvalidateResponse:
    await manager.invalidate(payload.session_token, user_id=caller.id)
    return InvalidateResponse(success=True)


# ============================================================================
# ENDPOINTS
# ============================================================================

@router.post(
    "/manage",
    response_model=None,
    responses={200: {"description": "Operation outcome. Invalid sessions are results, not errors."}},
)
@limiter.limit(settings.RATE_LIMIT_DEFAULT)
async def manage_session(
    request: Request,
    payload: Annotated[SessionRequest, Body(discriminator="action")],
    caller: Caller = Depends(get_caller),
    manager: SessionManager = Depends(get_session_manager),
) -> JSONResponse:
    """
    Register, validate, heartbeat or invalidate a session.

    - **register**: open a session, evicting the oldest over the tenant cap
    - **validate**: check a token; may expire or flag it
    - **heartbeat**: slide a live session's expiry
    - **invalidate**: log out one of the caller's sessions (idempotent)
    """
    if isinstance(payload, RegisterRequest):
        response = await _register(payload, request, caller, manager)
    elif isinstance(payload, ValidateRequest):
        response = await _validate(payload, request, manager)
    elif isinstance(payload, HeartbeatRequest):
        response = await _heartbeat(payload, caller, manager)
    elif isinstance(payload, InvalidateRequest):
        response = await _invalidate(payload, caller, manager)
    else:
        raise TypeError(f"Unhandled session action: {type(payload).__name__}")

    return _render(response)
