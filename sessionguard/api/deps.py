"""
FastAPI dependencies for caller identity and session services.
"""
import uuid
import logging
from typing import Optional
from dataclasses import dataclass

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from sessionguard.config import settings
from sessionguard.database import get_db
from sessionguard.models.user import User, UserStatusEnum
from sessionguard.middleware.error_handler import (
    AuthenticationError,
    AccountStatusError,
    ProfileNotFoundError,
)
from sessionguard.services.session_manager import SessionManager

logger = logging.getLogger(__name__)

# HTTP Bearer scheme
security = HTTPBearer(auto_error=False)


@dataclass
class Caller:
    """Verified caller identity with its tenant."""
    id: uuid.UUID
    email: str
    tenant_id: str


def decode_identity_token(token: str) -> dict:
    """Decode and verify a bearer JWT issued by the identity provider."""
    options = {"verify_aud": settings.JWT_AUDIENCE is not None}
    try:
        return jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            options=options,
        )
    except JWTError as e:
        raise AuthenticationError(f"Invalid token: {str(e)}")


async def get_caller(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> Caller:
    """
    Resolve the verified caller before any session logic runs.

    Raises 401 for missing or invalid identity and for deleted or
    deactivated accounts, 400 when the user has no tenant.
    """
    if not credentials:
        raise AuthenticationError("Not authenticated")

    payload = decode_identity_token(credentials.credentials)

    token_type = payload.get("type")
    if token_type is not None and token_type != "access":
        raise AuthenticationError("Invalid token type")

    try:
        user_id = uuid.UUID(str(payload["sub"]))
    except (KeyError, ValueError):
        raise AuthenticationError("Invalid token subject")

    user = await db.get(User, user_id)
    if not user:
        raise AuthenticationError("User not found")

    if user.status == UserStatusEnum.DELETED:
        raise AccountStatusError("user_deleted")
    if user.status == UserStatusEnum.INACTIVE:
        raise AccountStatusError("user_inactive")

    if not user.tenant_id:
        raise ProfileNotFoundError()

    # Store user info in request state for logging
    request.state.user_id = str(user_id)

    return Caller(id=user.id, email=user.email, tenant_id=user.tenant_id)


async def get_session_manager(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> SessionManager:
    """Session manager bound to the request's DB session and the app's shared services."""
    state = request.app.state
    return SessionManager(
        db=db,
        resolver=state.geo_resolver,
        audit=state.audit_service,
        locks=state.session_locks,
    )
