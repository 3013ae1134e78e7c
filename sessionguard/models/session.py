"""
Session model.
One row per issued session token; rows are never deleted, only deactivated.
"""
import uuid
from datetime import datetime
from typing import Optional, Dict, Any
from enum import Enum

from sqlalchemy import Column, DateTime, Index
from sqlmodel import SQLModel, Field


class InvalidationReason(str, Enum):
    """Why a session left the live state. Written once, never overwritten."""
    USER_LOGOUT = "user_logout"
    EXPIRED = "expired"
    IP_COUNTRY_CHANGED = "ip_country_changed"
    NEW_LOGIN_SESSION_LIMIT = "new_login_session_limit"


class SessionState(str, Enum):
    """Lifecycle state derived from ``is_active`` and the invalidation reason."""
    ACTIVE = "active"
    EXPIRED = "expired"
    LOGGED_OUT = "logged_out"
    EVICTED = "evicted"
    COUNTRY_FLAGGED = "country_flagged"


_TERMINAL_STATES = {
    InvalidationReason.USER_LOGOUT: SessionState.LOGGED_OUT,
    InvalidationReason.EXPIRED: SessionState.EXPIRED,
    InvalidationReason.IP_COUNTRY_CHANGED: SessionState.COUNTRY_FLAGGED,
    InvalidationReason.NEW_LOGIN_SESSION_LIMIT: SessionState.EVICTED,
}


class UserSession(SQLModel, table=True):
    """
    A server-held session bound to an opaque token.

    ``device_info``, ``user_id`` and ``tenant_id`` are fixed at creation.
    Network origin fields track the last observation; ``expires_at``
    slides forward on heartbeat and successful validation.
    """
    __tablename__ = "user_sessions"
    __table_args__ = (
        Index("ix_user_sessions_user_active", "user_id", "is_active"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)

    session_token: str = Field(index=True, unique=True, max_length=128)

    # Ownership
    user_id: uuid.UUID = Field(index=True)
    tenant_id: str = Field(index=True, max_length=50)

    # Client metadata (sanitized JSON)
    device_info: str = Field(default="{}")
    user_agent: Optional[str] = Field(default=None, max_length=512)

    # Last observed network origin
    ip_address: Optional[str] = Field(default=None, max_length=64)
    ip_country: Optional[str] = Field(default=None, max_length=64)
    ip_city: Optional[str] = Field(default=None, max_length=128)

    # Timestamps
    created_at: datetime = Field(sa_column=Column(DateTime(), index=True, nullable=False))
    last_activity_at: datetime = Field(sa_column=Column(DateTime(), nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime(), index=True, nullable=False))

    # Status
    is_active: bool = Field(default=True, index=True)
    invalidated_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime()))
    invalidation_reason: Optional[InvalidationReason] = Field(default=None)

    @property
    def state(self) -> SessionState:
        if self.is_active:
            return SessionState.ACTIVE
        return _TERMINAL_STATES[InvalidationReason(self.invalidation_reason)]

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now


def termination_values(reason: InvalidationReason, now: datetime) -> Dict[str, Any]:
    """
    Column values that move a session to a terminal state.

    Apply them only through an UPDATE conditioned on ``is_active``, so a
    row that another writer already ended keeps its first reason.
    """
    return {
        "is_active": False,
        "invalidated_at": now,
        "invalidation_reason": reason,
    }
