"""
Security audit log model.
Append-only trail of security-relevant session transitions.
"""
import uuid
from datetime import datetime
from typing import Optional
from enum import Enum

from sqlalchemy import Column, DateTime
from sqlmodel import SQLModel, Field

from sessionguard.utils.clock import utcnow


class AuditAction(str, Enum):
    """Types of auditable session events."""
    SESSIONS_INVALIDATED_ON_LOGIN = "sessions_invalidated_on_login"
    SESSION_INVALIDATED_IP_COUNTRY_CHANGE = "session_invalidated_ip_country_change"


class SecurityAuditLog(SQLModel, table=True):
    """
    Audit log entry for a security-relevant state transition.

    ``old_value`` / ``new_value`` hold JSON snapshots of the affected
    fields.
    """
    __tablename__ = "security_audit_logs"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)

    # Multi-tenant
    tenant_id: str = Field(index=True, max_length=50)

    # Actor (whose sessions were affected)
    actor_id: uuid.UUID = Field(index=True)

    # Event
    action: AuditAction = Field(index=True)
    table_name: str = Field(default="user_sessions", max_length=64)
    old_value: Optional[str] = Field(default=None)  # JSON string of old state
    new_value: Optional[str] = Field(default=None)  # JSON string of new state

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime(), index=True, nullable=False))

    # Retention
    expires_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(), index=True))
