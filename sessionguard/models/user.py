"""
Identity and tenant models.
Users are provisioned by the upstream identity provider; this service
only reads them for the account-status pre-check and tenant lookup.
"""
import uuid
from datetime import datetime
from typing import Optional
from enum import Enum

from sqlalchemy import Column, DateTime
from sqlmodel import SQLModel, Field

from sessionguard.utils.clock import utcnow


class UserStatusEnum(str, Enum):
    """User account status."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    DELETED = "deleted"


class Tenant(SQLModel, table=True):
    """
    Customer organization and its session security policy.

    Policy columns are nullable: ``None`` means the tenant has not
    configured a value and the service default applies.
    """
    __tablename__ = "tenants"

    id: str = Field(primary_key=True, max_length=50)
    name: str = Field(default="", max_length=255)

    # Session security policy
    max_concurrent_sessions: Optional[int] = Field(default=None)
    enforce_ip_country_check: Optional[bool] = Field(default=None)
    session_timeout_minutes: Optional[int] = Field(default=None)

    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime(), nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime(), nullable=False))


class User(SQLModel, table=True):
    """User profile as mirrored from the identity provider."""
    __tablename__ = "users"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    email: str = Field(index=True, max_length=255)
    name: Optional[str] = Field(default=None, max_length=100)

    # Multi-tenancy
    tenant_id: Optional[str] = Field(default=None, foreign_key="tenants.id", index=True, max_length=50)

    status: UserStatusEnum = Field(default=UserStatusEnum.ACTIVE)

    # Timestamps
    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime(), nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime(), nullable=False))
