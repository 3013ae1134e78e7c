# Models package
from sessionguard.models.user import User, Tenant, UserStatusEnum
from sessionguard.models.session import UserSession, InvalidationReason, SessionState
from sessionguard.models.audit import SecurityAuditLog, AuditAction

__all__ = [
    "User",
    "Tenant",
    "UserStatusEnum",
    "UserSession",
    "InvalidationReason",
    "SessionState",
    "SecurityAuditLog",
    "AuditAction",
]
