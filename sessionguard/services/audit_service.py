"""
Audit Service.
Append-only security trail for session transitions.

Writes happen in a dedicated database session, after the session
mutation they describe has committed. A failed audit write is logged
and swallowed: it never fails the session operation itself.
"""
import uuid
import json
import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import delete

from sessionguard.config import settings
from sessionguard.models.audit import SecurityAuditLog, AuditAction
from sessionguard.models.session import InvalidationReason
from sessionguard.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


class AuditService:
    """
    Service for writing security audit records.

    Features:
    - Own session and transaction per record
    - Fire-and-forget writes (failures logged, never raised)
    - Retention policy enforcement
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        retention_days: int = 365,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.retention_days = retention_days
        self.clock = clock

    # ========================================================================
    # LOG CREATION
    # ========================================================================

    async def record(
        self,
        tenant_id: str,
        actor_id: uuid.UUID,
        action: AuditAction,
        table_name: str = "user_sessions",
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
    ) -> Optional[SecurityAuditLog]:
        """
        Write one audit record.

        Returns the stored entry, or None if the write failed.
        """
        now = self.clock()
        entry = SecurityAuditLog(
            tenant_id=tenant_id,
            actor_id=actor_id,
            action=action,
            table_name=table_name,
            old_value=json.dumps(old_value, default=str) if old_value is not None else None,
            new_value=json.dumps(new_value, default=str) if new_value is not None else None,
            created_at=now,
            expires_at=now + timedelta(days=self.retention_days),
        )

        try:
            async with self.session_factory() as db:
                db.add(entry)
                await db.commit()
        except Exception:
            logger.exception(
                f"[AUDIT] Failed to write {action.value} for user={actor_id} tenant={tenant_id}"
            )
            return None

        logger.info(f"[AUDIT] {action.value} (user={actor_id}, tenant={tenant_id})")
        return entry

    # ========================================================================
    # CONVENIENCE METHODS
    # ========================================================================

    async def log_sessions_evicted(
        self,
        tenant_id: str,
        user_id: uuid.UUID,
        invalidated_count: int,
        new_session_id: uuid.UUID,
    ) -> Optional[SecurityAuditLog]:
        """Log the bulk eviction performed by a new login."""
        return await self.record(
            tenant_id=tenant_id,
            actor_id=user_id,
            action=AuditAction.SESSIONS_INVALIDATED_ON_LOGIN,
            new_value={
                "invalidated_count": invalidated_count,
                "reason": InvalidationReason.NEW_LOGIN_SESSION_LIMIT.value,
                "new_session": str(new_session_id),
            },
        )

    async def log_country_change(
        self,
        tenant_id: str,
        user_id: uuid.UUID,
        session_id: uuid.UUID,
        old_country: Optional[str],
        old_ip: Optional[str],
        new_country: Optional[str],
        new_ip: Optional[str],
    ) -> Optional[SecurityAuditLog]:
        """Log a session invalidated because its origin country changed."""
        return await self.record(
            tenant_id=tenant_id,
            actor_id=user_id,
            action=AuditAction.SESSION_INVALIDATED_IP_COUNTRY_CHANGE,
            old_value={
                "session_id": str(session_id),
                "ip_country": old_country,
                "ip_address": old_ip,
            },
            new_value={
                "ip_country": new_country,
                "ip_address": new_ip,
                "reason": InvalidationReason.IP_COUNTRY_CHANGED.value,
            },
        )

    # ========================================================================
    # RETENTION
    # ========================================================================

    async def cleanup_expired_logs(self, now: Optional[datetime] = None) -> int:
        """
        Delete audit logs past their retention period.

        Called by maintenance job.
        """
        now = now or self.clock()
        stmt = delete(SecurityAuditLog).where(
            SecurityAuditLog.expires_at.is_not(None),
            SecurityAuditLog.expires_at < now,
        )

        async with self.session_factory() as db:
            result = await db.execute(stmt)
            await db.commit()

        count = result.rowcount or 0
        if count:
            logger.info(f"Deleted {count} expired audit logs")
        return count


def get_audit_service(session_factory: SessionFactory) -> AuditService:
    """Get audit service instance."""
    return AuditService(session_factory, retention_days=settings.AUDIT_RETENTION_DAYS)
