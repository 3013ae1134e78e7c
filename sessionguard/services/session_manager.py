"""
Session lifecycle service.

Registers, validates, extends and invalidates server-held sessions,
enforcing the tenant's concurrent-session cap and flagging sessions whose
network origin moves between countries.
"""
import uuid
import asyncio
import secrets
import logging
from contextlib import asynccontextmanager, nullcontext
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, AsyncIterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import update
from sqlmodel import select

from sessionguard.config import settings
from sessionguard.middleware.error_handler import SessionStoreError
from sessionguard.models.session import UserSession, InvalidationReason, termination_values
from sessionguard.services.audit_service import AuditService
from sessionguard.services.geolocation import GeolocationResolver, GeoLocation
from sessionguard.services.policy import (
    PolicyEngine,
    TenantPolicy,
    compute_expiry,
    sessions_to_evict,
)
from sessionguard.services.sanitizer import serialize_device_info, sanitize_user_agent
from sessionguard.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "sess_"
SWEEP_BATCH_SIZE = 500


class ValidationFailure(str, Enum):
    """Expected reasons a presented token is not (or no longer) valid."""
    SESSION_NOT_FOUND = "session_not_found"
    SESSION_EXPIRED = "session_expired"
    IP_COUNTRY_CHANGED = "ip_country_changed"


@dataclass(frozen=True)
class RegisterResult:
    session_token: str
    session_id: uuid.UUID
    expires_at: datetime
    evicted_count: int


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: Optional[ValidationFailure] = None
    session_id: Optional[uuid.UUID] = None
    original_country: Optional[str] = None
    current_country: Optional[str] = None


@dataclass(frozen=True)
class HeartbeatResult:
    success: bool
    expires_at: Optional[datetime] = None
    reason: Optional[ValidationFailure] = None


def _short(token: str) -> str:
    """Loggable prefix of a session token."""
    return f"{token[:16]}..." if token else "<empty>"


def generate_session_token(now: datetime) -> str:
    """``sess_<epoch ms>_<32 url-safe random chars>``"""
    epoch_ms = int(now.replace(tzinfo=timezone.utc).timestamp() * 1000)
    return f"{TOKEN_PREFIX}{epoch_ms}_{secrets.token_urlsafe(24)}"


# ============================================================================
# PER-USER SERIALIZATION
# ============================================================================

class UserLockRegistry:
    """
    One ``asyncio.Lock`` per user, created on demand and dropped once no
    task holds or waits for it.

    Serializes eviction+insert for the same user within one process.
    Separate processes still race; the next ``register`` corrects that.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, user_id: uuid.UUID) -> AsyncIterator[None]:
        key = str(user_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class SessionManager:
    """
    Manages the session state machine.

    ACTIVE -> EXPIRED | LOGGED_OUT | EVICTED | COUNTRY_FLAGGED, with no
    way back. Every operation re-reads the store; nothing about session
    state is cached in process.
    """

    def __init__(
        self,
        db: AsyncSession,
        resolver: GeolocationResolver,
        audit: AuditService,
        policy_engine: Optional[PolicyEngine] = None,
        locks: Optional[UserLockRegistry] = None,
        clock: Optional[Clock] = None,
        serialize_registration: bool = settings.SERIALIZE_SESSION_REGISTRATION,
    ):
        self.db = db
        self.resolver = resolver
        self.audit = audit
        self.policy_engine = policy_engine or PolicyEngine(db)
        # An idle registry has len() == 0, so test for None explicitly
        self.locks = locks if locks is not None else UserLockRegistry()
        self.clock = clock or utcnow
        self.serialize_registration = serialize_registration

    @asynccontextmanager
    async def _store_guard(self, operation: str) -> AsyncIterator[None]:
        """Map store failures to a retriable error, leaving no partial state."""
        try:
            yield
        except SQLAlchemyError as e:
            logger.error(f"Session store failure during {operation}: {e}")
            try:
                await self.db.rollback()
            except SQLAlchemyError:
                logger.exception(f"Rollback failed during {operation}")
            raise SessionStoreError() from e

    def _registration_lock(self, user_id: uuid.UUID):
        if self.serialize_registration:
            return self.locks.hold(user_id)
        return nullcontext()

    async def _terminate(
        self,
        session_ids: List[uuid.UUID],
        reason: InvalidationReason,
        now: datetime,
    ) -> int:
        """End the given sessions if still active. Returns how many this call ended."""
        if not session_ids:
            return 0
        stmt = (
            update(UserSession)
            .where(
                UserSession.id.in_(session_ids),
                UserSession.is_active == True,
            )
            .values(**termination_values(reason, now))
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount or 0

    # ========================================================================
    # REGISTER
    # ========================================================================

    async def register(
        self,
        user_id: uuid.UUID,
        tenant_id: str,
        device_info: Optional[Dict[str, Any]] = None,
        user_agent: Optional[str] = None,
        client_ip: str = "unknown",
    ) -> RegisterResult:
        """
        Create a session, evicting the oldest active ones over the cap.

        Raises:
            SessionStoreError: the new row was not committed
        """
        async with self._store_guard("register"):
            policy = await self.policy_engine.get_policy(tenant_id)

        # Best effort, and kept outside the per-user lock
        location = await self.resolver.resolve(client_ip)

        async with self._registration_lock(user_id):
            async with self._store_guard("register"):
                now = self.clock()
                evicted = await self._evict_for_new_session(user_id, policy, now)

                session = UserSession(
                    session_token=generate_session_token(now),
                    user_id=user_id,
                    tenant_id=tenant_id,
                    device_info=serialize_device_info(device_info),
                    user_agent=sanitize_user_agent(user_agent),
                    ip_address=location.ip,
                    ip_country=location.country_code,
                    ip_city=location.city,
                    created_at=now,
                    last_activity_at=now,
                    expires_at=compute_expiry(policy, now),
                    is_active=True,
                )
                self.db.add(session)
                await self.db.commit()

        logger.info(
            f"Registered session {session.id} for user {user_id} "
            f"(tenant={tenant_id}, evicted={evicted}, country={location.country_code})"
        )

        if evicted:
            await self.audit.log_sessions_evicted(
                tenant_id=tenant_id,
                user_id=user_id,
                invalidated_count=evicted,
                new_session_id=session.id,
            )

        return RegisterResult(
            session_token=session.session_token,
            session_id=session.id,
            expires_at=session.expires_at,
            evicted_count=evicted,
        )

    async def _evict_for_new_session(
        self,
        user_id: uuid.UUID,
        policy: TenantPolicy,
        now: datetime,
    ) -> int:
        """Deactivate oldest-first until one more session fits under the cap."""
        active = await self.list_active_sessions(user_id)
        excess = sessions_to_evict(len(active), policy)
        if not excess:
            return 0

        evicted = await self._terminate(
            [session.id for session in active[:excess]],
            InvalidationReason.NEW_LOGIN_SESSION_LIMIT,
            now,
        )

        logger.info(
            f"Evicting {evicted} of {len(active)} active sessions for user {user_id} "
            f"(max={policy.max_concurrent_sessions})"
        )
        return evicted

    # ========================================================================
    # VALIDATE
    # ========================================================================

    async def validate(
        self,
        session_token: str,
        client_ip: str = "unknown",
    ) -> ValidationResult:
        """
        Check a presented token.

        Expiry is decided before any geolocation, so an elapsed session is
        reported as expired and never as a country change.
        """
        not_found = ValidationResult(valid=False, reason=ValidationFailure.SESSION_NOT_FOUND)

        async with self._store_guard("validate"):
            session = await self._get_active_by_token(session_token)
            if session is None:
                return not_found

            now = self.clock()
            if session.is_expired(now):
                ended = await self._terminate([session.id], InvalidationReason.EXPIRED, now)
                await self.db.commit()
                if not ended:
                    return not_found
                logger.info(f"Session {session.id} expired ({_short(session_token)})")
                return ValidationResult(
                    valid=False,
                    reason=ValidationFailure.SESSION_EXPIRED,
                    session_id=session.id,
                )

            policy = await self.policy_engine.get_policy(session.tenant_id)

        location = await self.resolver.resolve(client_ip)

        if self._country_changed(session, location, policy):
            return await self._flag_country_change(session, location)

        now = self.clock()
        values: Dict[str, Any] = {
            "last_activity_at": now,
            "ip_address": location.ip,
            "expires_at": compute_expiry(policy, now),
        }
        current_country = session.ip_country
        # Never replace a known country with "no signal" or with LOCAL
        if location.is_known and (not location.is_local or not session.ip_country):
            values.update(ip_country=location.country_code, ip_city=location.city)
            current_country = location.country_code

        # The row may have been ended while the lookup was in flight
        async with self._store_guard("validate"):
            stmt = (
                update(UserSession)
                .where(
                    UserSession.id == session.id,
                    UserSession.is_active == True,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = await self.db.execute(stmt)
            await self.db.commit()

        if not result.rowcount:
            logger.info(f"Session {session.id} ended during validation ({_short(session_token)})")
            return not_found

        return ValidationResult(
            valid=True,
            session_id=session.id,
            current_country=current_country,
        )

    @staticmethod
    def _country_changed(
        session: UserSession,
        location: GeoLocation,
        policy: TenantPolicy,
    ) -> bool:
        if not policy.enforce_ip_country_check:
            return False
        stored = session.ip_country
        if not stored or stored == "LOCAL":
            return False
        if not location.is_known or location.is_local:
            return False
        return stored != location.country_code

    async def _flag_country_change(
        self,
        session: UserSession,
        location: GeoLocation,
    ) -> ValidationResult:
        original_country = session.ip_country
        original_ip = session.ip_address

        async with self._store_guard("validate"):
            ended = await self._terminate(
                [session.id], InvalidationReason.IP_COUNTRY_CHANGED, self.clock()
            )
            await self.db.commit()

        if not ended:
            logger.info(f"Session {session.id} ended during validation ({_short(session.session_token)})")
            return ValidationResult(valid=False, reason=ValidationFailure.SESSION_NOT_FOUND)

        logger.warning(
            f"Session {session.id} for user {session.user_id} invalidated: "
            f"country changed {original_country} -> {location.country_code} "
            f"({original_ip} -> {location.ip})"
        )

        await self.audit.log_country_change(
            tenant_id=session.tenant_id,
            user_id=session.user_id,
            session_id=session.id,
            old_country=original_country,
            old_ip=original_ip,
            new_country=location.country_code,
            new_ip=location.ip,
        )

        return ValidationResult(
            valid=False,
            reason=ValidationFailure.IP_COUNTRY_CHANGED,
            session_id=session.id,
            original_country=original_country,
            current_country=location.country_code,
        )

    # ========================================================================
    # HEARTBEAT
    # ========================================================================

    async def heartbeat(
        self,
        session_token: str,
        user_id: Optional[uuid.UUID] = None,
    ) -> HeartbeatResult:
        """
        Slide the expiry of a live session forward.

        Unknown, invalidated, elapsed and foreign sessions all answer
        ``session_not_found``; an elapsed session is not revived.
        """
        not_found = HeartbeatResult(success=False, reason=ValidationFailure.SESSION_NOT_FOUND)

        async with self._store_guard("heartbeat"):
            now = self.clock()
            conditions = [
                UserSession.session_token == session_token,
                UserSession.is_active == True,
                UserSession.expires_at >= now,
            ]
            if user_id is not None:
                conditions.append(UserSession.user_id == user_id)

            result = await self.db.execute(select(UserSession.tenant_id).where(*conditions))
            tenant_id = result.scalar_one_or_none()
            if tenant_id is None:
                return not_found

            policy = await self.policy_engine.get_policy(tenant_id)
            expires_at = compute_expiry(policy, now)

            stmt = (
                update(UserSession)
                .where(*conditions)
                .values(expires_at=expires_at, last_activity_at=now)
            )
            result = await self.db.execute(stmt)
            await self.db.commit()

        if not result.rowcount:
            return not_found
        return HeartbeatResult(success=True, expires_at=expires_at)

    # ========================================================================
    # INVALIDATE
    # ========================================================================

    async def invalidate(self, session_token: str, user_id: uuid.UUID) -> bool:
        """
        Log out one of the caller's own sessions.

        Idempotent: an unknown, foreign or already inactive token is a
        no-op that still succeeds.
        """
        async with self._store_guard("invalidate"):
            now = self.clock()
            stmt = (
                update(UserSession)
                .where(
                    UserSession.session_token == session_token,
                    UserSession.user_id == user_id,
                    UserSession.is_active == True,
                )
                .values(**termination_values(InvalidationReason.USER_LOGOUT, now))
            )
            result = await self.db.execute(stmt)
            await self.db.commit()

        if result.rowcount:
            logger.info(f"User {user_id} logged out session {_short(session_token)}")
        return True

    # ========================================================================
    # QUERIES AND HYGIENE
    # ========================================================================

    async def _get_active_by_token(self, session_token: str) -> Optional[UserSession]:
        stmt = (
            select(UserSession)
            .where(
                UserSession.session_token == session_token,
                UserSession.is_active == True,
            )
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_active_sessions(self, user_id: uuid.UUID) -> List[UserSession]:
        """Active sessions for a user, oldest first."""
        stmt = (
            select(UserSession)
            .where(
                UserSession.user_id == user_id,
                UserSession.is_active == True,
            )
            .order_by(UserSession.created_at.asc(), UserSession.id.asc())
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def expire_stale_sessions(self, now: Optional[datetime] = None) -> int:
        """
        Mark elapsed but still active sessions as expired.

        Hygiene only: ``validate`` already expires sessions on read.
        """
        now = now or self.clock()
        total = 0

        async with self._store_guard("expire_stale_sessions"):
            while True:
                result = await self.db.execute(
                    select(UserSession.session_token)
                    .where(
                        UserSession.is_active == True,
                        UserSession.expires_at < now,
                    )
                    .limit(SWEEP_BATCH_SIZE)
                )
                tokens = list(result.scalars().all())
                if not tokens:
                    break

                stmt = (
                    update(UserSession)
                    .where(
                        UserSession.session_token.in_(tokens),
                        UserSession.is_active == True,
                        UserSession.expires_at < now,
                    )
                    .values(**termination_values(InvalidationReason.EXPIRED, now))
                    .execution_options(synchronize_session=False)
                )
                result = await self.db.execute(stmt)
                await self.db.commit()
                total += result.rowcount or 0

                if len(tokens) < SWEEP_BATCH_SIZE:
                    break

        if total:
            logger.info(f"Expired {total} stale sessions")
        return total
