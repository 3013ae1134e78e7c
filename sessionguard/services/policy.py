"""
Tenant session policy.

Resolves the three per-tenant knobs (session cap, country enforcement,
idle timeout) with per-field fallbacks to the configured defaults.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from sessionguard.config import settings
from sessionguard.models.user import Tenant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TenantPolicy:
    max_concurrent_sessions: int
    enforce_ip_country_check: bool
    session_timeout_minutes: int

    @property
    def session_timeout(self) -> timedelta:
        return timedelta(minutes=self.session_timeout_minutes)


DEFAULT_POLICY = TenantPolicy(
    max_concurrent_sessions=settings.DEFAULT_MAX_CONCURRENT_SESSIONS,
    enforce_ip_country_check=settings.DEFAULT_ENFORCE_IP_COUNTRY_CHECK,
    session_timeout_minutes=settings.DEFAULT_SESSION_TIMEOUT_MINUTES,
)


def _positive_or(value: Optional[int], default: int) -> int:
    if value is None or value <= 0:
        return default
    return value


def policy_from_tenant(
    tenant: Optional[Tenant],
    defaults: TenantPolicy = DEFAULT_POLICY,
) -> TenantPolicy:
    """Merge a tenant row onto the defaults. Unset or invalid fields fall back."""
    if tenant is None:
        return defaults

    enforce = tenant.enforce_ip_country_check
    return TenantPolicy(
        max_concurrent_sessions=_positive_or(
            tenant.max_concurrent_sessions, defaults.max_concurrent_sessions
        ),
        enforce_ip_country_check=(
            defaults.enforce_ip_country_check if enforce is None else bool(enforce)
        ),
        session_timeout_minutes=_positive_or(
            tenant.session_timeout_minutes, defaults.session_timeout_minutes
        ),
    )


def compute_expiry(policy: TenantPolicy, now: datetime) -> datetime:
    """Deadline for a session touched at ``now``."""
    return now + policy.session_timeout


def sessions_to_evict(active_count: int, policy: TenantPolicy) -> int:
    """
    How many existing sessions must go before one more can be added.

    Leaves ``max - 1`` survivors so the new session brings the total to
    exactly ``max``. With the default cap of 1 this is every active one.
    """
    keep = policy.max_concurrent_sessions - 1
    return max(0, active_count - keep)


class PolicyEngine:
    """Loads tenant policy rows."""

    def __init__(self, db: AsyncSession, defaults: TenantPolicy = DEFAULT_POLICY):
        self.db = db
        self.defaults = defaults

    async def get_policy(self, tenant_id: Optional[str]) -> TenantPolicy:
        if not tenant_id:
            return self.defaults

        tenant = await self.db.get(Tenant, tenant_id)
        if tenant is None:
            logger.debug(f"No policy row for tenant {tenant_id}, using defaults")
        return policy_from_tenant(tenant, self.defaults)
