"""
Background maintenance jobs.

Periodic hygiene that keeps the tables tidy:
- Stale session sweep (elapsed sessions still flagged active)
- Geolocation cache pruning
- Audit log retention cleanup

None of this is needed for correctness: ``validate`` expires sessions on
read and heartbeat never extends an elapsed one.
"""
import asyncio
import logging
from typing import Dict, Any, Optional, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from sessionguard.config import settings
from sessionguard.services.audit_service import AuditService
from sessionguard.services.geolocation import GeolocationResolver
from sessionguard.services.session_manager import SessionManager

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


# ============================================================================
# Maintenance Task Handlers
# ============================================================================

async def run_session_sweep(
    session_factory: SessionFactory,
    resolver: GeolocationResolver,
    audit: AuditService,
) -> Dict[str, Any]:
    """Expire elapsed sessions and prune the geolocation cache."""
    async with session_factory() as db:
        manager = SessionManager(db, resolver, audit)
        expired = await manager.expire_stale_sessions()

    pruned = 0
    if resolver.cache is not None:
        pruned = resolver.cache.cleanup_expired()

    logger.info(f"Session sweep complete: expired={expired}, geo_cache_pruned={pruned}")
    return {"sessions_expired": expired, "geo_cache_pruned": pruned}


async def run_audit_cleanup(audit: AuditService) -> Dict[str, Any]:
    """Delete audit records past their retention period."""
    deleted = await audit.cleanup_expired_logs()
    logger.info(f"Audit cleanup complete: removed {deleted} records")
    return {"audit_logs_deleted": deleted}


# ============================================================================
# Scheduler Service
# ============================================================================

class MaintenanceScheduler:
    """
    Scheduler for periodic maintenance tasks.

    Runs as a background asyncio task; each job runs inline when its
    interval has elapsed.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        resolver: GeolocationResolver,
        audit: AuditService,
        sweep_interval_seconds: float = settings.SESSION_SWEEP_INTERVAL_SECONDS,
        audit_cleanup_interval_seconds: float = 24 * 60 * 60,
        tick_seconds: float = 60.0,
    ):
        self.session_factory = session_factory
        self.resolver = resolver
        self.audit = audit
        self._sweep_interval = sweep_interval_seconds
        self._audit_cleanup_interval = audit_cleanup_interval_seconds
        self._tick = min(tick_seconds, sweep_interval_seconds)

        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the maintenance scheduler."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._scheduler_loop())
        logger.info("Maintenance scheduler started")

    async def stop(self) -> None:
        """Stop the maintenance scheduler."""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Maintenance scheduler stopped")

    async def run_once(self) -> Dict[str, Any]:
        """Run every job immediately."""
        result = await run_session_sweep(self.session_factory, self.resolver, self.audit)
        result.update(await run_audit_cleanup(self.audit))
        return result

    async def _scheduler_loop(self) -> None:
        """Main scheduler loop."""
        loop = asyncio.get_running_loop()
        last_sweep = loop.time()
        last_audit_cleanup = loop.time()

        while self._running:
            try:
                await asyncio.sleep(self._tick)
                now = loop.time()

                if now - last_sweep >= self._sweep_interval:
                    await run_session_sweep(self.session_factory, self.resolver, self.audit)
                    last_sweep = now

                if now - last_audit_cleanup >= self._audit_cleanup_interval:
                    await run_audit_cleanup(self.audit)
                    last_audit_cleanup = now

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Scheduler error: {e}")
