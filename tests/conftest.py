"""
Pytest configuration and fixtures for SessionGuard tests.
"""
import uuid
import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from typing import AsyncGenerator, Callable, Dict, Optional, Set, List

import httpx
from httpx import AsyncClient, ASGITransport
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel

# Override settings before importing app
import os
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_sessionguard.db"
os.environ["SECRET_KEY"] = "test-secret-key-for-testing-only"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["ENABLE_MAINTENANCE_SCHEDULER"] = "false"

from sessionguard.main import app
from sessionguard.config import settings
from sessionguard.database import get_db
from sessionguard.models import User, Tenant, UserStatusEnum  # Import to register models
from sessionguard.services.audit_service import AuditService
from sessionguard.services.geolocation import GeolocationResolver
from sessionguard.services.session_manager import SessionManager, UserLockRegistry


# Test database engine; NullPool keeps aiosqlite connections off other tests' loops
test_engine = create_async_engine(
    "sqlite+aiosqlite:///./test_sessionguard.db",
    echo=False,
    poolclass=NullPool,
)

test_session_maker = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ============================================================================
# TEST DOUBLES
# ============================================================================

class FakeClock:
    """Manually advanced clock returning naive UTC datetimes."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


COUNTRY_NAMES = {
    "US": "United States",
    "FR": "France",
    "DE": "Germany",
    "GB": "United Kingdom",
    "JP": "Japan",
}


class FakeGeoProvider:
    """
    In-process stand-in for an ip-api.com style provider.

    Map public IPs to country codes in ``countries``; IPs listed in
    ``timeouts`` raise a read timeout, IPs in ``errors`` answer 500, and
    anything else answers ``status: fail``.
    """

    def __init__(self):
        self.countries: Dict[str, str] = {}
        self.timeouts: Set[str] = set()
        self.errors: Set[str] = set()
        self.calls: List[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        ip = request.url.path.rsplit("/", 1)[-1]
        self.calls.append(ip)

        if ip in self.timeouts:
            raise httpx.ReadTimeout("simulated timeout", request=request)
        if ip in self.errors:
            return httpx.Response(500, json={"message": "boom"})

        code = self.countries.get(ip)
        if code is None:
            return httpx.Response(200, json={"status": "fail", "message": "reserved range"})
        return httpx.Response(200, json={
            "status": "success",
            "country": COUNTRY_NAMES.get(code, code),
            "countryCode": code,
            "city": f"{code}-city",
        })

    def resolver(self, **kwargs) -> GeolocationResolver:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return GeolocationResolver(client=client, base_url="http://geo.test/json", **kwargs)


# ============================================================================
# DATABASE
# ============================================================================

@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    # Create tables
    async with test_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    # Create session
    async with test_session_maker() as session:
        yield session

    # Drop tables after test
    async with test_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)


# ============================================================================
# DOMAIN FIXTURES
# ============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def geo_provider() -> FakeGeoProvider:
    return FakeGeoProvider()


@pytest_asyncio.fixture
async def resolver(geo_provider: FakeGeoProvider) -> AsyncGenerator[GeolocationResolver, None]:
    resolver = geo_provider.resolver()
    yield resolver
    await resolver.aclose()


@pytest.fixture
def audit_service(clock: FakeClock) -> AuditService:
    return AuditService(test_session_maker, clock=clock)


@pytest.fixture
def session_factory():
    """Factory for independent DB sessions (one per concurrent task)."""
    return test_session_maker


@pytest.fixture
def session_locks() -> UserLockRegistry:
    return UserLockRegistry()


@pytest.fixture
def make_manager(
    resolver: GeolocationResolver,
    audit_service: AuditService,
    session_locks: UserLockRegistry,
    clock: FakeClock,
) -> Callable[[AsyncSession], SessionManager]:
    """Build session managers sharing one resolver, audit sink, lock registry and clock."""

    def _make(db: AsyncSession, **overrides) -> SessionManager:
        kwargs = dict(
            resolver=resolver,
            audit=audit_service,
            locks=session_locks,
            clock=clock,
        )
        kwargs.update(overrides)
        return SessionManager(db, **kwargs)

    return _make


@pytest.fixture
def session_manager(db_session: AsyncSession, make_manager) -> SessionManager:
    return make_manager(db_session)


async def create_tenant(
    db: AsyncSession,
    tenant_id: str = "tenant-a",
    max_concurrent_sessions: Optional[int] = 1,
    enforce_ip_country_check: Optional[bool] = True,
    session_timeout_minutes: Optional[int] = 15,
) -> Tenant:
    tenant = Tenant(
        id=tenant_id,
        name=tenant_id.title(),
        max_concurrent_sessions=max_concurrent_sessions,
        enforce_ip_country_check=enforce_ip_country_check,
        session_timeout_minutes=session_timeout_minutes,
    )
    db.add(tenant)
    await db.commit()
    return tenant


async def create_user(
    db: AsyncSession,
    tenant_id: Optional[str] = "tenant-a",
    status: UserStatusEnum = UserStatusEnum.ACTIVE,
    email: Optional[str] = None,
) -> User:
    user = User(
        email=email or f"user-{uuid.uuid4().hex[:8]}@example.com",
        name="Test User",
        tenant_id=tenant_id,
        status=status,
    )
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
def tenant_factory(db_session: AsyncSession):
    async def _create(**kwargs) -> Tenant:
        return await create_tenant(db_session, **kwargs)
    return _create


@pytest.fixture
def user_factory(db_session: AsyncSession):
    async def _create(**kwargs) -> User:
        return await create_user(db_session, **kwargs)
    return _create


@pytest_asyncio.fixture
async def tenant(db_session: AsyncSession) -> Tenant:
    """Single-session tenant with country enforcement and a 15 minute timeout."""
    return await create_tenant(db_session)


@pytest_asyncio.fixture
async def user(db_session: AsyncSession, tenant: Tenant) -> User:
    return await create_user(db_session, tenant_id=tenant.id)


# ============================================================================
# HTTP
# ============================================================================

def make_token(user_id: uuid.UUID, token_type: Optional[str] = "access", **claims) -> str:
    payload = {"sub": str(user_id), "exp": datetime.utcnow() + timedelta(minutes=30)}
    if token_type is not None:
        payload["type"] = token_type
    payload.update(claims)
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def bearer(user_id: uuid.UUID, **kwargs) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id, **kwargs)}"}


@pytest.fixture
def auth_headers() -> Callable[..., Dict[str, str]]:
    """Build an Authorization header for a user id."""
    return bearer


@pytest_asyncio.fixture(scope="function")
async def client(
    db_session: AsyncSession,
    geo_provider: FakeGeoProvider,
    audit_service: AuditService,
) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with overridden database and shared services."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    # ASGITransport does not run the lifespan, so wire app state by hand
    resolver = geo_provider.resolver()
    app.state.geo_resolver = resolver
    app.state.audit_service = audit_service
    app.state.session_locks = UserLockRegistry()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    await resolver.aclose()
