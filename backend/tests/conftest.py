"""Pytest configuration and fixtures for async testing."""
from typing import AsyncGenerator
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from credit_engine.adapters.registry import ChannelRegistry, get_channel_registry
from credit_engine.auth.jwt import jwt_auth
from credit_engine.database import get_db
from credit_engine.exceptions import BillingError
from credit_engine.main import app
from credit_engine.models import Base, Package, PackageTier
from tests.utils.fakes import RecordingNotifier, build_registry


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """
    SQLite engine with a fresh schema per test.

    pysqlite's own transaction handling is turned off so SAVEPOINTs work.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'credit_engine_test.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """
    Create a fresh database session for each test.

    Yields:
        AsyncSession: Database session for testing
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
def channels() -> ChannelRegistry:
    """Channel registry backed by in-memory fake gateways."""
    return build_registry()


@pytest.fixture(scope="function")
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture(scope="function")
def account_id() -> UUID:
    return uuid4()


def auth_headers(user_id: UUID, role: str = "User") -> dict[str, str]:
    """Bearer header for a token issued to ``user_id``."""
    token = jwt_auth.create_access_token(user_id, role=role)
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture(scope="function")
async def async_client(
    session_factory: async_sessionmaker[AsyncSession],
    channels: ChannelRegistry,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Create an async HTTP client for testing with database dependency override.

    Each request gets its own session with the same commit rules as the
    production dependency.

    Yields:
        AsyncClient: Async HTTP client for API testing
    """

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        """Override database dependency to use test database."""
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except BillingError as e:
                if e.state_changed:
                    await session.commit()
                else:
                    await session.rollback()
                raise
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_channel_registry] = lambda: channels

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    # Clean up
    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def paid_package(db_session: AsyncSession) -> Package:
    """
    Create a paid package for subscription tests.

    Returns:
        Package: $29/month with 200 credits included
    """
    package = Package(
        name="Pro",
        tier=PackageTier.PAID,
        monthly_price=2900,
        yearly_price=29000,
        currency="USD",
        credits_included=200,
        is_active=True,
    )
    db_session.add(package)
    await db_session.commit()
    return package


@pytest_asyncio.fixture(scope="function")
async def free_package(db_session: AsyncSession) -> Package:
    """
    Create the free package.

    Returns:
        Package: free tier with 50 credits included
    """
    package = Package(
        name="Free",
        tier=PackageTier.FREE,
        monthly_price=0,
        currency="USD",
        credits_included=50,
        is_active=True,
    )
    db_session.add(package)
    await db_session.commit()
    return package
