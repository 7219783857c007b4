"""Pytest configuration and fixtures for access-control tests."""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.database.engine import configure_sqlite, init_db
from app.features.permissions.reconciliation import PermissionReconciler
from app.features.permissions.registry import build_registry, PermissionRegistry
from tests.factories import permission_ids


@pytest.fixture
def registry() -> PermissionRegistry:
    """The wiki's compiled-in registry."""
    return build_registry()


@pytest_asyncio.fixture
async def engine():
    """A fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    configure_sqlite(engine)
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def catalog(db, registry) -> dict[str, str]:
    """Catalog reconciled from the registry, as identifier -> permission row id."""
    await PermissionReconciler(db, registry).fix()
    return await permission_ids(db)
