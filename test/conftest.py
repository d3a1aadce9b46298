"""
Shared fixtures.

Every test gets its own TenantRegistry whose engines are in-memory SQLite
databases, one per tenant, so stores never see each other's rows.
"""

from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel.ext.asyncio.session import AsyncSession

from tenantpos.db import create_db_and_tables
from tenantpos.main import create_app
from tenantpos.order_service import OrderLifecycleManager, OrderLocks
from tenantpos.models import Product, Table
from tenantpos.settings import Settings, TenantConfig
from tenantpos.tenants import TenantRegistry


TENANTS = [
    TenantConfig(subdomain="store1", database_url="sqlite+aiosqlite://", store_name="Store One"),
    TenantConfig(subdomain="store2", database_url="sqlite+aiosqlite://", store_name="Store Two"),
    TenantConfig(subdomain="closed", database_url="sqlite+aiosqlite://", store_name="Closed Store", is_active=False),
]


def sqlite_engine_factory(tenant: TenantConfig) -> AsyncEngine:
    # StaticPool keeps the single in-memory connection (and its data) alive
    return create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


async def seed(engine: AsyncEngine) -> None:
    await create_db_and_tables(engine)
    async with AsyncSession(engine, expire_on_commit=False) as session:
        session.add_all([
            Product(id=1, name="Pho Bo", price=Decimal("100")),
            Product(id=2, name="Iced Tea", price=Decimal("50")),
            # Taxed: 8.5 per unit
            Product(
                id=3,
                name="Craft Beer",
                price=Decimal("100"),
                after_tax_price=Decimal("108.50"),
                track_inventory=True,
                stock=3,
            ),
            Table(id=1, table_number="T1"),
            Table(id=2, table_number="T2", capacity=6),
        ])
        await session.commit()


@pytest_asyncio.fixture
async def registry():
    registry = TenantRegistry(
        tenants=[tenant.model_copy() for tenant in TENANTS],
        engine_factory=sqlite_engine_factory,
        connect_timeout=5.0,
    )
    yield registry
    await registry.dispose_all()


@pytest_asyncio.fixture
async def store1_engine(registry):
    engine = await registry.get_connection("store1")
    await seed(engine)
    return engine


@pytest_asyncio.fixture
async def store2_engine(registry):
    engine = await registry.get_connection("store2")
    await seed(engine)
    return engine


@pytest_asyncio.fixture
async def session(store1_engine):
    async with AsyncSession(store1_engine, expire_on_commit=False) as session:
        yield session


@pytest.fixture
def locks():
    return OrderLocks()


@pytest.fixture
def manager(session, locks):
    return OrderLifecycleManager(session, tenant="store1", locks=locks)


@pytest.fixture
def app(registry):
    settings = Settings(redis_url="", cors_origins="http://localhost:4200", log_level="INFO")
    return create_app(settings=settings, registry=registry)


@pytest_asyncio.fixture
async def client(app, store1_engine, store2_engine):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers={"X-Tenant": "store1"}) as client:
        yield client
