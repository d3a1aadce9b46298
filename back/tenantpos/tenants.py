"""
Tenant Resolver

Maps a request's tenant token (subdomain) to its configuration and to a lazily
created, cached connection pool. Pools are populated on first use and evicted
only by an explicit `remove_tenant`; nothing expires implicitly.
"""

import asyncio
import logging
from typing import Callable

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from .errors import ConnectionFailure, UnknownTenant
from .settings import Settings, TenantConfig

logger = logging.getLogger(__name__)

EngineFactory = Callable[[TenantConfig], AsyncEngine]


def normalize_database_url(url: str) -> str:
    # Plain postgresql:// URLs would pick the sync psycopg2 driver
    if url.startswith("postgresql://"):
        return "postgresql+psycopg://" + url[len("postgresql://"):]
    if url.startswith("postgres://"):
        return "postgresql+psycopg://" + url[len("postgres://"):]
    return url


def engine_factory_from_settings(settings: Settings) -> EngineFactory:
    """Build engines with a bounded pool and connect, acquisition and statement timeouts."""

    def create_tenant_engine(tenant: TenantConfig) -> AsyncEngine:
        url = normalize_database_url(tenant.database_url)
        if make_url(url).get_backend_name() == "sqlite":
            return create_async_engine(url)
        return create_async_engine(
            url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_recycle=settings.db_pool_recycle,
            pool_pre_ping=True,
            connect_args={
                "connect_timeout": int(settings.db_connect_timeout),
                "options": f"-c statement_timeout={settings.db_statement_timeout_ms}",
            },
        )

    return create_tenant_engine


class TenantRegistry:
    """Tenant configurations plus one cached engine (connection pool) per subdomain."""

    def __init__(
        self,
        tenants: list[TenantConfig] | None = None,
        engine_factory: EngineFactory | None = None,
        connect_timeout: float = 10.0,
    ):
        self._tenants: dict[str, TenantConfig] = {}
        self._engines: dict[str, AsyncEngine] = {}
        self._engine_locks: dict[str, asyncio.Lock] = {}
        self._engine_factory = engine_factory or engine_factory_from_settings(Settings())
        self.connect_timeout = connect_timeout
        for tenant in tenants or []:
            self._tenants[tenant.subdomain.lower()] = tenant

    @classmethod
    def from_settings(cls, settings: Settings) -> "TenantRegistry":
        return cls(
            tenants=settings.tenant_configs(),
            engine_factory=engine_factory_from_settings(settings),
            connect_timeout=settings.db_connect_timeout,
        )

    def lookup(self, subdomain: str | None) -> TenantConfig | None:
        if not subdomain:
            return None
        return self._tenants.get(subdomain.lower())

    def resolve(self, subdomain: str | None) -> TenantConfig:
        """Active tenant for `subdomain`. Never falls back to another store."""
        tenant = self.lookup(subdomain)
        if tenant is None or not tenant.is_active:
            logger.warning(f"Tenant resolution failed for subdomain: {subdomain!r}")
            raise UnknownTenant(subdomain)
        return tenant

    async def get_connection(self, subdomain: str | None) -> AsyncEngine:
        tenant = self.resolve(subdomain)
        key = tenant.subdomain.lower()

        engine = self._engines.get(key)
        if engine is not None:
            return engine

        # Concurrent first requests for one tenant build a single pool; other
        # tenants are not held up by a slow database
        lock = self._engine_locks.setdefault(key, asyncio.Lock())
        async with lock:
            engine = self._engines.get(key)
            if engine is not None:
                return engine
            engine = await self._create_engine(tenant)

            current = self._tenants.get(key)
            if current is None or not current.is_active:
                # Removed or deactivated while the pool was being built
                await engine.dispose()
                raise UnknownTenant(subdomain)
            if current.database_url == tenant.database_url:
                self._engines[key] = engine
                return engine
            await engine.dispose()

        # The database changed while the pool was being built
        return await self.get_connection(subdomain)

    async def _create_engine(self, tenant: TenantConfig) -> AsyncEngine:
        try:
            engine = self._engine_factory(tenant)
        except Exception as e:
            logger.error(f"Could not configure database for tenant {tenant.subdomain}: {e}")
            raise ConnectionFailure(f"Database unavailable for tenant {tenant.subdomain}") from e

        try:
            await asyncio.wait_for(self._verify(engine), timeout=self.connect_timeout)
        except Exception as e:
            await engine.dispose()
            reason = "timed out" if isinstance(e, asyncio.TimeoutError) else str(e)
            logger.error(f"Connection pool for tenant {tenant.subdomain} failed: {reason}")
            raise ConnectionFailure(f"Database unavailable for tenant {tenant.subdomain}") from e

        logger.info(f"Created connection pool for tenant {tenant.subdomain}")
        return engine

    @staticmethod
    async def _verify(engine: AsyncEngine) -> None:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def add_tenant(self, tenant: TenantConfig) -> TenantConfig:
        key = tenant.subdomain.lower()
        previous = self._tenants.get(key)
        self._tenants[key] = tenant
        if previous is not None and previous.database_url != tenant.database_url:
            # The cached pool points at the old database; it is rebuilt on next use
            stale = self._engines.pop(key, None)
            if stale is not None:
                await stale.dispose()
                logger.info(f"Evicted connection pool for tenant {tenant.subdomain} (database changed)")
        logger.info(f"Registered tenant {tenant.subdomain}")
        return tenant

    async def remove_tenant(self, subdomain: str) -> TenantConfig | None:
        """
        Unregister a tenant and evict its pool. Connections already checked out
        finish their work and are closed when returned.
        """
        key = subdomain.lower()
        tenant = self._tenants.pop(key, None)
        engine = self._engines.pop(key, None)
        if engine is not None:
            await engine.dispose()
            logger.info(f"Evicted connection pool for tenant {subdomain}")
        if tenant is not None:
            logger.info(f"Removed tenant {subdomain}")
        return tenant

    def all_tenants(self) -> list[TenantConfig]:
        return list(self._tenants.values())

    def cached_subdomains(self) -> set[str]:
        return set(self._engines)

    async def dispose_all(self) -> None:
        engines = list(self._engines.items())
        self._engines.clear()
        for subdomain, engine in engines:
            await engine.dispose()
            logger.info(f"Disposed connection pool for tenant {subdomain}")
