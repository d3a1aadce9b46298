import logging
from typing import AsyncIterator

from fastapi import Depends, Request
from psycopg import errors as pg_errors
from sqlalchemy import exc as sa_exc, inspect, text
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from . import models  # noqa: F401  (registers table metadata)
from .errors import ConnectionFailure, PosError, QueryTimeout
from .settings import TenantConfig
from .tenants import TenantRegistry

logger = logging.getLogger(__name__)


def tenant_from_request(request: Request, header_name: str = "X-Tenant") -> str | None:
    """
    Tenant token for a request: the explicit tenant header when present,
    otherwise the first label of a host like `store1.pos.example.com`.
    """
    token = request.headers.get(header_name)
    if token and token.strip():
        return token.strip().lower()

    host = request.headers.get("host", "").split(":")[0]
    labels = [label for label in host.split(".") if label]
    if len(labels) >= 3:
        return labels[0].lower()
    return None


def get_registry(request: Request) -> TenantRegistry:
    return request.app.state.registry


async def get_tenant(
    request: Request,
    registry: TenantRegistry = Depends(get_registry),
) -> TenantConfig:
    """Resolve the tenant and attach it and its pooled engine to the request."""
    header_name = getattr(request.app.state, "tenant_header", "X-Tenant")
    subdomain = tenant_from_request(request, header_name)
    tenant = registry.resolve(subdomain)
    request.state.tenant = tenant
    request.state.engine = await registry.get_connection(tenant.subdomain)
    return tenant


async def get_session(
    request: Request,
    tenant: TenantConfig = Depends(get_tenant),
) -> AsyncIterator[AsyncSession]:
    async with AsyncSession(request.state.engine, expire_on_commit=False) as session:
        yield session


async def create_db_and_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def check_db_connection(engine: AsyncEngine) -> None:
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


async def missing_tables(engine: AsyncEngine) -> list[str]:
    """Names of model tables not present in the tenant database."""

    def _missing(sync_conn) -> list[str]:
        existing = set(inspect(sync_conn).get_table_names())
        return [name for name in SQLModel.metadata.tables if name not in existing]

    async with engine.connect() as conn:
        return await conn.run_sync(_missing)


def translate_db_error(exc: Exception) -> PosError:
    """Map driver and pool failures onto the typed connection/timeout errors."""
    if isinstance(exc, sa_exc.TimeoutError):
        # Pool checkout did not get a connection within pool_timeout
        return ConnectionFailure(f"Timed out acquiring a database connection: {exc}")
    orig = getattr(exc, "orig", None)
    if isinstance(orig, pg_errors.QueryCanceled) or "statement timeout" in str(exc):
        return QueryTimeout("Query exceeded the statement timeout")
    return ConnectionFailure(f"Database unavailable: {orig or exc}")
