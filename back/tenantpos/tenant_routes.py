"""
Tenant endpoints.

`/api/tenant/info` describes the store resolved for the request. The `/admin`
routes manage the in-process tenant registry and need no tenant context.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, status

from .db import get_registry, get_tenant
from .errors import NotFound
from .models import TenantRead
from .settings import TenantConfig
from .tenants import TenantRegistry

router = APIRouter()
admin_router = APIRouter()


def to_tenant_read(tenant: TenantConfig, registry: TenantRegistry) -> TenantRead:
    return TenantRead(
        subdomain=tenant.subdomain,
        store_name=tenant.store_name,
        is_active=tenant.is_active,
        connected=tenant.subdomain.lower() in registry.cached_subdomains(),
    )


@router.get("/tenant/info", response_model=TenantRead)
async def tenant_info(
    tenant: Annotated[TenantConfig, Depends(get_tenant)],
    registry: TenantRegistry = Depends(get_registry),
):
    return to_tenant_read(tenant, registry)


@admin_router.get("/tenants", response_model=list[TenantRead])
async def list_tenants(registry: TenantRegistry = Depends(get_registry)):
    return [to_tenant_read(tenant, registry) for tenant in registry.all_tenants()]


@admin_router.post("/tenants", response_model=TenantRead, status_code=status.HTTP_201_CREATED)
async def register_tenant(
    tenant: TenantConfig,
    registry: TenantRegistry = Depends(get_registry),
):
    """Register a store, or replace its configuration. The pool is created on first request."""
    await registry.add_tenant(tenant)
    return to_tenant_read(tenant, registry)


@admin_router.delete("/tenants/{subdomain}")
async def remove_tenant(subdomain: str, registry: TenantRegistry = Depends(get_registry)) -> dict:
    removed = await registry.remove_tenant(subdomain)
    if removed is None:
        raise NotFound("Tenant", subdomain)
    return {"status": "removed", "subdomain": removed.subdomain}
