import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import exc as sa_exc

from .db import check_db_connection, create_db_and_tables, get_tenant, translate_db_error
from .errors import PosError
from .notifications import OrderEventPublisher
from .order_routes import router as order_router
from .order_service import OrderLocks
from .settings import Settings, TenantConfig, settings as default_settings
from .table_routes import router as table_router
from .tenant_routes import admin_router as tenant_admin_router
from .tenant_routes import router as tenant_router
from .tenants import TenantRegistry

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting application...")
    registry: TenantRegistry = app.state.registry
    if app.state.settings.create_tables_on_startup:
        for tenant in registry.all_tenants():
            if not tenant.is_active:
                continue
            try:
                engine = await registry.get_connection(tenant.subdomain)
                await create_db_and_tables(engine)
                logger.info(f"Schema ready for tenant {tenant.subdomain}")
            except Exception as e:
                # Log but don't fail startup - the schema can be bootstrapped with tenantpos.migrate
                logger.warning(f"Schema bootstrap failed for tenant {tenant.subdomain}: {e}", exc_info=True)
    yield
    logger.info("Shutting down...")
    await registry.dispose_all()
    await app.state.publisher.close()


async def pos_error_handler(request: Request, exc: PosError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


async def database_error_handler(request: Request, exc: Exception) -> JSONResponse:
    error = translate_db_error(exc)
    logger.error(f"{request.method} {request.url.path} database error: {exc}")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"error": "validation_error", "detail": jsonable_encoder(exc.errors())},
    )


def create_app(settings: Settings | None = None, registry: TenantRegistry | None = None) -> FastAPI:
    settings = settings or default_settings
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Tenant POS API",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Request-scoped dependencies read these, so they exist before startup runs
    app.state.settings = settings
    app.state.tenant_header = settings.tenant_header
    app.state.registry = registry or TenantRegistry.from_settings(settings)
    app.state.order_locks = OrderLocks()
    app.state.publisher = OrderEventPublisher(settings.redis_url)

    # Parse CORS origins from environment (comma-separated)
    cors_origins_list = [
        origin.strip()
        for origin in settings.cors_origins.split(",")
        if origin.strip()
    ]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(PosError, pos_error_handler)
    app.add_exception_handler(sa_exc.OperationalError, database_error_handler)
    app.add_exception_handler(sa_exc.TimeoutError, database_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.include_router(tenant_router, prefix="/api", tags=["tenant"])
    app.include_router(table_router, prefix="/api", tags=["tables"])
    app.include_router(order_router, prefix="/api", tags=["orders"])
    app.include_router(tenant_admin_router, prefix="/admin", tags=["admin"])

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/health/db")
    async def health_db(request: Request, tenant: TenantConfig = Depends(get_tenant)) -> dict:
        """Check the resolved tenant's database connection."""
        try:
            await check_db_connection(request.state.engine)
        except (sa_exc.OperationalError, sa_exc.TimeoutError) as e:
            raise translate_db_error(e) from e
        return {"status": "ok", "tenant": tenant.subdomain, "database": "connected"}

    return app


app = create_app()


def run() -> None:
    uvicorn.run("tenantpos.main:app", host="0.0.0.0", port=8020)
