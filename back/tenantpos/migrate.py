#!/usr/bin/env python3
"""
Tenant schema bootstrap.

Creates the order, item, product and table tables in every active tenant's
database (or a single tenant's), or reports what is missing without writing.

Usage:
    python -m tenantpos.migrate
    python -m tenantpos.migrate --tenant store1
    python -m tenantpos.migrate --check  # Only check, don't create
"""
import argparse
import asyncio
import logging
import sys

from .db import create_db_and_tables, missing_tables
from .errors import PosError
from .settings import settings
from .tenants import TenantRegistry

# Set up logger
logger = logging.getLogger(__name__)


class SchemaBootstrapper:
    """Creates or checks tenant schemas through a TenantRegistry."""

    def __init__(self, registry: TenantRegistry):
        self.registry = registry

    def select_tenants(self, subdomain: str | None = None) -> list[str]:
        if subdomain:
            return [self.registry.resolve(subdomain).subdomain]
        return [tenant.subdomain for tenant in self.registry.all_tenants() if tenant.is_active]

    async def bootstrap(self, subdomain: str, dry_run: bool = False) -> bool:
        engine = await self.registry.get_connection(subdomain)
        missing = await missing_tables(engine)
        if not missing:
            logger.info(f"[{subdomain}] Schema is up to date")
            return True

        if dry_run:
            logger.info(f"[{subdomain}] Missing tables (dry run): {', '.join(missing)}")
            return False

        logger.info(f"[{subdomain}] Creating tables: {', '.join(missing)}")
        await create_db_and_tables(engine)
        return True

    async def run(self, subdomain: str | None = None, dry_run: bool = False) -> bool:
        """Process the selected tenants; False when any of them failed or is incomplete."""
        ok = True
        try:
            subdomains = self.select_tenants(subdomain)
            for name in subdomains:
                try:
                    ok = await self.bootstrap(name, dry_run=dry_run) and ok
                except PosError as e:
                    logger.error(f"[{name}] {e.message}")
                    ok = False
        finally:
            await self.registry.dispose_all()
        return ok


def main(argv: list[str] | None = None, registry: TenantRegistry | None = None) -> int:
    """Main entry point."""
    # Set up logging for CLI usage
    logging.basicConfig(
        level=logging.INFO,
        format='%(levelname)s: %(message)s'
    )

    parser = argparse.ArgumentParser(description="Create tenant database schemas")
    parser.add_argument(
        "--tenant",
        default=None,
        help="Only bootstrap this tenant (subdomain)",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Report missing tables without creating them",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    runner = SchemaBootstrapper(registry or TenantRegistry.from_settings(settings))

    try:
        ok = asyncio.run(runner.run(args.tenant, dry_run=args.check))
    except PosError as e:
        logger.error(f"Schema bootstrap failed: {e.message}")
        return 1

    if not ok:
        return 1
    if not args.check:
        print("✅ Tenant schemas are ready")
    return 0


if __name__ == "__main__":
    sys.exit(main())
