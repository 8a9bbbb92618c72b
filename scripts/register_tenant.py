#!/usr/bin/env python3
"""CLI script to register a tenant and provision its schema and role.

Usage:
    uv run python scripts/register_tenant.py --tenant-id 3f0c9a4e-... --name "Acme Cleaning"

Connects directly to the database using DATABASE_URL from environment or .env file.
Assigns a short name (or returns the existing one), creates tenant_<short_name>
and tenant_<short_name>_role, applies grants and rebuilds any tracked views.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.tenantsync
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def register(tenant_id: str, name: str | None) -> None:
    """Register a tenant by calling the registry directly."""
    from src.tenantsync.config import get_settings
    from src.tenantsync.core.database import close_db, create_engine, init_db
    from src.tenantsync.main import build_services

    settings = get_settings()
    engine = create_engine(settings)
    try:
        await init_db(engine, settings)
        services = build_services(settings, engine)

        print(f"Registering tenant: id={tenant_id}, name={name}")
        short_name = await services.registry.register_tenant(tenant_id, name)
        await services.registry.ensure_schema_and_role(short_name)
        results = await services.views.regenerate_for_tenant(tenant_id)

        tenant = await services.registry.get_tenant(tenant_id)
        print("Tenant registered successfully:")
        print(f"  ID:         {tenant.tenant_id}")
        print(f"  Short name: {tenant.short_name}")
        print(f"  Schema:     {tenant.schema_name}")
        print(f"  Role:       {tenant.role_name}")
        print(f"  Views:      {sum(1 for r in results if r.regenerated)} regenerated")
    finally:
        await close_db(engine)


def main() -> None:
    parser = argparse.ArgumentParser(description="Register a tenant and provision its schema")
    parser.add_argument("--tenant-id", required=True, help="Tenant id from the source system")
    parser.add_argument("--name", default=None, help="Display name used to derive the short name")
    args = parser.parse_args()

    asyncio.run(register(args.tenant_id, args.name))


if __name__ == "__main__":
    main()
