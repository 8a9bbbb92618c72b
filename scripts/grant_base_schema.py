#!/usr/bin/env python3
"""CLI script to re-grant base-schema read access to every tenant role.

Usage:
    uv run python scripts/grant_base_schema.py

Run after new tables are added to the base schema: GRANT SELECT ON ALL
TABLES only covers tables that existed when a role was provisioned.
"""

from __future__ import annotations

import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.tenantsync
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def grant() -> None:
    from src.tenantsync.config import get_settings
    from src.tenantsync.core.database import close_db, create_engine
    from src.tenantsync.sync.tenants import TenantRegistry

    settings = get_settings()
    engine = create_engine(settings)
    try:
        updated = await TenantRegistry(engine, settings).grant_base_schema_to_all_roles()
    finally:
        await close_db(engine)
    print(f"Granted {settings.BASE_SCHEMA} access to {updated} tenant role(s)")


def main() -> None:
    asyncio.run(grant())


if __name__ == "__main__":
    main()
