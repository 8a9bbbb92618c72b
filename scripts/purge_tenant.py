#!/usr/bin/env python3
"""CLI script to purge a tenant.

Usage:
    uv run python scripts/purge_tenant.py --tenant-id 3f0c9a4e-...              # preview only
    uv run python scripts/purge_tenant.py --tenant-id 3f0c9a4e-... --execute    # delete

Without --execute nothing is changed; the script prints what would be removed.
--delete-synced-data additionally removes the tenant's rows from base tables.
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


async def purge(tenant_id: str, execute: bool, delete_synced_data: bool) -> int:
    from src.tenantsync.config import get_settings
    from src.tenantsync.core.database import close_db, create_engine
    from src.tenantsync.core.errors import SyncError
    from src.tenantsync.main import build_services

    settings = get_settings()
    engine = create_engine(settings)
    try:
        services = build_services(settings, engine)
        try:
            report = await services.admin.purge_tenant(
                tenant_id,
                dry_run=not execute,
                confirm=execute,
                delete_synced_data=delete_synced_data,
            )
        except SyncError as exc:
            print(f"FAILED: {exc.message}")
            return 1
    finally:
        await close_db(engine)

    print("=" * 60)
    print("DELETION COMPLETED" if report.executed else "DRY RUN PREVIEW")
    print("=" * 60)
    print(f"Tenant ID:   {report.tenant_id}")
    print(f"Short name:  {report.short_name}")
    print(f"Schema:      {report.schema_name}")
    print(f"Role:        {report.role_name}")
    print()
    for name, count in report.counts.items():
        print(f"  {name:<22}{count}")
    for warning in report.warnings:
        print(f"  warning: {warning}")
    if not report.executed:
        print("\nRe-run with --execute to delete.")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Purge a tenant's schema, role and bookkeeping")
    parser.add_argument("--tenant-id", required=True, help="Tenant id to purge")
    parser.add_argument("--execute", action="store_true", help="Actually delete (default: preview)")
    parser.add_argument(
        "--delete-synced-data",
        action="store_true",
        help="Also delete the tenant's rows from base tables",
    )
    args = parser.parse_args()

    sys.exit(asyncio.run(purge(args.tenant_id, args.execute, args.delete_synced_data)))


if __name__ == "__main__":
    main()
