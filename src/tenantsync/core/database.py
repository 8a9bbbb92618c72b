"""Async SQLAlchemy engine and shared-schema metadata.

Provides:
- SharedBase: Declarative base for bookkeeping tables in the shared schema
- create_engine(): Build the async engine from settings (owned by the app lifespan)
- init_db(): Create the shared and base schemas plus shared tables
- close_db(): Dispose of an engine

The engine is constructed once at process startup and passed explicitly to
every repository; there is no module-level engine.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import MetaData, text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.tenantsync.config import Settings

# ── Declarative Base ────────────────────────────────────────────────────────

# Placeholder schema "shared" is remapped to settings.SHARED_SCHEMA through
# schema_translate_map on the engine.
shared_metadata = MetaData(schema="shared")


class SharedBase(DeclarativeBase):
    """Base class for bookkeeping tables (short names, column access, cache, logs)."""

    metadata = shared_metadata


# ── Engine ──────────────────────────────────────────────────────────────────


def create_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine with a bounded pool and statement timeout."""
    engine_kwargs: dict[str, Any] = {
        "pool_pre_ping": True,
        "echo": False,
        "execution_options": {
            "schema_translate_map": {"shared": settings.SHARED_SCHEMA},
        },
    }
    if settings.DATABASE_URL.startswith("postgresql"):
        engine_kwargs["pool_size"] = settings.DB_POOL_SIZE
        engine_kwargs["max_overflow"] = settings.DB_MAX_OVERFLOW
        if settings.DB_STATEMENT_TIMEOUT_MS > 0:
            engine_kwargs["connect_args"] = {
                "server_settings": {"statement_timeout": str(settings.DB_STATEMENT_TIMEOUT_MS)},
            }
    return create_async_engine(settings.DATABASE_URL, **engine_kwargs)


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db(engine: AsyncEngine, settings: Settings) -> None:
    """Create the shared and base schemas and the shared tables if they don't exist."""
    # Importing the models registers their tables on shared_metadata
    from src.tenantsync.models import shared  # noqa: F401

    async with engine.begin() as conn:
        await conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{settings.SHARED_SCHEMA}"'))
        await conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{settings.BASE_SCHEMA}"'))
        await conn.run_sync(SharedBase.metadata.create_all)


async def close_db(engine: AsyncEngine) -> None:
    """Dispose of the engine and close all connections."""
    await engine.dispose()
