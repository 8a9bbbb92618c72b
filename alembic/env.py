"""Alembic environment for the shared bookkeeping schema.

  alembic upgrade head

Tables are declared under the placeholder schema "shared", which is
remapped to settings.SHARED_SCHEMA through schema_translate_map, the same
way the application engine does it. The alembic_version table lives in the
shared schema too. Tenant schemas hold only views and are managed at
runtime, not by migrations.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool, text

from src.tenantsync.config import get_settings
from src.tenantsync.core.database import SharedBase
from src.tenantsync.models import shared  # noqa: F401

# Alembic Config object
config = context.config

# Interpret the config file for Python logging
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = SharedBase.metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    settings = get_settings()
    url = settings.DATABASE_URL.replace("+asyncpg", "")

    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        version_table_schema=settings.SHARED_SCHEMA,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    settings = get_settings()
    url = settings.DATABASE_URL.replace("+asyncpg", "")

    connectable = create_engine(url, poolclass=pool.NullPool)

    with connectable.connect() as connection:
        # Alembic creates its version table in the shared schema
        connection.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{settings.SHARED_SCHEMA}"'))
        connection.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{settings.BASE_SCHEMA}"'))
        connection.commit()

        connection = connection.execution_options(
            schema_translate_map={"shared": settings.SHARED_SCHEMA},
        )

        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            version_table_schema=settings.SHARED_SCHEMA,
            include_schemas=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
