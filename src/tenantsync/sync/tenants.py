"""Tenant registry: short-name assignment and schema/role provisioning.

Every tenant gets a stable short name the first time it is registered. The
tenant's view schema (tenant_<short_name>) and read role
(tenant_<short_name>_role) are derived from it and never stored.

Registration is an atomic insert-if-absent keyed on tenant_id, so two racing
first events for the same tenant converge on a single short name. Schema and
role provisioning only uses statements that are safe to repeat.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import redis.asyncio as aioredis
import structlog
from sqlalchemy import delete, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.tenantsync.config import Settings
from src.tenantsync.core.errors import InvalidIdentifierError, RegistrationFailure
from src.tenantsync.models.shared import TenantShortName
from src.tenantsync.sync.tables import quote_ident, validate_identifier

logger = structlog.get_logger(__name__)

SHORT_NAME_MAX_LENGTH = 40
MAX_SHORT_NAME_ATTEMPTS = 20
SHORT_NAME_PATTERN = re.compile(r"[a-z][a-z0-9_]{0,47}")

_NON_SLUG = re.compile(r"[^a-z0-9]+")


# ── Naming ──────────────────────────────────────────────────────────────────


def schema_name_for(short_name: str) -> str:
    return f"tenant_{short_name}"


def role_name_for(short_name: str) -> str:
    return f"tenant_{short_name}_role"


def derive_short_name(display_name: str | None, tenant_id: str) -> str:
    """Build a SQL-safe slug from a display name.

    Lowercases, collapses every run of non-alphanumerics to a single
    underscore and truncates. Falls back to the tenant id when the display
    name yields nothing usable. Slugs never start with a digit.
    """
    slug = _NON_SLUG.sub("_", (display_name or "").lower()).strip("_")
    if not slug:
        slug = "t_" + _NON_SLUG.sub("", tenant_id.lower())[:8]
    if not slug[0].isalpha():
        slug = f"t_{slug}"
    return slug[:SHORT_NAME_MAX_LENGTH].rstrip("_")


def validate_short_name(short_name: str) -> str:
    if not SHORT_NAME_PATTERN.fullmatch(short_name):
        raise InvalidIdentifierError(f"Invalid tenant short name: {short_name!r}")
    return short_name


@dataclass(frozen=True)
class TenantRecord:
    """Registered tenant with derived schema and role names."""

    tenant_id: str
    short_name: str
    display_name: str | None = None

    @property
    def schema_name(self) -> str:
        return schema_name_for(self.short_name)

    @property
    def role_name(self) -> str:
        return role_name_for(self.short_name)


# ── Registry ────────────────────────────────────────────────────────────────


class TenantRegistry:
    """Resolves tenant ids to short names and provisions tenant schemas.

    Args:
        engine: Async engine for the dashboard database.
        settings: Application settings (schema names, service role, cache TTL).
        redis: Optional Redis client used as a read-through cache for
            short-name lookups.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        settings: Settings,
        redis: aioredis.Redis | None = None,
    ) -> None:
        self._engine = engine
        self._settings = settings
        self._redis = redis

    @staticmethod
    def _cache_key(tenant_id: str) -> str:
        return f"tenant:short_name:{tenant_id}"

    async def _cache_get(self, tenant_id: str) -> str | None:
        if self._redis is None:
            return None
        try:
            return await self._redis.get(self._cache_key(tenant_id))
        except Exception:
            logger.warning("tenant_cache_get_failed", tenant_id=tenant_id)
            return None

    async def _cache_set(self, tenant_id: str, short_name: str) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.set(
                self._cache_key(tenant_id),
                short_name,
                ex=self._settings.TENANT_LOOKUP_TTL_S,
            )
        except Exception:
            logger.warning("tenant_cache_set_failed", tenant_id=tenant_id)

    async def _cache_delete(self, tenant_id: str) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.delete(self._cache_key(tenant_id))
        except Exception:
            logger.warning("tenant_cache_delete_failed", tenant_id=tenant_id)

    # ── Lookup ──────────────────────────────────────────────────────────

    async def resolve_short_name(self, tenant_id: str) -> str | None:
        """Look up the persisted short name for a tenant. Never invents one."""
        cached = await self._cache_get(tenant_id)
        if cached:
            return cached

        async with self._engine.connect() as conn:
            result = await conn.execute(
                select(TenantShortName.short_name).where(TenantShortName.tenant_id == tenant_id)
            )
            short_name = result.scalar_one_or_none()

        if short_name:
            await self._cache_set(tenant_id, short_name)
        return short_name

    async def get_tenant(self, tenant_id: str) -> TenantRecord | None:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                select(
                    TenantShortName.tenant_id,
                    TenantShortName.short_name,
                    TenantShortName.display_name,
                ).where(TenantShortName.tenant_id == tenant_id)
            )
            row = result.first()
        if row is None:
            return None
        return TenantRecord(
            tenant_id=row.tenant_id,
            short_name=row.short_name,
            display_name=row.display_name,
        )

    async def list_tenants(self) -> list[TenantRecord]:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                select(
                    TenantShortName.tenant_id,
                    TenantShortName.short_name,
                    TenantShortName.display_name,
                ).order_by(TenantShortName.short_name)
            )
            rows = result.fetchall()
        return [
            TenantRecord(tenant_id=r.tenant_id, short_name=r.short_name, display_name=r.display_name)
            for r in rows
        ]

    async def lookup_display_name(self, tenant_id: str) -> str | None:
        """Read the tenant's name from the synced tenants table, if present.

        The tenants row may not have been synced yet. Any database error is
        logged and treated as no name, which falls back to an id-based slug.
        """
        base = quote_ident(self._settings.BASE_SCHEMA)
        try:
            async with self._engine.connect() as conn:
                result = await conn.execute(
                    text(f"SELECT name FROM {base}.tenants WHERE id::text = :tenant_id"),
                    {"tenant_id": tenant_id},
                )
                name = result.scalar_one_or_none()
        except DBAPIError as exc:
            logger.warning("tenant_name_lookup_failed", tenant_id=tenant_id, error=str(exc))
            return None
        return name if isinstance(name, str) and name.strip() else None

    # ── Registration ────────────────────────────────────────────────────

    async def register_tenant(self, tenant_id: str, display_name: str | None = None) -> str:
        """Return the tenant's short name, assigning one if absent.

        Idempotent. Concurrent calls for the same tenant resolve to the same
        short name: the insert does nothing on a tenant_id conflict and the
        winner's row is read back. A short-name collision with a different
        tenant moves on to the next numbered suffix.

        Raises:
            RegistrationFailure: If no free short name was found.
        """
        existing = await self.resolve_short_name(tenant_id)
        if existing:
            return existing

        base = derive_short_name(display_name, tenant_id)
        for attempt in range(MAX_SHORT_NAME_ATTEMPTS):
            candidate = base if attempt == 0 else f"{base}_{attempt + 1}"
            try:
                async with self._engine.begin() as conn:
                    await conn.execute(
                        pg_insert(TenantShortName)
                        .values(
                            tenant_id=tenant_id,
                            short_name=candidate,
                            display_name=display_name,
                        )
                        .on_conflict_do_nothing(index_elements=["tenant_id"])
                    )
                    result = await conn.execute(
                        select(TenantShortName.short_name).where(
                            TenantShortName.tenant_id == tenant_id
                        )
                    )
                    short_name = result.scalar_one_or_none()
            except IntegrityError:
                # short_name already belongs to another tenant
                logger.debug("short_name_taken", tenant_id=tenant_id, candidate=candidate)
                continue

            if short_name:
                await self._cache_set(tenant_id, short_name)
                if short_name == candidate:
                    logger.info("tenant_registered", tenant_id=tenant_id, short_name=short_name)
                return short_name

        raise RegistrationFailure(
            f"Could not assign a short name for tenant {tenant_id} after "
            f"{MAX_SHORT_NAME_ATTEMPTS} attempts"
        )

    async def forget_tenant(self, tenant_id: str) -> int:
        """Delete the short-name row for a tenant (tenant purge only)."""
        async with self._engine.begin() as conn:
            result = await conn.execute(
                delete(TenantShortName).where(TenantShortName.tenant_id == tenant_id)
            )
        await self._cache_delete(tenant_id)
        return result.rowcount or 0

    # ── Schema & Role Provisioning ──────────────────────────────────────

    async def ensure_schema_and_role(self, short_name: str) -> None:
        """Create the tenant schema and read role and apply grants.

        Every statement is safe to repeat; a role created concurrently by
        another worker is tolerated.

        Raises:
            RegistrationFailure: If provisioning fails after retries.
        """
        validate_short_name(short_name)
        try:
            await self._provision(short_name)
        except DBAPIError as exc:
            logger.error("tenant_provisioning_failed", short_name=short_name, error=str(exc))
            raise RegistrationFailure(
                f"Failed to provision schema/role for {short_name}: {exc}"
            ) from exc

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        retry=retry_if_exception_type(DBAPIError),
        reraise=True,
    )
    async def _provision(self, short_name: str) -> None:
        schema = quote_ident(schema_name_for(short_name))
        role_name = validate_identifier(role_name_for(short_name))
        role = quote_ident(role_name)
        base = quote_ident(self._settings.BASE_SCHEMA)
        service_role = quote_ident(self._settings.SERVICE_ROLE)

        async with self._engine.begin() as conn:
            await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {schema}"))
            await conn.execute(text(f"""
                DO $$
                BEGIN
                    CREATE ROLE {role};
                EXCEPTION WHEN duplicate_object THEN
                    NULL;
                END
                $$
            """))

            # Tenant view schema
            await conn.execute(text(f"GRANT USAGE ON SCHEMA {schema} TO {role}"))
            await conn.execute(text(f"GRANT SELECT ON ALL TABLES IN SCHEMA {schema} TO {role}"))
            await conn.execute(text(
                f"ALTER DEFAULT PRIVILEGES IN SCHEMA {schema} GRANT SELECT ON TABLES TO {role}"
            ))

            # Shared base schema the views select from
            await conn.execute(text(f"GRANT USAGE ON SCHEMA {base} TO {role}"))
            await conn.execute(text(f"GRANT SELECT ON ALL TABLES IN SCHEMA {base} TO {role}"))

            await conn.execute(text(f"ALTER ROLE {role} SET search_path TO {schema}"))
            # Lets the service SET ROLE to the tenant when running chart queries
            await conn.execute(text(f"GRANT {role} TO {service_role}"))

        logger.info("tenant_schema_provisioned", short_name=short_name, role=role_name)

    async def drop_schema_and_role(self, short_name: str) -> None:
        """Drop the tenant schema (with its views) and the tenant role."""
        validate_short_name(short_name)
        schema = quote_ident(schema_name_for(short_name))
        role_name = validate_identifier(role_name_for(short_name))
        role = quote_ident(role_name)

        async with self._engine.begin() as conn:
            await conn.execute(text(f"DROP SCHEMA IF EXISTS {schema} CASCADE"))
            exists = await conn.execute(
                text("SELECT 1 FROM pg_roles WHERE rolname = :role"),
                {"role": role_name},
            )
            if exists.first() is not None:
                await conn.execute(text(f"DROP OWNED BY {role}"))
                await conn.execute(text(f"DROP ROLE {role}"))

        logger.info("tenant_schema_dropped", short_name=short_name, role=role_name)

    async def grant_base_schema_to_all_roles(self) -> int:
        """Re-grant base-schema read access to every existing tenant role.

        Returns:
            Number of roles updated.
        """
        base = quote_ident(self._settings.BASE_SCHEMA)
        async with self._engine.connect() as conn:
            result = await conn.execute(
                text(r"SELECT rolname FROM pg_roles WHERE rolname LIKE 'tenant\_%\_role' ORDER BY rolname")
            )
            roles = [row.rolname for row in result]

        updated = 0
        for role_name in roles:
            try:
                role = quote_ident(role_name)
            except InvalidIdentifierError:
                logger.warning("tenant_role_name_skipped", role=role_name)
                continue
            try:
                async with self._engine.begin() as conn:
                    await conn.execute(text(f"GRANT USAGE ON SCHEMA {base} TO {role}"))
                    await conn.execute(text(f"GRANT SELECT ON ALL TABLES IN SCHEMA {base} TO {role}"))
                updated += 1
            except DBAPIError as exc:
                logger.error("tenant_role_grant_failed", role=role_name, error=str(exc))

        logger.info("base_schema_granted", roles=len(roles), updated=updated)
        return updated
