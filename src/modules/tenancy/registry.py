"""Schema registry — tenant id to schema name, provisioning state and version.

The registry is a read-mostly cache over the ``tenant_schemas`` table in the
shared schema. Readers see an immutable snapshot that writers replace
wholesale, so lookups need no locking. Writes come from the provisioning
collaborator and are serialized with an ``asyncio.Lock``.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from time import monotonic
from types import MappingProxyType

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from src.database.pool import ConnectionPool
from src.database.tenant import SchemaBinder, validate_schema_name
from src.models.enums import ProvisioningState
from src.models.tenant_schema import TenantSchema
from src.modules.tenancy.cache import RegistryCache
from src.modules.tenancy.schemas import DriftReport, SchemaRecord

logger = logging.getLogger(__name__)


class SchemaRecordStore:
    """Reads and writes ``tenant_schemas`` rows.

    Connections come from the same bounded pool as tenant scopes, so a
    saturated pool surfaces here as ConnectionPoolExhaustedException. They
    are never bound to a tenant; the table name is always schema-qualified
    by the ORM model.
    """

    def __init__(self, pool: ConnectionPool, binder: SchemaBinder, acquire_timeout: float) -> None:
        self.pool = pool
        self.binder = binder
        self.acquire_timeout = acquire_timeout

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[AsyncConnection]:
        connection = await self.pool.acquire(self.acquire_timeout)
        try:
            yield connection
        finally:
            await self.pool.release(connection)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self._connection() as connection:
            async with AsyncSession(bind=connection, expire_on_commit=False) as session:
                yield session

    async def load_all(self) -> list[SchemaRecord]:
        async with self._session() as session:
            result = await session.execute(select(TenantSchema).order_by(TenantSchema.tenant_id))
            return [SchemaRecord.model_validate(row) for row in result.scalars().all()]

    async def get(self, tenant_id: str) -> SchemaRecord | None:
        async with self._session() as session:
            row = await session.get(TenantSchema, tenant_id)
            return SchemaRecord.model_validate(row) if row is not None else None

    async def get_by_subdomain(self, subdomain: str) -> SchemaRecord | None:
        async with self._session() as session:
            result = await session.execute(
                select(TenantSchema).where(TenantSchema.subdomain == subdomain)
            )
            row = result.scalar_one_or_none()
            return SchemaRecord.model_validate(row) if row is not None else None

    async def upsert(
        self,
        tenant_id: str,
        schema_name: str,
        state: ProvisioningState,
        schema_version: int,
        subdomain: str | None = None,
    ) -> SchemaRecord:
        async with self._session() as session:
            row = await session.get(TenantSchema, tenant_id)
            if row is None:
                row = TenantSchema(tenant_id=tenant_id)
                session.add(row)
            row.schema_name = schema_name
            row.state = state
            row.schema_version = schema_version
            if subdomain is not None:
                row.subdomain = subdomain
            await session.commit()
            return SchemaRecord.model_validate(row)

    async def set_state(self, tenant_id: str, state: ProvisioningState) -> SchemaRecord | None:
        async with self._session() as session:
            row = await session.get(TenantSchema, tenant_id)
            if row is None:
                return None
            row.state = state
            await session.commit()
            return SchemaRecord.model_validate(row)

    async def existing_schemas(self, schema_names: set[str]) -> set[str]:
        async with self._connection() as connection:
            return await self.binder.existing_schemas(connection, schema_names)


class SchemaRegistry:
    """Authoritative-enough mapping from tenant to schema for request resolution.

    Lookup order is the in-process snapshot, then the optional Redis cache,
    then the backing table. Snapshot entries expire after ``snapshot_ttl``
    seconds so changes written by other processes (the drift task, another
    API worker) are picked up without a restart. ``detect_drift`` compares
    provisioned records with the schemas that actually exist in storage.
    """

    def __init__(
        self,
        store: SchemaRecordStore,
        cache: RegistryCache | None = None,
        *,
        snapshot_ttl: float = 30.0,
    ) -> None:
        self.store = store
        self.cache = cache
        self.snapshot_ttl = snapshot_ttl
        self._records: MappingProxyType[str, SchemaRecord] = MappingProxyType({})
        self._expires: MappingProxyType[str, float] = MappingProxyType({})
        self._subdomains: MappingProxyType[str, str] = MappingProxyType({})
        self._generation = 0
        self._write_lock = asyncio.Lock()

    # ── Snapshot maintenance ─────────────────────────────────────────────

    def _swap(self, records: dict[str, SchemaRecord], expires: dict[str, float]) -> None:
        self._records = MappingProxyType(records)
        self._expires = MappingProxyType(expires)
        self._subdomains = MappingProxyType(
            {r.subdomain.lower(): r.tenant_id for r in records.values() if r.subdomain}
        )

    def _install(self, record: SchemaRecord) -> None:
        self._swap(
            {**self._records, record.tenant_id: record},
            {**self._expires, record.tenant_id: monotonic() + self.snapshot_ttl},
        )

    def _evict(self, tenant_id: str) -> None:
        records = dict(self._records)
        expires = dict(self._expires)
        records.pop(tenant_id, None)
        expires.pop(tenant_id, None)
        self._swap(records, expires)

    def _fresh(self, tenant_id: str) -> SchemaRecord | None:
        record = self._records.get(tenant_id)
        if record is not None and monotonic() < self._expires.get(tenant_id, 0.0):
            return record
        return None

    def snapshot(self) -> dict[str, SchemaRecord]:
        return dict(self._records)

    async def refresh(self) -> int:
        """Reload every record from the backing table. Returns the record count."""
        async with self._write_lock:
            records = await self.store.load_all()
            self._generation += 1
            deadline = monotonic() + self.snapshot_ttl
            self._swap({r.tenant_id: r for r in records}, {r.tenant_id: deadline for r in records})
        logger.info("Schema registry refreshed: %d tenants", len(records))
        return len(records)

    # ── Reads ────────────────────────────────────────────────────────────

    async def lookup(self, tenant_id: str) -> SchemaRecord | None:
        record = self._fresh(tenant_id)
        if record is not None:
            return record

        generation = self._generation
        if self.cache is not None:
            record = await self.cache.get(tenant_id)
        if record is None:
            record = await self.store.get(tenant_id)
            if record is not None and self.cache is not None:
                await self.cache.set(record)
        # A write that landed while we were reading wins over what we fetched
        if generation == self._generation:
            if record is not None:
                self._install(record)
            elif tenant_id in self._records:
                self._evict(tenant_id)
        return record

    async def lookup_by_subdomain(self, subdomain: str) -> SchemaRecord | None:
        subdomain = subdomain.lower()
        tenant_id = self._subdomains.get(subdomain)
        if tenant_id is not None:
            return await self.lookup(tenant_id)

        generation = self._generation
        record = await self.store.get_by_subdomain(subdomain)
        if record is not None and generation == self._generation:
            self._install(record)
        return record

    # ── Writes (provisioning collaborator) ───────────────────────────────

    async def on_provisioned(
        self,
        tenant_id: str,
        schema_name: str,
        schema_version: int,
        *,
        subdomain: str | None = None,
    ) -> SchemaRecord:
        """Record that ``schema_name`` now holds ``tenant_id``'s data at ``schema_version``."""
        validate_schema_name(schema_name)
        async with self._write_lock:
            record = await self.store.upsert(
                tenant_id,
                schema_name,
                ProvisioningState.PROVISIONED,
                schema_version,
                subdomain=subdomain.lower() if subdomain else None,
            )
            self._generation += 1
            self._install(record)
        if self.cache is not None:
            await self.cache.set(record)
        logger.info(
            "Tenant provisioned: tenant=%s schema=%s version=%d",
            tenant_id,
            schema_name,
            schema_version,
        )
        return record

    async def mark_missing(self, tenant_id: str) -> SchemaRecord | None:
        async with self._write_lock:
            record = await self.store.set_state(tenant_id, ProvisioningState.MISSING)
            self._generation += 1
            if record is None:
                self._evict(tenant_id)
            else:
                self._install(record)
        if self.cache is not None:
            await self.cache.delete(tenant_id)
        logger.warning("Tenant schema marked missing: tenant=%s", tenant_id)
        return record

    async def invalidate(self, tenant_id: str) -> None:
        """Drop the cached record so the next lookup reads the backing table."""
        async with self._write_lock:
            self._generation += 1
            self._evict(tenant_id)
        if self.cache is not None:
            await self.cache.delete(tenant_id)
        logger.info("Schema registry entry invalidated: tenant=%s", tenant_id)

    # ── Drift ────────────────────────────────────────────────────────────

    async def detect_drift(self, *, mark_missing: bool = False) -> DriftReport:
        """Report provisioned tenants whose schema no longer exists in storage."""
        await self.refresh()
        provisioned = {r.tenant_id: r for r in self._records.values() if r.is_provisioned}
        present = await self.store.existing_schemas({r.schema_name for r in provisioned.values()})
        drifted = sorted(t for t, r in provisioned.items() if r.schema_name not in present)

        for tenant_id in drifted:
            logger.warning(
                "Schema drift: tenant=%s is registered as provisioned but schema %s is gone",
                tenant_id,
                provisioned[tenant_id].schema_name,
            )
            if mark_missing:
                await self.mark_missing(tenant_id)

        return DriftReport(checked=len(provisioned), drifted=drifted)
