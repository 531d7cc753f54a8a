"""Service layer wiring the tenancy components around one async engine."""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncEngine

from src.config import settings
from src.database.pool import ConnectionPool, EnginePool
from src.database.tenant import SchemaBinder, get_schema_binder
from src.modules.tenancy.cache import RegistryCache
from src.modules.tenancy.facade import QueryExecutor
from src.modules.tenancy.registry import SchemaRecordStore, SchemaRegistry
from src.modules.tenancy.resolver import TenantResolver
from src.modules.tenancy.scope import ScopedConnectionManager
from src.modules.tenancy.statements import StatementRegistry

logger = logging.getLogger(__name__)

StatementRegistrar = Callable[[StatementRegistry], None]


@dataclass
class TenancyService:
    """Everything a request or background job needs to reach tenant data."""

    engine: AsyncEngine
    pool: ConnectionPool
    binder: SchemaBinder
    registry: SchemaRegistry
    resolver: TenantResolver
    statements: StatementRegistry
    executor: QueryExecutor
    scopes: ScopedConnectionManager

    async def start(self) -> None:
        """Load the registry and re-check every registered statement.

        A statement that breaks the qualification rules stops startup here,
        before any tenant request can run it.
        """
        checked = self.statements.validate_all()
        tenants = await self.registry.refresh()
        logger.info("Tenancy ready: %d tenants, %d statements", tenants, checked)

    async def close(self) -> None:
        await self.engine.dispose()


def build_tenancy_service(
    engine: AsyncEngine,
    *,
    schema_dir: str | Path | None = None,
    registrars: Iterable[StatementRegistrar] = (),
    cache: RegistryCache | None = None,
    shared_tables: Iterable[str] | None = None,
    acquire_timeout: float | None = None,
    statement_timeout: float | None = None,
    required_schema_version: int | None = None,
) -> TenancyService:
    binder = get_schema_binder(engine, schema_dir)
    pool = EnginePool(engine)

    if cache is None and settings.registry_cache_enabled:
        cache = RegistryCache(ttl=settings.registry_cache_ttl)
    acquire_timeout = (
        acquire_timeout if acquire_timeout is not None else settings.pool_acquire_timeout_seconds
    )
    registry = SchemaRegistry(
        SchemaRecordStore(pool, binder, acquire_timeout),
        cache=cache,
        snapshot_ttl=settings.registry_snapshot_ttl,
    )

    statements = StatementRegistry(
        settings.shared_schema,
        shared_tables if shared_tables is not None else settings.shared_tables_set,
    )
    for register in registrars:
        register(statements)

    executor = QueryExecutor(
        statements,
        statement_timeout if statement_timeout is not None else settings.statement_timeout_seconds,
    )
    scopes = ScopedConnectionManager(
        pool,
        binder,
        executor,
        acquire_timeout=acquire_timeout,
    )
    resolver = TenantResolver(
        registry,
        required_schema_version
        if required_schema_version is not None
        else settings.required_schema_version,
    )

    return TenancyService(
        engine=engine,
        pool=pool,
        binder=binder,
        registry=registry,
        resolver=resolver,
        statements=statements,
        executor=executor,
        scopes=scopes,
    )
