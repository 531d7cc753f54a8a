from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

from src.config import settings
from src.database.tenant import SQLiteSchemaBinder


def build_engine(
    database_url: str,
    *,
    pool_size: int,
    max_overflow: int = 0,
    pool_timeout: float = 5.0,
    pool_recycle: int = 1800,
    shared_schema: str = "public",
    sqlite_schema_dir: str | None = None,
    echo: bool = False,
) -> AsyncEngine:
    """Create the async engine whose pool backs every tenant scope.

    The pool is a plain bounded queue pool for every dialect; SQLite
    connections get the shared schema attached on connect so their neutral
    resolution order matches the PostgreSQL ``search_path`` default.
    """
    async_engine = create_async_engine(
        database_url,
        poolclass=AsyncAdaptedQueuePool,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        pool_pre_ping=True,
        echo=echo,
    )

    if async_engine.dialect.name == "sqlite":
        binder = SQLiteSchemaBinder(sqlite_schema_dir or settings.sqlite_schema_dir, shared_schema)

        @event.listens_for(async_engine.sync_engine, "connect")
        def _attach_shared_schema(dbapi_connection, connection_record):
            binder.attach_shared_on_connect(dbapi_connection)

    return async_engine


engine = build_engine(
    settings.database_url,
    pool_size=settings.pool_size,
    max_overflow=settings.pool_max_overflow,
    pool_timeout=settings.pool_acquire_timeout_seconds,
    pool_recycle=settings.pool_recycle_seconds,
    shared_schema=settings.shared_schema,
    echo=settings.environment == "development",
)
