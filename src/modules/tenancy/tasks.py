"""Celery tasks for schema registry maintenance."""

import asyncio
import logging

from celery_app import celery
from src.config import settings
from src.database.engine import build_engine
from src.database.pool import EnginePool
from src.database.tenant import get_schema_binder
from src.modules.tenancy.cache import RegistryCache
from src.modules.tenancy.registry import SchemaRecordStore, SchemaRegistry

logger = logging.getLogger(__name__)


async def _check_schema_drift_async() -> dict:
    """Async implementation: mark provisioned tenants whose schema is gone as missing."""
    # Each asyncio.run gets its own loop, so the engine cannot be shared across runs
    engine = build_engine(
        settings.database_url,
        pool_size=1,
        pool_timeout=settings.pool_acquire_timeout_seconds,
        shared_schema=settings.shared_schema,
    )
    try:
        store = SchemaRecordStore(
            EnginePool(engine), get_schema_binder(engine), settings.pool_acquire_timeout_seconds
        )
        # mark_missing must also drop the shared Redis entry API workers read
        cache = RegistryCache(ttl=settings.registry_cache_ttl) if settings.registry_cache_enabled else None
        registry = SchemaRegistry(store, cache=cache)
        report = await registry.detect_drift(mark_missing=True)
    finally:
        await engine.dispose()

    return {
        "checked": report.checked,
        "drifted": report.drifted,
        "checked_at": report.checked_at.isoformat(),
    }


# ---------------------------------------------------------------------------
# Celery task definitions
# ---------------------------------------------------------------------------


@celery.task(name="src.modules.tenancy.tasks.check_schema_drift")
def check_schema_drift():
    """Compare the schema registry with the schemas present in storage."""
    stats = asyncio.run(_check_schema_drift_async())
    logger.info("check_schema_drift complete: checked=%d drifted=%s", stats["checked"], stats["drifted"])
    return stats
