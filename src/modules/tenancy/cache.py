"""Cross-process cache of schema registry records backed by Redis."""

import logging

import redis.asyncio as redis

from src.config import settings
from src.modules.tenancy.constants import CACHE_PREFIX, CACHE_TTL_DEFAULT
from src.modules.tenancy.schemas import SchemaRecord

logger = logging.getLogger(__name__)


class RegistryCache:
    """Redis-backed cache of ``SchemaRecord`` rows keyed by tenant id.

    Lets several worker processes share registry lookups between refreshes.
    Writers update or delete the entry and each process re-reads its own
    snapshot entries after ``registry_snapshot_ttl``, so a provisioning
    change is visible to every process at the latest after one snapshot
    TTL. Entries also expire after ``ttl``. Redis errors are logged and
    treated as cache misses; the backing table stays authoritative.
    """

    def __init__(self, redis_client: redis.Redis | None = None, ttl: int = CACHE_TTL_DEFAULT) -> None:
        self._redis = redis_client
        self.ttl = ttl

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(settings.redis_url, decode_responses=True)
        return self._redis

    def _make_key(self, tenant_id: str) -> str:
        return f"{CACHE_PREFIX}:{tenant_id}"

    async def get(self, tenant_id: str) -> SchemaRecord | None:
        client = await self._get_redis()
        try:
            raw = await client.get(self._make_key(tenant_id))
        except redis.RedisError as exc:
            logger.warning("Registry cache read failed for tenant=%s: %s", tenant_id, exc)
            return None
        if raw is None:
            return None
        return SchemaRecord.model_validate_json(raw)

    async def set(self, record: SchemaRecord) -> None:
        client = await self._get_redis()
        try:
            await client.set(self._make_key(record.tenant_id), record.model_dump_json(), ex=self.ttl)
        except redis.RedisError as exc:
            logger.warning("Registry cache write failed for tenant=%s: %s", record.tenant_id, exc)

    async def delete(self, tenant_id: str) -> None:
        client = await self._get_redis()
        try:
            await client.delete(self._make_key(tenant_id))
        except redis.RedisError as exc:
            logger.warning("Registry cache delete failed for tenant=%s: %s", tenant_id, exc)

    async def clear(self) -> int:
        """Delete every cached registry record. Returns the number of keys deleted."""
        client = await self._get_redis()
        deleted = 0
        async for key in client.scan_iter(match=f"{CACHE_PREFIX}:*", count=100):
            await client.delete(key)
            deleted += 1
        return deleted
