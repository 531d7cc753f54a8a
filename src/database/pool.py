"""Connection pool contract used by the tenant scope manager.

The pool knows nothing about tenants. The scope manager and the schema
registry's record store are its only callers. ``EnginePool`` adapts the
bounded queue pool of a SQLAlchemy ``AsyncEngine`` to the acquire /
release / destroy contract.
"""

import logging
from typing import Protocol

from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from src.exceptions import ConnectionPoolExhaustedException

logger = logging.getLogger(__name__)


class ConnectionPool(Protocol):
    async def acquire(self, timeout: float) -> AsyncConnection: ...

    async def release(self, connection: AsyncConnection) -> None: ...

    async def destroy(self, connection: AsyncConnection) -> None: ...

    def status(self) -> dict: ...


class EnginePool:
    """Acquire/release/destroy on top of an ``AsyncEngine`` pool."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    async def acquire(self, timeout: float) -> AsyncConnection:
        """Check out one connection.

        The wait is bounded by the engine's own ``pool_timeout``, which
        ``build_engine`` takes from the same setting as ``timeout``. Raises
        ConnectionPoolExhaustedException when no connection frees up in time.
        There is no retry here; backoff belongs to the caller.
        """
        try:
            return await self.engine.connect()
        except sa_exc.TimeoutError as exc:
            logger.warning("Connection pool exhausted after %.2fs (%s)", timeout, self.engine.pool.status())
            raise ConnectionPoolExhaustedException(
                f"No database connection became available within {timeout:g}s"
            ) from exc

    async def release(self, connection: AsyncConnection) -> None:
        await connection.close()

    async def destroy(self, connection: AsyncConnection) -> None:
        """Discard the physical connection; the pool opens a fresh one on demand."""
        try:
            await connection.invalidate()
        finally:
            await connection.close()

    def status(self) -> dict:
        pool = self.engine.pool
        return {
            "size": pool.size(),
            "checked_out": pool.checkedout(),
            "checked_in": pool.checkedin(),
            "overflow": pool.overflow(),
        }
