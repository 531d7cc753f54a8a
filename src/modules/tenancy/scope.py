"""Scoped connection manager — binds a pooled connection to one tenant for one unit of work.

A scope checks a connection out of the pool, points its schema search path
at the tenant's schema, hands the unit of work a ``TenantHandle`` and, on
every exit path, resets the search path to neutral before the connection
goes back to the pool. Cleanup runs shielded so task cancellation cannot
skip the reset; a connection whose reset cannot be confirmed is destroyed
instead of being returned.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

from sqlalchemy.ext.asyncio import AsyncConnection

from src.database.pool import ConnectionPool
from src.database.tenant import SchemaBinder
from src.exceptions import ScopeResetFailedException, TenantNotProvisionedException
from src.models.enums import ProvisioningState
from src.modules.tenancy.constants import (
    CONN_HISTORY_LIMIT,
    CONN_INFO_BOUND_TENANT,
    CONN_INFO_HISTORY,
    CONN_INFO_ID,
)
from src.modules.tenancy.facade import QueryExecutor, TenantHandle
from src.modules.tenancy.lease import ConnectionLease
from src.modules.tenancy.schemas import ResolvedTenant

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _record_binding(connection: AsyncConnection, tenant_id: str | None) -> None:
    """Track the physical connection's binding across leases."""
    info = connection.info
    info[CONN_INFO_BOUND_TENANT] = tenant_id
    history = info.setdefault(CONN_INFO_HISTORY, [None])
    if history[-1] != tenant_id:
        history.append(tenant_id)
        del history[:-CONN_HISTORY_LIMIT]


def connection_history(connection: AsyncConnection) -> list[str | None]:
    """Binding history of a physical connection, oldest first."""
    return list(connection.info.get(CONN_INFO_HISTORY, [None]))


class ScopedConnectionManager:
    """Lends tenant-bound connections to units of work.

    Usage::

        async with manager.scope(tenant) as handle:
            rows = await handle.run("beds.list_available")

    or, for a callable unit of work::

        result = await manager.with_tenant_scope(tenant, work, transactional=True)
    """

    def __init__(
        self,
        pool: ConnectionPool,
        binder: SchemaBinder,
        executor: QueryExecutor,
        *,
        acquire_timeout: float,
    ) -> None:
        self.pool = pool
        self.binder = binder
        self.executor = executor
        self.acquire_timeout = acquire_timeout
        self._active: dict[str, ConnectionLease] = {}

    @property
    def active_leases(self) -> int:
        return len(self._active)

    def pool_status(self) -> dict:
        return {**self.pool.status(), "active_leases": self.active_leases}

    # ── Public API ───────────────────────────────────────────────────────

    @asynccontextmanager
    async def scope(
        self, tenant: ResolvedTenant, *, transactional: bool = False
    ) -> AsyncIterator[TenantHandle]:
        if not isinstance(tenant, ResolvedTenant):
            raise TypeError("A tenant scope requires a ResolvedTenant")

        lease = await self._checkout()
        failure: BaseException | None = None
        try:
            await self._bind(lease, tenant)
            handle = TenantHandle(self.executor, lease, tenant)
            if transactional:
                lease.transactional = True
                async with lease.connection.begin():
                    yield handle
            else:
                yield handle
        except BaseException as exc:
            failure = exc
            raise
        finally:
            await asyncio.shield(self._release(lease, failure))

    async def with_tenant_scope(
        self,
        tenant: ResolvedTenant,
        work: Callable[[TenantHandle], Awaitable[T]],
        *,
        transactional: bool = False,
    ) -> T:
        async with self.scope(tenant, transactional=transactional) as handle:
            return await work(handle)

    # ── Lease lifecycle ──────────────────────────────────────────────────

    async def _checkout(self) -> ConnectionLease:
        connection = await self.pool.acquire(self.acquire_timeout)
        stale = connection.info.get(CONN_INFO_BOUND_TENANT)
        if stale is not None:
            logger.error(
                "Pooled connection %s is still bound to tenant=%s; destroying it",
                connection.info.get(CONN_INFO_ID),
                stale,
            )
            _record_binding(connection, None)
            await self._destroy(connection)
            connection = await self.pool.acquire(self.acquire_timeout)
            stale = connection.info.get(CONN_INFO_BOUND_TENANT)
            if stale is not None:
                _record_binding(connection, None)
                await self._destroy(connection)
                raise ScopeResetFailedException(
                    "Connection pool returned bound connections twice in a row"
                )

        connection_id = connection.info.setdefault(CONN_INFO_ID, uuid.uuid4().hex[:12])
        lease = ConnectionLease(connection=connection, connection_id=connection_id)
        self._active[lease.lease_id] = lease
        logger.debug("Lease %s checked out connection %s", lease.lease_id, lease.connection_id)
        return lease

    async def _bind(self, lease: ConnectionLease, tenant: ResolvedTenant) -> None:
        # Marked before the statement runs so a half-applied binding is never
        # mistaken for a clean connection
        _record_binding(lease.connection, tenant.tenant_id)
        try:
            await self.binder.bind(lease.connection, tenant.schema_name)
        except LookupError as exc:
            logger.warning(
                "Schema %s for tenant=%s is missing from storage", tenant.schema_name, tenant.tenant_id
            )
            raise TenantNotProvisionedException(
                f"Tenant {tenant.tenant_id} is not provisioned",
                details=[{"state": ProvisioningState.MISSING.value}],
            ) from exc

        lease.bound_tenant = tenant.tenant_id
        lease.bound_schema = tenant.schema_name
        lease.history.append(tenant.tenant_id)
        logger.debug(
            "Lease %s bound to tenant=%s schema=%s",
            lease.lease_id,
            tenant.tenant_id,
            tenant.schema_name,
        )

    async def _release(self, lease: ConnectionLease, failure: BaseException | None = None) -> None:
        connection = lease.connection
        lease.in_use = False
        self._active.pop(lease.lease_id, None)
        try:
            if connection.in_transaction():
                await connection.rollback()
            await self.binder.reset(connection)
            path = await self.binder.current_path(connection)
            if path != self.binder.neutral_path():
                raise RuntimeError(f"search path after reset is {path!r}")
        except Exception as exc:
            logger.error(
                "Reset failed for lease %s (connection=%s tenant=%s); destroying connection: %s",
                lease.lease_id,
                lease.connection_id,
                lease.bound_tenant,
                exc,
            )
            lease.bound_tenant = None
            lease.bound_schema = None
            _record_binding(connection, None)
            await self._destroy(connection)
            if isinstance(failure, asyncio.CancelledError):
                # The cancellation keeps propagating; the connection is already gone
                return
            raise ScopeResetFailedException(
                "Connection could not be returned to a neutral state and was destroyed"
            ) from (failure or exc)

        if lease.bound_tenant is not None:
            lease.history.append(None)
        lease.bound_tenant = None
        lease.bound_schema = None
        _record_binding(connection, None)
        await self.pool.release(connection)
        logger.debug("Lease %s released connection %s", lease.lease_id, lease.connection_id)

    async def _destroy(self, connection: AsyncConnection) -> None:
        connection_id = connection.info.get(CONN_INFO_ID)
        try:
            await self.pool.destroy(connection)
        except Exception:
            logger.exception("Failed to destroy connection %s", connection_id)
