"""Query execution façade — the only path from business code to a leased connection.

Business code never sees the raw connection. It hands a registered statement
and bind parameters to ``TenantHandle`` (or ``QueryExecutor`` directly), which
checks that the lease is bound to the caller's tenant, runs the statement
under a timeout and classifies storage failures as retryable or not.
"""

import asyncio
import logging
from collections.abc import Mapping, Sequence
from typing import Any

from sqlalchemy.engine import RowMapping
from sqlalchemy.exc import (
    DataError,
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)

from src.exceptions import (
    LeaseNotBoundException,
    LeaseTenantMismatchException,
    StatementNotRegisteredException,
    StorageException,
)
from src.modules.tenancy.constants import RETRYABLE_SQLSTATE_PREFIXES, RETRYABLE_SQLSTATES
from src.modules.tenancy.lease import ConnectionLease
from src.modules.tenancy.schemas import ResolvedTenant, SharedEntityReference
from src.modules.tenancy.statements import Statement, StatementRegistry

logger = logging.getLogger(__name__)

# Driver messages (no SQLSTATE available) that indicate a transient condition
_TRANSIENT_MARKERS = ("locked", "busy", "timeout", "timed out", "connection", "closed")


def sqlstate_of(exc: DBAPIError) -> str | None:
    """Return the SQLSTATE carried by the driver exception, if any."""
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return str(code) if code else None


def is_retryable(exc: DBAPIError) -> bool:
    if exc.connection_invalidated:
        return True
    sqlstate = sqlstate_of(exc)
    if sqlstate is not None:
        return sqlstate in RETRYABLE_SQLSTATES or sqlstate.startswith(RETRYABLE_SQLSTATE_PREFIXES)
    if isinstance(exc, InterfaceError):
        return True
    if isinstance(exc, OperationalError):
        message = str(exc.orig).lower()
        return any(marker in message for marker in _TRANSIENT_MARKERS)
    return False


def classify_storage_error(statement_name: str, exc: DBAPIError) -> StorageException:
    """Wrap a driver error without copying its message.

    Driver messages can echo bind parameters or row values, so only the
    statement name, error class and SQLSTATE are carried forward.
    """
    sqlstate = sqlstate_of(exc)
    retryable = is_retryable(exc)
    if isinstance(exc, IntegrityError):
        status_code = 409
    elif isinstance(exc, DataError):
        status_code = 422
    else:
        status_code = None

    error_class = type(exc.orig).__name__ if exc.orig is not None else type(exc).__name__
    return StorageException(
        f"Statement {statement_name!r} failed: {error_class}",
        retryable=retryable,
        status_code=status_code,
        sqlstate=sqlstate,
        details=[{"statement": statement_name, "sqlstate": sqlstate, "error": error_class}],
    )


class QueryExecutor:
    """Runs registered statements on bound leases."""

    def __init__(self, registry: StatementRegistry, statement_timeout: float) -> None:
        self.registry = registry
        self.statement_timeout = statement_timeout

    def _statement(self, statement: Statement | str) -> Statement:
        if isinstance(statement, str):
            return self.registry.get(statement)
        if not self.registry.owns(statement):
            raise StatementNotRegisteredException(
                f"Statement {statement.name!r} was not registered with this executor"
            )
        return statement

    @staticmethod
    def _check_lease(lease: ConnectionLease, tenant_id: str | None) -> None:
        if not lease.in_use or lease.bound_tenant is None:
            raise LeaseNotBoundException(
                f"Lease {lease.lease_id} is not bound to a tenant; "
                "statements can only run inside a tenant scope"
            )
        if tenant_id is not None and lease.bound_tenant != tenant_id:
            logger.error(
                "Lease %s is bound to tenant=%s but the caller is tenant=%s",
                lease.lease_id,
                lease.bound_tenant,
                tenant_id,
            )
            raise LeaseTenantMismatchException(
                f"Lease {lease.lease_id} is bound to a different tenant"
            )

    async def _execute(
        self,
        lease: ConnectionLease,
        statement: Statement | str,
        params: Mapping[str, Any] | None,
        tenant_id: str | None,
    ) -> tuple[Sequence[RowMapping], int]:
        stmt = self._statement(statement)
        self._check_lease(lease, tenant_id)
        connection = lease.connection

        logger.debug(
            "Executing statement=%s lease=%s tenant=%s", stmt.name, lease.lease_id, lease.bound_tenant
        )
        try:
            result = await asyncio.wait_for(
                connection.execute(stmt.clause, dict(params or {})),
                timeout=self.statement_timeout,
            )
            rows = result.mappings().all() if result.returns_rows else []
            rowcount = result.rowcount
            if not lease.transactional:
                await connection.commit()
        except asyncio.TimeoutError as exc:
            logger.warning(
                "Statement %s timed out after %.1fs (lease=%s)",
                stmt.name,
                self.statement_timeout,
                lease.lease_id,
            )
            await self._rollback_autocommit(lease)
            raise StorageException(
                f"Statement {stmt.name!r} timed out",
                retryable=True,
                details=[{"statement": stmt.name, "timeout_seconds": self.statement_timeout}],
            ) from exc
        except DBAPIError as exc:
            error = classify_storage_error(stmt.name, exc)
            logger.warning(
                "Statement %s failed (sqlstate=%s retryable=%s lease=%s)",
                stmt.name,
                error.sqlstate,
                error.retryable,
                lease.lease_id,
            )
            await self._rollback_autocommit(lease)
            raise error from exc
        except SQLAlchemyError as exc:
            logger.warning("Statement %s failed: %s (lease=%s)", stmt.name, type(exc).__name__, lease.lease_id)
            await self._rollback_autocommit(lease)
            raise StorageException(
                f"Statement {stmt.name!r} failed: {type(exc).__name__}",
                retryable=False,
                details=[{"statement": stmt.name, "error": type(exc).__name__}],
            ) from exc

        return rows, rowcount

    @staticmethod
    async def _rollback_autocommit(lease: ConnectionLease) -> None:
        """End the failed implicit transaction of a non-transactional lease.

        Transactional leases are rolled back by the scope that owns them.
        """
        if lease.transactional or not lease.connection.in_transaction():
            return
        try:
            await lease.connection.rollback()
        except SQLAlchemyError as exc:
            # The scope's reset on release decides whether the connection survives
            logger.warning("Rollback after failed statement failed on lease %s: %s", lease.lease_id, exc)

    async def run(
        self,
        lease: ConnectionLease,
        statement: Statement | str,
        params: Mapping[str, Any] | None = None,
        *,
        tenant_id: str | None = None,
    ) -> list[RowMapping]:
        rows, _ = await self._execute(lease, statement, params, tenant_id)
        return list(rows)

    async def run_count(
        self,
        lease: ConnectionLease,
        statement: Statement | str,
        params: Mapping[str, Any] | None = None,
        *,
        tenant_id: str | None = None,
    ) -> int:
        _, rowcount = await self._execute(lease, statement, params, tenant_id)
        return rowcount


class TenantHandle:
    """Handle given to a unit of work inside a tenant scope.

    Every call checks that the underlying lease is still in use and bound to
    this handle's tenant; a handle kept past the end of its scope fails with
    ``LeaseNotBoundException``.
    """

    def __init__(self, executor: QueryExecutor, lease: ConnectionLease, tenant: ResolvedTenant) -> None:
        self._executor = executor
        self._lease = lease
        self.tenant = tenant

    @property
    def tenant_id(self) -> str:
        return self.tenant.tenant_id

    @property
    def lease(self) -> ConnectionLease:
        return self._lease

    async def run(
        self, statement: Statement | str, params: Mapping[str, Any] | None = None
    ) -> list[RowMapping]:
        return await self._executor.run(self._lease, statement, params, tenant_id=self.tenant_id)

    async def first(
        self, statement: Statement | str, params: Mapping[str, Any] | None = None
    ) -> RowMapping | None:
        rows = await self.run(statement, params)
        return rows[0] if rows else None

    async def scalar(self, statement: Statement | str, params: Mapping[str, Any] | None = None) -> Any:
        row = await self.first(statement, params)
        if row is None:
            return None
        return next(iter(row.values()), None)

    async def execute(self, statement: Statement | str, params: Mapping[str, Any] | None = None) -> int:
        """Run a write statement and return the affected row count."""
        return await self._executor.run_count(self._lease, statement, params, tenant_id=self.tenant_id)

    async def resolve_shared(self, ref: SharedEntityReference) -> RowMapping | None:
        """Fetch a shared-schema row by id from inside this tenant's scope.

        The lookup statement is fully qualified, so the result is the same
        whichever tenant the scope is bound to.
        """
        registry = self._executor.registry
        if ref.shared_schema != registry.shared_schema:
            raise ValueError(
                f"Reference names schema {ref.shared_schema!r}; the shared schema is {registry.shared_schema!r}"
            )
        statement = registry.shared_lookup(ref.table)
        return await self.first(statement, {"id": ref.id})
