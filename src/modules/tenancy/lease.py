"""Connection lease — one pooled connection lent to one unit of work."""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncConnection


@dataclass(eq=False)
class ConnectionLease:
    """Exclusive loan of a physical connection to a single unit of work.

    ``bound_tenant`` moves None -> tenant id (bind) -> None (reset before
    release). ``history`` records those values in order.
    """

    connection: AsyncConnection
    connection_id: str | None = None
    lease_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    acquired_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    bound_tenant: str | None = None
    bound_schema: str | None = None
    in_use: bool = True
    transactional: bool = False
    history: list[str | None] = field(default_factory=lambda: [None])

    def __repr__(self) -> str:
        return (
            f"ConnectionLease(lease_id={self.lease_id!r}, connection_id={self.connection_id!r}, "
            f"bound_tenant={self.bound_tenant!r}, in_use={self.in_use})"
        )
