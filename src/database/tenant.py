"""Schema-resolution binding for pooled connections.

A binder moves one physical connection between two states: bound to a
tenant (tenant schema first, shared schema second) and neutral. Every change
is committed immediately so that rolling back a unit of work never rolls the
binding back with it.
"""

import re
from pathlib import Path
from typing import Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from src.config import settings

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


def validate_schema_name(schema_name: str) -> str:
    """Return the schema name if it is a safe SQL identifier, else raise ValueError."""
    if not schema_name or not _IDENTIFIER_RE.match(schema_name):
        raise ValueError(f"Invalid schema name: {schema_name!r}")
    return schema_name


def quote_schema(schema_name: str) -> str:
    return f'"{validate_schema_name(schema_name)}"'


def parse_search_path(value: str) -> list[str]:
    """Split a ``search_path`` style string into bare schema names."""
    return [part.strip().strip('"') for part in value.split(",") if part.strip()]


class SchemaBinder(Protocol):
    shared_schema: str

    async def bind(self, connection: AsyncConnection, schema_name: str) -> None: ...

    async def reset(self, connection: AsyncConnection) -> None: ...

    async def current_path(self, connection: AsyncConnection) -> list[str]: ...

    def neutral_path(self) -> list[str]: ...

    async def existing_schemas(
        self, connection: AsyncConnection, schema_names: set[str]
    ) -> set[str]: ...


class PostgresSchemaBinder:
    """Binds connections through the PostgreSQL ``search_path`` session setting.

    Uses plain ``SET`` (session scope) rather than ``SET LOCAL`` because the
    binding must span several transactions of the same unit of work.
    """

    def __init__(self, shared_schema: str = "public", neutral_search_path: str = "public") -> None:
        self.shared_schema = validate_schema_name(shared_schema)
        self._neutral = [validate_schema_name(s) for s in parse_search_path(neutral_search_path)]

    def neutral_path(self) -> list[str]:
        return list(self._neutral)

    async def bind(self, connection: AsyncConnection, schema_name: str) -> None:
        """Put ``schema_name`` first on the search path, then the shared schema.

        PostgreSQL accepts a search path naming a schema that does not exist
        and silently skips it, so the effective path is read back. Raises
        LookupError when the tenant schema is not first on it.
        """
        await connection.execute(
            text(f"SET search_path TO {quote_schema(schema_name)}, {quote_schema(self.shared_schema)}")
        )
        result = await connection.execute(text("SELECT current_schemas(false)"))
        effective = list(result.scalar_one() or [])
        await connection.commit()
        if not effective or effective[0] != schema_name:
            raise LookupError(f"Schema {schema_name} does not exist")

    async def reset(self, connection: AsyncConnection) -> None:
        neutral = ", ".join(quote_schema(s) for s in self._neutral)
        await connection.execute(text(f"SET search_path TO {neutral}"))
        await connection.commit()

    async def current_path(self, connection: AsyncConnection) -> list[str]:
        result = await connection.execute(text("SHOW search_path"))
        return parse_search_path(result.scalar_one())

    async def existing_schemas(
        self, connection: AsyncConnection, schema_names: set[str]
    ) -> set[str]:
        if not schema_names:
            return set()
        result = await connection.execute(
            text("SELECT schema_name FROM information_schema.schemata"),
        )
        present = {row[0] for row in result.all()}
        return present & set(schema_names)


class SQLiteSchemaBinder:
    """Emulates schemas with attached SQLite database files.

    Each schema is a file ``<schema_dir>/<schema>.db`` attached under the
    schema's own name. SQLite resolves unqualified table names through the
    attached databases in attachment order, so binding attaches the tenant
    file before the shared one. Used for local development and the test
    suite.
    """

    _BUILTIN = ("main", "temp")

    def __init__(self, schema_dir: str | Path, shared_schema: str = "public") -> None:
        self.schema_dir = Path(schema_dir)
        self.shared_schema = validate_schema_name(shared_schema)

    def schema_path(self, schema_name: str) -> Path:
        return self.schema_dir / f"{validate_schema_name(schema_name)}.db"

    def neutral_path(self) -> list[str]:
        return [self.shared_schema]

    def attach_shared_on_connect(self, dbapi_connection) -> None:
        """Pool ``connect`` hook: new connections start in the neutral state."""
        self.schema_dir.mkdir(parents=True, exist_ok=True)
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute(
                f"ATTACH DATABASE ? AS {quote_schema(self.shared_schema)}",
                (str(self.schema_path(self.shared_schema)),),
            )
        finally:
            cursor.close()

    async def _attach(self, connection: AsyncConnection, schema_name: str) -> None:
        await connection.execute(
            text(f"ATTACH DATABASE :path AS {quote_schema(schema_name)}"),
            {"path": str(self.schema_path(schema_name))},
        )

    async def _detach_all(self, connection: AsyncConnection) -> list[str]:
        attached = await self.current_path(connection)
        for name in attached:
            await connection.execute(text(f"DETACH DATABASE {quote_schema(name)}"))
        return attached

    async def bind(self, connection: AsyncConnection, schema_name: str) -> None:
        if not self.schema_path(schema_name).exists():
            # ATTACH would silently create an empty database file
            raise LookupError(f"Schema {schema_name!r} does not exist")
        await self._detach_all(connection)
        await self._attach(connection, schema_name)
        await self._attach(connection, self.shared_schema)
        await connection.commit()

    async def reset(self, connection: AsyncConnection) -> None:
        await self._detach_all(connection)
        await self._attach(connection, self.shared_schema)
        await connection.commit()

    async def current_path(self, connection: AsyncConnection) -> list[str]:
        result = await connection.execute(text("PRAGMA database_list"))
        rows = sorted(result.all(), key=lambda row: row[0])
        return [row[1] for row in rows if row[1] not in self._BUILTIN]

    async def existing_schemas(
        self, connection: AsyncConnection, schema_names: set[str]
    ) -> set[str]:
        return {name for name in schema_names if self.schema_path(name).exists()}


def get_schema_binder(engine: AsyncEngine, schema_dir: str | Path | None = None) -> SchemaBinder:
    """Pick the binder matching the engine's dialect."""
    if engine.dialect.name == "sqlite":
        return SQLiteSchemaBinder(schema_dir or settings.sqlite_schema_dir, settings.shared_schema)
    return PostgresSchemaBinder(settings.shared_schema, settings.neutral_search_path)
