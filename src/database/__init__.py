from src.database.base import Base, TimestampMixin
from src.database.engine import build_engine, engine
from src.database.pool import ConnectionPool, EnginePool
from src.database.tenant import (
    PostgresSchemaBinder,
    SchemaBinder,
    SQLiteSchemaBinder,
    get_schema_binder,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "build_engine",
    "engine",
    "ConnectionPool",
    "EnginePool",
    "SchemaBinder",
    "PostgresSchemaBinder",
    "SQLiteSchemaBinder",
    "get_schema_binder",
]
