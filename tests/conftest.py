"""Pytest fixtures for Wardline tenancy tests.

Every test gets its own directory of SQLite schema files: ``public.db`` holds
the shared master data, ``tenant_a.db`` / ``tenant_b.db`` hold two tenants'
operational tables with deliberately overlapping table names and ids.
"""

import sqlite3
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path

import pytest
import pytest_asyncio

from src.database.base import Base
from src.database.engine import build_engine
from src.models.enums import ProvisioningState
from src.modules.tenancy.schemas import ResolvedTenant
from src.modules.tenancy.service import TenancyService, build_tenancy_service
from src.modules.tenancy.statements import StatementRegistry

SHARED_TABLES = ["bed_categories", "subscription_tiers", "tenant_schemas"]

_TENANT_DDL = [
    "CREATE TABLE beds (id INTEGER PRIMARY KEY, label TEXT NOT NULL, status TEXT NOT NULL, "
    "category_id INTEGER, category_label TEXT)",
    "CREATE TABLE bed_assignments (id INTEGER PRIMARY KEY AUTOINCREMENT, bed_id INTEGER NOT NULL, "
    "patient_ref TEXT NOT NULL UNIQUE)",
]


def _seed(path: Path, statements: list[str]) -> None:
    conn = sqlite3.connect(path)
    try:
        for statement in statements:
            conn.execute(statement)
        conn.commit()
    finally:
        conn.close()


def register_ward_statements(statements: StatementRegistry) -> None:
    """Statements a ward-management module would register at import time."""
    statements.register(
        "beds.list",
        "SELECT id, label, status, category_id FROM beds ORDER BY id",
        tenant_tables=["beds"],
    )
    statements.register(
        "beds.by_id",
        "SELECT id, label, status, category_id FROM beds WHERE id = :id",
        tenant_tables=["beds"],
    )
    statements.register(
        "beds.set_status",
        "UPDATE beds SET status = :status WHERE id = :id",
        tenant_tables=["beds"],
    )
    statements.register(
        "beds.with_category",
        "SELECT b.id, b.label, c.name AS category FROM beds b "
        "JOIN public.bed_categories c ON c.id = b.category_id WHERE b.id = :id",
        tenant_tables=["beds"],
        shared_tables=["bed_categories"],
    )
    statements.register(
        "bed_assignments.insert",
        "INSERT INTO bed_assignments (bed_id, patient_ref) VALUES (:bed_id, :patient_ref)",
        tenant_tables=["bed_assignments"],
    )
    statements.register(
        "bed_assignments.count",
        "SELECT COUNT(*) AS n FROM bed_assignments",
        tenant_tables=["bed_assignments"],
    )


@pytest.fixture
def schema_dir(tmp_path: Path) -> Path:
    """Shared schema plus two provisioned tenant schemas on disk."""
    directory = tmp_path / "schemas"
    directory.mkdir()

    _seed(
        directory / "public.db",
        [
            "CREATE TABLE bed_categories (id INTEGER PRIMARY KEY, name TEXT NOT NULL)",
            "INSERT INTO bed_categories (id, name) VALUES (1, 'ICU'), (2, 'General Ward')",
            "CREATE TABLE subscription_tiers (id INTEGER PRIMARY KEY, name TEXT NOT NULL)",
            "INSERT INTO subscription_tiers (id, name) VALUES (1, 'Standard')",
        ],
    )
    _seed(
        directory / "tenant_a.db",
        _TENANT_DDL
        + [
            "INSERT INTO beds (id, label, status, category_id, category_label) VALUES "
            "(1, 'A-101', 'available', 1, 'intensive'), (2, 'A-102', 'occupied', 2, 'general')",
        ],
    )
    _seed(
        directory / "tenant_b.db",
        _TENANT_DDL
        + [
            "INSERT INTO beds (id, label, status, category_id, category_label) VALUES "
            "(1, 'B-201', 'available', 1, 'critical care')",
        ],
    )
    return directory


@pytest.fixture
def tenant_a() -> ResolvedTenant:
    return ResolvedTenant(tenant_id="acme", schema_name="tenant_a", schema_version=1)


@pytest.fixture
def tenant_b() -> ResolvedTenant:
    return ResolvedTenant(tenant_id="globex", schema_name="tenant_b", schema_version=1)


TenancyFactory = Callable[..., Awaitable[TenancyService]]


@pytest_asyncio.fixture
async def make_tenancy(schema_dir: Path) -> AsyncGenerator[TenancyFactory, None]:
    """Build a started TenancyService on SQLite with the given pool size."""
    services: list[TenancyService] = []

    async def _make(
        pool_size: int = 3,
        acquire_timeout: float = 2.0,
        statement_timeout: float = 5.0,
    ) -> TenancyService:
        engine = build_engine(
            f"sqlite+aiosqlite:///{schema_dir / 'main.db'}",
            pool_size=pool_size,
            pool_timeout=acquire_timeout,
            sqlite_schema_dir=str(schema_dir),
        )
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        service = build_tenancy_service(
            engine,
            schema_dir=schema_dir,
            registrars=[register_ward_statements],
            shared_tables=SHARED_TABLES,
            acquire_timeout=acquire_timeout,
            statement_timeout=statement_timeout,
            required_schema_version=1,
        )
        await service.registry.on_provisioned("acme", "tenant_a", 1, subdomain="acme")
        await service.registry.on_provisioned("globex", "tenant_b", 1)
        await service.registry.store.upsert("oldco", "tenant_old", ProvisioningState.LEGACY, 0)
        await service.registry.store.upsert("initech", "tenant_c", ProvisioningState.PROVISIONED, 0)
        await service.start()
        services.append(service)
        return service

    yield _make

    for service in services:
        await service.close()


@pytest_asyncio.fixture
async def tenancy(make_tenancy: TenancyFactory) -> TenancyService:
    return await make_tenancy()
