"""Tenancy module — schema-per-tenant isolation over a shared connection pool."""

from src.modules.tenancy.auth import AuthenticatedUser, get_optional_user
from src.modules.tenancy.dependencies import (
    get_tenancy,
    get_tenant_token,
    require_provisioning_token,
    require_tenant,
    tenant_scope,
    transactional_tenant_scope,
)
from src.modules.tenancy.facade import QueryExecutor, TenantHandle
from src.modules.tenancy.lease import ConnectionLease
from src.modules.tenancy.middleware import TenantContextMiddleware
from src.modules.tenancy.registry import SchemaRecordStore, SchemaRegistry
from src.modules.tenancy.resolver import TenantResolver, TenantToken, select_tenant_token
from src.modules.tenancy.schemas import ResolvedTenant, SchemaRecord, SharedEntityReference
from src.modules.tenancy.scope import ScopedConnectionManager
from src.modules.tenancy.service import TenancyService, build_tenancy_service
from src.modules.tenancy.statements import Statement, StatementRegistry

__all__ = [
    # Schemas
    "ResolvedTenant",
    "SchemaRecord",
    "SharedEntityReference",
    # Auth
    "AuthenticatedUser",
    "get_optional_user",
    # Middleware
    "TenantContextMiddleware",
    # Dependencies
    "get_tenancy",
    "get_tenant_token",
    "require_tenant",
    "tenant_scope",
    "transactional_tenant_scope",
    "require_provisioning_token",
    # Resolution
    "TenantResolver",
    "TenantToken",
    "select_tenant_token",
    "SchemaRegistry",
    "SchemaRecordStore",
    # Scoped access
    "ConnectionLease",
    "ScopedConnectionManager",
    "QueryExecutor",
    "TenantHandle",
    "Statement",
    "StatementRegistry",
    # Service
    "TenancyService",
    "build_tenancy_service",
]
