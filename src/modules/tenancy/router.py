"""Tenancy module API router — tenant context and internal provisioning endpoints."""

from fastapi import APIRouter, Depends, Path

from src.modules.tenancy.constants import TENANT_TOKEN_PATTERN
from src.modules.tenancy.dependencies import get_tenancy, require_provisioning_token, require_tenant
from src.modules.tenancy.schemas import (
    DriftReport,
    PoolStatusResponse,
    ProvisionedNotification,
    ResolvedTenant,
    SchemaRecord,
)
from src.modules.tenancy.service import TenancyService
from src.schemas.responses import INTERNAL_ERROR_RESPONSES, TENANT_ERROR_RESPONSES

router = APIRouter(prefix="/tenancy", tags=["tenancy"], responses=TENANT_ERROR_RESPONSES)

internal_router = APIRouter(
    prefix="/internal/tenancy",
    tags=["tenancy-internal"],
    dependencies=[Depends(require_provisioning_token)],
    responses=INTERNAL_ERROR_RESPONSES,
)


# ---------------------------------------------------------------------------
# Tenant context
# ---------------------------------------------------------------------------


@router.get("/context", response_model=ResolvedTenant)
async def get_context(tenant: ResolvedTenant = Depends(require_tenant)) -> ResolvedTenant:
    """Return the tenant this request resolves to."""
    return tenant


# ---------------------------------------------------------------------------
# Provisioning hooks
# ---------------------------------------------------------------------------


@internal_router.post("/tenants/{tenant_id}/provisioned", response_model=SchemaRecord)
async def tenant_provisioned(
    body: ProvisionedNotification,
    tenant_id: str = Path(pattern=TENANT_TOKEN_PATTERN),
    tenancy: TenancyService = Depends(get_tenancy),
) -> SchemaRecord:
    """Record that a tenant's schema exists and is at ``schema_version``."""
    return await tenancy.registry.on_provisioned(
        tenant_id,
        body.schema_name,
        body.schema_version,
        subdomain=body.subdomain,
    )


@internal_router.post("/tenants/{tenant_id}/invalidate", status_code=204)
async def invalidate_tenant(
    tenant_id: str = Path(pattern=TENANT_TOKEN_PATTERN),
    tenancy: TenancyService = Depends(get_tenancy),
) -> None:
    await tenancy.registry.invalidate(tenant_id)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


@internal_router.get("/drift", response_model=DriftReport)
async def schema_drift(tenancy: TenancyService = Depends(get_tenancy)) -> DriftReport:
    """Compare provisioned registry records with the schemas present in storage."""
    return await tenancy.registry.detect_drift()


@internal_router.get("/pool", response_model=PoolStatusResponse)
async def pool_status(tenancy: TenancyService = Depends(get_tenancy)) -> PoolStatusResponse:
    return PoolStatusResponse(**tenancy.scopes.pool_status())
