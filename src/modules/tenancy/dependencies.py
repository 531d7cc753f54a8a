"""FastAPI dependency functions for tenant resolution and scoped data access."""

import secrets
from collections.abc import AsyncIterator

from fastapi import Depends, Header, Request

from src.config import settings
from src.exceptions import ForbiddenException, UnauthorizedException
from src.modules.tenancy.auth import AuthenticatedUser, get_optional_user
from src.modules.tenancy.constants import PROVISIONING_TOKEN_HEADER
from src.modules.tenancy.facade import TenantHandle
from src.modules.tenancy.resolver import TenantToken
from src.modules.tenancy.schemas import ResolvedTenant
from src.modules.tenancy.service import TenancyService


def get_tenancy(request: Request) -> TenancyService:
    """The tenancy service built by the application lifespan."""
    return request.app.state.tenancy


def get_tenant_token(request: Request) -> TenantToken | None:
    """Extract the tenant token selected by TenantContextMiddleware, or None."""
    return getattr(request.state, "tenant_token", None)


async def require_tenant(
    request: Request,
    # Rejects a presented but unverifiable Bearer token before any tenant is chosen
    user: AuthenticatedUser | None = Depends(get_optional_user),
    token: TenantToken | None = Depends(get_tenant_token),
    tenancy: TenancyService = Depends(get_tenancy),
) -> ResolvedTenant:
    """Dependency that guarantees a resolved, provisioned tenant.

    Raises UnauthorizedException when a presented Bearer token fails
    verification, and a TenantResolutionException subclass when the request
    names no tenant, an unknown one, or one whose schema is not ready. There
    is no fallback tenant.
    """
    tenant = await tenancy.resolver.resolve(token)
    request.state.tenant = tenant
    return tenant


async def tenant_scope(
    tenant: ResolvedTenant = Depends(require_tenant),
    tenancy: TenancyService = Depends(get_tenancy),
) -> AsyncIterator[TenantHandle]:
    """Lend the endpoint a connection bound to the request's tenant."""
    async with tenancy.scopes.scope(tenant) as handle:
        yield handle


async def transactional_tenant_scope(
    tenant: ResolvedTenant = Depends(require_tenant),
    tenancy: TenancyService = Depends(get_tenancy),
) -> AsyncIterator[TenantHandle]:
    """Like tenant_scope, with every statement in one all-or-nothing transaction."""
    async with tenancy.scopes.scope(tenant, transactional=True) as handle:
        yield handle


def require_provisioning_token(
    token: str | None = Header(default=None, alias=PROVISIONING_TOKEN_HEADER),
) -> None:
    """Guard for the endpoints the provisioning collaborator and operators call."""
    if not token:
        raise UnauthorizedException("Provisioning token required")
    if not secrets.compare_digest(token, settings.provisioning_token):
        raise ForbiddenException("Invalid provisioning token")
