"""FastAPI middleware that picks the tenant token for each request."""

import logging

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.config import settings
from src.exceptions import UnauthorizedException
from src.modules.tenancy.auth import bearer_token, user_from_token
from src.modules.tenancy.constants import EXCLUDED_ROUTES
from src.modules.tenancy.resolver import select_tenant_token

logger = logging.getLogger(__name__)


class TenantContextMiddleware(BaseHTTPMiddleware):
    """Selects the request's tenant token and stores it in request state.

    The token comes from the authenticated tenant claim, else the tenant
    header, else the subdomain. For excluded routes (health, docs, internal
    endpoints) no token is selected, and neither is one when a presented
    Bearer token fails verification.

    Resolution against the schema registry does not happen here: the
    ``require_tenant`` dependency resolves the token, so routes that never
    touch tenant data pay nothing and resolution errors surface through the
    normal exception handlers.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        request.state.tenant_token = None

        # Skip tenant extraction for excluded routes
        if any(path.startswith(route) for route in EXCLUDED_ROUTES):
            return await call_next(request)

        claim = None
        token = bearer_token(request)
        if token is not None:
            try:
                user = user_from_token(token)
            except UnauthorizedException:
                # No fallback to the header: require_tenant rejects the request
                logger.debug("Bearer token rejected; no tenant selected for %s", path)
                return await call_next(request)
            request.state.user = user
            claim = user.tenant_id

        request.state.tenant_token = select_tenant_token(
            claim,
            request.headers.get(settings.tenant_header),
            request.headers.get("host"),
            settings.tenant_base_domain,
        )
        return await call_next(request)
