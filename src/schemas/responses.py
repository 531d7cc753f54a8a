"""Error envelope schemas shared by every endpoint."""

from typing import Any

from pydantic import BaseModel


class ErrorBody(BaseModel):
    """Structured error body returned inside every error response."""

    code: str
    message: str
    details: list[dict[str, Any]] = []
    retryable: bool = False


class ErrorResponse(BaseModel):
    """Top-level error envelope."""

    error: ErrorBody


# OpenAPI ``responses=`` blocks for routes that resolve a tenant
TENANT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: {"model": ErrorResponse, "description": "No tenant specified"},
    404: {"model": ErrorResponse, "description": "Unknown tenant"},
    409: {"model": ErrorResponse, "description": "Tenant not provisioned or schema version behind"},
    503: {"model": ErrorResponse, "description": "No connection available; retry after Retry-After"},
}

INTERNAL_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: {"model": ErrorResponse, "description": "Provisioning token missing"},
    403: {"model": ErrorResponse, "description": "Provisioning token invalid"},
}
