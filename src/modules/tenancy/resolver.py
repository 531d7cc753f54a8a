"""Tenant resolution — turn the request's tenant token into a validated tenant."""

import logging
import re
from dataclasses import dataclass

from src.exceptions import (
    TenantNotProvisionedException,
    TenantNotSpecifiedException,
    TenantSchemaVersionMismatchException,
    TenantUnknownException,
)
from src.modules.tenancy.constants import TENANT_TOKEN_PATTERN
from src.modules.tenancy.registry import SchemaRegistry
from src.modules.tenancy.schemas import ResolvedTenant

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(TENANT_TOKEN_PATTERN)


@dataclass(frozen=True)
class TenantToken:
    """A raw tenant token and the request part it came from."""

    value: str
    source: str = "claim"  # claim | header | subdomain


def subdomain_from_host(host: str | None, base_domain: str) -> str | None:
    """Return ``<sub>`` for a ``<sub>.<base_domain>`` host, otherwise None."""
    if not host:
        return None
    hostname = host.split(":")[0].strip().lower()
    suffix = f".{base_domain.lower()}"
    if not hostname.endswith(suffix):
        return None
    subdomain = hostname[: -len(suffix)]
    if not subdomain or "." in subdomain or subdomain == "www":
        return None
    return subdomain


def select_tenant_token(
    claim: str | None,
    header: str | None,
    host: str | None,
    base_domain: str,
) -> TenantToken | None:
    """Pick the single authoritative tenant token for a request.

    The authenticated identity's claim always wins over the client-supplied
    header so a caller cannot assert an arbitrary tenant; the header wins
    over the subdomain.
    """
    claim = (claim or "").strip()
    header = (header or "").strip()

    if claim:
        if header and header != claim:
            logger.warning(
                "Ignoring tenant header %r: authenticated claim names tenant %r", header, claim
            )
        return TenantToken(claim, "claim")
    if header:
        return TenantToken(header, "header")

    subdomain = subdomain_from_host(host, base_domain)
    if subdomain:
        return TenantToken(subdomain, "subdomain")
    return None


class TenantResolver:
    """Validates tenant tokens against the schema registry.

    Pure lookup: no side effects and safe to call from any number of
    concurrent requests.
    """

    def __init__(self, registry: SchemaRegistry, required_schema_version: int) -> None:
        self.registry = registry
        self.required_schema_version = required_schema_version

    async def resolve(self, raw_tenant_token: TenantToken | str | None) -> ResolvedTenant:
        if isinstance(raw_tenant_token, TenantToken):
            value, source = raw_tenant_token.value, raw_tenant_token.source
        else:
            value, source = raw_tenant_token, "claim"

        value = (value or "").strip()
        if not value:
            raise TenantNotSpecifiedException("No tenant was specified for this request")
        if not _TOKEN_RE.match(value):
            logger.warning("Rejected malformed tenant token from %s", source)
            raise TenantUnknownException("Unknown tenant")

        if source == "subdomain":
            record = await self.registry.lookup_by_subdomain(value)
        else:
            record = await self.registry.lookup(value)

        if record is None:
            logger.warning("Unknown tenant %r (source=%s)", value, source)
            raise TenantUnknownException(f"Unknown tenant: {value}")

        if not record.is_provisioned:
            logger.warning("Tenant %s is not provisioned (state=%s)", record.tenant_id, record.state.value)
            raise TenantNotProvisionedException(
                f"Tenant {record.tenant_id} is not provisioned",
                details=[{"state": record.state.value}],
            )

        if record.schema_version < self.required_schema_version:
            logger.warning(
                "Tenant %s schema version %d is behind required version %d",
                record.tenant_id,
                record.schema_version,
                self.required_schema_version,
            )
            raise TenantSchemaVersionMismatchException(
                f"Tenant {record.tenant_id} schema is at version {record.schema_version}, "
                f"version {self.required_schema_version} is required",
                details=[
                    {
                        "schema_version": record.schema_version,
                        "required_version": self.required_schema_version,
                    }
                ],
            )

        return ResolvedTenant(
            tenant_id=record.tenant_id,
            schema_name=record.schema_name,
            schema_version=record.schema_version,
        )
