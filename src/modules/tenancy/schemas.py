"""Pydantic schemas for tenant identity, registry records and shared references."""

import uuid
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field

from src.models.enums import ProvisioningState


class SchemaRecord(BaseModel):
    """Registry view of where a tenant's data lives."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    tenant_id: str
    schema_name: str
    state: ProvisioningState
    schema_version: int = 0
    subdomain: str | None = None

    @property
    def is_provisioned(self) -> bool:
        return self.state == ProvisioningState.PROVISIONED


class ResolvedTenant(BaseModel):
    """A tenant identity that passed validation against the schema registry.

    This is the only form of tenant identity the scope manager accepts, and it
    is always passed explicitly down the call chain.
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    schema_name: str
    schema_version: int


class SharedEntityReference(BaseModel):
    """Master-data row referenced by id from a tenant-local row."""

    model_config = ConfigDict(frozen=True)

    shared_schema: str
    table: str
    id: int | uuid.UUID | str

    @property
    def qualified_table(self) -> str:
        return f"{self.shared_schema}.{self.table}"


class DriftReport(BaseModel):
    checked: int
    drifted: list[str] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ProvisionedNotification(BaseModel):
    """Body the provisioning collaborator posts once a tenant schema is ready."""

    schema_name: str = Field(min_length=1, max_length=63, pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    schema_version: int = Field(ge=0)
    subdomain: str | None = Field(default=None, max_length=63)


class PoolStatusResponse(BaseModel):
    size: int
    checked_out: int
    checked_in: int
    overflow: int
    active_leases: int
