from sqlalchemy import Index, Integer, String
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from src.config import settings
from src.database.base import Base, TimestampMixin
from src.models.enums import ProvisioningState


class TenantSchema(TimestampMixin, Base):
    """One row per tenant in the shared schema: where its data lives and at which version.

    Written by the provisioning collaborator, read by the schema registry.
    """

    __tablename__ = "tenant_schemas"

    tenant_id: Mapped[str] = mapped_column(String(63), primary_key=True)
    schema_name: Mapped[str] = mapped_column(String(63), unique=True, nullable=False)
    state: Mapped[ProvisioningState] = mapped_column(
        SAEnum(ProvisioningState, name="provisioningstate", native_enum=False, length=16),
        nullable=False,
        default=ProvisioningState.MISSING,
    )
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    subdomain: Mapped[str | None] = mapped_column(String(63), unique=True)

    __table_args__ = (
        Index("ix_tenant_schemas_state", "state"),
        {"schema": settings.shared_schema},
    )
