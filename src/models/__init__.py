# Import all models so SQLAlchemy metadata is populated for create_all
from src.models.enums import ProvisioningState
from src.models.tenant_schema import TenantSchema

__all__ = [
    "ProvisioningState",
    "TenantSchema",
]
