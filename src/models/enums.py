import enum


class ProvisioningState(str, enum.Enum):
    PROVISIONED = "PROVISIONED"
    MISSING = "MISSING"
    # Tenant still served from the pre-split shared tables; never scoped
    LEGACY = "LEGACY"
