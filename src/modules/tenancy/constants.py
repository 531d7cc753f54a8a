"""Tenancy module constants for schema-per-tenant isolation."""

# Tenant tokens as they may appear in claims, headers and subdomains
TENANT_TOKEN_PATTERN = r"^[A-Za-z0-9_-]{1,63}$"

# Keys stored on the physical connection (AsyncConnection.info)
CONN_INFO_ID = "connection_id"
CONN_INFO_BOUND_TENANT = "bound_tenant"
CONN_INFO_HISTORY = "binding_history"

# Keep at most this many transitions per physical connection
CONN_HISTORY_LIMIT = 64

# Header the provisioning collaborator authenticates with
PROVISIONING_TOKEN_HEADER = "X-Provisioning-Token"

# Cache configuration
CACHE_PREFIX = "tenancy:registry"
CACHE_TTL_DEFAULT = 300  # seconds

# SQLSTATE classes that indicate a transient failure worth retrying
RETRYABLE_SQLSTATE_PREFIXES = ("08", "53", "57P")
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})

# Routes excluded from tenant token extraction
EXCLUDED_ROUTES = [
    "/health",
    "/api/docs",
    "/api/openapi.json",
    "/api/redoc",
    "/api/v1/internal",
]
