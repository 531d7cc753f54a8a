"""Domain exception hierarchy for structured error responses.

Tenant resolution failures map to 4xx, pool and reset failures map to
retryable 5xx, and registration-time defects map to 500.
"""

from __future__ import annotations


class AppException(Exception):
    """Base exception for all domain errors.

    Subclasses set ``code``, ``status_code`` and ``retryable`` at the class
    level; callers provide ``message`` and an optional ``details`` list.
    """

    code: str = "APP_ERROR"
    status_code: int = 500
    retryable: bool = False
    # Seconds a client should wait before retrying; None uses the configured default
    retry_after: int | None = None

    def __init__(self, message: str, details: list[dict] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or []


class UnauthorizedException(AppException):
    code = "UNAUTHORIZED"
    status_code = 401


class ForbiddenException(AppException):
    code = "FORBIDDEN"
    status_code = 403


# ── Tenant resolution ────────────────────────────────────────────────────


class TenantResolutionException(AppException):
    """Raised when a request cannot be tied to a usable tenant schema."""

    status_code = 400


class TenantNotSpecifiedException(TenantResolutionException):
    code = "TENANT_NOT_SPECIFIED"
    status_code = 400


class TenantUnknownException(TenantResolutionException):
    code = "TENANT_UNKNOWN"
    status_code = 404


class TenantNotProvisionedException(TenantResolutionException):
    code = "TENANT_NOT_PROVISIONED"
    status_code = 409


class TenantSchemaVersionMismatchException(TenantResolutionException):
    code = "TENANT_SCHEMA_VERSION_MISMATCH"
    status_code = 409


# ── Connection scoping ───────────────────────────────────────────────────


class ConnectionPoolExhaustedException(AppException):
    code = "CONNECTION_POOL_EXHAUSTED"
    status_code = 503
    retryable = True


class ScopeResetFailedException(AppException):
    """The connection could not be returned to a neutral binding and was destroyed."""

    code = "SCOPE_RESET_FAILED"
    status_code = 503
    retryable = True


class LeaseNotBoundException(AppException):
    code = "LEASE_NOT_BOUND"
    status_code = 500


class LeaseTenantMismatchException(AppException):
    code = "LEASE_TENANT_MISMATCH"
    status_code = 500


# ── Statement registration ───────────────────────────────────────────────


class StatementRegistrationException(AppException):
    """A statement was rejected when it was registered, before any request ran it."""

    code = "STATEMENT_REGISTRATION_ERROR"
    status_code = 500


class UnqualifiedSharedReferenceException(StatementRegistrationException):
    code = "UNQUALIFIED_SHARED_REFERENCE"


class HardcodedTenantSchemaException(StatementRegistrationException):
    code = "HARDCODED_TENANT_SCHEMA"


class UndeclaredTableReferenceException(StatementRegistrationException):
    code = "UNDECLARED_TABLE_REFERENCE"


class StatementNotRegisteredException(AppException):
    code = "STATEMENT_NOT_REGISTERED"
    status_code = 500


# ── Storage ──────────────────────────────────────────────────────────────


class StorageException(AppException):
    """A storage error passed through the query façade with a retry classification.

    The façade never retries on its own; callers decide based on ``retryable``
    because some operations are not safely repeatable.
    """

    code = "STORAGE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool,
        status_code: int | None = None,
        sqlstate: str | None = None,
        details: list[dict] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.retryable = retryable
        self.sqlstate = sqlstate
        if status_code is not None:
            self.status_code = status_code
        else:
            self.status_code = 503 if retryable else 500
