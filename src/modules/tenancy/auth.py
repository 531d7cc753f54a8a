"""JWT authentication dependency for FastAPI.

Validates Bearer tokens from the Authorization header and extracts the
caller's identity, including the tenant claim that the tenant resolver
treats as the authoritative tenant token. Issuing tokens belongs to the
authentication provider; this module only verifies them.
"""

import logging
from dataclasses import dataclass

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from src.config import settings
from src.exceptions import UnauthorizedException

logger = logging.getLogger(__name__)

# FastAPI security scheme: extracts Bearer token from Authorization header
_bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthenticatedUser:
    """Represents the authenticated user extracted from a JWT token."""

    id: str
    tenant_id: str | None = None
    email: str | None = None
    role: str = "MEMBER"


def _decode_token(token: str) -> dict:
    """Decode and validate a JWT token. Raises UnauthorizedException on failure."""
    try:
        return jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as exc:
        logger.warning("JWT validation failed: %s", exc)
        raise UnauthorizedException("Invalid or expired token") from exc


def user_from_token(token: str) -> AuthenticatedUser:
    payload = _decode_token(token)
    try:
        subject = str(payload["sub"])
    except KeyError as exc:
        raise UnauthorizedException("Token is missing required claims") from exc

    tenant_id = payload.get(settings.tenant_claim)
    return AuthenticatedUser(
        id=subject,
        tenant_id=str(tenant_id) if tenant_id is not None else None,
        email=payload.get("email"),
        role=payload.get("role", "MEMBER"),
    )


def bearer_token(request: Request) -> str | None:
    """Raw Bearer token from the Authorization header, if present."""
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_optional_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> AuthenticatedUser | None:
    """The caller's identity when a Bearer token was presented, else None.

    A presented token that fails verification raises UnauthorizedException;
    it never degrades the request to an anonymous one.
    """
    if credentials is None:
        return None

    user = getattr(request.state, "user", None)
    if user is None:
        user = user_from_token(credentials.credentials)
        request.state.user = user
    return user
