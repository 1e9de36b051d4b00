"""
FastAPI Dependencies - Authentication and per-request services.

NO DICTIONARIES - All dependencies return typed objects.
"""

from dataclasses import dataclass
from typing import Any
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from structlog import get_logger

from pixelperfect_billing.config import get_settings
from pixelperfect_billing.exceptions import AuthenticationError
from pixelperfect_billing.services.stripe_provider import StripeProvider

logger = get_logger(__name__)

ADMIN_ROLE = "admin"

# Bearer token scheme; missing credentials are handled per route
bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class UserIdentity:
    """Authenticated end user (subject of an auth-provider JWT)."""

    user_id: UUID
    email: str | None = None


@dataclass(frozen=True)
class AdminIdentity:
    """Authenticated support/admin operator."""

    admin_id: str
    email: str | None = None


def decode_token(token: str, secret: str, audience: str | None = None) -> dict[str, Any]:
    """
    Decode and verify an HS256 JWT.

    Raises:
        AuthenticationError: Missing secret, expired or invalid token
    """
    if not secret:
        raise AuthenticationError("token verification is not configured")
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            audience=audience,
            options={"verify_aud": audience is not None},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError(f"invalid token: {exc}") from exc
    return payload


def _identity_from_credentials(
    credentials: HTTPAuthorizationCredentials | None,
) -> UserIdentity:
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("missing bearer token")

    settings = get_settings()
    payload = decode_token(
        credentials.credentials, settings.auth_jwt_secret, settings.auth_jwt_audience
    )
    try:
        user_id = UUID(str(payload["sub"]))
    except (KeyError, ValueError) as exc:
        raise AuthenticationError("token subject is not a user id") from exc

    return UserIdentity(user_id=user_id, email=payload.get("email"))


async def get_optional_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> UserIdentity | None:
    """
    Resolve the caller without raising, for routes that render their own
    UNAUTHORIZED envelope.
    """
    try:
        return _identity_from_credentials(credentials)
    except AuthenticationError as exc:
        logger.warning("user_auth_failed", error=exc.message)
        return None


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> UserIdentity:
    """
    FastAPI dependency requiring a valid user bearer token.

    Raises:
        HTTPException(401): Missing or invalid token
    """
    try:
        return _identity_from_credentials(credentials)
    except AuthenticationError as exc:
        logger.warning("user_auth_failed", error=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


async def require_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> AdminIdentity:
    """
    FastAPI dependency requiring an admin JWT signed with ADMIN_JWT_SECRET.

    Raises:
        HTTPException(401): Missing or invalid token
        HTTPException(403): Token is valid but lacks the admin role
    """
    if credentials is None or not credentials.credentials:
        logger.warning("admin_auth_no_token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = decode_token(credentials.credentials, get_settings().ADMIN_JWT_SECRET)
    except AuthenticationError as exc:
        logger.warning("admin_auth_invalid_token", error=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    if payload.get("role") != ADMIN_ROLE or not payload.get("sub"):
        logger.warning("admin_auth_forbidden", subject=payload.get("sub"))
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )

    return AdminIdentity(admin_id=str(payload["sub"]), email=payload.get("email"))


def get_stripe_provider() -> StripeProvider:
    """Per-request Stripe provider built from current settings."""
    settings = get_settings()
    return StripeProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
        environment=settings.environment,
    )
