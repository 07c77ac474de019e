"""
Auth utilities for the Quiver API.

Validates HS256 bearer JWTs and extracts the caller identity.
Falls back to the X-User-Id header when AUTH_ALLOW_HEADER_FALLBACK is on (tests, local dev).
Nothing here touches storage, so unauthenticated calls are rejected before any read or write.
"""
from dataclasses import dataclass
from typing import Optional
import hashlib
import hmac
import logging

import jwt
from fastapi import Request

from quiver.core.config import settings
from quiver.core.errors import AuthenticationRequiredError, PermissionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthContext:
    """Verified caller identity supplied to every user-facing operation."""
    user_id: str
    email: Optional[str] = None


@dataclass(frozen=True)
class AdminActor:
    actor_id: str  # "admin_key:<hash>"


def verify_jwt(token: str) -> AuthContext:
    """
    Verify a bearer JWT and extract the caller.

    Raises:
        AuthenticationRequiredError: Invalid, expired or unverifiable token
    """
    if not settings.AUTH_JWT_SECRET:
        logger.debug("No AUTH_JWT_SECRET configured, rejecting bearer token")
        raise AuthenticationRequiredError("Token verification unavailable")

    try:
        payload = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationRequiredError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise AuthenticationRequiredError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationRequiredError("No 'sub' claim in token")

    email = payload.get("email")
    return AuthContext(user_id=str(user_id), email=email if isinstance(email, str) else None)


async def get_optional_auth(request: Request) -> Optional[AuthContext]:
    """
    Resolve the caller if present.

    Priority:
    1. Bearer JWT from Authorization header (an invalid token is an error, not anonymous)
    2. X-User-Id / X-User-Email headers when fallback is enabled
    3. None
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return verify_jwt(auth_header[7:].strip())

    if settings.AUTH_ALLOW_HEADER_FALLBACK:
        x_user_id = request.headers.get("X-User-Id", "").strip()
        if x_user_id:
            email = request.headers.get("X-User-Email", "").strip() or None
            return AuthContext(user_id=x_user_id, email=email)

    return None


async def get_current_auth(request: Request) -> AuthContext:
    """
    Require a verified caller.

    Raises:
        AuthenticationRequiredError: Missing authentication
    """
    auth = await get_optional_auth(request)
    if auth is None:
        raise AuthenticationRequiredError("Authentication required")
    return auth


def get_admin_actor(request: Request) -> AdminActor:
    """
    Verify the X-Admin-Key header against ADMIN_KEY.

    Raises:
        AuthenticationRequiredError: Header missing
        PermissionError: Admin access not configured or key mismatch
    """
    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key:
        raise AuthenticationRequiredError("Authentication required")

    expected_key = settings.ADMIN_KEY
    if not expected_key or not hmac.compare_digest(header_key.encode(), expected_key.encode()):
        raise PermissionError("Admin access required")

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"admin_key:{key_hash}")
