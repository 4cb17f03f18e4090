"""
Authentication and authorization utilities for the orders service.

Validates signed JWT bearer tokens. Tokens are issued elsewhere; this
service only verifies them.
"""
import logging
from typing import Optional
from jose import ExpiredSignatureError, JWTError, jwt
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

from .config import SECRET_KEY, ALGORITHM
from .exceptions import AuthenticationRequired, AuthorizationDenied, ValidationFailed
from .references import normalize_user_reference

logger = logging.getLogger(__name__)

ADMIN_ROLES = ("admin", "administrator")

# Security scheme for JWT bearer tokens; missing headers are reported by
# get_current_user so they render as 401 in the service's error envelope
security = HTTPBearer(auto_error=False)


class CurrentUser(BaseModel):
    """Current authenticated user information."""
    id: str
    email: str
    role: str = "user"
    name: Optional[str] = None
    token: str


def is_admin(user: CurrentUser) -> bool:
    return user.role in ADMIN_ROLES


def user_reference(user: CurrentUser) -> str:
    """
    The caller's id in canonical reference form.

    Raises:
        ValidationFailed: if the token subject is not a valid reference
    """
    reference = normalize_user_reference(user.id)
    if reference is None:
        logger.warning(f"User ID is not a valid reference: {user.id}")
        raise ValidationFailed("Invalid user ID format")
    return reference


def decode_token(token: str) -> CurrentUser:
    """
    Verify a token and extract the caller's identity.

    The subject may be carried as ``sub``, ``id`` or ``userId``; the raw value
    is kept as-is and normalized by the handlers that need a reference.

    Raises:
        AuthenticationRequired: if the token is invalid, expired or incomplete
    """
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except ExpiredSignatureError:
        raise AuthenticationRequired("Token expired")
    except JWTError as e:
        logger.error(f"JWT validation error: {e}")
        raise AuthenticationRequired("Invalid token")

    user_id = payload.get("sub") or payload.get("id") or payload.get("userId")
    email = payload.get("email")
    if user_id is None or email is None:
        logger.error("Token is missing subject or email claim")
        raise AuthenticationRequired("Invalid token")

    return CurrentUser(
        id=str(user_id),
        email=email,
        role=payload.get("role") or "user",
        name=payload.get("name"),
        token=token,
    )


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> CurrentUser:
    """
    FastAPI dependency to get the current authenticated user from JWT token.

    Args:
        credentials: HTTP Authorization credentials (injected)

    Returns:
        Current authenticated user information

    Raises:
        AuthenticationRequired: 401 if the header is missing or the token is invalid
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationRequired("Authentication required")
    return decode_token(credentials.credentials)


def require_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """
    FastAPI dependency to require admin role.

    Raises:
        AuthorizationDenied: 403 if user is not an admin
    """
    if not is_admin(current_user):
        raise AuthorizationDenied("Admin privileges required")
    return current_user
