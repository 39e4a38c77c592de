"""
JWT authentication for API endpoints.

Tokens are issued by the hosted auth provider (Supabase style): ``sub``
carries the user id, ``role``/``app_metadata.roles`` carry roles and the
audience is ``authenticated``.
"""

from datetime import datetime, timedelta
from typing import Optional, List
import logging

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from pydantic import BaseModel

from .config import settings
from .exceptions import AuthenticationError, PermissionError

logger = logging.getLogger(__name__)

ACCESS_TOKEN_EXPIRE_MINUTES = 60

security = HTTPBearer(auto_error=False)


class TokenData(BaseModel):
    """Token payload data."""

    user_id: Optional[str] = None
    email: Optional[str] = None
    roles: List[str] = []


class User(BaseModel):
    """Authenticated caller."""

    id: str
    email: Optional[str] = None
    roles: List[str] = []

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles


def create_access_token(
    data: dict, expires_delta: Optional[timedelta] = None
) -> str:
    """Create a signed access token. Used by tests and local tooling."""
    to_encode = data.copy()
    expire = datetime.utcnow() + (
        expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire, "aud": settings.jwt_audience})
    return jwt.encode(
        to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm
    )


def verify_token(token: str) -> Optional[TokenData]:
    """
    Verify and decode a JWT token.

    Returns:
        TokenData if valid, None otherwise
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
        )
    except JWTError as e:
        logger.warning(f"Token verification failed: {e}")
        return None

    sub = payload.get("sub")
    if not sub:
        logger.warning("Token missing subject claim")
        return None

    roles = list(payload.get("app_metadata", {}).get("roles", []))
    if payload.get("role") and payload["role"] not in roles:
        roles.append(payload["role"])

    return TokenData(user_id=str(sub), email=payload.get("email"), roles=roles)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> User:
    """Resolve the current authenticated user from the bearer token."""
    if credentials is None:
        raise AuthenticationError("Not authenticated")

    token_data = verify_token(credentials.credentials)
    if token_data is None:
        raise AuthenticationError("Could not validate credentials")

    return User(id=token_data.user_id, email=token_data.email, roles=token_data.roles)


def require_roles(required_roles: List[str]):
    """Enforce that the current user holds at least one of the specified roles."""

    required_set = set(required_roles)

    async def check(user: User = Depends(get_current_user)) -> User:
        if user.is_admin or set(user.roles) & required_set:
            return user
        raise PermissionError(
            f"Operation requires one of these roles: {required_roles}"
        )

    return check
