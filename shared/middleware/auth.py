"""
shared/middleware/auth.py
FastAPI dependency functions for authentication and authorization.
The JWT is validated here; the booking engine trusts the resulting Actor.
"""

import uuid
from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from config.redis_client import RedisCache, get_redis
from shared.models.models import ActorRole
from shared.utils.security import verify_access_token

security = HTTPBearer(auto_error=False)


class Actor:
    """Authenticated caller: a customer, a professional, or an admin."""

    def __init__(self, payload: dict):
        try:
            self.id: uuid.UUID = uuid.UUID(str(payload["sub"]))
            self.role: ActorRole = ActorRole(payload["role"])
        except (KeyError, ValueError):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Malformed token claims",
                headers={"WWW-Authenticate": "Bearer"},
            )
        self.jti: Optional[str] = payload.get("jti")
        self.expires_at: Optional[float] = payload.get("exp")

    def __repr__(self) -> str:
        return f"<Actor {self.role.value}:{self.id}>"


async def get_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    redis=Depends(get_redis),
) -> Actor:
    """
    Extract and validate JWT from Authorization header.
    Checks deny-list in Redis to handle revoked tokens (logout).
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return await authenticate_token(credentials.credentials, redis)


async def authenticate_token(token: str, redis) -> Actor:
    """Shared by the bearer dependency and the WebSocket handshake (token in query string)."""
    try:
        payload = verify_access_token(token)
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Check if token has been revoked (logged out)
    jti = payload.get("jti")
    if jti and await RedisCache(redis).is_token_revoked(jti):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has been revoked",
        )

    return Actor(payload)


class RoleRequired:
    """Dependency factory for role-based access control."""

    def __init__(self, *roles: ActorRole):
        self.roles = roles

    async def __call__(self, actor: Actor = Depends(get_actor)) -> Actor:
        if actor.role not in self.roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Required role: {[r.value for r in self.roles]}",
            )
        return actor


# Convenience role dependencies
require_customer = RoleRequired(ActorRole.CUSTOMER)
require_professional = RoleRequired(ActorRole.PROFESSIONAL)
require_participant = RoleRequired(ActorRole.CUSTOMER, ActorRole.PROFESSIONAL)
require_any = RoleRequired(ActorRole.CUSTOMER, ActorRole.PROFESSIONAL, ActorRole.ADMIN)
