"""
services/auth/router.py
Session endpoints. Tokens are issued by the identity service; this service
can only end one early by deny-listing its jti until it would have expired.
"""

import logging

from fastapi import APIRouter, Depends

from config.redis_client import RedisCache, get_redis
from shared.middleware.auth import Actor, require_any
from shared.schemas.schemas import MessageResponse
from shared.utils.security import get_token_remaining_ttl

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post("/logout", response_model=MessageResponse, summary="Revoke the current access token")
async def logout(
    actor: Actor = Depends(require_any),
    redis=Depends(get_redis),
):
    """Add the caller's JWT to the Redis deny-list; live sockets using it are refused on reconnect."""
    ttl = get_token_remaining_ttl(actor.expires_at)
    if actor.jti and ttl > 0:
        await RedisCache(redis).revoke_token(actor.jti, ttl)
        logger.info(f"Token revoked for {actor!r}")
    return MessageResponse(message="Logged out successfully")
