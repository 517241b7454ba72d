"""
config/redis_client.py
Async Redis client for the professional location cache, JWT deny-list
and pub/sub (live tracking channels).
"""

import json
import logging
from typing import Any, Optional
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from config.settings import settings

logger = logging.getLogger(__name__)


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    """Initialize the Redis connection pool."""
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    # Test connection
    await redis_client.ping()


async def close_redis() -> None:
    """Close Redis connection pool."""
    global redis_client
    if redis_client:
        await redis_client.aclose()


def get_redis() -> aioredis.Redis:
    """FastAPI dependency to get Redis client."""
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


def location_key(professional_id: Any) -> str:
    return f"location:{professional_id}"


# ── Cache Helpers ─────────────────────────────────────────────
class RedisCache:
    """Helper class for common Redis caching patterns."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    async def get(self, key: str) -> Optional[Any]:
        value = await self.client.get(key)
        if value:
            return json.loads(value)
        return None

    async def set(self, key: str, value: Any, ttl: int = settings.REDIS_CACHE_TTL) -> None:
        await self.client.setex(key, ttl, json.dumps(value, default=str))

    # ── Professional Location Cache ──────────────────────────
    # The cache is never the source of truth: every Redis failure here
    # is logged and reported as a miss so callers fall back to the DB row.

    async def cache_location(self, professional_id: Any, location: dict) -> None:
        try:
            await self.set(location_key(professional_id), location, ttl=settings.LOCATION_CACHE_TTL)
        except RedisError as e:
            logger.warning(f"Location cache write failed for {professional_id}: {e}")

    async def get_location(self, professional_id: Any) -> Optional[dict]:
        try:
            return await self.get(location_key(professional_id))
        except (RedisError, ValueError) as e:
            logger.warning(f"Location cache read failed for {professional_id}: {e}")
            return None

    async def get_locations(self, professional_ids: list) -> dict:
        """Bulk read for the matching path. Returns {id: location} for cache hits only."""
        if not professional_ids:
            return {}
        try:
            values = await self.client.mget([location_key(pid) for pid in professional_ids])
        except RedisError as e:
            logger.warning(f"Location cache bulk read failed: {e}")
            return {}

        hits = {}
        for pid, raw in zip(professional_ids, values):
            if not raw:
                continue
            try:
                hits[pid] = json.loads(raw)
            except ValueError:
                continue
        return hits

    # ── Pub/Sub ──────────────────────────────────────────────
    async def publish(self, channel: str, payload: dict) -> int:
        """Publish a JSON payload. Returns the number of subscribers reached."""
        return await self.client.publish(channel, json.dumps(payload, default=str))

    # ── JWT Deny List ─────────────────────────────────────────
    async def revoke_token(self, jti: str, ttl_seconds: int) -> None:
        """Add JWT ID to deny list until it expires."""
        await self.client.setex(f"jwt_revoked:{jti}", ttl_seconds, "1")

    async def is_token_revoked(self, jti: str) -> bool:
        return await self.client.exists(f"jwt_revoked:{jti}") == 1
