"""
tasks/dispatch_tasks.py
Periodic dispatch housekeeping.

Celery workers are synchronous, so each run builds its own async engine
and Redis client, drives the BookingService on a fresh event loop, and
disposes of both before returning.
"""

import asyncio
import logging
from typing import List

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.database import build_engine
from config.redis_client import RedisCache
from config.settings import settings
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _expire_stale_pending() -> List[str]:
    from services.booking.service import BookingService

    engine = build_engine(settings.DATABASE_URL)
    redis = aioredis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)
    try:
        factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
        service = BookingService(factory, RedisCache(redis), config=settings)
        return await service.expire_stale_pending()
    finally:
        await redis.aclose()
        await engine.dispose()


@celery_app.task
def expire_stale_pending_bookings():
    """
    Beat task: runs every 5 minutes.
    Cancels bookings pending past PENDING_NO_MATCH_TIMEOUT_MINUTES that still
    have no eligible professional, when PENDING_NO_MATCH_POLICY is auto_cancel.
    """
    if settings.PENDING_NO_MATCH_POLICY != "auto_cancel":
        return []
    cancelled = asyncio.run(_expire_stale_pending())
    logger.info(f"Pending sweep cancelled {len(cancelled)} bookings")
    return cancelled
