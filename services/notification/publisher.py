"""
services/notification/publisher.py
Fire-and-forget side effects of booking state changes.

Live events go out over Redis pub/sub (at-most-once: a dropped location
update is superseded by the next ping). Push notifications are handed to
Celery. Neither path may fail the request that triggered it, so every
error here is logged and dropped.
"""

import logging
from typing import Any, Optional

from redis.exceptions import RedisError

from config.redis_client import RedisCache
from shared.utils.clock import utcnow

logger = logging.getLogger(__name__)


def booking_topic(booking_id: Any) -> str:
    return f"booking:{booking_id}"


def professional_topic(professional_id: Any) -> str:
    return f"professional:{professional_id}"


class EventPublisher:
    def __init__(self, cache: RedisCache):
        self.cache = cache

    async def publish(self, topic: str, event: str, data: Optional[dict] = None) -> None:
        payload = {"event": event, "data": data or {}, "timestamp": utcnow().isoformat()}
        try:
            receivers = await self.cache.publish(topic, payload)
            logger.debug(f"Published {event} to {topic} ({receivers} subscribers)")
        except (RedisError, OSError) as e:
            logger.warning(f"Publish of {event} to {topic} failed: {e}")

    async def booking_event(self, booking_id: Any, event: str, data: Optional[dict] = None) -> None:
        await self.publish(booking_topic(booking_id), event, {"booking_id": str(booking_id), **(data or {})})

    async def professional_event(self, professional_id: Any, event: str, data: Optional[dict] = None) -> None:
        await self.publish(professional_topic(professional_id), event, data)

    def push(self, fcm_token: Optional[str], title: str, body: str, data: Optional[dict] = None) -> None:
        """Enqueue a push notification. No-op when the recipient has no device token."""
        if not fcm_token:
            return
        from tasks.notification_tasks import send_push_notification

        try:
            send_push_notification.apply_async(
                kwargs={"fcm_token": fcm_token, "title": title, "body": body, "data": data or {}},
                retry=False,
            )
        except Exception as e:
            logger.warning(f"Could not enqueue push notification '{title}': {e}")
