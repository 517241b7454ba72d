"""
tasks/notification_tasks.py
Celery tasks for push notification delivery.

Enqueued by services.notification.publisher after a booking state change
has committed. A failed push is retried with backoff and never affects
the booking.
"""

import logging
from typing import Optional

from config.settings import settings
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


# ── Core Delivery Functions ────────────────────────────────────────────────────

def _ensure_firebase_app() -> None:
    import firebase_admin

    if not firebase_admin._apps:
        from firebase_admin import credentials

        cred = credentials.Certificate(settings.FIREBASE_CREDENTIALS_PATH)
        firebase_admin.initialize_app(cred)


def _send_fcm(fcm_token: str, title: str, body: str, data: Optional[dict] = None) -> bool:
    """Send FCM push notification. Returns True on success."""
    try:
        from firebase_admin import messaging

        _ensure_firebase_app()
        message = messaging.Message(
            notification=messaging.Notification(title=title, body=body),
            data={k: str(v) for k, v in (data or {}).items()},
            token=fcm_token,
            android=messaging.AndroidConfig(priority="high"),
            apns=messaging.APNSConfig(
                payload=messaging.APNSPayload(
                    aps=messaging.Aps(badge=1, sound="default")
                )
            ),
        )
        messaging.send(message)
        return True
    except Exception as e:
        logger.warning(f"FCM send failed: {e}")
        return False


# ── Tasks ──────────────────────────────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def send_push_notification(self, fcm_token: str, title: str, body: str, data: Optional[dict] = None):
    """Send a single FCM push notification with retry on failure."""
    success = _send_fcm(fcm_token, title, body, data)
    if not success:
        raise self.retry(countdown=60 * (2 ** self.request.retries))
    return True
