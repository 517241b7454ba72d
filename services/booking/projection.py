"""
services/booking/projection.py
Role-shaped views of a booking.

Every handler returns bookings through project_booking(); which sections a
caller sees is decided by the VISIBILITY table below, not by the handlers.
"""

from datetime import timedelta
from typing import Callable, Dict

from config.settings import settings
from shared.models.models import ActorRole, Booking
from shared.utils.clock import ensure_utc


def _core(b: Booking) -> dict:
    return {
        "id": b.id,
        "booking_number": b.booking_number,
        "status": b.status.value,
        "service_id": b.service_id,
        "customer_id": b.customer_id,
        "professional_id": b.professional_id,
        "scheduled_at": ensure_utc(b.scheduled_at),
        "is_emergency": b.is_emergency,
        "description": b.description,
        "created_at": ensure_utc(b.created_at),
        "accepted_at": ensure_utc(b.accepted_at),
        "completed_at": ensure_utc(b.completed_at),
        "cancelled_at": ensure_utc(b.cancelled_at),
        "cancellation_reason": b.cancellation_reason,
        "cancelled_by_role": b.cancelled_by_role,
    }


def _location(b: Booking) -> dict:
    return {"location": {"latitude": b.latitude, "longitude": b.longitude, "address": b.address}}


def _pricing(b: Booking) -> dict:
    return {
        "pricing": {
            "service_amount": b.service_amount,
            "emergency_fee": b.emergency_fee,
            "additional_charges": list(b.additional_charges or []),
            "total_amount": b.total_amount,
            "payment_status": b.payment_status.value,
        }
    }


def _payout(b: Booking) -> dict:
    return {
        "payout": {
            "platform_commission": b.platform_commission,
            "professional_payout": b.professional_payout,
        }
    }


def tracking_view(b: Booking) -> dict:
    location = None
    if b.last_known_latitude is not None and b.last_known_longitude is not None:
        location = {
            "latitude": b.last_known_latitude,
            "longitude": b.last_known_longitude,
            "accuracy": b.last_known_accuracy,
            "heading": b.last_known_heading,
            "speed": b.last_known_speed,
            "updated_at": ensure_utc(b.last_location_at),
        }
    return {
        "is_active": b.tracking_active,
        "professional_location": location,
        "distance_km": b.distance_km,
        "eta_minutes": b.eta_minutes,
        "eta_overridden_at": ensure_utc(b.eta_overridden_at),
        "initial_distance_km": b.initial_distance_km,
        "initial_eta_minutes": b.initial_eta_minutes,
        "started_at": ensure_utc(b.started_at),
        "arrived_at": ensure_utc(b.arrived_at),
        "ended_at": ensure_utc(b.tracking_ended_at),
        "total_service_minutes": b.total_service_minutes,
    }


def _tracking(b: Booking) -> dict:
    return {"tracking": tracking_view(b)}


def _feedback(b: Booking) -> dict:
    rating = None
    if b.rating_score is not None:
        rating = {"score": b.rating_score, "review": b.rating_review, "rated_at": ensure_utc(b.rated_at)}
    return {"rating": rating, "rescheduling_history": list(b.rescheduling_history or [])}


def _verification_status(b: Booking) -> dict:
    sent_at = ensure_utc(b.verification_sent_at)
    return {
        "verification": {
            "issued": b.verification_session_id is not None,
            "sent_at": sent_at,
            "expires_at": sent_at + timedelta(minutes=settings.VERIFICATION_EXPIRY_MINUTES) if sent_at else None,
            "attempts_remaining": max(0, settings.VERIFICATION_MAX_ATTEMPTS - (b.verification_attempts or 0)),
        }
    }


def _internals(b: Booking) -> dict:
    return {
        "internal": {
            "verification_session_id": b.verification_session_id,
            "verification_attempts": b.verification_attempts,
            "verification_reserved_at": ensure_utc(b.verification_reserved_at),
            "rejected_by": list(b.rejected_by or []),
            "cancelled_by_id": b.cancelled_by_id,
        }
    }


SECTIONS: Dict[str, Callable[[Booking], dict]] = {
    "core": _core,
    "location": _location,
    "pricing": _pricing,
    "payout": _payout,
    "tracking": _tracking,
    "feedback": _feedback,
    "verification": _verification_status,
    "internal": _internals,
}

VISIBILITY = {
    ActorRole.CUSTOMER: ("core", "location", "pricing", "tracking", "feedback", "verification"),
    ActorRole.PROFESSIONAL: ("core", "location", "pricing", "payout", "tracking", "feedback", "verification"),
    ActorRole.ADMIN: tuple(SECTIONS),
}


def project_booking(booking: Booking, viewer_role) -> dict:
    """Booking DTO for `viewer_role`; unknown roles get the customer view."""
    try:
        sections = VISIBILITY[ActorRole(viewer_role)]
    except ValueError:
        sections = VISIBILITY[ActorRole.CUSTOMER]
    view: dict = {}
    for name in sections:
        view.update(SECTIONS[name](booking))
    return view
