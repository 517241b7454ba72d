"""
services/tracking/tracker.py
Live location for assigned bookings and professional presence.

Pings are persisted on the booking and on the professional's durable row,
mirrored into the 5 minute Redis location cache, and broadcast to the
booking's pub/sub topic for the customer's live map.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker

from config.database import run_with_timeout, transaction
from config.redis_client import RedisCache
from config.settings import settings
from services.booking.guards import (
    ensure_assigned,
    ensure_can_view,
    get_booking_or_404,
    get_professional_or_404,
)
from services.booking.projection import tracking_view
from services.notification.publisher import EventPublisher
from shared.errors import InvalidStateTransition, NotAvailable, ValidationError
from shared.models.models import Booking, BookingStatus, Customer, Professional
from shared.utils.clock import ensure_utc, utcnow
from shared.utils.geo import distance_and_eta, round_half_up

logger = logging.getLogger(__name__)

TRACKABLE_STATES = (BookingStatus.ACCEPTED, BookingStatus.IN_PROGRESS)


def validate_coordinates(latitude: Any, longitude: Any) -> None:
    try:
        lat, lng = float(latitude), float(longitude)
    except (TypeError, ValueError):
        raise ValidationError("Coordinates must be numbers", field="coordinates")
    if not (-90 <= lat <= 90) or not (-180 <= lng <= 180):
        raise ValidationError(
            "Invalid coordinates: latitude must be within [-90, 90] and longitude within [-180, 180]",
            field="coordinates",
        )


def location_payload(
    latitude: float,
    longitude: float,
    at: datetime,
    accuracy: Optional[float] = None,
    heading: Optional[float] = None,
    speed: Optional[float] = None,
) -> dict:
    return {
        "latitude": latitude,
        "longitude": longitude,
        "accuracy": accuracy,
        "heading": heading,
        "speed": speed,
        "updated_at": at.isoformat(),
    }


def refresh_distance(booking: Booking, location: Optional[dict], speed_kmh: float) -> None:
    """Recompute distance/ETA from `location` to the job site. No-op without a location."""
    if not location:
        return
    distance, eta = distance_and_eta(
        (float(location["latitude"]), float(location["longitude"])),
        (booking.latitude, booking.longitude),
        speed_kmh,
    )
    booking.distance_km = distance
    booking.eta_minutes = eta


def deactivate_tracking(booking: Booking, now: datetime) -> None:
    """Stop tracking and record how long the professional was on the job."""
    booking.tracking_active = False
    booking.tracking_ended_at = now
    started = ensure_utc(booking.started_at)
    if started:
        minutes = (now - started).total_seconds() / 60
        booking.total_service_minutes = int(round_half_up(max(0.0, minutes)))


class LocationTracker:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        cache: RedisCache,
        publisher: EventPublisher,
        config=settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.publisher = publisher
        self.config = config
        self.clock = clock

    @property
    def timeout(self) -> float:
        return self.config.DATABASE_STATEMENT_TIMEOUT_SECONDS

    async def last_known_location(self, professional: Professional) -> Optional[dict]:
        """Cached location if fresh, else the durable row, else None."""
        cached = await self.cache.get_location(str(professional.id))
        if cached and cached.get("latitude") is not None and cached.get("longitude") is not None:
            return cached
        if professional.has_location:
            return location_payload(
                professional.latitude,
                professional.longitude,
                ensure_utc(professional.location_updated_at) or self.clock(),
                professional.location_accuracy,
                professional.location_heading,
                professional.location_speed,
            )
        return None

    # ── Ingest ────────────────────────────────────────────────

    async def ingest(
        self,
        booking_id: Any,
        professional_id: Any,
        latitude: float,
        longitude: float,
        accuracy: Optional[float] = None,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
    ) -> dict:
        validate_coordinates(latitude, longitude)
        now = self.clock()
        location = location_payload(latitude, longitude, now, accuracy, heading, speed)

        async def _ingest() -> dict:
            async with transaction(self.session_factory) as session:
                booking = await get_booking_or_404(session, booking_id, for_update=True)
                ensure_assigned(booking, professional_id)
                if booking.status not in TRACKABLE_STATES:
                    raise InvalidStateTransition(
                        "Location updates are only accepted while the booking is accepted or in progress",
                        current_status=booking.status.value,
                    )

                booking.last_known_latitude = latitude
                booking.last_known_longitude = longitude
                booking.last_known_accuracy = accuracy
                booking.last_known_heading = heading
                booking.last_known_speed = speed
                booking.last_location_at = now
                refresh_distance(booking, location, self.config.ASSUMED_SPEED_KMH)
                booking.eta_overridden_at = None

                await session.execute(
                    update(Professional)
                    .where(Professional.id == booking.professional_id)
                    .values(
                        latitude=latitude,
                        longitude=longitude,
                        location_accuracy=accuracy,
                        location_heading=heading,
                        location_speed=speed,
                        location_updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                return {"booking_id": str(booking.id), "status": booking.status.value, **tracking_view(booking)}

        snapshot = await run_with_timeout(_ingest(), self.timeout)

        await self.cache.cache_location(str(professional_id), location)
        await self.publisher.booking_event(booking_id, "location_updated", snapshot)
        return snapshot

    # ── ETA override ──────────────────────────────────────────

    async def override_eta(
        self,
        booking_id: Any,
        professional_id: Any,
        eta_minutes: int,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> dict:
        """
        The assigned professional replaces the computed ETA (traffic, a
        detour). Optional coordinates are ingested first as a normal ping.
        The override holds until the next location ping recomputes it.
        """
        if isinstance(eta_minutes, bool) or not isinstance(eta_minutes, int):
            raise ValidationError("eta_minutes must be a whole number of minutes", field="eta_minutes")
        if not 0 < eta_minutes <= self.config.ETA_OVERRIDE_MAX_MINUTES:
            raise ValidationError(
                f"eta_minutes must be between 1 and {self.config.ETA_OVERRIDE_MAX_MINUTES}",
                field="eta_minutes",
            )
        if (latitude is None) != (longitude is None):
            raise ValidationError("Send both latitude and longitude, or neither", field="coordinates")

        if latitude is not None:
            await self.ingest(booking_id, professional_id, latitude, longitude)
        now = self.clock()

        async def _override() -> dict:
            async with transaction(self.session_factory) as session:
                booking = await get_booking_or_404(session, booking_id, for_update=True)
                ensure_assigned(booking, professional_id)
                if booking.status not in TRACKABLE_STATES:
                    raise InvalidStateTransition(
                        "ETA can only be updated while the booking is accepted or in progress",
                        current_status=booking.status.value,
                    )
                if booking.arrived_at is not None:
                    raise InvalidStateTransition(
                        "Professional has already arrived", current_status=booking.status.value
                    )
                booking.eta_minutes = eta_minutes
                booking.eta_overridden_at = now
                return {"booking_id": str(booking.id), "status": booking.status.value, **tracking_view(booking)}

        snapshot = await run_with_timeout(_override(), self.timeout)
        logger.info(f"Professional {professional_id} set ETA {eta_minutes} min for booking {booking_id}")
        await self.publisher.booking_event(
            booking_id, "eta_updated", {"eta_minutes": eta_minutes, "updated_at": now.isoformat()}
        )
        return snapshot

    # ── Arrival ───────────────────────────────────────────────

    async def mark_arrived(self, booking_id: Any, professional_id: Any) -> Booking:
        now = self.clock()

        async def _arrive():
            async with transaction(self.session_factory) as session:
                booking = await get_booking_or_404(session, booking_id, for_update=True)
                ensure_assigned(booking, professional_id)
                if booking.status != BookingStatus.IN_PROGRESS:
                    raise InvalidStateTransition(
                        "Start the service before marking arrival",
                        current_status=booking.status.value,
                    )
                booking.arrived_at = now
                booking.eta_minutes = 0
                customer = await session.get(Customer, booking.customer_id)
                return booking, customer.fcm_token if customer else None

        booking, customer_token = await run_with_timeout(_arrive(), self.timeout)
        logger.info(f"Professional {professional_id} arrived for booking {booking.booking_number}")

        await self.publisher.booking_event(
            booking.id, "professional_arrived", {"arrived_at": now.isoformat()}
        )
        self.publisher.push(
            customer_token,
            "Your professional has arrived",
            f"The professional for booking {booking.booking_number} is at your location.",
            {"booking_id": str(booking.id), "type": "professional_arrived"},
        )
        return booking

    # ── Presence ──────────────────────────────────────────────

    async def update_presence(
        self,
        professional_id: Any,
        latitude: float,
        longitude: float,
        accuracy: Optional[float] = None,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
        is_available: Optional[bool] = None,
    ) -> Professional:
        """Idle ping from a professional's app: position and, optionally, availability."""
        validate_coordinates(latitude, longitude)
        now = self.clock()

        async def _update() -> Professional:
            async with transaction(self.session_factory) as session:
                professional = await get_professional_or_404(session, professional_id, for_update=True)
                if is_available:
                    if professional.current_booking_id is not None:
                        raise NotAvailable(
                            "Finish or cancel the current booking before going available",
                            current_booking_id=str(professional.current_booking_id),
                        )
                    if not professional.is_verified:
                        raise NotAvailable("Professional is not verified yet")
                if is_available is not None:
                    professional.is_available = is_available

                professional.latitude = latitude
                professional.longitude = longitude
                professional.location_accuracy = accuracy
                professional.location_heading = heading
                professional.location_speed = speed
                professional.location_updated_at = now
                return professional

        professional = await run_with_timeout(_update(), self.timeout)
        await self.cache.cache_location(
            str(professional.id), location_payload(latitude, longitude, now, accuracy, heading, speed)
        )
        return professional

    # ── Reads ─────────────────────────────────────────────────

    async def snapshot(self, booking_id: Any, actor_id: Any, actor_role: str) -> dict:
        async def _read() -> dict:
            async with transaction(self.session_factory) as session:
                booking = await get_booking_or_404(session, booking_id)
                ensure_can_view(booking, actor_id, actor_role)
                return {"booking_id": str(booking.id), "status": booking.status.value, **tracking_view(booking)}

        return await run_with_timeout(_read(), self.timeout)
