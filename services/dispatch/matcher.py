"""
services/dispatch/matcher.py
Matching pending bookings with nearby professionals, in both directions:

- booking -> ranked candidate professionals (used at creation, on reject,
  and by the pending sweep)
- professional -> pending bookings they could take (the "available
  bookings" feed, emergencies first)
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.dispatch.geo_index import Candidate, GeoIndex
from shared.models.models import Booking, BookingStatus, Professional, Service, ServiceCategory
from shared.utils.geo import bounding_box, eta_minutes, haversine_km, round_distance

logger = logging.getLogger(__name__)


@dataclass
class AvailableBooking:
    booking: Booking
    category: str
    distance_km: float
    eta_minutes: int


class DispatchMatcher:
    def __init__(self, geo_index: GeoIndex, config=settings):
        self.geo_index = geo_index
        self.config = config

    def search_radius(self, is_emergency: bool) -> float:
        if is_emergency:
            return self.config.EMERGENCY_SEARCH_RADIUS_KM
        return self.config.SEARCH_RADIUS_KM

    @property
    def auto_assign(self) -> bool:
        return self.config.DISPATCH_MODE == "auto_assign"

    async def candidates_for(
        self,
        session: AsyncSession,
        booking: Booking,
        category: str,
    ) -> List[Candidate]:
        """Eligible professionals for `booking`, excluding anyone who already declined it."""
        return await self.geo_index.query(
            session,
            booking.latitude,
            booking.longitude,
            self.search_radius(booking.is_emergency),
            required_capabilities=[category],
            exclude=booking.rejected_by or [],
        )

    async def available_bookings(
        self,
        session: AsyncSession,
        professional: Professional,
        latitude: float,
        longitude: float,
        radius_km: Optional[float] = None,
        specializations: Optional[Iterable[str]] = None,
    ) -> List[AvailableBooking]:
        """
        Pending bookings near (latitude, longitude) that `professional` is able to take.

        Emergencies are listed first and are visible out to the emergency
        search radius; within each group bookings are ordered by distance.
        """
        radius = min(radius_km or self.config.SEARCH_RADIUS_KM, self.config.MAX_SEARCH_RADIUS_KM)
        emergency_radius = max(radius, self.config.EMERGENCY_SEARCH_RADIUS_KM)

        offered = {str(s) for s in (professional.specializations or [])}
        if specializations:
            offered &= {str(s) for s in specializations}
        categories = [ServiceCategory(c) for c in offered if c in ServiceCategory._value2member_map_]
        if not categories:
            return []

        min_lat, max_lat, min_lng, max_lng = bounding_box(latitude, longitude, emergency_radius)
        query = (
            select(Booking, Service.category)
            .join(Service, Service.id == Booking.service_id)
            .where(
                Booking.status == BookingStatus.PENDING,
                Booking.professional_id.is_(None),
                Service.category.in_(categories),
                Booking.latitude.between(min_lat, max_lat),
            )
        )
        if min_lng >= -180 and max_lng <= 180:
            query = query.where(Booking.longitude.between(min_lng, max_lng))

        result = await session.execute(query)

        matches = []
        for booking, category in result.all():
            if str(professional.id) in (booking.rejected_by or []):
                continue
            distance = haversine_km(latitude, longitude, booking.latitude, booking.longitude)
            limit = emergency_radius if booking.is_emergency else radius
            if distance > limit:
                continue
            matches.append((
                (not booking.is_emergency, distance, booking.created_at),
                AvailableBooking(
                    booking=booking,
                    category=category.value if isinstance(category, ServiceCategory) else str(category),
                    distance_km=round_distance(distance),
                    eta_minutes=eta_minutes(distance, self.config.ASSUMED_SPEED_KMH),
                ),
            ))

        matches.sort(key=lambda pair: pair[0])
        return [m for _, m in matches]
