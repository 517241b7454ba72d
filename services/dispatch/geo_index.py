"""
services/dispatch/geo_index.py
"Who is within radius R of point P, offers capabilities C, and is free now?"

The durable professional rows are narrowed with a bounding-box prefilter in
SQL; the Redis location cache (written on every ping, 5 minute TTL) then
overrides the durable coordinates where present, and the exact haversine
distance decides membership and order.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.redis_client import RedisCache
from shared.models.models import Professional
from shared.utils.geo import bounding_box, eta_minutes, haversine_km, round_distance

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    professional_id: uuid.UUID
    distance_km: float
    eta_minutes: int
    fcm_token: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "professional_id": str(self.professional_id),
            "distance_km": self.distance_km,
            "eta_minutes": self.eta_minutes,
        }


def has_capabilities(professional: Professional, required: Iterable[str]) -> bool:
    offered = {str(s) for s in (professional.specializations or [])}
    return {str(r) for r in required} <= offered


class GeoIndex:
    def __init__(self, cache: RedisCache, speed_kmh: float):
        self.cache = cache
        self.speed_kmh = speed_kmh

    async def query(
        self,
        session: AsyncSession,
        latitude: float,
        longitude: float,
        radius_km: float,
        required_capabilities: Iterable[str] = (),
        exclude: Iterable = (),
    ) -> List[Candidate]:
        """
        Eligible professionals within `radius_km`, nearest first.
        Ties on distance are broken by professional id so results are deterministic.
        """
        required = [str(c) for c in required_capabilities]
        excluded = {str(e) for e in exclude}

        query = select(Professional).where(
            Professional.is_available == True,  # noqa: E712
            Professional.is_verified == True,  # noqa: E712
            Professional.current_booking_id.is_(None),
            Professional.latitude.is_not(None),
            Professional.longitude.is_not(None),
        )
        min_lat, max_lat, min_lng, max_lng = bounding_box(latitude, longitude, radius_km)
        query = query.where(Professional.latitude.between(min_lat, max_lat))
        # Boxes that wrap the antimeridian fall back to the exact check only
        if min_lng >= -180 and max_lng <= 180:
            query = query.where(Professional.longitude.between(min_lng, max_lng))

        result = await session.execute(query)
        professionals = [
            p for p in result.scalars().all()
            if str(p.id) not in excluded and has_capabilities(p, required)
        ]
        if not professionals:
            return []

        cached = await self.cache.get_locations([str(p.id) for p in professionals])

        candidates = []
        for p in professionals:
            loc = cached.get(str(p.id))
            if loc and loc.get("latitude") is not None and loc.get("longitude") is not None:
                lat, lng = float(loc["latitude"]), float(loc["longitude"])
            else:
                lat, lng = p.latitude, p.longitude

            distance = haversine_km(latitude, longitude, lat, lng)
            if distance > radius_km:
                continue
            candidates.append((
                distance,
                Candidate(
                    professional_id=p.id,
                    distance_km=round_distance(distance),
                    eta_minutes=eta_minutes(distance, self.speed_kmh),
                    fcm_token=p.fcm_token,
                ),
            ))

        candidates.sort(key=lambda pair: (pair[0], str(pair[1].professional_id)))
        ranked = [c for _, c in candidates]
        logger.debug(f"GeoIndex query ({latitude}, {longitude}) r={radius_km}km -> {len(ranked)} candidates")
        return ranked
