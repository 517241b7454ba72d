"""
services/dispatch/router.py
Professional-facing dispatch endpoints: presence pings and the nearby
pending-booking feed.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from services.booking.projection import project_booking
from services.booking.service import BookingService, get_booking_service
from shared.middleware.auth import Actor, require_professional
from shared.schemas.schemas import (
    AvailableBookingResponse,
    PresenceUpdateRequest,
    ProfessionalPresenceResponse,
)

router = APIRouter(prefix="/professionals", tags=["Dispatch"])


@router.put("/me/presence", response_model=ProfessionalPresenceResponse)
async def update_presence(
    data: PresenceUpdateRequest,
    actor: Actor = Depends(require_professional),
    service: BookingService = Depends(get_booking_service),
):
    """
    Idle location ping, optionally toggling availability. Going available
    is refused while a booking is held.
    """
    professional = await service.update_presence(actor.id, **data.model_dump())
    return ProfessionalPresenceResponse.model_validate(professional)


@router.get("/me/available-bookings", response_model=List[AvailableBookingResponse])
async def get_available_bookings(
    radius_km: Optional[float] = Query(None, gt=0, le=100),
    specializations: Optional[List[str]] = Query(None),
    actor: Actor = Depends(require_professional),
    service: BookingService = Depends(get_booking_service),
):
    """
    Pending bookings near the professional's last known location.
    Emergencies first, then nearest.
    """
    results = await service.available_bookings(actor.id, radius_km, specializations)
    return [
        AvailableBookingResponse(
            booking=project_booking(r.booking, actor.role),
            category=r.category,
            distance_km=r.distance_km,
            eta_minutes=r.eta_minutes,
        )
        for r in results
    ]
