"""
services/booking/router.py
Booking lifecycle endpoints.
States: pending → accepted → in_progress → completed, with cancel from any
non-terminal state. Completion itself lives in services/verification.
"""

import math
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from config.settings import settings
from services.booking.projection import project_booking
from services.booking.service import BookingService, get_booking_service
from shared.middleware.auth import (
    Actor,
    require_any,
    require_customer,
    require_participant,
    require_professional,
)
from shared.schemas.schemas import (
    ActiveBookingResponse,
    AdditionalChargesRequest,
    BookingCancelRequest,
    BookingCreateRequest,
    BookingCreatedResponse,
    BookingHistoryResponse,
    BookingRateRequest,
    BookingRejectRequest,
    BookingRescheduleRequest,
    CandidateResponse,
    ErrorResponse,
)

router = APIRouter(prefix="/bookings", tags=["Bookings"])

CONFLICT_RESPONSES = {
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


# ── Creation ──────────────────────────────────────────────────

@router.post("", response_model=BookingCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    actor: Actor = Depends(require_customer),
    service: BookingService = Depends(get_booking_service),
):
    """
    Create a pending booking and dispatch it to nearby professionals.
    Emergency bookings are scheduled for now, carry the emergency fee, and
    search a wider radius.
    """
    booking, candidates = await service.create_booking(
        customer_id=actor.id,
        service_id=data.service_id,
        latitude=data.latitude,
        longitude=data.longitude,
        address=data.address,
        scheduled_at=data.scheduled_at,
        is_emergency=data.is_emergency,
        description=data.description,
    )
    return BookingCreatedResponse(
        booking=project_booking(booking, actor.role),
        dispatch_mode=settings.DISPATCH_MODE,
        candidates=[
            CandidateResponse(
                professional_id=c.professional_id,
                distance_km=c.distance_km,
                eta_minutes=c.eta_minutes,
            )
            for c in candidates
        ],
    )


# ── Reads ─────────────────────────────────────────────────────

@router.get("/active", response_model=ActiveBookingResponse)
async def get_active_booking(
    actor: Actor = Depends(require_participant),
    service: BookingService = Depends(get_booking_service),
):
    """Customer: latest open booking. Professional: the booking they currently hold."""
    booking = await service.get_active_booking(actor.id, actor.role)
    return ActiveBookingResponse(booking=project_booking(booking, actor.role) if booking else None)


@router.get("/history", response_model=BookingHistoryResponse)
async def get_booking_history(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=settings.BOOKING_HISTORY_MAX_PAGE_SIZE),
    actor: Actor = Depends(require_any),
    service: BookingService = Depends(get_booking_service),
):
    """Caller's bookings, newest first, optionally filtered by status."""
    bookings, total = await service.get_booking_history(actor.id, actor.role, status_filter, page, page_size)
    return BookingHistoryResponse(
        items=[project_booking(b, actor.role) for b in bookings],
        total=total,
        page=page,
        page_size=page_size,
        pages=math.ceil(total / page_size) if total else 0,
    )


@router.get("/{booking_id}", responses=CONFLICT_RESPONSES)
async def get_booking(
    booking_id: UUID,
    actor: Actor = Depends(require_any),
    service: BookingService = Depends(get_booking_service),
):
    booking = await service.get_booking(booking_id, actor.id, actor.role)
    return project_booking(booking, actor.role)


# ── Professional actions ──────────────────────────────────────

@router.post("/{booking_id}/accept", responses=CONFLICT_RESPONSES)
async def accept_booking(
    booking_id: UUID,
    actor: Actor = Depends(require_professional),
    service: BookingService = Depends(get_booking_service),
):
    """First professional to accept wins; everyone else gets 409 AlreadyAssigned."""
    booking = await service.accept(booking_id, actor.id)
    return project_booking(booking, actor.role)


@router.post("/{booking_id}/reject", responses=CONFLICT_RESPONSES)
async def reject_booking(
    booking_id: UUID,
    data: BookingRejectRequest,
    actor: Actor = Depends(require_professional),
    service: BookingService = Depends(get_booking_service),
):
    booking = await service.reject(booking_id, actor.id, data.reason)
    return project_booking(booking, actor.role)


@router.post("/{booking_id}/start", responses=CONFLICT_RESPONSES)
async def start_service(
    booking_id: UUID,
    actor: Actor = Depends(require_professional),
    service: BookingService = Depends(get_booking_service),
):
    booking = await service.start(booking_id, actor.id)
    return project_booking(booking, actor.role)


@router.post("/{booking_id}/charges", responses=CONFLICT_RESPONSES)
async def add_additional_charges(
    booking_id: UUID,
    data: AdditionalChargesRequest,
    actor: Actor = Depends(require_professional),
    service: BookingService = Depends(get_booking_service),
):
    """Parts or extra labour added on site by the assigned professional."""
    booking = await service.add_additional_charges(
        booking_id, actor.id, [c.model_dump() for c in data.charges]
    )
    return project_booking(booking, actor.role)


# ── Customer actions ──────────────────────────────────────────

@router.post("/{booking_id}/reschedule", responses=CONFLICT_RESPONSES)
async def reschedule_booking(
    booking_id: UUID,
    data: BookingRescheduleRequest,
    actor: Actor = Depends(require_customer),
    service: BookingService = Depends(get_booking_service),
):
    """Move a pending or accepted booking to a new time inside the scheduling window."""
    booking = await service.reschedule_booking(booking_id, actor.id, data.scheduled_at, data.reason)
    return project_booking(booking, actor.role)


@router.post("/{booking_id}/rate", responses=CONFLICT_RESPONSES)
async def rate_booking(
    booking_id: UUID,
    data: BookingRateRequest,
    actor: Actor = Depends(require_customer),
    service: BookingService = Depends(get_booking_service),
):
    booking = await service.rate_booking(booking_id, actor.id, data.rating, data.review)
    return project_booking(booking, actor.role)


# ── Cancellation ──────────────────────────────────────────────

@router.post("/{booking_id}/cancel", responses=CONFLICT_RESPONSES)
async def cancel_booking(
    booking_id: UUID,
    data: BookingCancelRequest,
    actor: Actor = Depends(require_any),
    service: BookingService = Depends(get_booking_service),
):
    """
    Customer cancels their own booking, the assigned professional backs
    out, or an admin intervenes. The professional is released immediately.
    """
    booking = await service.cancel(booking_id, actor.id, actor.role, data.reason)
    return project_booking(booking, actor.role)
