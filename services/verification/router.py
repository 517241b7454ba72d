"""
services/verification/router.py
Completion-code endpoints: the professional requests a code for the
customer, then submits what the customer reads back.
"""

from uuid import UUID

from fastapi import APIRouter, Depends

from services.booking.projection import project_booking
from services.booking.service import BookingService, get_booking_service
from shared.middleware.auth import Actor, require_professional
from shared.schemas.schemas import (
    CompletionCodeIssuedResponse,
    CompletionCodeVerifyRequest,
    CompletionResponse,
    ErrorResponse,
    PayoutBreakdownResponse,
)

router = APIRouter(prefix="/bookings", tags=["Completion"])


@router.post(
    "/{booking_id}/completion-code",
    response_model=CompletionCodeIssuedResponse,
    responses={429: {"model": ErrorResponse}, 502: {"model": ErrorResponse}, 504: {"model": ErrorResponse}},
)
async def issue_completion_code(
    booking_id: UUID,
    actor: Actor = Depends(require_professional),
    service: BookingService = Depends(get_booking_service),
):
    """Send a one-time code to the customer's phone. One request per 30 seconds."""
    issued = await service.issue_completion_code(booking_id, actor.id)
    return CompletionCodeIssuedResponse(**issued.as_dict())


@router.post(
    "/{booking_id}/completion-code/verify",
    response_model=CompletionResponse,
    responses={400: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def verify_completion_code(
    booking_id: UUID,
    data: CompletionCodeVerifyRequest,
    actor: Actor = Depends(require_professional),
    service: BookingService = Depends(get_booking_service),
):
    """Complete the booking if the code matches; returns the payout breakdown."""
    booking, payout = await service.verify_completion_code(booking_id, actor.id, data.code)
    return CompletionResponse(
        booking=project_booking(booking, actor.role),
        payout=PayoutBreakdownResponse(**payout.as_dict()),
    )
