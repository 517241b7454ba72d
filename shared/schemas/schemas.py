"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class MessageResponse(BaseSchema):
    message: str


class ErrorBody(BaseSchema):
    model_config = ConfigDict(extra="allow")

    kind: str
    code: str
    message: str


class ErrorResponse(BaseSchema):
    error: ErrorBody


# ── Location ──────────────────────────────────────────────────

class LocationPing(BaseSchema):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = Field(None, ge=0)
    heading: Optional[float] = Field(None, ge=0, le=360)
    speed: Optional[float] = Field(None, ge=0)


class PresenceUpdateRequest(LocationPing):
    is_available: Optional[bool] = None


class ProfessionalPresenceResponse(BaseSchema):
    id: uuid.UUID
    is_available: bool
    is_verified: bool
    latitude: Optional[float]
    longitude: Optional[float]
    location_updated_at: Optional[datetime]
    current_booking_id: Optional[uuid.UUID]


# ── Booking ───────────────────────────────────────────────────

class BookingCreateRequest(BaseSchema):
    service_id: uuid.UUID
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    address: str = Field(..., min_length=5, max_length=500)
    description: Optional[str] = Field(None, max_length=1000)
    scheduled_at: Optional[datetime] = None
    is_emergency: bool = False


class CandidateResponse(BaseSchema):
    professional_id: uuid.UUID
    distance_km: float
    eta_minutes: int


class BookingCreatedResponse(BaseSchema):
    booking: Dict[str, Any]
    dispatch_mode: str
    candidates: List[CandidateResponse]


class BookingCancelRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class BookingRejectRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class BookingRescheduleRequest(BaseSchema):
    scheduled_at: datetime
    reason: Optional[str] = Field(None, max_length=500)


class BookingRateRequest(BaseSchema):
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = Field(None, max_length=1000)


class BookingHistoryResponse(BaseSchema):
    items: List[Dict[str, Any]]
    total: int
    page: int
    page_size: int
    pages: int


class ActiveBookingResponse(BaseSchema):
    booking: Optional[Dict[str, Any]]


class AvailableBookingResponse(BaseSchema):
    booking: Dict[str, Any]
    category: str
    distance_km: float
    eta_minutes: int


# ── Additional charges ────────────────────────────────────────

class AdditionalCharge(BaseSchema):
    description: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)


class AdditionalChargesRequest(BaseSchema):
    charges: List[AdditionalCharge] = Field(..., min_length=1, max_length=20)


# ── Completion verification ───────────────────────────────────

class CompletionCodeIssuedResponse(BaseSchema):
    session_id: str
    sent_at: datetime
    expires_at: datetime
    resend_available_at: datetime


class CompletionCodeVerifyRequest(BaseSchema):
    code: str = Field(..., max_length=12)


class PayoutBreakdownResponse(BaseSchema):
    service_amount: Decimal
    additional_amount: Decimal
    total_amount: Decimal
    platform_commission: Decimal
    professional_payout: Decimal


class CompletionResponse(BaseSchema):
    booking: Dict[str, Any]
    payout: PayoutBreakdownResponse


# ── Tracking ──────────────────────────────────────────────────

class TrackedLocation(BaseSchema):
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    heading: Optional[float] = None
    speed: Optional[float] = None
    updated_at: Optional[datetime] = None


class TrackingResponse(BaseSchema):
    booking_id: uuid.UUID
    status: str
    is_active: bool
    professional_location: Optional[TrackedLocation]
    distance_km: Optional[float]
    eta_minutes: Optional[int]
    eta_overridden_at: Optional[datetime] = None
    initial_distance_km: Optional[float]
    initial_eta_minutes: Optional[int]
    started_at: Optional[datetime]
    arrived_at: Optional[datetime]
    ended_at: Optional[datetime]
    total_service_minutes: Optional[int]


class EtaUpdateRequest(BaseSchema):
    eta_minutes: int = Field(..., gt=0)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
