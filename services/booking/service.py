"""
services/booking/service.py
BookingService: the single entry point the HTTP layer and background tasks
use. Wires GeoIndex, DispatchMatcher, BookingStateMachine, LocationTracker
and CompletionVerifier over one session factory, cache and clock.
"""

import logging
import random
import string
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Iterable, List, Optional, Tuple

from fastapi import Depends
from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from config.database import get_session_factory, run_with_timeout, transaction
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.booking.guards import (
    as_uuid,
    ensure_assigned,
    ensure_can_view,
    get_booking_or_404,
    get_professional_or_404,
    log_status_change,
)
from services.booking.state_machine import BookingStateMachine
from services.dispatch.geo_index import Candidate, GeoIndex
from services.dispatch.matcher import AvailableBooking, DispatchMatcher
from services.notification.publisher import EventPublisher
from services.payout.calculator import PayoutBreakdown, additional_total, to_money
from services.tracking.tracker import LocationTracker, validate_coordinates
from services.verification.channel import CodeChannel, get_code_channel
from services.verification.verifier import CompletionVerifier, IssuedCode
from shared.errors import (
    AlreadyRated,
    Conflict,
    Forbidden,
    InvalidStateTransition,
    NotFound,
    ValidationError,
)
from shared.models.models import (
    ActorRole,
    Booking,
    BookingStatus,
    Customer,
    Professional,
    Service,
)
from shared.utils.clock import ensure_utc, get_clock, utcnow

logger = logging.getLogger(__name__)

ACTIVE_STATES = {
    ActorRole.CUSTOMER: (BookingStatus.PENDING, BookingStatus.ACCEPTED, BookingStatus.IN_PROGRESS),
    ActorRole.PROFESSIONAL: (BookingStatus.ACCEPTED, BookingStatus.IN_PROGRESS),
}

RESCHEDULABLE_STATES = (BookingStatus.PENDING, BookingStatus.ACCEPTED)


def generate_booking_number(now: datetime) -> str:
    """Human-readable booking number like SB-2024-X7K9M."""
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=5))
    return f"SB-{now.year}-{suffix}"


class BookingService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        cache: RedisCache,
        channel: Optional[CodeChannel] = None,
        config=settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.config = config
        self.clock = clock

        self.publisher = EventPublisher(cache)
        self.geo_index = GeoIndex(cache, config.ASSUMED_SPEED_KMH)
        self.matcher = DispatchMatcher(self.geo_index, config)
        self.tracker = LocationTracker(session_factory, cache, self.publisher, config, clock)
        self.state_machine = BookingStateMachine(
            session_factory, self.publisher, self.tracker, self.matcher, config, clock
        )
        self.verifier = (
            CompletionVerifier(session_factory, channel, self.state_machine, self.publisher, config, clock)
            if channel is not None
            else None
        )

    @property
    def timeout(self) -> float:
        return self.config.DATABASE_STATEMENT_TIMEOUT_SECONDS

    # ── Create ────────────────────────────────────────────────

    def _resolve_schedule(self, scheduled_at: Optional[datetime], is_emergency: bool, now: datetime) -> datetime:
        if is_emergency:
            return now
        if scheduled_at is None:
            raise ValidationError("scheduled_at is required for non-emergency bookings", field="scheduled_at")

        scheduled_at = ensure_utc(scheduled_at)
        earliest = now + timedelta(minutes=self.config.BOOKING_MIN_LEAD_MINUTES)
        latest = now + timedelta(days=self.config.BOOKING_MAX_ADVANCE_DAYS)
        if scheduled_at < earliest:
            raise ValidationError(
                f"Bookings must be scheduled at least {self.config.BOOKING_MIN_LEAD_MINUTES} minutes ahead",
                field="scheduled_at",
            )
        if scheduled_at > latest:
            raise ValidationError(
                f"Bookings can be scheduled at most {self.config.BOOKING_MAX_ADVANCE_DAYS} days ahead",
                field="scheduled_at",
            )
        return scheduled_at

    async def create_booking(
        self,
        customer_id: Any,
        service_id: Any,
        latitude: float,
        longitude: float,
        address: str,
        scheduled_at: Optional[datetime] = None,
        is_emergency: bool = False,
        description: Optional[str] = None,
    ) -> Tuple[Booking, List[Candidate]]:
        """
        Validate and persist a pending booking, then dispatch it.

        In broadcast mode every candidate is notified and the first to accept
        wins. In auto_assign mode the nearest candidate is assigned directly,
        falling through the ranking on conflicts.
        """
        validate_coordinates(latitude, longitude)
        if not address or not address.strip():
            raise ValidationError("Address is required", field="address")
        now = self.clock()
        scheduled = self._resolve_schedule(scheduled_at, is_emergency, now)

        async def _create():
            async with transaction(self.session_factory) as session:
                customer = await session.get(Customer, as_uuid(customer_id))
                if not customer or not customer.is_active:
                    raise NotFound("Customer not found", resource="customer")
                service = await session.get(Service, as_uuid(service_id))
                if not service or not service.is_active:
                    raise NotFound("Service not found", resource="service")

                service_amount = to_money(service.base_price)
                emergency_fee = to_money(self.config.EMERGENCY_FEE if is_emergency else 0)
                booking = Booking(
                    booking_number=generate_booking_number(now),
                    customer_id=customer.id,
                    service_id=service.id,
                    status=BookingStatus.PENDING,
                    latitude=float(latitude),
                    longitude=float(longitude),
                    address=address.strip(),
                    description=description,
                    scheduled_at=scheduled,
                    is_emergency=is_emergency,
                    service_amount=service_amount + emergency_fee,
                    emergency_fee=emergency_fee,
                    additional_charges=[],
                    total_amount=service_amount + emergency_fee,
                    rejected_by=[],
                    rescheduling_history=[],
                    verification_attempts=0,
                    created_at=now,
                    updated_at=now,
                )
                session.add(booking)
                await session.flush()
                log_status_change(
                    session, booking, None, BookingStatus.PENDING.value, customer.id, ActorRole.CUSTOMER
                )
                candidates = await self.matcher.candidates_for(session, booking, service.category.value)
                return booking, candidates, service

        booking, candidates, service = await run_with_timeout(_create(), self.timeout)
        logger.info(
            f"Booking {booking.booking_number} created ({service.category.value}, "
            f"emergency={is_emergency}); {len(candidates)} candidates",
            extra={"booking_id": booking.id},
        )

        if self.matcher.auto_assign:
            booking = await self._auto_assign(booking, candidates)
        else:
            await self._broadcast(booking, service, candidates)
        return booking, candidates

    async def _broadcast(self, booking: Booking, service: Service, candidates: Iterable[Candidate]) -> None:
        for candidate in candidates:
            await self.publisher.professional_event(
                candidate.professional_id,
                "new_booking_request",
                {
                    "booking_id": str(booking.id),
                    "category": service.category.value,
                    "is_emergency": booking.is_emergency,
                    **candidate.as_dict(),
                },
            )
            self.publisher.push(
                candidate.fcm_token,
                "Emergency request nearby" if booking.is_emergency else "New booking request",
                f"{service.name} - {candidate.distance_km} km away",
                {"booking_id": str(booking.id), "type": "new_booking_request"},
            )

    async def _auto_assign(self, booking: Booking, candidates: Iterable[Candidate]) -> Booking:
        for candidate in candidates:
            try:
                return await self.state_machine.accept(booking.id, candidate.professional_id)
            except Conflict as e:
                logger.info(
                    f"Auto-assign skipped professional {candidate.professional_id}: {e.code}",
                    extra={"booking_id": booking.id},
                )
                if e.code == "AlreadyAssigned":
                    break
        return await self.get_booking_raw(booking.id)

    # ── Lifecycle (delegates) ─────────────────────────────────

    async def accept(self, booking_id: Any, professional_id: Any) -> Booking:
        return await self.state_machine.accept(booking_id, professional_id)

    async def start(self, booking_id: Any, professional_id: Any) -> Booking:
        return await self.state_machine.start(booking_id, professional_id)

    async def cancel(self, booking_id: Any, actor_id: Any, actor_role: str, reason: Optional[str] = None) -> Booking:
        return await self.state_machine.cancel(booking_id, actor_id, actor_role, reason)

    async def reject(self, booking_id: Any, professional_id: Any, reason: Optional[str] = None) -> Booking:
        booking, remaining = await self.state_machine.reject(booking_id, professional_id, reason)
        if booking.status == BookingStatus.PENDING and self.matcher.auto_assign:
            booking = await self._auto_assign(booking, remaining)
        return booking

    async def mark_arrived(self, booking_id: Any, professional_id: Any) -> Booking:
        return await self.tracker.mark_arrived(booking_id, professional_id)

    async def ingest_location(self, booking_id: Any, professional_id: Any, **ping) -> dict:
        return await self.tracker.ingest(booking_id, professional_id, **ping)

    async def override_eta(self, booking_id: Any, professional_id: Any, eta_minutes: int, **coordinates) -> dict:
        return await self.tracker.override_eta(booking_id, professional_id, eta_minutes, **coordinates)

    async def update_presence(self, professional_id: Any, **ping):
        return await self.tracker.update_presence(professional_id, **ping)

    async def issue_completion_code(self, booking_id: Any, professional_id: Any) -> IssuedCode:
        return await self._require_verifier().issue(booking_id, professional_id)

    async def verify_completion_code(
        self, booking_id: Any, professional_id: Any, code: Any
    ) -> Tuple[Booking, PayoutBreakdown]:
        return await self._require_verifier().verify(booking_id, professional_id, code)

    def _require_verifier(self) -> CompletionVerifier:
        if self.verifier is None:
            raise RuntimeError("BookingService was created without a code channel")
        return self.verifier

    # ── Additional charges ────────────────────────────────────

    async def add_additional_charges(self, booking_id: Any, professional_id: Any, charges: List[dict]) -> Booking:
        """Assigned professional adds parts/labour on site; total_amount follows."""
        if not charges:
            raise ValidationError("At least one charge is required", field="charges")
        cleaned = []
        for charge in charges:
            description = str(charge.get("description") or "").strip()
            amount = to_money(charge.get("amount", 0))
            if not description or amount <= 0:
                raise ValidationError("Each charge needs a description and a positive amount", field="charges")
            cleaned.append({"description": description, "amount": str(amount)})

        async def _add() -> Booking:
            async with transaction(self.session_factory) as session:
                booking = await get_booking_or_404(session, booking_id, for_update=True)
                ensure_assigned(booking, professional_id)
                if booking.status != BookingStatus.IN_PROGRESS:
                    raise InvalidStateTransition(
                        "Additional charges can only be added while the service is in progress",
                        current_status=booking.status.value,
                    )
                booking.additional_charges = list(booking.additional_charges or []) + cleaned
                booking.total_amount = to_money(
                    Decimal(booking.service_amount) + additional_total(booking.additional_charges)
                )
                return booking

        booking = await run_with_timeout(_add(), self.timeout)
        await self.publisher.booking_event(
            booking.id,
            "charges_updated",
            {"additional_charges": booking.additional_charges, "total_amount": str(booking.total_amount)},
        )
        return booking

    # ── Reschedule ────────────────────────────────────────────

    async def reschedule_booking(
        self,
        booking_id: Any,
        customer_id: Any,
        scheduled_at: datetime,
        reason: Optional[str] = None,
    ) -> Booking:
        """
        Move a pending or accepted booking to a new time. The new time must
        fall inside the normal scheduling window; every move is kept in
        rescheduling_history and the assigned professional is told.
        """
        now = self.clock()
        new_time = self._resolve_schedule(scheduled_at, False, now)

        async def _reschedule():
            async with transaction(self.session_factory) as session:
                booking = await get_booking_or_404(session, booking_id, for_update=True)
                if booking.customer_id != as_uuid(customer_id):
                    raise Forbidden("You can only reschedule your own bookings")
                if booking.status not in RESCHEDULABLE_STATES:
                    raise InvalidStateTransition(
                        f"Cannot reschedule a booking that is '{booking.status.value}'",
                        current_status=booking.status.value,
                    )
                if booking.is_emergency:
                    raise InvalidStateTransition(
                        "Emergency bookings cannot be rescheduled", current_status=booking.status.value
                    )
                old_time = ensure_utc(booking.scheduled_at)
                if old_time == new_time:
                    raise ValidationError("Booking is already scheduled for that time", field="scheduled_at")

                booking.scheduled_at = new_time
                booking.rescheduling_history = list(booking.rescheduling_history or []) + [{
                    "old_scheduled_at": old_time.isoformat(),
                    "new_scheduled_at": new_time.isoformat(),
                    "rescheduled_by": str(customer_id),
                    "rescheduled_at": now.isoformat(),
                    "reason": reason,
                }]
                professional = (
                    await session.get(Professional, booking.professional_id) if booking.professional_id else None
                )
                return booking, professional.fcm_token if professional else None

        booking, professional_token = await run_with_timeout(_reschedule(), self.timeout)
        logger.info(
            f"Booking {booking.booking_number} rescheduled to {new_time.isoformat()}",
            extra={"booking_id": booking.id},
        )

        data = {"scheduled_at": new_time.isoformat(), "reason": reason}
        await self.publisher.booking_event(booking.id, "booking_rescheduled", data)
        if booking.professional_id:
            await self.publisher.professional_event(
                booking.professional_id, "booking_rescheduled", {"booking_id": str(booking.id), **data}
            )
            self.publisher.push(
                professional_token,
                "Booking rescheduled",
                f"Booking {booking.booking_number} moved to {new_time:%d %b %H:%M} UTC",
                {"booking_id": str(booking.id), "type": "booking_rescheduled"},
            )
        return booking

    # ── Rating ────────────────────────────────────────────────

    async def rate_booking(
        self,
        booking_id: Any,
        customer_id: Any,
        score: int,
        review: Optional[str] = None,
    ) -> Booking:
        """Customer rates a completed booking once; the professional's average follows."""
        if isinstance(score, bool) or not isinstance(score, int) or not 1 <= score <= 5:
            raise ValidationError("Rating must be a whole number from 1 to 5", field="rating")
        review = (review or "").strip() or None
        now = self.clock()

        async def _rate() -> Booking:
            async with transaction(self.session_factory) as session:
                booking = await get_booking_or_404(session, booking_id, for_update=True)
                if booking.customer_id != as_uuid(customer_id):
                    raise Forbidden("You can only rate your own bookings")
                if booking.status != BookingStatus.COMPLETED:
                    raise InvalidStateTransition(
                        "Only completed bookings can be rated", current_status=booking.status.value
                    )
                if booking.rating_score is not None:
                    raise AlreadyRated()

                booking.rating_score = score
                booking.rating_review = review
                booking.rated_at = now
                await session.flush()

                avg, count = (await session.execute(
                    select(func.avg(Booking.rating_score), func.count(Booking.rating_score)).where(
                        Booking.professional_id == booking.professional_id,
                        Booking.rating_score.is_not(None),
                    )
                )).one()
                await session.execute(
                    update(Professional)
                    .where(Professional.id == booking.professional_id)
                    .values(rating_avg=to_money(avg or 0), rating_count=count)
                    .execution_options(synchronize_session=False)
                )
                return booking

        booking = await run_with_timeout(_rate(), self.timeout)
        logger.info(f"Booking {booking.booking_number} rated {score}/5", extra={"booking_id": booking.id})
        await self.publisher.professional_event(
            booking.professional_id, "booking_rated", {"booking_id": str(booking.id), "rating": score}
        )
        return booking

    # ── Reads ─────────────────────────────────────────────────

    async def get_booking_raw(self, booking_id: Any) -> Booking:
        async def _read() -> Booking:
            async with transaction(self.session_factory) as session:
                return await get_booking_or_404(session, booking_id)

        return await run_with_timeout(_read(), self.timeout)

    async def get_booking(self, booking_id: Any, actor_id: Any, actor_role: str) -> Booking:
        booking = await self.get_booking_raw(booking_id)
        ensure_can_view(booking, actor_id, actor_role)
        return booking

    async def get_active_booking(self, actor_id: Any, actor_role: str) -> Optional[Booking]:
        """The caller's current booking: open ones for customers, assigned ones for professionals."""
        role = ActorRole(actor_role)
        if role not in ACTIVE_STATES:
            raise Forbidden("Only customers and professionals have an active booking")

        owner = Booking.customer_id if role == ActorRole.CUSTOMER else Booking.professional_id

        async def _read() -> Optional[Booking]:
            async with transaction(self.session_factory) as session:
                result = await session.execute(
                    select(Booking)
                    .where(and_(owner == as_uuid(actor_id), Booking.status.in_(ACTIVE_STATES[role])))
                    .order_by(Booking.created_at.desc())
                    .limit(1)
                )
                return result.scalar_one_or_none()

        return await run_with_timeout(_read(), self.timeout)

    async def get_booking_history(
        self,
        actor_id: Any,
        actor_role: str,
        status: Optional[str] = None,
        page: int = 1,
        page_size: int = 10,
    ) -> Tuple[List[Booking], int]:
        """
        One page of the caller's bookings, newest first, plus the total.
        Customers see the bookings they made, professionals the ones
        assigned to them, admins every booking.
        """
        if page < 1:
            raise ValidationError("page must be 1 or more", field="page")
        if not 1 <= page_size <= self.config.BOOKING_HISTORY_MAX_PAGE_SIZE:
            raise ValidationError(
                f"page_size must be between 1 and {self.config.BOOKING_HISTORY_MAX_PAGE_SIZE}",
                field="page_size",
            )

        filters = []
        role = ActorRole(actor_role)
        if role == ActorRole.CUSTOMER:
            filters.append(Booking.customer_id == as_uuid(actor_id))
        elif role == ActorRole.PROFESSIONAL:
            filters.append(Booking.professional_id == as_uuid(actor_id))
        if status:
            try:
                filters.append(Booking.status == BookingStatus(status.lower()))
            except ValueError:
                raise ValidationError(f"Unknown booking status '{status}'", field="status")

        async def _read() -> Tuple[List[Booking], int]:
            async with transaction(self.session_factory) as session:
                total = await session.scalar(select(func.count(Booking.id)).where(*filters))
                result = await session.execute(
                    select(Booking)
                    .where(*filters)
                    .order_by(Booking.created_at.desc(), Booking.id)
                    .offset((page - 1) * page_size)
                    .limit(page_size)
                )
                return list(result.scalars().all()), total or 0

        return await run_with_timeout(_read(), self.timeout)

    async def get_tracking(self, booking_id: Any, actor_id: Any, actor_role: str) -> dict:
        return await self.tracker.snapshot(booking_id, actor_id, actor_role)

    async def available_bookings(
        self,
        professional_id: Any,
        radius_km: Optional[float] = None,
        specializations: Optional[Iterable[str]] = None,
    ) -> List[AvailableBooking]:
        async def _read() -> List[AvailableBooking]:
            async with transaction(self.session_factory) as session:
                professional = await get_professional_or_404(session, professional_id)
                location = await self.tracker.last_known_location(professional)
                if not location:
                    raise ValidationError(
                        "Share your location before browsing available bookings", field="location"
                    )
                return await self.matcher.available_bookings(
                    session,
                    professional,
                    float(location["latitude"]),
                    float(location["longitude"]),
                    radius_km,
                    specializations,
                )

        return await run_with_timeout(_read(), self.timeout)

    # ── Pending sweep ─────────────────────────────────────────

    async def expire_stale_pending(self) -> List[str]:
        """
        Apply PENDING_NO_MATCH_POLICY to bookings pending longer than the timeout.

        `keep` leaves them pending. `auto_cancel` cancels the ones that still
        have no eligible candidate. Returns the cancelled booking ids.
        """
        if self.config.PENDING_NO_MATCH_POLICY != "auto_cancel":
            return []

        cutoff = self.clock() - timedelta(minutes=self.config.PENDING_NO_MATCH_TIMEOUT_MINUTES)
        reason = f"No professional accepted within {self.config.PENDING_NO_MATCH_TIMEOUT_MINUTES} minutes"

        cancelled = []
        for booking_id in await self._stale_pending_ids(cutoff):
            if await self.state_machine.expire_unmatched(booking_id, reason) is not None:
                cancelled.append(str(booking_id))

        if cancelled:
            logger.info(f"Auto-cancelled {len(cancelled)} unmatched pending bookings")
        return cancelled

    async def _stale_pending_ids(self, cutoff: datetime) -> List[Any]:
        async def _read() -> List[Any]:
            async with transaction(self.session_factory) as session:
                result = await session.execute(
                    select(Booking.id).where(
                        Booking.status == BookingStatus.PENDING,
                        Booking.created_at < cutoff,
                    )
                )
                return list(result.scalars().all())

        return await run_with_timeout(_read(), self.timeout)


def get_booking_service(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    redis=Depends(get_redis),
    channel: CodeChannel = Depends(get_code_channel),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> BookingService:
    """FastAPI dependency: a BookingService bound to the app's DB, Redis and SMS channel."""
    return BookingService(session_factory, RedisCache(redis), channel, settings, clock)
