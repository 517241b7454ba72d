"""
services/booking/state_machine.py
Booking lifecycle and the assignment lock.

    pending     --accept-->   accepted
    pending     --cancel-->   cancelled
    accepted    --start-->    in_progress
    accepted    --cancel-->   cancelled
    in_progress --complete--> completed   (only via CompletionVerifier)
    in_progress --cancel-->   cancelled

completed, cancelled and rejected are terminal.

Every operation is one transaction. Bookings are locked before
professionals, always. The professional's `current_booking_id` is taken and
released with compare-and-set UPDATEs, so a professional can never hold two
bookings even if a row lock were skipped.
"""

import logging
from datetime import datetime
from typing import Any, Callable, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.database import run_with_timeout, transaction
from config.settings import settings
from services.booking.guards import (
    SYSTEM_ROLE,
    as_uuid,
    ensure_assigned,
    get_booking_or_404,
    get_professional_or_404,
    log_status_change,
    release_professional_lock,
)
from services.dispatch.geo_index import Candidate, has_capabilities
from services.dispatch.matcher import DispatchMatcher
from services.notification.publisher import EventPublisher
from services.payout.calculator import PayoutBreakdown, breakdown
from services.tracking.tracker import LocationTracker, deactivate_tracking, refresh_distance
from shared.errors import (
    AlreadyAssigned,
    CapabilityMismatch,
    Forbidden,
    InvalidStateTransition,
    NotAssigned,
    NotAvailable,
)
from shared.models.models import (
    ActorRole,
    Booking,
    BookingStatus,
    Customer,
    Professional,
    Service,
)
from shared.utils.clock import utcnow

logger = logging.getLogger(__name__)


TRANSITIONS = {
    BookingStatus.PENDING: frozenset({BookingStatus.ACCEPTED, BookingStatus.CANCELLED}),
    BookingStatus.ACCEPTED: frozenset({BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED}),
    BookingStatus.IN_PROGRESS: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.REJECTED: frozenset(),
}

TERMINAL_STATES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)
ASSIGNED_STATES = frozenset({BookingStatus.ACCEPTED, BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED})
LOCK_HOLDING_STATES = (BookingStatus.ACCEPTED, BookingStatus.IN_PROGRESS)


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return BookingStatus(target) in TRANSITIONS[BookingStatus(current)]


def ensure_transition(booking: Booking, target: BookingStatus) -> None:
    if not can_transition(booking.status, target):
        raise InvalidStateTransition(
            f"Cannot move booking from '{booking.status.value}' to '{BookingStatus(target).value}'",
            current_status=booking.status.value,
            requested_status=BookingStatus(target).value,
        )


class BookingStateMachine:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        publisher: EventPublisher,
        tracker: LocationTracker,
        matcher: DispatchMatcher,
        config=settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.publisher = publisher
        self.tracker = tracker
        self.matcher = matcher
        self.config = config
        self.clock = clock

    @property
    def timeout(self) -> float:
        return self.config.DATABASE_STATEMENT_TIMEOUT_SECONDS

    # ── Accept ────────────────────────────────────────────────

    async def accept(self, booking_id: Any, professional_id: Any) -> Booking:
        """
        Linearizable assignment: exactly one professional wins a pending booking.

        Raises AlreadyAssigned, NotAvailable or CapabilityMismatch with no
        partial writes; the transaction wraps both the booking and the
        professional lock.
        """
        booking, customer_token = await run_with_timeout(
            self._accept(booking_id, professional_id), self.timeout
        )
        logger.info(
            f"Booking {booking.booking_number} accepted by professional {professional_id}",
            extra={"booking_id": booking.id},
        )

        await self.publisher.booking_event(
            booking.id,
            "booking_accepted",
            {
                "professional_id": str(booking.professional_id),
                "distance_km": booking.distance_km,
                "eta_minutes": booking.eta_minutes,
            },
        )
        self.publisher.push(
            customer_token,
            "Professional on the way",
            f"Your booking {booking.booking_number} has been accepted."
            + (f" ETA {booking.eta_minutes} min." if booking.eta_minutes is not None else ""),
            {"booking_id": str(booking.id), "type": "booking_accepted"},
        )
        return booking

    async def _accept(self, booking_id: Any, professional_id: Any) -> Tuple[Booking, Optional[str]]:
        async with transaction(self.session_factory) as session:
            booking = await get_booking_or_404(session, booking_id, for_update=True)
            if booking.status != BookingStatus.PENDING or booking.professional_id is not None:
                raise AlreadyAssigned(current_status=booking.status.value)

            professional = await get_professional_or_404(session, professional_id, for_update=True)
            if not professional.is_available or professional.current_booking_id is not None:
                raise NotAvailable()
            if not professional.is_verified:
                raise NotAvailable("Professional is not verified yet")

            service = await session.get(Service, booking.service_id)
            if not has_capabilities(professional, [service.category.value]):
                raise CapabilityMismatch(required_category=service.category.value)

            now = self.clock()
            claimed = await session.execute(
                update(Professional)
                .where(
                    Professional.id == professional.id,
                    Professional.current_booking_id.is_(None),
                    Professional.is_available == True,  # noqa: E712
                )
                .values(current_booking_id=booking.id, current_booking_accepted_at=now, is_available=False)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                raise NotAvailable()

            location = await self.tracker.last_known_location(professional)
            booking.professional_id = professional.id
            booking.status = BookingStatus.ACCEPTED
            booking.accepted_at = now
            booking.tracking_active = True
            if location:
                refresh_distance(booking, location, self.config.ASSUMED_SPEED_KMH)
                booking.initial_distance_km = booking.distance_km
                booking.initial_eta_minutes = booking.eta_minutes

            log_status_change(
                session, booking, BookingStatus.PENDING.value, BookingStatus.ACCEPTED.value,
                professional.id, ActorRole.PROFESSIONAL,
            )
            customer = await session.get(Customer, booking.customer_id)
            return booking, customer.fcm_token if customer else None

    # ── Start ─────────────────────────────────────────────────

    async def start(self, booking_id: Any, professional_id: Any) -> Booking:
        async def _start():
            async with transaction(self.session_factory) as session:
                booking = await get_booking_or_404(session, booking_id, for_update=True)
                ensure_assigned(booking, professional_id)
                ensure_transition(booking, BookingStatus.IN_PROGRESS)

                professional = await get_professional_or_404(session, professional_id)
                now = self.clock()
                booking.status = BookingStatus.IN_PROGRESS
                booking.started_at = now
                booking.tracking_active = True
                refresh_distance(
                    booking,
                    await self.tracker.last_known_location(professional),
                    self.config.ASSUMED_SPEED_KMH,
                )
                log_status_change(
                    session, booking, BookingStatus.ACCEPTED.value, BookingStatus.IN_PROGRESS.value,
                    professional_id, ActorRole.PROFESSIONAL,
                )
                customer = await session.get(Customer, booking.customer_id)
                return booking, customer.fcm_token if customer else None

        booking, customer_token = await run_with_timeout(_start(), self.timeout)
        logger.info(f"Service started for booking {booking.booking_number}", extra={"booking_id": booking.id})

        await self.publisher.booking_event(
            booking.id,
            "service_started",
            {"started_at": booking.started_at.isoformat(), "eta_minutes": booking.eta_minutes},
        )
        self.publisher.push(
            customer_token,
            "Service started",
            f"Your professional has started booking {booking.booking_number}.",
            {"booking_id": str(booking.id), "type": "service_started"},
        )
        return booking

    # ── Cancel ────────────────────────────────────────────────

    async def cancel(
        self,
        booking_id: Any,
        actor_id: Any,
        actor_role: str,
        reason: Optional[str] = None,
    ) -> Booking:
        """
        Cancel from pending, accepted or in_progress. When a professional
        holds the booking, their lock is released in the same transaction.
        """
        async def _cancel():
            async with transaction(self.session_factory) as session:
                booking = await get_booking_or_404(session, booking_id, for_update=True)
                if actor_role == ActorRole.CUSTOMER and str(booking.customer_id) != str(actor_id):
                    raise Forbidden("You can only cancel your own bookings")
                if actor_role == ActorRole.PROFESSIONAL and str(booking.professional_id) != str(actor_id):
                    raise NotAssigned()

                previous_professional_id = await self._terminate(
                    session, booking, actor_id, actor_role, reason
                )
                tokens = await self._party_tokens(session, booking.customer_id, previous_professional_id)
                return booking, previous_professional_id, tokens

        booking, previous_professional_id, tokens = await run_with_timeout(_cancel(), self.timeout)
        logger.info(
            f"Booking {booking.booking_number} cancelled by {getattr(actor_role, 'value', actor_role)}",
            extra={"booking_id": booking.id},
        )
        await self._announce_cancellation(booking, previous_professional_id, tokens)
        return booking

    async def _terminate(
        self,
        session: AsyncSession,
        booking: Booking,
        actor_id: Any,
        actor_role: str,
        reason: Optional[str],
    ) -> Optional[Any]:
        """Move `booking` to cancelled inside the caller's transaction. Returns the released professional id."""
        ensure_transition(booking, BookingStatus.CANCELLED)
        now = self.clock()
        from_status = booking.status
        previous_professional_id = booking.professional_id

        if previous_professional_id is not None and from_status in LOCK_HOLDING_STATES:
            released = await session.execute(
                release_professional_lock(previous_professional_id, booking.id)
            )
            if released.rowcount != 1:
                logger.warning(
                    f"Professional {previous_professional_id} did not hold the lock for booking {booking.id}",
                    extra={"booking_id": booking.id},
                )

        if booking.tracking_active:
            deactivate_tracking(booking, now)

        booking.status = BookingStatus.CANCELLED
        booking.professional_id = None
        booking.cancelled_at = now
        booking.cancelled_by_id = as_uuid(actor_id) if actor_id and actor_role != SYSTEM_ROLE else None
        booking.cancelled_by_role = getattr(actor_role, "value", actor_role)
        booking.cancellation_reason = reason

        log_status_change(
            session, booking, from_status.value, BookingStatus.CANCELLED.value,
            actor_id if actor_role != SYSTEM_ROLE else None, actor_role, reason,
            metadata={"professional_id": str(previous_professional_id)} if previous_professional_id else None,
        )
        return previous_professional_id

    async def _party_tokens(self, session: AsyncSession, customer_id: Any, professional_id: Any) -> dict:
        customer = await session.get(Customer, customer_id)
        professional = await session.get(Professional, professional_id) if professional_id else None
        return {
            "customer": customer.fcm_token if customer else None,
            "professional": professional.fcm_token if professional else None,
        }

    async def _announce_cancellation(self, booking: Booking, previous_professional_id: Any, tokens: dict) -> None:
        data = {"reason": booking.cancellation_reason, "cancelled_by": booking.cancelled_by_role}
        await self.publisher.booking_event(booking.id, "booking_cancelled", data)
        if previous_professional_id:
            await self.publisher.professional_event(
                previous_professional_id, "booking_cancelled", {"booking_id": str(booking.id), **data}
            )

        body = f"Booking {booking.booking_number} has been cancelled."
        payload = {"booking_id": str(booking.id), "type": "booking_cancelled"}
        if booking.cancelled_by_role != ActorRole.CUSTOMER.value:
            self.publisher.push(tokens.get("customer"), "Booking cancelled", body, payload)
        if previous_professional_id and booking.cancelled_by_role != ActorRole.PROFESSIONAL.value:
            self.publisher.push(tokens.get("professional"), "Booking cancelled", body, payload)

    # ── Reject ────────────────────────────────────────────────

    async def reject(
        self,
        booking_id: Any,
        professional_id: Any,
        reason: Optional[str] = None,
    ) -> Tuple[Booking, List[Candidate]]:
        """
        A candidate declines a pending booking. It stays pending for the
        remaining candidates, or is cancelled when nobody else is left.
        """
        async def _reject():
            async with transaction(self.session_factory) as session:
                booking = await get_booking_or_404(session, booking_id, for_update=True)
                if booking.status != BookingStatus.PENDING:
                    if booking.professional_id is not None:
                        raise AlreadyAssigned(current_status=booking.status.value)
                    raise InvalidStateTransition(
                        f"Cannot reject a booking that is '{booking.status.value}'",
                        current_status=booking.status.value,
                    )
                await get_professional_or_404(session, professional_id)

                rejected = list(booking.rejected_by or [])
                if str(professional_id) not in rejected:
                    rejected.append(str(professional_id))
                booking.rejected_by = rejected

                service = await session.get(Service, booking.service_id)
                remaining = await self.matcher.candidates_for(session, booking, service.category.value)

                tokens = {}
                if not remaining:
                    await self._terminate(
                        session, booking, None, SYSTEM_ROLE,
                        "No available professionals could take this booking",
                    )
                    tokens = await self._party_tokens(session, booking.customer_id, None)
                return booking, remaining, tokens

        booking, remaining, tokens = await run_with_timeout(_reject(), self.timeout)
        logger.info(
            f"Professional {professional_id} rejected booking {booking.booking_number}"
            f" ({len(remaining)} candidates remain)",
            extra={"booking_id": booking.id},
        )

        if booking.status == BookingStatus.CANCELLED:
            await self._announce_cancellation(booking, None, tokens)
        else:
            await self.publisher.booking_event(
                booking.id, "booking_rejected", {"remaining_candidates": len(remaining)}
            )
        return booking, remaining

    # ── Expire ────────────────────────────────────────────────

    async def expire_unmatched(self, booking_id: Any, reason: str) -> Optional[Booking]:
        """
        System cancel of a pending booking that still has no eligible candidate.

        The status re-check, the candidate query and the cancel run under one
        booking lock, so a booking accepted meanwhile is left untouched.
        Returns None when nothing was cancelled.
        """
        async def _expire():
            async with transaction(self.session_factory) as session:
                booking = await get_booking_or_404(session, booking_id, for_update=True)
                if booking.status != BookingStatus.PENDING:
                    return None, {}
                service = await session.get(Service, booking.service_id)
                if await self.matcher.candidates_for(session, booking, service.category.value):
                    return None, {}
                await self._terminate(session, booking, None, SYSTEM_ROLE, reason)
                return booking, await self._party_tokens(session, booking.customer_id, None)

        booking, tokens = await run_with_timeout(_expire(), self.timeout)
        if booking is None:
            return None
        logger.info(f"Booking {booking.booking_number} expired unmatched", extra={"booking_id": booking.id})
        await self._announce_cancellation(booking, None, tokens)
        return booking

    # ── Complete ──────────────────────────────────────────────

    async def complete_locked(
        self,
        session: AsyncSession,
        booking: Booking,
        professional_id: Any,
        now: datetime,
    ) -> PayoutBreakdown:
        """in_progress -> completed inside the caller's (the verifier's) transaction."""
        ensure_transition(booking, BookingStatus.COMPLETED)
        payout: PayoutBreakdown = breakdown(
            booking.service_amount,
            booking.additional_charges or [],
            self.config.PLATFORM_COMMISSION_RATE,
        )

        booking.status = BookingStatus.COMPLETED
        booking.completed_at = now
        booking.total_amount = payout.total_amount
        booking.platform_commission = payout.platform_commission
        booking.professional_payout = payout.professional_payout
        deactivate_tracking(booking, now)

        log_status_change(
            session, booking, BookingStatus.IN_PROGRESS.value, BookingStatus.COMPLETED.value,
            professional_id, ActorRole.PROFESSIONAL,
            metadata={"payout": {k: str(v) for k, v in payout.as_dict().items()}},
        )
        released = await session.execute(release_professional_lock(professional_id, booking.id))
        if released.rowcount != 1:
            logger.warning(
                f"Professional {professional_id} did not hold the lock for booking {booking.id}",
                extra={"booking_id": booking.id},
            )
        return payout
