"""
services/verification/verifier.py
One-time code that gates the in_progress -> completed transition.

The code goes to the customer's phone; the professional reads it back from
the customer and submits it. A session lives for 10 minutes and allows 3
wrong attempts; resends are throttled to one every 30 seconds.

External channel calls never run inside a database transaction.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from config.database import run_with_timeout, transaction
from config.settings import settings
from services.booking.guards import ensure_assigned, get_booking_or_404
from services.booking.state_machine import BookingStateMachine
from services.notification.publisher import EventPublisher
from services.payout.calculator import PayoutBreakdown
from services.verification.channel import CodeChannel
from shared.errors import (
    CodeExpired,
    InvalidCode,
    InvalidStateTransition,
    MaxAttemptsExceeded,
    NoSessionIssued,
    TooSoon,
    ValidationError,
)
from shared.models.models import Booking, BookingStatus, Customer
from shared.utils.clock import ensure_utc, utcnow

logger = logging.getLogger(__name__)

CODE_PATTERN = re.compile(r"^\d{4,6}$")


@dataclass
class IssuedCode:
    session_id: str
    sent_at: datetime
    expires_at: datetime
    resend_available_at: datetime

    def as_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "sent_at": self.sent_at,
            "expires_at": self.expires_at,
            "resend_available_at": self.resend_available_at,
        }


def _ensure_in_progress(booking: Booking) -> None:
    if booking.status != BookingStatus.IN_PROGRESS:
        raise InvalidStateTransition(
            "Completion codes are only available while the service is in progress",
            current_status=booking.status.value,
        )


def _last_send(booking: Booking) -> Optional[datetime]:
    """Latest of the live session's send time and any resend still in flight."""
    stamps = [ensure_utc(t) for t in (booking.verification_sent_at, booking.verification_reserved_at) if t]
    return max(stamps) if stamps else None


class CompletionVerifier:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        channel: CodeChannel,
        state_machine: BookingStateMachine,
        publisher: EventPublisher,
        config=settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.channel = channel
        self.state_machine = state_machine
        self.publisher = publisher
        self.config = config
        self.clock = clock

    @property
    def timeout(self) -> float:
        return self.config.DATABASE_STATEMENT_TIMEOUT_SECONDS

    @property
    def expiry(self) -> timedelta:
        return timedelta(minutes=self.config.VERIFICATION_EXPIRY_MINUTES)

    @property
    def cooldown(self) -> timedelta:
        return timedelta(seconds=self.config.VERIFICATION_RESEND_COOLDOWN_SECONDS)

    # ── Issue ─────────────────────────────────────────────────

    async def issue(self, booking_id: Any, professional_id: Any) -> IssuedCode:
        """
        Send a completion code to the customer.

        The send slot is reserved (verification_reserved_at) before the SMS
        goes out, so two concurrent requests cannot both pass the cooldown.
        The live session is only replaced once delivery succeeds; on any
        other outcome, cancellation included, the reservation is released.
        """
        now = self.clock()

        async def _reserve() -> str:
            async with transaction(self.session_factory) as session:
                booking = await get_booking_or_404(session, booking_id, for_update=True)
                ensure_assigned(booking, professional_id)
                _ensure_in_progress(booking)

                last = _last_send(booking)
                if last and now - last < self.cooldown:
                    remaining = self.cooldown - (now - last)
                    wait = max(1, int(remaining.total_seconds() + 0.999))
                    raise TooSoon(
                        f"Please wait {wait} seconds before requesting a new code",
                        retry_after_seconds=wait,
                    )

                booking.verification_reserved_at = now
                customer = await session.get(Customer, booking.customer_id)
                return customer.phone

        phone = await run_with_timeout(_reserve(), self.timeout)

        delivered = False
        try:
            session_id = await self.channel.send(phone)
            delivered = True
        finally:
            if not delivered:
                await run_with_timeout(self._release(booking_id, now), self.timeout)

        async def _store() -> None:
            async with transaction(self.session_factory) as session:
                booking = await get_booking_or_404(session, booking_id, for_update=True)
                booking.verification_session_id = session_id
                booking.verification_sent_at = now
                booking.verification_attempts = 0
                booking.verification_reserved_at = None

        await run_with_timeout(_store(), self.timeout)
        logger.info(f"Completion code issued for booking {booking_id}", extra={"booking_id": booking_id})

        await self.publisher.booking_event(booking_id, "completion_code_sent", {"expires_at": (now + self.expiry).isoformat()})
        return IssuedCode(
            session_id=session_id,
            sent_at=now,
            expires_at=now + self.expiry,
            resend_available_at=now + self.cooldown,
        )

    async def _release(self, booking_id: Any, reserved_at: datetime) -> None:
        async with transaction(self.session_factory) as session:
            booking = await get_booking_or_404(session, booking_id, for_update=True)
            if ensure_utc(booking.verification_reserved_at) == reserved_at:
                booking.verification_reserved_at = None

    # ── Verify ────────────────────────────────────────────────

    async def verify(self, booking_id: Any, professional_id: Any, code: Any) -> Tuple[Booking, PayoutBreakdown]:
        """
        Check `code` and complete the booking on a match.

        Order of checks: code format, session issued, expiry, attempt budget,
        then the channel. A mismatch is counted (and committed) before
        InvalidCode is raised.
        """
        code = str(code).strip() if code is not None else ""
        if not CODE_PATTERN.match(code):
            raise ValidationError("Verification code must be 4 to 6 digits", field="code")

        now = self.clock()
        max_attempts = self.config.VERIFICATION_MAX_ATTEMPTS

        def _ensure_session_usable(booking: Booking) -> None:
            sent_at = ensure_utc(booking.verification_sent_at)
            if not booking.verification_session_id or not sent_at:
                raise NoSessionIssued()
            if now - sent_at > self.expiry:
                raise CodeExpired()
            if booking.verification_attempts >= max_attempts:
                raise MaxAttemptsExceeded(attempts_remaining=0)

        async def _precheck() -> str:
            async with transaction(self.session_factory) as session:
                booking = await get_booking_or_404(session, booking_id)
                ensure_assigned(booking, professional_id)
                _ensure_in_progress(booking)
                _ensure_session_usable(booking)
                customer = await session.get(Customer, booking.customer_id)
                return customer.phone

        phone = await run_with_timeout(_precheck(), self.timeout)
        matched = await self.channel.check(phone, code)

        async def _settle() -> Tuple[Booking, Optional[PayoutBreakdown], Optional[str]]:
            async with transaction(self.session_factory) as session:
                booking = await get_booking_or_404(session, booking_id, for_update=True)
                ensure_assigned(booking, professional_id)
                _ensure_in_progress(booking)
                _ensure_session_usable(booking)

                if not matched:
                    booking.verification_attempts += 1
                    return booking, None, None

                payout = await self.state_machine.complete_locked(session, booking, professional_id, now)
                customer = await session.get(Customer, booking.customer_id)
                return booking, payout, customer.fcm_token if customer else None

        booking, payout, customer_token = await run_with_timeout(_settle(), self.timeout)

        if payout is None:
            remaining = max(0, max_attempts - booking.verification_attempts)
            logger.info(
                f"Wrong completion code for booking {booking.booking_number} ({remaining} attempts left)",
                extra={"booking_id": booking.id},
            )
            raise InvalidCode(
                f"Invalid verification code. {remaining} attempt(s) remaining",
                attempts_remaining=remaining,
            )

        logger.info(
            f"Booking {booking.booking_number} completed; payout {payout.professional_payout}",
            extra={"booking_id": booking.id},
        )
        await self.publisher.booking_event(
            booking.id,
            "booking_completed",
            {"completed_at": now.isoformat(), "total_amount": str(payout.total_amount)},
        )
        self.publisher.push(
            customer_token,
            "Service completed",
            f"Booking {booking.booking_number} is complete. Total: {payout.total_amount}",
            {"booking_id": str(booking.id), "type": "booking_completed"},
        )
        return booking, payout
