"""
tests/test_verification.py
Completion codes: cooldown, expiry, attempt budget, and completion with payout.
"""

import asyncio
from decimal import Decimal

import pytest

from shared.errors import (
    CodeExpired,
    DeliveryFailed,
    InvalidCode,
    InvalidStateTransition,
    MaxAttemptsExceeded,
    NoSessionIssued,
    NotAssigned,
    TooSoon,
    ValidationError,
)
from shared.models.models import BookingStatus
from tests.conftest import add_professional, create_in_progress, create_pending, get_professional


# ── Issue ──────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_issue_sends_code_to_customer(service, channel, customer, plumbing, plumber, clock):
    booking = await create_in_progress(service, customer, plumbing, plumber, clock)

    issued = await service.issue_completion_code(booking.id, plumber.id)

    assert channel.sent == ["9876543210"]
    assert issued.session_id == "VE0001"
    assert (issued.expires_at - issued.sent_at).total_seconds() == 600
    stored = await service.get_booking_raw(booking.id)
    assert stored.verification_session_id == "VE0001"
    assert stored.verification_attempts == 0


@pytest.mark.asyncio
async def test_resend_is_throttled(service, channel, customer, plumbing, plumber, clock):
    booking = await create_in_progress(service, customer, plumbing, plumber, clock)
    await service.issue_completion_code(booking.id, plumber.id)

    clock.advance(seconds=10)
    with pytest.raises(TooSoon) as exc:
        await service.issue_completion_code(booking.id, plumber.id)
    assert exc.value.hints["retry_after_seconds"] == 20
    assert len(channel.sent) == 1

    clock.advance(seconds=21)
    issued = await service.issue_completion_code(booking.id, plumber.id)
    assert issued.session_id == "VE0002"


@pytest.mark.asyncio
async def test_issue_requires_in_progress(service, customer, plumbing, plumber, clock):
    booking = await create_pending(service, customer, plumbing, clock)
    await service.accept(booking.id, plumber.id)

    with pytest.raises(InvalidStateTransition):
        await service.issue_completion_code(booking.id, plumber.id)


@pytest.mark.asyncio
async def test_issue_by_other_professional_is_rejected(service, session_factory, customer, plumbing, plumber, clock):
    other = await add_professional(session_factory, "Other Plumber")
    booking = await create_in_progress(service, customer, plumbing, plumber, clock)

    with pytest.raises(NotAssigned):
        await service.issue_completion_code(booking.id, other.id)


@pytest.mark.asyncio
async def test_failed_delivery_frees_the_send_slot(service, channel, customer, plumbing, plumber, clock):
    booking = await create_in_progress(service, customer, plumbing, plumber, clock)
    channel.send_error = DeliveryFailed()

    with pytest.raises(DeliveryFailed):
        await service.issue_completion_code(booking.id, plumber.id)

    stored = await service.get_booking_raw(booking.id)
    assert stored.verification_sent_at is None
    assert stored.verification_session_id is None
    assert stored.verification_reserved_at is None

    # No cooldown applies after a failed send
    channel.send_error = None
    issued = await service.issue_completion_code(booking.id, plumber.id)
    assert issued.session_id == "VE0001"


@pytest.mark.asyncio
async def test_cancelled_delivery_releases_the_send_slot(service, channel, customer, plumbing, plumber, clock):
    booking = await create_in_progress(service, customer, plumbing, plumber, clock)
    channel.send_error = asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await service.issue_completion_code(booking.id, plumber.id)

    stored = await service.get_booking_raw(booking.id)
    assert stored.verification_reserved_at is None
    assert stored.verification_session_id is None

    channel.send_error = None
    issued = await service.issue_completion_code(booking.id, plumber.id)
    assert issued.session_id == "VE0001"


@pytest.mark.asyncio
async def test_resend_in_flight_does_not_revive_expired_session(service, channel, customer, plumbing, plumber, clock):
    booking = await create_in_progress(service, customer, plumbing, plumber, clock)
    await service.issue_completion_code(booking.id, plumber.id)
    clock.advance(minutes=11)

    seen = []

    async def verify_old_code():
        channel.during_send = None
        try:
            await service.verify_completion_code(booking.id, plumber.id, channel.code)
        except CodeExpired as e:
            seen.append(e)

    channel.during_send = verify_old_code
    issued = await service.issue_completion_code(booking.id, plumber.id)

    assert len(seen) == 1
    assert issued.session_id == "VE0002"
    completed, _ = await service.verify_completion_code(booking.id, plumber.id, channel.code)
    assert completed.status == BookingStatus.COMPLETED


@pytest.mark.asyncio
async def test_resend_in_flight_counts_toward_cooldown(service, channel, customer, plumbing, plumber, clock):
    booking = await create_in_progress(service, customer, plumbing, plumber, clock)
    throttled = []

    async def second_request():
        channel.during_send = None
        try:
            await service.issue_completion_code(booking.id, plumber.id)
        except TooSoon as e:
            throttled.append(e)

    channel.during_send = second_request
    await service.issue_completion_code(booking.id, plumber.id)

    assert len(throttled) == 1
    assert channel.sent == [customer.phone]


# ── Verify ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_two_wrong_codes_then_correct_completes(service, session_factory, channel, customer, plumbing, plumber, clock):
    booking = await create_in_progress(service, customer, plumbing, plumber, clock)
    await service.add_additional_charges(
        booking.id, plumber.id, [{"description": "Washer", "amount": 50}, {"description": "Pipe", "amount": 100}]
    )
    await service.issue_completion_code(booking.id, plumber.id)

    with pytest.raises(InvalidCode) as first:
        await service.verify_completion_code(booking.id, plumber.id, "111111")
    assert first.value.hints["attempts_remaining"] == 2
    with pytest.raises(InvalidCode) as second:
        await service.verify_completion_code(booking.id, plumber.id, "222222")
    assert second.value.hints["attempts_remaining"] == 1

    clock.advance(minutes=5)
    completed, payout = await service.verify_completion_code(booking.id, plumber.id, channel.code)

    assert completed.status == BookingStatus.COMPLETED
    assert completed.tracking_active is False
    assert completed.total_service_minutes == 5
    assert payout.total_amount == Decimal("650.00")
    assert payout.platform_commission == Decimal("97.50")
    assert payout.professional_payout == Decimal("552.50")

    stored = await service.get_booking_raw(booking.id)
    assert stored.professional_payout == Decimal("552.50")
    professional = await get_professional(session_factory, plumber.id)
    assert professional.current_booking_id is None
    assert professional.is_available is True


@pytest.mark.asyncio
async def test_fourth_attempt_exceeds_budget(service, channel, customer, plumbing, plumber, clock):
    booking = await create_in_progress(service, customer, plumbing, plumber, clock)
    await service.issue_completion_code(booking.id, plumber.id)

    for _ in range(3):
        with pytest.raises(InvalidCode):
            await service.verify_completion_code(booking.id, plumber.id, "000000")

    with pytest.raises(MaxAttemptsExceeded):
        await service.verify_completion_code(booking.id, plumber.id, channel.code)
    assert len(channel.checked) == 3


@pytest.mark.asyncio
async def test_new_code_resets_attempts(service, channel, customer, plumbing, plumber, clock):
    booking = await create_in_progress(service, customer, plumbing, plumber, clock)
    await service.issue_completion_code(booking.id, plumber.id)
    for _ in range(3):
        with pytest.raises(InvalidCode):
            await service.verify_completion_code(booking.id, plumber.id, "000000")

    clock.advance(seconds=31)
    await service.issue_completion_code(booking.id, plumber.id)
    completed, _ = await service.verify_completion_code(booking.id, plumber.id, channel.code)
    assert completed.status == BookingStatus.COMPLETED


@pytest.mark.asyncio
async def test_code_expires_after_ten_minutes(service, channel, customer, plumbing, plumber, clock):
    booking = await create_in_progress(service, customer, plumbing, plumber, clock)
    await service.issue_completion_code(booking.id, plumber.id)

    clock.advance(minutes=11)
    with pytest.raises(CodeExpired) as exc:
        await service.verify_completion_code(booking.id, plumber.id, channel.code)
    assert exc.value.code == "Expired"
    assert channel.checked == []


@pytest.mark.asyncio
@pytest.mark.parametrize("code", ["12ab", "123", "1234567", "", None])
async def test_malformed_code_never_reaches_channel(service, channel, customer, plumbing, plumber, clock, code):
    booking = await create_in_progress(service, customer, plumbing, plumber, clock)
    await service.issue_completion_code(booking.id, plumber.id)

    with pytest.raises(ValidationError):
        await service.verify_completion_code(booking.id, plumber.id, code)
    assert channel.checked == []


@pytest.mark.asyncio
async def test_verify_without_issued_code(service, customer, plumbing, plumber, clock):
    booking = await create_in_progress(service, customer, plumbing, plumber, clock)

    with pytest.raises(NoSessionIssued):
        await service.verify_completion_code(booking.id, plumber.id, "123456")


@pytest.mark.asyncio
async def test_completed_booking_cannot_be_verified_again(service, channel, customer, plumbing, plumber, clock):
    booking = await create_in_progress(service, customer, plumbing, plumber, clock)
    await service.issue_completion_code(booking.id, plumber.id)
    await service.verify_completion_code(booking.id, plumber.id, channel.code)

    with pytest.raises(InvalidStateTransition):
        await service.verify_completion_code(booking.id, plumber.id, channel.code)


# ── Additional charges ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_additional_charges_require_in_progress(service, customer, plumbing, plumber, clock):
    booking = await create_pending(service, customer, plumbing, clock)
    await service.accept(booking.id, plumber.id)

    with pytest.raises(InvalidStateTransition):
        await service.add_additional_charges(booking.id, plumber.id, [{"description": "Pipe", "amount": 100}])


@pytest.mark.asyncio
async def test_additional_charges_update_total(service, customer, plumbing, plumber, clock):
    booking = await create_in_progress(service, customer, plumbing, plumber, clock)

    updated = await service.add_additional_charges(
        booking.id, plumber.id, [{"description": "Sealant", "amount": "75.50"}]
    )

    assert updated.total_amount == Decimal("575.50")
    assert updated.additional_charges == [{"description": "Sealant", "amount": "75.50"}]

    with pytest.raises(ValidationError):
        await service.add_additional_charges(booking.id, plumber.id, [{"description": "", "amount": 10}])
