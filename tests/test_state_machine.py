"""
tests/test_state_machine.py
Booking lifecycle transitions and the single-owner assignment lock.
"""

import asyncio

import pytest
from sqlalchemy import select

from services.booking.state_machine import (
    ASSIGNED_STATES,
    TERMINAL_STATES,
    TRANSITIONS,
    can_transition,
)
from shared.errors import (
    AlreadyAssigned,
    CapabilityMismatch,
    Forbidden,
    InvalidStateTransition,
    NotAssigned,
    NotAvailable,
)
from shared.models.models import BookingAuditLog, BookingStatus
from tests.conftest import (
    add_professional,
    create_in_progress,
    create_pending,
    get_professional,
)


# ── Transition table ───────────────────────────────────────────────────────────

def test_terminal_states_have_no_exits():
    assert TERMINAL_STATES == {BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.REJECTED}
    for state in TERMINAL_STATES:
        assert not TRANSITIONS[state]


@pytest.mark.parametrize(
    "current, target",
    [
        (BookingStatus.COMPLETED, BookingStatus.ACCEPTED),
        (BookingStatus.CANCELLED, BookingStatus.PENDING),
        (BookingStatus.PENDING, BookingStatus.IN_PROGRESS),
        (BookingStatus.PENDING, BookingStatus.COMPLETED),
        (BookingStatus.ACCEPTED, BookingStatus.COMPLETED),
        (BookingStatus.IN_PROGRESS, BookingStatus.ACCEPTED),
    ],
)
def test_illegal_edges_are_rejected(current, target):
    assert not can_transition(current, target)


def test_assigned_states_match_lifecycle():
    assert BookingStatus.PENDING not in ASSIGNED_STATES
    assert {BookingStatus.ACCEPTED, BookingStatus.IN_PROGRESS} <= ASSIGNED_STATES


# ── Accept ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_accept_assigns_and_locks_professional(service, session_factory, customer, plumbing, plumber, clock):
    booking = await create_pending(service, customer, plumbing, clock)

    accepted = await service.accept(booking.id, plumber.id)

    assert accepted.status == BookingStatus.ACCEPTED
    assert accepted.professional_id == plumber.id
    assert accepted.tracking_active is True
    assert accepted.initial_distance_km == pytest.approx(5.18, abs=0.01)
    assert accepted.initial_eta_minutes == 10

    professional = await get_professional(session_factory, plumber.id)
    assert professional.current_booking_id == booking.id
    assert professional.is_available is False


@pytest.mark.asyncio
async def test_concurrent_accepts_have_exactly_one_winner(service, session_factory, customer, plumbing, clock):
    professionals = [
        await add_professional(session_factory, f"Plumber {i}") for i in range(4)
    ]
    booking = await create_pending(service, customer, plumbing, clock)

    results = await asyncio.gather(
        *(service.accept(booking.id, p.id) for p in professionals),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 3
    assert all(isinstance(e, AlreadyAssigned) for e in losers)

    winner_id = winners[0].professional_id
    for p in professionals:
        row = await get_professional(session_factory, p.id)
        if p.id == winner_id:
            assert row.current_booking_id == booking.id
            assert row.is_available is False
        else:
            assert row.current_booking_id is None
            assert row.is_available is True


@pytest.mark.asyncio
async def test_professional_cannot_hold_two_bookings(service, customer, plumbing, plumber, clock):
    first = await create_pending(service, customer, plumbing, clock)
    second = await create_pending(service, customer, plumbing, clock)
    await service.accept(first.id, plumber.id)

    with pytest.raises(NotAvailable):
        await service.accept(second.id, plumber.id)

    untouched = await service.get_booking_raw(second.id)
    assert untouched.status == BookingStatus.PENDING
    assert untouched.professional_id is None


@pytest.mark.asyncio
async def test_accept_requires_matching_capability(service, customer, plumbing, electrician, clock):
    booking = await create_pending(service, customer, plumbing, clock)

    with pytest.raises(CapabilityMismatch) as exc:
        await service.accept(booking.id, electrician.id)
    assert exc.value.hints["required_category"] == "plumbing"


@pytest.mark.asyncio
async def test_unavailable_professional_cannot_accept(service, session_factory, customer, plumbing, clock):
    offline = await add_professional(session_factory, "Offline Plumber", is_available=False)
    unverified = await add_professional(session_factory, "New Plumber", is_verified=False)
    booking = await create_pending(service, customer, plumbing, clock)

    with pytest.raises(NotAvailable):
        await service.accept(booking.id, offline.id)
    with pytest.raises(NotAvailable):
        await service.accept(booking.id, unverified.id)


# ── Start ──────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_start_requires_accepted_booking(service, customer, plumbing, plumber, clock):
    booking = await create_pending(service, customer, plumbing, clock)

    with pytest.raises(InvalidStateTransition):
        await service.start(booking.id, plumber.id)


@pytest.mark.asyncio
async def test_only_assigned_professional_can_start(service, session_factory, customer, plumbing, plumber, clock):
    other = await add_professional(session_factory, "Other Plumber")
    booking = await create_pending(service, customer, plumbing, clock)
    await service.accept(booking.id, plumber.id)

    with pytest.raises(NotAssigned):
        await service.start(booking.id, other.id)

    started = await service.start(booking.id, plumber.id)
    assert started.status == BookingStatus.IN_PROGRESS
    assert started.started_at is not None


# ── Cancel ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cancel_accepted_releases_professional(service, session_factory, customer, plumbing, plumber, clock):
    booking = await create_pending(service, customer, plumbing, clock)
    await service.accept(booking.id, plumber.id)

    cancelled = await service.cancel(booking.id, customer.id, "customer", "Changed my mind")

    assert cancelled.status == BookingStatus.CANCELLED
    assert cancelled.professional_id is None
    assert cancelled.cancelled_by_role == "customer"
    assert cancelled.tracking_active is False

    professional = await get_professional(session_factory, plumber.id)
    assert professional.current_booking_id is None
    assert professional.is_available is True


@pytest.mark.asyncio
async def test_cancel_in_progress_records_service_minutes(service, session_factory, customer, plumbing, plumber, clock):
    booking = await create_in_progress(service, customer, plumbing, plumber, clock)
    clock.advance(minutes=42)

    cancelled = await service.cancel(booking.id, plumber.id, "professional", "Part unavailable")

    assert cancelled.status == BookingStatus.CANCELLED
    assert cancelled.total_service_minutes == 42
    professional = await get_professional(session_factory, plumber.id)
    assert professional.current_booking_id is None


@pytest.mark.asyncio
async def test_cancel_authorization(service, session_factory, customer, other_customer, plumbing, plumber, clock):
    other = await add_professional(session_factory, "Other Plumber")
    booking = await create_pending(service, customer, plumbing, clock)
    await service.accept(booking.id, plumber.id)

    with pytest.raises(Forbidden):
        await service.cancel(booking.id, other_customer.id, "customer")
    with pytest.raises(NotAssigned):
        await service.cancel(booking.id, other.id, "professional")

    cancelled = await service.cancel(booking.id, other_customer.id, "admin", "Duplicate booking")
    assert cancelled.status == BookingStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancelled_booking_cannot_be_cancelled_or_accepted(service, customer, plumbing, plumber, clock):
    booking = await create_pending(service, customer, plumbing, clock)
    await service.cancel(booking.id, customer.id, "customer")

    with pytest.raises(InvalidStateTransition):
        await service.cancel(booking.id, customer.id, "customer")
    with pytest.raises(AlreadyAssigned):
        await service.accept(booking.id, plumber.id)


# ── Audit trail ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_every_transition_is_audited(service, session_factory, customer, plumbing, plumber, clock):
    booking = await create_in_progress(service, customer, plumbing, plumber, clock)
    await service.cancel(booking.id, customer.id, "customer", "Running late")

    async with session_factory() as session:
        result = await session.execute(
            select(BookingAuditLog)
            .where(BookingAuditLog.booking_id == booking.id)
            .order_by(BookingAuditLog.created_at, BookingAuditLog.id)
        )
        entries = result.scalars().all()

    transitions = {(e.from_status, e.to_status) for e in entries}
    assert transitions == {
        (None, "pending"),
        ("pending", "accepted"),
        ("accepted", "in_progress"),
        ("in_progress", "cancelled"),
    }
    cancel_entry = next(e for e in entries if e.to_status == "cancelled")
    assert cancel_entry.reason == "Running late"
    assert cancel_entry.audit_metadata == {"professional_id": str(plumber.id)}
