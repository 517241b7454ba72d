"""
tests/test_tracking.py
Location pings, distance/ETA refresh, arrival, presence and the tracking view.
"""

import json
from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import RedisError

from shared.errors import Forbidden, InvalidStateTransition, NotAssigned, NotAvailable, ValidationError
from shared.models.models import BookingStatus
from tests.conftest import (
    NEAR,
    add_professional,
    create_in_progress,
    create_pending,
    get_professional,
)

APPROACH = [(12.9450, 77.6150), (12.9560, 77.6050), (12.9660, 77.5980)]


@pytest.mark.asyncio
async def test_approaching_pings_shrink_distance_and_eta(service, customer, plumbing, plumber, clock):
    booking = await create_in_progress(service, customer, plumbing, plumber, clock)

    distances, etas = [], []
    for lat, lng in APPROACH:
        clock.advance(seconds=30)
        snapshot = await service.ingest_location(booking.id, plumber.id, latitude=lat, longitude=lng, speed=8.5)
        distances.append(snapshot["distance_km"])
        etas.append(snapshot["eta_minutes"])

    assert distances == sorted(distances, reverse=True)
    assert len(set(distances)) == 3
    assert etas == sorted(etas, reverse=True)
    assert distances[-1] < 1

    stored = await service.get_booking_raw(booking.id)
    assert stored.last_known_latitude == APPROACH[-1][0]
    assert stored.last_known_speed == 8.5
    assert stored.initial_distance_km == pytest.approx(5.18, abs=0.01)


@pytest.mark.asyncio
async def test_ping_updates_cache_and_durable_location(service, session_factory, redis, customer, plumbing, plumber, clock):
    booking = await create_pending(service, customer, plumbing, clock)
    await service.accept(booking.id, plumber.id)

    await service.ingest_location(booking.id, plumber.id, latitude=12.95, longitude=77.61, accuracy=12.0)

    cached = json.loads(await redis.get(f"location:{plumber.id}"))
    assert cached["latitude"] == 12.95
    assert cached["accuracy"] == 12.0
    assert 0 < await redis.ttl(f"location:{plumber.id}") <= 300

    professional = await get_professional(session_factory, plumber.id)
    assert (professional.latitude, professional.longitude) == (12.95, 77.61)


@pytest.mark.asyncio
async def test_ping_from_unassigned_professional_is_rejected(service, session_factory, customer, plumbing, plumber, clock):
    intruder = await add_professional(session_factory, "Intruder")
    booking = await create_in_progress(service, customer, plumbing, plumber, clock)

    with pytest.raises(NotAssigned):
        await service.ingest_location(booking.id, intruder.id, latitude=12.95, longitude=77.61)


@pytest.mark.asyncio
async def test_ping_rejected_without_assignment_or_after_completion(service, customer, plumbing, plumber, clock):
    booking = await create_pending(service, customer, plumbing, clock)
    with pytest.raises(InvalidStateTransition):
        await service.ingest_location(booking.id, plumber.id, latitude=12.95, longitude=77.61)

    await service.accept(booking.id, plumber.id)
    await service.cancel(booking.id, plumber.id, "professional")
    with pytest.raises(InvalidStateTransition):
        await service.ingest_location(booking.id, plumber.id, latitude=12.95, longitude=77.61)


@pytest.mark.asyncio
@pytest.mark.parametrize("latitude, longitude", [(91, 77.6), (12.9, -181), ("north", 77.6)])
async def test_invalid_coordinates(service, plumber, latitude, longitude):
    with pytest.raises(ValidationError):
        await service.update_presence(plumber.id, latitude=latitude, longitude=longitude)


@pytest.mark.asyncio
async def test_mark_arrived_zeroes_eta(service, customer, plumbing, plumber, clock):
    booking = await create_pending(service, customer, plumbing, clock)
    await service.accept(booking.id, plumber.id)
    with pytest.raises(InvalidStateTransition):
        await service.mark_arrived(booking.id, plumber.id)

    await service.start(booking.id, plumber.id)
    arrived = await service.mark_arrived(booking.id, plumber.id)

    assert arrived.arrived_at is not None
    assert arrived.eta_minutes == 0
    assert arrived.status == BookingStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_ping_survives_redis_outage(service, redis, customer, plumbing, plumber, clock):
    booking = await create_in_progress(service, customer, plumbing, plumber, clock)

    with patch.object(redis, "publish", AsyncMock(side_effect=RedisError("connection refused"))), \
            patch.object(redis, "setex", AsyncMock(side_effect=RedisError("connection refused"))):
        snapshot = await service.ingest_location(booking.id, plumber.id, latitude=12.95, longitude=77.61)

    assert snapshot["professional_location"]["latitude"] == 12.95
    stored = await service.get_booking_raw(booking.id)
    assert stored.last_known_latitude == 12.95
    assert stored.distance_km == snapshot["distance_km"]


# ── ETA override ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_professional_overrides_eta_until_next_ping(service, redis, customer, plumbing, plumber, clock):
    booking = await create_in_progress(service, customer, plumbing, plumber, clock)
    pubsub = redis.pubsub()
    await pubsub.subscribe(f"booking:{booking.id}")
    await pubsub.get_message(timeout=1)

    snapshot = await service.override_eta(booking.id, plumber.id, 25)
    assert snapshot["eta_minutes"] == 25
    assert snapshot["eta_overridden_at"] is not None

    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1)
    event = json.loads(message["data"])
    assert event["event"] == "eta_updated"
    assert event["data"]["eta_minutes"] == 25
    await pubsub.aclose()

    refreshed = await service.ingest_location(booking.id, plumber.id, latitude=12.95, longitude=77.61)
    assert refreshed["eta_overridden_at"] is None
    assert refreshed["eta_minutes"] != 25


@pytest.mark.asyncio
async def test_eta_override_with_coordinates_records_location(service, customer, plumbing, plumber, clock):
    booking = await create_in_progress(service, customer, plumbing, plumber, clock)

    snapshot = await service.override_eta(booking.id, plumber.id, 40, latitude=12.95, longitude=77.61)

    assert snapshot["eta_minutes"] == 40
    assert snapshot["professional_location"]["latitude"] == 12.95


@pytest.mark.asyncio
@pytest.mark.parametrize("eta, coordinates", [(0, {}), (721, {}), (True, {}), (15, {"latitude": 12.95})])
async def test_eta_override_validation(service, customer, plumbing, plumber, clock, eta, coordinates):
    booking = await create_in_progress(service, customer, plumbing, plumber, clock)

    with pytest.raises(ValidationError):
        await service.override_eta(booking.id, plumber.id, eta, **coordinates)


@pytest.mark.asyncio
async def test_eta_override_rules(service, session_factory, customer, plumbing, plumber, clock):
    intruder = await add_professional(session_factory, "Intruder")
    booking = await create_pending(service, customer, plumbing, clock)
    with pytest.raises(InvalidStateTransition):
        await service.override_eta(booking.id, intruder.id, 20)

    await service.accept(booking.id, plumber.id)
    await service.start(booking.id, plumber.id)
    with pytest.raises(NotAssigned):
        await service.override_eta(booking.id, intruder.id, 20)

    await service.mark_arrived(booking.id, plumber.id)
    with pytest.raises(InvalidStateTransition):
        await service.override_eta(booking.id, plumber.id, 20)


# ── Presence ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_presence_updates_location_and_availability(service, session_factory, redis):
    professional = await add_professional(session_factory, "Idle Plumber", location=None, is_available=False)

    updated = await service.update_presence(
        professional.id, latitude=NEAR[0], longitude=NEAR[1], heading=90.0, is_available=True
    )

    assert updated.is_available is True
    assert updated.latitude == NEAR[0]
    assert await redis.exists(f"location:{professional.id}") == 1


@pytest.mark.asyncio
async def test_cannot_go_available_while_holding_booking(service, customer, plumbing, plumber, clock):
    booking = await create_pending(service, customer, plumbing, clock)
    await service.accept(booking.id, plumber.id)

    with pytest.raises(NotAvailable) as exc:
        await service.update_presence(plumber.id, latitude=12.95, longitude=77.61, is_available=True)
    assert exc.value.hints["current_booking_id"] == str(booking.id)

    # A plain location ping is still accepted
    updated = await service.update_presence(plumber.id, latitude=12.95, longitude=77.61)
    assert updated.is_available is False


@pytest.mark.asyncio
async def test_unverified_professional_cannot_go_available(service, session_factory):
    professional = await add_professional(session_factory, "Pending KYC", is_available=False, is_verified=False)

    with pytest.raises(NotAvailable):
        await service.update_presence(professional.id, latitude=NEAR[0], longitude=NEAR[1], is_available=True)


# ── Tracking view ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_tracking_snapshot_visibility(service, customer, other_customer, plumbing, plumber, clock):
    booking = await create_in_progress(service, customer, plumbing, plumber, clock)
    await service.ingest_location(booking.id, plumber.id, latitude=12.95, longitude=77.61)

    snapshot = await service.get_tracking(booking.id, customer.id, "customer")
    assert snapshot["is_active"] is True
    assert snapshot["status"] == "in_progress"
    assert snapshot["professional_location"]["latitude"] == 12.95

    with pytest.raises(Forbidden):
        await service.get_tracking(booking.id, other_customer.id, "customer")
