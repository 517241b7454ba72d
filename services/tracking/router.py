"""
services/tracking/router.py
Live tracking: location pings from the assigned professional, arrival,
the tracking snapshot, and a WebSocket relay of the booking's live topic.
"""

import asyncio
import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder

from config.redis_client import get_redis
from services.booking.projection import project_booking
from services.booking.service import BookingService, get_booking_service
from services.notification.publisher import booking_topic
from shared.errors import DispatchError
from shared.middleware.auth import Actor, authenticate_token, require_any, require_professional
from shared.schemas.schemas import ErrorResponse, EtaUpdateRequest, LocationPing, TrackingResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Tracking"])

WS_POLICY_VIOLATION = 4401


@router.post(
    "/{booking_id}/location",
    response_model=TrackingResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def ingest_location(
    booking_id: UUID,
    data: LocationPing,
    actor: Actor = Depends(require_professional),
    service: BookingService = Depends(get_booking_service),
):
    """GPS ping from the assigned professional while the booking is accepted or in progress."""
    snapshot = await service.ingest_location(booking_id, actor.id, **data.model_dump())
    return TrackingResponse(**snapshot)


@router.post(
    "/{booking_id}/eta",
    response_model=TrackingResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def override_eta(
    booking_id: UUID,
    data: EtaUpdateRequest,
    actor: Actor = Depends(require_professional),
    service: BookingService = Depends(get_booking_service),
):
    """Professional's own ETA estimate; replaced by the computed one on the next ping."""
    snapshot = await service.override_eta(
        booking_id, actor.id, data.eta_minutes, latitude=data.latitude, longitude=data.longitude
    )
    return TrackingResponse(**snapshot)


@router.post("/{booking_id}/arrived", responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}})
async def mark_arrived(
    booking_id: UUID,
    actor: Actor = Depends(require_professional),
    service: BookingService = Depends(get_booking_service),
):
    booking = await service.mark_arrived(booking_id, actor.id)
    return project_booking(booking, actor.role)


@router.get("/{booking_id}/tracking", response_model=TrackingResponse)
async def get_tracking(
    booking_id: UUID,
    actor: Actor = Depends(require_any),
    service: BookingService = Depends(get_booking_service),
):
    snapshot = await service.get_tracking(booking_id, actor.id, actor.role)
    return TrackingResponse(**snapshot)


# ── Live relay ────────────────────────────────────────────────

@router.websocket("/{booking_id}/live")
async def live_tracking(
    websocket: WebSocket,
    booking_id: UUID,
    token: str = Query(...),
    redis=Depends(get_redis),
    service: BookingService = Depends(get_booking_service),
):
    """
    Relay `booking:<id>` events to a participant's socket.
    Starts with the current tracking snapshot; delivery is at-most-once.
    """
    try:
        actor = await authenticate_token(token, redis)
        snapshot = await service.get_tracking(booking_id, actor.id, actor.role)
    except (HTTPException, DispatchError) as e:
        logger.info(f"Live tracking refused for booking {booking_id}: {getattr(e, 'detail', e)}")
        await websocket.close(code=WS_POLICY_VIOLATION)
        return

    await websocket.accept()
    pubsub = redis.pubsub()
    await pubsub.subscribe(booking_topic(booking_id))

    async def _relay() -> None:
        while True:
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if message:
                await websocket.send_text(message["data"])

    await websocket.send_json({"event": "snapshot", "data": jsonable_encoder(snapshot)})
    relay = asyncio.create_task(_relay())
    try:
        # Clients may send keep-alives; nothing inbound is acted on
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await stop_relay(relay, booking_id)
        await pubsub.unsubscribe(booking_topic(booking_id))
        await pubsub.aclose()
        if websocket.client_state.name == "CONNECTED":
            await websocket.close(code=status.WS_1000_NORMAL_CLOSURE)


async def stop_relay(relay: asyncio.Task, booking_id) -> None:
    """Cancel the relay task and collect its outcome so a failed send is logged, not lost."""
    relay.cancel()
    (outcome,) = await asyncio.gather(relay, return_exceptions=True)
    if isinstance(outcome, Exception):
        logger.warning(f"Live relay for booking {booking_id} stopped with an error: {outcome!r}")
