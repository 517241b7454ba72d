"""
services/booking/guards.py
Lookups, ownership checks and the audit trail shared by every component
that mutates a booking.
"""

import uuid
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import Forbidden, InvalidStateTransition, NotAssigned, NotFound
from shared.models.models import ActorRole, Booking, BookingAuditLog, BookingStatus, Professional

SYSTEM_ROLE = "system"


def as_uuid(value: Any) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


async def get_booking_or_404(
    session: AsyncSession,
    booking_id: Any,
    for_update: bool = False,
) -> Booking:
    booking = await session.get(Booking, as_uuid(booking_id), with_for_update=for_update)
    if not booking:
        raise NotFound("Booking not found", resource="booking")
    return booking


async def get_professional_or_404(
    session: AsyncSession,
    professional_id: Any,
    for_update: bool = False,
) -> Professional:
    professional = await session.get(Professional, as_uuid(professional_id), with_for_update=for_update)
    if not professional:
        raise NotFound("Professional not found", resource="professional")
    return professional


def ensure_assigned(booking: Booking, professional_id: Any) -> None:
    """The caller must be the professional holding this booking."""
    if booking.professional_id is None:
        raise InvalidStateTransition(
            f"Booking is '{booking.status.value}' and has no assigned professional",
            current_status=booking.status.value,
        )
    if booking.professional_id != as_uuid(professional_id):
        raise NotAssigned()


def ensure_can_view(booking: Booking, actor_id: Any, actor_role: str) -> None:
    """Customers see their own bookings, professionals the ones assigned to them, admins all."""
    if actor_role == ActorRole.ADMIN:
        return
    if actor_role == ActorRole.CUSTOMER and booking.customer_id == as_uuid(actor_id):
        return
    if actor_role == ActorRole.PROFESSIONAL:
        if booking.professional_id == as_uuid(actor_id):
            return
        # Open bookings are visible to professionals deciding whether to accept
        if booking.status == BookingStatus.PENDING and str(actor_id) not in (booking.rejected_by or []):
            return
    raise Forbidden()


def release_professional_lock(professional_id: Any, booking_id: Any):
    """
    Compare-and-set release: only clears the lock if this booking still holds it.
    """
    return (
        update(Professional)
        .where(
            Professional.id == as_uuid(professional_id),
            Professional.current_booking_id == as_uuid(booking_id),
        )
        .values(current_booking_id=None, current_booking_accepted_at=None, is_available=True)
        .execution_options(synchronize_session=False)
    )


def log_status_change(
    session: AsyncSession,
    booking: Booking,
    from_status: Optional[str],
    to_status: str,
    actor_id: Any = None,
    actor_role: Optional[str] = None,
    reason: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> None:
    """Append an immutable audit log entry for every status change."""
    session.add(
        BookingAuditLog(
            booking_id=booking.id,
            from_status=from_status,
            to_status=to_status,
            actor_id=as_uuid(actor_id) if actor_id else None,
            actor_role=getattr(actor_role, "value", actor_role),
            reason=reason,
            audit_metadata=metadata,
        )
    )
