"""
Booking lookups, serialization and the side effects that follow a booking
change (calendar, video, email, WhatsApp).

Side effects never fail the request that triggered them: every integration
call is wrapped and logged.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .booking_tokens import cancel_url, generate_booking_token, reschedule_url
from .emailer import (
    MeetingDetails,
    send_booking_cancellation,
    send_booking_confirmation,
    send_booking_rescheduled,
)
from .evolution import send_user_message
from .google_calendar import (
    create_calendar_event,
    delete_calendar_event,
    has_calendar,
    update_calendar_event_time,
)
from .models import (
    Booking,
    BookingPage,
    BookingStatus,
    EventType,
    MessageDirection,
    TeamMember,
    User,
    VideoProvider,
    WhatsAppMessage,
)
from .utils import format_local, mask_phone
from .video_session import create_video_session, get_video_session

logger = logging.getLogger(__name__)


# ────────────────────────────────────────────────────────────────
# Lookups
# ────────────────────────────────────────────────────────────────

async def load_event_type_context(
    session: AsyncSession, event_type_id: int
) -> tuple[EventType, BookingPage, User]:
    """Event type with its page and the page owner; 404 when any is missing."""
    result = await session.execute(
        select(EventType, BookingPage, User)
        .join(BookingPage, BookingPage.id == EventType.booking_page_id)
        .join(User, User.id == BookingPage.user_id)
        .where(EventType.id == event_type_id)
    )
    row = result.one_or_none()
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event type not found")
    return row[0], row[1], row[2]


async def load_booking_context(
    session: AsyncSession, booking_id: uuid.UUID
) -> tuple[Booking, EventType, BookingPage, User]:
    result = await session.execute(
        select(Booking, EventType, BookingPage, User)
        .join(EventType, EventType.id == Booking.event_type_id)
        .join(BookingPage, BookingPage.id == EventType.booking_page_id)
        .join(User, User.id == BookingPage.user_id)
        .where(Booking.id == booking_id)
    )
    row = result.one_or_none()
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    return row[0], row[1], row[2], row[3]


async def load_owned_booking(
    session: AsyncSession, booking_id: uuid.UUID, user_id: int
) -> tuple[Booking, EventType, BookingPage, User]:
    booking, event_type, page, owner = await load_booking_context(session, booking_id)
    if owner.id != user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    return booking, event_type, page, owner


def parse_booking_id(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")


# ────────────────────────────────────────────────────────────────
# Serialization
# ────────────────────────────────────────────────────────────────

def booking_to_dict(booking: Booking, event_type: Optional[EventType] = None) -> dict:
    data = {
        "id": str(booking.id),
        "eventTypeId": booking.event_type_id,
        "guestName": booking.guest_name,
        "guestEmail": booking.guest_email,
        "guestPhone": booking.guest_phone,
        "startTime": booking.start_time.isoformat(),
        "endTime": booking.end_time.isoformat(),
        "status": booking.status.value,
        "timezone": booking.timezone,
        "notes": booking.notes,
        "formData": booking.form_data,
        "assignedMemberId": booking.assigned_member_id,
        "cancellationReason": booking.cancellation_reason,
        "createdAt": booking.created_at.isoformat() if booking.created_at else None,
    }
    if event_type is not None:
        data["eventType"] = {
            "id": event_type.id,
            "name": event_type.name,
            "duration": event_type.duration,
            "location": event_type.location,
            "color": event_type.color,
        }
    return data


async def meeting_details(
    session: AsyncSession,
    booking: Booking,
    event_type: EventType,
    owner: User,
) -> MeetingDetails:
    video = await get_video_session(session, booking.id)
    host_name = owner.name or owner.email
    if booking.assigned_member_id is not None:
        member = await session.get(TeamMember, booking.assigned_member_id)
        if member is not None:
            host_name = member.name or member.email
    return MeetingDetails(
        booking_id=str(booking.id),
        guest_name=booking.guest_name,
        guest_email=booking.guest_email,
        event_name=event_type.name,
        start_at=booking.start_time,
        end_at=booking.end_time,
        timezone=booking.timezone or owner.timezone,
        location=event_type.location,
        video_link=(video.room_url if video else None) or event_type.video_link,
        host_name=host_name,
    )


# ────────────────────────────────────────────────────────────────
# Side effects
# ────────────────────────────────────────────────────────────────

def issue_booking_tokens(booking: Booking) -> None:
    booking.cancel_token = generate_booking_token(str(booking.id), "cancel")
    booking.reschedule_token = generate_booking_token(str(booking.id), "reschedule")


def booking_links(booking: Booking) -> tuple[Optional[str], Optional[str]]:
    cancel = cancel_url(str(booking.id), booking.cancel_token) if booking.cancel_token else None
    reschedule = reschedule_url(str(booking.id), booking.reschedule_token) if booking.reschedule_token else None
    return cancel, reschedule


async def send_whatsapp_notice(session: AsyncSession, owner: User, booking: Booking, text: str) -> bool:
    """WhatsApp the guest from the owner's instance and record the message."""
    if not booking.guest_phone or not owner.whatsapp_enabled:
        return False
    sent = await send_user_message(owner, booking.guest_phone, text)
    if sent:
        session.add(
            WhatsAppMessage(
                user_id=owner.id,
                phone=booking.guest_phone,
                message=text,
                direction=MessageDirection.OUTGOING,
                provider="evolution",
                booking_id=booking.id,
            )
        )
        await session.flush()
    else:
        logger.warning(f"WhatsApp notice for booking {booking.id} to {mask_phone(booking.guest_phone)} not sent")
    return sent


async def after_booking_created(
    session: AsyncSession,
    booking: Booking,
    event_type: EventType,
    owner: User,
) -> None:
    # Calendar events live on the page owner's calendar, team bookings included.
    if await has_calendar(session, owner.id):
        try:
            booking.calendar_event_id = await create_calendar_event(
                session,
                owner.id,
                summary=f"{event_type.name} with {booking.guest_name}",
                start=booking.start_time,
                end=booking.end_time,
                description=booking.notes or "",
                location=event_type.video_link or event_type.location,
                attendees=[booking.guest_email],
            )
        except Exception as exc:
            logger.exception(f"Failed to create calendar event for booking {booking.id}: {exc}")

    issue_booking_tokens(booking)

    if event_type.video_provider == VideoProvider.DAILY and event_type.enable_embedded_video:
        try:
            await create_video_session(session, booking, event_type)
        except Exception as exc:
            logger.exception(f"Failed to create video session for booking {booking.id}: {exc}")

    await session.flush()

    cancel_link, reschedule_link = booking_links(booking)
    try:
        details = await meeting_details(session, booking, event_type, owner)
        await send_booking_confirmation(
            details,
            pending=booking.status == BookingStatus.PENDING,
            cancel_link=cancel_link,
            reschedule_link=reschedule_link,
        )
    except Exception as exc:
        logger.exception(f"Failed to send confirmation email for booking {booking.id}: {exc}")

    if booking.guest_phone and owner.whatsapp_enabled:
        when = format_local(booking.start_time, booking.timezone or owner.timezone)
        text = (
            f"Hi {booking.guest_name}! Your {event_type.name} is "
            f"{'requested' if booking.status == BookingStatus.PENDING else 'confirmed'} for {when}."
        )
        if cancel_link:
            text += f"\n\nNeed to cancel? {cancel_link}"
        try:
            await send_whatsapp_notice(session, owner, booking, text)
        except Exception as exc:
            logger.exception(f"Failed to send WhatsApp confirmation for booking {booking.id}: {exc}")


async def after_booking_cancelled(
    session: AsyncSession,
    booking: Booking,
    event_type: EventType,
    owner: User,
    reason: Optional[str] = None,
) -> None:
    if booking.calendar_event_id:
        try:
            await delete_calendar_event(session, owner.id, booking.calendar_event_id)
        except Exception as exc:
            logger.exception(f"Failed to delete calendar event for booking {booking.id}: {exc}")

    try:
        details = await meeting_details(session, booking, event_type, owner)
        await send_booking_cancellation(details, reason)
    except Exception as exc:
        logger.exception(f"Failed to send cancellation email for booking {booking.id}: {exc}")


async def after_booking_rescheduled(
    session: AsyncSession,
    booking: Booking,
    event_type: EventType,
    owner: User,
    previous_start: datetime,
) -> None:
    if booking.calendar_event_id:
        try:
            await update_calendar_event_time(
                session, owner.id, booking.calendar_event_id, booking.start_time, booking.end_time
            )
        except Exception as exc:
            logger.exception(f"Failed to move calendar event for booking {booking.id}: {exc}")

    cancel_link, reschedule_link = booking_links(booking)
    try:
        details = await meeting_details(session, booking, event_type, owner)
        await send_booking_rescheduled(details, previous_start, cancel_link, reschedule_link)
    except Exception as exc:
        logger.exception(f"Failed to send reschedule email for booking {booking.id}: {exc}")
