"""
Bookings API

Public endpoints (no session):
    GET  /api/bookings/check-availability   slot grid for one date
    POST /api/bookings                      create a booking (rate limited)
    POST /api/bookings/{id}/cancel          guest cancel, optionally with a signed token
    POST /api/bookings/{id}/reschedule      guest reschedule, optionally with a signed token
    GET  /api/bookings/verify-token         resolve a cancel/reschedule token

Owner endpoints list, read, update and soft-cancel bookings of the
owner's event types.
"""

import logging
import math
from datetime import date, timedelta
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .availability import has_booking_conflict, slots_for_date
from .booking_service import (
    after_booking_cancelled,
    after_booking_created,
    after_booking_rescheduled,
    booking_to_dict,
    issue_booking_tokens,
    load_booking_context,
    load_event_type_context,
    load_owned_booking,
    meeting_details,
    parse_booking_id,
    send_whatsapp_notice,
)
from .booking_tokens import token_allows, verify_booking_token
from .core.db import get_session
from .core.request_context import RequestContext, get_request_context
from .core.responses import success_response
from .core.schemas import CamelModel
from .ics import build_ics_event
from .models import (
    AssignmentMode,
    Booking,
    BookingPage,
    BookingStatus,
    EventType,
    RoutingFormResponse,
)
from .rate_limiter import public_rate_limit
from .team_assignment import assign_team_member
from .utils import format_local, is_valid_email, is_valid_phone, js_day_of_week, parse_iso_datetime

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/bookings", tags=["bookings"])

OWNER_SETTABLE_STATUSES = (BookingStatus.CONFIRMED, BookingStatus.CANCELLED, BookingStatus.PENDING)


class BookingCreate(CamelModel):
    event_type_id: Optional[int] = None
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None
    guest_phone: Optional[str] = None
    start_time: Optional[str] = None
    timezone: Optional[str] = None
    notes: Optional[str] = None
    form_data: Optional[dict[str, Any]] = None
    routing_responses: Optional[dict[str, Any]] = None


class BookingStatusUpdate(CamelModel):
    status: Optional[str] = None


class CancelRequest(CamelModel):
    token: Optional[str] = None
    reason: Optional[str] = None


class RescheduleRequest(CamelModel):
    new_start_time: Optional[str] = None
    token: Optional[str] = None


def _parse_start(value: str, field: str = "startTime"):
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid {field}")


def _check_token(token: Optional[str], booking_id: str, action: str) -> None:
    if token is not None and not token_allows(token, booking_id, action):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")


# ────────────────────────────────────────────────────────────────
# Public: slots and booking creation
# ────────────────────────────────────────────────────────────────

@router.get("/check-availability")
async def check_availability(
    event_type_id: Optional[int] = Query(default=None, alias="eventTypeId"),
    date_value: Optional[str] = Query(default=None, alias="date"),
    session: AsyncSession = Depends(get_session),
):
    if event_type_id is None or not date_value:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="eventTypeId and date are required")
    try:
        local_date = date.fromisoformat(date_value)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="date must be YYYY-MM-DD")

    event_type, page, owner = await load_event_type_context(session, event_type_id)
    if not page.is_active or not event_type.is_active:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Booking page is not active")

    day = await slots_for_date(session, event_type, page, owner, local_date)
    return success_response(
        {
            "availableSlots": day.available_slots,
            "allSlots": day.all_slots,
            "date": local_date.isoformat(),
            "dayOfWeek": js_day_of_week(local_date),
            "timezone": owner.timezone,
            "eventType": {
                "name": event_type.name,
                "duration": event_type.duration,
                "bufferTime": event_type.buffer_time,
            },
        }
    )


@router.get("/verify-token")
async def verify_token(
    token: Optional[str] = Query(default=None),
    session: AsyncSession = Depends(get_session),
):
    if not token:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Token is required")
    verified = verify_booking_token(token)
    if verified is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")

    booking_id, action = verified
    booking, event_type, _, _ = await load_booking_context(session, parse_booking_id(booking_id))
    return success_response(
        {"bookingId": booking_id, "action": action, "booking": booking_to_dict(booking, event_type)}
    )


@router.post("", status_code=status.HTTP_201_CREATED, dependencies=[Depends(public_rate_limit())])
async def create_booking(
    request: BookingCreate,
    session: AsyncSession = Depends(get_session),
):
    if not request.event_type_id or not request.guest_name or not request.guest_email or not request.start_time:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required fields")
    if not is_valid_email(request.guest_email):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid email address")
    if request.guest_phone and not is_valid_phone(request.guest_phone):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid phone number")
    start = _parse_start(request.start_time)

    event_type, page, owner = await load_event_type_context(session, request.event_type_id)
    if not page.is_active or not event_type.is_active:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Booking page is not active")

    end = start + timedelta(minutes=event_type.duration)
    if await has_booking_conflict(session, event_type.id, start, end):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Time slot is already booked")

    assigned_member_id = None
    if event_type.team_id is not None and event_type.assignment_mode != AssignmentMode.INDIVIDUAL:
        assignment = await assign_team_member(
            session, event_type, start, end,
            form_data=request.form_data,
            routing_responses=request.routing_responses,
        )
        if assignment is None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="No team members available for this time slot",
            )
        assigned_member_id = assignment.member.id
        logger.info(f"Assigned member {assigned_member_id} to event type {event_type.id} ({assignment.reason})")

    booking = Booking(
        event_type_id=event_type.id,
        guest_name=request.guest_name.strip(),
        guest_email=request.guest_email.strip().lower(),
        guest_phone=request.guest_phone,
        start_time=start,
        end_time=end,
        status=BookingStatus.PENDING if event_type.requires_confirmation else BookingStatus.CONFIRMED,
        timezone=request.timezone or owner.timezone,
        notes=request.notes,
        form_data=request.form_data,
        assigned_member_id=assigned_member_id,
    )
    session.add(booking)
    await session.flush()

    if event_type.enable_routing and request.routing_responses:
        session.add(
            RoutingFormResponse(
                event_type_id=event_type.id,
                booking_id=booking.id,
                responses=request.routing_responses,
                assigned_member_id=assigned_member_id,
            )
        )

    await after_booking_created(session, booking, event_type, owner)
    await session.commit()
    await session.refresh(booking)
    logger.info(f"Booking {booking.id} created for event type {event_type.id} ({booking.status.value})")
    return success_response(booking_to_dict(booking, event_type))


# ────────────────────────────────────────────────────────────────
# Owner endpoints
# ────────────────────────────────────────────────────────────────

@router.get("")
async def list_bookings(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    filters = [BookingPage.user_id == ctx.user_id]
    if status_filter and status_filter.lower() != "all":
        try:
            filters.append(Booking.status == BookingStatus(status_filter.upper()))
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid status")

    base = (
        select(Booking, EventType)
        .join(EventType, EventType.id == Booking.event_type_id)
        .join(BookingPage, BookingPage.id == EventType.booking_page_id)
        .where(*filters)
    )
    total_result = await session.execute(select(func.count()).select_from(base.subquery()))
    total = total_result.scalar_one()

    result = await session.execute(
        base.order_by(Booking.start_time.asc()).offset((page - 1) * limit).limit(limit)
    )
    bookings = [booking_to_dict(booking, event_type) for booking, event_type in result.all()]
    return success_response(
        bookings,
        pagination={"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
    )


@router.get("/{booking_id}")
async def get_booking(
    booking_id: str,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    booking, event_type, _, _ = await load_owned_booking(session, parse_booking_id(booking_id), ctx.user_id)
    return success_response(booking_to_dict(booking, event_type))


@router.get("/{booking_id}/invite")
async def booking_invite(
    booking_id: str,
    session: AsyncSession = Depends(get_session),
):
    """Return a .ics invite compatible with Google, Apple and Outlook calendars."""
    booking, event_type, _, owner = await load_booking_context(session, parse_booking_id(booking_id))
    details = await meeting_details(session, booking, event_type, owner)
    ics_text = build_ics_event(
        uid=str(booking.id),
        start_at=booking.start_time,
        end_at=booking.end_time,
        summary=f"{event_type.name} with {details.host_name}",
        description=f"Booking for {booking.guest_name}",
        location=details.video_link or event_type.location,
        method="PUBLISH",
        cancelled=booking.status == BookingStatus.CANCELLED,
    )
    return Response(
        content=ics_text,
        media_type="text/calendar",
        headers={"Content-Disposition": f'attachment; filename="anytimebot-booking-{booking.id}.ics"'},
    )


@router.put("/{booking_id}")
async def update_booking_status(
    booking_id: str,
    request: BookingStatusUpdate,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    try:
        new_status = BookingStatus(request.status or "")
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid status")
    if new_status not in OWNER_SETTABLE_STATUSES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid status")

    booking, event_type, _, owner = await load_owned_booking(session, parse_booking_id(booking_id), ctx.user_id)
    previous = booking.status
    booking.status = new_status

    if new_status == BookingStatus.CANCELLED and previous != BookingStatus.CANCELLED:
        when = format_local(booking.start_time, booking.timezone or owner.timezone)
        notice = f"Hi {booking.guest_name}, your {event_type.name} on {when} has been cancelled."
        try:
            await send_whatsapp_notice(session, owner, booking, notice)
        except Exception as exc:
            logger.exception(f"Failed to send WhatsApp cancellation for booking {booking.id}: {exc}")

    await session.commit()
    await session.refresh(booking)
    return success_response(booking_to_dict(booking, event_type))


@router.delete("/{booking_id}")
async def delete_booking(
    booking_id: str,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    """Soft-cancel: the row stays with status CANCELLED."""
    booking, event_type, _, owner = await load_owned_booking(session, parse_booking_id(booking_id), ctx.user_id)
    if booking.status != BookingStatus.CANCELLED:
        booking.status = BookingStatus.CANCELLED
        await after_booking_cancelled(session, booking, event_type, owner)
    await session.commit()
    return success_response({"cancelled": True, "id": str(booking.id)})


# ────────────────────────────────────────────────────────────────
# Guest self-service
# ────────────────────────────────────────────────────────────────

@router.post("/{booking_id}/cancel")
async def cancel_booking(
    booking_id: str,
    request: CancelRequest,
    session: AsyncSession = Depends(get_session),
):
    _check_token(request.token, booking_id, "cancel")
    booking, event_type, _, owner = await load_booking_context(session, parse_booking_id(booking_id))
    if booking.status == BookingStatus.CANCELLED:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Booking is already cancelled")

    booking.status = BookingStatus.CANCELLED
    booking.cancellation_reason = request.reason
    await after_booking_cancelled(session, booking, event_type, owner, request.reason)
    await session.commit()
    await session.refresh(booking)
    logger.info(f"Booking {booking.id} cancelled by guest")
    return success_response(booking_to_dict(booking, event_type))


@router.post("/{booking_id}/reschedule")
async def reschedule_booking(
    booking_id: str,
    request: RescheduleRequest,
    session: AsyncSession = Depends(get_session),
):
    if not request.new_start_time:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="newStartTime is required")
    _check_token(request.token, booking_id, "reschedule")
    new_start = _parse_start(request.new_start_time, "newStartTime")

    booking, event_type, _, owner = await load_booking_context(session, parse_booking_id(booking_id))
    if booking.status == BookingStatus.CANCELLED:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot reschedule a cancelled booking")

    new_end = new_start + timedelta(minutes=event_type.duration)
    if await has_booking_conflict(session, event_type.id, new_start, new_end, exclude_booking_id=booking.id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Time slot is already booked")

    previous_start = booking.start_time
    booking.start_time = new_start
    booking.end_time = new_end
    booking.status = BookingStatus.CONFIRMED
    booking.reminder_sent_at = None
    issue_booking_tokens(booking)

    await after_booking_rescheduled(session, booking, event_type, owner, previous_start)
    await session.commit()
    await session.refresh(booking)
    logger.info(f"Booking {booking.id} rescheduled to {new_start.isoformat()}")
    return success_response(booking_to_dict(booking, event_type))
