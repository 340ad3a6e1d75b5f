"""
Scheduled jobs, triggered by an external scheduler.

Every endpoint requires `Authorization: Bearer <CRON_SECRET>`.

    POST /api/cron/reset-usage       monthly usage counters
    POST /api/cron/send-reminders    bookings starting in 23-24 hours
    POST /api/cron/send-briefings    bookings starting in 50-70 minutes
"""

import hmac
import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .booking_service import booking_links, load_booking_context, meeting_details
from .briefings import deliver_briefing, generate_meeting_briefings
from .core.config import get_settings
from .core.db import get_session
from .core.responses import success_response
from .emailer import send_booking_reminder
from .models import Booking, BookingPage, BookingStatus, EventType, User, utc_now
from .usage_tracker import reset_monthly_usage

logger = logging.getLogger(__name__)

REMINDER_WINDOW = (timedelta(hours=23), timedelta(hours=24))
BRIEFING_WINDOW = (timedelta(minutes=50), timedelta(minutes=70))
ACTIVE_STATUSES = (BookingStatus.CONFIRMED, BookingStatus.PENDING)


def verify_cron_secret(request: Request) -> None:
    expected = f"Bearer {get_settings().cron_secret}"
    provided = request.headers.get("Authorization", "")
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning("Cron request with an invalid secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


router = APIRouter(prefix="/api/cron", tags=["cron"], dependencies=[Depends(verify_cron_secret)])


async def _bookings_starting_between(
    session: AsyncSession,
    start: datetime,
    end: datetime,
    *conditions,
) -> list[tuple[Booking, EventType, User]]:
    result = await session.execute(
        select(Booking, EventType, User)
        .join(EventType, EventType.id == Booking.event_type_id)
        .join(BookingPage, BookingPage.id == EventType.booking_page_id)
        .join(User, User.id == BookingPage.user_id)
        .where(
            Booking.start_time >= start,
            Booking.start_time <= end,
            Booking.status.in_(ACTIVE_STATUSES),
            *conditions,
        )
        .order_by(Booking.start_time)
    )
    return [(row[0], row[1], row[2]) for row in result.all()]


@router.api_route("/reset-usage", methods=["GET", "POST"])
async def reset_usage(session: AsyncSession = Depends(get_session)):
    count = await reset_monthly_usage(session)
    return success_response({"reset": count})


@router.api_route("/send-reminders", methods=["GET", "POST"])
async def send_reminders(session: AsyncSession = Depends(get_session)):
    now = datetime.now(timezone.utc)
    bookings = await _bookings_starting_between(
        session,
        now + REMINDER_WINDOW[0],
        now + REMINDER_WINDOW[1],
        Booking.reminder_sent_at.is_(None),
    )

    successful = 0
    failed = 0
    for booking, event_type, owner in bookings:
        try:
            details = await meeting_details(session, booking, event_type, owner)
            cancel_link, reschedule_link = booking_links(booking)
            sent = await send_booking_reminder(details, cancel_link, reschedule_link)
        except Exception as exc:
            logger.exception(f"Reminder for booking {booking.id} failed: {exc}")
            sent = False

        if sent:
            booking.reminder_sent_at = utc_now()
            successful += 1
        else:
            failed += 1

    await session.commit()
    logger.info(f"Reminders: {successful} sent, {failed} failed of {len(bookings)}")
    return success_response({"total": len(bookings), "successful": successful, "failed": failed})


@router.api_route("/send-briefings", methods=["GET", "POST"])
async def send_briefings(session: AsyncSession = Depends(get_session)):
    now = datetime.now(timezone.utc)
    bookings = await _bookings_starting_between(session, now + BRIEFING_WINDOW[0], now + BRIEFING_WINDOW[1])
    booking_ids = [booking.id for booking, _, _ in bookings]

    results = []
    for booking_id in booking_ids:
        # Reloaded per booking; a rollback expires everything already loaded
        booking, _, _, owner = await load_booking_context(session, booking_id)
        try:
            briefing = await generate_meeting_briefings(session, booking)
            if briefing is None:
                results.append({"bookingId": str(booking_id), "generated": False})
                continue
            delivered = await deliver_briefing(session, briefing, booking, owner)
            await session.commit()
            results.append({"bookingId": str(booking_id), "generated": True, **delivered})
        except Exception as exc:
            logger.exception(f"Briefing for booking {booking_id} failed: {exc}")
            await session.rollback()
            results.append({"bookingId": str(booking_id), "generated": False, "error": str(exc)})

    return success_response(
        {
            "total": len(booking_ids),
            "successful": sum(1 for r in results if r.get("generated")),
            "results": results,
        }
    )
