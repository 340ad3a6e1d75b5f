import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.db import get_session
from .core.request_context import RequestContext, get_request_context
from .core.responses import success_response
from .models import Booking, BookingPage, BookingStatus, Bot, BotConversation, EventType, WhatsAppMessage
from .utils import percent_change, round_half_up, start_of_month

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/analytics", tags=["analytics"])


def _owner_bookings(user_id: int):
    return (
        select(func.count(Booking.id))
        .join(EventType, EventType.id == Booking.event_type_id)
        .join(BookingPage, BookingPage.id == EventType.booking_page_id)
        .where(BookingPage.user_id == user_id)
    )


def _in_period(column, start: datetime, end: Optional[datetime]):
    return (column >= start) if end is None else (column >= start) & (column < end)


async def _count(session: AsyncSession, stmt) -> int:
    result = await session.execute(stmt)
    return result.scalar_one() or 0


async def _booking_count(
    session: AsyncSession,
    user_id: int,
    start: datetime,
    end: Optional[datetime],
    booking_status: Optional[BookingStatus] = None,
) -> int:
    stmt = _owner_bookings(user_id).where(_in_period(Booking.created_at, start, end))
    if booking_status is not None:
        stmt = stmt.where(Booking.status == booking_status)
    return await _count(session, stmt)


async def _conversation_count(session: AsyncSession, user_id: int, start: datetime, end: Optional[datetime]) -> int:
    return await _count(
        session,
        select(func.count(BotConversation.id))
        .join(Bot, Bot.id == BotConversation.bot_id)
        .where(Bot.user_id == user_id, _in_period(BotConversation.created_at, start, end)),
    )


async def _whatsapp_count(session: AsyncSession, user_id: int, start: datetime, end: Optional[datetime]) -> int:
    return await _count(
        session,
        select(func.count(WhatsAppMessage.id)).where(
            WhatsAppMessage.user_id == user_id,
            _in_period(WhatsAppMessage.created_at, start, end),
        ),
    )


def _metric(current: int, previous: int) -> dict:
    return {"total": current, "previous": previous, "change": round_half_up(percent_change(current, previous))}


@router.get("/overview")
async def analytics_overview(
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    now = datetime.now(timezone.utc)
    this_month = start_of_month(now)
    last_month = start_of_month(now, months_back=1)
    user_id = ctx.user_id

    bookings = _metric(
        await _booking_count(session, user_id, this_month, None),
        await _booking_count(session, user_id, last_month, this_month),
    )
    confirmed = _metric(
        await _booking_count(session, user_id, this_month, None, BookingStatus.CONFIRMED),
        await _booking_count(session, user_id, last_month, this_month, BookingStatus.CONFIRMED),
    )
    cancelled = _metric(
        await _booking_count(session, user_id, this_month, None, BookingStatus.CANCELLED),
        await _booking_count(session, user_id, last_month, this_month, BookingStatus.CANCELLED),
    )
    conversations = _metric(
        await _conversation_count(session, user_id, this_month, None),
        await _conversation_count(session, user_id, last_month, this_month),
    )
    whatsapp = _metric(
        await _whatsapp_count(session, user_id, this_month, None),
        await _whatsapp_count(session, user_id, last_month, this_month),
    )
    upcoming = await _count(
        session,
        _owner_bookings(user_id).where(
            Booking.start_time >= now,
            Booking.status.in_((BookingStatus.CONFIRMED, BookingStatus.PENDING)),
        ),
    )

    return success_response(
        {
            "bookings": bookings,
            "confirmed": confirmed,
            "cancelled": cancelled,
            "conversations": conversations,
            "whatsapp": whatsapp,
            "upcoming": upcoming,
        }
    )
