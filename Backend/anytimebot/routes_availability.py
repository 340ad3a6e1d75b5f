import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import Field
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from .core.db import get_session
from .core.request_context import (
    RequestContext,
    get_optional_request_context,
    get_request_context,
    require_owner,
)
from .core.responses import success_response
from .core.schemas import CamelModel
from .models import Availability, BookingPage
from .routes_booking_pages import availability_to_dict, get_page_availability, validate_window

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/availability", tags=["availability"])


class TimeSlotIn(CamelModel):
    start_time: str
    end_time: str


class DayAvailabilityIn(CamelModel):
    day_of_week: int = Field(ge=0, le=6)
    is_available: bool = True
    time_slots: list[TimeSlotIn] = Field(default_factory=list)


class AvailabilityUpdate(CamelModel):
    booking_page_id: Optional[int] = None
    availability: list[DayAvailabilityIn] = Field(default_factory=list)


def expand_day_rows(page_id: int, days: list[DayAvailabilityIn]) -> list[Availability]:
    """One row per time slot; an unavailable day becomes a single placeholder row."""
    rows = []
    for day in days:
        if not day.is_available or not day.time_slots:
            rows.append(
                Availability(
                    booking_page_id=page_id,
                    day_of_week=day.day_of_week,
                    start_time="09:00",
                    end_time="17:00",
                    is_available=False,
                )
            )
            continue
        for slot in day.time_slots:
            validate_window(slot.start_time, slot.end_time)
            rows.append(
                Availability(
                    booking_page_id=page_id,
                    day_of_week=day.day_of_week,
                    start_time=slot.start_time,
                    end_time=slot.end_time,
                    is_available=True,
                )
            )
    return rows


@router.get("")
async def get_availability(
    booking_page_id: Optional[int] = Query(default=None, alias="bookingPageId"),
    ctx: RequestContext = Depends(get_optional_request_context),
    session: AsyncSession = Depends(get_session),
):
    if booking_page_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="bookingPageId is required")

    page = await session.get(BookingPage, booking_page_id)
    if page is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking page not found")
    if ctx.is_authenticated:
        require_owner(ctx, page.user_id, "Booking page")

    rows = await get_page_availability(session, page.id)
    return success_response([availability_to_dict(row) for row in rows])


@router.post("")
async def replace_availability(
    request: AvailabilityUpdate,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    if request.booking_page_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="bookingPageId is required")

    page = await session.get(BookingPage, request.booking_page_id)
    require_owner(ctx, page.user_id if page else None, "Booking page")

    rows = expand_day_rows(page.id, request.availability)
    await session.execute(delete(Availability).where(Availability.booking_page_id == page.id))
    session.add_all(rows)
    await session.commit()

    logger.info(f"Replaced availability for page {page.id} ({len(rows)} rows)")
    saved = await get_page_availability(session, page.id)
    return success_response([availability_to_dict(row) for row in saved])
