import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import Field
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .availability import DEFAULT_SLOT_INTERVAL
from .core.db import get_session
from .core.request_context import RequestContext, get_request_context, require_owner
from .core.responses import success_response
from .core.schemas import CamelModel
from .models import (
    Availability,
    Booking,
    BookingFormField,
    BookingPage,
    EventType,
    RoutingFormResponse,
    User,
)
from .routes_event_types import event_type_to_dict, get_form_fields
from .usage_tracker import require_capacity
from .utils import is_valid_hhmm, is_valid_slug

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/booking-pages", tags=["booking-pages"])
public_router = APIRouter(prefix="/api/public", tags=["public"])

DEFAULT_WINDOW = ("09:00", "17:00")
DEFAULT_WORKDAYS = (1, 2, 3, 4, 5)  # Monday..Friday, 0 = Sunday


class AvailabilityRow(CamelModel):
    day_of_week: int = Field(ge=0, le=6)
    start_time: str
    end_time: str
    is_available: bool = True


class BookingPageCreate(CamelModel):
    slug: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None


class BookingPageUpdate(CamelModel):
    title: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    slot_interval: Optional[int] = Field(default=None, gt=0)
    availability: Optional[list[AvailabilityRow]] = None


def availability_to_dict(row: Availability) -> dict:
    return {
        "id": row.id,
        "dayOfWeek": row.day_of_week,
        "startTime": row.start_time,
        "endTime": row.end_time,
        "isAvailable": row.is_available,
    }


def page_to_dict(page: BookingPage) -> dict:
    return {
        "id": page.id,
        "userId": page.user_id,
        "slug": page.slug,
        "title": page.title,
        "description": page.description,
        "isActive": page.is_active,
        "slotInterval": page.slot_interval,
        "createdAt": page.created_at.isoformat() if page.created_at else None,
    }


async def get_page_availability(session: AsyncSession, page_id: int) -> list[Availability]:
    result = await session.execute(
        select(Availability)
        .where(Availability.booking_page_id == page_id)
        .order_by(Availability.day_of_week, Availability.start_time)
    )
    return list(result.scalars().all())


async def _page_event_types(session: AsyncSession, page_id: int, active_only: bool = False) -> list[dict]:
    query = select(EventType).where(EventType.booking_page_id == page_id)
    if active_only:
        query = query.where(EventType.is_active.is_(True))
    result = await session.execute(query.order_by(EventType.id))
    return [event_type_to_dict(et, await get_form_fields(session, et.id)) for et in result.scalars().all()]


async def _page_detail(session: AsyncSession, page: BookingPage) -> dict:
    data = page_to_dict(page)
    data["eventTypes"] = await _page_event_types(session, page.id)
    data["availability"] = [availability_to_dict(a) for a in await get_page_availability(session, page.id)]
    return data


async def get_owned_page(session: AsyncSession, page_id: int, ctx: RequestContext) -> BookingPage:
    page = await session.get(BookingPage, page_id)
    require_owner(ctx, page.user_id if page else None, "Booking page")
    return page


def validate_window(start_time: str, end_time: str) -> None:
    if not is_valid_hhmm(start_time) or not is_valid_hhmm(end_time):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Times must use HH:MM format")
    if start_time >= end_time:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Start time must be before end time")


# ────────────────────────────────────────────────────────────────
# Owner endpoints
# ────────────────────────────────────────────────────────────────

@router.get("")
async def list_booking_pages(
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    result = await session.execute(
        select(BookingPage)
        .where(BookingPage.user_id == ctx.user_id)
        .order_by(BookingPage.created_at.desc(), BookingPage.id.desc())
    )
    pages = []
    for page in result.scalars().all():
        data = page_to_dict(page)
        data["eventTypes"] = await _page_event_types(session, page.id)
        pages.append(data)
    return success_response(pages)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_booking_page(
    request: BookingPageCreate,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    if not request.slug or not request.title:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Slug and title are required")
    if not is_valid_slug(request.slug):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Slug must be 3-20 characters: letters, numbers, hyphens and underscores",
        )

    existing = await session.execute(select(BookingPage.id).where(BookingPage.slug == request.slug))
    if existing.scalar_one_or_none() is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="This slug is already taken")

    count = await session.execute(select(func.count(BookingPage.id)).where(BookingPage.user_id == ctx.user_id))
    await require_capacity(session, ctx.user_id, "booking_pages", count.scalar_one(), "Booking pages")

    page = BookingPage(
        user_id=ctx.user_id,
        slug=request.slug,
        title=request.title.strip(),
        description=request.description,
        is_active=True,
        slot_interval=DEFAULT_SLOT_INTERVAL,
    )
    session.add(page)
    await session.flush()

    start, end = DEFAULT_WINDOW
    for day in DEFAULT_WORKDAYS:
        session.add(Availability(booking_page_id=page.id, day_of_week=day, start_time=start, end_time=end))

    await session.commit()
    await session.refresh(page)
    logger.info(f"User {ctx.user_id} created booking page {page.slug}")
    return success_response(await _page_detail(session, page))


@router.get("/{page_id}")
async def get_booking_page(
    page_id: int,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    page = await get_owned_page(session, page_id, ctx)
    return success_response(await _page_detail(session, page))


@router.put("/{page_id}")
async def update_booking_page(
    page_id: int,
    request: BookingPageUpdate,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    page = await get_owned_page(session, page_id, ctx)

    if request.title is not None:
        page.title = request.title.strip()
    if request.description is not None:
        page.description = request.description
    if request.is_active is not None:
        page.is_active = request.is_active
    if request.slot_interval is not None:
        page.slot_interval = request.slot_interval

    if request.availability is not None:
        for row in request.availability:
            validate_window(row.start_time, row.end_time)
        await session.execute(delete(Availability).where(Availability.booking_page_id == page.id))
        for row in request.availability:
            session.add(
                Availability(
                    booking_page_id=page.id,
                    day_of_week=row.day_of_week,
                    start_time=row.start_time,
                    end_time=row.end_time,
                    is_available=row.is_available,
                )
            )

    await session.commit()
    await session.refresh(page)
    return success_response(await _page_detail(session, page))


@router.delete("/{page_id}")
async def delete_booking_page(
    page_id: int,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    page = await get_owned_page(session, page_id, ctx)

    event_type_ids = select(EventType.id).where(EventType.booking_page_id == page.id)
    await session.execute(delete(RoutingFormResponse).where(RoutingFormResponse.event_type_id.in_(event_type_ids)))
    await session.execute(delete(Booking).where(Booking.event_type_id.in_(event_type_ids)))
    await session.execute(delete(BookingFormField).where(BookingFormField.event_type_id.in_(event_type_ids)))
    await session.execute(delete(EventType).where(EventType.booking_page_id == page.id))
    await session.execute(delete(Availability).where(Availability.booking_page_id == page.id))
    await session.delete(page)
    await session.commit()
    logger.info(f"User {ctx.user_id} deleted booking page {page_id}")
    return success_response({"deleted": True, "id": page_id})


# ────────────────────────────────────────────────────────────────
# Public page lookup
# ────────────────────────────────────────────────────────────────

@public_router.get("/{username}/{slug}")
async def get_public_booking_page(
    username: str,
    slug: str,
    session: AsyncSession = Depends(get_session),
):
    result = await session.execute(
        select(BookingPage, User)
        .join(User, User.id == BookingPage.user_id)
        .where(User.username == username, BookingPage.slug == slug)
    )
    row = result.one_or_none()
    if row is None or not row[0].is_active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking page not found")
    page, owner = row

    data = page_to_dict(page)
    data["owner"] = {"name": owner.name, "username": owner.username, "timezone": owner.timezone}
    data["eventTypes"] = await _page_event_types(session, page.id, active_only=True)
    return success_response(data)
