"""
Slot computation for booking pages.

A booking page has per-weekday availability windows ("09:00"-"17:00",
0 = Sunday). Windows are divided into fixed-interval candidate start times;
a candidate is bookable when the meeting (duration + buffer) does not
overlap an existing CONFIRMED/PENDING booking of the same event type
(extended by the buffer), does not overlap a calendar busy block, and has
not already started.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, List, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Availability, Booking, BookingPage, BookingStatus, EventType, User
from .utils import (
    BlockedTime,
    get_zone,
    js_day_of_week,
    local_day_bounds,
    overlap,
    parse_hhmm,
    to_utc_from_local_zone,
)

logger = logging.getLogger(__name__)

DEFAULT_SLOT_INTERVAL = 15
BOT_SLOT_INTERVAL = 30
BOT_LOOKAHEAD_DAYS = 7
BOT_MAX_SLOTS = 20
BOT_DISPLAY_SLOTS = 5

ACTIVE_BOOKING_STATUSES = (BookingStatus.CONFIRMED, BookingStatus.PENDING)


@dataclass
class SlotCandidate:
    label: str  # HH:MM in the page owner's timezone
    start_at_utc: datetime
    end_at_utc: datetime


@dataclass
class DaySlots:
    all_slots: List[str]
    available_slots: List[str]


def _to_minutes(value: str) -> int:
    parsed = parse_hhmm(value)
    return parsed.hour * 60 + parsed.minute


def generate_time_slots(windows: Iterable[tuple[str, str]], interval: int) -> List[str]:
    """Enumerate HH:MM start times for every window, deduplicated and sorted."""
    step = interval if interval and interval > 0 else DEFAULT_SLOT_INTERVAL
    labels: set[str] = set()
    for start, end in windows:
        cursor = _to_minutes(start)
        end_minutes = _to_minutes(end)
        while cursor + step <= end_minutes:
            labels.add(f"{cursor // 60:02d}:{cursor % 60:02d}")
            cursor += step
    return sorted(labels)


def booking_blocks(bookings: Iterable[Booking], buffer_minutes: int) -> List[BlockedTime]:
    """Existing bookings block their own time plus the trailing buffer."""
    buffer = timedelta(minutes=buffer_minutes)
    return [BlockedTime(start_at_utc=b.start_time, end_at_utc=b.end_time + buffer) for b in bookings]


def compute_day_slots(
    local_date: date,
    tz: ZoneInfo,
    windows: Sequence[tuple[str, str]],
    interval: int,
    duration: int,
    buffer_time: int,
    blocked: Sequence[BlockedTime],
    now_utc: datetime,
) -> DaySlots:
    all_slots = generate_time_slots(windows, interval)
    meeting_length = timedelta(minutes=duration + buffer_time)

    available: list[str] = []
    for label in all_slots:
        slot_start = to_utc_from_local_zone(local_date, parse_hhmm(label), tz)
        slot_end = slot_start + meeting_length

        # Skip slots that have already started
        if slot_start <= now_utc:
            continue

        conflict = any(overlap(slot_start, slot_end, b.start_at_utc, b.end_at_utc) for b in blocked)
        if not conflict:
            available.append(label)

    return DaySlots(all_slots=all_slots, available_slots=available)


# ────────────────────────────────────────────────────────────────
# Database access
# ────────────────────────────────────────────────────────────────

async def load_day_windows(session: AsyncSession, booking_page_id: int, day_of_week: int) -> List[tuple[str, str]]:
    result = await session.execute(
        select(Availability).where(
            Availability.booking_page_id == booking_page_id,
            Availability.day_of_week == day_of_week,
            Availability.is_available.is_(True),
        )
    )
    return [(row.start_time, row.end_time) for row in result.scalars().all()]


async def get_active_bookings(
    session: AsyncSession,
    event_type_id: int,
    window_start: datetime,
    window_end: datetime,
    exclude_booking_id=None,
) -> List[Booking]:
    query = select(Booking).where(
        Booking.event_type_id == event_type_id,
        Booking.status.in_(ACTIVE_BOOKING_STATUSES),
        Booking.start_time < window_end,
        Booking.end_time > window_start,
    )
    if exclude_booking_id is not None:
        query = query.where(Booking.id != exclude_booking_id)
    result = await session.execute(query.order_by(Booking.start_time))
    return list(result.scalars().all())


async def has_booking_conflict(
    session: AsyncSession,
    event_type_id: int,
    start_at_utc: datetime,
    end_at_utc: datetime,
    exclude_booking_id=None,
) -> bool:
    conflicts = await get_active_bookings(
        session, event_type_id, start_at_utc, end_at_utc, exclude_booking_id=exclude_booking_id
    )
    return bool(conflicts)


async def slots_for_date(
    session: AsyncSession,
    event_type: EventType,
    page: BookingPage,
    owner: User,
    local_date: date,
    now_utc: datetime | None = None,
    interval: int | None = None,
    include_calendar: bool = True,
) -> DaySlots:
    """Compute the slot grid for one local date of an event type."""
    from .google_calendar import fetch_busy_blocks

    now_utc = now_utc or datetime.now(timezone.utc)
    tz = get_zone(owner.timezone)
    windows = await load_day_windows(session, page.id, js_day_of_week(local_date))
    if not windows:
        return DaySlots(all_slots=[], available_slots=[])

    day_start, day_end = local_day_bounds(local_date, tz)
    buffer = timedelta(minutes=event_type.buffer_time)
    bookings = await get_active_bookings(session, event_type.id, day_start - buffer, day_end + buffer)
    blocked = booking_blocks(bookings, event_type.buffer_time)

    if include_calendar:
        blocked.extend(await fetch_busy_blocks(session, owner.id, day_start, day_end))

    return compute_day_slots(
        local_date=local_date,
        tz=tz,
        windows=windows,
        interval=interval or page.slot_interval or DEFAULT_SLOT_INTERVAL,
        duration=event_type.duration,
        buffer_time=event_type.buffer_time,
        blocked=blocked,
        now_utc=now_utc,
    )


async def get_available_slots(
    session: AsyncSession,
    event_type: EventType,
    page: BookingPage,
    owner: User,
    days: int = BOT_LOOKAHEAD_DAYS,
    now_utc: datetime | None = None,
) -> List[SlotCandidate]:
    """Next bookable slots across the coming days (used by the assistant)."""
    now_utc = now_utc or datetime.now(timezone.utc)
    tz = get_zone(owner.timezone)
    today = now_utc.astimezone(tz).date()

    found: list[SlotCandidate] = []
    for offset in range(days):
        local_date = today + timedelta(days=offset)
        day = await slots_for_date(
            session, event_type, page, owner, local_date,
            now_utc=now_utc, interval=BOT_SLOT_INTERVAL, include_calendar=False,
        )
        for label in day.available_slots:
            start = to_utc_from_local_zone(local_date, parse_hhmm(label), tz)
            found.append(
                SlotCandidate(
                    label=label,
                    start_at_utc=start,
                    end_at_utc=start + timedelta(minutes=event_type.duration),
                )
            )
            if len(found) >= BOT_MAX_SLOTS:
                return found
    return found


def format_available_slots(slots: Sequence[SlotCandidate], tz_name: str | None) -> str:
    if not slots:
        return "No available slots in the next few days."
    tz = get_zone(tz_name)
    lines = []
    for index, slot in enumerate(slots[:BOT_DISPLAY_SLOTS], start=1):
        local = slot.start_at_utc.astimezone(tz)
        lines.append(f"{index}. {local.strftime('%a %b %d')} at {local.strftime('%H:%M')}")
    return "\n".join(lines)
