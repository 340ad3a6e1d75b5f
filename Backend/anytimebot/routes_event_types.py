import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import Field
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.db import get_session
from .core.request_context import RequestContext, get_request_context, require_owner
from .core.responses import success_response
from .core.schemas import CamelModel
from .models import (
    AssignmentMode,
    Booking,
    BookingFormField,
    BookingPage,
    EventType,
    RoutingFormResponse,
    Team,
    VideoProvider,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/event-types", tags=["event-types"])


class FormFieldIn(CamelModel):
    label: str
    type: str = "text"
    required: bool = False
    options: Optional[list[str]] = None
    placeholder: Optional[str] = None


class EventTypeFields(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    duration: Optional[int] = Field(default=None, gt=0)
    buffer_time: Optional[int] = Field(default=None, ge=0)
    location: Optional[str] = None
    video_link: Optional[str] = None
    color: Optional[str] = None
    requires_confirmation: Optional[bool] = None
    is_active: Optional[bool] = None
    team_id: Optional[int] = None
    assignment_mode: Optional[AssignmentMode] = None
    form_fields: Optional[list[FormFieldIn]] = None
    form_schema: Optional[dict[str, Any]] = None
    routing_rules: Optional[Any] = None
    enable_routing: Optional[bool] = None
    video_provider: Optional[VideoProvider] = None
    enable_embedded_video: Optional[bool] = None
    enable_live_ai: Optional[bool] = Field(default=None, alias="enableLiveAI")
    enable_recording: Optional[bool] = None
    enable_transcription: Optional[bool] = None


class EventTypeCreate(EventTypeFields):
    booking_page_id: Optional[int] = None


_DEFAULTS = {
    "buffer_time": 0,
    "location": "video",
    "color": "#6366f1",
    "requires_confirmation": False,
    "is_active": True,
    "assignment_mode": AssignmentMode.INDIVIDUAL,
    "enable_routing": False,
    "video_provider": VideoProvider.NONE,
    "enable_embedded_video": False,
    "enable_live_ai": False,
    "enable_recording": False,
    "enable_transcription": False,
}


def form_field_to_dict(field: BookingFormField) -> dict:
    return {
        "id": field.id,
        "label": field.label,
        "type": field.type,
        "required": field.required,
        "options": field.options,
        "placeholder": field.placeholder,
        "position": field.position,
    }


def event_type_to_dict(event_type: EventType, form_fields: Optional[list[BookingFormField]] = None) -> dict:
    data = {
        "id": event_type.id,
        "bookingPageId": event_type.booking_page_id,
        "name": event_type.name,
        "description": event_type.description,
        "duration": event_type.duration,
        "bufferTime": event_type.buffer_time,
        "location": event_type.location,
        "videoLink": event_type.video_link,
        "color": event_type.color,
        "requiresConfirmation": event_type.requires_confirmation,
        "isActive": event_type.is_active,
        "teamId": event_type.team_id,
        "assignmentMode": event_type.assignment_mode.value,
        "formSchema": event_type.form_schema,
        "routingRules": event_type.routing_rules,
        "enableRouting": event_type.enable_routing,
        "videoProvider": event_type.video_provider.value,
        "enableEmbeddedVideo": event_type.enable_embedded_video,
        "enableLiveAI": event_type.enable_live_ai,
        "enableRecording": event_type.enable_recording,
        "enableTranscription": event_type.enable_transcription,
    }
    if form_fields is not None:
        data["formFields"] = [form_field_to_dict(f) for f in form_fields]
    return data


async def get_form_fields(session: AsyncSession, event_type_id: int) -> list[BookingFormField]:
    result = await session.execute(
        select(BookingFormField)
        .where(BookingFormField.event_type_id == event_type_id)
        .order_by(BookingFormField.position, BookingFormField.id)
    )
    return list(result.scalars().all())


async def get_owned_event_type(
    session: AsyncSession, event_type_id: int, ctx: RequestContext
) -> tuple[EventType, BookingPage]:
    result = await session.execute(
        select(EventType, BookingPage)
        .join(BookingPage, BookingPage.id == EventType.booking_page_id)
        .where(EventType.id == event_type_id)
    )
    row = result.one_or_none()
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event type not found")
    require_owner(ctx, row[1].user_id, "Event type")
    return row[0], row[1]


async def _require_owned_team(session: AsyncSession, team_id: int, ctx: RequestContext) -> None:
    team = await session.get(Team, team_id)
    require_owner(ctx, team.owner_id if team else None, "Team")


async def _replace_form_fields(session: AsyncSession, event_type_id: int, fields: list[FormFieldIn]) -> None:
    await session.execute(delete(BookingFormField).where(BookingFormField.event_type_id == event_type_id))
    for position, field in enumerate(fields):
        session.add(
            BookingFormField(
                event_type_id=event_type_id,
                label=field.label,
                type=field.type,
                required=field.required,
                options=field.options,
                placeholder=field.placeholder,
                position=position,
            )
        )


# ────────────────────────────────────────────────────────────────
# Endpoints
# ────────────────────────────────────────────────────────────────

@router.get("")
async def list_event_types(
    booking_page_id: Optional[int] = Query(default=None, alias="bookingPageId"),
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    query = (
        select(EventType)
        .join(BookingPage, BookingPage.id == EventType.booking_page_id)
        .where(BookingPage.user_id == ctx.user_id)
    )
    if booking_page_id is not None:
        query = query.where(EventType.booking_page_id == booking_page_id)
    result = await session.execute(query.order_by(EventType.id))
    event_types = result.scalars().all()
    return success_response(
        [event_type_to_dict(et, await get_form_fields(session, et.id)) for et in event_types]
    )


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_event_type(
    request: EventTypeCreate,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    if not request.booking_page_id or not request.name or not request.duration:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required fields")

    page = await session.get(BookingPage, request.booking_page_id)
    require_owner(ctx, page.user_id if page else None, "Booking page")
    if request.team_id is not None:
        await _require_owned_team(session, request.team_id, ctx)

    values = request.model_dump(exclude_unset=True, exclude={"form_fields", "booking_page_id"})
    for key, default in _DEFAULTS.items():
        if values.get(key) is None:
            values[key] = default

    event_type = EventType(booking_page_id=page.id, **values)
    session.add(event_type)
    await session.flush()
    if request.form_fields:
        await _replace_form_fields(session, event_type.id, request.form_fields)

    await session.commit()
    await session.refresh(event_type)
    logger.info(f"Created event type {event_type.id} on page {page.id}")
    return success_response(event_type_to_dict(event_type, await get_form_fields(session, event_type.id)))


@router.get("/{event_type_id}")
async def get_event_type(
    event_type_id: int,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    event_type, _ = await get_owned_event_type(session, event_type_id, ctx)
    return success_response(event_type_to_dict(event_type, await get_form_fields(session, event_type.id)))


@router.put("/{event_type_id}")
async def update_event_type(
    event_type_id: int,
    request: EventTypeFields,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    event_type, _ = await get_owned_event_type(session, event_type_id, ctx)

    updates = request.model_dump(exclude_unset=True, exclude={"form_fields"})
    for field in ("name", "duration"):
        if field in updates and not updates[field]:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"{field.capitalize()} cannot be empty",
            )
    if updates.get("team_id") is not None:
        await _require_owned_team(session, updates["team_id"], ctx)
    for field, value in updates.items():
        if value is None and field in _DEFAULTS:
            continue
        setattr(event_type, field, value)

    if request.form_fields is not None:
        await _replace_form_fields(session, event_type.id, request.form_fields)

    await session.commit()
    await session.refresh(event_type)
    return success_response(event_type_to_dict(event_type, await get_form_fields(session, event_type.id)))


@router.delete("/{event_type_id}")
async def delete_event_type(
    event_type_id: int,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    event_type, _ = await get_owned_event_type(session, event_type_id, ctx)

    result = await session.execute(select(func.count(Booking.id)).where(Booking.event_type_id == event_type.id))
    if result.scalar_one() > 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot delete event type with existing bookings",
        )

    await session.execute(delete(BookingFormField).where(BookingFormField.event_type_id == event_type.id))
    await session.execute(delete(RoutingFormResponse).where(RoutingFormResponse.event_type_id == event_type.id))
    await session.delete(event_type)
    await session.commit()
    logger.info(f"Deleted event type {event_type_id}")
    return success_response({"deleted": True, "id": event_type_id})
