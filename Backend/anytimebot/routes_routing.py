import logging
from datetime import datetime, time, timedelta, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.db import get_session
from .core.request_context import RequestContext, get_request_context
from .core.responses import success_response
from .core.schemas import CamelModel
from .models import Booking, EventType, RoutingFormResponse, TeamMember
from .routes_event_types import get_owned_event_type
from .routes_teams import member_to_dict
from .routing import RoutedResponse, compute_insights, export_csv
from .team_assignment import assign_team_member
from .utils import parse_iso_datetime

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/routing", tags=["routing"])


class RoutingTestRequest(CamelModel):
    event_type_id: int
    responses: dict[str, Any]
    start_time: Optional[str] = None


def schema_questions(form_schema: Any) -> list[dict]:
    if isinstance(form_schema, dict):
        form_schema = form_schema.get("questions")
    return [q for q in form_schema or [] if isinstance(q, dict)]


def _require_routing(event_type: EventType) -> None:
    if not event_type.form_schema or not event_type.enable_routing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Routing is not enabled for this event type",
        )


async def _routed_responses(session: AsyncSession, event_type_id: int) -> list[RoutedResponse]:
    result = await session.execute(
        select(RoutingFormResponse, Booking)
        .outerjoin(Booking, Booking.id == RoutingFormResponse.booking_id)
        .where(RoutingFormResponse.event_type_id == event_type_id)
        .order_by(RoutingFormResponse.created_at.desc())
    )
    return [
        RoutedResponse(
            responses=response.responses or {},
            assigned_member_id=response.assigned_member_id,
            booking_id=str(booking.id) if booking else None,
            guest_name=booking.guest_name if booking else "",
            guest_email=booking.guest_email if booking else "",
            booking_start=booking.start_time if booking else None,
            submitted_at=response.created_at,
        )
        for response, booking in result.all()
    ]


async def _members_by_id(session: AsyncSession, team_id: Optional[int]) -> dict[int, TeamMember]:
    if team_id is None:
        return {}
    result = await session.execute(select(TeamMember).where(TeamMember.team_id == team_id))
    return {member.id: member for member in result.scalars().all()}


@router.get("/insights")
async def routing_insights(
    event_type_id: int = Query(alias="eventTypeId"),
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    event_type, _ = await get_owned_event_type(session, event_type_id, ctx)
    _require_routing(event_type)

    responses = await _routed_responses(session, event_type.id)
    members = await _members_by_id(session, event_type.team_id)
    insights = compute_insights(responses, schema_questions(event_type.form_schema), members)
    insights["eventType"] = {"id": event_type.id, "name": event_type.name}
    return success_response(insights)


@router.post("/test")
async def test_routing(
    request: RoutingTestRequest,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    """Dry-run the assignment for a set of answers; nothing is booked."""
    event_type, _ = await get_owned_event_type(session, request.event_type_id, ctx)

    if request.start_time:
        try:
            start = parse_iso_datetime(request.start_time)
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid startTime")
    else:
        tomorrow = datetime.now(timezone.utc).date() + timedelta(days=1)
        start = datetime.combine(tomorrow, time(10, 0), tzinfo=timezone.utc)
    end = start + timedelta(minutes=event_type.duration)

    assignment = await assign_team_member(session, event_type, start, end, routing_responses=request.responses)
    if assignment is None:
        result = {"assignedMember": None, "reason": "No team members available for this time slot"}
    else:
        result = {
            "assignedMember": member_to_dict(assignment.member),
            "reason": assignment.reason,
            "startTime": start.isoformat(),
            "endTime": end.isoformat(),
        }

    # A dry run must not move lastAssignedAt
    await session.rollback()
    return success_response(result)


@router.get("/export")
async def export_routing_responses(
    event_type_id: int = Query(alias="eventTypeId"),
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    event_type, _ = await get_owned_event_type(session, event_type_id, ctx)
    responses = await _routed_responses(session, event_type.id)
    members = await _members_by_id(session, event_type.team_id)
    csv_text = export_csv(responses, schema_questions(event_type.form_schema), members)
    filename = f"routing-responses-{event_type.id}.csv"
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
