import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from .booking_service import load_owned_booking, parse_booking_id
from .briefings import generate_meeting_briefings, get_briefing
from .core.db import get_session
from .core.request_context import RequestContext, get_request_context
from .core.responses import success_response
from .core.schemas import CamelModel
from .models import MeetingBriefing

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/briefings", tags=["briefings"])


class BriefingRequest(CamelModel):
    booking_id: Optional[str] = None


def briefing_to_dict(briefing: MeetingBriefing) -> dict:
    return {
        "id": briefing.id,
        "bookingId": str(briefing.booking_id),
        "guestBriefing": briefing.guest_briefing,
        "hostBriefing": briefing.host_briefing,
        "talkingPoints": list(briefing.talking_points or []),
        "context": briefing.context,
        "emailSent": briefing.email_sent,
        "hostEmailSent": briefing.host_email_sent,
        "whatsappSent": briefing.whatsapp_sent,
        "createdAt": briefing.created_at.isoformat() if briefing.created_at else None,
    }


@router.post("/generate")
async def generate_briefing(
    request: BriefingRequest,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    if not request.booking_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Booking ID required")

    booking, _, _, _ = await load_owned_booking(session, parse_booking_id(request.booking_id), ctx.user_id)
    briefing = await generate_meeting_briefings(session, booking)
    if briefing is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Not enough context to brief this booking")

    await session.commit()
    await session.refresh(briefing)
    logger.info(f"User {ctx.user_id} generated briefing for booking {booking.id}")
    return success_response(briefing_to_dict(briefing))


@router.get("/{booking_id}")
async def read_briefing(
    booking_id: str,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    booking, _, _, _ = await load_owned_booking(session, parse_booking_id(booking_id), ctx.user_id)
    briefing = await get_briefing(session, booking.id)
    if not briefing:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Briefing not found")
    return success_response(briefing_to_dict(briefing))
