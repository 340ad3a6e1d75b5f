"""
Video sessions and the Daily.co webhook.

    POST /api/video-sessions                owner creates the session for a booking
    GET  /api/video-sessions/{bookingId}    join info for the guest page
    POST /api/video-sessions/consent        guest recording consent
    POST /api/webhooks/daily                room.closed / meeting.ended,
                                            recording.ready, transcription.ready
"""

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .booking_service import load_booking_context, load_owned_booking, meeting_details, parse_booking_id
from .core.db import get_session
from .core.request_context import RequestContext, get_request_context
from .core.responses import success_response
from .core.schemas import CamelModel
from .daily import DailyError, get_latest_recording_url, verify_webhook_signature
from .emailer import send_meeting_follow_up
from .models import BookingStatus, VideoProvider, VideoSession, utc_now
from .usage_tracker import increment_usage
from .utils import round_half_up
from .video_session import create_video_session, get_video_session, summarize_transcript

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["video"])


class VideoSessionCreate(CamelModel):
    booking_id: Optional[str] = None


class ConsentRequest(CamelModel):
    booking_id: Optional[str] = None
    consent: Any = None


def video_session_to_dict(video: VideoSession, include_host: bool = False) -> dict:
    data = {
        "id": video.id,
        "bookingId": str(video.booking_id),
        "provider": video.provider.value,
        "roomName": video.room_name,
        "roomUrl": video.room_url,
        "recordingEnabled": video.recording_enabled,
        "transcriptionEnabled": video.transcription_enabled,
        "liveAIEnabled": video.live_ai_enabled,
        "recordingConsent": video.recording_consent,
        "startedAt": video.started_at.isoformat() if video.started_at else None,
        "endedAt": video.ended_at.isoformat() if video.ended_at else None,
    }
    if include_host:
        data.update(
            {
                "hostRoomUrl": video.host_room_url,
                "recordingUrl": video.recording_url,
                "durationMinutes": video.duration_minutes,
                "summary": video.summary,
            }
        )
    return data


# ────────────────────────────────────────────────────────────────
# Sessions
# ────────────────────────────────────────────────────────────────

@router.post("/video-sessions", status_code=status.HTTP_201_CREATED)
async def create_session(
    request: VideoSessionCreate,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    if not request.booking_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Booking ID required")

    booking, event_type, _, _ = await load_owned_booking(session, parse_booking_id(request.booking_id), ctx.user_id)
    if event_type.video_provider == VideoProvider.NONE:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Video is not enabled for this event type")

    try:
        video = await create_video_session(session, booking, event_type)
    except DailyError as e:
        logger.error(f"Video room for booking {booking.id} failed: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to create video room")

    await session.commit()
    await session.refresh(video)
    return success_response(video_session_to_dict(video, include_host=True))


@router.get("/video-sessions/{booking_id}")
async def get_session_info(
    booking_id: str,
    session: AsyncSession = Depends(get_session),
):
    video = await get_video_session(session, parse_booking_id(booking_id))
    if not video:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video session not found")
    return success_response(video_session_to_dict(video))


@router.post("/video-sessions/consent")
async def update_consent(
    request: ConsentRequest,
    session: AsyncSession = Depends(get_session),
):
    if not request.booking_id or not isinstance(request.consent, bool):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid request")

    video = await get_video_session(session, parse_booking_id(request.booking_id))
    if not video:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video session not found")

    video.recording_consent = request.consent
    await session.commit()
    await session.refresh(video)
    logger.info(f"Recording consent for booking {video.booking_id} set to {request.consent}")
    return success_response(video_session_to_dict(video))


# ────────────────────────────────────────────────────────────────
# Daily webhook
# ────────────────────────────────────────────────────────────────

def _event_fields(payload: dict) -> tuple[Optional[str], Optional[str], dict]:
    """(event, room name, event body) for both the flat and the nested payload shapes."""
    event = payload.get("event") or payload.get("type")
    body = payload.get("payload") if isinstance(payload.get("payload"), dict) else payload
    room = body.get("room") or body.get("room_name") or payload.get("room")
    if isinstance(room, dict):
        room = room.get("name")
    return event, room, body


async def _video_by_room(session: AsyncSession, room_name: str) -> Optional[VideoSession]:
    result = await session.execute(select(VideoSession).where(VideoSession.room_name == room_name))
    return result.scalar_one_or_none()


async def handle_room_closed(session: AsyncSession, video: VideoSession) -> None:
    booking, _, _, _ = await load_booking_context(session, video.booking_id)
    booking.status = BookingStatus.COMPLETED
    video.ended_at = utc_now()
    if video.room_name:
        try:
            recording_url = await get_latest_recording_url(video.room_name)
        except Exception as exc:
            logger.exception(f"Fetching recordings for {video.room_name} failed: {exc}")
            recording_url = None
        if recording_url:
            video.recording_url = recording_url


async def handle_recording_ready(session: AsyncSession, video: VideoSession, body: dict) -> None:
    recording = body.get("recording") if isinstance(body.get("recording"), dict) else body
    if recording.get("download_link"):
        video.recording_url = recording["download_link"]
    seconds = recording.get("duration")
    if isinstance(seconds, (int, float)):
        minutes = round_half_up(seconds / 60)
        video.duration_minutes = minutes
        _, _, _, owner = await load_booking_context(session, video.booking_id)
        if minutes > 0:
            await increment_usage(session, owner.id, "video", minutes)


async def handle_transcription_ready(session: AsyncSession, video: VideoSession, body: dict) -> None:
    transcript = body.get("transcript")
    if transcript is None:
        return
    text = transcript if isinstance(transcript, str) else json.dumps(transcript)
    video.transcript = text

    booking, event_type, _, owner = await load_booking_context(session, video.booking_id)
    summary = await summarize_transcript(
        text,
        {
            "eventName": event_type.name,
            "hostName": owner.name,
            "guestName": booking.guest_name,
            "duration": video.duration_minutes,
        },
    )
    video.summary = summary

    try:
        details = await meeting_details(session, booking, event_type, owner)
        await send_meeting_follow_up(details, summary)
    except Exception as exc:
        logger.exception(f"Follow-up email for booking {booking.id} failed: {exc}")


@router.post("/webhooks/daily")
async def daily_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    raw_body = await request.body()
    if not verify_webhook_signature(
        raw_body,
        request.headers.get("X-Webhook-Timestamp"),
        request.headers.get("X-Webhook-Signature"),
    ):
        logger.warning("Daily webhook with an invalid signature")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")

    try:
        payload = json.loads(raw_body)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")

    event, room_name, body = _event_fields(payload)
    logger.info(f"Daily webhook {event} for room {room_name}")
    if not room_name:
        return {"received": True, "ignored": True}

    video = await _video_by_room(session, room_name)
    if video is None:
        logger.info(f"No video session for room {room_name}")
        return {"received": True, "ignored": True}

    if event in ("room.closed", "meeting.ended"):
        await handle_room_closed(session, video)
    elif event == "recording.ready":
        await handle_recording_ready(session, video, body)
    elif event == "transcription.ready":
        await handle_transcription_ready(session, video, body)
    else:
        logger.info(f"Unhandled Daily event: {event}")
        return {"received": True, "ignored": True}

    await session.commit()
    return {"received": True}
