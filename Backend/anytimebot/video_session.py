"""
Video sessions attached to bookings.

One VideoSession per booking. For the DAILY provider a private room is
created that expires 24h after the meeting start, and the host gets a
meeting-token URL with owner permissions. EXTERNAL sessions just point at
the event type's video link.
"""

import logging
import time
from datetime import timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import daily
from .llm import LLMUnavailable, complete, parse_json_reply
from .models import Booking, EventType, VideoProvider, VideoSession

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = """You summarize meeting transcripts. Analyse the transcript and reply with JSON only:
{
  "summary": "2-3 sentence executive summary",
  "keyPoints": ["..."],
  "decisions": ["..."],
  "actionItems": [{"text": "...", "assignee": "...", "dueDate": "..."}],
  "nextSteps": ["..."],
  "sentiment": "positive|neutral|negative"
}"""


def build_room_name(booking_id: str, now_ms: Optional[int] = None) -> str:
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"meetmind-{str(booking_id)[:8]}-{now_ms}"


async def get_video_session(session: AsyncSession, booking_id) -> Optional[VideoSession]:
    result = await session.execute(select(VideoSession).where(VideoSession.booking_id == booking_id))
    return result.scalar_one_or_none()


async def create_video_session(session: AsyncSession, booking: Booking, event_type: EventType) -> VideoSession:
    """
    Create (or return the existing) video session for a booking.

    Raises:
        daily.DailyError: when a Daily room cannot be created
    """
    existing = await get_video_session(session, booking.id)
    if existing:
        return existing

    room_name = None
    room_url = event_type.video_link
    host_room_url = event_type.video_link

    if event_type.video_provider == VideoProvider.DAILY:
        room_name = build_room_name(str(booking.id))
        exp = int((booking.start_time + timedelta(hours=24)).timestamp())
        room = await daily.create_room(
            name=room_name,
            exp=exp,
            enable_recording=event_type.enable_recording,
            enable_transcription=event_type.enable_transcription or event_type.enable_live_ai,
        )
        room_name = room.get("name", room_name)
        room_url = room.get("url")
        host_token = await daily.create_meeting_token(room_name, is_host=True, exp=exp)
        host_room_url = f"{room_url}?t={host_token}" if host_token else room_url

    video_session = VideoSession(
        booking_id=booking.id,
        provider=event_type.video_provider,
        room_name=room_name,
        room_url=room_url,
        host_room_url=host_room_url,
        recording_enabled=event_type.enable_recording,
        transcription_enabled=event_type.enable_transcription,
        live_ai_enabled=event_type.enable_live_ai,
        recording_consent=False,
    )
    session.add(video_session)
    await session.flush()
    logger.info(f"Created {event_type.video_provider.value} video session for booking {booking.id}")
    return video_session


async def summarize_transcript(transcript: str, context: dict) -> dict:
    """Structured summary of a transcript; falls back to the raw text."""
    fallback = {"summary": transcript[:2000], "keyPoints": [], "actionItems": [], "sentiment": "neutral"}
    user_prompt = (
        f"Meeting context:\n"
        f"- Event: {context.get('eventName') or 'N/A'}\n"
        f"- Host: {context.get('hostName') or 'N/A'}\n"
        f"- Guest: {context.get('guestName') or 'N/A'}\n"
        f"- Duration: {context.get('duration') or 'N/A'} minutes\n\n"
        f"Transcript:\n{transcript}"
    )
    try:
        reply = await complete(
            [
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
            max_tokens=1500,
            temperature=0.3,
        )
    except LLMUnavailable as e:
        logger.warning(f"Meeting summary unavailable, storing raw transcript: {e}")
        return fallback

    parsed = parse_json_reply(reply)
    if parsed is None:
        return {**fallback, "summary": reply.strip() or fallback["summary"]}
    return parsed
