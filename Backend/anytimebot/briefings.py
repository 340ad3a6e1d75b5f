"""
Pre-meeting briefings for host and guest.

Context for a booking is gathered from the event type, the host (assigned
team member or page owner), the guest's recent chat with the owner's
assistant, the most relevant knowledge-base documents and the guest's
completed meetings. The model writes an HTML brief for each side; when it
is unavailable a template brief is stored instead. One briefing per booking.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from html import escape
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .bot import find_similar_documents, get_bot_documents, get_user_bot
from .emailer import MeetingDetails, send_email, send_guest_briefing
from .evolution import send_user_message
from .llm import LLMUnavailable, complete
from .models import (
    Booking,
    BookingPage,
    BookingStatus,
    BotConversation,
    EventType,
    MeetingBriefing,
    TeamMember,
    User,
)
from .utils import format_local, strip_html

logger = logging.getLogger(__name__)

BRIEFING_DOCUMENT_MIN_SIMILARITY = 0.1
CHAT_HISTORY_LIMIT = 10
DEFAULT_TALKING_POINTS = [
    "Review guest's background and previous interactions",
    "Address their main request or concern",
    "Share relevant resources from knowledge base",
]

GUEST_SYSTEM_PROMPT = """You are a professional meeting assistant for AnytimeBot. Write a friendly, personalized pre-meeting briefing for a guest attending an upcoming meeting. The briefing should:
1. Greet the guest by name
2. Remind them of the meeting details (host, date, time, topic)
3. Summarize what will be discussed based on their form responses and chat history
4. Mention relevant resources from the knowledge base
5. Explain how to reschedule if needed
Keep it to 200-300 words. Format it as clean HTML with headings and bullet points."""

HOST_SYSTEM_PROMPT = """You are a professional meeting assistant for AnytimeBot. Write a pre-meeting intelligence briefing for a host preparing for an upcoming meeting. The briefing should:
1. Summarize who the guest is and their history
2. Identify the guest's main request or goal from their messages
3. Suggest 3-5 specific talking points
4. Reference relevant knowledge-base documents
5. Include team context for collaborative meetings
Keep it to 300-400 words. Format it as clean HTML.

Reply in exactly this layout:
BRIEFING:
[HTML content]

TALKING_POINTS:
[JSON array of 3-5 strings]"""

_BULLET_RE = re.compile(r"^(?:\d+[.)]?|[-*•])\s*(.{10,})$")
_LIST_ITEM_RE = re.compile(r"<li[^>]*>(.*?)</li>", re.IGNORECASE | re.DOTALL)
_HOST_REPLY_RE = re.compile(r"BRIEFING:\s*(.*?)\s*TALKING_POINTS:\s*(.*)", re.DOTALL)


@dataclass
class BriefingContext:
    booking_id: str
    guest_name: str
    guest_email: str
    guest_phone: Optional[str]
    start_time: datetime
    timezone: str
    form_data: Optional[dict]
    event_name: str
    duration: int
    location: str
    video_link: Optional[str]
    host_name: Optional[str]
    host_email: str
    chat_history: list[dict] = field(default_factory=list)
    documents: list[dict] = field(default_factory=list)
    team_members: list[str] = field(default_factory=list)
    previous_bookings: int = 0

    def when(self) -> str:
        return format_local(self.start_time, self.timezone)

    def to_dict(self) -> dict:
        return {
            "guestName": self.guest_name,
            "guestEmail": self.guest_email,
            "eventName": self.event_name,
            "hostName": self.host_name,
            "chatMessages": len(self.chat_history),
            "documents": [doc["fileName"] for doc in self.documents],
            "teamMembers": self.team_members,
            "previousBookings": self.previous_bookings,
        }


# ────────────────────────────────────────────────────────────────
# Context
# ────────────────────────────────────────────────────────────────

async def gather_briefing_context(session: AsyncSession, booking: Booking) -> Optional[BriefingContext]:
    row = (
        await session.execute(
            select(EventType, BookingPage, User)
            .join(BookingPage, EventType.booking_page_id == BookingPage.id)
            .join(User, BookingPage.user_id == User.id)
            .where(EventType.id == booking.event_type_id)
        )
    ).one_or_none()
    if row is None:
        return None
    event_type, _page, owner = row

    host_name, host_email = owner.name, owner.email
    if booking.assigned_member_id is not None:
        member = await session.get(TeamMember, booking.assigned_member_id)
        if member is not None:
            host_name, host_email = member.name or member.email, member.email

    chat_history: list[dict] = []
    documents: list[dict] = []
    bot = await get_user_bot(session, owner.id)
    if bot is not None:
        if booking.guest_phone:
            conversation = (
                await session.execute(
                    select(BotConversation).where(
                        BotConversation.bot_id == bot.id,
                        BotConversation.phone == booking.guest_phone,
                    )
                )
            ).scalar_one_or_none()
            if conversation is not None:
                chat_history = list(conversation.messages or [])[-CHAT_HISTORY_LIMIT:]

        search_text = " ".join(
            [
                event_type.name,
                booking.guest_name,
                json.dumps(booking.form_data or {}),
                " ".join(str(m.get("content", "")) for m in chat_history),
            ]
        )
        similar = find_similar_documents(
            search_text,
            await get_bot_documents(session, bot.id),
            min_similarity=BRIEFING_DOCUMENT_MIN_SIMILARITY,
        )
        documents = [{"fileName": d.file_name, "similarity": d.similarity} for d in similar]

    team_members: list[str] = []
    if event_type.team_id is not None:
        members = (
            await session.execute(select(TeamMember).where(TeamMember.team_id == event_type.team_id))
        ).scalars().all()
        team_members = [m.name or m.email for m in members]

    previous = (
        await session.execute(
            select(func.count(Booking.id))
            .join(EventType, Booking.event_type_id == EventType.id)
            .join(BookingPage, EventType.booking_page_id == BookingPage.id)
            .where(
                BookingPage.user_id == owner.id,
                Booking.guest_email == booking.guest_email,
                Booking.status == BookingStatus.COMPLETED,
            )
        )
    ).scalar_one()

    return BriefingContext(
        booking_id=str(booking.id),
        guest_name=booking.guest_name,
        guest_email=booking.guest_email,
        guest_phone=booking.guest_phone,
        start_time=booking.start_time,
        timezone=booking.timezone,
        form_data=booking.form_data,
        event_name=event_type.name,
        duration=event_type.duration,
        location=event_type.location,
        video_link=event_type.video_link,
        host_name=host_name,
        host_email=host_email,
        chat_history=chat_history,
        documents=documents,
        team_members=team_members,
        previous_bookings=previous,
    )


# ────────────────────────────────────────────────────────────────
# Generation
# ────────────────────────────────────────────────────────────────

def extract_talking_points(content: str) -> list[str]:
    """Numbered/bulleted lines or <li> items of at least 10 characters, at most 5."""
    candidates = [strip_html(item) for item in _LIST_ITEM_RE.findall(content)]
    for line in content.splitlines():
        match = _BULLET_RE.match(line.strip())
        if match:
            candidates.append(match.group(1).strip())
    points = [c for c in candidates if len(c) >= 10][:5]
    return points or list(DEFAULT_TALKING_POINTS)


def parse_host_reply(content: str) -> tuple[str, list[str]]:
    match = _HOST_REPLY_RE.search(content)
    if not match:
        return content.strip(), extract_talking_points(content)

    briefing, raw_points = match.group(1).strip(), match.group(2).strip()
    try:
        points = json.loads(raw_points)
    except json.JSONDecodeError:
        return briefing, extract_talking_points(content)
    if not isinstance(points, list) or not points:
        return briefing, extract_talking_points(content)
    return briefing, [str(point) for point in points[:5]]


def _details_prompt(ctx: BriefingContext) -> str:
    lines = [
        f"Meeting: {ctx.event_name}",
        f"Guest: {ctx.guest_name} ({ctx.guest_email})",
        f"With: {ctx.host_name or 'the host'}",
        f"When: {ctx.when()} ({ctx.timezone})",
        f"Duration: {ctx.duration} minutes",
        f"Location: {ctx.location}",
    ]
    if ctx.video_link:
        lines.append(f"Video link: {ctx.video_link}")
    if ctx.form_data:
        lines.append(f"Form responses:\n{json.dumps(ctx.form_data, indent=2)}")
    if ctx.chat_history:
        lines.append("Recent chat:\n" + "\n".join(f"{m.get('role')}: {m.get('content')}" for m in ctx.chat_history))
    if ctx.documents:
        lines.append(
            "Relevant documents:\n"
            + "\n".join(f"- {d['fileName']} (relevance {round(d['similarity'] * 100)}%)" for d in ctx.documents)
        )
    if ctx.team_members:
        lines.append(f"Team: {', '.join(ctx.team_members)}")
    if ctx.previous_bookings:
        lines.append(f"Returning guest with {ctx.previous_bookings} previous meeting(s)")
    else:
        lines.append("First-time guest")
    return "\n".join(lines)


def fallback_guest_briefing(ctx: BriefingContext) -> str:
    join = f"<li><strong>Join:</strong> {escape(ctx.video_link)}</li>" if ctx.video_link else ""
    return (
        f"<h2>Hello {escape(ctx.guest_name)}!</h2>"
        "<p>Your upcoming meeting is confirmed and we're looking forward to connecting with you.</p>"
        "<h3>Meeting details</h3><ul>"
        f"<li><strong>What:</strong> {escape(ctx.event_name)}</li>"
        f"<li><strong>With:</strong> {escape(ctx.host_name or 'your host')}</li>"
        f"<li><strong>When:</strong> {escape(ctx.when())}</li>"
        f"<li><strong>Duration:</strong> {ctx.duration} minutes</li>"
        f"<li><strong>Location:</strong> {escape(ctx.location)}</li>{join}</ul>"
        "<p>Bring any questions you may have. Need another time? Use the reschedule link in your confirmation email.</p>"
    )


def fallback_host_briefing(ctx: BriefingContext) -> str:
    status = (
        f"Returning client ({ctx.previous_bookings} previous meetings)"
        if ctx.previous_bookings
        else "First-time visitor"
    )
    phone = f"<li><strong>Phone:</strong> {escape(ctx.guest_phone)}</li>" if ctx.guest_phone else ""
    parts = [
        "<h2>Meeting brief</h2><h3>Overview</h3><ul>",
        f"<li><strong>Event:</strong> {escape(ctx.event_name)}</li>",
        f"<li><strong>Date:</strong> {escape(ctx.when())}</li>",
        f"<li><strong>Duration:</strong> {ctx.duration} minutes</li></ul>",
        "<h3>Guest</h3><ul>",
        f"<li><strong>Name:</strong> {escape(ctx.guest_name)}</li>",
        f"<li><strong>Email:</strong> {escape(ctx.guest_email)}</li>{phone}",
        f"<li><strong>Status:</strong> {status}</li></ul>",
    ]
    if ctx.chat_history:
        parts.append(f"<h3>Recent interactions</h3><p>{len(ctx.chat_history)} recent message(s) with the assistant.</p>")
    if ctx.documents:
        parts.append("<h3>Relevant resources</h3><ul>")
        parts.extend(f"<li>{escape(d['fileName'])}</li>" for d in ctx.documents)
        parts.append("</ul>")
    parts.append("<h3>Suggested talking points</h3><ul>")
    parts.extend(f"<li>{escape(point)}</li>" for point in DEFAULT_TALKING_POINTS)
    parts.append("</ul>")
    return "".join(parts)


async def generate_guest_briefing(ctx: BriefingContext) -> str:
    try:
        reply = await complete(
            [
                {"role": "system", "content": GUEST_SYSTEM_PROMPT},
                {"role": "user", "content": _details_prompt(ctx)},
            ],
            max_tokens=800,
        )
    except LLMUnavailable as e:
        logger.warning(f"Guest briefing for booking {ctx.booking_id} uses template: {e}")
        return fallback_guest_briefing(ctx)
    return reply.strip() or fallback_guest_briefing(ctx)


async def generate_host_briefing(ctx: BriefingContext) -> tuple[str, list[str]]:
    try:
        reply = await complete(
            [
                {"role": "system", "content": HOST_SYSTEM_PROMPT},
                {"role": "user", "content": _details_prompt(ctx)},
            ],
            max_tokens=1200,
        )
    except LLMUnavailable as e:
        logger.warning(f"Host briefing for booking {ctx.booking_id} uses template: {e}")
        reply = ""
    if not reply.strip():
        return fallback_host_briefing(ctx), list(DEFAULT_TALKING_POINTS)
    return parse_host_reply(reply)


async def get_briefing(session: AsyncSession, booking_id) -> Optional[MeetingBriefing]:
    result = await session.execute(select(MeetingBriefing).where(MeetingBriefing.booking_id == booking_id))
    return result.scalar_one_or_none()


async def generate_meeting_briefings(session: AsyncSession, booking: Booking) -> Optional[MeetingBriefing]:
    """Create the booking's briefing unless one exists; None when context is missing."""
    existing = await get_briefing(session, booking.id)
    if existing is not None:
        return existing

    ctx = await gather_briefing_context(session, booking)
    if ctx is None:
        return None

    guest_briefing = await generate_guest_briefing(ctx)
    host_briefing, talking_points = await generate_host_briefing(ctx)

    briefing = MeetingBriefing(
        booking_id=booking.id,
        guest_briefing=guest_briefing,
        host_briefing=host_briefing,
        talking_points=talking_points,
        context=ctx.to_dict(),
    )
    session.add(briefing)
    await session.flush()
    logger.info(f"Generated meeting briefing for booking {booking.id}")
    return briefing


# ────────────────────────────────────────────────────────────────
# Delivery
# ────────────────────────────────────────────────────────────────

def format_whatsapp_briefing(briefing_html: str, ctx: BriefingContext) -> str:
    lines = [
        "*PRE-MEETING BRIEFING*",
        "",
        "*Meeting details*",
        f"• Type: {ctx.event_name}",
        f"• Time: {ctx.when()}",
        f"• Duration: {ctx.duration} minutes",
        f"• Location: {ctx.location}",
    ]
    if ctx.video_link:
        lines.append(f"• Join: {ctx.video_link}")
    lines += ["", "*Your briefing*", strip_html(briefing_html)]
    return "\n".join(lines)


async def deliver_briefing(
    session: AsyncSession,
    briefing: MeetingBriefing,
    booking: Booking,
    owner: User,
) -> dict:
    """Email both briefs and WhatsApp the host brief; each channel is flagged once delivered."""
    ctx = await gather_briefing_context(session, booking)
    if ctx is None:
        return {"emailSent": False, "hostEmailSent": False, "whatsappSent": False}

    details = MeetingDetails(
        booking_id=ctx.booking_id,
        guest_name=ctx.guest_name,
        guest_email=ctx.guest_email,
        event_name=ctx.event_name,
        start_at=booking.start_time,
        end_at=booking.end_time,
        timezone=ctx.timezone,
        location=ctx.location,
        video_link=ctx.video_link,
        host_name=ctx.host_name,
    )

    if not briefing.email_sent:
        briefing.email_sent = await send_guest_briefing(details, briefing.guest_briefing)
    if not briefing.host_email_sent:
        briefing.host_email_sent = await send_email(
            ctx.host_email, f"Pre-meeting brief: {ctx.event_name}", briefing.host_briefing
        )

    if not briefing.whatsapp_sent and owner.whatsapp_enabled and owner.whatsapp_phone:
        briefing.whatsapp_sent = await send_user_message(
            owner, owner.whatsapp_phone, format_whatsapp_briefing(briefing.host_briefing, ctx)
        )

    await session.flush()
    return {
        "emailSent": briefing.email_sent,
        "hostEmailSent": briefing.host_email_sent,
        "whatsappSent": briefing.whatsapp_sent,
    }
