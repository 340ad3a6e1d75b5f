"""
Transactional email through Resend.

Every sender returns True when Resend accepted the message and False when
email is not configured or the request failed; callers never fail a
booking because of email.
"""

import base64
import logging
from dataclasses import dataclass
from datetime import datetime
from html import escape
from typing import Optional

import httpx

from .core.config import get_settings
from .ics import build_ics_event
from .utils import format_local

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"


@dataclass
class MeetingDetails:
    booking_id: str
    guest_name: str
    guest_email: str
    event_name: str
    start_at: datetime
    end_at: datetime
    timezone: str
    location: str
    video_link: Optional[str] = None
    host_name: Optional[str] = None


async def send_email(
    to_email: str,
    subject: str,
    html: str,
    ics_filename: Optional[str] = None,
    ics_text: Optional[str] = None,
) -> bool:
    settings = get_settings()
    if not settings.resend_api_key or not settings.resend_from:
        logger.warning("Resend is not configured; skipping email send.")
        return False

    payload = {
        "from": settings.resend_from,
        "to": to_email,
        "subject": subject,
        "html": html,
    }
    if ics_filename and ics_text:
        attachment_content = base64.b64encode(ics_text.encode("utf-8")).decode("ascii")
        payload["attachments"] = [
            {
                "filename": ics_filename,
                "content": attachment_content,
                "content_type": "text/calendar; charset=utf-8",
            }
        ]

    headers = {
        "Authorization": f"Bearer {settings.resend_api_key}",
        "Content-Type": "application/json",
    }

    try:
        async with httpx.AsyncClient(timeout=10) as client:
            response = await client.post(RESEND_URL, json=payload, headers=headers)
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error(f"Email to {to_email} failed: {e}")
        return False
    return True


def _layout(title: str, body: str) -> str:
    return (
        "<!DOCTYPE html><html><body style=\"font-family: Arial, sans-serif; color: #333;\">"
        "<div style=\"max-width: 600px; margin: 0 auto; padding: 20px;\">"
        f"<h2>{escape(title)}</h2>{body}"
        "</div></body></html>"
    )


def _details_html(details: MeetingDetails) -> str:
    when = format_local(details.start_at, details.timezone)
    rows = [
        f"<li><strong>What:</strong> {escape(details.event_name)}</li>",
        f"<li><strong>When:</strong> {escape(when)} ({escape(details.timezone)})</li>",
        f"<li><strong>Where:</strong> {escape(details.location)}</li>",
    ]
    if details.host_name:
        rows.append(f"<li><strong>With:</strong> {escape(details.host_name)}</li>")
    if details.video_link:
        rows.append(f"<li><strong>Join:</strong> <a href=\"{escape(details.video_link)}\">{escape(details.video_link)}</a></li>")
    return "<ul>" + "".join(rows) + "</ul>"


def _links_html(cancel_link: Optional[str], reschedule_link: Optional[str]) -> str:
    links = []
    if reschedule_link:
        links.append(f"<a href=\"{escape(reschedule_link)}\">Reschedule</a>")
    if cancel_link:
        links.append(f"<a href=\"{escape(cancel_link)}\">Cancel</a>")
    return f"<p>{' | '.join(links)}</p>" if links else ""


def _ics_for(details: MeetingDetails, cancelled: bool = False, sequence: int = 0) -> str:
    return build_ics_event(
        uid=f"{details.booking_id}@anytimebot",
        start_at=details.start_at,
        end_at=details.end_at,
        summary=details.event_name,
        description=f"Meeting with {details.host_name or 'your host'}",
        location=details.video_link or details.location,
        sequence=sequence,
        cancelled=cancelled,
    )


async def send_booking_confirmation(
    details: MeetingDetails,
    pending: bool = False,
    cancel_link: Optional[str] = None,
    reschedule_link: Optional[str] = None,
) -> bool:
    intro = (
        "Your booking request was received and is awaiting confirmation."
        if pending
        else "Your booking is confirmed."
    )
    html = _layout(
        "Booking received" if pending else "Booking confirmed",
        f"<p>Hi {escape(details.guest_name)},</p><p>{intro}</p>"
        + _details_html(details)
        + _links_html(cancel_link, reschedule_link),
    )
    return await send_email(
        details.guest_email,
        f"{'Pending' if pending else 'Confirmed'}: {details.event_name}",
        html,
        ics_filename="invite.ics",
        ics_text=_ics_for(details),
    )


async def send_booking_cancellation(details: MeetingDetails, reason: Optional[str] = None) -> bool:
    body = f"<p>Hi {escape(details.guest_name)},</p><p>Your booking has been cancelled.</p>" + _details_html(details)
    if reason:
        body += f"<p><strong>Reason:</strong> {escape(reason)}</p>"
    return await send_email(
        details.guest_email,
        f"Cancelled: {details.event_name}",
        _layout("Booking cancelled", body),
        ics_filename="cancel.ics",
        ics_text=_ics_for(details, cancelled=True, sequence=1),
    )


async def send_booking_rescheduled(
    details: MeetingDetails,
    previous_start: datetime,
    cancel_link: Optional[str] = None,
    reschedule_link: Optional[str] = None,
) -> bool:
    before = format_local(previous_start, details.timezone)
    body = (
        f"<p>Hi {escape(details.guest_name)},</p>"
        f"<p>Your booking previously on {escape(before)} has been moved.</p>"
        + _details_html(details)
        + _links_html(cancel_link, reschedule_link)
    )
    return await send_email(
        details.guest_email,
        f"Rescheduled: {details.event_name}",
        _layout("Booking rescheduled", body),
        ics_filename="invite.ics",
        ics_text=_ics_for(details, sequence=1),
    )


async def send_booking_reminder(
    details: MeetingDetails,
    cancel_link: Optional[str] = None,
    reschedule_link: Optional[str] = None,
) -> bool:
    body = (
        f"<p>Hi {escape(details.guest_name)},</p><p>This is a reminder of your meeting tomorrow.</p>"
        + _details_html(details)
        + _links_html(cancel_link, reschedule_link)
    )
    return await send_email(details.guest_email, f"Reminder: {details.event_name}", _layout("Upcoming meeting", body))


async def send_meeting_follow_up(details: MeetingDetails, summary: dict) -> bool:
    key_points = "".join(f"<li>{escape(str(point))}</li>" for point in summary.get("keyPoints", []))
    action_items = "".join(
        f"<li>{escape(str(item.get('text') if isinstance(item, dict) else item))}</li>"
        for item in summary.get("actionItems", [])
    )
    body = f"<p>Hi {escape(details.guest_name)},</p><p>{escape(str(summary.get('summary', '')))}</p>"
    if key_points:
        body += f"<h3>Key points</h3><ul>{key_points}</ul>"
    if action_items:
        body += f"<h3>Action items</h3><ul>{action_items}</ul>"
    return await send_email(
        details.guest_email,
        f"Summary: {details.event_name}",
        _layout("Meeting summary", body),
    )


async def send_guest_briefing(details: MeetingDetails, briefing_html: str) -> bool:
    return await send_email(
        details.guest_email,
        f"Your upcoming meeting: {details.event_name}",
        _layout("Pre-meeting brief", briefing_html),
    )
