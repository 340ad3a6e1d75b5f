"""
Google Calendar integration over the REST API.

Users connect their calendar through OAuth (connect -> callback); tokens are
stored in calendar_accounts and refreshed when expired. The scheduler uses
free/busy queries to block slots and to check team member availability, and
inserts/deletes events for confirmed bookings.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import get_settings
from .models import CalendarAccount
from .utils import BlockedTime, parse_iso_datetime

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
CALENDAR_API = "https://www.googleapis.com/calendar/v3"
CALENDAR_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
]


class CalendarError(Exception):
    """Raised when the calendar is not connected or Google rejects a call."""


def _rfc3339(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_auth_url(state: str) -> str:
    settings = get_settings()
    params = {
        "client_id": settings.google_client_id,
        "redirect_uri": settings.google_redirect_uri,
        "response_type": "code",
        "scope": " ".join(CALENDAR_SCOPES),
        "access_type": "offline",
        "prompt": "consent",
        "state": state,
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


async def exchange_code(code: str) -> dict:
    settings = get_settings()
    async with httpx.AsyncClient(timeout=10) as client:
        response = await client.post(
            GOOGLE_TOKEN_URL,
            data={
                "code": code,
                "client_id": settings.google_client_id,
                "client_secret": settings.google_client_secret,
                "redirect_uri": settings.google_redirect_uri,
                "grant_type": "authorization_code",
            },
        )
    if response.status_code >= 400:
        raise CalendarError(f"Google token exchange failed: HTTP {response.status_code}")
    return response.json()


async def store_tokens(session: AsyncSession, user_id: int, tokens: dict) -> CalendarAccount:
    account = await get_calendar_account(session, user_id)
    if not account:
        account = CalendarAccount(user_id=user_id, provider="google")
        session.add(account)
    account.access_token = tokens.get("access_token")
    if tokens.get("refresh_token"):
        account.refresh_token = tokens["refresh_token"]
    if tokens.get("expires_in"):
        account.expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(tokens["expires_in"]))
    await session.commit()
    return account


async def get_calendar_account(session: AsyncSession, user_id: int) -> Optional[CalendarAccount]:
    result = await session.execute(
        select(CalendarAccount).where(
            CalendarAccount.user_id == user_id,
            CalendarAccount.provider == "google",
        )
    )
    return result.scalar_one_or_none()


async def _access_token(session: AsyncSession, account: CalendarAccount) -> str:
    if not account.access_token:
        raise CalendarError("No Google account connected")

    expired = account.expires_at is not None and account.expires_at <= datetime.now(timezone.utc)
    if not expired:
        return account.access_token

    if not account.refresh_token:
        raise CalendarError("Google access token expired and no refresh token is stored")

    settings = get_settings()
    async with httpx.AsyncClient(timeout=10) as client:
        response = await client.post(
            GOOGLE_TOKEN_URL,
            data={
                "client_id": settings.google_client_id,
                "client_secret": settings.google_client_secret,
                "refresh_token": account.refresh_token,
                "grant_type": "refresh_token",
            },
        )
    if response.status_code >= 400:
        raise CalendarError(f"Google token refresh failed: HTTP {response.status_code}")

    data = response.json()
    account.access_token = data["access_token"]
    account.expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(data.get("expires_in", 3600)))
    await session.flush()
    logger.info(f"Refreshed Google access token for user {account.user_id}")
    return account.access_token


async def _request(
    session: AsyncSession,
    user_id: int,
    method: str,
    path: str,
    **kwargs,
) -> httpx.Response:
    account = await get_calendar_account(session, user_id)
    if not account:
        raise CalendarError("No Google account connected")
    token = await _access_token(session, account)
    async with httpx.AsyncClient(timeout=10) as client:
        response = await client.request(
            method,
            f"{CALENDAR_API}{path}",
            headers={"Authorization": f"Bearer {token}"},
            **kwargs,
        )
    if response.status_code >= 400:
        raise CalendarError(f"Google Calendar {method} {path} failed: HTTP {response.status_code}")
    return response


async def query_freebusy(
    session: AsyncSession,
    user_id: int,
    start: datetime,
    end: datetime,
) -> list[BlockedTime]:
    body = {
        "timeMin": _rfc3339(start),
        "timeMax": _rfc3339(end),
        "items": [{"id": "primary"}],
    }
    response = await _request(session, user_id, "POST", "/freeBusy", json=body)
    busy_intervals = response.json().get("calendars", {}).get("primary", {}).get("busy", [])
    return [
        BlockedTime(start_at_utc=parse_iso_datetime(item["start"]), end_at_utc=parse_iso_datetime(item["end"]))
        for item in busy_intervals
    ]


async def fetch_busy_blocks(
    session: AsyncSession,
    user_id: int,
    start: datetime,
    end: datetime,
) -> list[BlockedTime]:
    """Busy blocks for slot filtering; an unconnected or failing calendar blocks nothing."""
    if not await get_calendar_account(session, user_id):
        return []
    try:
        return await query_freebusy(session, user_id, start, end)
    except (CalendarError, httpx.HTTPError) as e:
        logger.error(f"Calendar busy lookup failed for user {user_id}: {e}")
        return []


async def is_user_free(session: AsyncSession, user_id: Optional[int], start: datetime, end: datetime) -> bool:
    """Team availability: members without a connected calendar count as unavailable."""
    if user_id is None or not await get_calendar_account(session, user_id):
        return False
    try:
        busy = await query_freebusy(session, user_id, start, end)
    except (CalendarError, httpx.HTTPError) as e:
        logger.error(f"Free/busy check failed for user {user_id}: {e}")
        return False
    return len(busy) == 0


async def has_calendar(session: AsyncSession, user_id: Optional[int]) -> bool:
    return user_id is not None and await get_calendar_account(session, user_id) is not None


async def create_calendar_event(
    session: AsyncSession,
    user_id: int,
    summary: str,
    start: datetime,
    end: datetime,
    description: str = "",
    location: str = "",
    attendees: Optional[list[str]] = None,
) -> Optional[str]:
    event = {
        "summary": summary,
        "description": description,
        "location": location,
        "start": {"dateTime": _rfc3339(start), "timeZone": "UTC"},
        "end": {"dateTime": _rfc3339(end), "timeZone": "UTC"},
        "attendees": [{"email": email} for email in attendees or []],
        "reminders": {"useDefault": True},
    }
    response = await _request(
        session, user_id, "POST", "/calendars/primary/events",
        params={"sendUpdates": "all"}, json=event,
    )
    return response.json().get("id")


async def update_calendar_event_time(
    session: AsyncSession,
    user_id: int,
    event_id: str,
    start: datetime,
    end: datetime,
) -> None:
    body = {
        "start": {"dateTime": _rfc3339(start), "timeZone": "UTC"},
        "end": {"dateTime": _rfc3339(end), "timeZone": "UTC"},
    }
    await _request(
        session, user_id, "PATCH", f"/calendars/primary/events/{event_id}",
        params={"sendUpdates": "all"}, json=body,
    )


async def delete_calendar_event(session: AsyncSession, user_id: int, event_id: str) -> None:
    await _request(
        session, user_id, "DELETE", f"/calendars/primary/events/{event_id}",
        params={"sendUpdates": "all"},
    )


async def list_calendar_events(
    session: AsyncSession,
    user_id: int,
    start: datetime,
    end: datetime,
) -> list[dict]:
    response = await _request(
        session, user_id, "GET", "/calendars/primary/events",
        params={
            "timeMin": _rfc3339(start),
            "timeMax": _rfc3339(end),
            "singleEvents": "true",
            "orderBy": "startTime",
        },
    )
    return response.json().get("items", [])


async def get_calendar_info(session: AsyncSession, user_id: int) -> dict:
    response = await _request(session, user_id, "GET", "/calendars/primary")
    data = response.json()
    return {"id": data.get("id"), "summary": data.get("summary"), "timeZone": data.get("timeZone")}
