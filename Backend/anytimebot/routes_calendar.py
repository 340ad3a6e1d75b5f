import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import InvalidSessionToken, create_session_token, verify_session_token
from .core.config import get_settings
from .core.db import get_session
from .core.request_context import RequestContext, get_request_context
from .core.responses import success_response
from .google_calendar import (
    CalendarError,
    build_auth_url,
    exchange_code,
    get_calendar_account,
    get_calendar_info,
    list_calendar_events,
    store_tokens,
)
from .models import User
from .utils import parse_iso_datetime

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/calendar", tags=["calendar"])


def _settings_redirect(outcome: str) -> RedirectResponse:
    base = get_settings().app_base_url.rstrip("/")
    return RedirectResponse(f"{base}/dashboard/calendar?{outcome}", status_code=status.HTTP_302_FOUND)


@router.get("/connect")
async def connect_calendar(ctx: RequestContext = Depends(get_request_context)):
    # The OAuth state is a short session token so the callback can trust the user id
    state = create_session_token(ctx.user_id)
    return success_response({"authUrl": build_auth_url(state)})


@router.get("/callback")
async def calendar_callback(
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    session: AsyncSession = Depends(get_session),
):
    if error:
        logger.warning(f"Google OAuth returned an error: {error}")
        return _settings_redirect("error=access_denied")
    if not code or not state:
        return _settings_redirect("error=missing_params")

    try:
        user_id = int(verify_session_token(state)["sub"])
    except (InvalidSessionToken, KeyError, ValueError) as e:
        logger.warning(f"Calendar callback with invalid state: {e}")
        return _settings_redirect("error=invalid_state")

    if await session.get(User, user_id) is None:
        return _settings_redirect("error=invalid_state")

    try:
        tokens = await exchange_code(code)
    except CalendarError as e:
        logger.error(f"Calendar connect failed for user {user_id}: {e}")
        return _settings_redirect("error=token_exchange_failed")

    await store_tokens(session, user_id, tokens)
    logger.info(f"Connected Google Calendar for user {user_id}")
    return _settings_redirect("success=true")


@router.get("/status")
async def calendar_status(
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    account = await get_calendar_account(session, ctx.user_id)
    if not account or not account.access_token:
        return success_response({"connected": False, "calendar": None})

    try:
        info = await get_calendar_info(session, ctx.user_id)
    except CalendarError as e:
        logger.warning(f"Calendar status lookup failed for user {ctx.user_id}: {e}")
        return success_response({"connected": True, "calendar": None, "error": "Calendar could not be reached"})
    return success_response({"connected": True, "calendar": info})


@router.get("/events")
async def calendar_events(
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    if not start_date or not end_date:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Start date and end date are required")
    try:
        start = parse_iso_datetime(start_date)
        end = parse_iso_datetime(end_date)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid date")

    try:
        events = await list_calendar_events(session, ctx.user_id, start, end)
    except CalendarError as e:
        logger.error(f"Listing calendar events failed for user {ctx.user_id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to fetch calendar events")
    return success_response({"events": events})
