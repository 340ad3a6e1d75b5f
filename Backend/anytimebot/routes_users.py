"""
Accounts: password signup/login and the owner's profile and messaging settings.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import SESSION_COOKIE_NAME, create_session_token, hash_password, verify_password
from .core.config import get_settings
from .core.db import get_session
from .core.request_context import RequestContext, get_request_context
from .core.responses import success_response
from .core.schemas import CamelModel
from .models import User
from .usage_tracker import get_subscription, initialize_account
from .utils import get_zone, is_valid_email, is_valid_slug, slugify

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["users"])

MIN_PASSWORD_LENGTH = 6


class SignupRequest(CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None


class LoginRequest(CamelModel):
    email: Optional[str] = None
    password: Optional[str] = None


class ProfileUpdate(CamelModel):
    name: Optional[str] = None
    username: Optional[str] = None
    timezone: Optional[str] = None


class MessagingSettingsUpdate(CamelModel):
    whatsapp_enabled: Optional[bool] = None
    whatsapp_phone: Optional[str] = None
    evolution_api_url: Optional[str] = None
    evolution_api_key: Optional[str] = None
    evolution_instance_name: Optional[str] = None
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_phone_number: Optional[str] = None


def user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "username": user.username,
        "timezone": user.timezone,
        "whatsappEnabled": user.whatsapp_enabled,
        "whatsappPhone": user.whatsapp_phone,
        "evolutionApiUrl": user.evolution_api_url,
        "evolutionInstanceName": user.evolution_instance_name,
        "hasEvolutionApiKey": bool(user.evolution_api_key),
        "twilioAccountSid": user.twilio_account_sid,
        "twilioPhoneNumber": user.twilio_phone_number,
        "hasTwilioAuthToken": bool(user.twilio_auth_token),
        "createdAt": user.created_at.isoformat() if user.created_at else None,
    }


async def unique_username(session: AsyncSession, name: str) -> str:
    """Slugified name, suffixed 1, 2, ... until unused."""
    base = slugify(name) or "user"
    candidate, counter = base, 1
    while True:
        result = await session.execute(select(func.count(User.id)).where(User.username == candidate))
        if result.scalar_one() == 0:
            return candidate
        candidate = f"{base}{counter}"
        counter += 1


def _set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        max_age=get_settings().session_ttl_hours * 3600,
        httponly=True,
        samesite="lax",
    )


# ────────────────────────────────────────────────────────────────
# Auth
# ────────────────────────────────────────────────────────────────

@router.post("/auth/signup", status_code=status.HTTP_201_CREATED)
async def signup(
    request: SignupRequest,
    response: Response,
    session: AsyncSession = Depends(get_session),
):
    if not request.name or not request.email or not request.password:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required fields")
    email = request.email.strip().lower()
    if not is_valid_email(email):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid email address")
    if len(request.password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
        )

    existing = await session.execute(select(User).where(User.email == email))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="User already exists")

    user = User(
        name=request.name.strip(),
        email=email,
        username=await unique_username(session, request.name),
        password_hash=hash_password(request.password),
        timezone=get_settings().default_timezone,
    )
    session.add(user)
    await session.flush()
    await initialize_account(session, user.id)
    await session.commit()
    await session.refresh(user)
    logger.info(f"User {user.id} signed up as {user.username}")

    token = create_session_token(user.id, user.email)
    _set_session_cookie(response, token)
    return success_response({"user": user_to_dict(user), "token": token})


@router.post("/auth/login")
async def login(
    request: LoginRequest,
    response: Response,
    session: AsyncSession = Depends(get_session),
):
    email = (request.email or "").strip().lower()
    result = await session.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()
    if not user or not verify_password(request.password or "", user.password_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    token = create_session_token(user.id, user.email)
    _set_session_cookie(response, token)
    return success_response({"user": user_to_dict(user), "token": token})


@router.post("/auth/logout")
async def logout(response: Response):
    response.delete_cookie(SESSION_COOKIE_NAME)
    return success_response({"loggedOut": True})


# ────────────────────────────────────────────────────────────────
# Profile and settings
# ────────────────────────────────────────────────────────────────

@router.get("/user/me")
async def get_me(
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    user = await session.get(User, ctx.user_id)
    subscription = await get_subscription(session, user.id)
    data = user_to_dict(user)
    data["plan"] = subscription.plan.value
    return success_response(data)


@router.patch("/user/settings")
async def update_profile(
    request: ProfileUpdate,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    user = await session.get(User, ctx.user_id)

    if request.username is not None and request.username != user.username:
        if not is_valid_slug(request.username):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Username must be 3-20 characters: letters, numbers, hyphens and underscores",
            )
        taken = await session.execute(
            select(User.id).where(User.username == request.username, User.id != user.id)
        )
        if taken.scalar_one_or_none() is not None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username is already taken")
        user.username = request.username

    if request.name is not None:
        user.name = request.name.strip()
    if request.timezone is not None:
        if get_zone(request.timezone).key != request.timezone:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid timezone")
        user.timezone = request.timezone

    await session.commit()
    await session.refresh(user)
    return success_response(user_to_dict(user))


@router.put("/user/settings")
async def update_messaging_settings(
    request: MessagingSettingsUpdate,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    user = await session.get(User, ctx.user_id)
    for field, value in request.model_dump(exclude_unset=True).items():
        setattr(user, field, value)

    await session.commit()
    await session.refresh(user)
    logger.info(f"User {user.id} updated messaging settings")
    return success_response(user_to_dict(user))
