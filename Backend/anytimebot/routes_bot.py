"""
Assistant (bot) API: owner configuration, knowledge documents and the
public streaming chat used by the booking page widget.
"""

import asyncio
import ipaddress
import logging
import socket
from typing import Optional
from urllib.parse import urlparse

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse
from pydantic import Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .availability import format_available_slots, get_available_slots
from .bot import (
    BOT_TONES,
    DEFAULT_AVATAR,
    DEFAULT_BOT_NAME,
    DEFAULT_GREETING,
    booking_page_url,
    build_system_prompt,
    find_similar_documents,
    get_bot_documents,
    get_primary_booking_page,
    get_user_bot,
    is_booking_intent,
)
from .core.db import get_session
from .core.request_context import RequestContext, get_request_context
from .core.responses import success_response
from .core.schemas import CamelModel
from .llm import LLMUnavailable, llm_configured, stream_completion
from .models import Bot, BotDocument, EventType, User
from .rate_limiter import public_rate_limit
from .usage_tracker import increment_usage, require_capacity, require_quota
from .utils import strip_html

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/bot", tags=["bot"])

MIN_DOCUMENT_LENGTH = 10
TEXT_EXTENSIONS = (".txt", ".md", ".markdown")
CHAT_HISTORY_LIMIT = 10


class BotConfigUpdate(CamelModel):
    name: Optional[str] = None
    avatar: Optional[str] = None
    greeting: Optional[str] = None
    personality: Optional[str] = None
    tone: Optional[str] = None
    is_active: Optional[bool] = None


class ChatMessage(CamelModel):
    role: str
    content: str


class ChatRequest(CamelModel):
    message: str = Field(min_length=1)
    username: str
    history: list[ChatMessage] = Field(default_factory=list)


def bot_to_dict(bot: Bot) -> dict:
    return {
        "id": bot.id,
        "name": bot.name,
        "avatar": bot.avatar,
        "greeting": bot.greeting or DEFAULT_GREETING,
        "personality": bot.personality,
        "tone": bot.tone,
        "isActive": bot.is_active,
    }


def document_to_dict(document: BotDocument) -> dict:
    return {
        "id": document.id,
        "fileName": document.file_name,
        "fileType": document.file_type,
        "sourceUrl": document.source_url,
        "size": len(document.content),
        "preview": document.content[:200],
        "createdAt": document.created_at.isoformat() if document.created_at else None,
    }


async def _require_bot(session: AsyncSession, user_id: int) -> Bot:
    bot = await get_user_bot(session, user_id)
    if not bot:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bot not found. Configure your bot first.")
    return bot


async def require_public_url(url: str) -> None:
    """400 unless the URL is http(s) and every address its host resolves to is public."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only http and https URLs are supported")

    host = parsed.hostname
    if host == "localhost" or host.endswith(".localhost"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="URL must point to a public host")
    try:
        infos = await asyncio.get_running_loop().getaddrinfo(host, None, type=socket.SOCK_STREAM)
    except (OSError, UnicodeError) as e:
        logger.warning(f"Could not resolve document URL host {host}: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Could not fetch the URL")

    for info in infos:
        if not ipaddress.ip_address(info[4][0].split("%", 1)[0]).is_global:
            logger.warning(f"Refusing to fetch {url}: {host} resolves to a private address")
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="URL must point to a public host")


async def _check_redirect_target(request: httpx.Request) -> None:
    await require_public_url(str(request.url))


async def fetch_url_text(url: str) -> str:
    await require_public_url(url)
    try:
        async with httpx.AsyncClient(
            timeout=15, follow_redirects=True, event_hooks={"request": [_check_redirect_target]}
        ) as client:
            response = await client.get(url, headers={"User-Agent": "AnytimeBot/1.0"})
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning(f"Could not fetch document URL {url}: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Could not fetch the URL")

    if "pdf" in response.headers.get("content-type", ""):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="PDF files are not supported yet")
    if "html" in response.headers.get("content-type", ""):
        return strip_html(response.text)
    return response.text


async def _read_document_input(request: Request) -> tuple[str, str, str, Optional[str]]:
    """(file_name, file_type, content, source_url) from multipart or JSON bodies."""
    content_type = request.headers.get("content-type", "")

    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        upload = form.get("file")
        if upload is None or not hasattr(upload, "read"):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No file provided")
        file_name = upload.filename or "document.txt"
        if file_name.lower().endswith(".pdf") or upload.content_type == "application/pdf":
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="PDF files are not supported yet")
        if not file_name.lower().endswith(TEXT_EXTENSIONS):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only .txt and .md files are supported")
        raw = await upload.read()
        return file_name, "text", raw.decode("utf-8", errors="ignore"), None

    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid request body")
    if not isinstance(body, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid request body")

    if body.get("url"):
        url = str(body["url"])
        return body.get("fileName") or url, "url", await fetch_url_text(url), url
    if body.get("text"):
        return body.get("fileName") or "Text snippet", "text", str(body["text"]), None
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Provide a file, text or url")


# ────────────────────────────────────────────────────────────────
# Configuration
# ────────────────────────────────────────────────────────────────

@router.get("/config")
async def get_bot_config(
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    bot = await get_user_bot(session, ctx.user_id)
    if not bot:
        return success_response(
            {
                "id": None,
                "name": DEFAULT_BOT_NAME,
                "avatar": DEFAULT_AVATAR,
                "greeting": DEFAULT_GREETING,
                "personality": None,
                "tone": "professional",
                "isActive": False,
            }
        )
    return success_response(bot_to_dict(bot))


@router.post("/config")
async def save_bot_config(
    request: BotConfigUpdate,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    if request.tone is not None and request.tone not in BOT_TONES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Tone must be one of: {', '.join(BOT_TONES)}",
        )

    bot = await get_user_bot(session, ctx.user_id)
    if not bot:
        bot = Bot(
            user_id=ctx.user_id,
            name=DEFAULT_BOT_NAME,
            avatar=DEFAULT_AVATAR,
            greeting=DEFAULT_GREETING,
            tone="professional",
            is_active=True,
        )
        session.add(bot)

    for field, value in request.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(bot, field, value)

    await session.commit()
    await session.refresh(bot)
    logger.info(f"Saved bot config for user {ctx.user_id}")
    return success_response(bot_to_dict(bot))


# ────────────────────────────────────────────────────────────────
# Documents
# ────────────────────────────────────────────────────────────────

@router.get("/documents")
async def list_documents(
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    bot = await get_user_bot(session, ctx.user_id)
    if not bot:
        return success_response([])
    return success_response([document_to_dict(d) for d in await get_bot_documents(session, bot.id)])


@router.post("/documents", status_code=status.HTTP_201_CREATED)
async def upload_document(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    bot = await _require_bot(session, ctx.user_id)
    file_name, file_type, content, source_url = await _read_document_input(request)

    content = content.strip()
    if len(content) < MIN_DOCUMENT_LENGTH:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Document content is too short")

    count = await session.execute(select(func.count(BotDocument.id)).where(BotDocument.bot_id == bot.id))
    await require_capacity(session, ctx.user_id, "bot_documents", count.scalar_one(), "Bot documents")

    document = BotDocument(
        bot_id=bot.id,
        file_name=file_name[:255],
        file_type=file_type,
        source_url=source_url,
        content=content,
    )
    session.add(document)
    await session.commit()
    await session.refresh(document)
    logger.info(f"Stored document {document.id} ({len(content)} chars) for bot {bot.id}")
    return success_response(document_to_dict(document))


@router.delete("/documents/{document_id}")
async def delete_document(
    document_id: int,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    result = await session.execute(
        select(BotDocument)
        .join(Bot, Bot.id == BotDocument.bot_id)
        .where(BotDocument.id == document_id, Bot.user_id == ctx.user_id)
    )
    document = result.scalar_one_or_none()
    if not document:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
    await session.delete(document)
    await session.commit()
    return success_response({"deleted": True, "id": document_id})


# ────────────────────────────────────────────────────────────────
# Public widget
# ────────────────────────────────────────────────────────────────

async def _public_bot(session: AsyncSession, username: str) -> tuple[User, Bot]:
    result = await session.execute(
        select(User, Bot).join(Bot, Bot.user_id == User.id).where(User.username == username)
    )
    row = result.one_or_none()
    if row is None or not row[1].is_active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bot not found")
    return row[0], row[1]


@router.get("/public-config")
async def public_bot_config(
    username: str = Query(...),
    session: AsyncSession = Depends(get_session),
):
    owner, bot = await _public_bot(session, username)
    page = await get_primary_booking_page(session, owner.id)
    return success_response(
        {
            "name": bot.name,
            "avatar": bot.avatar,
            "greeting": bot.greeting or DEFAULT_GREETING,
            "tone": bot.tone,
            "ownerName": owner.name,
            "bookingUrl": booking_page_url(owner.username, page.slug) if page else None,
        }
    )


async def _slots_context(session: AsyncSession, owner: User) -> Optional[str]:
    page = await get_primary_booking_page(session, owner.id)
    if page is None:
        return None
    result = await session.execute(
        select(EventType)
        .where(EventType.booking_page_id == page.id, EventType.is_active.is_(True))
        .order_by(EventType.id)
        .limit(1)
    )
    event_type = result.scalar_one_or_none()
    if event_type is None:
        return None
    slots = await get_available_slots(session, event_type, page, owner)
    return f"Next available times for {event_type.name} ({owner.timezone}):\n{format_available_slots(slots, owner.timezone)}"


@router.post("/chat", dependencies=[Depends(public_rate_limit())])
async def chat(
    request: ChatRequest,
    session: AsyncSession = Depends(get_session),
):
    owner, bot = await _public_bot(session, request.username)
    await require_quota(session, owner.id, "ai")
    if not llm_configured():
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Assistant is not available")

    documents = find_similar_documents(request.message, await get_bot_documents(session, bot.id))
    page = await get_primary_booking_page(session, owner.id)
    url = booking_page_url(owner.username, page.slug) if page and owner.username else None
    system_prompt = build_system_prompt(bot, owner, documents, url)
    if is_booking_intent(request.message):
        slots = await _slots_context(session, owner)
        if slots:
            system_prompt += f"\n\n{slots}"

    messages = [{"role": "system", "content": system_prompt}]
    messages += [
        {"role": m.role, "content": m.content}
        for m in request.history[-CHAT_HISTORY_LIMIT:]
        if m.role in ("user", "assistant")
    ]
    messages.append({"role": "user", "content": request.message})

    await increment_usage(session, owner.id, "ai")
    await session.commit()

    async def token_stream():
        try:
            async for delta in stream_completion(messages, max_tokens=500, temperature=0.7):
                yield delta
        except LLMUnavailable as e:
            logger.error(f"Chat stream for bot {bot.id} failed: {e}")
            yield "\n\nSorry, something went wrong. Please try again."

    return StreamingResponse(token_stream(), media_type="text/plain; charset=utf-8")
