"""
WhatsApp messaging through an Evolution API instance.

Each user brings their own Evolution instance (url, api key, instance
name) stored on the user row; the server-wide EVOLUTION_API_URL /
EVOLUTION_API_KEY are used when the user has not set their own.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

import httpx

from .core.config import get_settings
from .models import User
from .utils import mask_phone

logger = logging.getLogger(__name__)

WHATSAPP_JID_SUFFIX = "@s.whatsapp.net"
MAX_MESSAGE_LENGTH = 300
UPSERT_EVENTS = ("messages.upsert", "MESSAGES_UPSERT")


@dataclass
class IncomingMessage:
    instance: str
    phone: str
    text: str
    message_id: Optional[str] = None
    push_name: Optional[str] = None


def format_evolution_number(phone: str) -> str:
    """'+1 (555) 010-2030' -> '15550102030@s.whatsapp.net'"""
    digits = re.sub(r"\D", "", phone or "")
    return f"{digits}{WHATSAPP_JID_SUFFIX}"


def split_message(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split long replies on paragraph boundaries; paragraphs are never cut."""
    text = text.strip()
    if len(text) <= max_length:
        return [text] if text else []

    parts: list[str] = []
    current = ""
    for paragraph in (p.strip() for p in text.split("\n\n")):
        if not paragraph:
            continue
        candidate = f"{current}\n\n{paragraph}" if current else paragraph
        if len(candidate) > max_length and current:
            parts.append(current)
            current = paragraph
        else:
            current = candidate
    if current:
        parts.append(current)
    return parts


def resolve_credentials(user: User) -> Optional[tuple[str, str, str]]:
    """(api_url, api_key, instance) for a user, or None when incomplete."""
    settings = get_settings()
    api_url = user.evolution_api_url or settings.evolution_api_url
    api_key = user.evolution_api_key or settings.evolution_api_key
    instance = user.evolution_instance_name
    if not api_url or not api_key or not instance:
        return None
    return api_url.rstrip("/"), api_key, instance


async def send_text(api_url: str, api_key: str, instance: str, phone: str, text: str) -> bool:
    try:
        async with httpx.AsyncClient(timeout=15) as client:
            response = await client.post(
                f"{api_url.rstrip('/')}/message/sendText/{instance}",
                json={"number": format_evolution_number(phone), "text": text},
                headers={"apikey": api_key, "Content-Type": "application/json"},
            )
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error(f"Evolution send to {mask_phone(phone)} failed: {e}")
        return False
    logger.info(f"WhatsApp message sent to {mask_phone(phone)} via instance {instance}")
    return True


async def send_user_message(user: User, phone: str, text: str) -> bool:
    """Send from a user's configured instance; False when WhatsApp is not set up."""
    credentials = resolve_credentials(user)
    if not user.whatsapp_enabled or credentials is None:
        logger.warning(f"WhatsApp not configured for user {user.id}; skipping send")
        return False
    api_url, api_key, instance = credentials
    return await send_text(api_url, api_key, instance, phone, text)


def extract_incoming(payload: dict) -> Optional[IncomingMessage]:
    """
    Pull the sender and text out of an Evolution webhook payload.

    Returns None for other events, our own outgoing messages (fromMe) and
    messages without text.
    """
    if payload.get("event") not in UPSERT_EVENTS:
        return None

    data = payload.get("data") or {}
    key = data.get("key") or {}
    if key.get("fromMe"):
        return None

    message = data.get("message") or {}
    text = (
        message.get("conversation")
        or (message.get("extendedTextMessage") or {}).get("text")
        or (message.get("imageMessage") or {}).get("caption")
    )
    remote_jid = key.get("remoteJid") or ""
    if not text or not remote_jid:
        return None

    return IncomingMessage(
        instance=payload.get("instance") or "",
        phone=remote_jid.replace(WHATSAPP_JID_SUFFIX, ""),
        text=text.strip(),
        message_id=key.get("id"),
        push_name=data.get("pushName"),
    )
