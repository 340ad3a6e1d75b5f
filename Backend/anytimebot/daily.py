"""
Daily.co REST client (rooms, meeting tokens, recordings).
"""

import base64
import hashlib
import hmac
import logging
import time
from typing import Optional

import httpx

from .core.config import get_settings

logger = logging.getLogger(__name__)

DAILY_API_URL = "https://api.daily.co/v1"
DEFAULT_ROOM_TTL_SECONDS = 24 * 60 * 60


class DailyError(Exception):
    """Raised when Daily is not configured or rejects a request."""


def _headers() -> dict:
    settings = get_settings()
    if not settings.daily_api_key:
        raise DailyError("Daily.co API key not configured")
    return {
        "Authorization": f"Bearer {settings.daily_api_key}",
        "Content-Type": "application/json",
    }


async def create_room(
    name: str,
    exp: Optional[int] = None,
    enable_recording: bool = False,
    enable_transcription: bool = False,
    privacy: str = "private",
) -> dict:
    properties = {
        "enable_chat": True,
        "enable_screenshare": True,
        "enable_knocking": False,
        "start_video_off": False,
        "start_audio_off": False,
        "max_participants": 10,
        "eject_at_room_exp": True,
        "exp": exp or int(time.time()) + DEFAULT_ROOM_TTL_SECONDS,
    }
    if enable_recording:
        properties["enable_recording"] = "cloud"
    if enable_transcription:
        properties["enable_transcription"] = True

    async with httpx.AsyncClient(timeout=10) as client:
        response = await client.post(
            f"{DAILY_API_URL}/rooms",
            json={"name": name, "privacy": privacy, "properties": properties},
            headers=_headers(),
        )
    if response.status_code >= 400:
        logger.error(f"Daily.co room creation failed: HTTP {response.status_code} {response.text}")
        raise DailyError(f"Failed to create room: {response.status_code}")
    return response.json()


async def create_meeting_token(room_name: str, is_host: bool = False, exp: Optional[int] = None) -> Optional[str]:
    properties = {
        "room_name": room_name,
        "is_owner": is_host,
        "start_cloud_recording": False,
        "exp": exp or int(time.time()) + DEFAULT_ROOM_TTL_SECONDS,
    }
    if is_host:
        properties["enable_recording"] = "cloud"

    async with httpx.AsyncClient(timeout=10) as client:
        response = await client.post(
            f"{DAILY_API_URL}/meeting-tokens",
            json={"properties": properties},
            headers=_headers(),
        )
    if response.status_code >= 400:
        logger.error(f"Failed to create meeting token: HTTP {response.status_code}")
        return None
    return response.json().get("token")


async def delete_room(room_name: str) -> bool:
    async with httpx.AsyncClient(timeout=10) as client:
        response = await client.delete(f"{DAILY_API_URL}/rooms/{room_name}", headers=_headers())
    return response.status_code < 400


async def get_latest_recording_url(room_name: str) -> Optional[str]:
    """Access link of the most recent recording of a room, if any."""
    async with httpx.AsyncClient(timeout=10) as client:
        response = await client.get(
            f"{DAILY_API_URL}/recordings",
            params={"room_name": room_name, "limit": 1},
            headers=_headers(),
        )
        if response.status_code >= 400:
            logger.error(f"Listing recordings for {room_name} failed: HTTP {response.status_code}")
            return None
        recordings = response.json().get("data", [])
        if not recordings:
            return None

        link = await client.get(
            f"{DAILY_API_URL}/recordings/{recordings[0]['id']}/access-link",
            headers=_headers(),
        )
    if link.status_code >= 400:
        return None
    return link.json().get("download_link")


def verify_webhook_signature(raw_body: bytes, timestamp: str | None, signature: str | None) -> bool:
    """
    Check X-Webhook-Signature when DAILY_WEBHOOK_SECRET is set.

    Daily signs ``{timestamp}.{body}`` with HMAC-SHA256 keyed by the
    base64-decoded secret and sends the base64 digest.
    """
    secret = get_settings().daily_webhook_secret
    if not secret:
        return True
    if not timestamp or not signature:
        return False
    try:
        key = base64.b64decode(secret)
    except ValueError:
        logger.error("DAILY_WEBHOOK_SECRET is not valid base64")
        return False
    digest = hmac.new(key, timestamp.encode() + b"." + raw_body, hashlib.sha256).digest()
    return hmac.compare_digest(base64.b64encode(digest).decode(), signature)
