"""
Signed links that let guests cancel or reschedule without an account.

Token layout (base64url, padding stripped):
    "{booking_id}:{action}:{signature}:{issued_ms}"

signature = hex(HMAC-SHA256(SECRET_KEY, "{booking_id}-{action}-{issued_ms}"))
"""

import base64
import binascii
import hashlib
import hmac
import logging
import time
from typing import Optional

from .core.config import get_settings

logger = logging.getLogger(__name__)

TOKEN_ACTIONS = ("cancel", "reschedule")


def _sign(booking_id: str, action: str, issued_ms: int) -> str:
    secret = get_settings().secret_key.encode("utf-8")
    message = f"{booking_id}-{action}-{issued_ms}".encode("utf-8")
    return hmac.new(secret, message, hashlib.sha256).hexdigest()


def generate_booking_token(booking_id: str, action: str, issued_ms: Optional[int] = None) -> str:
    if action not in TOKEN_ACTIONS:
        raise ValueError(f"Unsupported token action: {action}")
    issued_ms = issued_ms if issued_ms is not None else int(time.time() * 1000)
    raw = f"{booking_id}:{action}:{_sign(str(booking_id), action, issued_ms)}:{issued_ms}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def verify_booking_token(token: str, now_ms: Optional[int] = None) -> Optional[tuple[str, str]]:
    """
    Return (booking_id, action) for a valid token, otherwise None.

    Expired tokens, unknown actions and bad signatures are all rejected.
    """
    if not token:
        return None
    try:
        padded = token + "=" * (-len(token) % 4)
        decoded = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        return None

    parts = decoded.split(":")
    if len(parts) != 4:
        return None
    booking_id, action, signature, issued = parts
    if action not in TOKEN_ACTIONS or not issued.isdigit():
        return None

    expected = _sign(booking_id, action, int(issued))
    if not hmac.compare_digest(signature, expected):
        logger.warning(f"Booking token signature mismatch for booking {booking_id}")
        return None

    ttl_ms = get_settings().booking_token_ttl_days * 24 * 60 * 60 * 1000
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    if now_ms - int(issued) > ttl_ms:
        return None

    return booking_id, action


def token_allows(token: str, booking_id: str, action: str) -> bool:
    verified = verify_booking_token(token)
    return verified is not None and verified == (str(booking_id), action)


def cancel_url(booking_id: str, token: str) -> str:
    return f"{get_settings().app_base_url}/booking/{booking_id}/cancel?token={token}"


def reschedule_url(booking_id: str, token: str) -> str:
    return f"{get_settings().app_base_url}/booking/{booking_id}/reschedule?token={token}"
